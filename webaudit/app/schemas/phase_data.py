"""
Structured phase data.

These models are the contract between the browser backend (or any other
producer of phase output) and the finding generation engine. They are
plain data: no model here performs I/O.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from webaudit.app.schemas.findings import Severity


# ---------------------------------------------------------------------------
# Exploration
# ---------------------------------------------------------------------------


class ConsoleMessage(BaseModel):
    type: str = "log"
    text: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class NetworkError(BaseModel):
    url: str
    status: int
    status_text: str = ""
    method: str = "GET"

    model_config = ConfigDict(frozen=True, extra="forbid")


class FormInfo(BaseModel):
    action: Optional[str] = None
    method: str = "GET"
    fields: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class PageData(BaseModel):
    """Snapshot of one visited page."""

    url: str
    title: str = ""
    html: str = ""
    text: str = ""
    links: List[str] = Field(default_factory=list)
    forms: List[FormInfo] = Field(default_factory=list)
    console_messages: List[ConsoleMessage] = Field(default_factory=list)
    network_errors: List[NetworkError] = Field(default_factory=list)
    status_code: Optional[int] = None
    load_time_ms: Optional[float] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


class DiagnosisCategory(str, Enum):
    JS_ERROR = "js-error"
    API_FAILURE = "api-failure"
    MISSING_RESOURCE = "missing-resource"
    LOADING_STUCK = "loading-stuck"
    AUTH_FAILURE = "auth-failure"
    CORS_ERROR = "cors-error"
    SLOW_REQUEST = "slow-request"
    MIXED_CONTENT = "mixed-content"
    WEBSOCKET_ERROR = "websocket-error"
    RENDER_ERROR = "render-error"


class DiagnosticEvidence(BaseModel):
    source: Literal["console", "network", "dom", "timing"]
    raw: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class PageDiagnosis(BaseModel):
    url: str
    category: DiagnosisCategory
    severity: Literal["error", "warning", "info"]
    title: str
    description: str = ""
    suggested_cause: str = ""
    evidence: List[DiagnosticEvidence] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class PageDiagnosticReport(BaseModel):
    url: str
    analyzed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    diagnoses: List[PageDiagnosis] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Interaction testing
# ---------------------------------------------------------------------------


class InteractedElement(BaseModel):
    text: str
    element_type: str = "button"

    model_config = ConfigDict(frozen=True, extra="forbid")


class FailedRequest(BaseModel):
    method: str = "GET"
    url: str
    status: int

    model_config = ConfigDict(frozen=True, extra="forbid")


class InteractionTestResult(BaseModel):
    url: str
    element: InteractedElement
    has_error: bool = False
    description: str = ""
    console_errors: List[str] = Field(default_factory=list)
    failed_requests: List[FailedRequest] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class PageInteractionResult(BaseModel):
    url: str
    elements_tested: List[InteractionTestResult] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Responsive testing
# ---------------------------------------------------------------------------


class Viewport(BaseModel):
    name: str
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)

    model_config = ConfigDict(frozen=True, extra="forbid")


DEFAULT_VIEWPORTS = (
    Viewport(name="mobile", width=375, height=667),
    Viewport(name="tablet", width=768, height=1024),
    Viewport(name="desktop", width=1280, height=720),
)


class ResponsiveIssue(BaseModel):
    title: str
    severity: Severity
    url: str
    viewport: str
    description: str = ""

    model_config = ConfigDict(frozen=True, extra="forbid")


class ResponsivePageResult(BaseModel):
    url: str
    findings: List[ResponsiveIssue] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# API smoke testing
# ---------------------------------------------------------------------------


class EndpointSource(str, Enum):
    CODE_ANALYSIS = "code-analysis"
    ROUTE_FILE = "route-file"
    OPENAPI = "openapi"
    NETWORK_CAPTURE = "network-capture"


class Endpoint(BaseModel):
    path: str
    method: str = "GET"
    source: EndpointSource = EndpointSource.CODE_ANALYSIS
    expected_status: Optional[int] = None
    requires_auth: Optional[bool] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class ProbeResponse(BaseModel):
    """Raw response of a single endpoint probe, as returned by the backend."""

    status: int
    body_preview: str = ""
    duration_ms: float = 0.0

    model_config = ConfigDict(frozen=True, extra="forbid")


class EndpointCategory(str, Enum):
    SUCCESS = "success"
    AUTH_FAILURE = "auth-failure"
    NOT_FOUND = "not-found"
    SERVER_ERROR = "server-error"
    TIMEOUT = "timeout"
    OTHER_ERROR = "other-error"


class EndpointTestResult(BaseModel):
    endpoint: Endpoint
    status: int
    duration_ms: float = 0.0
    response_preview: str = ""
    category: EndpointCategory
    failure_reason: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class ApiSmokeIssue(BaseModel):
    title: str
    severity: Severity
    url: str
    description: str = ""
    status: int
    response_preview: str = ""

    model_config = ConfigDict(frozen=True, extra="forbid")


class ApiSmokeReport(BaseModel):
    base_url: str
    endpoints: List[Endpoint] = Field(default_factory=list)
    results: List[EndpointTestResult] = Field(default_factory=list)
    findings: List[ApiSmokeIssue] = Field(default_factory=list)
    stats: Dict[str, int] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")
