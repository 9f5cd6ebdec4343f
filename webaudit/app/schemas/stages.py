"""
Stage and run state schemas.

Stage results are immutable once produced. RunState is the single
mutable record of a run and is owned exclusively by the scheduler;
everyone else receives deep copies.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from webaudit.app.config import RunConfig

STAGE_SCHEMA_VERSION = "1.0.0"


class StageName(str, Enum):
    """The closed set of pipeline stages, in declared order."""

    PREFLIGHT = "preflight"
    CODE_SCAN = "code-scan"
    EXPLORE = "explore"
    TEST = "test"
    RESPONSIVE = "responsive"
    AGGREGATE = "aggregate"
    VERIFY = "verify"
    COMPARE = "compare"
    REPORT = "report"


class StageStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    PAUSED = "paused"


# ----------------------------------------------------------------------
# Stage executor outcomes (Result type)
# ----------------------------------------------------------------------


class StageOutput(BaseModel):
    """Successful outcome of a stage executor."""

    ok: bool = True
    stage: StageName
    findings_count: int = Field(0, ge=0)
    output_file: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")


class StageError(BaseModel):
    """Failed outcome of a stage executor."""

    ok: bool = False
    stage: StageName
    message: str
    exception_type: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


StageOutcome = Union[StageOutput, StageError]


# ----------------------------------------------------------------------
# Stage result and run state
# ----------------------------------------------------------------------


class StageResult(BaseModel):
    stage: StageName
    status: StageStatus
    findings_count: int = Field(0, ge=0)
    duration_seconds: float = Field(0.0, ge=0)
    output_file: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class RunState(BaseModel):
    """
    Aggregate record of one audit run.

    Mutated only by the scheduler's execution loop.
    """

    config: RunConfig
    audit_path: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: RunStatus = RunStatus.PENDING

    current_stages: List[StageName] = Field(default_factory=list)
    completed_stages: List[StageName] = Field(default_factory=list)
    skipped_stages: List[StageName] = Field(default_factory=list)
    stage_results: List[StageResult] = Field(default_factory=list)

    is_paused: bool = False
    is_stopped: bool = False

    browser_restarts: int = 0
    errors_recovered: int = 0

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class StageArtifact(BaseModel):
    """
    Envelope written to stages/<stage>.json.

    Stage-specific payload fields are carried as extra attributes.
    """

    schema_version: str = STAGE_SCHEMA_VERSION
    stage: StageName
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True, extra="allow")
