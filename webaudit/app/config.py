"""
Configuration for webaudit.

Two layers exist:

- ServiceConfig: environment-driven process settings (output root,
  defaults for new runs, browser backend wiring, logging). Read once at
  startup and immutable afterwards.
- RunConfig: the immutable input of a single audit run. Created once at
  audit start; never mutated.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RunMode(str, Enum):
    """Selects the stage subset executed by a run."""

    FULL = "full"
    QUICK = "quick"
    CODE_ONLY = "code-only"


def generate_audit_id(now: Optional[datetime] = None) -> str:
    """'audit-YYYYMMDD-HHMMSS' in UTC."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("audit-%Y%m%d-%H%M%S")


# ----------------------------------------------------------------------
# Per-run configuration
# ----------------------------------------------------------------------


class RunConfig(BaseModel):
    """
    Immutable input of one audit run.
    """

    audit_id: str = Field(
        default_factory=generate_audit_id,
        min_length=1,
        description="Audit identifier; also the audit directory name",
    )

    base_url: str = Field(
        "",
        description="Base URL of the running application under audit",
    )

    codebase_path: Path = Field(
        Path("."),
        description="Root of the application source tree",
    )

    prd_path: Optional[Path] = Field(
        None,
        description="Optional Markdown PRD used by the compare stage",
    )

    focus_areas: List[str] = Field(
        default_factory=list,
        description="Optional free-text focus areas recorded in the report",
    )

    mode: RunMode = Field(
        RunMode.FULL,
        description="Stage subset selector",
    )

    parallel_stages: bool = Field(
        True,
        description="Run parallel-group partners concurrently",
    )

    max_pages: int = Field(50, gt=0, description="Exploration page budget")
    max_forms: int = Field(20, gt=0, description="Forms covered by interaction testing")
    timeout_per_stage: float = Field(
        600.0,
        gt=0,
        description="Per-stage timeout in seconds",
    )

    output_root: Path = Field(
        Path(".audits"),
        description="Directory under which audit directories are created",
    )

    @field_validator("audit_id")
    @classmethod
    def audit_id_is_path_safe(cls, v: str) -> str:
        if "/" in v or "\\" in v or v in {".", ".."}:
            raise ValueError(f"audit_id must be a single path segment, got '{v}'")
        return v

    @field_validator("base_url")
    @classmethod
    def base_url_is_http(cls, v: str) -> str:
        if not v:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL, got '{v}'")
        return v.rstrip("/")

    @property
    def audit_path(self) -> Path:
        return self.output_root / self.audit_id

    model_config = ConfigDict(frozen=True, extra="forbid")


# ----------------------------------------------------------------------
# Process configuration
# ----------------------------------------------------------------------


class ServiceConfig(BaseModel):
    """
    Environment-driven configuration for the webaudit service and CLI.
    """

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    OUTPUT_ROOT: Path = Field(
        Path(".audits"),
        description="Directory under which audit directories are created",
    )

    # ------------------------------------------------------------------
    # Run defaults
    # ------------------------------------------------------------------

    DEFAULT_MODE: RunMode = Field(
        RunMode.FULL,
        description="Mode used when a run request does not specify one",
    )

    PARALLEL_STAGES: bool = Field(
        True,
        description="Default for RunConfig.parallel_stages",
    )

    MAX_PAGES: int = Field(50, gt=0)
    MAX_FORMS: int = Field(20, gt=0)

    STAGE_TIMEOUT_SECONDS: float = Field(
        600.0,
        gt=0,
        description="Default per-stage timeout",
    )

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    RETAINED_RUNS: int = Field(
        20,
        gt=0,
        description=(
            "Finished runs kept in memory for live state and event streams. "
            "Older ones are still served from their audit directory."
        ),
    )

    BROWSER_BACKEND: str = Field(
        "",
        description=(
            "Import path 'package.module:factory' of a BrowserBackend "
            "factory. Empty disables browser stages."
        ),
    )

    LOG_LEVEL: str = Field("INFO")

    # ------------------------------------------------------------------
    # Validators (Pydantic v2)
    # ------------------------------------------------------------------

    @field_validator("BROWSER_BACKEND")
    @classmethod
    def backend_is_import_path(cls, v: str) -> str:
        if v and ":" not in v:
            raise ValueError(
                f"BROWSER_BACKEND must look like 'package.module:factory', got '{v}'"
            )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def log_level_is_known(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in allowed:
            raise ValueError(
                f"Unsupported LOG_LEVEL '{v}'. Allowed values: {sorted(allowed)}"
            )
        return upper

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """
        Load configuration from WEBAUDIT_* environment variables.
        """

        def env_bool(name: str, default: bool) -> bool:
            raw = os.getenv(name)
            if raw is None:
                return default
            return raw.lower() in {"1", "true", "yes", "on"}

        return cls(
            OUTPUT_ROOT=Path(os.getenv("WEBAUDIT_OUTPUT_ROOT", ".audits")),
            DEFAULT_MODE=RunMode(os.getenv("WEBAUDIT_DEFAULT_MODE", "full")),
            PARALLEL_STAGES=env_bool("WEBAUDIT_PARALLEL_STAGES", True),
            MAX_PAGES=int(os.getenv("WEBAUDIT_MAX_PAGES", "50")),
            MAX_FORMS=int(os.getenv("WEBAUDIT_MAX_FORMS", "20")),
            STAGE_TIMEOUT_SECONDS=float(
                os.getenv("WEBAUDIT_STAGE_TIMEOUT_SECONDS", "600")
            ),
            RETAINED_RUNS=int(os.getenv("WEBAUDIT_RETAINED_RUNS", "20")),
            BROWSER_BACKEND=os.getenv("WEBAUDIT_BROWSER_BACKEND", ""),
            LOG_LEVEL=os.getenv("WEBAUDIT_LOG_LEVEL", "INFO"),
        )

    def run_config(self, **overrides) -> RunConfig:
        """Build a RunConfig seeded with this service's defaults."""
        values = {
            "mode": self.DEFAULT_MODE,
            "parallel_stages": self.PARALLEL_STAGES,
            "max_pages": self.MAX_PAGES,
            "max_forms": self.MAX_FORMS,
            "timeout_per_stage": self.STAGE_TIMEOUT_SECONDS,
            "output_root": self.OUTPUT_ROOT,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RunConfig(**values)

    model_config = ConfigDict(frozen=True)
