"""
Finding identity.

Two independent identities exist for every finding:

- id: run-scoped, monotonically assigned ('F-001', 'F-002', ...)
  by a FindingCounter owned by one generation engine per run.
- dedup_hash: content-addressed fingerprint of the identity fields
  (type, severity, normalized title, location.url, location.file).

IMPORTANT:
- There is NO process-wide counter. Callers MUST construct a fresh
  FindingCounter (or call reset) at the start of every run.
- dedup_hash MUST NOT depend on confidence, evidence, or timestamps.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from webaudit.app.schemas.findings import Severity
from webaudit.app.utils.hashing import fingerprint

FINDING_ID_PREFIX = "F-"
_FINDING_ID_RE = re.compile(r"^F-(\d+)$")


class FindingCounter:
    """Monotonic finding id allocator scoped to one audit run."""

    def __init__(self, start: int = 0) -> None:
        self._value = start

    @property
    def value(self) -> int:
        return self._value

    def next_id(self) -> str:
        self._value += 1
        return format_finding_id(self._value)

    def reset(self, value: int = 0) -> None:
        self._value = value


def format_finding_id(sequence: int) -> str:
    return f"{FINDING_ID_PREFIX}{sequence:03d}"


def parse_finding_sequence(finding_id: str) -> Optional[int]:
    """Return the numeric part of an 'F-NNN' id, or None for foreign ids."""
    match = _FINDING_ID_RE.match(finding_id)
    if match is None:
        return None
    return int(match.group(1))


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value))


def compute_dedup_hash(
    *,
    type: Any,
    severity: Any,
    title: str,
    url: Optional[str] = None,
    file: Optional[str] = None,
) -> str:
    return fingerprint(
        [
            _enum_value(type),
            _enum_value(severity),
            title.strip().lower(),
            url or "",
            file or "",
        ]
    )


def dedup_hash_for(data: Mapping[str, Any]) -> str:
    """Compute dedup_hash from raw (possibly partial) finding data."""
    location = data.get("location") or {}
    if not isinstance(location, Mapping):
        location = location.model_dump() if hasattr(location, "model_dump") else {}
    return compute_dedup_hash(
        type=data.get("type", ""),
        severity=data.get("severity", ""),
        title=str(data.get("title") or ""),
        url=location.get("url"),
        file=location.get("file"),
    )


# ---------------------------------------------------------------------------
# Severity normalization for analyzer and legacy output
# ---------------------------------------------------------------------------

_SEVERITY_ALIASES = {
    "CRITICAL": Severity.P0,
    "HIGH": Severity.P1,
    "ERROR": Severity.P1,
    "MEDIUM": Severity.P2,
    "LOW": Severity.P3,
    "WARNING": Severity.P3,
    "INFO": Severity.P4,
}


def normalize_severity(raw: Any) -> Severity:
    """
    Map heterogeneous severity labels onto P0..P4.

    Canonical values pass through; unknown labels default to P3.
    """
    text = _enum_value(raw).strip().upper()
    if text in Severity.__members__:
        return Severity(text)
    return _SEVERITY_ALIASES.get(text, Severity.P3)
