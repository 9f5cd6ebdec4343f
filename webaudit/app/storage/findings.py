"""
File-based findings store.

One JSON file per finding under <audit_path>/findings/<id>.json.

IMPORTANT:
- A stored finding is immutable except for ANNOTATION_FIELDS.
- Legacy records (free-text category, no type) are upgraded on read;
  the file on disk is left untouched.
- Unreadable or schema-invalid files are skipped with a warning.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from webaudit.app.findings.factory import (
    is_legacy_record,
    upgrade_legacy_finding,
    validate_finding,
)
from webaudit.app.findings.identity import parse_finding_sequence
from webaudit.app.schemas.findings import (
    ANNOTATION_FIELDS,
    Finding,
    FindingImmutableError,
    SchemaValidationError,
)
from webaudit.app.storage.artifacts import FINDINGS_DIR, read_json, write_json

logger = logging.getLogger(__name__)


class FindingStore:
    def __init__(self, audit_path: Path) -> None:
        self.audit_path = Path(audit_path)
        self.directory = self.audit_path / FINDINGS_DIR

    def _path(self, finding_id: str) -> Path:
        return self.directory / f"{finding_id}.json"

    def save(self, finding: Finding) -> Path:
        return write_json(self._path(finding.id), finding)

    def save_many(self, findings: List[Finding]) -> List[Path]:
        return [self.save(f) for f in findings]

    def _parse(self, data: Any, source: Path) -> Optional[Finding]:
        if not isinstance(data, dict):
            logger.warning("Skipping malformed finding file %s", source)
            return None
        if is_legacy_record(data):
            try:
                return upgrade_legacy_finding(data)
            except SchemaValidationError as exc:
                logger.warning("Skipping legacy finding %s: %s", source, exc)
                return None
        validation = validate_finding(data)
        if not validation.valid:
            logger.warning(
                "Skipping invalid finding %s: %s",
                source,
                "; ".join(f"{e.field}: {e.message}" for e in validation.errors),
            )
            return None
        return validation.record

    def load(self, finding_id: str) -> Optional[Finding]:
        path = self._path(finding_id)
        data = read_json(path)
        if data is None:
            return None
        return self._parse(data, path)

    def load_all(self) -> List[Finding]:
        """All readable findings ordered by id sequence, then file name."""
        if not self.directory.is_dir():
            return []
        findings: List[Finding] = []
        for path in self.directory.glob("*.json"):
            finding = self._parse(read_json(path), path)
            if finding is not None:
                findings.append(finding)
        findings.sort(key=lambda f: (parse_finding_sequence(f.id) or 0, f.id))
        return findings

    def annotate(self, finding_id: str, **updates: Any) -> Finding:
        """
        Apply annotation updates to a stored finding.

        Raises FindingImmutableError for any field outside
        ANNOTATION_FIELDS and KeyError when the finding does not exist.
        """
        forbidden = sorted(set(updates) - ANNOTATION_FIELDS)
        if forbidden:
            raise FindingImmutableError(
                f"Finding {finding_id}: fields {forbidden} are immutable"
            )

        current = self.load(finding_id)
        if current is None:
            raise KeyError(finding_id)

        updates.setdefault("updated_at", datetime.now(timezone.utc))
        updated = Finding.model_validate({**current.model_dump(), **updates})
        self.save(updated)
        return updated

    def max_sequence(self) -> int:
        """Highest 'F-NNN' sequence persisted in this audit (0 if none)."""
        if not self.directory.is_dir():
            return 0
        sequences = [
            parse_finding_sequence(path.stem) or 0 for path in self.directory.glob("*.json")
        ]
        return max(sequences, default=0)
