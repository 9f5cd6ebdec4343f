"""
Audit directory layout and JSON artifact I/O.

Layout of one audit directory:

    <audit_path>/
        checkpoint.json
        progress.json / progress.md
        stage-state/<stage>.json
        stages/<stage>.json           stage artifact envelopes
        stages/<analyzer>.json        code-scan analyzer outputs
        findings/<id>.json            canonical findings
        screenshots/
        report.json / report.md

All JSON is written atomically (temp file + rename) so a crash never
leaves a truncated artifact behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from webaudit.app.schemas.stages import StageArtifact, StageName

STAGES_DIR = "stages"
FINDINGS_DIR = "findings"
SCREENSHOTS_DIR = "screenshots"
STAGE_STATE_DIR = "stage-state"


def ensure_audit_dirs(audit_path: Path) -> None:
    for name in (STAGES_DIR, FINDINGS_DIR, SCREENSHOTS_DIR, STAGE_STATE_DIR):
        (audit_path / name).mkdir(parents=True, exist_ok=True)


def _jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    return data


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(_jsonable(data), indent=2, ensure_ascii=False, default=str)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


def read_json(path: Path) -> Optional[Any]:
    """Return parsed JSON, or None when the file is missing or corrupt."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def write_text(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


# ----------------------------------------------------------------------
# Stage artifacts
# ----------------------------------------------------------------------

def stage_artifact_path(audit_path: Path, stage: StageName) -> Path:
    return audit_path / STAGES_DIR / f"{stage.value}.json"


def write_stage_artifact(
    audit_path: Path,
    stage: StageName,
    payload: Dict[str, Any],
) -> Path:
    """Write stages/<stage>.json with the mandatory envelope fields."""
    artifact = StageArtifact(stage=stage, **payload)
    return write_json(stage_artifact_path(audit_path, stage), artifact)


def read_stage_artifact(audit_path: Path, stage: StageName) -> Optional[Dict[str, Any]]:
    data = read_json(stage_artifact_path(audit_path, stage))
    return data if isinstance(data, dict) else None
