"""
File-based checkpoint store.

Persists which stages of an audit have completed so that a crashed,
stopped or paused run can be resumed without re-executing finished
stages. Also owns the control flags used to stop, pause and continue
a running audit from another process:

    stop.flag       halt at the next stage boundary
    pause.flag      halt at the next stage boundary, resumable
    continue.flag   lift a pause (consumed when read)

IMPORTANT:
- The checkpoint is authoritative for the completed-stage set.
- All methods are synchronous; the scheduler calls them between
  awaits, so two parallel stages never interleave a read-modify-write.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from webaudit.app.config import RunConfig
from webaudit.app.schemas.stages import STAGE_SCHEMA_VERSION, StageName
from webaudit.app.storage.artifacts import STAGE_STATE_DIR, read_json, write_json

logger = logging.getLogger(__name__)

CHECKPOINT_FILE = "checkpoint.json"
STOP_FLAG = "stop.flag"
PAUSE_FLAG = "pause.flag"
CONTINUE_FLAG = "continue.flag"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETE = "complete"
    FAILED = "failed"


class StageRecord(BaseModel):
    status: str
    paths: List[str] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)


class CheckpointError(BaseModel):
    stage: StageName
    error: str
    timestamp: datetime = Field(default_factory=_utcnow)
    recoverable: bool = True


class ResumePoint(BaseModel):
    stage: StageName
    completed_stages: List[StageName] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class Checkpoint(BaseModel):
    schema_version: str = STAGE_SCHEMA_VERSION
    audit_id: str
    config: RunConfig
    planned_stages: List[StageName]
    current_stages: List[StageName] = Field(default_factory=list)
    completed_stages: List[StageName] = Field(default_factory=list)
    status: CheckpointStatus = CheckpointStatus.RUNNING
    stage_outputs: Dict[str, StageRecord] = Field(default_factory=dict)
    resume_stage: Optional[StageName] = None
    errors: List[CheckpointError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    can_resume: bool = True


class StageState(BaseModel):
    schema_version: str = STAGE_SCHEMA_VERSION
    stage: StageName
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    output_files: List[str] = Field(default_factory=list)


class CheckpointNotInitializedError(RuntimeError):
    pass


class CheckpointStore:
    """
    Checkpoint persistence rooted at one audit directory.
    """

    def __init__(self, audit_path: Path) -> None:
        self.audit_path = Path(audit_path)

    @property
    def checkpoint_path(self) -> Path:
        return self.audit_path / CHECKPOINT_FILE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        audit_id: str,
        *,
        config: RunConfig,
        planned_stages: List[StageName],
        started_at: Optional[datetime] = None,
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            audit_id=audit_id,
            config=config,
            planned_stages=list(planned_stages),
            resume_stage=planned_stages[0] if planned_stages else None,
            started_at=started_at or _utcnow(),
        )
        self.save(checkpoint)
        return checkpoint

    def load(self) -> Optional[Checkpoint]:
        data = read_json(self.checkpoint_path)
        if data is None:
            return None
        try:
            return Checkpoint.model_validate(data)
        except ValueError as exc:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self.checkpoint_path, exc)
            return None

    def save(self, checkpoint: Checkpoint) -> None:
        checkpoint.updated_at = _utcnow()
        write_json(self.checkpoint_path, checkpoint)

    def _require(self) -> Checkpoint:
        checkpoint = self.load()
        if checkpoint is None:
            raise CheckpointNotInitializedError(
                f"No checkpoint found in {self.audit_path}"
            )
        return checkpoint

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def start_stage(self, stage: StageName) -> None:
        checkpoint = self._require()
        if stage not in checkpoint.current_stages:
            checkpoint.current_stages.append(stage)
        checkpoint.status = CheckpointStatus.RUNNING
        checkpoint.resume_stage = stage
        self.save(checkpoint)
        self._save_stage_state(StageState(stage=stage, status="running", started_at=_utcnow()))

    def complete_stage(
        self,
        stage: StageName,
        outputs: Optional[List[str]] = None,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> None:
        checkpoint = self._require()
        if stage not in checkpoint.completed_stages:
            checkpoint.completed_stages.append(stage)
        checkpoint.stage_outputs[stage.value] = StageRecord(
            status="complete",
            paths=list(outputs or []),
            metrics=dict(metrics or {}),
        )
        self._leave(checkpoint, stage)
        self._advance_resume_point(checkpoint)
        self.save(checkpoint)
        self._save_stage_state(
            StageState(
                stage=stage,
                status="completed",
                completed_at=_utcnow(),
                output_files=list(outputs or []),
            )
        )

    def fail_stage(self, stage: StageName, error: str, recoverable: bool = True) -> None:
        checkpoint = self._require()
        checkpoint.errors.append(
            CheckpointError(stage=stage, error=error, recoverable=recoverable)
        )
        checkpoint.stage_outputs[stage.value] = StageRecord(status="failed")
        self._leave(checkpoint, stage)
        if recoverable:
            self._advance_resume_point(checkpoint)
        else:
            checkpoint.status = CheckpointStatus.FAILED
            checkpoint.can_resume = False
        self.save(checkpoint)
        self._save_stage_state(
            StageState(stage=stage, status="failed", completed_at=_utcnow(), error=error)
        )

    def set_status(self, status: CheckpointStatus) -> None:
        checkpoint = self._require()
        checkpoint.status = status
        checkpoint.current_stages = []
        if status == CheckpointStatus.COMPLETE:
            checkpoint.can_resume = False
        self.save(checkpoint)

    @staticmethod
    def _leave(checkpoint: Checkpoint, stage: StageName) -> None:
        if stage in checkpoint.current_stages:
            checkpoint.current_stages.remove(stage)

    @staticmethod
    def _advance_resume_point(checkpoint: Checkpoint) -> None:
        remaining = [
            s for s in checkpoint.planned_stages if s not in checkpoint.completed_stages
        ]
        if remaining:
            checkpoint.resume_stage = remaining[0]
            checkpoint.can_resume = True
        else:
            checkpoint.resume_stage = None
            checkpoint.status = CheckpointStatus.COMPLETE
            checkpoint.can_resume = False

    def _save_stage_state(self, state: StageState) -> None:
        path = self.audit_path / STAGE_STATE_DIR / f"{state.stage.value}.json"
        previous = read_json(path)
        if state.started_at is None and isinstance(previous, dict):
            try:
                prior = StageState.model_validate(previous)
            except ValueError:
                prior = None
            if prior is not None:
                state = state.model_copy(update={"started_at": prior.started_at})
        write_json(path, state)

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    def determine_resume_point(
        self,
        checkpoint: Optional[Checkpoint] = None,
    ) -> Optional[ResumePoint]:
        checkpoint = checkpoint or self.load()
        if checkpoint is None or not checkpoint.can_resume or checkpoint.resume_stage is None:
            return None
        return ResumePoint(
            stage=checkpoint.resume_stage,
            completed_stages=list(checkpoint.completed_stages),
        )

    # ------------------------------------------------------------------
    # Control flags
    # ------------------------------------------------------------------

    def _flag(self, name: str) -> Path:
        return self.audit_path / name

    def check_stop_flag(self) -> bool:
        return self._flag(STOP_FLAG).exists()

    def check_pause_flag(self) -> bool:
        return self._flag(PAUSE_FLAG).exists()

    def check_continue_flag(self) -> bool:
        """True once per continue request; lifts any pending pause."""
        flag = self._flag(CONTINUE_FLAG)
        if not flag.exists():
            return False
        flag.unlink(missing_ok=True)
        self._flag(PAUSE_FLAG).unlink(missing_ok=True)
        return True

    def request_stop(self) -> None:
        self._touch(STOP_FLAG)

    def request_pause(self) -> None:
        self._touch(PAUSE_FLAG)

    def request_continue(self) -> None:
        self._touch(CONTINUE_FLAG)

    def clear_stop_flag(self) -> None:
        self._flag(STOP_FLAG).unlink(missing_ok=True)

    def clear_pause_flag(self) -> None:
        self._flag(PAUSE_FLAG).unlink(missing_ok=True)

    def _touch(self, name: str) -> None:
        self.audit_path.mkdir(parents=True, exist_ok=True)
        self._flag(name).write_text(_utcnow().isoformat(), encoding="utf-8")
