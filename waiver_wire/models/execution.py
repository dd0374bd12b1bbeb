"""
Execution records for pipeline runs.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse


class PipelineStage(str, Enum):
    """Pipeline stages in execution order"""
    COLLECT = "collect"
    RESEARCH = "research"
    ANALYZE = "analyze"
    WRITE = "write"
    PUBLISH = "publish"


STAGE_ORDER: List[PipelineStage] = [
    PipelineStage.COLLECT,
    PipelineStage.RESEARCH,
    PipelineStage.ANALYZE,
    PipelineStage.WRITE,
    PipelineStage.PUBLISH,
]

# Progress reported while each stage is running
STAGE_PROGRESS: Dict[PipelineStage, int] = {
    PipelineStage.COLLECT: 10,
    PipelineStage.RESEARCH: 30,
    PipelineStage.ANALYZE: 50,
    PipelineStage.WRITE: 70,
    PipelineStage.PUBLISH: 90,
}


class RunOutcome(str, Enum):
    """Terminal state of a pipeline run"""
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED_BY_USER = "stopped_by_user"


@dataclass
class PipelineRun:
    """
    One execution of the pipeline.

    Created when the run starts and finalized exactly once when it ends.
    """
    started_at: datetime
    trigger: str = "manual"
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    ended_at: Optional[datetime] = None
    outcome: Optional[RunOutcome] = None
    stages_completed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    published_artifact_id: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self.outcome is not None

    @property
    def success(self) -> bool:
        return self.outcome == RunOutcome.COMPLETED

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    def finalize(self, outcome: RunOutcome, ended_at: Optional[datetime] = None) -> None:
        if self.is_finalized:
            raise RuntimeError(f"Pipeline run {self.run_id} already finalized as {self.outcome.value}")
        self.outcome = outcome
        self.ended_at = ended_at or datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'trigger': self.trigger,
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'outcome': self.outcome.value if self.outcome else None,
            'stages_completed': list(self.stages_completed),
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'published_artifact_id': self.published_artifact_id,
            'duration_seconds': self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineRun":
        ended_raw = data.get('ended_at')
        outcome_raw = data.get('outcome')
        return cls(
            run_id=data['run_id'],
            trigger=data.get('trigger', 'manual'),
            started_at=isoparse(data['started_at']),
            ended_at=isoparse(ended_raw) if ended_raw else None,
            outcome=RunOutcome(outcome_raw) if outcome_raw else None,
            stages_completed=list(data.get('stages_completed') or []),
            errors=list(data.get('errors') or []),
            warnings=list(data.get('warnings') or []),
            published_artifact_id=data.get('published_artifact_id'),
        )


@dataclass(frozen=True)
class ExecutionStatus:
    """Snapshot of what the orchestrator is doing right now"""
    is_running: bool
    current_stage: Optional[str] = None
    progress: int = 0
    started_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
