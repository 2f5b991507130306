# report.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .model import RunState


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# -------------------- Schemas --------------------

class InstanceReport(BaseModel):
    job: str
    instance: str
    name: str
    coordinate: Dict[str, Any] = Field(default_factory=dict)
    state: RunState
    reason: Optional[str] = None
    detail: Optional[str] = None
    duration_seconds: float = 0.0
    attempts: int = 0
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = Field(default_factory=dict)


class RunReport(BaseModel):
    workflow: str
    status: RunStatus
    event: str
    started_at: datetime
    finished_at: datetime
    trigger_detail: Optional[str] = None
    instances: List[InstanceReport] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def states(self) -> Dict[str, RunState]:
        return {i.instance: i.state for i in self.instances}

    def for_job(self, job: str) -> List[InstanceReport]:
        return [i for i in self.instances if i.job == job]

    def instance(self, key: str) -> InstanceReport:
        for i in self.instances:
            if i.instance == key:
                return i
        raise KeyError(key)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return self.model_dump_json(indent=indent)

    @classmethod
    def from_json(cls, text: str) -> "RunReport":
        return cls.model_validate_json(text)

    def save(self, path: str | Path) -> Path:
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(self.to_json(), encoding="utf-8")
        return out

    @classmethod
    def load(cls, path: str | Path) -> "RunReport":
        return cls.from_json(Path(path).read_text(encoding="utf-8"))


def run_status(states: List[RunState]) -> RunStatus:
    """
    Skipped when every instance was skipped (or there were none);
    Succeeded when every non-skipped instance succeeded; Failed otherwise.
    """
    ran = [s for s in states if s is not RunState.SKIPPED]
    if not ran:
        return RunStatus.SKIPPED
    if all(s is RunState.SUCCEEDED for s in ran):
        return RunStatus.SUCCEEDED
    return RunStatus.FAILED
