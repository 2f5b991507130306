# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

Scalar = Any  # str | int | float | bool
Coordinate = Tuple[Tuple[str, Scalar], ...]


class RunState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {RunState.SUCCEEDED, RunState.FAILED, RunState.SKIPPED, RunState.CANCELLED}
)

# One-directional state machine. Nothing re-enters PENDING.
ALLOWED_TRANSITIONS: Dict[RunState, frozenset] = {
    RunState.PENDING: frozenset(
        {RunState.BLOCKED, RunState.READY, RunState.SKIPPED, RunState.CANCELLED}
    ),
    RunState.BLOCKED: frozenset({RunState.READY, RunState.SKIPPED, RunState.CANCELLED}),
    RunState.READY: frozenset({RunState.RUNNING, RunState.SKIPPED, RunState.CANCELLED}),
    RunState.RUNNING: frozenset({RunState.SUCCEEDED, RunState.FAILED, RunState.CANCELLED}),
    RunState.SUCCEEDED: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.SKIPPED: frozenset(),
    RunState.CANCELLED: frozenset(),
}


class Reason(str, Enum):
    """Why an instance reached its terminal state (besides plain success)."""
    EXIT_CODE = "exit_code"
    TIMEOUT = "timeout"
    LAUNCH_FAILED = "launch_failed"
    FAIL_FAST = "fail_fast"
    ABORTED = "aborted"
    CONDITION_FALSE = "condition_false"
    UNDEFINED_REFERENCE = "undefined_reference"
    NEEDS_NOT_SUCCESSFUL = "needs_not_successful"
    EVENT_NOT_CONFIGURED = "event_not_configured"


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str) -> "EventKind":
        if value == "workflow_dispatch":
            return cls.MANUAL
        return cls(value)


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str | None = None
    uses: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str | None = None
    id: str | None = None
    with_: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Matrix:
    axes: Tuple[Tuple[str, Tuple[Scalar, ...]], ...] = ()
    include: Tuple[Mapping[str, Scalar], ...] = ()
    exclude: Tuple[Mapping[str, Scalar], ...] = ()

    @property
    def axis_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.axes)


@dataclass(frozen=True)
class Strategy:
    matrix: Matrix
    fail_fast: bool = True
    max_parallel: Optional[int] = None


@dataclass(frozen=True)
class Job:
    """
    A CI job: steps + dependencies + gating condition + optional matrix.

    `needs` holds job ids that must reach a terminal state before this job
    is considered; `condition` is the raw `if` expression (None means the
    implicit `success()`).
    """
    id: str
    steps: Tuple[Step, ...]
    name: str | None = None
    needs: Tuple[str, ...] = ()
    condition: str | None = None
    runs_on: str | None = None
    strategy: Optional[Strategy] = None
    timeout_minutes: Optional[float] = None
    retries: int = 0
    env: Mapping[str, str] = field(default_factory=dict)
    permissions: Mapping[str, str] = field(default_factory=dict)

    @property
    def fail_fast(self) -> bool:
        return self.strategy.fail_fast if self.strategy else True

    @property
    def max_parallel(self) -> Optional[int]:
        return self.strategy.max_parallel if self.strategy else None


@dataclass(frozen=True)
class BranchFilter:
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TriggerSpec:
    """Which events start the workflow, with their branch/cron filters."""
    push: Optional[BranchFilter] = None
    pull_request: Optional[BranchFilter] = None
    schedules: Tuple[str, ...] = ()
    manual: bool = False

    def declares(self, event: EventKind) -> bool:
        if event is EventKind.PUSH:
            return self.push is not None
        if event is EventKind.PULL_REQUEST:
            return self.pull_request is not None
        if event is EventKind.SCHEDULE:
            return bool(self.schedules)
        return self.manual


@dataclass(frozen=True)
class WorkflowDefinition:
    jobs: Mapping[str, Job]
    name: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    permissions: Mapping[str, str] = field(default_factory=dict)
    triggers: TriggerSpec = field(default_factory=TriggerSpec)
    source: str | None = None

    def dependents(self, job_id: str) -> Tuple[str, ...]:
        return tuple(j.id for j in self.jobs.values() if job_id in j.needs)


@dataclass(frozen=True)
class TriggerContext:
    """Metadata describing the event that initiated a run."""
    event: EventKind
    branch: str | None = None
    is_fork: bool = False
    actor: str | None = None
    sha: str | None = None
    schedule: str | None = None
    timestamp: Optional[datetime] = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def ref(self) -> str | None:
        return f"refs/heads/{self.branch}" if self.branch else None


@dataclass(frozen=True)
class JobInstance:
    """One concrete, matrix-expanded execution of a Job."""
    job_id: str
    coordinate: Coordinate
    name: str
    steps: Tuple[Step, ...]
    env: Mapping[str, str]
    index: int = 0
    runs_on: str | None = None
    timeout_minutes: Optional[float] = None

    @property
    def matrix(self) -> Dict[str, Scalar]:
        return dict(self.coordinate)

    @property
    def key(self) -> str:
        return instance_key(self.job_id, self.coordinate)


def format_value(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def instance_key(job_id: str, coordinate: Coordinate) -> str:
    if not coordinate:
        return job_id
    inner = ", ".join(f"{k}={format_value(v)}" for k, v in coordinate)
    return f"{job_id}[{inner}]"
