"""Shared fixtures: a scripted in-memory executor and trigger contexts."""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import pytest

from jobgraph.config import EngineConfig
from jobgraph.errors import ExecutionError
from jobgraph.events import EventRecorder
from jobgraph.executor import Executor, StepResult
from jobgraph.loader import load_workflow_text
from jobgraph.model import EventKind, Reason, TriggerContext


@dataclass
class Behaviour:
    """What the fake executor does for a matching step."""
    exit_code: int = 0
    outputs: Dict[str, str] = field(default_factory=dict)
    delay: float = 0.0
    block: bool = False
    launch_error: bool = False
    fail_times: int = 0
    on_start: Optional[Callable[[], None]] = None


class FakeExecutor(Executor):
    """
    Executor that never spawns processes.

    Behaviours are looked up by "<instance key>:<step name>", then by
    instance key, then by job id; anything unscripted succeeds at once.
    """

    def __init__(self, behaviours: Optional[Dict[str, Behaviour]] = None):
        self.behaviours = behaviours or {}
        self.calls: List[tuple] = []
        self.envs: Dict[str, dict] = {}
        self.max_concurrent: Dict[str, int] = {}
        self._running: Dict[str, int] = {}
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _lookup(self, instance, step):
        for key in (f"{instance.key}:{step.name}", instance.key, instance.job_id):
            if key in self.behaviours:
                return key, self.behaviours[key]
        return None, Behaviour()

    def called(self, key: str) -> bool:
        return any(k == key for k, _ in self.calls)

    def run_step(self, instance, step, env, *, timeout, cancel):
        key, behaviour = self._lookup(instance, step)
        with self._lock:
            self.calls.append((instance.key, step.name))
            self.envs[instance.key] = dict(env)
            self._counts[key] = self._counts.get(key, 0) + 1
            attempt = self._counts[key]
            job = instance.job_id
            self._running[job] = self._running.get(job, 0) + 1
            self.max_concurrent[job] = max(self.max_concurrent.get(job, 0), self._running[job])
        try:
            return self._behave(behaviour, attempt, step, timeout, cancel)
        finally:
            with self._lock:
                self._running[instance.job_id] -= 1

    def _behave(self, behaviour, attempt, step, timeout, cancel):
        if behaviour.on_start is not None:
            behaviour.on_start()
        if behaviour.launch_error:
            raise ExecutionError(reason=Reason.LAUNCH_FAILED.value, message="cannot launch", step=step.name)

        start = time.monotonic()
        if behaviour.block:
            if cancel.wait(timeout if timeout is not None else 10):
                return StepResult(exit_code=-15, cancelled=True, duration=time.monotonic() - start)
            return StepResult(exit_code=-1, timed_out=True, duration=time.monotonic() - start)
        if behaviour.delay and cancel.wait(behaviour.delay):
            return StepResult(exit_code=-15, cancelled=True, duration=time.monotonic() - start)

        exit_code = 1 if attempt <= behaviour.fail_times else behaviour.exit_code
        return StepResult(
            exit_code=exit_code,
            duration=time.monotonic() - start,
            outputs=dict(behaviour.outputs),
        )


def make_workflow(text: str, config: Optional[EngineConfig] = None):
    return load_workflow_text(text, config=config)


@pytest.fixture
def config():
    return EngineConfig(max_workers=4, poll_interval=0.01, cancel_grace_seconds=0.5)


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def push():
    return TriggerContext(event=EventKind.PUSH, branch="main", actor="octocat", sha="abc123")


@pytest.fixture
def pull_request():
    return TriggerContext(event=EventKind.PULL_REQUEST, branch="feature/x", actor="octocat")
