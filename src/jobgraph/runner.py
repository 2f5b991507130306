# runner.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .conditions import UpstreamOutcome, evaluate
from .config import EngineConfig
from .errors import CancellationError, ConditionError, ExecutionError
from .events import EventSink, TransitionEvent
from .executor import Executor, SubprocessExecutor
from .matrix import expand_all
from .model import (
    ALLOWED_TRANSITIONS,
    Job,
    JobInstance,
    Reason,
    RunState,
    TriggerContext,
    WorkflowDefinition,
)
from .report import InstanceReport, RunReport, run_status
from .triggers import trigger_decision

logger = logging.getLogger(__name__)


@dataclass
class InstanceOutcome:
    """What a worker hands back to the coordinator for one instance."""
    state: RunState
    reason: Optional[str] = None
    detail: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    attempts: int = 1
    exit_code: Optional[int] = None


# ----------------------------------------------------------------------
# Worker side: runs one instance's steps, never touches the state table
# ----------------------------------------------------------------------

def run_instance(
    instance: JobInstance,
    executor: Executor,
    cancel: threading.Event,
    *,
    retries: int = 0,
) -> InstanceOutcome:
    """
    Run the steps of one instance sequentially.

    Execution failures (non-zero exit, launch failure) are retried up to
    `retries` more times within the instance's single overall timeout.
    Timeouts and cancellations are never retried.
    """
    start = time.monotonic()
    deadline = start + instance.timeout_minutes * 60 if instance.timeout_minutes else None
    attempts = 0

    while True:
        attempts += 1
        outputs: Dict[str, str] = {}
        failure: Optional[ExecutionError] = None

        for step in instance.steps:
            if cancel.is_set():
                return InstanceOutcome(RunState.CANCELLED, attempts=attempts, outputs=outputs)
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return _timed_out(instance, step.name, attempts, outputs)

            logger.info("[%s] ▶ %s", instance.key, step.name)
            try:
                result = executor.run_step(
                    instance, step, instance.env, timeout=remaining, cancel=cancel
                )
            except CancellationError as e:
                return InstanceOutcome(
                    RunState.CANCELLED, reason=e.reason, detail=str(e), attempts=attempts, outputs=outputs
                )
            except ExecutionError as e:
                failure = e
                break

            outputs.update(result.outputs)
            if result.cancelled:
                return InstanceOutcome(RunState.CANCELLED, attempts=attempts, outputs=outputs)
            if result.timed_out:
                return _timed_out(instance, step.name, attempts, outputs)
            if result.exit_code != 0:
                failure = ExecutionError(
                    reason=Reason.EXIT_CODE.value,
                    message=f"step '{step.name}' failed (exit={result.exit_code})",
                    step=step.name,
                    exit_code=result.exit_code,
                )
                if result.log:
                    logger.info("[%s] output of '%s':\n%s", instance.key, step.name, result.log)
                break

        if failure is None:
            return InstanceOutcome(RunState.SUCCEEDED, attempts=attempts, outputs=outputs, exit_code=0)

        if attempts > retries or cancel.is_set():
            return InstanceOutcome(
                RunState.FAILED,
                reason=failure.reason,
                detail=str(failure),
                attempts=attempts,
                outputs=outputs,
                exit_code=failure.exit_code,
            )
        logger.warning("[%s] attempt %d failed (%s), retrying", instance.key, attempts, failure)


def _timed_out(instance: JobInstance, step: str, attempts: int, outputs) -> InstanceOutcome:
    return InstanceOutcome(
        RunState.FAILED,
        reason=Reason.TIMEOUT.value,
        detail=f"timed out after {instance.timeout_minutes} minutes in step '{step}'",
        attempts=attempts,
        outputs=outputs,
    )


# ----------------------------------------------------------------------
# Coordinator side: single writer of the state table
# ----------------------------------------------------------------------

@dataclass
class _Slot:
    instance: JobInstance
    job: Job
    state: RunState = RunState.PENDING
    unresolved: int = 0
    reason: Optional[str] = None
    detail: Optional[str] = None
    started: Optional[float] = None
    finished: Optional[float] = None
    attempts: int = 0
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    cancel: threading.Event = field(default_factory=threading.Event)
    cancel_reason: Optional[str] = None
    cancel_detail: Optional[str] = None

    @property
    def duration(self) -> float:
        if self.started is None:
            return 0.0
        return (self.finished or time.monotonic()) - self.started


def aggregate(states: Iterable[RunState]) -> RunState:
    """
    Job-level outcome seen by dependents: Failed if any instance failed,
    Cancelled if any was cancelled, Skipped if all were skipped, otherwise
    Succeeded.
    """
    states = list(states)
    if any(s is RunState.FAILED for s in states):
        return RunState.FAILED
    if any(s is RunState.CANCELLED for s in states):
        return RunState.CANCELLED
    if all(s is RunState.SKIPPED for s in states):
        return RunState.SKIPPED
    return RunState.SUCCEEDED


class Scheduler:
    """
    Drives one workflow run to completion.

    The thread calling `run()` is the only writer of instance state; worker
    threads report through futures. `cancel()` and `snapshot()` may be
    called from any thread.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        trigger: TriggerContext,
        *,
        executor: Optional[Executor] = None,
        config: Optional[EngineConfig] = None,
        sinks: Iterable[EventSink] = (),
    ):
        self.workflow = workflow
        self.trigger = trigger
        self.config = config or EngineConfig()
        self.executor = executor or SubprocessExecutor(self.config)
        self.sinks: List[EventSink] = list(sinks)

        self._lock = threading.Lock()
        self._abort = threading.Event()
        self._abort_handled = False
        self._abort_detail: Optional[str] = None
        self.interrupted = False

        expanded = expand_all(
            workflow.jobs,
            env=workflow.env,
            trigger=trigger,
            default_timeout_minutes=self.config.default_timeout_minutes,
        )
        self.slots: List[_Slot] = []
        self.by_job: Dict[str, List[_Slot]] = {}
        for job_id, instances in expanded.items():
            job = workflow.jobs[job_id]
            self.by_job[job_id] = [
                _Slot(instance=i, job=job, unresolved=len(job.needs)) for i in instances
            ]
            self.slots.extend(self.by_job[job_id])
        self.slots.sort(key=lambda s: s.instance.index)

        self.remaining: Dict[str, int] = {j: len(s) for j, s in self.by_job.items()}
        self.outcomes: Dict[str, UpstreamOutcome] = {}
        self.ready: List[_Slot] = []

    # -------------------- public --------------------

    def cancel(self, reason: str = "run cancelled") -> None:
        """Request run-level cancellation (e.g. a superseding push)."""
        logger.info("cancellation requested: %s", reason)
        self._abort_detail = reason
        self._abort.set()

    @property
    def cancelled(self) -> bool:
        return self._abort.is_set()

    def snapshot(self) -> Dict[str, RunState]:
        with self._lock:
            return {s.instance.key: s.state for s in self.slots}

    def run(self) -> RunReport:
        started_at = datetime.now(timezone.utc)
        matched, trigger_detail = trigger_decision(self.workflow.triggers, self.trigger)
        logger.info("%s: %s", self.workflow.name, trigger_detail)

        if not matched:
            for slot in self.slots:
                self._transition(slot, RunState.SKIPPED, Reason.EVENT_NOT_CONFIGURED, trigger_detail)
        else:
            self._drive()

        return self._report(started_at, trigger_detail)

    # -------------------- main loop --------------------

    def _drive(self) -> None:
        for slot in self.slots:
            if slot.state is RunState.PENDING:
                if slot.unresolved == 0:
                    self._resolve(slot)
                else:
                    self._transition(slot, RunState.BLOCKED)

        in_flight: Dict[Future, _Slot] = {}
        with ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="jobgraph"
        ) as pool:
            while True:
                self._dispatch(pool, in_flight)
                if not in_flight and not self.ready:
                    break

                try:
                    done, _ = wait(
                        list(in_flight), timeout=self.config.poll_interval, return_when=FIRST_COMPLETED
                    )
                except KeyboardInterrupt:
                    self.interrupted = True
                    self.cancel("interrupted")
                    continue

                for fut in sorted(done, key=lambda f: in_flight[f].instance.index):
                    slot = in_flight.pop(fut)
                    self._complete(slot, fut)

        stuck = [s.instance.key for s in self.slots if not s.state.terminal]
        if stuck:
            raise RuntimeError(f"scheduler finished with non-terminal instances: {stuck}")

    def _dispatch(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, _Slot]) -> None:
        if self._abort.is_set() and not self._abort_handled:
            self._abort_all()

        still_ready: List[_Slot] = []
        for slot in sorted(self.ready, key=lambda s: s.instance.index):
            if slot.state is not RunState.READY:
                continue
            if len(in_flight) >= self.config.max_workers:
                still_ready.append(slot)
                continue
            limit = slot.job.max_parallel
            if limit is not None:
                running = sum(1 for s in self.by_job[slot.job.id] if s.state is RunState.RUNNING)
                if running >= limit:
                    still_ready.append(slot)
                    continue

            self._transition(slot, RunState.RUNNING)
            slot.started = time.monotonic()
            fut = pool.submit(
                run_instance, slot.instance, self.executor, slot.cancel, retries=slot.job.retries
            )
            in_flight[fut] = slot
        self.ready = still_ready

    def _complete(self, slot: _Slot, fut: Future) -> None:
        slot.finished = time.monotonic()
        try:
            outcome: InstanceOutcome = fut.result()
        except Exception as e:
            logger.exception("[%s] executor crashed", slot.instance.key)
            outcome = InstanceOutcome(
                RunState.FAILED, reason=Reason.LAUNCH_FAILED.value, detail=f"{type(e).__name__}: {e}"
            )

        slot.attempts = outcome.attempts
        slot.exit_code = outcome.exit_code
        slot.outputs = dict(outcome.outputs)

        state, reason, detail = outcome.state, outcome.reason, outcome.detail
        if slot.cancel_reason is not None and state is not RunState.FAILED:
            # a cancelled sibling must never be reported as succeeded
            state, reason, detail = RunState.CANCELLED, slot.cancel_reason, slot.cancel_detail
        elif state is RunState.CANCELLED and reason is None:
            reason = slot.cancel_reason or Reason.ABORTED.value

        self._transition(slot, state, reason, detail)
        if state is RunState.FAILED and slot.job.fail_fast:
            self._cancel_siblings(slot)
        self._on_terminal(slot)

    # -------------------- readiness --------------------

    def _resolve(self, slot: _Slot) -> None:
        """
        All dependency jobs are terminal: decide Ready, Skipped or Cancelled.

        Once the run is cancelled only instances whose condition still holds
        (`always()`, `cancelled()`) become Ready; the rest are Cancelled.
        """
        aborted = self._abort.is_set()
        upstream = {need: self.outcomes[need] for need in slot.job.needs}
        try:
            ok = self._eligible(slot, upstream, aborted)
        except ConditionError as e:
            logger.warning("[%s] condition error: %s", slot.instance.key, e)
            if aborted:
                self._transition(slot, RunState.CANCELLED, Reason.ABORTED, self._abort_detail)
            else:
                self._transition(slot, RunState.SKIPPED, Reason.UNDEFINED_REFERENCE, str(e))
            self._on_terminal(slot)
            return

        if ok:
            self._transition(slot, RunState.READY)
            self.ready.append(slot)
            return

        if aborted:
            self._transition(slot, RunState.CANCELLED, Reason.ABORTED, self._abort_detail)
        elif any(o.result is not RunState.SUCCEEDED for o in upstream.values()):
            detail = ", ".join(
                f"{n}={o.result.value}" for n, o in upstream.items() if o.result is not RunState.SUCCEEDED
            )
            self._transition(slot, RunState.SKIPPED, Reason.NEEDS_NOT_SUCCESSFUL, detail)
        else:
            self._transition(slot, RunState.SKIPPED, Reason.CONDITION_FALSE, slot.job.condition)
        self._on_terminal(slot)

    def _eligible(self, slot: _Slot, upstream: Dict[str, UpstreamOutcome], aborted: bool) -> bool:
        return evaluate(
            slot.job.condition,
            self.trigger,
            upstream,
            matrix=slot.instance.matrix,
            env=slot.instance.env,
            run_cancelled=aborted,
        )

    def _on_terminal(self, slot: _Slot) -> None:
        job_id = slot.job.id
        self.remaining[job_id] -= 1
        if self.remaining[job_id] > 0:
            return

        slots = self.by_job[job_id]
        outputs: Dict[str, str] = {}
        for s in slots:
            outputs.update(s.outputs)
        self.outcomes[job_id] = UpstreamOutcome(result=aggregate(s.state for s in slots), outputs=outputs)
        logger.debug("job %s resolved: %s", job_id, self.outcomes[job_id].result.value)

        for dependent in self.workflow.dependents(job_id):
            for d in self.by_job[dependent]:
                d.unresolved -= 1
                if d.unresolved == 0 and d.state in (RunState.PENDING, RunState.BLOCKED):
                    self._resolve(d)

    # -------------------- cancellation --------------------

    def _cancel_siblings(self, failed: _Slot) -> None:
        for s in self.by_job[failed.job.id]:
            if s is failed or s.state.terminal:
                continue
            detail = f"sibling {failed.instance.key} failed"
            if s.state is RunState.RUNNING:
                s.cancel_reason = Reason.FAIL_FAST.value
                s.cancel_detail = detail
                s.cancel.set()
            else:
                self._transition(s, RunState.CANCELLED, Reason.FAIL_FAST, detail)
                self._on_terminal(s)

    def _abort_all(self) -> None:
        """
        Apply a run-level cancel: signal running instances and re-check Ready
        ones with `cancelled()` true. Blocked instances are decided by
        `_resolve` once their dependencies settle.
        """
        self._abort_handled = True
        for s in list(self.slots):
            if s.state is RunState.RUNNING:
                if s.cancel_reason is None:
                    s.cancel_reason = Reason.ABORTED.value
                    s.cancel_detail = self._abort_detail
                s.cancel.set()
            elif s.state is RunState.READY:
                upstream = {need: self.outcomes[need] for need in s.job.needs}
                try:
                    keep = self._eligible(s, upstream, True)
                except ConditionError as e:
                    logger.warning("[%s] condition error: %s", s.instance.key, e)
                    keep = False
                if not keep:
                    self._transition(s, RunState.CANCELLED, Reason.ABORTED, self._abort_detail)
                    self._on_terminal(s)

    # -------------------- state table --------------------

    def _transition(self, slot: _Slot, new: RunState, reason=None, detail: Optional[str] = None) -> None:
        old = slot.state
        if new not in ALLOWED_TRANSITIONS[old]:
            raise RuntimeError(f"illegal transition for {slot.instance.key}: {old.value} -> {new.value}")
        reason_s = reason.value if isinstance(reason, Reason) else reason
        with self._lock:
            slot.state = new
            if new.terminal:
                slot.reason = reason_s
                slot.detail = detail
                if slot.started is not None and slot.finished is None:
                    slot.finished = time.monotonic()

        event = TransitionEvent(
            job=slot.job.id,
            instance=slot.instance.key,
            coordinate=slot.instance.coordinate,
            old=old,
            new=new,
            timestamp=datetime.now(timezone.utc),
            reason=reason_s,
            detail=detail,
        )
        for sink in self.sinks:
            try:
                sink(event)
            except Exception:
                logger.exception("event sink %r failed", sink)

    def _report(self, started_at: datetime, trigger_detail: str) -> RunReport:
        instances = [
            InstanceReport(
                job=s.job.id,
                instance=s.instance.key,
                name=s.instance.name,
                coordinate=s.instance.matrix,
                state=s.state,
                reason=s.reason,
                detail=s.detail,
                duration_seconds=round(s.duration, 3),
                attempts=s.attempts,
                exit_code=s.exit_code,
                outputs=s.outputs,
            )
            for s in self.slots
        ]
        return RunReport(
            workflow=self.workflow.name,
            status=run_status([s.state for s in self.slots]),
            event=self.trigger.event.value,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            trigger_detail=trigger_detail,
            instances=instances,
        )


def run_workflow(
    workflow: WorkflowDefinition,
    trigger: TriggerContext,
    *,
    executor: Optional[Executor] = None,
    config: Optional[EngineConfig] = None,
    sinks: Iterable[EventSink] = (),
) -> RunReport:
    """Run a loaded workflow for one trigger event and return its report."""
    return Scheduler(workflow, trigger, executor=executor, config=config, sinks=sinks).run()
