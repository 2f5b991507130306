"""Console output formatting utilities for jobgraph."""

from __future__ import annotations

import sys
import traceback
from datetime import datetime
from typing import Iterable, Optional, Sequence, Tuple

from jobgraph.errors import ValidationError
from jobgraph.events import TransitionEvent
from jobgraph.model import JobInstance, RunState
from jobgraph.report import RunReport

_STATUS_LABELS = {
    RunState.SUCCEEDED: "SUCCESS",
    RunState.FAILED: "FAILED",
    RunState.SKIPPED: "SKIPPED",
    RunState.CANCELLED: "CANCELLED",
}


class Console:
    """
    Human-facing output of the CLI.

    `debug` adds tracebacks and transition details; `verbose` prints every
    state transition instead of only starts and terminal states.
    """

    def __init__(self, debug: bool = False, verbose: bool = False):
        self.debug = debug
        self.verbose = verbose

    def print_header(self, title: str) -> None:
        print(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(self, workflow: str, event: str, job_count: int, instance_count: int) -> None:
        print(f"\nRUN STARTED: {workflow}")
        print(f"Event: {event}  Jobs: {job_count}  Instances: {instance_count}\n")

    def print_transition(self, event: TransitionEvent) -> None:
        """Print a state change. Only starts and terminal states unless verbose."""
        if not self.verbose and event.new is not RunState.RUNNING and not event.new.terminal:
            return
        if event.new is RunState.RUNNING:
            print(f"JOB STARTED: {event.instance}")
            return
        line = f"{_STATUS_LABELS.get(event.new, event.new.value.upper())}: {event.instance}"
        if event.reason:
            line += f" ({event.reason})"
        print(line)
        if event.detail and (self.debug or event.new is RunState.FAILED):
            print(f"  {event.detail.splitlines()[0]}")

    def print_plan(
        self,
        workflow: str,
        triggered: bool,
        trigger_detail: str,
        levels: list[list[str]],
        instances: dict[str, tuple[JobInstance, ...]],
        schedules: Sequence[Tuple[str, Optional[datetime]]] = (),
    ) -> None:
        """Print the expanded plan without executing it."""
        self.print_header(f"PLAN: {workflow}")
        print(f"Trigger: {'yes' if triggered else 'no'} ({trigger_detail})")
        for cron, upcoming in schedules:
            when = f"next {upcoming:%Y-%m-%d %H:%M} UTC" if upcoming else "never fires"
            print(f"Schedule: {cron} ({when})")
        for idx, level in enumerate(levels, start=1):
            print(f"\nStage {idx}:")
            for job_id in level:
                for inst in instances.get(job_id, ()):
                    timeout = f", timeout {inst.timeout_minutes:g}m" if inst.timeout_minutes else ""
                    print(f"  {inst.key}  \"{inst.name}\"  ({len(inst.steps)} steps{timeout})")

    def print_results(self, report: RunReport) -> None:
        rule = "=" * 40
        print(f"\n{rule}\nRESULTS\n{rule}")
        for inst in report.instances:
            status = _STATUS_LABELS.get(inst.state, inst.state.value.upper())
            extra = f" [{inst.reason}]" if inst.reason else ""
            print(f"  {inst.instance}: {status}{extra} {inst.duration_seconds:.1f}s")
        print(f"\nRun: {report.status.value.upper()} in {report.duration_seconds:.1f}s")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Structured error block on stderr: title, message, indented details, hint."""
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or ())
        if suggestion:
            lines.append(f"\n{suggestion}")
        sys.stderr.write("\n".join(lines) + "\n")

    def print_validation_error(self, exc: ValidationError) -> None:
        where = f" ({exc.location})" if exc.location else ""
        self.print_error(
            "Invalid workflow",
            f"{exc.message}{where}",
            details=exc.problems,
            suggestion="Fix the workflow and check it with:\n  jobgraph validate",
        )

    def print_exception(self, exc: BaseException) -> None:
        """One-line error, or the full traceback in debug mode."""
        if not self.debug:
            sys.stderr.write(f"Error: {type(exc).__name__}: {exc}\n")
            return
        traceback.print_exception(type(exc), exc, exc.__traceback__)

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            sys.stderr.write(f"[DEBUG] {message}\n")


# Set by the CLI group callback; library code falls back to a plain console.
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
