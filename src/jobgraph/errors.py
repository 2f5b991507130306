# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class JobgraphError(Exception):
    """Base class for every error raised by the engine."""


@dataclass
class ValidationError(JobgraphError):
    """
    Load-time error: the workflow definition is malformed.

    Fatal to the run. Raised before any job starts.
    """
    message: str
    location: str | None = None
    problems: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        head = f"{self.location}: {self.message}" if self.location else self.message
        if not self.problems:
            return head
        return "\n".join([head, *(f"  - {p}" for p in self.problems)])


class ConditionError(JobgraphError):
    """An `if` expression could not be evaluated for one instance."""


@dataclass
class UndefinedReference(ConditionError):
    reference: str
    message: str = ""

    def __str__(self) -> str:
        return self.message or f"undefined reference: {self.reference}"


@dataclass
class ExecutionError(JobgraphError):
    """
    Per-instance execution failure with a distinguishing reason code
    (`exit_code`, `timeout` or `launch_failed`).
    """
    reason: str
    message: str
    step: str | None = None
    exit_code: Optional[int] = None

    def __str__(self) -> str:
        parts = [f"{self.reason}: {self.message}"]
        if self.step:
            parts.append(f"step={self.step}")
        if self.exit_code is not None:
            parts.append(f"exit={self.exit_code}")
        return " ".join(parts)


@dataclass
class CancellationError(JobgraphError):
    """Instance was cancelled by fail-fast or a run-level abort."""
    reason: str
    message: str = ""

    def __str__(self) -> str:
        return self.message or f"cancelled ({self.reason})"
