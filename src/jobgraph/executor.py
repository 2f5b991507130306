# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from .config import EngineConfig
from .errors import ExecutionError
from .model import JobInstance, Reason, Step

logger = logging.getLogger(__name__)

OUTPUT_ENV_VARS = ("JOBGRAPH_OUTPUT", "GITHUB_OUTPUT")
LOG_TAIL_CHARS = 4000


@dataclass
class StepResult:
    """What the engine observes of one step: exit status, duration, outputs."""
    exit_code: int
    duration: float = 0.0
    outputs: Dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    cancelled: bool = False
    log: str = ""


class Executor(ABC):
    """
    Runs one step of a job instance in an isolated environment.

    `env` is the instance environment (global < job < matrix); the step's
    own `env` is layered on top by the executor. Implementations must
    return promptly once `cancel` is set or `timeout` seconds elapse, and
    raise ExecutionError(reason="launch_failed") when the step cannot start.
    An executor that loses its step to an outside cancellation may raise
    CancellationError instead of returning a result.
    """

    @abstractmethod
    def run_step(
        self,
        instance: JobInstance,
        step: Step,
        env: Mapping[str, str],
        *,
        timeout: Optional[float],
        cancel: threading.Event,
    ) -> StepResult:
        raise NotImplementedError


def parse_outputs(text: str) -> Dict[str, str]:
    """
    Parse an outputs file: `key=value` lines, or multi-line values as

        key<<DELIM
        ...
        DELIM
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, _, delim = line.partition("<<")
            body = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # delimiter
            outputs[key.strip()] = "\n".join(body)
            continue
        if "=" in line:
            key, _, value = line.partition("=")
            outputs[key.strip()] = value
    return outputs


class SubprocessExecutor(Executor):
    """Runs steps as local shell commands."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.root = Path(self.config.workdir).resolve()

    def command_for(self, step: Step) -> str:
        if step.run is not None:
            return step.run
        action = (step.uses or "").split("@", 1)[0]
        command = self.config.actions.get(step.uses or "") or self.config.actions.get(action)
        if command is None:
            raise ExecutionError(
                reason=Reason.LAUNCH_FAILED.value,
                message=f"no local command configured for action '{step.uses}'",
                step=step.name,
            )
        return command

    def build_env(self, env: Mapping[str, str], step: Step) -> Dict[str, str]:
        full = os.environ.copy() if self.config.inherit_env else {}
        full.update(env)
        full.update(step.env)
        for k, v in step.with_.items():
            full[f"INPUT_{k.upper().replace(' ', '_').replace('-', '_')}"] = v
        return full

    def run_step(self, instance, step, env, *, timeout, cancel):
        cwd = (self.root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise ExecutionError(
                reason=Reason.LAUNCH_FAILED.value,
                message=f"[{instance.key}] step '{step.name}' cwd not found: {cwd}",
                step=step.name,
            )
        command = self.command_for(step)

        with tempfile.TemporaryDirectory(prefix="jobgraph-") as tmp:
            out_file = Path(tmp) / "outputs"
            log_file = Path(tmp) / "log"
            out_file.touch()
            full_env = self.build_env(env, step)
            for name in OUTPUT_ENV_VARS:
                full_env[name] = str(out_file)

            start = time.monotonic()
            with log_file.open("w", encoding="utf-8") as log:
                try:
                    proc = subprocess.Popen(
                        command,
                        shell=True,
                        executable=self.config.shell,
                        cwd=str(cwd),
                        env=full_env,
                        stdout=log,
                        stderr=subprocess.STDOUT,
                        text=True,
                        start_new_session=os.name == "posix",
                    )
                except OSError as e:
                    raise ExecutionError(
                        reason=Reason.LAUNCH_FAILED.value,
                        message=f"could not start step '{step.name}': {e}",
                        step=step.name,
                    )
                timed_out, cancelled = self._wait(proc, timeout, cancel, start)

            duration = time.monotonic() - start
            tail = log_file.read_text(encoding="utf-8", errors="replace")[-LOG_TAIL_CHARS:]
            outputs = parse_outputs(out_file.read_text(encoding="utf-8", errors="replace"))

        logger.debug("[%s] %s exited %s in %.2fs", instance.key, step.name, proc.returncode, duration)
        return StepResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            duration=duration,
            outputs=outputs,
            timed_out=timed_out,
            cancelled=cancelled,
            log=tail,
        )

    def _wait(self, proc: subprocess.Popen, timeout, cancel: threading.Event, start: float):
        poll = self.config.poll_interval
        while True:
            try:
                proc.wait(timeout=poll)
                return False, False
            except subprocess.TimeoutExpired:
                pass
            if cancel.is_set():
                self._terminate(proc)
                return False, True
            if timeout is not None and time.monotonic() - start >= timeout:
                self._terminate(proc)
                return True, False

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the step's process group, then SIGKILL after the grace period."""
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.config.cancel_grace_seconds)
            return
        except subprocess.TimeoutExpired:
            logger.warning("process %s ignored SIGTERM, killing", proc.pid)
        self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()

    @staticmethod
    def _signal(proc: subprocess.Popen, sig) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass
