# loader.py
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from . import conditions
from .config import EngineConfig
from .dag import validate_acyclic
from .errors import ValidationError
from .matrix import combinations
from .model import (
    BranchFilter,
    EventKind,
    Job,
    Matrix,
    Step,
    Strategy,
    TriggerSpec,
    WorkflowDefinition,
    format_value,
)
from .triggers import CronError, parse_cron

logger = logging.getLogger(__name__)

JOB_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")

WORKFLOW_KEYS = {"name", "on", "permissions", "env", "jobs"}
JOB_KEYS = {
    "name", "needs", "if", "runs-on", "strategy", "timeout-minutes",
    "retries", "env", "permissions", "steps",
}
CALL_JOB_KEYS = {
    "name", "needs", "if", "uses", "with", "secrets", "strategy",
    "timeout-minutes", "retries", "permissions",
}
STEP_KEYS = {"name", "id", "run", "uses", "with", "env", "working-directory"}
STRATEGY_KEYS = {"matrix", "fail-fast", "max-parallel"}
EVENT_NAMES = {"push", "pull_request", "schedule", "workflow_dispatch", "manual"}


class _Problems:
    """Collects validation problems so one load reports all of them."""

    def __init__(self) -> None:
        self.items: List[str] = []

    def add(self, where: str, message: str) -> None:
        self.items.append(f"{where}: {message}")

    def raise_if_any(self, source: Optional[str]) -> None:
        if self.items:
            raise ValidationError("Invalid workflow definition", location=source, problems=self.items)


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _str_list(value: Any, where: str, problems: _Problems) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(value)
    problems.add(where, "expected a string or a list of strings")
    return ()


def _env_map(value: Any, where: str, problems: _Problems) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        problems.add(where, "env must be a mapping")
        return {}
    out: Dict[str, str] = {}
    for k, v in value.items():
        if v is not None and not _is_scalar(v):
            problems.add(f"{where}.{k}", "env values must be scalars")
            continue
        out[str(k)] = format_value(v)
    return out


def _permissions(value: Any, where: str, problems: _Problems) -> Dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, str):
        return {"*": value}
    if isinstance(value, dict):
        return {str(k): format_value(v) for k, v in value.items()}
    problems.add(where, "permissions must be a string or a mapping")
    return {}


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def _branch_filter(value: Any, where: str, problems: _Problems) -> BranchFilter:
    if value is None:
        return BranchFilter()
    if not isinstance(value, dict):
        problems.add(where, "expected a mapping with branches / branches-ignore")
        return BranchFilter()
    flt = BranchFilter(
        branches=_str_list(value.get("branches"), f"{where}.branches", problems),
        branches_ignore=_str_list(value.get("branches-ignore"), f"{where}.branches-ignore", problems),
    )
    if flt.branches and flt.branches_ignore:
        problems.add(where, "branches and branches-ignore cannot both be set")
    return flt


def _schedules(value: Any, where: str, problems: _Problems) -> Tuple[str, ...]:
    if not isinstance(value, list) or not value:
        problems.add(where, "schedule must be a non-empty list of {cron: ...} entries")
        return ()
    crons: List[str] = []
    for i, entry in enumerate(value):
        if not isinstance(entry, dict) or not isinstance(entry.get("cron"), str):
            problems.add(f"{where}[{i}]", "expected {cron: '<5-field expression>'}")
            continue
        try:
            parse_cron(entry["cron"])
        except CronError as e:
            problems.add(f"{where}[{i}]", str(e))
            continue
        crons.append(entry["cron"])
    return tuple(crons)


def parse_triggers(raw: Any, problems: _Problems) -> TriggerSpec:
    if raw is None:
        problems.add("on", "workflow must declare at least one trigger")
        return TriggerSpec()
    if isinstance(raw, str):
        raw = {raw: None}
    elif isinstance(raw, list):
        if not all(isinstance(e, str) for e in raw):
            problems.add("on", "trigger list must contain event names")
            return TriggerSpec()
        raw = {e: None for e in raw}
    elif not isinstance(raw, dict):
        problems.add("on", "expected an event name, a list, or a mapping")
        return TriggerSpec()

    push = pull_request = None
    schedules: Tuple[str, ...] = ()
    manual = False
    for name, value in raw.items():
        if name not in EVENT_NAMES:
            logger.warning("ignoring unsupported trigger event %r", name)
            continue
        kind = EventKind.parse(name)
        if kind is EventKind.PUSH:
            push = _branch_filter(value, "on.push", problems)
        elif kind is EventKind.PULL_REQUEST:
            pull_request = _branch_filter(value, "on.pull_request", problems)
        elif kind is EventKind.SCHEDULE:
            schedules = _schedules(value, "on.schedule", problems)
        else:
            manual = True
    return TriggerSpec(push=push, pull_request=pull_request, schedules=schedules, manual=manual)


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def _parse_matrix(raw: Any, where: str, problems: _Problems) -> Optional[Matrix]:
    if not isinstance(raw, dict) or not raw:
        problems.add(where, "matrix must be a non-empty mapping")
        return None

    axes: List[Tuple[str, Tuple[Any, ...]]] = []
    entries: Dict[str, Tuple[Mapping[str, Any], ...]] = {"include": (), "exclude": ()}
    for key, value in raw.items():
        key = str(key)
        if key in entries:
            if not isinstance(value, list) or not all(
                isinstance(e, dict) and e and all(_is_scalar(v) for v in e.values()) for e in value
            ):
                problems.add(f"{where}.{key}", "expected a list of non-empty mappings of scalars")
                continue
            entries[key] = tuple({str(k): v for k, v in e.items()} for e in value)
            continue
        if not isinstance(value, list) or not value:
            problems.add(f"{where}.{key}", "axis must be a non-empty list")
            continue
        if not all(_is_scalar(v) for v in value):
            problems.add(f"{where}.{key}", "axis values must be scalars")
            continue
        rendered = [f"{type(v).__name__}:{v}" for v in value]
        if len(set(rendered)) != len(rendered):
            problems.add(f"{where}.{key}", "axis values must be unique")
            continue
        axes.append((key, tuple(value)))

    names = {n for n, _ in axes}
    for i, ex in enumerate(entries["exclude"]):
        stray = sorted(set(ex) - names)
        if stray:
            problems.add(f"{where}.exclude[{i}]", f"keys {stray} are not matrix axes")

    matrix = Matrix(axes=tuple(axes), include=entries["include"], exclude=entries["exclude"])
    combos = combinations(matrix)
    if not combos:
        problems.add(where, "matrix expands to no combinations")
    coords = [tuple(sorted((k, format_value(v)) for k, v in c.items())) for c in combos]
    if len(set(coords)) != len(coords):
        problems.add(where, "matrix produces duplicate combinations")
    return matrix


def _parse_strategy(raw: Any, where: str, problems: _Problems) -> Optional[Strategy]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        problems.add(where, "strategy must be a mapping")
        return None
    for key in sorted(set(raw) - STRATEGY_KEYS):
        problems.add(f"{where}.{key}", "unknown strategy key")
    if "matrix" not in raw:
        problems.add(where, "strategy requires a matrix")
        return None
    fail_fast = raw.get("fail-fast", True)
    if not isinstance(fail_fast, bool):
        problems.add(f"{where}.fail-fast", "must be a boolean")
        fail_fast = True
    max_parallel = raw.get("max-parallel")
    if max_parallel is not None and (
        not isinstance(max_parallel, int) or isinstance(max_parallel, bool) or max_parallel < 1
    ):
        problems.add(f"{where}.max-parallel", "must be a positive integer")
        max_parallel = None
    matrix = _parse_matrix(raw["matrix"], f"{where}.matrix", problems)
    if matrix is None:
        return None
    return Strategy(matrix=matrix, fail_fast=fail_fast, max_parallel=max_parallel)


def _parse_step(raw: Any, where: str, index: int, problems: _Problems) -> Optional[Step]:
    if not isinstance(raw, dict):
        problems.add(where, "step must be a mapping")
        return None
    for key in sorted(set(raw) - STEP_KEYS):
        problems.add(f"{where}.{key}", "unknown step key")
    run, uses = raw.get("run"), raw.get("uses")
    if (run is None) == (uses is None):
        problems.add(where, "step needs exactly one of `run` or `uses`")
        return None
    if run is not None and not isinstance(run, str):
        problems.add(f"{where}.run", "must be a string")
        return None
    if uses is not None and not isinstance(uses, str):
        problems.add(f"{where}.uses", "must be a string")
        return None
    with_ = raw.get("with") or {}
    if not isinstance(with_, dict):
        problems.add(f"{where}.with", "must be a mapping")
        with_ = {}
    default_name = (run.strip().splitlines()[0] if run and run.strip() else uses) or f"step {index + 1}"
    return Step(
        name=str(raw.get("name") or default_name),
        run=run,
        uses=uses,
        env=_env_map(raw.get("env"), f"{where}.env", problems),
        cwd=raw.get("working-directory"),
        id=raw.get("id"),
        with_={str(k): format_value(v) for k, v in with_.items()},
    )


def _called_workflow_step(raw: Dict[str, Any], where: str, problems: _Problems) -> Optional[Step]:
    """
    A job-level `uses` runs as one action step resolved through the engine's
    action table. Its outputs become the job's outputs.
    """
    uses = raw["uses"]
    if not isinstance(uses, str) or not uses.strip():
        problems.add(f"{where}.uses", "must be a non-empty string")
        return None
    with_ = raw.get("with") or {}
    if not isinstance(with_, dict):
        problems.add(f"{where}.with", "must be a mapping")
        with_ = {}
    if raw.get("secrets") is not None:
        logger.debug("%s: secrets are not passed to local workflow calls", where)
    return Step(name=uses, uses=uses, with_={str(k): format_value(v) for k, v in with_.items()})


def parse_job(job_id: str, raw: Any, problems: _Problems) -> Optional[Job]:
    where = f"jobs.{job_id}"
    if not JOB_ID_RE.match(job_id):
        problems.add(where, "job id must start with a letter or '_' and contain only [A-Za-z0-9_-]")
    if not isinstance(raw, dict):
        problems.add(where, "job must be a mapping")
        return None
    called = "uses" in raw
    for key in sorted(set(raw) - (CALL_JOB_KEYS if called else JOB_KEYS)):
        if called and key in JOB_KEYS:
            problems.add(f"{where}.{key}", "not allowed on a job that calls a workflow with `uses`")
        else:
            problems.add(f"{where}.{key}", "unknown job key")

    needs: List[str] = []
    for need in _str_list(raw.get("needs"), f"{where}.needs", problems):
        if need not in needs:
            needs.append(need)

    condition = raw.get("if")
    if isinstance(condition, bool):
        condition = "true" if condition else "false"
    if condition is not None:
        if not isinstance(condition, str):
            problems.add(f"{where}.if", "must be a string expression")
            condition = None
        else:
            try:
                conditions.parse(condition)
            except conditions.ConditionSyntaxError as e:
                problems.add(f"{where}.if", str(e))

    timeout = raw.get("timeout-minutes")
    if timeout is not None and (not _is_number(timeout) or timeout <= 0):
        problems.add(f"{where}.timeout-minutes", "must be a positive number")
        timeout = None

    retries = raw.get("retries", 0)
    if not isinstance(retries, int) or isinstance(retries, bool) or retries < 0:
        problems.add(f"{where}.retries", "must be a non-negative integer")
        retries = 0

    runs_on = raw.get("runs-on")
    if isinstance(runs_on, list):
        runs_on = ",".join(str(r) for r in runs_on)
    elif runs_on is not None and not isinstance(runs_on, str):
        problems.add(f"{where}.runs-on", "must be a string or a list of labels")
        runs_on = None

    if called:
        steps = [_called_workflow_step(raw, where, problems)]
    else:
        raw_steps = raw.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            problems.add(f"{where}.steps", "job must have a non-empty list of steps")
            raw_steps = []
        steps = [_parse_step(s, f"{where}.steps[{i}]", i, problems) for i, s in enumerate(raw_steps)]

    name = raw.get("name")
    return Job(
        id=job_id,
        name=str(name) if name is not None else None,
        steps=tuple(s for s in steps if s is not None),
        needs=tuple(needs),
        condition=condition,
        runs_on=runs_on,
        strategy=_parse_strategy(raw.get("strategy"), f"{where}.strategy", problems),
        timeout_minutes=float(timeout) if timeout is not None else None,
        retries=retries,
        env=_env_map(raw.get("env"), f"{where}.env", problems),
        permissions=_permissions(raw.get("permissions"), f"{where}.permissions", problems),
    )


# ---------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------

def parse_workflow(
    data: Any,
    *,
    config: Optional[EngineConfig] = None,
    source: Optional[str] = None,
) -> WorkflowDefinition:
    """
    Validate a raw mapping and build the immutable WorkflowDefinition.

    Raises ValidationError listing every problem found. The engine config's
    `env` is the lowest environment layer, below the workflow `env`.
    """
    config = config or EngineConfig()
    problems = _Problems()

    if not isinstance(data, dict):
        raise ValidationError(
            f"workflow root must be a mapping, got {type(data).__name__}", location=source
        )

    # YAML 1.1 reads a bare `on` key as boolean True
    if True in data and "on" not in data:
        data = {("on" if k is True else k): v for k, v in data.items()}

    for key in sorted(str(k) for k in set(data) - WORKFLOW_KEYS):
        problems.add(key, "unknown workflow key")

    triggers = parse_triggers(data.get("on"), problems)
    env = dict(config.env)
    env.update(_env_map(data.get("env"), "env", problems))
    permissions = _permissions(data.get("permissions"), "permissions", problems)

    raw_jobs = data.get("jobs")
    jobs: Dict[str, Job] = {}
    if not isinstance(raw_jobs, dict) or not raw_jobs:
        problems.add("jobs", "workflow must define a non-empty `jobs` mapping")
    else:
        for job_id, raw in raw_jobs.items():
            job = parse_job(str(job_id), raw, problems)
            if job is not None:
                jobs[job.id] = job

    problems.raise_if_any(source)
    validate_acyclic(jobs.values())

    return WorkflowDefinition(
        jobs=jobs,
        name=str(data.get("name") or (Path(source).stem if source else "workflow")),
        env=env,
        permissions=permissions,
        triggers=triggers,
        source=source,
    )


def load_workflow(path: str | Path, *, config: Optional[EngineConfig] = None) -> WorkflowDefinition:
    """Load and validate a workflow from a YAML file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ValidationError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix not in (".yml", ".yaml"):
        raise ValidationError(f"Workflow must be a .yml/.yaml file, got: {wf_path.name}")

    with wf_path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid YAML: {e}", location=str(wf_path))

    return parse_workflow(data, config=config, source=str(wf_path))


def load_workflow_text(text: str, *, config: Optional[EngineConfig] = None) -> WorkflowDefinition:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"invalid YAML: {e}")
    return parse_workflow(data, config=config)
