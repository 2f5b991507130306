# matrix.py
from __future__ import annotations

import itertools
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .model import Job, JobInstance, Matrix, Scalar, TriggerContext, format_value

logger = logging.getLogger(__name__)

_EXPR_RE = re.compile(r"\$\{\{\s*([A-Za-z_][\w\-]*(?:\.[\w\-]+)*)\s*\}\}")
_ENV_NAME_RE = re.compile(r"[^A-Za-z0-9_]")


def _same(a: Scalar, b: Scalar) -> bool:
    # 1 == True in Python; matrix values must not conflate them
    return a == b and isinstance(a, bool) == isinstance(b, bool)


def _matches(combo: Mapping[str, Scalar], entry: Mapping[str, Scalar], keys) -> bool:
    return all(k in combo and _same(combo[k], entry[k]) for k in keys)


def combinations(matrix: Matrix) -> List[Dict[str, Scalar]]:
    """
    Ordered list of matrix combinations.

    1. Cartesian product of the axes (declaration order, first axis slowest).
    2. Base combinations matching an `exclude` entry are dropped.
    3. Each `include` entry augments every base combination it matches with
       its extra variables; an entry matching none is appended on its own.
    """
    names = matrix.axis_names
    if names:
        base = [dict(zip(names, values)) for values in itertools.product(*(v for _, v in matrix.axes))]
    else:
        base = []

    base = [c for c in base if not any(_matches(c, ex, ex.keys()) for ex in matrix.exclude)]
    originals = len(base)
    result = [dict(c) for c in base]

    for entry in matrix.include:
        axis_keys = [k for k in entry if k in names]
        extras = {k: v for k, v in entry.items() if k not in names}
        matched = False
        for combo in result[:originals]:
            if _matches(combo, entry, axis_keys):
                combo.update(extras)
                matched = True
        if not matched:
            result.append(dict(entry))

    return result


def substitute(
    text: str,
    *,
    matrix: Optional[Mapping[str, Scalar]] = None,
    env: Optional[Mapping[str, str]] = None,
    trigger: Optional[TriggerContext] = None,
) -> str:
    """
    Replace `${{ matrix.x }}`, `${{ env.X }}` and `${{ github.* }}` in text.

    Unknown references become the empty string.
    """
    if not isinstance(text, str) or "${{" not in text:
        return text
    matrix = matrix or {}
    env = env or {}

    def _lookup(m: "re.Match[str]") -> str:
        path = m.group(1).split(".")
        root, rest = path[0], path[1:]
        if root == "matrix" and len(rest) == 1 and rest[0] in matrix:
            return format_value(matrix[rest[0]])
        if root == "env" and len(rest) == 1 and rest[0] in env:
            return env[rest[0]]
        if root == "github" and trigger is not None and len(rest) == 1:
            known = {
                "event_name": trigger.event.value,
                "ref": trigger.ref or "",
                "ref_name": trigger.branch or "",
                "actor": trigger.actor or "",
                "sha": trigger.sha or "",
            }
            if rest[0] in known:
                return known[rest[0]]
        logger.debug("substituting empty string for %s", m.group(0))
        return ""

    return _EXPR_RE.sub(_lookup, text)


def matrix_env(coordinate: Mapping[str, Scalar]) -> Dict[str, str]:
    return {
        "MATRIX_" + _ENV_NAME_RE.sub("_", k).upper(): format_value(v)
        for k, v in coordinate.items()
    }


def _display_name(job: Job, combo: Mapping[str, Scalar], env, trigger) -> str:
    if job.name:
        return substitute(job.name, matrix=combo, env=env, trigger=trigger)
    if not combo:
        return job.id
    return f"{job.id} ({', '.join(format_value(v) for v in combo.values())})"


def expand(
    job: Job,
    *,
    env: Optional[Mapping[str, str]] = None,
    trigger: Optional[TriggerContext] = None,
    start_index: int = 0,
    default_timeout_minutes: Optional[float] = None,
) -> Tuple[JobInstance, ...]:
    """
    Materialize the instances of `job`.

    `env` is the global environment layer. The returned instance env is
    global < job < matrix; step env stays on the step (highest layer) with
    its expressions substituted.
    """
    global_env = dict(env or {})
    combos = combinations(job.strategy.matrix) if job.strategy else [{}]

    instances: List[JobInstance] = []
    for offset, combo in enumerate(combos):
        composed = dict(global_env)
        for k, v in job.env.items():
            composed[k] = substitute(v, matrix=combo, env=composed, trigger=trigger)
        composed.update(matrix_env(combo))

        steps = tuple(
            replace(
                step,
                name=substitute(step.name, matrix=combo, env=composed, trigger=trigger),
                run=substitute(step.run, matrix=combo, env=composed, trigger=trigger)
                if step.run is not None else None,
                env={
                    k: substitute(v, matrix=combo, env=composed, trigger=trigger)
                    for k, v in step.env.items()
                },
                with_={
                    k: substitute(v, matrix=combo, env=composed, trigger=trigger)
                    for k, v in step.with_.items()
                },
            )
            for step in job.steps
        )

        instances.append(
            JobInstance(
                job_id=job.id,
                coordinate=tuple(combo.items()),
                name=_display_name(job, combo, composed, trigger),
                steps=steps,
                env=composed,
                index=start_index + offset,
                runs_on=substitute(job.runs_on, matrix=combo, env=composed, trigger=trigger)
                if job.runs_on else None,
                timeout_minutes=job.timeout_minutes
                if job.timeout_minutes is not None else default_timeout_minutes,
            )
        )

    return tuple(instances)


def expand_all(
    jobs: Mapping[str, Job],
    *,
    env: Optional[Mapping[str, str]] = None,
    trigger: Optional[TriggerContext] = None,
    default_timeout_minutes: Optional[float] = None,
) -> Dict[str, Tuple[JobInstance, ...]]:
    """Expand every job in declaration order with run-wide discovery indexes."""
    out: Dict[str, Tuple[JobInstance, ...]] = {}
    index = 0
    for job_id, job in jobs.items():
        out[job_id] = expand(
            job,
            env=env,
            trigger=trigger,
            start_index=index,
            default_timeout_minutes=default_timeout_minutes,
        )
        index += len(out[job_id])
    return out
