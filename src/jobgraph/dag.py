# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ValidationError
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the job-level DAG.

    Requires:
      - job.id: str (unique)
      - job.needs: job ids that must reach a terminal state BEFORE this job

    Returns (adj, indeg) where adj maps a job to its dependents.
    """
    jobs = list(jobs)
    names = [j.id for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValidationError(f"Duplicate job ids: {dupes}", location="jobs")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    problems: List[str] = []
    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                problems.append(
                    f"job '{job.id}' needs missing job '{need}' (known jobs: {sorted(name_set)})"
                )
                continue
            if need == job.id:
                problems.append(f"job '{job.id}' needs itself")
                continue
            # Edge need -> job (need must finish before job)
            if job.id not in adj[need]:
                adj[need].add(job.id)
                indeg[job.id] += 1

    if problems:
        raise ValidationError("Unresolved `needs` references", location="jobs", problems=problems)

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Jobs in one level have no edges between them.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ValidationError(
            "Dependency cycle in `needs`",
            location="jobs",
            problems=[f"stuck jobs: {remaining}"],
        )

    return levels


def validate_acyclic(jobs: Iterable[Job]) -> List[List[str]]:
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)
