# triggers.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from fnmatch import fnmatch
from typing import List, Optional, Set, Tuple

from .model import BranchFilter, EventKind, TriggerContext, TriggerSpec

logger = logging.getLogger(__name__)

CronFields = Tuple[Set[int], Set[int], Set[int], Set[int], Set[int]]

_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)


class CronError(ValueError):
    pass


def parse_cron(expr: str) -> CronFields:
    """
    Parse a standard 5-field cron expression into value sets.

    Supports `*`, `*/n`, `a`, `a-b`, `a-b/n` and comma lists. Day of week
    accepts 0-7 where both 0 and 7 mean Sunday.
    """
    parts = str(expr).split()
    if len(parts) != 5:
        raise CronError(f"cron expression needs 5 fields, got {len(parts)}: {expr!r}")
    sets = [_parse_field(part, lo, hi, label) for part, (label, lo, hi) in zip(parts, _FIELDS)]
    dow = {0 if v == 7 else v for v in sets[4]}
    return sets[0], sets[1], sets[2], sets[3], dow


def _parse_field(field: str, lo: int, hi: int, label: str) -> Set[int]:
    values: Set[int] = set()
    for item in field.split(","):
        if not item:
            raise CronError(f"cron {label}: empty list item in {field!r}")
        values |= _parse_item(item, lo, hi, label)
    return values


def _parse_item(item: str, lo: int, hi: int, label: str) -> Set[int]:
    base, _, step_s = item.partition("/")
    step = 1
    if step_s:
        if not step_s.isdigit() or int(step_s) <= 0:
            raise CronError(f"cron {label}: invalid step {item!r}")
        step = int(step_s)

    if base == "*":
        start, end = lo, hi
    elif "-" in base:
        a, _, b = base.partition("-")
        if not (a.isdigit() and b.isdigit()):
            raise CronError(f"cron {label}: invalid range {item!r}")
        start, end = int(a), int(b)
        if start > end:
            raise CronError(f"cron {label}: range start after end in {item!r}")
    elif base.isdigit():
        start = end = int(base)
        if step_s:
            end = hi
    else:
        raise CronError(f"cron {label}: unsupported syntax {item!r}")

    if start < lo or end > hi:
        raise CronError(f"cron {label}: {item!r} out of range {lo}-{hi}")
    return set(range(start, end + 1, step))


def _cron_weekday(moment: datetime) -> int:
    return (moment.weekday() + 1) % 7


def cron_matches(expr: str, moment: datetime) -> bool:
    minute, hour, dom, month, dow = parse_cron(expr)
    fields = str(expr).split()
    if moment.minute not in minute or moment.hour not in hour or moment.month not in month:
        return False
    # Standard cron: a day field is unrestricted only when written as `*`
    # (or `*/n`); when both are restricted, either may match.
    dom_any = fields[2].startswith("*")
    dow_any = fields[4].startswith("*")
    dom_hit = moment.day in dom
    dow_hit = _cron_weekday(moment) in dow
    if dom_any or dow_any:
        return dom_hit and dow_hit
    return dom_hit or dow_hit


def next_fire(expr: str, after: datetime) -> datetime:
    """First minute strictly after `after` that the expression matches."""
    parse_cron(expr)
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    for _ in range(60 * 24 * 366 * 4):
        if cron_matches(expr, candidate):
            return candidate
        candidate += timedelta(minutes=1)
    raise CronError(f"cron expression never fires: {expr!r}")


def _branch_allowed(flt: BranchFilter, branch: Optional[str]) -> bool:
    if flt.branches:
        return branch is not None and any(fnmatch(branch, p) for p in flt.branches)
    if flt.branches_ignore and branch is not None:
        return not any(fnmatch(branch, p) for p in flt.branches_ignore)
    return True


def trigger_decision(spec: TriggerSpec, ctx: TriggerContext) -> Tuple[bool, str]:
    """
    Decide whether `ctx` starts a workflow declaring `spec`.

    Returns (matched, explanation).
    """
    event = ctx.event
    if not spec.declares(event):
        return False, f"workflow does not trigger on '{event.value}'"

    if event is EventKind.PUSH and spec.push is not None:
        if not _branch_allowed(spec.push, ctx.branch):
            return False, f"branch '{ctx.branch}' filtered out for push"
    elif event is EventKind.PULL_REQUEST and spec.pull_request is not None:
        if not _branch_allowed(spec.pull_request, ctx.branch):
            return False, f"branch '{ctx.branch}' filtered out for pull_request"
    elif event is EventKind.SCHEDULE:
        if ctx.schedule is not None:
            wanted = " ".join(ctx.schedule.split())
            if wanted not in {" ".join(s.split()) for s in spec.schedules}:
                return False, f"schedule '{ctx.schedule}' is not declared"
        elif ctx.timestamp is not None:
            fired: List[str] = [s for s in spec.schedules if cron_matches(s, ctx.timestamp)]
            if not fired:
                return False, f"no schedule fires at {ctx.timestamp.isoformat()}"
            logger.debug("schedule fired: %s", fired)

    return True, f"triggered by '{event.value}'"
