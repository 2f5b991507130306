"""Condition evaluator for job `if` expressions.

Minimal grammar, lowest precedence first::

    expr    := or
    or      := and (('||' | 'or') and)*
    and     := not (('&&' | 'and') not)*
    not     := ('!' | 'not') not | compare
    compare := primary (('==' | '!=') primary)?
    primary := '(' expr ')' | literal | func '(' ')' | reference

A reference is a dotted path rooted at `github`, `needs`, `matrix` or `env`.
An expression that calls none of the status functions is implicitly
`success() && (expr)`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConditionError, UndefinedReference
from .model import RunState, TriggerContext, format_value

logger = logging.getLogger(__name__)

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")

RESULT_NAMES = {
    RunState.SUCCEEDED: "success",
    RunState.FAILED: "failure",
    RunState.SKIPPED: "skipped",
    RunState.CANCELLED: "cancelled",
}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>&&|\|\||==|!=|!|\(|\)|\.)
  | (?P<str>'(?:[^']|'')*'|"[^"]*")
  | (?P<num>-?\d+(?:\.\d+)?(?![\w.]))
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_WRAPPER_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


class ConditionSyntaxError(ConditionError):
    pass


Node = Tuple[Any, ...]


@dataclass(frozen=True)
class Condition:
    source: str
    tree: Node
    uses_status: bool

    @property
    def effective(self) -> Node:
        if self.uses_status:
            return self.tree
        return ("and", ("call", "success"), self.tree)


@dataclass(frozen=True)
class UpstreamOutcome:
    """Aggregate outcome of one needed job, as seen by its dependents."""
    result: RunState
    outputs: Mapping[str, str] = field(default_factory=dict)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ConditionSyntaxError(f"unexpected character {text[pos]!r} at {pos} in {text!r}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0
        self.uses_status = False

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ConditionSyntaxError(f"unexpected end of expression: {self.source!r}")
        self.pos += 1
        return tok

    def accept(self, *values: str) -> bool:
        tok = self.peek()
        if tok is not None and tok[0] in ("op", "ident") and tok[1] in values:
            self.pos += 1
            return True
        return False

    def expect(self, value: str) -> None:
        if not self.accept(value):
            got = self.peek()
            raise ConditionSyntaxError(
                f"expected {value!r} but found {got[1] if got else 'end'!r} in {self.source!r}"
            )

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionSyntaxError("empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise ConditionSyntaxError(f"unexpected {self.peek()[1]!r} in {self.source!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||", "or"):
            node = ("or", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self.accept("&&", "and"):
            node = ("and", node, self.parse_not())
        return node

    def parse_not(self) -> Node:
        if self.accept("!", "not"):
            return ("not", self.parse_not())
        return self.parse_compare()

    def parse_compare(self) -> Node:
        left = self.parse_primary()
        if self.accept("=="):
            return ("eq", left, self.parse_primary())
        if self.accept("!="):
            return ("ne", left, self.parse_primary())
        return left

    def parse_primary(self) -> Node:
        kind, value = self.take()
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if kind == "str":
            if value.startswith("'"):
                return ("lit", value[1:-1].replace("''", "'"))
            return ("lit", value[1:-1])
        if kind == "num":
            return ("lit", float(value) if "." in value else int(value))
        if kind != "ident":
            raise ConditionSyntaxError(f"unexpected {value!r} in {self.source!r}")

        lowered = value.lower()
        if lowered in ("true", "false"):
            return ("lit", lowered == "true")
        if lowered == "null":
            return ("lit", None)
        if self.accept("("):
            self.expect(")")
            if value not in STATUS_FUNCTIONS:
                raise ConditionSyntaxError(f"unknown function {value}() in {self.source!r}")
            self.uses_status = True
            return ("call", value)

        path = [value]
        while self.accept("."):
            kind, seg = self.take()
            if kind not in ("ident", "num"):
                raise ConditionSyntaxError(f"bad reference segment {seg!r} in {self.source!r}")
            path.append(seg)
        return ("ref", tuple(path))


@lru_cache(maxsize=512)
def parse(expr: str) -> Condition:
    """Parse an `if` expression. Raises ConditionSyntaxError."""
    text = str(expr)
    m = _WRAPPER_RE.match(text)
    if m:
        text = m.group(1)
    parser = _Parser(text.strip())
    tree = parser.parse()
    return Condition(source=str(expr), tree=tree, uses_status=parser.uses_status)


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0")
    return bool(value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def values_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a in (None, "") and b in (None, "")
    if isinstance(a, bool) or isinstance(b, bool):
        return format_value(a).lower() == format_value(b).lower()
    if isinstance(a, (int, float)) or isinstance(b, (int, float)):
        na, nb = _as_number(a), _as_number(b)
        if na is not None and nb is not None:
            return na == nb
    return str(a).lower() == str(b).lower()


def _github_context(ctx: TriggerContext) -> Dict[str, Any]:
    data: Dict[str, Any] = dict(ctx.metadata)
    data.update(
        {
            "event_name": ctx.event.value,
            "ref": ctx.ref or "",
            "ref_name": ctx.branch or "",
            "actor": ctx.actor or "",
            "sha": ctx.sha or "",
            "is_fork": ctx.is_fork,
            "event": {
                "schedule": ctx.schedule or "",
                "pull_request": {"head": {"repo": {"fork": ctx.is_fork}}},
            },
        }
    )
    return data


class _Evaluator:
    def __init__(
        self,
        trigger: TriggerContext,
        upstream: Mapping[str, UpstreamOutcome],
        matrix: Mapping[str, Any],
        env: Mapping[str, str],
        run_cancelled: bool,
    ):
        self.trigger = trigger
        self.upstream = upstream
        self.matrix = matrix
        self.env = env
        self.run_cancelled = run_cancelled

    def value(self, node: Node) -> Any:
        op = node[0]
        if op == "lit":
            return node[1]
        if op == "ref":
            return self.resolve(node[1])
        if op == "call":
            return self.call(node[1])
        if op == "not":
            return not truthy(self.value(node[1]))
        if op == "and":
            left = self.value(node[1])
            return self.value(node[2]) if truthy(left) else left
        if op == "or":
            left = self.value(node[1])
            return left if truthy(left) else self.value(node[2])
        if op == "eq":
            return values_equal(self.value(node[1]), self.value(node[2]))
        if op == "ne":
            return not values_equal(self.value(node[1]), self.value(node[2]))
        raise ConditionError(f"unknown node {op!r}")

    def call(self, name: str) -> bool:
        results = [o.result for o in self.upstream.values()]
        if name == "always":
            return True
        if name == "success":
            return not self.run_cancelled and all(r is RunState.SUCCEEDED for r in results)
        if name == "failure":
            return any(r is RunState.FAILED for r in results)
        return self.run_cancelled or any(r is RunState.CANCELLED for r in results)

    def resolve(self, path: Tuple[str, ...]) -> Any:
        dotted = ".".join(path)
        root, rest = path[0], path[1:]
        if root == "github":
            return _walk(_github_context(self.trigger), rest, dotted)
        if root == "matrix":
            return _walk(dict(self.matrix), rest, dotted)
        if root == "env":
            return _walk(dict(self.env), rest, dotted)
        if root == "needs":
            if not rest:
                raise UndefinedReference(dotted, "`needs` must name a job")
            job, tail = rest[0], rest[1:]
            if job not in self.upstream:
                raise UndefinedReference(dotted, f"{dotted}: '{job}' is not a declared need")
            outcome = self.upstream[job]
            view = {"result": RESULT_NAMES.get(outcome.result, outcome.result.value),
                    "outputs": dict(outcome.outputs)}
            return _walk(view, tail, dotted)
        raise UndefinedReference(dotted)


def _walk(data: Any, path: Tuple[str, ...], dotted: str) -> Any:
    if not path:
        if isinstance(data, dict):
            raise UndefinedReference(dotted, f"{dotted} is an object, not a value")
        return data
    current = data
    for seg in path:
        if not isinstance(current, dict) or seg not in current:
            raise UndefinedReference(dotted)
        current = current[seg]
    if isinstance(current, dict):
        raise UndefinedReference(dotted, f"{dotted} is an object, not a value")
    return "" if current is None else current


def evaluate(
    expr: Optional[str],
    trigger: TriggerContext,
    upstream: Mapping[str, UpstreamOutcome],
    *,
    matrix: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    run_cancelled: bool = False,
) -> bool:
    """
    Evaluate an `if` expression for one job instance.

    `upstream` maps every declared need to its aggregate outcome. A missing
    expression means `success()`. Raises UndefinedReference when the
    expression reads a value that does not exist.
    """
    tree: Node = ("call", "success") if not expr else parse(expr).effective
    ev = _Evaluator(trigger, upstream, matrix or {}, env or {}, run_cancelled)
    result = truthy(ev.value(tree))
    logger.debug("condition %r -> %s", expr, result)
    return result
