"""Tree-walk evaluator for workflow ``condition``, ``until`` and output expressions.

Grammar::

    expr     := or
    or       := and ("||" and)*
    and      := unary ("&&" unary)*
    unary    := "!" unary | compare
    compare  := primary (("==" | "!=" | "<" | "<=" | ">" | ">=") primary)?
    primary  := literal | path | "(" expr ")"
    path     := ["$" | "."] segment ("." segment)*

Paths navigate the execution context (``inputs``, ``steps``, ``loop``). A path
whose first segment names a step, e.g. ``review.response``, resolves through
``steps``. Missing paths evaluate to null.
"""
from __future__ import annotations

import operator
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from flowkernel.errors import ExpressionError

_MAX_RECURSION_DEPTH = 100

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().$])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'", "/": "/"}

_CMP_OPS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_KEYWORDS = {"true": True, "false": False, "null": None}


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Path:
    segments: Tuple[str, ...]


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class BoolOp:
    op: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any


def _unescape(raw: str) -> str:
    body = raw[1:-1]
    out: List[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt == "u" and i + 5 < len(body):
                out.append(chr(int(body[i + 2:i + 6], 16)))
                i += 6
                continue
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def tokenize(expr: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(expr):
        match = _TOKEN_RE.match(expr, pos)
        if match is None:
            raise ExpressionError(f"unexpected character {expr[pos]!r} at position {pos} in {expr!r}")
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, expr: str) -> None:
        self.expr = expr
        self.tokens = tokenize(expr)
        self.index = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise ExpressionError(f"unexpected end of expression: {self.expr!r}")
        self.index += 1
        return token

    def _accept(self, value: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == "op" and token.value == value:
            self.index += 1
            return True
        return False

    def parse(self) -> Any:
        if not self.tokens:
            raise ExpressionError("empty expression")
        node = self._or()
        token = self._peek()
        if token is not None:
            raise ExpressionError(f"unexpected token {token.value!r} at position {token.pos} in {self.expr!r}")
        return node

    def _or(self) -> Any:
        values = [self._and()]
        while self._accept("||"):
            values.append(self._and())
        return values[0] if len(values) == 1 else BoolOp("||", tuple(values))

    def _and(self) -> Any:
        values = [self._unary()]
        while self._accept("&&"):
            values.append(self._unary())
        return values[0] if len(values) == 1 else BoolOp("&&", tuple(values))

    def _unary(self) -> Any:
        if self._accept("!"):
            return Not(self._unary())
        return self._compare()

    def _compare(self) -> Any:
        left = self._primary()
        token = self._peek()
        if token is not None and token.kind == "op" and token.value in _CMP_OPS:
            self.index += 1
            return Compare(token.value, left, self._primary())
        return left

    def _primary(self) -> Any:
        token = self._next()
        if token.kind == "string":
            return Literal(_unescape(token.value))
        if token.kind == "number":
            return Literal(float(token.value) if "." in token.value else int(token.value))
        if token.kind == "op" and token.value == "(":
            node = self._or()
            if not self._accept(")"):
                raise ExpressionError(f"missing closing parenthesis in {self.expr!r}")
            return node
        if token.kind == "ident" and token.value in _KEYWORDS and not self._at_dot():
            return Literal(_KEYWORDS[token.value])
        if token.kind == "ident" or (token.kind == "op" and token.value in ("$", ".")):
            return self._path(token)
        raise ExpressionError(f"unexpected token {token.value!r} at position {token.pos} in {self.expr!r}")

    def _at_dot(self) -> bool:
        token = self._peek()
        return token is not None and token.kind == "op" and token.value == "."

    def _segment(self) -> List[str]:
        token = self._next()
        if token.kind == "ident":
            return [token.value]
        if token.kind == "number" and not token.value.startswith("-"):
            return token.value.split(".")
        raise ExpressionError(f"invalid path segment {token.value!r} in {self.expr!r}")

    def _path(self, first: Token) -> Path:
        segments: List[str] = []
        if first.kind == "ident":
            segments.append(first.value)
        elif first.value == "$":
            if not self._accept("."):
                return Path(())
            segments.extend(self._segment())
        else:
            segments.extend(self._segment())
        while self._accept("."):
            segments.extend(self._segment())
        return Path(tuple(segments))


def parse(expr: str) -> Any:
    return _Parser(expr).parse()


def resolve_path(context: Mapping[str, Any], segments: Sequence[str]) -> Any:
    """Walk ``segments`` through ``context``; missing keys resolve to ``None``."""
    if not segments:
        return context
    current: Any = context
    if segments[0] not in context:
        steps = context.get("steps")
        if isinstance(steps, Mapping) and segments[0] in steps:
            current = steps
    for segment in segments:
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            if not segment.isdigit() or int(segment) >= len(current):
                return None
            current = current[int(segment)]
        else:
            return None
    return current


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, Sequence):
        return "array"
    return type(value).__name__


def _require_bool(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise ExpressionError(f"{what} requires a boolean operand, got {type_name(value)}")
    return value


def _compare(op: str, left: Any, right: Any) -> bool:
    left_type, right_type = type_name(left), type_name(right)
    if op in ("==", "!="):
        if left is None or right is None:
            return _CMP_OPS[op](left, right)
        if left_type != right_type:
            raise ExpressionError(f"cannot compare {left_type} with {right_type} using {op}")
        return _CMP_OPS[op](left, right)
    if left_type != right_type or left_type not in ("number", "string"):
        raise ExpressionError(f"cannot order {left_type} and {right_type} using {op}")
    return _CMP_OPS[op](left, right)


def _eval_node(node: Any, context: Mapping[str, Any], _depth: int = 0) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ExpressionError("expression too deeply nested")

    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Path):
        return resolve_path(context, node.segments)

    if isinstance(node, Not):
        return not _require_bool(_eval_node(node.operand, context, _depth + 1), "!")

    if isinstance(node, BoolOp):
        if node.op == "&&":
            for value in node.values:
                if not _require_bool(_eval_node(value, context, _depth + 1), "&&"):
                    return False
            return True
        for value in node.values:
            if _require_bool(_eval_node(value, context, _depth + 1), "||"):
                return True
        return False

    if isinstance(node, Compare):
        left = _eval_node(node.left, context, _depth + 1)
        right = _eval_node(node.right, context, _depth + 1)
        return _compare(node.op, left, right)

    raise ExpressionError(f"unsupported expression node: {type(node).__name__}")


def evaluate(expr: str, context: Mapping[str, Any]) -> Any:
    """Evaluate ``expr`` against ``context`` and return its value."""
    return _eval_node(parse(expr.strip()), context)


def evaluate_bool(expr: str, context: Mapping[str, Any]) -> bool:
    """Evaluate a condition; anything but a boolean result is an error."""
    value = evaluate(expr, context)
    if not isinstance(value, bool):
        raise ExpressionError(
            f"expression {expr!r} must evaluate to a boolean, got {type_name(value)}"
        )
    return value


def path_segments(expr: str) -> Optional[Tuple[str, ...]]:
    try:
        node = parse(expr.strip())
    except ExpressionError:
        return None
    return node.segments if isinstance(node, Path) else None


__all__ = [
    "evaluate",
    "evaluate_bool",
    "parse",
    "path_segments",
    "resolve_path",
    "tokenize",
    "type_name",
]
