"""Condition evaluation for edge guards and node preconditions.

``when`` expressions use a deliberately small grammar::

    expr       := or_expr
    or_expr    := and_expr (("||" | "or") and_expr)*
    and_expr   := unary (("&&" | "and") unary)*
    unary      := ("!" | "not") unary | "(" expr ")" | comparison
    comparison := operand (("==" | "!=") operand)?
    operand    := @ref.path | dotted.name | 'string' | "string" | number
                | true | false | null

Both sides of a comparison are compared as numbers when both parse
numerically, otherwise as strings.  A lookup that cannot be resolved makes
its comparison false, whichever operator is used, so partial context never
fires an edge.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional, Union

from ..errors import ConditionSyntaxError
from .model import FlowEdge
from .references import MISSING, lookup

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("OP", r"===|!==|==|!="),
    ("AND", r"&&"),
    ("OR", r"\|\|"),
    ("NOT", r"!"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("STRING", r"'[^']*'|\"[^\"]*\""),
    ("NUMBER", r"-?\d+(?:\.\d+)?(?![\w.])"),
    ("REF", r"@[A-Za-z_][\w-]*(?:\.[\w-]+)*"),
    ("NAME", r"[A-Za-z_][\w-]*(?:\.[\w-]+)*"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))
_NUMERIC_RE = re.compile(r"-?\d+(?:\.\d+)?")
_KEYWORDS = {"and": "AND", "or": "OR", "not": "NOT"}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ConditionSyntaxError(f"Unexpected character {text[pos]!r} at {pos} in {text!r}")
        kind = match.lastgroup or ""
        value = match.group()
        if kind == "NAME" and value.lower() in _KEYWORDS:
            kind = _KEYWORDS[value.lower()]
        if kind != "WS":
            tokens.append(Token(kind, value, pos))
        pos = match.end()
    return tokens


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Lookup:
    path: str
    is_ref: bool


@dataclass(frozen=True)
class Compare:
    left: "Operand"
    op: str
    right: "Operand"


@dataclass(frozen=True)
class Truthy:
    operand: "Operand"


@dataclass(frozen=True)
class Not:
    expr: "Expr"


@dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    items: tuple["Expr", ...]


Operand = Union[Literal, Lookup]
Expr = Union[Compare, Truthy, Not, BoolOp]


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, kind: Optional[str] = None) -> Token:
        tok = self._peek()
        if tok is None:
            raise ConditionSyntaxError(f"Unexpected end of expression in {self.text!r}")
        if kind is not None and tok.kind != kind:
            raise ConditionSyntaxError(f"Expected {kind} at {tok.pos}, got {tok.text!r} in {self.text!r}")
        self.pos += 1
        return tok

    def parse(self) -> Expr:
        if not self.tokens:
            raise ConditionSyntaxError("Empty expression")
        expr = self._or()
        tok = self._peek()
        if tok is not None:
            raise ConditionSyntaxError(f"Unexpected token {tok.text!r} at {tok.pos} in {self.text!r}")
        return expr

    def _or(self) -> Expr:
        items = [self._and()]
        while (tok := self._peek()) is not None and tok.kind == "OR":
            self._take()
            items.append(self._and())
        return items[0] if len(items) == 1 else BoolOp("or", tuple(items))

    def _and(self) -> Expr:
        items = [self._unary()]
        while (tok := self._peek()) is not None and tok.kind == "AND":
            self._take()
            items.append(self._unary())
        return items[0] if len(items) == 1 else BoolOp("and", tuple(items))

    def _unary(self) -> Expr:
        tok = self._peek()
        if tok is not None and tok.kind == "NOT":
            self._take()
            return Not(self._unary())
        if tok is not None and tok.kind == "LPAREN":
            self._take()
            expr = self._or()
            self._take("RPAREN")
            return expr
        return self._comparison()

    def _comparison(self) -> Expr:
        left = self._operand()
        tok = self._peek()
        if tok is not None and tok.kind == "OP":
            self._take()
            op = "==" if tok.text in ("==", "===") else "!="
            return Compare(left, op, self._operand())
        return Truthy(left)

    def _operand(self) -> Operand:
        tok = self._take()
        if tok.kind == "STRING":
            return Literal(tok.text[1:-1])
        if tok.kind == "NUMBER":
            return Literal(float(tok.text) if "." in tok.text else int(tok.text))
        if tok.kind == "REF":
            return Lookup(tok.text[1:], is_ref=True)
        if tok.kind == "NAME":
            lowered = tok.text.lower()
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            if lowered in ("null", "none"):
                return Literal(None)
            return Lookup(tok.text, is_ref=False)
        raise ConditionSyntaxError(f"Expected operand at {tok.pos}, got {tok.text!r} in {self.text!r}")


@lru_cache(maxsize=512)
def parse_condition(text: str) -> Expr:
    """Parse a ``when`` expression into an AST (cached)."""
    return _Parser(text).parse()


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMERIC_RE.fullmatch(value.strip()):
        return float(value.strip())
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def values_equal(left: Any, right: Any) -> bool:
    """Equality with numeric coercion when both sides parse as numbers."""
    lnum, rnum = _as_number(left), _as_number(right)
    if lnum is not None and rnum is not None:
        return lnum == rnum
    return _as_text(left) == _as_text(right)


def _truthy(value: Any) -> bool:
    if value is MISSING or value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "null", "no")
    return bool(value)


class ConditionEvaluator:
    """Decides which edges fire and whether node preconditions hold."""

    def _resolve(self, operand: Operand, context: dict[str, Any], local: Optional[dict[str, Any]], rhs: bool) -> Any:
        if isinstance(operand, Literal):
            return operand.value
        if operand.is_ref:
            return lookup(context, operand.path)
        found = lookup(local, operand.path) if isinstance(local, dict) else MISSING
        if found is MISSING:
            found = lookup(context, operand.path)
        if found is MISSING and rhs:
            # Unquoted literal on the right-hand side, e.g. ``status == done``
            return operand.path
        return found

    def _eval(self, expr: Expr, context: dict[str, Any], local: Optional[dict[str, Any]]) -> bool:
        if isinstance(expr, Compare):
            left = self._resolve(expr.left, context, local, rhs=False)
            right = self._resolve(expr.right, context, local, rhs=True)
            if left is MISSING or right is MISSING:
                return False
            equal = values_equal(left, right)
            return equal if expr.op == "==" else not equal
        if isinstance(expr, Truthy):
            return _truthy(self._resolve(expr.operand, context, local, rhs=False))
        if isinstance(expr, Not):
            return not self._eval(expr.expr, context, local)
        if expr.op == "and":
            return all(self._eval(item, context, local) for item in expr.items)
        return any(self._eval(item, context, local) for item in expr.items)

    def evaluate(self, text: str, context: dict[str, Any], local: Optional[dict[str, Any]] = None) -> bool:
        """Evaluate *text*; bare names look in *local* first, then *context*.

        Raises :class:`ConditionSyntaxError` for malformed expressions.
        """
        return self._eval(parse_condition(text.strip()), context, local)

    def edge_fires(self, edge: FlowEdge, context: dict[str, Any], source_output: Any = None) -> bool:
        """An edge without ``when`` always fires; a malformed ``when`` never does."""
        if not edge.when or not edge.when.strip():
            return True
        local = source_output if isinstance(source_output, dict) else None
        try:
            return self.evaluate(edge.when, context, local)
        except ConditionSyntaxError:
            return False

    def unmet_preconditions(self, pre: dict[str, bool], context: dict[str, Any]) -> list[str]:
        """Return the ``pre`` keys that do not hold (missing keys count as unmet)."""
        unmet: list[str] = []
        for key, expected in pre.items():
            path = key[1:] if key.startswith("@") else key
            actual = lookup(context, path)
            if actual is MISSING or not values_equal(actual, bool(expected)):
                unmet.append(key)
        return unmet

    @staticmethod
    def apply_postconditions(post: dict[str, bool], context: dict[str, Any]) -> None:
        """Record a completed node's ``post`` assertions as context facts."""
        for key, value in post.items():
            context[key] = bool(value)
