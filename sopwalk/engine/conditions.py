"""Restricted boolean expression language for decision nodes.

Grammar::

    expr    := and_expr ("||" and_expr)*
    and_expr:= term ("&&" term)*
    term    := "(" expr ")" | cmp
    cmp     := path op literal
    op      := ">" | "<" | ">=" | "<=" | "==" | "!=" | "===" | "!=="
    path    := "context." ident ("." ident)*
    literal := number | "true" | "false" | quoted string

Expressions are parsed once into an immutable AST and never executed as
host code.  Evaluation is three-valued: a condition referencing a path that
is absent from context is ``UNEVALUABLE`` rather than false.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache
from typing import Any, Final

from sopwalk.engine.context import MISSING, resolve_path
from sopwalk.exceptions import ConditionSyntaxError

log = logging.getLogger(__name__)

__all__ = [
    "BoolOp",
    "Comparison",
    "Condition",
    "Literal",
    "PathRef",
    "Verdict",
    "compare",
    "parse_condition",
]


class Verdict(StrEnum):
    """Outcome of evaluating a condition against context."""

    TRUE = "true"
    FALSE = "false"
    UNEVALUABLE = "unevaluable"


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PathRef:
    segments: tuple[str, ...]

    @property
    def dotted(self) -> str:
        return "context." + ".".join(self.segments)


@dataclass(slots=True, frozen=True)
class Literal:
    value: str | int | float | bool


@dataclass(slots=True, frozen=True)
class Comparison:
    path: PathRef
    op: str
    literal: Literal


@dataclass(slots=True, frozen=True)
class BoolOp:
    op: str  # "&&" or "||"
    operands: tuple[Comparison | BoolOp, ...]


Node = Comparison | BoolOp


# ---------------------------------------------------------------------------
# Comparison semantics
# ---------------------------------------------------------------------------

_NUMERIC_STR_RE: Final = re.compile(r"-?\d+(?:\.\d+)?")


def _as_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return value
    if isinstance(value, str) and _NUMERIC_STR_RE.fullmatch(value.strip()):
        text = value.strip()
        return float(text) if "." in text else int(text)
    return None


def compare(left: Any, op: str, right: Any) -> bool:
    """Apply *op* to a resolved context value and a literal.

    Booleans only ever equal booleans.  Numbers compare numerically, with
    numeric-looking strings coerced.  Other strings match exactly; ordering
    operators are false for them.
    """
    if isinstance(left, bool) or isinstance(right, bool):
        same = isinstance(left, bool) and isinstance(right, bool) and left is right
        if op == "==":
            return same
        if op == "!=":
            return not same
        return False

    if isinstance(left, int | float) or isinstance(right, int | float):
        lnum, rnum = _as_number(left), _as_number(right)
        if lnum is not None and rnum is not None:
            match op:
                case ">":
                    return lnum > rnum
                case "<":
                    return lnum < rnum
                case ">=":
                    return lnum >= rnum
                case "<=":
                    return lnum <= rnum
                case "==":
                    return lnum == rnum
                case "!=":
                    return lnum != rnum

    if isinstance(left, str) and isinstance(right, str):
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        return False

    # Incompatible operand types.
    return op == "!="


# ---------------------------------------------------------------------------
# Parsed condition
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Condition:
    """A parsed decision condition.

    Attributes
    ----------
    source : str
        Expression text as written.
    root : Comparison | BoolOp
        Parsed expression tree.
    """

    source: str
    root: Node

    @property
    def paths(self) -> tuple[PathRef, ...]:
        """Every context path referenced, in source order, deduplicated."""
        seen: dict[tuple[str, ...], PathRef] = {}
        stack: list[Node] = [self.root]
        ordered: list[PathRef] = []
        while stack:
            node = stack.pop()
            if isinstance(node, Comparison):
                if node.path.segments not in seen:
                    seen[node.path.segments] = node.path
                    ordered.append(node.path)
            else:
                stack.extend(reversed(node.operands))
        return tuple(ordered)

    @property
    def context_keys(self) -> tuple[str, ...]:
        """Top-level context keys the condition reads."""
        return tuple(dict.fromkeys(p.segments[0] for p in self.paths))

    def missing_paths(self, context: Mapping[str, Any]) -> list[str]:
        return [
            p.dotted
            for p in self.paths
            if resolve_path(context, p.segments) is MISSING
        ]

    def evaluate(self, context: Mapping[str, Any]) -> Verdict:
        """Evaluate against *context* (a plain mapping of context values)."""
        if self.missing_paths(context):
            return Verdict.UNEVALUABLE
        return Verdict.TRUE if self._eval(self.root, context) else Verdict.FALSE

    def _eval(self, node: Node, context: Mapping[str, Any]) -> bool:
        if isinstance(node, Comparison):
            value = resolve_path(context, node.path.segments)
            return compare(value, node.op, node.literal.value)
        if node.op == "&&":
            return all(self._eval(child, context) for child in node.operands)
        return any(self._eval(child, context) for child in node.operands)

    def __str__(self) -> str:
        return self.source.strip()


# ---------------------------------------------------------------------------
# Tokenizer + recursive-descent parser
# ---------------------------------------------------------------------------

_TOKEN_RE: Final = re.compile(
    r"""
    (?P<ws>\s+)
    | (?P<number>-?\d+(?:\.\d+)?(?![\w.]))
    | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    | (?P<op>===|!==|==|!=|>=|<=|>|<)
    | (?P<logic>&&|\|\|)
    | (?P<lparen>\()
    | (?P<rparen>\))
    | (?P<word>[A-Za-z_$][\w$]*(?:\.[\w$]+)*)
    """,
    re.VERBOSE,
)

_OP_ALIASES: Final = {"===": "==", "!==": "!="}
_ESCAPE_RE: Final = re.compile(r"\\(.)")
# Backslash escapes inside string literals; any other escaped character stands for itself.
_ESCAPES: Final = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}


def _unescape(text: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), text)


@dataclass(slots=True, frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if m is None:
            raise ConditionSyntaxError(source, pos, f"unexpected character {source[pos]!r}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    tokens.append(_Token("eof", "", len(source)))
    return tokens


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = _tokenize(source)
        self.index = 0

    def _peek(self) -> _Token:
        return self.tokens[self.index]

    def _take(self) -> _Token:
        tok = self.tokens[self.index]
        self.index += 1
        return tok

    def _fail(self, tok: _Token, reason: str) -> ConditionSyntaxError:
        return ConditionSyntaxError(self.source, tok.pos, reason)

    def parse(self) -> Node:
        if self._peek().kind == "eof":
            raise self._fail(self._peek(), "empty expression")
        node = self._expr()
        tok = self._peek()
        if tok.kind != "eof":
            raise self._fail(tok, f"unexpected {tok.text!r}")
        return node

    def _expr(self) -> Node:
        return self._chain("||", self._and_expr)

    def _and_expr(self) -> Node:
        return self._chain("&&", self._term)

    def _chain(self, op: str, operand: Any) -> Node:
        operands = [operand()]
        while self._peek().kind == "logic" and self._peek().text == op:
            self._take()
            operands.append(operand())
        if len(operands) == 1:
            return operands[0]
        return BoolOp(op, tuple(operands))

    def _term(self) -> Node:
        tok = self._peek()
        if tok.kind == "lparen":
            self._take()
            node = self._expr()
            closing = self._take()
            if closing.kind != "rparen":
                raise self._fail(closing, "expected ')'")
            return node
        return self._comparison()

    def _comparison(self) -> Comparison:
        path = self._path()
        tok = self._take()
        if tok.kind != "op":
            raise self._fail(tok, "expected comparison operator")
        op = _OP_ALIASES.get(tok.text, tok.text)
        return Comparison(path, op, self._literal())

    def _path(self) -> PathRef:
        tok = self._take()
        if tok.kind != "word" or not tok.text.startswith("context."):
            raise self._fail(tok, "expected a context path such as 'context.key'")
        segments = tuple(tok.text.split(".")[1:])
        return PathRef(segments)

    def _literal(self) -> Literal:
        tok = self._take()
        if tok.kind == "number":
            text = tok.text
            return Literal(float(text) if "." in text else int(text))
        if tok.kind == "string":
            return Literal(_unescape(tok.text[1:-1]))
        if tok.kind == "word" and tok.text in ("true", "false"):
            return Literal(tok.text == "true")
        raise self._fail(tok, "expected a number, boolean or quoted string")


@lru_cache(maxsize=512)
def parse_condition(source: str) -> Condition:
    """Parse *source* into a :class:`Condition`.

    Raises
    ------
    ConditionSyntaxError
        If the expression does not match the grammar.
    """
    root = _Parser(source).parse()
    log.debug("parsed condition %r", source)
    return Condition(source=source, root=root)
