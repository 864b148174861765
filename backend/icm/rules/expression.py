# backend/icm/rules/expression.py
"""
Custom-rule expressions, e.g.

    orderValue > 10000 && customerSegment == 'Enterprise'

Grammar (lowest to highest precedence):

    expression := or
    or         := and ( ("||" | "or") and )*
    and        := not ( ("&&" | "and") not )*
    not        := ("!" | "not") not | comparison
    comparison := sum ( compop sum )?
    compop     := == = != <> > < >= <= contains not_contains starts_with ends_with
    sum        := product ( ("+" | "-") product )*
    product    := unary ( ("*" | "/" | "%") unary )*
    unary      := "-" unary | primary
    primary    := NUMBER | STRING | true | false | null | IDENT | "(" expression ")"

Keywords are case-insensitive. IDENT may be a dotted path (baseData.region).
Expressions are parsed once into the node types below; evaluation only walks
those nodes and reads values through the resolver it is given.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, DivisionByZero, InvalidOperation
from typing import Any, Callable, Optional, Union

from icm.core.errors import RuleExpressionError
from icm.rules.operators import ALL_OPERATORS, canonical_operator, compare, finite_decimal, looks_like_date
from icm.schemas.scheme import DataType

MAX_EXPRESSION_LENGTH = 2000
MAX_DEPTH = 64

Resolver = Callable[[str], Any]


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class FieldRef:
    path: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class Logical:
    op: str  # "and" | "or"
    operands: tuple["Node", ...]


@dataclass(frozen=True)
class Comparison:
    op: str
    left: "Node"
    right: "Node"
    # declared type for field rules; None means infer from the operands
    data_type: Optional[DataType] = None


@dataclass(frozen=True)
class Negate:
    operand: "Node"


@dataclass(frozen=True)
class Arithmetic:
    op: str  # + - * / %
    left: "Node"
    right: "Node"


Node = Union[Literal, FieldRef, Not, Logical, Comparison, Negate, Arithmetic]


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<number>\d+(?:\.\d+)?|\.\d+)
    |(?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    |(?P<op>&&|\|\||==|!=|<>|>=|<=|[=<>!+\-*/%()])
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "true", "false", "null"} | {"contains", "not_contains", "starts_with", "ends_with"}
_COMPARISON_TOKENS = {"=", "==", "!=", "<>", ">", "<", ">=", "<="} | {"contains", "not_contains", "starts_with", "ends_with"}


@dataclass(frozen=True)
class Token:
    kind: str  # number | string | op | ident | keyword | end
    value: str
    pos: int


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise RuleExpressionError(f"unexpected character {text[pos]!r}", position=pos)
        kind = m.lastgroup or ""
        value = m.group()
        if kind == "ident" and value.lower() in _KEYWORDS:
            tokens.append(Token("keyword", value.lower(), pos))
        elif kind != "ws":
            tokens.append(Token(kind, value, pos))
        pos = m.end()
    tokens.append(Token("end", "", len(text)))
    return tokens


def _unquote(raw: str) -> str:
    return re.sub(r"\\(.)", r"\1", raw[1:-1])


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self.tokens = tokenize(text)
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _at(self, *values: str) -> bool:
        token = self.current
        return token.kind in {"op", "keyword"} and token.value in values

    def _descend(self) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise RuleExpressionError("expression is nested too deeply", position=self.current.pos)

    def parse(self) -> Node:
        node = self._or()
        if self.current.kind != "end":
            raise RuleExpressionError(f"unexpected {self.current.value!r}", position=self.current.pos)
        return node

    def _or(self) -> Node:
        operands = [self._and()]
        while self._at("||", "or"):
            self._advance()
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Logical("or", tuple(operands))

    def _and(self) -> Node:
        operands = [self._not()]
        while self._at("&&", "and"):
            self._advance()
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else Logical("and", tuple(operands))

    def _not(self) -> Node:
        if self._at("!", "not"):
            self._advance()
            self._descend()
            node = Not(self._not())
            self.depth -= 1
            return node
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._sum()
        if self._at(*_COMPARISON_TOKENS):
            op = canonical_operator(self._advance().value)
            right = self._sum()
            if self._at(*_COMPARISON_TOKENS):
                raise RuleExpressionError("comparisons cannot be chained", position=self.current.pos)
            return Comparison(op, left, right)
        return left

    def _sum(self) -> Node:
        node = self._product()
        levels = 0
        while self._at("+", "-"):
            op = self._advance().value
            # each chained operator nests the tree one level deeper
            self._descend()
            levels += 1
            node = Arithmetic(op, node, self._product())
        self.depth -= levels
        return node

    def _product(self) -> Node:
        node = self._unary()
        levels = 0
        while self._at("*", "/", "%"):
            op = self._advance().value
            self._descend()
            levels += 1
            node = Arithmetic(op, node, self._unary())
        self.depth -= levels
        return node

    def _unary(self) -> Node:
        if self._at("-"):
            self._advance()
            self._descend()
            node = Negate(self._unary())
            self.depth -= 1
            return node
        return self._primary()

    def _primary(self) -> Node:
        token = self._advance()
        if token.kind == "number":
            return Literal(Decimal(token.value))
        if token.kind == "string":
            return Literal(_unquote(token.value))
        if token.kind == "keyword" and token.value in {"true", "false"}:
            return Literal(token.value == "true")
        if token.kind == "keyword" and token.value == "null":
            return Literal(None)
        if token.kind == "ident":
            return FieldRef(token.value)
        if token.kind == "op" and token.value == "(":
            self._descend()
            node = self._or()
            self.depth -= 1
            if not self._at(")"):
                raise RuleExpressionError("missing closing parenthesis", position=self.current.pos)
            self._advance()
            return node
        if token.kind == "end":
            raise RuleExpressionError("unexpected end of expression", position=token.pos)
        raise RuleExpressionError(f"unexpected {token.value!r}", position=token.pos)


def parse_expression(text: str) -> Node:
    if not isinstance(text, str) or not text.strip():
        raise RuleExpressionError("expression is empty")
    if len(text) > MAX_EXPRESSION_LENGTH:
        raise RuleExpressionError(f"expression longer than {MAX_EXPRESSION_LENGTH} characters")
    return _Parser(text).parse()


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _as_number(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise RuleExpressionError(f"{value!r} is not a number")
    if isinstance(value, (Decimal, int, float)):
        return finite_decimal(value)
    raise RuleExpressionError(f"{type(value).__name__} value used in arithmetic")


def _infer_comparison_type(op: str, left: Any, right: Any) -> DataType:
    pair = (left, right)
    if any(isinstance(v, bool) for v in pair):
        return DataType.BOOLEAN
    if any(isinstance(v, (int, float, Decimal)) for v in pair):
        return DataType.NUMBER
    if any(isinstance(v, (date, datetime)) for v in pair):
        return DataType.DATE
    if op in {">", "<", ">=", "<="} and all(looks_like_date(v) for v in pair):
        return DataType.DATE
    return DataType.STRING


def evaluate(node: Node, resolve: Resolver) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, FieldRef):
        return resolve(node.path)

    if isinstance(node, Not):
        return not _truth(evaluate(node.operand, resolve))

    if isinstance(node, Logical):
        if node.op == "and":
            return all(_truth(evaluate(operand, resolve)) for operand in node.operands)
        return any(_truth(evaluate(operand, resolve)) for operand in node.operands)

    if isinstance(node, Comparison):
        left = evaluate(node.left, resolve)
        right = evaluate(node.right, resolve)
        if node.op not in ALL_OPERATORS:
            raise RuleExpressionError(f"unknown operator '{node.op}'")
        if node.data_type is None and (left is None or right is None):
            if node.op not in {"=", "!="}:
                raise RuleExpressionError(f"operator '{node.op}' cannot compare null")
            same = left is None and right is None
            return same if node.op == "=" else not same
        data_type = node.data_type or _infer_comparison_type(node.op, left, right)
        return compare(node.op, left, right, data_type)

    if isinstance(node, Negate):
        return -_as_number(evaluate(node.operand, resolve))

    if isinstance(node, Arithmetic):
        left = _as_number(evaluate(node.left, resolve))
        right = _as_number(evaluate(node.right, resolve))
        try:
            if node.op == "+":
                return left + right
            if node.op == "-":
                return left - right
            if node.op == "*":
                return left * right
            if node.op == "/":
                return left / right
            if node.op == "%":
                return left % right
        except (DivisionByZero, InvalidOperation, ZeroDivisionError):
            raise RuleExpressionError("division by zero")
        raise RuleExpressionError(f"unknown arithmetic operator '{node.op}'")

    raise RuleExpressionError(f"unsupported expression node {type(node).__name__}")


def _truth(value: Any) -> bool:
    if not isinstance(value, bool):
        raise RuleExpressionError(f"expected a boolean, got {value!r}")
    return value


def evaluate_condition(node: Node, resolve: Resolver) -> bool:
    """Evaluate an expression that must produce true/false."""
    return _truth(evaluate(node, resolve))
