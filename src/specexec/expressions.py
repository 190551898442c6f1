"""A small boolean expression language for success conditions.

Conditions such as ``STEP["1"].success === true && STEP["2"].status == 200``
are tokenized, parsed into a tree and evaluated against a scope mapping.
Only field access, comparison and logical operators exist; there are no
calls and no access to anything outside the scope.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from specexec.errors import ExpressionError


class _Undefined:
    __slots__ = ()

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()

KEYWORDS: dict[str, Any] = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": UNDEFINED,
}
WORD_OPERATORS = {"and": "&&", "or": "||", "not": "!"}
COMPARISON_OPERATORS = {"===", "!==", "==", "!=", "<", "<=", ">", ">="}

TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
    |(?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!.\[\]()\-])
    """,
    re.VERBOSE,
)
ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}


@dataclass(frozen=True, slots=True)
class Token:
    kind: str
    value: str
    position: int


def tokenize(source: str) -> list[Token]:
    tokens: list[Token] = []
    position = 0
    while position < len(source):
        match = TOKEN_PATTERN.match(source, position)
        if match is None:
            raise ExpressionError(f"Unexpected character {source[position]!r} at {position}")
        kind = match.lastgroup or ""
        text = match.group(0)
        if kind == "name" and text in WORD_OPERATORS:
            tokens.append(Token("op", WORD_OPERATORS[text], position))
        elif kind != "ws":
            tokens.append(Token(kind, text, position))
        position = match.end()
    tokens.append(Token("end", "", len(source)))
    return tokens


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", lambda match: ESCAPES.get(match.group(1), match.group(1)), body)


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class Name:
    name: str


@dataclass(frozen=True, slots=True)
class Member:
    target: Any
    key: Any


@dataclass(frozen=True, slots=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True, slots=True)
class Binary:
    op: str
    left: Any
    right: Any


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _next(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, value: str) -> bool:
        token = self._peek()
        if token.kind == "op" and token.value == value:
            self.index += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            token = self._peek()
            found = token.value or "end of expression"
            raise ExpressionError(f"Expected {value!r} at {token.position}, found {found!r}")

    def parse(self) -> Any:
        if self._peek().kind == "end":
            raise ExpressionError("Empty expression")
        node = self._or()
        token = self._peek()
        if token.kind != "end":
            raise ExpressionError(f"Unexpected {token.value!r} at {token.position}")
        return node

    def _or(self) -> Any:
        node = self._and()
        while self._accept("||"):
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Any:
        node = self._comparison()
        while self._accept("&&"):
            node = Binary("&&", node, self._comparison())
        return node

    def _comparison(self) -> Any:
        node = self._unary()
        token = self._peek()
        if token.kind == "op" and token.value in COMPARISON_OPERATORS:
            self._next()
            node = Binary(token.value, node, self._unary())
        return node

    def _unary(self) -> Any:
        for op in ("!", "-"):
            if self._accept(op):
                return Unary(op, self._unary())
        return self._postfix()

    def _postfix(self) -> Any:
        node = self._primary()
        while True:
            if self._accept("."):
                token = self._next()
                if token.kind not in {"name", "number"}:
                    raise ExpressionError(f"Expected field name at {token.position}")
                node = Member(node, Literal(token.value))
            elif self._accept("["):
                key = self._or()
                self._expect("]")
                node = Member(node, key)
            else:
                return node

    def _primary(self) -> Any:
        token = self._next()
        if token.kind == "number":
            number = float(token.value)
            if number.is_integer() and "." not in token.value:
                return Literal(int(number))
            return Literal(number)
        if token.kind == "string":
            return Literal(_unquote(token.value))
        if token.kind == "name":
            if token.value in KEYWORDS:
                return Literal(KEYWORDS[token.value])
            return Name(token.value)
        if token.kind == "op" and token.value == "(":
            node = self._or()
            self._expect(")")
            return node
        found = token.value or "end of expression"
        raise ExpressionError(f"Unexpected {found!r} at {token.position}")


def parse(source: str) -> Any:
    return _Parser(source).parse()


def truthy(value: Any) -> bool:
    if value is None or value is UNDEFINED:
        return False
    if isinstance(value, (list, dict)):
        return True
    return bool(value)


def strict_equals(left: Any, right: Any) -> bool:
    if left is UNDEFINED or right is UNDEFINED:
        return left is right
    if left is None or right is None:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _member(target: Any, key: Any) -> Any:
    if target is None or target is UNDEFINED:
        raise ExpressionError(f"Cannot read property {key!r} of {target!r}")
    if key == "length" and isinstance(target, (str, list, dict)):
        return len(target)
    if isinstance(target, Mapping):
        if key in target:
            return target[key]
        if isinstance(key, (int, float)) and str(int(key)) in target:
            return target[str(int(key))]
        return UNDEFINED
    if isinstance(target, (list, str)):
        try:
            index = int(key)
        except (TypeError, ValueError):
            return UNDEFINED
        if 0 <= index < len(target):
            return target[index]
        return UNDEFINED
    return UNDEFINED


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in {"===", "=="}:
        return strict_equals(left, right)
    if op in {"!==", "!="}:
        return not strict_equals(left, right)
    numeric = (int, float)
    comparable = (
        isinstance(left, numeric)
        and isinstance(right, numeric)
        and not isinstance(left, bool)
        and not isinstance(right, bool)
    ) or (isinstance(left, str) and isinstance(right, str))
    if not comparable:
        raise ExpressionError(f"Cannot compare {left!r} {op} {right!r}")
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def evaluate_node(node: Any, scope: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        if node.name not in scope:
            raise ExpressionError(f"Unknown name {node.name!r}")
        return scope[node.name]
    if isinstance(node, Member):
        return _member(evaluate_node(node.target, scope), evaluate_node(node.key, scope))
    if isinstance(node, Unary):
        operand = evaluate_node(node.operand, scope)
        if node.op == "!":
            return not truthy(operand)
        if isinstance(operand, bool) or not isinstance(operand, (int, float)):
            raise ExpressionError(f"Cannot negate {operand!r}")
        return -operand
    if isinstance(node, Binary):
        if node.op == "&&":
            return truthy(evaluate_node(node.left, scope)) and truthy(
                evaluate_node(node.right, scope)
            )
        if node.op == "||":
            return truthy(evaluate_node(node.left, scope)) or truthy(
                evaluate_node(node.right, scope)
            )
        return _compare(node.op, evaluate_node(node.left, scope), evaluate_node(node.right, scope))
    raise ExpressionError(f"Unsupported expression node: {node!r}")


def evaluate(source: str, scope: Mapping[str, Any]) -> bool:
    return truthy(evaluate_node(parse(source), scope))
