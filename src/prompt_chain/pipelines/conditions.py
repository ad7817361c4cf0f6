"""
Condition Evaluator - a small, sandboxed boolean expression language.

Expressions are parsed into an AST and interpreted against the variable
context; nothing is ever handed to ``eval``.

Grammar::

    expr       := or_expr
    or_expr    := and_expr (("||" | "or") and_expr)*
    and_expr   := not_expr (("&&" | "and") not_expr)*
    not_expr   := ("!" | "not") not_expr | comparison
    comparison := postfix (COMPARE_OP postfix | "in" postfix | "not" "in" postfix)?
    postfix    := primary ("." NAME ("(" [expr ("," expr)*] ")")?)*
    primary    := NUMBER | STRING | "true" | "false" | NAME | "(" expr ")"

Supported examples::

    sentiment.includes('positive')
    score >= 7 && category == "bug"
    not (status == 'done' or retries > 3)
    'urgent' in tags.toLowerCase()
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from prompt_chain.errors import ConditionEvaluationError

# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class Literal:
    value: Union[str, float, bool]


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    operands: Tuple["Node", ...]


@dataclass(frozen=True)
class Compare:
    op: str  # "==" "!=" "<" "<=" ">" ">=" "in" "not in"
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Attribute:
    target: "Node"
    name: str


@dataclass(frozen=True)
class MethodCall:
    target: "Node"
    method: str
    args: Tuple["Node", ...]


Node = Union[Literal, Variable, Not, BoolOp, Compare, Attribute, MethodCall]


def _children(node: Node) -> Tuple[Node, ...]:
    if isinstance(node, Not):
        return (node.operand,)
    if isinstance(node, BoolOp):
        return node.operands
    if isinstance(node, Compare):
        return (node.left, node.right)
    if isinstance(node, Attribute):
        return (node.target,)
    if isinstance(node, MethodCall):
        return (node.target,) + node.args
    return ()


def _height(root: Node) -> int:
    deepest = 0
    stack = [(root, 1)]
    while stack:
        node, level = stack.pop()
        deepest = max(deepest, level)
        stack.extend((child, level + 1) for child in _children(node))
    return deepest


# =============================================================================
# Tokenizer
# =============================================================================

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!().,])
  | (?P<name>[A-Za-z_]\w*)
    """,
    re.VERBOSE,
)

# Maximum nesting of parentheses, negations and call arguments, and the
# maximum depth of the parsed tree.
MAX_NESTING_DEPTH = 64

_KEYWORDS = {"and", "or", "not", "in", "true", "false", "True", "False"}
_COMPARE_OPS = {"==": "==", "===": "==", "!=": "!=", "!==": "!=",
                "<": "<", "<=": "<=", ">": ">", ">=": ">="}


@dataclass(frozen=True)
class _Token:
    kind: str  # "number" | "string" | "op" | "name" | "keyword" | "end"
    text: str
    position: int


def _unescape(literal: str) -> str:
    body = literal[1:-1]
    return re.sub(r"\\(.)", lambda m: {"n": "\n", "t": "\t"}.get(m.group(1), m.group(1)), body)


def tokenize(expression: str) -> List[_Token]:
    tokens: List[_Token] = []
    position = 0
    while position < len(expression):
        match = _TOKEN_PATTERN.match(expression, position)
        if match is None:
            raise ConditionEvaluationError(
                f"Unexpected character {expression[position]!r} at position {position} "
                f"in condition: {expression}"
            )
        kind = match.lastgroup
        text = match.group(kind)
        if kind != "ws":
            if kind == "name" and text in _KEYWORDS:
                kind = "keyword"
            tokens.append(_Token(kind, text, position))
        position = match.end()
    tokens.append(_Token("end", "", len(expression)))
    return tokens


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    """Recursive-descent parser producing the AST above."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def _peek(self, offset: int = 1) -> _Token:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def _advance(self) -> _Token:
        token = self.current
        self.index += 1
        return token

    def _accept(self, *texts: str) -> Optional[_Token]:
        if self.current.kind in ("op", "keyword") and self.current.text in texts:
            return self._advance()
        return None

    def _expect(self, text: str) -> _Token:
        token = self._accept(text)
        if token is None:
            self._fail(f"expected {text!r}")
        return token

    def _fail(self, message: str) -> None:
        token = self.current
        found = "end of expression" if token.kind == "end" else repr(token.text)
        raise ConditionEvaluationError(
            f"Invalid condition {self.expression!r}: {message}, found {found} "
            f"at position {token.position}"
        )

    def _nested(self, parse: Callable[[], Node]) -> Node:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            self._fail("expression nested too deeply")
        node = parse()
        self.depth -= 1
        return node

    def parse(self) -> Node:
        node = self._or()
        if self.current.kind != "end":
            self._fail("unexpected trailing input")
        if _height(node) > MAX_NESTING_DEPTH:
            self._fail("expression nested too deeply")
        return node

    def _or(self) -> Node:
        operands = [self._and()]
        while self._accept("||", "or"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _and(self) -> Node:
        operands = [self._not()]
        while self._accept("&&", "and"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _not(self) -> Node:
        if self.current.text == "not" and self.current.kind == "keyword":
            self._advance()
            return Not(self._nested(self._not))
        if self._accept("!"):
            return Not(self._nested(self._not))
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._postfix()
        token = self.current
        if token.kind == "op" and token.text in _COMPARE_OPS:
            self._advance()
            return Compare(_COMPARE_OPS[token.text], left, self._postfix())
        if token.kind == "keyword" and token.text == "in":
            self._advance()
            return Compare("in", left, self._postfix())
        if token.kind == "keyword" and token.text == "not" and self._peek().text == "in":
            self._advance()
            self._advance()
            return Compare("not in", left, self._postfix())
        return left

    def _postfix(self) -> Node:
        node = self._primary()
        while self._accept("."):
            if self.current.kind != "name":
                self._fail("expected a method or property name")
            name = self._advance().text
            if self._accept("("):
                args: List[Node] = []
                if not self._accept(")"):
                    args.append(self._nested(self._or))
                    while self._accept(","):
                        args.append(self._nested(self._or))
                    self._expect(")")
                node = MethodCall(node, name, tuple(args))
            else:
                node = Attribute(node, name)
        return node

    def _primary(self) -> Node:
        token = self.current
        if token.kind == "number":
            self._advance()
            return Literal(float(token.text))
        if token.kind == "string":
            self._advance()
            return Literal(_unescape(token.text))
        if token.kind == "keyword" and token.text in ("true", "True"):
            self._advance()
            return Literal(True)
        if token.kind == "keyword" and token.text in ("false", "False"):
            self._advance()
            return Literal(False)
        if token.kind == "name":
            self._advance()
            return Variable(token.text)
        if self._accept("("):
            node = self._nested(self._or)
            self._expect(")")
            return node
        self._fail("expected a value")
        raise AssertionError("unreachable")


@lru_cache(maxsize=256)
def parse_condition(expression: str) -> Node:
    """
    Parse a condition expression.

    Raises:
        ConditionEvaluationError: If the expression is malformed
    """
    return _Parser(expression).parse()


def referenced_variables(expression: str) -> Set[str]:
    """Variable names an expression reads. Raises if it does not parse."""
    names: Set[str] = set()
    stack = [parse_condition(expression)]
    while stack:
        node = stack.pop()
        if isinstance(node, Variable):
            names.add(node.name)
        stack.extend(_children(node))
    return names


# =============================================================================
# Interpreter
# =============================================================================

Value = Union[str, float, bool]


def _text(value: Value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _number(value: Value, expression: str) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, float):
        return value
    try:
        return float(value.strip())
    except ValueError:
        raise ConditionEvaluationError(
            f"Cannot compare non-numeric value {value!r} numerically in condition: {expression}"
        ) from None


def _is_numeric(value: Value) -> bool:
    if isinstance(value, float):
        return True
    if isinstance(value, str):
        try:
            float(value.strip())
            return True
        except ValueError:
            return False
    return False


def _truthy(value: Value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no")
    return bool(value)


def _equals(left: Value, right: Value) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return _truthy(left) == _truthy(right)
    if isinstance(left, float) or isinstance(right, float):
        if _is_numeric(left) and _is_numeric(right):
            return float(str(left).strip()) == float(str(right).strip())
    return _text(left) == _text(right)


_STRING_METHODS: Dict[str, Tuple[int, Callable[..., Value]]] = {
    "includes": (1, lambda s, x: x in s),
    "contains": (1, lambda s, x: x in s),
    "startsWith": (1, lambda s, x: s.startswith(x)),
    "startswith": (1, lambda s, x: s.startswith(x)),
    "endsWith": (1, lambda s, x: s.endswith(x)),
    "endswith": (1, lambda s, x: s.endswith(x)),
    "toLowerCase": (0, lambda s: s.lower()),
    "lower": (0, lambda s: s.lower()),
    "toUpperCase": (0, lambda s: s.upper()),
    "upper": (0, lambda s: s.upper()),
    "trim": (0, lambda s: s.strip()),
    "strip": (0, lambda s: s.strip()),
}


class _Interpreter:
    def __init__(self, expression: str, context: Mapping[str, str]):
        self.expression = expression
        self.context = context

    def evaluate(self, node: Node) -> Value:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Variable):
            if node.name not in self.context:
                raise ConditionEvaluationError(
                    f"Unknown variable '{node.name}' in condition: {self.expression}"
                )
            return str(self.context[node.name])
        if isinstance(node, Not):
            return not _truthy(self.evaluate(node.operand))
        if isinstance(node, BoolOp):
            if node.op == "and":
                return all(_truthy(self.evaluate(op)) for op in node.operands)
            return any(_truthy(self.evaluate(op)) for op in node.operands)
        if isinstance(node, Compare):
            return self._compare(node)
        if isinstance(node, Attribute):
            if node.name != "length":
                raise ConditionEvaluationError(
                    f"Unsupported property '{node.name}' in condition: {self.expression}"
                )
            return float(len(_text(self.evaluate(node.target))))
        if isinstance(node, MethodCall):
            return self._call(node)
        raise ConditionEvaluationError(f"Unsupported expression in condition: {self.expression}")

    def _compare(self, node: Compare) -> bool:
        left = self.evaluate(node.left)
        right = self.evaluate(node.right)
        if node.op == "==":
            return _equals(left, right)
        if node.op == "!=":
            return not _equals(left, right)
        if node.op == "in":
            return _text(left) in _text(right)
        if node.op == "not in":
            return _text(left) not in _text(right)
        a = _number(left, self.expression)
        b = _number(right, self.expression)
        if node.op == "<":
            return a < b
        if node.op == "<=":
            return a <= b
        if node.op == ">":
            return a > b
        return a >= b

    def _call(self, node: MethodCall) -> Value:
        if node.method not in _STRING_METHODS:
            raise ConditionEvaluationError(
                f"Unsupported method '{node.method}' in condition: {self.expression}"
            )
        arity, func = _STRING_METHODS[node.method]
        if len(node.args) != arity:
            raise ConditionEvaluationError(
                f"Method '{node.method}' takes {arity} argument(s) in condition: {self.expression}"
            )
        target = _text(self.evaluate(node.target))
        args = [_text(self.evaluate(arg)) for arg in node.args]
        return func(target, *args)


def evaluate(expression: str, context: Mapping[str, str]) -> bool:
    """
    Evaluate a condition against the variable context.

    Raises:
        ConditionEvaluationError: If the expression is malformed, references
            an unknown variable, or compares non-numeric values numerically
    """
    node = parse_condition(expression)
    return _truthy(_Interpreter(expression, context).evaluate(node))
