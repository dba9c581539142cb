"""
Quantity formula evaluation.

Formulas are arithmetic strings with optional ``{{ measure.<name> }}``
placeholders. They are parsed by a small recursive-descent parser into a
typed AST; nothing outside numbers, + - * / parentheses and a fixed set
of helper functions is accepted.
"""
import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from ..core.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*measure\.(\w+)\s*\}\}")

MEASURE_VARIABLES = (
    "surface_area_sf",
    "surface_squares",
    "perimeter_lf",
    "ridge_lf",
    "valley_lf",
    "hip_lf",
    "rake_lf",
    "eave_lf",
)


class FormulaError(Exception):
    """Base error for formula problems."""

    def __init__(self, message: str, formula: str = "", position: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.formula = formula
        self.position = position

    def to_dict(self) -> Dict[str, Union[str, int, None]]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "formula": self.formula,
            "position": self.position,
        }


class FormulaSyntaxError(FormulaError):
    """Formula text is not valid arithmetic."""


class FormulaEvaluationError(FormulaError):
    """Formula parsed but could not be computed (e.g. division by zero)."""


MAX_ROUND_DIGITS = 10


def _round(value: float, digits: float = 0) -> float:
    # Half away from zero, like spreadsheet ROUND
    digits = int(digits)
    if abs(digits) > MAX_ROUND_DIGITS:
        raise ValueError(f"digits must be between -{MAX_ROUND_DIGITS} and {MAX_ROUND_DIGITS}")
    factor = 10 ** digits
    return math.copysign(math.floor(abs(value) * factor + 0.5), value) / factor


FUNCTIONS = {
    "ceil": (math.ceil, 1, 1),
    "floor": (math.floor, 1, 1),
    "round": (_round, 1, 2),
    "max": (max, 2, None),
    "min": (min, 2, None),
}


# AST

@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple


Node = Union[Number, UnaryOp, BinaryOp, Call]


@dataclass(frozen=True)
class Token:
    kind: str  # number, name, op, lparen, rparen, comma, end
    text: str
    position: int


_TOKEN_PATTERN = re.compile(
    r"\s*(?:(?P<number>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)|(?P<name>[A-Za-z_]\w*)|(?P<op>[-+*/])"
    r"|(?P<lparen>\()|(?P<rparen>\))|(?P<comma>,))"
)


def tokenize(text: str) -> List[Token]:
    """Split formula text into tokens, rejecting anything non-arithmetic."""
    tokens = []
    position = 0
    length = len(text)
    while position < length:
        if text[position].isspace():
            position += 1
            continue
        match = _TOKEN_PATTERN.match(text, position)
        if not match or match.lastgroup is None:
            raise FormulaSyntaxError(
                f"Unexpected character {text[position]!r}", text, position
            )
        kind = match.lastgroup
        tokens.append(Token(kind, match.group(kind), match.start(kind)))
        position = match.end()
    tokens.append(Token("end", "", length))
    return tokens


class Parser:
    """
    Recursive-descent parser.

    Grammar:
        expr   := term (('+' | '-') term)*
        term   := unary (('*' | '/') unary)*
        unary  := ('+' | '-') unary | atom
        atom   := NUMBER | NAME '(' args ')' | '(' expr ')'
        args   := expr (',' expr)*
    """

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.current
        self.index += 1
        return token

    def _expect(self, kind: str) -> Token:
        if self.current.kind != kind:
            found = self.current.text or "end of formula"
            raise FormulaSyntaxError(
                f"Expected {kind} but found {found!r}", self.text, self.current.position
            )
        return self._advance()

    def parse(self) -> Node:
        if self.current.kind == "end":
            raise FormulaSyntaxError("Formula is empty", self.text, 0)
        node = self._expr()
        if self.current.kind != "end":
            raise FormulaSyntaxError(
                f"Unexpected {self.current.text!r}", self.text, self.current.position
            )
        return node

    def _expr(self) -> Node:
        node = self._term()
        while self.current.kind == "op" and self.current.text in "+-":
            op = self._advance().text
            node = BinaryOp(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._unary()
        while self.current.kind == "op" and self.current.text in "*/":
            op = self._advance().text
            node = BinaryOp(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self.current.kind == "op" and self.current.text in "+-":
            op = self._advance().text
            return UnaryOp(op, self._unary())
        return self._atom()

    def _atom(self) -> Node:
        token = self.current
        if token.kind == "number":
            self._advance()
            return Number(float(token.text))
        if token.kind == "lparen":
            self._advance()
            node = self._expr()
            self._expect("rparen")
            return node
        if token.kind == "name":
            name = token.text.lower()
            if name not in FUNCTIONS:
                raise FormulaSyntaxError(f"Unknown name {token.text!r}", self.text, token.position)
            self._advance()
            self._expect("lparen")
            args = [self._expr()]
            while self.current.kind == "comma":
                self._advance()
                args.append(self._expr())
            self._expect("rparen")
            _, min_args, max_args = FUNCTIONS[name]
            if len(args) < min_args or (max_args is not None and len(args) > max_args):
                raise FormulaSyntaxError(
                    f"{name}() got {len(args)} argument(s)", self.text, token.position
                )
            return Call(name, tuple(args))
        found = token.text or "end of formula"
        raise FormulaSyntaxError(f"Unexpected {found!r}", self.text, token.position)


def parse_formula(text: str) -> Node:
    return Parser(text).parse()


def _finite(value: float, formula: str) -> float:
    if not math.isfinite(value):
        raise FormulaEvaluationError("Formula did not produce a finite number", formula)
    return value


def evaluate_node(node: Node, formula: str = "") -> float:
    """Interpret an AST node. Every intermediate value must be finite."""
    if isinstance(node, Number):
        return _finite(node.value, formula)
    if isinstance(node, UnaryOp):
        value = evaluate_node(node.operand, formula)
        return -value if node.op == "-" else value
    if isinstance(node, BinaryOp):
        left = evaluate_node(node.left, formula)
        right = evaluate_node(node.right, formula)
        if node.op == "+":
            return _finite(left + right, formula)
        if node.op == "-":
            return _finite(left - right, formula)
        if node.op == "*":
            return _finite(left * right, formula)
        if right == 0:
            raise FormulaEvaluationError("Division by zero", formula)
        return _finite(left / right, formula)
    if isinstance(node, Call):
        func = FUNCTIONS[node.name][0]
        args = [evaluate_node(arg, formula) for arg in node.args]
        try:
            result = float(func(*args))
        except (TypeError, ValueError, OverflowError) as e:
            raise FormulaEvaluationError(f"{node.name}() failed: {e}", formula) from e
        return _finite(result, formula)
    raise FormulaEvaluationError(f"Unsupported node {type(node).__name__}", formula)


def substitute_placeholders(formula: str, variables: Dict[str, float]) -> str:
    """Replace ``{{ measure.<name> }}`` tokens; unknown names become 0."""
    def replace(match):
        value = variables.get(match.group(1), 0) or 0
        return repr(float(value))

    return PLACEHOLDER_PATTERN.sub(replace, formula)


def evaluate_formula(formula: str, variables: Optional[Dict[str, float]] = None) -> float:
    """
    Evaluate a formula strictly.

    Raises:
        FormulaSyntaxError: formula text is not valid arithmetic
        FormulaEvaluationError: the expression could not be computed
    """
    if formula is None or not str(formula).strip():
        raise FormulaSyntaxError("Formula is empty", formula or "", 0)
    text = substitute_placeholders(str(formula), variables or {})
    result = evaluate_node(parse_formula(text), text)
    if math.isnan(result) or math.isinf(result):
        raise FormulaEvaluationError("Formula did not produce a finite number", text)
    # Drop binary float noise (20 * 1.10 -> 22.0)
    return round(result, 9)


@dataclass
class FormulaResult:
    """Outcome of a lenient evaluation."""
    value: float
    error: Optional[FormulaError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def used_fallback(self) -> bool:
        return self.error is not None


def evaluate_formula_safe(
    formula: str,
    variables: Optional[Dict[str, float]] = None,
    fallback: float = 0.0,
) -> FormulaResult:
    """Evaluate a formula, substituting ``fallback`` and recording the error on failure."""
    try:
        return FormulaResult(evaluate_formula(formula, variables))
    except FormulaError as e:
        logger.warning("Formula evaluation failed, using fallback",
                       formula=formula, error=e.message, fallback=fallback)
        return FormulaResult(fallback, e)
