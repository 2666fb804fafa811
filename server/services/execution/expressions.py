"""Expression resolution for node configs and edge conditions.

Config strings may embed ``{{ expression }}`` references; edge conditions are
bare expressions. Both are parsed once into a small immutable AST and then
evaluated against an ``ExpressionScope``. Nothing is ever passed to ``eval``
and resolved values are never re-parsed, so payload data cannot inject
expressions.

Grammar::

    expr       := or_expr
    or_expr    := and_expr (("or" | "||") and_expr)*
    and_expr   := not_expr (("and" | "&&") not_expr)*
    not_expr   := ("not" | "!") not_expr | comparison
    comparison := primary (("==" | "!=" | ">" | ">=" | "<" | "<=") primary)?
    primary    := literal | call | path | "(" expr ")"
    call       := NAME "(" [expr ("," expr)*] ")"
    path       := NAME ("." (NAME | INT) | "[" (INT | STRING) "]")*

Path roots: ``trigger``, ``payload``, ``variables``, ``nodes``,
``execution``, a node id, otherwise a field of the trigger payload.
Undefined paths evaluate to None.
"""

import inspect
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from core.logging import get_logger
from .conditions import OPERATOR_FUNCTIONS, walk_path
from .errors import ExpressionError

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{(.+?)\}\}', re.DOTALL)

MAX_EXPRESSION_LENGTH = 2000

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("NUMBER", r"-?\d+(?:\.\d+)?"),
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("OP", r"==|!=|>=|<=|&&|\|\||[><!]"),
    ("NAME", r"[A-Za-z_$][A-Za-z0-9_$\-]*"),
    ("PUNCT", r"[.\[\](),]"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_KEYWORDS = {"and": "&&", "or": "||", "not": "!"}
_LITERALS = {"true": True, "false": False, "null": None, "none": None, "undefined": None}
_COMPARISONS = {"==": "eq", "!=": "neq", ">": "gt", ">=": "gte", "<": "lt", "<=": "lte"}


# =============================================================================
# SCOPE
# =============================================================================

@dataclass
class ExpressionScope:
    """Accumulated execution context an expression is evaluated against."""
    trigger: Dict[str, Any] = field(default_factory=dict)
    node_outputs: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    execution: Dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> Any:
        return self.trigger.get("payload") or {}

    def lookup(self, segments: Tuple[Union[str, int], ...]) -> Any:
        root, rest = segments[0], segments[1:]
        if root == "trigger":
            return walk_path(self.trigger, rest)
        if root == "payload":
            return walk_path(self.payload, rest)
        if root in ("variables", "vars"):
            return walk_path(self.variables, rest)
        if root == "nodes":
            return walk_path(self.node_outputs, rest)
        if root == "execution":
            return walk_path(self.execution, rest)
        if root in self.node_outputs:
            return walk_path(self.node_outputs[root], rest)
        if isinstance(self.payload, dict):
            return walk_path(self.payload, segments)
        return None

    def as_dict(self) -> Dict[str, Any]:
        """Flat view for dot-path lookups by structured conditions."""
        data: Dict[str, Any] = {}
        if isinstance(self.payload, dict):
            data.update(self.payload)
        data.update(self.node_outputs)
        data.update({
            "trigger": self.trigger,
            "payload": self.payload,
            "variables": self.variables,
            "nodes": self.node_outputs,
            "execution": self.execution,
        })
        return data


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, scope: ExpressionScope) -> Any:
        return self.value


@dataclass(frozen=True)
class Path:
    segments: Tuple[Union[str, int], ...]

    def evaluate(self, scope: ExpressionScope) -> Any:
        return scope.lookup(self.segments)

    def __str__(self) -> str:
        return ".".join(str(s) for s in self.segments)


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]

    def evaluate(self, scope: ExpressionScope) -> Any:
        values = [arg.evaluate(scope) for arg in self.args]
        try:
            return FUNCTIONS[self.name](*values)
        except (TypeError, ValueError) as e:
            raise ExpressionError(f"{self.name}() failed: {e}")


@dataclass(frozen=True)
class Compare:
    operator: str
    left: Any
    right: Any

    def evaluate(self, scope: ExpressionScope) -> bool:
        return OPERATOR_FUNCTIONS[self.operator](self.left.evaluate(scope), self.right.evaluate(scope))


@dataclass(frozen=True)
class BoolOp:
    operator: str  # "and" | "or"
    operands: Tuple[Any, ...]

    def evaluate(self, scope: ExpressionScope) -> bool:
        if self.operator == "and":
            return all(truthy(op.evaluate(scope)) for op in self.operands)
        return any(truthy(op.evaluate(scope)) for op in self.operands)


@dataclass(frozen=True)
class Not:
    operand: Any

    def evaluate(self, scope: ExpressionScope) -> bool:
        return not truthy(self.operand.evaluate(scope))


@dataclass(frozen=True)
class Template:
    """Text with embedded expressions. ``parts`` holds str or AST nodes."""
    parts: Tuple[Any, ...]

    @property
    def is_single_expression(self) -> bool:
        return len(self.parts) == 1 and not isinstance(self.parts[0], str)

    @property
    def has_expressions(self) -> bool:
        return any(not isinstance(part, str) for part in self.parts)

    def render(self, scope: ExpressionScope) -> Any:
        # A template that is exactly one expression keeps the value's type
        if self.is_single_expression:
            return self.parts[0].evaluate(scope)
        return "".join(
            part if isinstance(part, str) else stringify(part.evaluate(scope))
            for part in self.parts
        )


# =============================================================================
# FUNCTIONS
# =============================================================================

def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "null", "none")
    return bool(value)


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _length(value: Any) -> int:
    if value is None:
        return 0
    try:
        return len(value)
    except TypeError:
        return len(str(value))


def _number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else number


def _predicate(name: str) -> Callable[..., bool]:
    operator = OPERATOR_FUNCTIONS[name]

    def call(actual: Any = None, target: Any = None) -> bool:
        return operator(actual, target)

    return call


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    **{name: _predicate(name) for name in OPERATOR_FUNCTIONS},
    "lower": lambda v: stringify(v).lower(),
    "upper": lambda v: stringify(v).upper(),
    "trim": lambda v: stringify(v).strip(),
    "length": _length,
    "default": lambda v, fallback=None: fallback if v is None or v == "" else v,
    "json": lambda v: json.dumps(v, default=str),
    "concat": lambda *values: "".join(stringify(v) for v in values),
    "number": _number,
    "string": stringify,
    "now": lambda: datetime.now(timezone.utc).isoformat(),
}

_SIGNATURES = {name: inspect.signature(function) for name, function in FUNCTIONS.items()}


# =============================================================================
# PARSER
# =============================================================================

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match:
            raise ExpressionError(f"Unexpected character {text[position]!r} at {position} in {text!r}")
        kind = match.lastgroup
        value = match.group()
        position = match.end()
        if kind == "WS":
            continue
        if kind == "NAME" and value.lower() in _KEYWORDS:
            kind, value = "OP", _KEYWORDS[value.lower()]
        tokens.append((kind, value))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def peek(self) -> Tuple[Optional[str], Optional[str]]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None, None

    def advance(self) -> Tuple[str, str]:
        token = self.peek()
        if token[0] is None:
            raise ExpressionError(f"Unexpected end of expression: {self.text!r}")
        self.index += 1
        return token

    def expect(self, value: str) -> None:
        kind, actual = self.advance()
        if actual != value:
            raise ExpressionError(f"Expected {value!r} but found {actual!r} in {self.text!r}")

    def parse(self):
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self.parse_or()
        if self.peek()[0] is not None:
            raise ExpressionError(f"Unexpected token {self.peek()[1]!r} in {self.text!r}")
        return node

    def parse_or(self):
        operands = [self.parse_and()]
        while self.peek() == ("OP", "||"):
            self.advance()
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def parse_and(self):
        operands = [self.parse_not()]
        while self.peek() == ("OP", "&&"):
            self.advance()
            operands.append(self.parse_not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def parse_not(self):
        if self.peek() == ("OP", "!"):
            self.advance()
            return Not(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self):
        left = self.parse_primary()
        kind, value = self.peek()
        if kind == "OP" and value in _COMPARISONS:
            self.advance()
            return Compare(_COMPARISONS[value], left, self.parse_primary())
        return left

    def parse_primary(self):
        kind, value = self.advance()
        if kind == "NUMBER":
            return Literal(float(value) if "." in value else int(value))
        if kind == "STRING":
            return Literal(_unquote(value))
        if kind == "PUNCT" and value == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if kind == "NAME":
            if value.lower() in _LITERALS:
                return Literal(_LITERALS[value.lower()])
            if self.peek() == ("PUNCT", "("):
                return self.parse_call(value)
            return self.parse_path(value)
        raise ExpressionError(f"Unexpected token {value!r} in {self.text!r}")

    def parse_call(self, name: str):
        if name not in FUNCTIONS:
            raise ExpressionError(f"Unknown function {name!r}")
        self.expect("(")
        args = []
        if self.peek() != ("PUNCT", ")"):
            args.append(self.parse_or())
            while self.peek() == ("PUNCT", ","):
                self.advance()
                args.append(self.parse_or())
        self.expect(")")
        try:
            _SIGNATURES[name].bind(*args)
        except TypeError:
            raise ExpressionError(f"Wrong number of arguments for {name}() in {self.text!r}")
        return Call(name, tuple(args))

    def parse_path(self, root: str):
        segments: List[Union[str, int]] = [root]
        while True:
            token = self.peek()
            if token == ("PUNCT", "."):
                self.advance()
                kind, value = self.advance()
                if kind == "NAME":
                    segments.append(value)
                elif kind == "NUMBER" and not value.startswith("-"):
                    # "items.0.1" tokenizes the indexes as one float
                    segments.extend(int(part) for part in value.split("."))
                else:
                    raise ExpressionError(f"Invalid path segment {value!r} in {self.text!r}")
            elif token == ("PUNCT", "["):
                self.advance()
                kind, value = self.advance()
                if kind == "NUMBER" and "." not in value:
                    segments.append(int(value))
                elif kind == "STRING":
                    segments.append(_unquote(value))
                else:
                    raise ExpressionError(f"Invalid index {value!r} in {self.text!r}")
                self.expect("]")
            else:
                return Path(tuple(segments))


def _unquote(token: str) -> str:
    body = token[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


@lru_cache(maxsize=4096)
def parse_expression(text: str):
    """Parse a bare expression into an AST (cached)."""
    text = text.strip()
    if len(text) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression too long")
    return _Parser(text).parse()


@lru_cache(maxsize=4096)
def parse_template(text: str) -> Template:
    """Split a config string into literal text and parsed expressions (cached)."""
    parts: List[Any] = []
    position = 0
    for match in TEMPLATE_PATTERN.finditer(text):
        if match.start() > position:
            parts.append(text[position:match.start()])
        parts.append(parse_expression(match.group(1)))
        position = match.end()
    if position < len(text):
        parts.append(text[position:])
    return Template(tuple(parts))


# =============================================================================
# PUBLIC HELPERS
# =============================================================================

def evaluate(expression: str, scope: ExpressionScope) -> Any:
    """Evaluate a bare expression, or a ``{{ }}`` template if one is embedded."""
    if "{{" in expression:
        return parse_template(expression).render(scope)
    return parse_expression(expression).evaluate(scope)


def evaluate_bool(expression: str, scope: ExpressionScope) -> bool:
    return truthy(evaluate(expression, scope))


def resolve_value(value: Any, scope: ExpressionScope) -> Any:
    """Resolve every template string inside a config value.

    Dicts and lists are walked recursively; non-string leaves are returned
    unchanged.
    """
    if isinstance(value, str):
        if "{{" not in value:
            return value
        return parse_template(value).render(scope)
    if isinstance(value, dict):
        return {key: resolve_value(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, scope) for item in value]
    return value


def find_expression_errors(value: Any, location: str = "config") -> List[str]:
    """Collect syntax errors for every template string in a config value."""
    errors: List[str] = []
    if isinstance(value, str) and "{{" in value:
        try:
            parse_template(value)
        except ExpressionError as e:
            errors.append(f"{location}: {e}")
    elif isinstance(value, dict):
        for key, item in value.items():
            errors.extend(find_expression_errors(item, f"{location}.{key}"))
    elif isinstance(value, list):
        for index, item in enumerate(value):
            errors.extend(find_expression_errors(item, f"{location}[{index}]"))
    return errors
