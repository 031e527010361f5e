"""Expression language for resource attributes.

Attribute strings may embed ``${...}`` expressions::

    instance_count: "${var.env == \\"prod\\" ? 3 : 1}"
    target_group:   "${lb_target_group.web.id}"
    name:           "web-${var.env}"

A string made of exactly one expression evaluates to the raw value, so
``"${var.count}"`` yields an int. Values that cannot be known until a
dependency has been applied are represented by ``UNKNOWN``.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterator, List, Optional, Tuple, Union

from landform.utils.errors import ExpressionError, UnresolvedReferenceError


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A dotted reference such as ``var.env`` or ``null_resource.web.id``."""

    parts: Tuple[str, ...]

    @property
    def is_variable(self) -> bool:
        return self.parts[0] == "var"

    @property
    def variable(self) -> str:
        return self.parts[1]

    @property
    def address(self) -> str:
        """Address of the referenced resource (TYPE.NAME)."""
        return f"{self.parts[0]}.{self.parts[1]}"

    @property
    def attribute(self) -> str:
        return self.parts[2]

    @property
    def path(self) -> Tuple[str, ...]:
        """Keys or list indexes below the attribute (or variable)."""
        return self.parts[2:] if self.is_variable else self.parts[3:]

    def __str__(self) -> str:
        return ".".join(self.parts)


Resolver = Callable[[Reference], Any]


# AST nodes

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    reference: Reference


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Conditional:
    condition: Any
    if_true: Any
    if_false: Any


_SEGMENT = r"[A-Za-z_][A-Za-z0-9_-]*"
_TOKEN_RE = re.compile(
    r"\s*(?:"
    r"(?P<number>-?\d+(?:\.\d+)?)"
    r"|(?P<string>\"(?:[^\"\\]|\\.)*\")"
    r"|(?P<op>==|!=|&&|\|\||[!?:()])"
    rf"|(?P<name>{_SEGMENT}(?:\.(?:{_SEGMENT}|\d+))*)"
    r")"
)
_KEYWORDS = {"true": True, "false": False, "null": None}


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    position = 0
    text = text.rstrip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match or match.end() == position:
            raise ExpressionError(f"Unexpected character at offset {position}", expression=text)
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser for a single expression."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.position = 0

    def parse(self):
        if not self.tokens:
            raise ExpressionError("Empty expression", expression=self.text)
        node = self._expression()
        if self.position != len(self.tokens):
            raise ExpressionError(
                f"Unexpected token '{self.tokens[self.position][1]}'", expression=self.text
            )
        return node

    def _peek(self) -> Optional[Tuple[str, str]]:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def _accept(self, op: str) -> bool:
        token = self._peek()
        if token and token == ("op", op):
            self.position += 1
            return True
        return False

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            raise ExpressionError(f"Expected '{op}'", expression=self.text)

    def _expression(self):
        condition = self._or()
        if self._accept("?"):
            if_true = self._expression()
            self._expect(":")
            if_false = self._expression()
            return Conditional(condition, if_true, if_false)
        return condition

    def _or(self):
        node = self._and()
        while self._accept("||"):
            node = BinaryOp("||", node, self._and())
        return node

    def _and(self):
        node = self._comparison()
        while self._accept("&&"):
            node = BinaryOp("&&", node, self._comparison())
        return node

    def _comparison(self):
        node = self._unary()
        for op in ("==", "!="):
            if self._accept(op):
                return BinaryOp(op, node, self._unary())
        return node

    def _unary(self):
        if self._accept("!"):
            return Not(self._unary())
        return self._primary()

    def _primary(self):
        token = self._peek()
        if token is None:
            raise ExpressionError("Unexpected end of expression", expression=self.text)

        kind, value = token
        if kind == "op" and value == "(":
            self.position += 1
            node = self._expression()
            self._expect(")")
            return node

        self.position += 1
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "string":
            return Literal(_unescape(value[1:-1]))
        if kind == "name":
            if value in _KEYWORDS:
                return Literal(_KEYWORDS[value])
            return Ref(_make_reference(value, self.text))

        raise ExpressionError(f"Unexpected token '{value}'", expression=self.text)


def _unescape(text: str) -> str:
    return re.sub(r"\\(.)", lambda m: {"n": "\n", "t": "\t"}.get(m.group(1), m.group(1)), text)


def _make_reference(name: str, text: str) -> Reference:
    parts = tuple(name.split("."))
    if parts[0] == "var":
        if len(parts) < 2:
            raise ExpressionError("Variable reference needs a name (var.NAME)", expression=text)
    elif len(parts) < 3:
        raise ExpressionError(
            f"Reference '{name}' must name an attribute (TYPE.NAME.ATTRIBUTE)", expression=text
        )
    return Reference(parts)


@dataclass(frozen=True)
class Template:
    """A parsed attribute string: literal text interleaved with expressions."""

    source: str
    parts: Tuple[Union[str, Any], ...]

    @property
    def is_single_expression(self) -> bool:
        return len(self.parts) == 1 and not isinstance(self.parts[0], str)

    @property
    def is_literal(self) -> bool:
        return all(isinstance(p, str) for p in self.parts)

    def references(self) -> List[Reference]:
        refs = []
        for part in self.parts:
            if not isinstance(part, str):
                refs.extend(_node_references(part))
        return refs

    def evaluate(self, resolver: Resolver) -> Any:
        if self.is_single_expression:
            return _evaluate(self.parts[0], resolver)

        pieces = []
        for part in self.parts:
            if isinstance(part, str):
                pieces.append(part)
                continue
            value = _evaluate(part, resolver)
            if value is UNKNOWN:
                return UNKNOWN
            pieces.append(_to_text(value, self.source))
        return "".join(pieces)


@lru_cache(maxsize=4096)
def parse_template(source: str) -> Template:
    """Split a string into literal text and parsed ``${...}`` expressions.

    ``$${`` produces a literal ``${``.
    """
    parts: List[Any] = []
    buffer = []
    i = 0
    while i < len(source):
        if source.startswith("$${", i):
            buffer.append("${")
            i += 3
        elif source.startswith("${", i):
            end = _find_closing_brace(source, i + 2)
            if buffer:
                parts.append("".join(buffer))
                buffer = []
            parts.append(_Parser(source[i + 2:end]).parse())
            i = end + 1
        else:
            buffer.append(source[i])
            i += 1
    if buffer or not parts:
        parts.append("".join(buffer))
    return Template(source=source, parts=tuple(parts))


def _find_closing_brace(source: str, start: int) -> int:
    in_string = False
    i = start
    while i < len(source):
        char = source[i]
        if in_string:
            if char == "\\":
                i += 1
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "}":
            return i
        i += 1
    raise ExpressionError("Unterminated '${'", expression=source)


def _node_references(node) -> Iterator[Reference]:
    if isinstance(node, Ref):
        yield node.reference
    elif isinstance(node, Not):
        yield from _node_references(node.operand)
    elif isinstance(node, BinaryOp):
        yield from _node_references(node.left)
        yield from _node_references(node.right)
    elif isinstance(node, Conditional):
        yield from _node_references(node.condition)
        yield from _node_references(node.if_true)
        yield from _node_references(node.if_false)


def _truthy(value: Any, node) -> bool:
    if isinstance(value, bool):
        return value
    raise ExpressionError(f"Expected a boolean, got {type(value).__name__} ({value!r}) for {node}")


def _evaluate(node, resolver: Resolver) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Ref):
        return traverse(resolver(node.reference), node.reference)

    if isinstance(node, Not):
        value = _evaluate(node.operand, resolver)
        return UNKNOWN if value is UNKNOWN else not _truthy(value, node)

    if isinstance(node, Conditional):
        condition = _evaluate(node.condition, resolver)
        if condition is UNKNOWN:
            return UNKNOWN
        branch = node.if_true if _truthy(condition, node) else node.if_false
        return _evaluate(branch, resolver)

    if isinstance(node, BinaryOp):
        left = _evaluate(node.left, resolver)
        if node.op in ("&&", "||"):
            if left is UNKNOWN:
                return UNKNOWN
            left_true = _truthy(left, node)
            if (node.op == "&&" and not left_true) or (node.op == "||" and left_true):
                return left_true
            right = _evaluate(node.right, resolver)
            return UNKNOWN if right is UNKNOWN else _truthy(right, node)

        right = _evaluate(node.right, resolver)
        if left is UNKNOWN or right is UNKNOWN:
            return UNKNOWN
        return (left == right) if node.op == "==" else (left != right)

    raise ExpressionError(f"Cannot evaluate {node!r}")


def traverse(value: Any, reference: Reference) -> Any:
    """Follow the reference's key path into a map or list value."""
    for key in reference.path:
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(value, dict) and key in value:
            value = value[key]
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            raise UnresolvedReferenceError(
                f"'{reference}' does not exist: no key '{key}'", reference=str(reference)
            )
    return value


def _to_text(value: Any, source: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ExpressionError("Cannot interpolate a map or list into a string", expression=source)
    return str(value)


def find_references(value: Any) -> List[Reference]:
    """Collect references from a nested attribute value, in order of appearance."""
    refs: List[Reference] = []
    if isinstance(value, str):
        if "${" in value:
            refs.extend(parse_template(value).references())
    elif isinstance(value, dict):
        for item in value.values():
            refs.extend(find_references(item))
    elif isinstance(value, list):
        for item in value:
            refs.extend(find_references(item))
    return refs


def evaluate_value(value: Any, resolver: Resolver) -> Any:
    """Evaluate every template inside a nested attribute value."""
    if isinstance(value, str):
        if "${" not in value:
            return value
        return parse_template(value).evaluate(resolver)
    if isinstance(value, dict):
        return {key: evaluate_value(item, resolver) for key, item in value.items()}
    if isinstance(value, list):
        return [evaluate_value(item, resolver) for item in value]
    return value


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def values_equal(left: Any, right: Any) -> bool:
    """Compare attribute values, treating bool, int and float as distinct.

    Plain ``==`` considers ``1``, ``1.0`` and ``True`` equal, which would hide
    a change of type from the diff. Lists and tuples compare as sequences.
    """
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(values_equal(left[k], right[k]) for k in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if type(left) is not type(right):
        return False
    return left == right
