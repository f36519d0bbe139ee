"""Parser for textual parameter sequences.

Users type every parameter into a text box. This module turns that text into
a ParsedValue:

    "10"                   -> (10,)
    "a, b, c"              -> ("a", "b", "c")
    "10, 20, ..., 50"      -> (10, 20, 30, 40, 50)
    "(1, 2), (3, 4, 5)"    -> ((1, 2), (3, 4, 5))
    "(0, 0.5, ..., 1), (2)" -> ((0.0, 0.5, 1.0), (2.0,))

Numbers are parsed with Decimal so that step sequences such as
"0.1, 0.2, ..., 0.5" are exact and an unreachable upper bound is detected
rather than rounded. All numbers of one value are ints when every number is
integral, otherwise all of them are floats.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from design_foundry.errors import ParseError

from .values import KindHint, ParameterKind, ParsedValue, Scalar, ValueKind, Vector

DEFAULT_MAX_SEQUENCE_LENGTH = 10_000

ELLIPSIS_TOKENS = frozenset({"...", "…"})
QUOTE_CHARS = frozenset({'"', "'"})

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_TRUE_TOKENS = frozenset({"true", "TRUE", "True"})
_FALSE_TOKENS = frozenset({"false", "FALSE", "False"})
_BARE_UNSAFE_RE = re.compile(r"[,()'\"]")

# Magnitudes a float can represent without overflow or underflow to zero
_MAX_DECIMAL_EXPONENT = 308


@dataclass(frozen=True, slots=True)
class _Token:
    text: str
    quoted: bool = False


@dataclass(frozen=True, slots=True)
class _Element:
    """One top-level comma-separated element: a scalar token or a parenthesized group."""

    token: _Token | None = None
    group: tuple[_Token, ...] | None = None


def parse_sequence(
    raw_text: str,
    kind_hint: KindHint = KindHint.AUTO,
    *,
    max_length: int = DEFAULT_MAX_SEQUENCE_LENGTH,
) -> ParsedValue:
    """Parse one parameter's text into a ParsedValue.

    Args:
        raw_text: Text as entered by the user.
        kind_hint: How to treat parentheses and bare lists.
        max_length: Maximum number of elements a single list or step
            sequence may expand to.

    Returns:
        The parsed value.

    Raises:
        ParseError: If the text is empty or malformed.
    """
    if not isinstance(raw_text, str):
        raise ParseError(f"Parameter text must be a string, got {type(raw_text).__name__}")

    elements = _scan(raw_text)
    groups = [element.group for element in elements if element.group is not None]

    if groups:
        if len(groups) != len(elements):
            raise ParseError("Cannot mix vectors and scalar values", text=raw_text)
        if kind_hint == KindHint.SCALAR:
            raise ParseError("Vector values are not allowed here", text=raw_text)
        raw_vectors = [_expand_tokens(list(group), raw_text, max_length) for group in groups]
        vectors = _normalize_numbers(raw_vectors)
        return ParsedValue(ValueKind.VECTORS, tuple(vectors))

    tokens = [element.token for element in elements if element.token is not None]
    (scalars,) = _normalize_numbers([_expand_tokens(tokens, raw_text, max_length)])
    if kind_hint == KindHint.VECTOR:
        return ParsedValue(ValueKind.VECTORS, (scalars,))
    return ParsedValue(ValueKind.SCALARS, scalars)


def classify_kind(raw_text: str) -> ParameterKind:
    """Return the syntactic form of ``raw_text``.

    Raises:
        ParseError: If the text is malformed.
    """
    parsed = parse_sequence(raw_text)
    if parsed.kind == ValueKind.VECTORS:
        return ParameterKind.VECTOR_SEQUENCE
    elements = _scan(raw_text)
    if any(_is_ellipsis(element.token) for element in elements):
        return ParameterKind.STEP_SEQUENCE
    if len(parsed) == 1:
        return ParameterKind.SCALAR
    return ParameterKind.LIST


def parse_parameter_specs(
    raw_specs: Mapping[str, str],
    *,
    hints: Mapping[str, KindHint] | None = None,
    max_length: int = DEFAULT_MAX_SEQUENCE_LENGTH,
) -> dict[str, ParsedValue]:
    """Parse every named parameter, preserving insertion order.

    Raises:
        ParseError: Tagged with the name of the first malformed parameter.
    """
    hints = hints or {}
    parsed: dict[str, ParsedValue] = {}
    for name, raw_text in raw_specs.items():
        try:
            parsed[name] = parse_sequence(
                raw_text,
                hints.get(name, KindHint.AUTO),
                max_length=max_length,
            )
        except ParseError as exc:
            raise exc.for_parameter(name) from exc
    return parsed


def format_parsed_value(value: ParsedValue) -> str:
    """Serialize a ParsedValue to canonical text that parses back to it."""
    if value.kind == ValueKind.VECTORS:
        return ", ".join(_format_vector(item) for item in value.items)  # type: ignore[arg-type]
    return ", ".join(format_scalar(item) for item in value.items)  # type: ignore[arg-type]


def format_scalar(value: Scalar) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    return _format_string(value)


# =============================================================================
# Scanning
# =============================================================================


def _scan(raw_text: str) -> list[_Element]:
    """Split text into top-level elements, honouring quotes and parentheses."""
    if not raw_text.strip():
        raise ParseError("At least one value is required", text=raw_text)

    elements: list[_Element] = []
    tokens: list[_Token] = []
    buffer: list[str] = []
    quote: str | None = None
    quoted = False
    closed = False
    in_group = False
    group_closed = False

    def finish_token() -> None:
        nonlocal quoted, closed
        text = "".join(buffer) if quoted else "".join(buffer).strip()
        if not quoted and not text:
            raise ParseError("Empty value in list", text=raw_text)
        tokens.append(_Token(text, quoted=quoted))
        buffer.clear()
        quoted = False
        closed = False

    def finish_element() -> None:
        nonlocal in_group, group_closed
        if in_group:
            raise ParseError("Unbalanced parentheses", text=raw_text)
        if group_closed:
            elements.append(_Element(group=tuple(tokens)))
        else:
            finish_token()
            elements.append(_Element(token=tokens[0]))
        tokens.clear()
        group_closed = False

    for char in raw_text:
        if quote is not None:
            if char == quote:
                quote = None
                closed = True
            else:
                buffer.append(char)
            continue

        if char in QUOTE_CHARS:
            if closed or "".join(buffer).strip() or group_closed:
                raise ParseError("Unexpected quote character", text=raw_text)
            buffer.clear()
            quote = char
            quoted = True
        elif char == "(":
            if in_group:
                raise ParseError("Nested parentheses are not supported", text=raw_text)
            if group_closed or closed or "".join(buffer).strip():
                raise ParseError("Unexpected '('", text=raw_text)
            buffer.clear()
            in_group = True
        elif char == ")":
            if not in_group:
                raise ParseError("Unbalanced parentheses", text=raw_text)
            if not tokens and not closed and not "".join(buffer).strip():
                raise ParseError("Empty vector", text=raw_text)
            finish_token()
            in_group = False
            group_closed = True
        elif char == ",":
            if in_group:
                finish_token()
            else:
                finish_element()
        elif char.isspace():
            if not closed and not group_closed:
                buffer.append(char)
        elif closed or group_closed:
            raise ParseError(f"Unexpected character {char!r}", text=raw_text)
        else:
            buffer.append(char)

    if quote is not None:
        raise ParseError("Unterminated quoted string", text=raw_text)
    finish_element()
    return elements


def _is_ellipsis(token: _Token | None) -> bool:
    return token is not None and not token.quoted and token.text in ELLIPSIS_TOKENS


# =============================================================================
# Token conversion
# =============================================================================


def _expand_tokens(tokens: list[_Token], raw_text: str, max_length: int) -> list[Scalar | Decimal]:
    """Convert tokens to values, expanding a step sequence if one is present."""
    ellipses = [index for index, token in enumerate(tokens) if _is_ellipsis(token)]
    if not ellipses:
        if len(tokens) > max_length:
            raise ParseError(f"List has more than {max_length} values", text=raw_text)
        return [_convert_token(token) for token in tokens]

    if len(ellipses) > 1:
        raise ParseError("Only one '...' is allowed in a sequence", text=raw_text)
    position = ellipses[0]
    if position < 2 or position != len(tokens) - 2:
        raise ParseError("Step sequences must be written as 'a, b, ..., z'", text=raw_text)
    return list(_expand_step_sequence(tokens[:position], tokens[-1], raw_text, max_length))


def _expand_step_sequence(
    lead: list[_Token],
    end_token: _Token,
    raw_text: str,
    max_length: int,
) -> list[Decimal]:
    lead_values = [_require_number(token, raw_text) for token in lead]
    end = _require_number(end_token, raw_text)

    start = lead_values[0]
    step = lead_values[1] - start
    if step == 0:
        raise ParseError("Step sequence has a step of zero", text=raw_text)
    for offset, value in enumerate(lead_values):
        if value != start + offset * step:
            raise ParseError("Values before '...' must be evenly spaced", text=raw_text)

    try:
        steps, remainder = divmod(end - start, step)
    except InvalidOperation as exc:
        raise ParseError(f"Step sequence has more than {max_length} values", text=raw_text) from exc
    if remainder != 0:
        raise ParseError(
            f"Upper bound {end_token.text} is not reachable from {lead[0].text} in steps of {step}",
            text=raw_text,
        )
    if steps < len(lead_values) - 1:
        raise ParseError(
            f"Upper bound {end_token.text} lies before the listed values",
            text=raw_text,
        )

    count = int(steps) + 1
    if count > max_length:
        raise ParseError(f"Step sequence has {count} values, more than {max_length}", text=raw_text)
    return [start + index * step for index in range(count)]


def _require_number(token: _Token, raw_text: str) -> Decimal:
    value = _convert_token(token)
    if not isinstance(value, Decimal):
        raise ParseError(f"Step sequence bound {token.text!r} is not a number", text=raw_text)
    return value


def _convert_token(token: _Token) -> Scalar | Decimal:
    if token.quoted:
        return token.text
    text = token.text
    if text in ELLIPSIS_TOKENS:
        raise ParseError("Misplaced '...'", text=text)
    if text in _TRUE_TOKENS:
        return True
    if text in _FALSE_TOKENS:
        return False
    if _NUMBER_RE.match(text):
        try:
            value = Decimal(text)
        except InvalidOperation as exc:
            raise ParseError(f"Invalid number {text!r}", text=text) from exc
        if value and abs(value.adjusted()) > _MAX_DECIMAL_EXPONENT:
            raise ParseError(f"Number {text!r} is out of range", text=text)
        return value
    return text


def _normalize_numbers(sequences: list[list[Scalar | Decimal]]) -> list[Vector]:
    """Type every Decimal across ``sequences`` as int, or as float if any is fractional."""
    numbers = [value for values in sequences for value in values if isinstance(value, Decimal)]
    integral = all(value == value.to_integral_value() for value in numbers)

    def convert(value: Scalar | Decimal) -> Scalar:
        if not isinstance(value, Decimal):
            return value
        if integral:
            return int(value)
        number = float(value)
        if not math.isfinite(number):
            raise ParseError(f"Number {value} is out of range", text=str(value))
        return number

    return [tuple(convert(value) for value in values) for values in sequences]


def _format_vector(vector: Vector) -> str:
    return "(" + ", ".join(format_scalar(item) for item in vector) + ")"


def _format_string(value: str) -> str:
    needs_quotes = (
        not value
        or value != value.strip()
        or bool(_BARE_UNSAFE_RE.search(value))
        or value in ELLIPSIS_TOKENS
        or value in _TRUE_TOKENS
        or value in _FALSE_TOKENS
        or bool(_NUMBER_RE.match(value))
    )
    if not needs_quotes:
        return value
    if '"' not in value:
        return f'"{value}"'
    if "'" not in value:
        return f"'{value}'"
    raise ValueError(f"String {value!r} contains both quote characters and cannot be formatted")
