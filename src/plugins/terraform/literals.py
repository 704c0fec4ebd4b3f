"""
Literal handling for resolved values.

Resolved values are opaque text. The helpers here interpret that text only
where a caller needs structure: reading JSON override files, projecting a
property out of an object literal, and the best-effort HCL -> JSON
transcoding used for display. Transcoding is heuristic and may fail; callers
fall back to the raw text.
"""

import json
import logging
import re
from typing import Any

from src.core.exceptions import MalformedLiteralError

from .extractor import extract_assigned_value, iter_assignments, split_top_level

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"^-?\d+(\.\d+)?([eE][+-]?\d+)?$")


def format_json_value(value: Any) -> str:
    """
    Render a decoded JSON value as literal text.

    Strings keep their quotes, scalars use JSON spelling and structures are
    indented by two spaces.
    """
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    return json.dumps(value)


def parse_json_variable(text: str, name: str) -> str | None:
    """
    Look up a top-level variable in a ``.tfvars.json`` document.

    Args:
        text: JSON document text
        name: Variable name

    Returns:
        The formatted value, or None when the document does not assign it

    Raises:
        MalformedLiteralError: If the document is not a JSON object
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedLiteralError(f"Invalid JSON document: {e.msg}", fragment=text) from e

    if not isinstance(document, dict):
        raise MalformedLiteralError("JSON variables document must be an object", fragment=text)

    if name not in document:
        return None
    return format_json_value(document[name])


def hcl_to_python(text: str) -> Any:
    """
    Convert an HCL literal to Python data.

    Supports objects (``=`` or ``:`` separated, newline or comma delimited),
    lists, quoted strings, numbers, booleans and null. Anything else, such as
    an expression or an unresolved reference, is rejected.

    Raises:
        MalformedLiteralError: If the text is not a plain literal
    """
    literal = text.strip()

    if literal.startswith("{") and literal.endswith("}"):
        inner = literal[1:-1]
        assignments = list(iter_assignments(inner, allow_colon=True))
        if not assignments and inner.strip():
            raise MalformedLiteralError("Object literal has no fields", fragment=literal)
        return {a.name: hcl_to_python(a.value) for a in assignments}

    if literal.startswith("[") and literal.endswith("]"):
        return [hcl_to_python(item) for item in split_top_level(literal[1:-1])]

    if literal.startswith('"') and literal.endswith('"') and len(literal) >= 2:
        try:
            return json.loads(literal)
        except json.JSONDecodeError:
            return literal[1:-1]

    if literal in ("true", "false"):
        return literal == "true"
    if literal == "null":
        return None
    if _NUMBER.match(literal):
        return float(literal) if any(c in literal for c in ".eE") else int(literal)

    raise MalformedLiteralError("Not a literal value", fragment=literal)


def pretty_print(text: str) -> str:
    """
    Best-effort display form of a value.

    Structured literals are re-rendered as indented JSON; everything else,
    including literals that fail to transcode, is returned unchanged.
    """
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return text
    try:
        return json.dumps(hcl_to_python(stripped), indent=2)
    except MalformedLiteralError as e:
        logger.debug(f"Keeping raw text for display: {e}")
        return text


def extract_property(text: str, property_name: str) -> str | None:
    """
    Project one field out of a structured literal.

    A strict JSON parse is attempted first; otherwise the field is looked up
    textually (``key = value`` or ``key: value``) inside the literal's
    braces.

    Returns:
        The field's literal text, or None when absent or not an object
    """
    stripped = text.strip()

    try:
        decoded = json.loads(stripped)
    except json.JSONDecodeError:
        decoded = None
    else:
        if isinstance(decoded, dict):
            if property_name in decoded:
                return format_json_value(decoded[property_name])
            return None

    if stripped.startswith("{") and stripped.endswith("}"):
        return extract_assigned_value(stripped[1:-1], property_name, allow_colon=True)
    return None
