"""
Terraform Symbolic References

A reference is a dotted path such as ``var.region``, ``local.tags.Name``,
``module.vpc.vpc_id`` or ``data.aws_ami.ubuntu.id``. This module parses such
text into an immutable value object and substitutes resolved values back
into expressions.
"""

import re
from dataclasses import dataclass
from enum import Enum

from src.core.exceptions import ReferenceSyntaxError


class ReferenceKind(str, Enum):
    """The four kinds of symbolic reference, keyed by their prefix."""

    INPUT = "var"
    LOCAL = "local"
    MODULE_OUTPUT = "module"
    DATA_ATTRIBUTE = "data"


# Number of path segments that name the referenced symbol; anything beyond is
# a property projection into the resolved value.
_SYMBOL_SEGMENTS: dict[ReferenceKind, int] = {
    ReferenceKind.INPUT: 1,
    ReferenceKind.LOCAL: 1,
    ReferenceKind.MODULE_OUTPUT: 2,
    ReferenceKind.DATA_ATTRIBUTE: 3,
}

_SEGMENT = r"[A-Za-z_][\w-]*"

REFERENCE_PATTERN = re.compile(
    rf"(?<![\w.])(?P<kind>var|local|module|data)\.(?P<path>{_SEGMENT}(?:\.{_SEGMENT})*)"
)

_BARE_NAME = re.compile(rf"^{_SEGMENT}$")


@dataclass(frozen=True)
class SymbolicReference:
    """An immutable, parsed reference with an optional property path."""

    kind: ReferenceKind
    segments: tuple[str, ...]

    def __post_init__(self) -> None:
        if len(self.segments) < _SYMBOL_SEGMENTS[self.kind]:
            raise ReferenceSyntaxError(
                f"'{self.kind.value}' references need at least "
                f"{_SYMBOL_SEGMENTS[self.kind]} path segment(s)",
                reference=".".join((self.kind.value, *self.segments)),
            )

    @classmethod
    def parse(cls, text: str) -> "SymbolicReference":
        """
        Parse reference text.

        A bare identifier (``region``) is read as an input variable.

        Examples:
        - "var.region" -> INPUT, ("region",)
        - "local.tags.Name" -> LOCAL, ("tags", "Name")
        - "module.vpc.vpc_id" -> MODULE_OUTPUT, ("vpc", "vpc_id")

        Raises:
            ReferenceSyntaxError: If the text is not a reference
        """
        candidate = (text or "").strip()
        if _BARE_NAME.match(candidate):
            return cls(ReferenceKind.INPUT, (candidate,))

        match = REFERENCE_PATTERN.fullmatch(candidate)
        if not match:
            raise ReferenceSyntaxError("Not a symbolic reference", reference=text)

        return cls(ReferenceKind(match.group("kind")), tuple(match.group("path").split(".")))

    @property
    def text(self) -> str:
        """Canonical textual form, e.g. ``var.region``."""
        return ".".join((self.kind.value, *self.segments))

    @property
    def symbol_segments(self) -> tuple[str, ...]:
        return self.segments[: _SYMBOL_SEGMENTS[self.kind]]

    @property
    def property_path(self) -> tuple[str, ...]:
        """Segments projecting into the resolved value (may be empty)."""
        return self.segments[_SYMBOL_SEGMENTS[self.kind] :]

    @property
    def name(self) -> str:
        """The symbol name for inputs and locals, the first segment otherwise."""
        return self.segments[0]

    @property
    def module_name(self) -> str | None:
        if self.kind is not ReferenceKind.MODULE_OUTPUT:
            return None
        return self.segments[0]

    @property
    def output_name(self) -> str | None:
        if self.kind is not ReferenceKind.MODULE_OUTPUT:
            return None
        return self.segments[1]

    @property
    def data_address(self) -> tuple[str, str, str] | None:
        """(data source type, data source name, attribute) for data references."""
        if self.kind is not ReferenceKind.DATA_ATTRIBUTE:
            return None
        return self.segments[0], self.segments[1], self.segments[2]

    def base(self) -> "SymbolicReference":
        """The same reference without its property path."""
        if not self.property_path:
            return self
        return SymbolicReference(self.kind, self.symbol_segments)

    def __str__(self) -> str:
        return self.text


def substitute_reference(expression: str, reference_text: str, value: str) -> str:
    """
    Replace whole-word occurrences of a reference with its resolved value.

    A reference that forms an entire ``${...}`` interpolation and resolves to
    a quoted string is inlined without its quotes, so ``"${var.env}-app"``
    becomes ``"prod-app"`` rather than ``"${"prod"}-app"``.

    Args:
        expression: Text containing the reference
        reference_text: Canonical reference text (e.g. ``var.env``)
        value: Resolved literal text

    Returns:
        Expression with every occurrence replaced
    """
    escaped = re.escape(reference_text)
    result = expression

    if _is_quoted_string(value):
        inner = value.strip()[1:-1]
        interpolation = re.compile(rf"\$\{{\s*{escaped}\s*\}}")
        result = interpolation.sub(lambda _: inner, result)

    # Not followed by another identifier character or a further ".segment",
    # so "var.a" never matches inside "var.ab" or "var.a.b".
    bare = re.compile(rf"(?<![\w.]){escaped}(?![\w-])(?!\.[A-Za-z_])")
    return bare.sub(lambda _: value, result)


def _is_quoted_string(value: str) -> bool:
    stripped = value.strip()
    return (
        len(stripped) >= 2
        and stripped.startswith('"')
        and stripped.endswith('"')
        and '"' not in stripped[1:-1].replace('\\"', "")
    )
