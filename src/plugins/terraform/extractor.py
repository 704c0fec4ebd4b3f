"""
Terraform Pattern Extractor

Locates assignments, blocks and references in raw Terraform text without
building a syntax tree. All structural decisions are taken on a *masked*
copy of the text produced by a small character-level state machine: string
contents become spaces, comments become ``\\x00`` and everything else
(including the code inside ``${...}`` interpolations) is kept. The mask has
the same length as the source, so positions found in it slice the original
text directly.

Nothing in this module performs I/O.
"""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from src.core.exceptions import ReferenceSyntaxError

from .models import ModuleCall
from .references import REFERENCE_PATTERN, ReferenceKind, SymbolicReference

logger = logging.getLogger(__name__)

COMMENT_FILL = "\x00"
STRING_FILL = " "

_OPENERS = "{[("
_CLOSERS = "}])"

_ASSIGNMENT = re.compile(r'"?([A-Za-z_][\w-]*)"?[ \t]*=(?![=>])')
_ASSIGNMENT_OR_COLON = re.compile(r'"?([A-Za-z_][\w-]*)"?[ \t]*(?:=(?![=>])|:)')
_HEREDOC_HEADER = re.compile(r"<<(-?)([A-Za-z_]\w*)[ \t]*\r?\n")
_BLOCK_LABEL = re.compile(r'"([^"\n]*)"|([A-Za-z_][\w-]*)')


class _Mode(Enum):
    CODE = "code"
    STRING = "string"
    INTERPOLATION = "interpolation"
    HEREDOC = "heredoc"
    LINE_COMMENT = "line_comment"
    BLOCK_COMMENT = "block_comment"


@dataclass(frozen=True)
class Assignment:
    """One ``name = value`` statement found at depth 0 of a text."""

    name: str
    value: str
    start: int
    end: int


@dataclass(frozen=True)
class Block:
    """One ``keyword "label" ... { body }`` block found at depth 0 of a text."""

    keyword: str
    labels: tuple[str, ...]
    body: str
    start: int
    end: int


@dataclass(frozen=True)
class ReferenceMatch:
    """A reference occurrence with its position in the scanned text."""

    reference: SymbolicReference
    start: int
    end: int


# --- masking state machine ---


def mask_non_code(text: str) -> str:
    """
    Return a copy of ``text`` where only code survives.

    String literal contents are replaced by spaces (the quote characters are
    kept so a value still visibly starts with ``"``), comments by ``\\x00``,
    and heredoc bodies by spaces. Code inside ``${...}`` interpolations is
    kept, but the ``${`` and closing ``}`` delimiters are blanked so they do
    not count as structural braces. Newlines are always preserved.

    Args:
        text: Raw Terraform text

    Returns:
        Masked text of the same length
    """
    out = list(text)
    length = len(text)
    # Each frame is [mode, payload]; payload is the open brace count for
    # interpolations and (marker, dedent) for heredocs.
    stack: list[list] = [[_Mode.CODE, None]]
    at_line_start = True
    i = 0

    while i < length:
        mode, payload = stack[-1]
        char = text[i]
        nxt = text[i + 1] if i + 1 < length else ""

        if mode is _Mode.LINE_COMMENT:
            if char == "\n":
                stack.pop()
                at_line_start = True
            else:
                out[i] = COMMENT_FILL
            i += 1
            continue

        if mode is _Mode.BLOCK_COMMENT:
            if char == "*" and nxt == "/":
                out[i] = out[i + 1] = COMMENT_FILL
                stack.pop()
                i += 2
                continue
            if char != "\n":
                out[i] = COMMENT_FILL
            i += 1
            continue

        if mode is _Mode.HEREDOC:
            if at_line_start:
                line_end = text.find("\n", i)
                line_end = length if line_end == -1 else line_end
                if text[i:line_end].strip() == payload:
                    # Terminator line stays visible
                    stack.pop()
                    i = line_end
                    at_line_start = False
                    continue
            at_line_start = char == "\n"
            if char == "$" and nxt == "{":
                out[i] = out[i + 1] = STRING_FILL
                stack.append([_Mode.INTERPOLATION, 0])
                i += 2
                continue
            if char != "\n":
                out[i] = STRING_FILL
            i += 1
            continue

        if mode is _Mode.STRING:
            if char == "\\" and i + 1 < length and nxt != "\n":
                out[i] = out[i + 1] = STRING_FILL
                i += 2
                continue
            if char == "$" and text.startswith("$${", i):
                out[i] = out[i + 1] = out[i + 2] = STRING_FILL
                i += 3
                continue
            if char == "$" and nxt == "{":
                out[i] = out[i + 1] = STRING_FILL
                stack.append([_Mode.INTERPOLATION, 0])
                i += 2
                continue
            if char == '"':
                stack.pop()
                i += 1
                continue
            if char == "\n":
                # Quoted strings cannot span lines; recover at the line break
                stack.pop()
                at_line_start = True
                i += 1
                continue
            out[i] = STRING_FILL
            i += 1
            continue

        # CODE or INTERPOLATION
        if char == "\n":
            at_line_start = True
            i += 1
            continue
        if char not in " \t\r":
            at_line_start = False

        if char == '"':
            stack.append([_Mode.STRING, None])
            i += 1
            continue
        if char == "#" or (char == "/" and nxt == "/"):
            out[i] = COMMENT_FILL
            stack.append([_Mode.LINE_COMMENT, None])
            i += 1
            continue
        if char == "/" and nxt == "*":
            out[i] = out[i + 1] = COMMENT_FILL
            stack.append([_Mode.BLOCK_COMMENT, None])
            i += 2
            continue
        if char == "<" and nxt == "<":
            header = _HEREDOC_HEADER.match(text, i)
            if header:
                i = header.end()
                at_line_start = True
                stack.append([_Mode.HEREDOC, header.group(2)])
                continue

        if mode is _Mode.INTERPOLATION:
            if char == "{":
                stack[-1][1] = payload + 1
            elif char == "}":
                if payload == 0:
                    out[i] = STRING_FILL
                    stack.pop()
                else:
                    stack[-1][1] = payload - 1
        i += 1

    return "".join(out)


# --- assignments ---


def iter_assignments(text: str, allow_colon: bool = False) -> Iterator[Assignment]:
    """
    Yield every assignment statement at brace depth 0 of ``text``.

    A statement starts at the beginning of the text, after a newline or after
    a comma, optionally preceded by whitespace. Values run until a newline, a
    comma or a comment at depth 0; braced and bracketed values may therefore
    span several lines. Heredoc values yield their body.

    Args:
        text: Text to scan (a whole file or the body of a block)
        allow_colon: Also accept ``key: value`` (object-literal syntax)

    Yields:
        Assignment records in source order
    """
    mask = mask_non_code(text)
    pattern = _ASSIGNMENT_OR_COLON if allow_colon else _ASSIGNMENT
    length = len(text)
    depth = 0
    statement_start = True
    i = 0

    while i < length:
        char = mask[i]

        if statement_start and depth == 0:
            if char in " \t\r":
                i += 1
                continue
            statement_start = False
            match = pattern.match(text, i)
            if match and mask[i] == text[i] and mask[match.end() - 1] == text[match.end() - 1]:
                value, value_end = _read_value(text, mask, match.end())
                yield Assignment(match.group(1), value, i, value_end)
                i = value_end
                continue

        if char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            depth = max(depth - 1, 0)
        elif depth == 0 and char in "\n,":
            statement_start = True
        i += 1


def extract_assigned_value(text: str, name: str, allow_colon: bool = False) -> str | None:
    """
    Find the value assigned to ``name`` at the top level of ``text``.

    Args:
        text: Text to scan
        name: Symbol name (quoted keys match too)
        allow_colon: Also accept ``name: value``

    Returns:
        The assigned value text, or None when there is no such assignment
    """
    for assignment in iter_assignments(text, allow_colon=allow_colon):
        if assignment.name == name:
            return assignment.value
    return None


def split_top_level(text: str, separator: str = ",") -> list[str]:
    """
    Split ``text`` at separators outside of strings, comments and brackets.

    Empty items (such as the one after a trailing comma) are dropped.
    """
    mask = mask_non_code(text)
    items: list[str] = []
    depth = 0
    start = 0
    for i, char in enumerate(mask):
        if char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            depth = max(depth - 1, 0)
        elif depth == 0 and char == separator:
            items.append(_strip_comments(text[start:i], mask[start:i]))
            start = i + 1
    items.append(_strip_comments(text[start:], mask[start:]))
    return [item for item in items if item]


def unquote(value: str) -> str:
    """Strip one pair of surrounding double quotes, if present."""
    stripped = value.strip()
    if len(stripped) >= 2 and stripped[0] == '"' and stripped[-1] == '"':
        return stripped[1:-1]
    return stripped


def _strip_comments(text: str, mask: str) -> str:
    return "".join(c for c, m in zip(text, mask) if m != COMMENT_FILL).strip()


def _read_value(text: str, mask: str, position: int) -> tuple[str, int]:
    """Read one value starting right after an assignment operator."""
    length = len(text)
    start = position
    while start < length and text[start] in " \t":
        start += 1

    heredoc = _HEREDOC_HEADER.match(text, start)
    if heredoc:
        return _read_heredoc(text, heredoc)

    depth = 0
    i = start
    while i < length:
        char = mask[i]
        if char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            if depth == 0:
                break
            depth -= 1
        elif depth == 0 and (char in "\n," or char == COMMENT_FILL):
            break
        i += 1
    else:
        if depth > 0:
            line_end = text.find("\n", start)
            line_end = length if line_end == -1 else line_end
            fragment = text[start:line_end].strip()
            logger.debug(f"Unbalanced value, keeping raw fragment: {fragment[:60]}")
            return fragment, line_end

    return text[start:i].rstrip(), i


def _read_heredoc(text: str, header: re.Match) -> tuple[str, int]:
    dedent, marker = header.group(1) == "-", header.group(2)
    body_start = header.end()
    lines: list[str] = []
    position = body_start

    while position < len(text):
        line_end = text.find("\n", position)
        line_end = len(text) if line_end == -1 else line_end
        line = text[position:line_end]
        if line.strip() == marker:
            position = line_end
            break
        lines.append(line.rstrip("\r"))
        position = line_end + 1
    else:
        position = len(text)

    if dedent:
        indents = [len(line) - len(line.lstrip()) for line in lines if line.strip()]
        cut = min(indents) if indents else 0
        lines = [line[cut:] for line in lines]

    return "\n".join(lines), position


# --- blocks ---


def iter_blocks(text: str, keyword: str) -> Iterator[Block]:
    """
    Yield every top-level ``keyword ... { }`` block of ``text``.

    Labels may be quoted or bare. The body is delimited by brace matching on
    the masked text, so nesting depth is unlimited; an unclosed block
    degrades to a body running to the end of the text.
    """
    mask = mask_non_code(text)
    header = re.compile(
        rf'{re.escape(keyword)}((?:[ \t]+(?:"[^"\n]*"|[A-Za-z_][\w-]*))*)[ \t]*\{{'
    )
    length = len(text)
    depth = 0
    statement_start = True
    i = 0

    while i < length:
        char = mask[i]
        if statement_start and depth == 0:
            if char in " \t\r":
                i += 1
                continue
            statement_start = False
            match = header.match(text, i)
            if match and mask[i] == text[i] and mask[match.end() - 1] == "{":
                labels = tuple(
                    quoted or bare for quoted, bare in _BLOCK_LABEL.findall(match.group(1))
                )
                body_start = match.end()
                close = _matching_brace(mask, body_start)
                if close is None:
                    logger.debug(f"Unclosed '{keyword}' block {labels}, using rest of text")
                    yield Block(keyword, labels, text[body_start:], i, length)
                    return
                yield Block(keyword, labels, text[body_start:close], i, close + 1)
                i = close + 1
                continue

        if char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            depth = max(depth - 1, 0)
        elif depth == 0 and char == "\n":
            statement_start = True
        i += 1


def extract_block(text: str, keyword: str, *labels: str) -> str | None:
    """Return the body of the first block whose leading labels match."""
    for block in iter_blocks(text, keyword):
        if block.labels[: len(labels)] == labels:
            return block.body
    return None


def _matching_brace(mask: str, body_start: int) -> int | None:
    depth = 1
    for i in range(body_start, len(mask)):
        if mask[i] == "{":
            depth += 1
        elif mask[i] == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


# --- module calls ---


def extract_module_inputs(body: str) -> dict[str, str]:
    """
    Map each argument of a module block body to its expression text.

    The ``source`` argument is not an input and is left out.
    """
    return {
        assignment.name: assignment.value
        for assignment in iter_assignments(body)
        if assignment.name != "source"
    }


def parse_module_call(block: Block, directory: Path) -> ModuleCall | None:
    """Build a ModuleCall from a ``module`` block; None without name or source."""
    if not block.labels:
        return None
    source = extract_assigned_value(block.body, "source")
    if source is None:
        logger.debug(f"Module block '{block.labels[0]}' has no source")
        return None
    return ModuleCall(
        name=block.labels[0],
        source=unquote(source),
        inputs=extract_module_inputs(block.body),
        directory=directory,
    )


def iter_module_calls(text: str, directory: Path) -> Iterator[ModuleCall]:
    for block in iter_blocks(text, "module"):
        call = parse_module_call(block, directory)
        if call is not None:
            yield call


# --- declaration lookups ---


def extract_output_value(text: str, name: str) -> str | None:
    body = extract_block(text, "output", name)
    return None if body is None else extract_assigned_value(body, "value")


def extract_local_value(text: str, name: str) -> str | None:
    """Search every ``locals`` block of the text for ``name``."""
    for block in iter_blocks(text, "locals"):
        value = extract_assigned_value(block.body, name)
        if value is not None:
            return value
    return None


def extract_variable_default(text: str, name: str) -> str | None:
    body = extract_block(text, "variable", name)
    return None if body is None else extract_assigned_value(body, "default")


def extract_data_argument(
    text: str, data_type: str, data_name: str, attribute: str
) -> str | None:
    body = extract_block(text, "data", data_type, data_name)
    return None if body is None else extract_assigned_value(body, attribute)


# --- references ---


def find_references(text: str) -> list[ReferenceMatch]:
    """
    Find every reference in code and interpolations, in source order.

    Comments and literal string text are skipped. Text that looks like a
    reference but lacks the segments its kind needs (``module.vpc``) is
    ignored.
    """
    mask = mask_non_code(text)
    matches: list[ReferenceMatch] = []
    for match in REFERENCE_PATTERN.finditer(mask):
        try:
            reference = SymbolicReference(
                ReferenceKind(match.group("kind")), tuple(match.group("path").split("."))
            )
        except ReferenceSyntaxError:
            continue
        matches.append(ReferenceMatch(reference, match.start(), match.end()))
    return matches


def extract_references(text: str) -> set[SymbolicReference]:
    """All distinct references in ``text`` (order-independent)."""
    return {match.reference for match in find_references(text)}
