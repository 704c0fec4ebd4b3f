"""Batch resolution of every reference in a region of Terraform text."""

import logging
from bisect import bisect_right
from pathlib import Path
from typing import Protocol

from . import extractor
from .models import AnnotatedValue, ContextValue, ReferenceAnnotation
from .resolver import TerraformReferenceResolver

logger = logging.getLogger(__name__)


class CancellationSignal(Protocol):
    """Anything with ``is_set()``, e.g. asyncio.Event or threading.Event."""

    def is_set(self) -> bool: ...


class ReferenceScanner:
    """
    Resolves every reference found in a document region across all candidate
    contexts and groups equal values.

    Scanning is cooperative: the cancellation signal is checked before each
    reference, and a cancelled scan returns the annotations computed so far.
    """

    def __init__(self, resolver: TerraformReferenceResolver):
        self.resolver = resolver
        self._logger = logger.getChild(self.__class__.__name__)

    async def scan(
        self,
        text: str,
        document_path: Path | str,
        cancel: CancellationSignal | None = None,
        line_offset: int = 0,
    ) -> list[ReferenceAnnotation]:
        """
        Annotate the references of ``text``.

        Args:
            text: Region of the document to scan
            document_path: Path of the document (its directory is the first
                candidate context)
            cancel: Optional cancellation signal
            line_offset: Line of the document the region starts at

        Returns:
            One annotation per reference occurrence, in source order
        """
        document_directory = Path(document_path).parent
        candidates = self.resolver.candidate_directories(document_directory)
        line_starts = _line_starts(text)
        annotations: list[ReferenceAnnotation] = []

        for match in extractor.find_references(text):
            if cancel is not None and cancel.is_set():
                self._logger.debug(
                    f"Scan cancelled after {len(annotations)} annotations"
                )
                break

            values = await self.resolver.resolve_in_multiple_contexts(
                match.reference, candidates
            )
            line, column = _position(line_starts, match.start)
            annotations.append(
                ReferenceAnnotation(
                    reference=match.reference.text,
                    line=line + line_offset,
                    column=column,
                    values=merge_context_values(values),
                )
            )

        self._logger.debug(
            f"Scanned {document_path}: {len(annotations)} references, "
            f"{sum(1 for a in annotations if a.resolved)} resolved"
        )
        return annotations


def merge_context_values(values: list[ContextValue]) -> list[AnnotatedValue]:
    """Group equal values, keeping first-seen order and every context label."""
    merged: dict[str, AnnotatedValue] = {}
    for item in values:
        entry = merged.setdefault(item.value, AnnotatedValue(value=item.value))
        entry.contexts.append(item.context)
        entry.directories.append(item.directory)
    return list(merged.values())


def _line_starts(text: str) -> list[int]:
    starts = [0]
    starts.extend(i + 1 for i, char in enumerate(text) if char == "\n")
    return starts


def _position(line_starts: list[int], offset: int) -> tuple[int, int]:
    line = bisect_right(line_starts, offset) - 1
    return line, offset - line_starts[line]
