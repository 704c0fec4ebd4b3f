"""
Terraform Resolution Context

The state threaded through one recursive resolution. Contexts are immutable:
every recursive step derives a new context from its parent instead of
mutating shared state, so the visited set of a frame only ever holds the
frames currently on its own call stack. A sibling branch of the search never
sees entries left behind by a branch that has already returned.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path

from .models import ModuleCall
from .references import SymbolicReference


@dataclass(frozen=True)
class ModuleFrame:
    """A module boundary crossed while chasing a module output."""

    call: ModuleCall
    directory: Path  # the module's own directory (the call's resolved source)

    @property
    def signature(self) -> str:
        return f"{self.call.directory}::{self.call.name}"


@dataclass(frozen=True)
class ResolutionContext:
    """
    (reference, directory, depth, visited, module stack) of one call frame.

    ``visited`` holds ``(directory, reference)`` pairs of the enclosing
    frames. Depth is deliberately not part of a visited pair: re-entering the
    same reference in the same directory at a greater depth is still a cycle.
    """

    reference: SymbolicReference
    directory: Path
    depth: int = 0
    visited: frozenset[tuple[str, str]] = field(default_factory=frozenset)
    module_stack: tuple[ModuleFrame, ...] = ()

    @classmethod
    def root(cls, reference: SymbolicReference, directory: Path) -> "ResolutionContext":
        """Fresh context for a top-level request."""
        return cls(reference=reference, directory=directory)

    @property
    def key(self) -> tuple[str, str]:
        return str(self.directory), self.reference.text

    @property
    def is_cycle(self) -> bool:
        """True when this frame re-enters a frame already on its own stack."""
        return self.key in self.visited

    @property
    def current_module(self) -> ModuleFrame | None:
        return self.module_stack[-1] if self.module_stack else None

    def child(
        self,
        reference: SymbolicReference,
        directory: Path | None = None,
        module_stack: tuple[ModuleFrame, ...] | None = None,
    ) -> "ResolutionContext":
        """
        Derive the context of a nested resolution one level deeper.

        Args:
            reference: Reference the nested call resolves
            directory: Directory it is interpreted from (defaults to this one)
            module_stack: Replacement module stack (defaults to this one)
        """
        return ResolutionContext(
            reference=reference,
            directory=self.directory if directory is None else directory,
            depth=self.depth + 1,
            visited=self.visited | {self.key},
            module_stack=self.module_stack if module_stack is None else module_stack,
        )

    def entering_module(self, frame: ModuleFrame) -> tuple[ModuleFrame, ...]:
        return (*self.module_stack, frame)

    def leaving_module(self) -> tuple[ModuleFrame, ...]:
        return self.module_stack[:-1]

    def with_reference(self, reference: SymbolicReference) -> "ResolutionContext":
        """Same frame, different reference (no depth or visited change)."""
        return replace(self, reference=reference)

    def cache_key_parts(self) -> tuple[str, ...]:
        """Every input of this frame that influences its result."""
        return (
            self.reference.text,
            str(self.directory),
            str(self.depth),
            "|".join(frame.signature for frame in self.module_stack),
        )
