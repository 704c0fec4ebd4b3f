from pathlib import Path
from typing import Protocol


class FileAccessor(Protocol):
    """Defines the contract for the only I/O surface the resolver touches."""

    async def exists(self, path: Path) -> bool:
        """Returns True if the path exists (file or directory)."""
        ...

    async def is_directory(self, path: Path) -> bool:
        """Returns True if the path exists and is a directory."""
        ...

    async def list_entries(self, path: Path) -> list[str]:
        """
        Lists the entry names of a directory, sorted.

        Raises:
            FileAccessError: If the directory cannot be listed
        """
        ...

    async def read_text(self, path: Path) -> str:
        """
        Reads a file as text.

        Raises:
            FileAccessError: If the file is absent, unreadable or undecodable
        """
        ...


class ReferenceResolver(Protocol):
    """Defines the contract the workspace registry needs from an engine."""

    @property
    def workspace_root(self) -> Path:
        """The workspace boundary this engine resolves within."""
        ...

    def start(self) -> None:
        """Start background housekeeping (the periodic cache sweep)."""
        ...

    def on_file_changed(self, file_path: Path | str, change_type: str = "changed") -> int:
        """
        Drop everything derived from a changed file.

        Returns:
            Number of cache entries invalidated
        """
        ...

    async def clear_cache(self) -> None:
        """Forget every cached lookup."""
        ...

    async def dispose(self) -> None:
        """Stop background work and release state."""
        ...
