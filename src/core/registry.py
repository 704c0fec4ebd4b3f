"""Registry of the active resolution engines, one per workspace root."""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from .config import ResolverSettings
from .protocols import ReferenceResolver

logger = logging.getLogger(__name__)

ResolverFactory = Callable[[Path, ResolverSettings], ReferenceResolver]


def _default_factory(root: Path, settings: ResolverSettings) -> ReferenceResolver:
    # Import here to keep core free of plugin imports at module load
    from src.plugins.terraform.resolver import TerraformReferenceResolver

    return TerraformReferenceResolver(root, settings=settings)


class WorkspaceRegistry:
    """
    Registry for managing the engines of open workspaces.

    Owned by the application lifecycle: created at startup, torn down with
    ``dispose()``. There is no module-level instance.
    """

    def __init__(
        self,
        settings: ResolverSettings | None = None,
        factory: ResolverFactory | None = None,
    ):
        """
        Initialize the registry.

        Args:
            settings: Settings handed to every engine created
            factory: Engine constructor (the Terraform resolver by default)
        """
        self.settings = settings or ResolverSettings()
        self._factory = factory or _default_factory
        self._resolvers: dict[Path, ReferenceResolver] = {}
        self._logger = logger.getChild(self.__class__.__name__)

    def open(self, workspace_root: Path | str) -> ReferenceResolver:
        """
        Return the engine for a workspace, creating it on first use.

        Must be called with a running event loop, since a new engine starts
        its periodic cache sweep.
        """
        root = Path(workspace_root).resolve()
        resolver = self._resolvers.get(root)
        if resolver is not None:
            return resolver

        resolver = self._factory(root, self.settings)
        resolver.start()
        self._resolvers[root] = resolver
        self._logger.info(f"Opened workspace '{root}'")
        return resolver

    async def close(self, workspace_root: Path | str) -> bool:
        """
        Dispose of a workspace's engine.

        Returns:
            True if an engine was registered for the root, False otherwise
        """
        root = Path(workspace_root).resolve()
        resolver = self._resolvers.pop(root, None)
        if resolver is None:
            return False
        await resolver.dispose()
        self._logger.info(f"Closed workspace '{root}'")
        return True

    def get(self, workspace_root: Path | str) -> ReferenceResolver | None:
        return self._resolvers.get(Path(workspace_root).resolve())

    def find(self, path: Path | str) -> ReferenceResolver | None:
        """
        Find the engine owning a file or directory.

        Nested workspaces are allowed; the deepest containing root wins.
        """
        target = Path(path).resolve()
        owners = [root for root in self._resolvers if target.is_relative_to(root)]
        if not owners:
            return None
        return self._resolvers[max(owners, key=lambda root: len(root.parts))]

    def notify_file_changed(self, file_path: Path | str, change_type: str = "changed") -> int:
        """
        Route a file-change notification to the engine that owns the file.

        Returns:
            Number of invalidated cache entries (0 when no engine owns it)
        """
        resolver = self.find(file_path)
        if resolver is None:
            self._logger.debug(f"No workspace owns changed file '{file_path}'")
            return 0
        return resolver.on_file_changed(file_path, change_type)

    async def refresh_all(self) -> None:
        """Clear the caches of every engine concurrently."""
        await asyncio.gather(*(r.clear_cache() for r in self._resolvers.values()))
        self._logger.info(f"Refreshed {len(self._resolvers)} workspace(s)")

    async def dispose(self) -> None:
        """Dispose of every engine and forget them."""
        resolvers = list(self._resolvers.values())
        self._resolvers.clear()
        await asyncio.gather(*(r.dispose() for r in resolvers))
        self._logger.info("Disposed all workspaces")

    def __len__(self) -> int:
        """Return the number of open workspaces."""
        return len(self._resolvers)

    def __contains__(self, workspace_root: Path | str) -> bool:
        """Check if a workspace is open (supports 'in' operator)."""
        return Path(workspace_root).resolve() in self._resolvers
