"""Local filesystem implementation of the FileAccessor protocol."""

import asyncio
import logging
from pathlib import Path

from .exceptions import FileAccessError
from .protocols import FileAccessor

logger = logging.getLogger(__name__)


class LocalFileAccessor(FileAccessor):
    """
    Non-blocking access to the local filesystem.

    Every operation runs the blocking pathlib call in a worker thread so the
    event loop stays free while a resolution is suspended on I/O.
    """

    def __init__(self, encoding: str = "utf-8"):
        """
        Initialize the accessor.

        Args:
            encoding: Encoding used when reading files
        """
        self.encoding = encoding
        self._logger = logger.getChild(self.__class__.__name__)

    async def exists(self, path: Path) -> bool:
        return await asyncio.to_thread(self._exists, path)

    async def is_directory(self, path: Path) -> bool:
        return await asyncio.to_thread(self._is_directory, path)

    async def list_entries(self, path: Path) -> list[str]:
        return await asyncio.to_thread(self._list_entries, path)

    async def read_text(self, path: Path) -> str:
        return await asyncio.to_thread(self._read_text, path)

    def _exists(self, path: Path) -> bool:
        try:
            return path.exists()
        except OSError:
            return False

    def _is_directory(self, path: Path) -> bool:
        try:
            return path.is_dir()
        except OSError:
            return False

    def _list_entries(self, path: Path) -> list[str]:
        try:
            return sorted(entry.name for entry in path.iterdir())
        except OSError as e:
            self._logger.error(f"Failed to list directory {path}: {e}")
            raise FileAccessError(
                f"Cannot list directory: {e}", path=path, operation="list"
            ) from e

    def _read_text(self, path: Path) -> str:
        """
        Reads the file content as text.

        Args:
            path: Path of the file to read.

        Returns:
            Content of the file as a string.

        Raises:
            FileAccessError: If decoding or reading the file fails.
        """
        try:
            return path.read_text(encoding=self.encoding)
        except UnicodeDecodeError as e:
            self._logger.error(
                f"Failed to decode file {path} with encoding {self.encoding}"
            )
            raise FileAccessError(
                f"Cannot decode file with encoding {self.encoding}",
                path=path,
                operation="read",
            ) from e
        except OSError as e:
            self._logger.error(f"Failed to read file {path}: {e}")
            raise FileAccessError(
                f"Cannot read file: {e}", path=path, operation="read"
            ) from e
