from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Protocol, runtime_checkable


_LOGGER = logging.getLogger(__name__)


@runtime_checkable
class StorageProvider(Protocol):
    """
    Opaque backend holding the serialized state document.

    - `get()` returns the previously persisted content, or None (or an empty
      string) for an organization that has never been saved.
    - `put(content)` overwrites the stored content.

    Errors raised by a provider are I/O failures and are not interpreted by the
    state store.
    """

    async def get(self) -> Optional[str]: ...

    async def put(self, content: str) -> None: ...


class InMemoryStorageProvider:
    """Keeps the document in memory; records every write."""

    def __init__(self, content: Optional[str] = None) -> None:
        self.content = content
        self.writes: List[str] = []

    async def get(self) -> Optional[str]:
        return self.content

    async def put(self, content: str) -> None:
        self.content = content
        self.writes.append(content)


class FileStorageProvider:
    """
    Local file backend.

    A missing file reads as None. Parent directories are created on write.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Optional[str]:
        if not self._path.exists():
            return None
        return self._path.read_text(encoding="utf-8")

    def _write(self, content: str) -> None:
        # Write a sibling temp file and swap it in, so a failed write never
        # leaves a truncated document behind.
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self._path)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

    async def get(self) -> Optional[str]:
        _LOGGER.debug("Reading state from %s", self._path)
        return await asyncio.to_thread(self._read)

    async def put(self, content: str) -> None:
        _LOGGER.debug("Writing state to %s", self._path)
        await asyncio.to_thread(self._write, content)
