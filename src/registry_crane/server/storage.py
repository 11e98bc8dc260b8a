"""Blob storage policies for the registry server.

Every store is keyed by content digest. ``MemoryBlobStore`` and
``DiskBlobStore`` share blobs across repositories, so a mount from any
repository succeeds once a blob is known. ``SplitBlobStore`` gives each
repository its own store and never mounts.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

import aiofiles
import aiofiles.os

from ..utils.digest import Hash
from ..utils.gzip import CHUNK_SIZE

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Content-addressed blob storage."""

    #: Whether a blob stored through one repository is visible to all others.
    shared = True
    #: Whether DELETE on a blob is honoured.
    allow_delete = True

    @abstractmethod
    async def stat(self, repo: str, h: Hash) -> Optional[int]:
        """Size of the blob, or None when it is unknown."""

    @abstractmethod
    def read(self, repo: str, h: Hash, start: int = 0, end: Optional[int] = None) -> AsyncIterator[bytes]:
        """Bytes ``start`` through ``end`` (inclusive) of a known blob."""

    @abstractmethod
    async def put(self, repo: str, h: Hash, data: bytes) -> None:
        """Store ``data`` under ``h``; the caller has verified the digest."""

    @abstractmethod
    async def delete(self, repo: str, h: Hash) -> bool:
        """Remove a blob; False when it was not there."""


class MemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self._blobs: dict[Hash, bytes] = {}

    async def stat(self, repo: str, h: Hash) -> Optional[int]:
        data = self._blobs.get(h)
        return None if data is None else len(data)

    async def read(self, repo: str, h: Hash, start: int = 0, end: Optional[int] = None) -> AsyncIterator[bytes]:
        data = self._blobs[h]
        stop = len(data) if end is None else end + 1
        for offset in range(start, stop, CHUNK_SIZE):
            yield data[offset : min(offset + CHUNK_SIZE, stop)]

    async def put(self, repo: str, h: Hash, data: bytes) -> None:
        self._blobs[h] = bytes(data)

    async def delete(self, repo: str, h: Hash) -> bool:
        return self._blobs.pop(h, None) is not None


class DiskBlobStore(BlobStore):
    """Blobs at ``<root>/<algorithm>/<hex>``, committed by atomic rename."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def path(self, h: Hash) -> Path:
        return self.root / h.algorithm / h.hex

    async def stat(self, repo: str, h: Hash) -> Optional[int]:
        try:
            result = await aiofiles.os.stat(self.path(h))
        except FileNotFoundError:
            return None
        return result.st_size

    async def read(self, repo: str, h: Hash, start: int = 0, end: Optional[int] = None) -> AsyncIterator[bytes]:
        async with aiofiles.open(self.path(h), "rb") as f:
            await f.seek(start)
            remaining = None if end is None else end - start + 1
            while remaining is None or remaining > 0:
                want = CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining)
                chunk = await f.read(want)
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk

    async def put(self, repo: str, h: Hash, data: bytes) -> None:
        final = self.path(h)
        await aiofiles.os.makedirs(final.parent, exist_ok=True)
        # Unique temp names let concurrent commits of one digest race safely.
        partial = final.with_name(f".{final.name}.{uuid.uuid4().hex}")
        async with aiofiles.open(partial, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(partial, final)
        logger.debug("committed %s to %s", h, final)

    async def delete(self, repo: str, h: Hash) -> bool:
        try:
            await aiofiles.os.remove(self.path(h))
        except FileNotFoundError:
            return False
        return True


class SplitBlobStore(BlobStore):
    """One backing store per repository, created on first use.

    >>> store = SplitBlobStore(lambda repo: DiskBlobStore(Path("/srv/blobs") / repo))
    """

    shared = False

    def __init__(self, factory: Optional[Callable[[str], BlobStore]] = None) -> None:
        self.factory = factory or (lambda repo: MemoryBlobStore())
        self._stores: dict[str, BlobStore] = {}

    def store(self, repo: str) -> BlobStore:
        if repo not in self._stores:
            self._stores[repo] = self.factory(repo)
        return self._stores[repo]

    async def stat(self, repo: str, h: Hash) -> Optional[int]:
        return await self.store(repo).stat(repo, h)

    def read(self, repo: str, h: Hash, start: int = 0, end: Optional[int] = None) -> AsyncIterator[bytes]:
        return self.store(repo).read(repo, h, start, end)

    async def put(self, repo: str, h: Hash, data: bytes) -> None:
        await self.store(repo).put(repo, h, data)

    async def delete(self, repo: str, h: Hash) -> bool:
        return await self.store(repo).delete(repo, h)


def blob_store(policy: str = "memory", path: Union[str, Path, None] = None) -> BlobStore:
    """Build a store from a policy name: ``memory``, ``disk`` or ``split``.

    ``split`` keeps per-repository directories under ``path`` when given,
    in memory otherwise.
    """
    if policy == "memory":
        return MemoryBlobStore()
    if policy == "disk":
        if path is None:
            raise ValueError("disk blob storage needs a path")
        return DiskBlobStore(path)
    if policy == "split":
        if path is None:
            return SplitBlobStore()
        root = Path(path)
        return SplitBlobStore(lambda repo: DiskBlobStore(root / repo))
    raise ValueError(f"unknown blob storage policy: {policy!r}")
