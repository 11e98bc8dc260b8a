"""Layers: lazily digested, optionally compressed byte streams.

A layer exposes two views of its content. ``compressed()`` yields the blob
as stored in a registry (its sha256 is the *digest*), ``uncompressed()``
yields the tar archive (its sha256 is the *diffID*). Both are async
iterators of byte chunks and may be requested more than once, except for
:class:`StreamLayer`, which can only be read once.
"""

import abc
import asyncio
import io
import tarfile
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Callable, Mapping, Optional, Union

import aiofiles

from .. import media_types
from ..exceptions import NotComputedError, StreamConsumedError
from ..models import Descriptor
from ..utils.digest import Hash, Hasher
from ..utils.gzip import (
    CHUNK_SIZE,
    DEFAULT_COMPRESSION,
    Inflater,
    _compressor,
    is_gzipped,
    iter_bytes,
    maybe_gunzip,
    maybe_gzip,
    peek,
)

Opener = Callable[[], AsyncIterator[bytes]]


class Layer(abc.ABC):
    """The capability set every layer provides."""

    @abc.abstractmethod
    async def digest(self) -> Hash:
        """sha256 of the compressed blob."""

    @abc.abstractmethod
    async def diff_id(self) -> Hash:
        """sha256 of the uncompressed tar."""

    @abc.abstractmethod
    async def size(self) -> int:
        """Size of the compressed blob in bytes."""

    @abc.abstractmethod
    async def media_type(self) -> str:
        ...

    @abc.abstractmethod
    def compressed(self) -> AsyncIterator[bytes]:
        ...

    @abc.abstractmethod
    def uncompressed(self) -> AsyncIterator[bytes]:
        ...

    async def descriptor(self) -> Descriptor:
        return Descriptor(
            media_type=await self.media_type(),
            size=await self.size(),
            digest=await self.digest(),
        )

    async def mount_source(self) -> Optional[object]:
        """Return the repository this layer can be mounted from, if any."""
        return None


class StaticLayer(Layer):
    """In-memory content with an explicit media type.

    The bytes are served as-is from both views, so digest and diffID are
    the same and known without streaming.
    """

    def __init__(self, content: bytes, media_type: str) -> None:
        self._content = bytes(content)
        self._media_type = media_type
        self._digest = Hash.of(self._content)

    async def digest(self) -> Hash:
        return self._digest

    async def diff_id(self) -> Hash:
        return self._digest

    async def size(self) -> int:
        return len(self._content)

    async def media_type(self) -> str:
        return self._media_type

    def compressed(self) -> AsyncIterator[bytes]:
        return iter_bytes(self._content)

    def uncompressed(self) -> AsyncIterator[bytes]:
        return iter_bytes(self._content)


class OpenerLayer(Layer):
    """A layer backed by a re-openable source, gzipped or not.

    ``opener`` returns a fresh async iterator over the raw content each time
    it is called. Gzip is detected from the first two bytes. Digest, diffID
    and size are computed together in a single pass on first use.
    """

    def __init__(
        self,
        opener: Opener,
        media_type: str = media_types.DOCKER_LAYER,
        compression_level: int = DEFAULT_COMPRESSION,
    ) -> None:
        self._opener = opener
        self._media_type = media_type
        self._level = compression_level
        self._lock = asyncio.Lock()
        self._computed: Optional[tuple[Hash, Hash, int]] = None

    async def _compute(self) -> tuple[Hash, Hash, int]:
        async with self._lock:
            if self._computed is not None:
                return self._computed
            head, stream = await peek(self._opener())
            blob, tar = Hasher(), Hasher()
            if is_gzipped(head):
                inflater = Inflater()
                async for chunk in stream:
                    blob.update(chunk)
                    tar.update(inflater.feed(chunk))
                tar.update(inflater.flush())
            else:
                compressor = _compressor(self._level)
                async for chunk in stream:
                    tar.update(chunk)
                    blob.update(compressor.compress(chunk))
                blob.update(compressor.flush())
            self._computed = (blob.digest(), tar.digest(), blob.size)
            return self._computed

    async def digest(self) -> Hash:
        return (await self._compute())[0]

    async def diff_id(self) -> Hash:
        return (await self._compute())[1]

    async def size(self) -> int:
        return (await self._compute())[2]

    async def media_type(self) -> str:
        return self._media_type

    def compressed(self) -> AsyncIterator[bytes]:
        return maybe_gzip(self._opener(), self._level)

    def uncompressed(self) -> AsyncIterator[bytes]:
        return maybe_gunzip(self._opener())


class StreamLayer(Layer):
    """A one-shot layer over an async byte stream of an uncompressed tar.

    The stream is gzipped while it is read. Only after ``compressed()`` (or
    ``uncompressed()``) has been fully consumed are digest, diffID and size
    defined; asking earlier raises :class:`NotComputedError`.
    """

    def __init__(
        self,
        chunks: AsyncIterable[bytes],
        media_type: str = media_types.DOCKER_LAYER,
        compression_level: int = DEFAULT_COMPRESSION,
    ) -> None:
        self._chunks = chunks
        self._media_type = media_type
        self._level = compression_level
        self._consumed = False
        self._digest: Optional[Hash] = None
        self._diff_id: Optional[Hash] = None
        self._size: Optional[int] = None

    @property
    def consumed(self) -> bool:
        return self._digest is not None

    async def digest(self) -> Hash:
        if self._digest is None:
            raise NotComputedError("value not computed until stream is consumed")
        return self._digest

    async def diff_id(self) -> Hash:
        if self._diff_id is None:
            raise NotComputedError("value not computed until stream is consumed")
        return self._diff_id

    async def size(self) -> int:
        if self._size is None:
            raise NotComputedError("value not computed until stream is consumed")
        return self._size

    async def media_type(self) -> str:
        return self._media_type

    def _claim(self) -> None:
        if self._consumed:
            raise StreamConsumedError("stream layer has already been consumed")
        self._consumed = True

    def compressed(self) -> AsyncIterator[bytes]:
        self._claim()
        return self._read(yield_compressed=True)

    def uncompressed(self) -> AsyncIterator[bytes]:
        self._claim()
        return self._read(yield_compressed=False)

    async def _read(self, yield_compressed: bool) -> AsyncIterator[bytes]:
        blob, tar = Hasher(), Hasher()
        compressor = _compressor(self._level)
        async for chunk in self._chunks:
            tar.update(chunk)
            out = compressor.compress(chunk)
            blob.update(out)
            if yield_compressed:
                if out:
                    yield out
            else:
                yield chunk
        tail = compressor.flush()
        blob.update(tail)
        if yield_compressed:
            yield tail
        self._diff_id = tar.digest()
        self._size = blob.size
        self._digest = blob.digest()


class MediaTypeLayer(Layer):
    """Wraps a layer, overriding only its media type (bytes unchanged)."""

    def __init__(self, layer: Layer, media_type: str) -> None:
        self.layer = layer
        self._media_type = media_type

    async def digest(self) -> Hash:
        return await self.layer.digest()

    async def diff_id(self) -> Hash:
        return await self.layer.diff_id()

    async def size(self) -> int:
        return await self.layer.size()

    async def media_type(self) -> str:
        return self._media_type

    def compressed(self) -> AsyncIterator[bytes]:
        return self.layer.compressed()

    def uncompressed(self) -> AsyncIterator[bytes]:
        return self.layer.uncompressed()

    async def mount_source(self) -> Optional[object]:
        return await self.layer.mount_source()


class UncompressedOnlyLayer(Layer):
    """A layer whose blob *is* the uncompressed tar (``...diff.tar`` types)."""

    def __init__(self, opener: Opener, media_type: str = media_types.OCI_UNCOMPRESSED_LAYER) -> None:
        self._opener = opener
        self._media_type = media_type
        self._lock = asyncio.Lock()
        self._computed: Optional[tuple[Hash, int]] = None

    async def _compute(self) -> tuple[Hash, int]:
        async with self._lock:
            if self._computed is None:
                hasher = Hasher()
                async for chunk in maybe_gunzip(self._opener()):
                    hasher.update(chunk)
                self._computed = (hasher.digest(), hasher.size)
            return self._computed

    async def digest(self) -> Hash:
        return (await self._compute())[0]

    async def diff_id(self) -> Hash:
        return (await self._compute())[0]

    async def size(self) -> int:
        return (await self._compute())[1]

    async def media_type(self) -> str:
        return self._media_type

    def compressed(self) -> AsyncIterator[bytes]:
        return maybe_gunzip(self._opener())

    def uncompressed(self) -> AsyncIterator[bytes]:
        return maybe_gunzip(self._opener())


def _file_opener(path: Union[str, Path]) -> Opener:
    async def opener() -> AsyncIterator[bytes]:
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    return opener


def layer_from_file(
    path: Union[str, Path],
    media_type: str = media_types.DOCKER_LAYER,
    compression_level: int = DEFAULT_COMPRESSION,
) -> Layer:
    """Create a layer from a tar or tar.gz file on disk."""
    if media_type in (media_types.OCI_UNCOMPRESSED_LAYER, media_types.DOCKER_UNCOMPRESSED_LAYER):
        return UncompressedOnlyLayer(_file_opener(path), media_type)
    return OpenerLayer(_file_opener(path), media_type, compression_level)


def layer_from_bytes(
    data: bytes,
    media_type: str = media_types.DOCKER_LAYER,
    compression_level: int = DEFAULT_COMPRESSION,
) -> Layer:
    """Create a layer from in-memory tar or tar.gz bytes."""
    if media_type in (media_types.OCI_UNCOMPRESSED_LAYER, media_types.DOCKER_UNCOMPRESSED_LAYER):
        return UncompressedOnlyLayer(lambda: iter_bytes(data), media_type)
    return OpenerLayer(lambda: iter_bytes(data), media_type, compression_level)


def layer_from_opener(
    opener: Opener,
    media_type: str = media_types.DOCKER_LAYER,
    compression_level: int = DEFAULT_COMPRESSION,
) -> Layer:
    return OpenerLayer(opener, media_type, compression_level)


def tar_bytes(files: Mapping[str, Union[bytes, str]], mtime: int = 0) -> bytes:
    """Build an uncompressed tar with one regular file per mapping entry.

    Directory entries are not added; names ending in ``/`` become
    directories.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name.rstrip("/") if name.endswith("/") else name)
            info.mtime = mtime
            if name.endswith("/"):
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
                continue
            data = content.encode("utf-8") if isinstance(content, str) else content
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def layer_from_files(
    files: Mapping[str, Union[bytes, str]],
    media_type: str = media_types.DOCKER_LAYER,
    mtime: int = 0,
) -> Layer:
    return layer_from_bytes(tar_bytes(files, mtime), media_type)


async def compressed_bytes(layer: Layer) -> bytes:
    return b"".join([chunk async for chunk in layer.compressed()])


async def uncompressed_bytes(layer: Layer) -> bytes:
    return b"".join([chunk async for chunk in layer.uncompressed()])


__all__ = [
    "Layer",
    "StaticLayer",
    "OpenerLayer",
    "StreamLayer",
    "MediaTypeLayer",
    "UncompressedOnlyLayer",
    "layer_from_file",
    "layer_from_bytes",
    "layer_from_opener",
    "layer_from_files",
    "tar_bytes",
    "compressed_bytes",
    "uncompressed_bytes",
]
