"""Streaming gzip helpers over async byte iterators."""

import tempfile
import zlib
from typing import AsyncIterable, AsyncIterator, BinaryIO, Iterator

GZIP_MAGIC = b"\x1f\x8b"
DEFAULT_COMPRESSION = zlib.Z_BEST_SPEED
CHUNK_SIZE = 1 << 16
SPOOL_MAX_SIZE = 32 << 20


def is_gzipped(prefix: bytes) -> bool:
    """Check the two-byte gzip magic."""
    return prefix[:2] == GZIP_MAGIC


class Inflater:
    """Incremental gunzip that follows concatenated gzip members."""

    def __init__(self) -> None:
        self._d = zlib.decompressobj(16 + zlib.MAX_WBITS)

    def feed(self, chunk: bytes) -> bytes:
        out = []
        while chunk:
            out.append(self._d.decompress(chunk))
            if self._d.eof:
                chunk = self._d.unused_data
                self._d = zlib.decompressobj(16 + zlib.MAX_WBITS)
            else:
                chunk = b""
        return b"".join(out)

    def flush(self) -> bytes:
        return self._d.flush()


def _compressor(level: int) -> "zlib._Compress":
    # wbits=31 writes a gzip header with mtime 0, so output is reproducible.
    return zlib.compressobj(level, zlib.DEFLATED, 31)


async def gzip_stream(chunks: AsyncIterable[bytes], level: int = DEFAULT_COMPRESSION) -> AsyncIterator[bytes]:
    compressor = _compressor(level)
    async for chunk in chunks:
        out = compressor.compress(chunk)
        if out:
            yield out
    yield compressor.flush()


async def gunzip_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """Inflate a gzip stream, including concatenated members."""
    inflater = Inflater()
    async for chunk in chunks:
        out = inflater.feed(chunk)
        if out:
            yield out
    out = inflater.flush()
    if out:
        yield out


def gzip_bytes(data: bytes, level: int = DEFAULT_COMPRESSION) -> bytes:
    compressor = _compressor(level)
    return compressor.compress(data) + compressor.flush()


def gunzip_file(fileobj: BinaryIO) -> Iterator[bytes]:
    inflater = Inflater()
    while True:
        chunk = fileobj.read(CHUNK_SIZE)
        if not chunk:
            break
        out = inflater.feed(chunk)
        if out:
            yield out
    out = inflater.flush()
    if out:
        yield out


async def peek(chunks: AsyncIterable[bytes], n: int = 2) -> tuple[bytes, AsyncIterator[bytes]]:
    """Read at least ``n`` bytes and return them with a replaying iterator."""
    iterator = chunks.__aiter__()
    head = b""
    while len(head) < n:
        try:
            head += await iterator.__anext__()
        except StopAsyncIteration:
            break

    async def replay() -> AsyncIterator[bytes]:
        if head:
            yield head
        async for chunk in iterator:
            yield chunk

    return head, replay()


async def maybe_gunzip(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    head, stream = await peek(chunks)
    if is_gzipped(head):
        stream = gunzip_stream(stream)
    async for chunk in stream:
        yield chunk


async def maybe_gzip(chunks: AsyncIterable[bytes], level: int = DEFAULT_COMPRESSION) -> AsyncIterator[bytes]:
    head, stream = await peek(chunks)
    if not is_gzipped(head):
        stream = gzip_stream(stream, level)
    async for chunk in stream:
        yield chunk


async def spool(chunks: AsyncIterable[bytes]) -> BinaryIO:
    """Copy a stream into a rewound temporary file (in memory while small)."""
    f = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
    async for chunk in chunks:
        f.write(chunk)
    f.seek(0)
    return f  # type: ignore[return-value]


async def read_all(chunks: AsyncIterable[bytes]) -> bytes:
    parts = []
    async for chunk in chunks:
        parts.append(chunk)
    return b"".join(parts)


async def iter_bytes(data: bytes, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    for i in range(0, len(data), chunk_size):
        yield data[i : i + chunk_size]


def iter_file(fileobj: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    while True:
        chunk = fileobj.read(chunk_size)
        if not chunk:
            return
        yield chunk
