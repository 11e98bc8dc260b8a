"""Materialize an image's filesystem as a single tar stream."""

import asyncio
import logging
import posixpath
import tarfile
import tempfile
from typing import AsyncIterator, BinaryIO, Iterable

from ..image.base import Image
from ..image.layer import Layer
from ..utils.gzip import CHUNK_SIZE, SPOOL_MAX_SIZE, spool

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"


def normalize(name: str) -> str:
    """Clean a tar member name into a relative path without trailing slash."""
    name = posixpath.normpath("/" + name).lstrip("/")
    return "" if name == "." else name


def _within(path: str, prefixes: Iterable[str]) -> bool:
    for prefix in prefixes:
        if prefix == "" or path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def _visible_members(archives: list[BinaryIO]) -> list[list[tarfile.TarInfo]]:
    """Walk layers top to bottom, deciding which entries survive.

    An entry survives when no upper layer wrote the same path, whited it
    (or an ancestor) out, or marked an ancestor directory opaque. Whiteouts
    only apply to layers below the one carrying them.
    """
    seen: set[str] = set()
    removed: set[str] = set()
    opaque: set[str] = set()
    visible: list[list[tarfile.TarInfo]] = [[] for _ in archives]

    for index in range(len(archives) - 1, -1, -1):
        layer_removed: set[str] = set()
        layer_opaque: set[str] = set()
        with tarfile.open(fileobj=archives[index], mode="r:") as tar:
            members = tar.getmembers()

        # A path repeated inside one layer: the last occurrence wins.
        last: dict[str, int] = {}
        for i, member in enumerate(members):
            last[normalize(member.name)] = i

        for i, member in enumerate(members):
            path = normalize(member.name)
            if not path:
                continue
            directory, base = posixpath.split(path)
            if base == OPAQUE_WHITEOUT:
                layer_opaque.add(directory)
                continue
            if base.startswith(WHITEOUT_PREFIX):
                layer_removed.add(posixpath.join(directory, base[len(WHITEOUT_PREFIX) :]))
                continue
            if last[path] != i or path in seen:
                continue
            if _within(path, removed) or _within(posixpath.dirname(path), opaque):
                continue
            seen.add(path)
            member.name = path + "/" if member.isdir() else path
            visible[index].append(member)

        removed |= layer_removed
        opaque |= layer_opaque

    return visible


def _write_extracted(archives: list[BinaryIO], out: BinaryIO) -> None:
    visible = _visible_members(archives)
    with tarfile.open(fileobj=out, mode="w", format=tarfile.GNU_FORMAT) as writer:
        for archive, members in zip(archives, visible):
            if not members:
                continue
            archive.seek(0)
            with tarfile.open(fileobj=archive, mode="r:") as tar:
                by_offset = {m.offset: m for m in tar.getmembers()}
                for member in members:
                    source = by_offset[member.offset]
                    info = _copy_info(source, member.name)
                    if source.isreg():
                        writer.addfile(info, tar.extractfile(source))
                    else:
                        writer.addfile(info)
    out.seek(0)


def _copy_info(source: tarfile.TarInfo, name: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name.rstrip("/") if source.isdir() else name)
    info.size = source.size if source.isreg() else 0
    info.mtime = source.mtime
    info.mode = source.mode
    info.type = source.type
    info.linkname = source.linkname
    info.uid = source.uid
    info.gid = source.gid
    info.uname = source.uname
    info.gname = source.gname
    info.devmajor = source.devmajor
    info.devminor = source.devminor
    return info


async def spool_layers(layers: list[Layer]) -> list[BinaryIO]:
    """Spool each layer's uncompressed tar to a temporary file."""
    return [await spool(layer.uncompressed()) for layer in layers]


async def extract_layers(layers: list[Layer]) -> AsyncIterator[bytes]:
    """Yield the merged filesystem of ``layers`` (base first) as a tar."""
    archives = await spool_layers(layers)
    out = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
    try:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write_extracted, archives, out)
        while True:
            chunk = await loop.run_in_executor(None, out.read, CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        out.close()
        for archive in archives:
            archive.close()


async def extract(img: Image) -> AsyncIterator[bytes]:
    """Yield the filesystem of ``img`` as one uncompressed tar stream.

    Layers are applied base to top. ``.wh.<name>`` entries delete
    ``<name>`` (and its subtree) from lower layers, and ``.wh..wh..opq``
    hides everything lower layers put under its directory. Entries are
    emitted by layer, then in archive order; overwritten entries are
    dropped from the lower layer.
    """
    layers = await img.layers()
    logger.debug("extracting %d layers", len(layers))
    async for chunk in extract_layers(layers):
        yield chunk
