"""eStargz layers: seekable gzip tarballs with a table of contents.

Each tar entry is compressed as its own gzip member so a lazy puller can
fetch single files by offset. Files named in ``prioritized`` come first,
followed by a ``.prefetch.landmark`` entry; without prioritized files a
``.no.prefetch.landmark`` leads the archive. The TOC (``stargz.index.json``)
is the last tar entry and a fixed-size footer records its offset.
"""

import asyncio
import hashlib
import io
import json
import struct
import tarfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Iterable, Optional, Sequence

from .. import media_types
from ..mutate.extract import normalize
from ..utils.digest import Hash, Hasher
from ..utils.gzip import CHUNK_SIZE, DEFAULT_COMPRESSION, spool
from .layer import Layer, layer_from_bytes

TOC_NAME = "stargz.index.json"
PREFETCH_LANDMARK = ".prefetch.landmark"
NO_PREFETCH_LANDMARK = ".no.prefetch.landmark"
LANDMARK_CONTENTS = b"\x0f"
FOOTER_SIZE = 51
TOC_DIGEST_ANNOTATION = "containerd.io/snapshot/stargz/toc.digest"
UNCOMPRESSED_SIZE_ANNOTATION = "io.containers.estargz.uncompressed-size"

_BLOCK = 512

_TYPES = {
    tarfile.REGTYPE: "reg",
    tarfile.AREGTYPE: "reg",
    tarfile.DIRTYPE: "dir",
    tarfile.SYMTYPE: "symlink",
    tarfile.LNKTYPE: "hardlink",
    tarfile.CHRTYPE: "char",
    tarfile.BLKTYPE: "block",
    tarfile.FIFOTYPE: "fifo",
}


def footer(toc_offset: int) -> bytes:
    """An empty gzip member whose extra field carries the TOC offset."""
    payload = b"%016xSTARGZ" % toc_offset
    extra = b"SG" + struct.pack("<H", len(payload)) + payload
    header = b"\x1f\x8b\x08\x04\x00\x00\x00\x00\x00\xff" + struct.pack("<H", len(extra)) + extra
    # Empty final stored block, then CRC32 and ISIZE of nothing.
    return header + b"\x01\x00\x00\xff\xff" + b"\x00" * 8


def parse_footer(data: bytes) -> int:
    """The TOC offset recorded in a footer."""
    if len(data) != FOOTER_SIZE or data[:4] != b"\x1f\x8b\x08\x04":
        raise ValueError("not an estargz footer")
    payload = data[16:38]
    if payload[16:] != b"STARGZ":
        raise ValueError("not an estargz footer")
    return int(payload[:16], 16)


@dataclass
class _Writer:
    out: BinaryIO
    level: int
    diff: Hasher = field(default_factory=Hasher)
    uncompressed_size: int = 0

    def member(self, chunks: Iterable[bytes]) -> int:
        """Write one gzip member; returns its offset in the blob."""
        offset = self.out.tell()
        compressor = zlib.compressobj(self.level, zlib.DEFLATED, 31)
        for chunk in chunks:
            self.diff.update(chunk)
            self.uncompressed_size += len(chunk)
            self.out.write(compressor.compress(chunk))
        self.out.write(compressor.flush())
        return offset


def _content(tar: tarfile.TarFile, member: tarfile.TarInfo, digest: Optional[Any]) -> Iterable[bytes]:
    yield member.tobuf(tarfile.PAX_FORMAT, "utf-8", "surrogateescape")
    if not member.isreg() or member.size == 0:
        return
    src = tar.extractfile(member)
    if src is None:
        return
    while True:
        chunk = src.read(CHUNK_SIZE)
        if not chunk:
            break
        if digest is not None:
            digest.update(chunk)
        yield chunk
    pad = -member.size % _BLOCK
    if pad:
        yield b"\x00" * pad


def _landmark(name: str) -> tuple[tarfile.TarInfo, bytes]:
    info = tarfile.TarInfo(name)
    info.size = len(LANDMARK_CONTENTS)
    info.mode = 0o644
    return info, LANDMARK_CONTENTS + b"\x00" * (_BLOCK - len(LANDMARK_CONTENTS))


def _toc_entry(member: tarfile.TarInfo, offset: int) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "name": normalize(member.name),
        "type": _TYPES.get(member.type, "reg"),
        "modtime": datetime.fromtimestamp(member.mtime, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "mode": member.mode,
        "uid": member.uid,
        "gid": member.gid,
    }
    if member.uname:
        entry["userName"] = member.uname
    if member.gname:
        entry["groupName"] = member.gname
    if member.issym() or member.islnk():
        entry["linkName"] = member.linkname
    if member.ischr() or member.isblk():
        entry["devMajor"] = member.devmajor
        entry["devMinor"] = member.devminor
    if member.isreg():
        entry["size"] = member.size
        if member.size:
            entry["offset"] = offset
    return entry


@dataclass
class EstargzBlob:
    data: bytes
    diff_id: Hash
    toc_digest: Hash
    uncompressed_size: int
    found: set[str]


def build(source: BinaryIO, prioritized: Sequence[str] = (), level: int = DEFAULT_COMPRESSION) -> EstargzBlob:
    """Rewrite the uncompressed tar ``source`` as an eStargz blob."""
    wanted = [normalize(p) for p in prioritized]
    out = io.BytesIO()
    writer = _Writer(out, level)
    entries: list[dict[str, Any]] = []

    with tarfile.open(fileobj=source, mode="r:") as tar:
        members = tar.getmembers()
        by_name = {normalize(m.name): m for m in members}
        first = [by_name[name] for name in wanted if name in by_name]
        found = {normalize(m.name) for m in first}
        rest = [m for m in members if m not in first]

        if not first:
            info, body = _landmark(NO_PREFETCH_LANDMARK)
            offset = writer.member([info.tobuf(tarfile.PAX_FORMAT, "utf-8"), body])
            entries.append(_toc_entry(info, offset))

        for i, member in enumerate(first + rest):
            digest = hashlib.sha256() if member.isreg() else None
            offset = writer.member(_content(tar, member, digest))
            entry = _toc_entry(member, offset)
            if digest is not None and member.size:
                entry["digest"] = f"sha256:{digest.hexdigest()}"
            entries.append(entry)
            if first and i == len(first) - 1:
                info, body = _landmark(PREFETCH_LANDMARK)
                offset = writer.member([info.tobuf(tarfile.PAX_FORMAT, "utf-8"), body])
                entries.append(_toc_entry(info, offset))

    toc = json.dumps({"version": 1, "entries": entries}, separators=(",", ":")).encode("utf-8")
    info = tarfile.TarInfo(TOC_NAME)
    info.size = len(toc)
    info.mode = 0o644
    toc_offset = writer.member(
        [info.tobuf(tarfile.PAX_FORMAT, "utf-8"), toc, b"\x00" * (-len(toc) % _BLOCK), b"\x00" * (2 * _BLOCK)]
    )
    out.write(footer(toc_offset))
    return EstargzBlob(
        data=out.getvalue(),
        diff_id=writer.diff.digest(),
        toc_digest=Hash.of(toc),
        uncompressed_size=writer.uncompressed_size,
        found=found,
    )


async def estargz_layer(
    layer: Layer, prioritized: Sequence[str] = (), level: int = DEFAULT_COMPRESSION
) -> tuple[Layer, dict[str, str], set[str]]:
    """Convert ``layer``; returns the new layer, its descriptor annotations
    and the prioritized paths it contained."""
    source = await spool(layer.uncompressed())
    loop = asyncio.get_running_loop()
    try:
        blob = await loop.run_in_executor(None, build, source, prioritized, level)
    finally:
        source.close()
    media_type = await layer.media_type()
    if media_types.is_docker(media_type):
        media_type = media_types.DOCKER_LAYER
    else:
        media_type = media_types.OCI_LAYER
    annotations = {
        TOC_DIGEST_ANNOTATION: str(blob.toc_digest),
        UNCOMPRESSED_SIZE_ANNOTATION: str(blob.uncompressed_size),
    }
    return layer_from_bytes(blob.data, media_type), annotations, blob.found
