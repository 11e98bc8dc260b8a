"""Docker tarball writer.

Output is reproducible: entries are written in lexicographic order with
mtime 0 and owner/group 0, configs are named ``<hex>.json`` and layers
``<hex>.tar.gz`` (``<hex>.tar`` when uncompressed).
"""

import asyncio
import io
import json
import logging
import tarfile
from pathlib import Path
from typing import BinaryIO, Mapping, Union

from .. import media_types
from ..image.base import Image
from ..models import Descriptor
from ..name import Tag
from ..utils.gzip import spool
from .reader import MANIFEST_FILE, REPOSITORIES_FILE, TarballEntry

logger = logging.getLogger(__name__)

Entry = Union[bytes, BinaryIO]


def layer_file_name(desc: Descriptor) -> str:
    suffix = ".tar.gz" if media_types.is_gzipped(desc.media_type) else ".tar"
    return f"{desc.digest.hex}{suffix}"


def _tar_info(name: str, size: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = size
    info.mode = 0o644
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def write_entries(out: BinaryIO, entries: Mapping[str, Entry]) -> None:
    """Write ``entries`` as a tar stream, sorted by name."""
    with tarfile.open(fileobj=out, mode="w", format=tarfile.GNU_FORMAT) as tar:
        for name in sorted(entries):
            content = entries[name]
            if isinstance(content, bytes):
                tar.addfile(_tar_info(name, len(content)), io.BytesIO(content))
                continue
            content.seek(0, io.SEEK_END)
            size = content.tell()
            content.seek(0)
            tar.addfile(_tar_info(name, size), content)


async def collect_entries(images: Mapping[Union[Tag, str], Image]) -> dict[str, Entry]:
    """Gather every archive member for ``images`` (tags may repeat an image)."""
    entries: dict[str, Entry] = {}
    by_config: dict[str, TarballEntry] = {}
    repositories: dict[str, dict[str, str]] = {}

    for ref, img in images.items():
        tag = str(ref)
        config_name = await img.config_name()
        manifest = await img.manifest()
        config_file = f"{config_name.hex}.json"
        entry = by_config.get(config_file)
        if entry is None:
            entries[config_file] = await img.raw_config_file()
            layer_files = []
            for desc, layer in zip(manifest.layers, await img.layers()):
                name = layer_file_name(desc)
                if name not in entries:
                    entries[name] = await spool(layer.compressed())
                layer_files.append(name)
            entry = TarballEntry(config=config_file, layers=layer_files)
            by_config[config_file] = entry
        if tag:
            entry.repo_tags.append(tag)
            if isinstance(ref, Tag) and manifest.layers:
                repo_name = ref.repository.name
                repositories.setdefault(repo_name, {})[ref.tag] = manifest.layers[-1].digest.hex

    manifest_json = [entry.to_dict() for entry in by_config.values()]
    entries[MANIFEST_FILE] = json.dumps(manifest_json, separators=(",", ":")).encode("utf-8")
    if repositories:
        entries[REPOSITORIES_FILE] = json.dumps(repositories, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return entries


async def write(path: Union[str, Path], images: Mapping[Union[Tag, str], Image]) -> None:
    """Write ``images`` (keyed by tag) to a Docker tarball at ``path``."""
    entries = await collect_entries(images)
    loop = asyncio.get_running_loop()

    def _write() -> None:
        with open(path, "wb") as f:
            write_entries(f, entries)

    try:
        await loop.run_in_executor(None, _write)
    finally:
        for content in entries.values():
            if not isinstance(content, bytes):
                content.close()
    logger.info("wrote %d image(s) to %s", len(images), path)


async def write_to(out: BinaryIO, images: Mapping[Union[Tag, str], Image]) -> None:
    entries = await collect_entries(images)
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, write_entries, out, entries)
    finally:
        for content in entries.values():
            if not isinstance(content, bytes):
                content.close()
