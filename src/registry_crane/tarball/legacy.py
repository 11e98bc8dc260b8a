"""Legacy (pre-1.10) Docker tarball writer.

Each layer gets a directory named by its v1 layer ID holding ``VERSION``,
``json`` and ``layer.tar``; a ``repositories`` file maps tags to the top
layer ID. ``manifest.json`` is written too so modern readers accept the
archive.
"""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Mapping, Union

from ..image.base import Image
from ..name import Tag
from ..utils.gzip import spool
from .reader import MANIFEST_FILE, REPOSITORIES_FILE
from .writer import Entry, write_entries

logger = logging.getLogger(__name__)

LAYER_VERSION = b"1.0"


def v1_layer_id(parent: str, diff_id: str, config_hex: str = "") -> str:
    """Chain ID for a v1 layer; the top layer also mixes in the config digest."""
    seed = f"{parent}\n{diff_id}"
    if config_hex:
        seed += f"\n{config_hex}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def _layer_json(layer_id: str, parent: str, config: dict[str, Any], top: bool) -> bytes:
    data: dict[str, Any] = {"id": layer_id, "created": config.get("created", "1970-01-01T00:00:00Z")}
    if parent:
        data["parent"] = parent
    if top:
        for key in ("architecture", "os", "config", "container_config", "author"):
            if config.get(key):
                data[key] = config[key]
    return json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")


async def collect_legacy_entries(images: Mapping[Tag, Image]) -> dict[str, Entry]:
    entries: dict[str, Entry] = {}
    repositories: dict[str, dict[str, str]] = {}
    manifest_json = []
    for tag, img in images.items():
        config_bytes = await img.raw_config_file()
        config = json.loads(config_bytes)
        config_hex = (await img.config_name()).hex
        entries[f"{config_hex}.json"] = config_bytes
        config_file = await img.config_file()
        layers = await img.layers()
        parent = ""
        layer_paths = []
        for i, (layer, diff_id) in enumerate(zip(layers, config_file.rootfs.diff_ids)):
            top = i == len(layers) - 1
            layer_id = v1_layer_id(parent, str(diff_id), config_hex if top else "")
            if f"{layer_id}/layer.tar" not in entries:
                entries[f"{layer_id}/VERSION"] = LAYER_VERSION
                entries[f"{layer_id}/json"] = _layer_json(layer_id, parent, config, top)
                entries[f"{layer_id}/layer.tar"] = await spool(layer.uncompressed())
            layer_paths.append(f"{layer_id}/layer.tar")
            parent = layer_id
        if parent:
            repositories.setdefault(tag.repository.name, {})[tag.tag] = parent
        manifest_json.append({"Config": f"{config_hex}.json", "RepoTags": [str(tag)], "Layers": layer_paths})

    entries[REPOSITORIES_FILE] = json.dumps(repositories, separators=(",", ":"), sort_keys=True).encode("utf-8")
    entries[MANIFEST_FILE] = json.dumps(manifest_json, separators=(",", ":")).encode("utf-8")
    return entries


async def write_legacy(path: Union[str, Path], images: Mapping[Tag, Image]) -> None:
    """Write ``images`` as a legacy Docker tarball at ``path``."""
    entries = await collect_legacy_entries(images)
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
    logger.info("wrote legacy tarball with %d image(s) to %s", len(images), path)
