"""Docker tarball reader (``docker save`` archives).

The archive's ``manifest.json`` lists, per image, the config file and the
layer files. Archive members are read in the default executor; layers are
exposed as lazily digested :class:`~registry_crane.image.layer.Layer`
objects that reopen the archive for each read, so several layers can be
streamed at once.
"""

import asyncio
import json
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Union

from .. import media_types
from ..exceptions import NotFoundError, TarReadError
from ..image.base import Image
from ..image.layer import Layer, OpenerLayer
from ..models import Descriptor, Manifest
from ..name import Tag, parse_reference
from ..utils.digest import Hash
from ..utils.gzip import CHUNK_SIZE

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
REPOSITORIES_FILE = "repositories"


@dataclass
class TarballEntry:
    """One element of ``manifest.json``."""

    config: str
    layers: list[str]
    repo_tags: list[str] = field(default_factory=list)
    layer_sources: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TarballEntry":
        if "Config" not in data or not isinstance(data.get("Layers"), list):
            raise TarReadError("manifest.json entry needs Config and Layers")
        return cls(
            config=data["Config"],
            layers=list(data["Layers"]),
            repo_tags=list(data.get("RepoTags") or []),
            layer_sources=dict(data.get("LayerSources") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"Config": self.config, "RepoTags": self.repo_tags, "Layers": self.layers}
        if self.layer_sources:
            out["LayerSources"] = self.layer_sources
        return out


def _read_member(tar: tarfile.TarFile, name: str) -> bytes:
    try:
        member = tar.getmember(name)
    except KeyError:
        raise TarReadError(f"File {name} not found in tar")
    fileobj = tar.extractfile(member)
    if fileobj is None:
        raise TarReadError(f"Could not extract {name}")
    with fileobj:
        return fileobj.read()


class TarballReader:
    """Async access to the members of a Docker tarball."""

    def __init__(self, tar_path: Union[str, Path]) -> None:
        self.tar_path = Path(tar_path)
        if not self.tar_path.exists():
            raise TarReadError(f"Tar file not found: {tar_path}")
        self._tar_file: Optional[tarfile.TarFile] = None

    async def __aenter__(self) -> "TarballReader":
        loop = asyncio.get_running_loop()
        try:
            self._tar_file = await loop.run_in_executor(None, tarfile.open, str(self.tar_path), "r")
        except tarfile.TarError as e:
            raise TarReadError(f"Cannot read tar file {self.tar_path}: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._tar_file:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._tar_file.close)
            self._tar_file = None

    async def read_file(self, name: str) -> bytes:
        if not self._tar_file:
            raise TarReadError("Tar file not opened")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _read_member, self._tar_file, name)

    async def get_manifest(self) -> list[TarballEntry]:
        """Parse ``manifest.json``.

        Raises:
            TarReadError: If it is missing or malformed
        """
        try:
            data = json.loads(await self.read_file(MANIFEST_FILE))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TarReadError(f"Failed to read manifest.json: {e}") from e
        if not isinstance(data, list) or not data:
            raise TarReadError("manifest.json must be a non-empty array")
        return [TarballEntry.from_dict(entry) for entry in data]

    async def get_repositories(self) -> dict[str, dict[str, str]]:
        """The legacy ``repositories`` file; empty when absent."""
        try:
            return json.loads(await self.read_file(REPOSITORIES_FILE))
        except (TarReadError, json.JSONDecodeError):
            return {}

    async def names(self) -> set[str]:
        if not self._tar_file:
            raise TarReadError("Tar file not opened")
        loop = asyncio.get_running_loop()
        return set(await loop.run_in_executor(None, self._tar_file.getnames))


def _member_opener(tar_path: Path, name: str):
    """Return an opener streaming archive member ``name`` from a fresh handle."""

    async def opener() -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        try:
            tar = await loop.run_in_executor(None, tarfile.open, str(tar_path), "r")
        except tarfile.TarError as e:
            raise TarReadError(f"Cannot read tar file {tar_path}: {e}") from e
        try:
            fileobj = await loop.run_in_executor(None, tar.extractfile, name)
            if fileobj is None:
                raise TarReadError(f"Could not extract layer {name}")
            while True:
                chunk = await loop.run_in_executor(None, fileobj.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        except KeyError as e:
            raise TarReadError(f"Layer {name} not found in tar") from e
        finally:
            await loop.run_in_executor(None, tar.close)

    return opener


def _layer_media_type(entry: TarballEntry, path: str) -> str:
    # Docker 25+ archives describe OCI blobs in LayerSources.
    hex_part = path.rsplit("/", 1)[-1].split(".", 1)[0]
    source = entry.layer_sources.get(f"sha256:{hex_part}")
    if isinstance(source, dict) and source.get("mediaType"):
        mt = source["mediaType"]
        if mt in (media_types.OCI_UNCOMPRESSED_LAYER, media_types.DOCKER_UNCOMPRESSED_LAYER):
            return media_types.DOCKER_LAYER
        return mt
    return media_types.DOCKER_LAYER


class TarballImage(Image):
    """An image stored in a Docker tarball.

    The manifest is synthesized (Docker schema 2). Uncompressed layer files
    are gzipped on the fly, so their digests are those of the compressed
    stream.
    """

    def __init__(self, tar_path: Path, entry: TarballEntry, raw_config: bytes) -> None:
        self.tar_path = tar_path
        self.entry = entry
        self._raw_config = raw_config
        self._layers = [
            OpenerLayer(_member_opener(tar_path, name), _layer_media_type(entry, name)) for name in entry.layers
        ]
        self._raw_manifest: Optional[bytes] = None
        self._lock = asyncio.Lock()

    async def raw_config_file(self) -> bytes:
        return self._raw_config

    async def raw_manifest(self) -> bytes:
        async with self._lock:
            if self._raw_manifest is None:
                layers = await asyncio.gather(*(layer.descriptor() for layer in self._layers))
                manifest = Manifest(
                    media_type=media_types.DOCKER_MANIFEST_SCHEMA2,
                    config=Descriptor(
                        media_type=media_types.DOCKER_CONFIG_JSON,
                        size=len(self._raw_config),
                        digest=Hash.of(self._raw_config),
                    ),
                    layers=list(layers),
                )
                self._raw_manifest = manifest.to_json()
            return self._raw_manifest

    async def layer_by_digest(self, h: Hash) -> Layer:
        for layer in self._layers:
            if await layer.digest() == h:
                return layer
        raise NotFoundError(f"blob {h} not found in {self.tar_path}")

    async def layers(self) -> list[Layer]:
        return list(self._layers)


def _matches_tag(entry: TarballEntry, tag: Tag) -> bool:
    for repo_tag in entry.repo_tags:
        try:
            candidate = parse_reference(repo_tag)
        except ValueError:
            continue
        if isinstance(candidate, Tag) and candidate == tag:
            return True
    return False


async def image_from_path(tar_path: Union[str, Path], tag: Optional[Union[Tag, str]] = None) -> TarballImage:
    """Load one image from a Docker tarball.

    Without ``tag`` the archive must hold exactly one image.

    Raises:
        TarReadError: If the archive cannot be read
        NotFoundError: If no (or more than one candidate) image matches
    """
    if isinstance(tag, str):
        tag = parse_reference(tag)  # type: ignore[assignment]
    async with TarballReader(tar_path) as reader:
        entries = await reader.get_manifest()
        if tag is None:
            if len(entries) != 1:
                raise NotFoundError(f"tarball {tar_path} contains {len(entries)} images; a tag is required")
            entry = entries[0]
        else:
            matches = [e for e in entries if _matches_tag(e, tag)]
            if not matches:
                raise NotFoundError(f"tag {tag} not found in tarball {tar_path}")
            entry = matches[0]
        raw_config = await reader.read_file(entry.config)
    return TarballImage(Path(tar_path), entry, raw_config)


async def images_from_path(tar_path: Union[str, Path]) -> list[TarballImage]:
    """Every image listed in the archive's ``manifest.json``."""
    async with TarballReader(tar_path) as reader:
        entries = await reader.get_manifest()
        configs = [await reader.read_file(entry.config) for entry in entries]
    return [TarballImage(Path(tar_path), entry, raw) for entry, raw in zip(entries, configs)]
