"""Images, indexes and layers backed by a registry.

Nothing is downloaded until asked for: a :class:`RemoteImage` holds only the
manifest bytes, fetches the config blob on first use and hands out
:class:`RemoteLayer` objects that stream their blob on demand.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

from .. import media_types
from ..exceptions import NotFoundError, UnsupportedMediaTypeError
from ..image.base import Image, ImageIndex, digest_to_diff_id, image_for_platform
from ..image.layer import Layer
from ..models import Descriptor, Platform
from ..name import Digest, Repository
from ..utils.digest import Hash, ahash_chunks
from ..utils.gzip import maybe_gunzip
from .fetcher import Fetcher, Ref

logger = logging.getLogger(__name__)


class RemoteLayer(Layer):
    """A blob in a registry repository, streamed on demand."""

    def __init__(self, fetcher: Fetcher, desc: Descriptor, image: Optional[Image] = None) -> None:
        self.fetcher = fetcher
        self.desc = desc
        self._image = image
        self._diff_id: Optional[Hash] = None

    async def digest(self) -> Hash:
        return self.desc.digest

    async def diff_id(self) -> Hash:
        if self._diff_id is None:
            if self._image is not None:
                self._diff_id = await digest_to_diff_id(self._image, self.desc.digest)
            elif not media_types.is_gzipped(self.desc.media_type) and media_types.is_layer(self.desc.media_type):
                self._diff_id = self.desc.digest
            else:
                self._diff_id, _ = await ahash_chunks(self.uncompressed())
        return self._diff_id

    async def size(self) -> int:
        return self.desc.size

    async def media_type(self) -> str:
        return self.desc.media_type

    async def descriptor(self) -> Descriptor:
        return self.desc.copy()

    def compressed(self) -> AsyncIterator[bytes]:
        return self.fetcher.fetch_blob(self.desc.digest, self.desc.size)

    def uncompressed(self) -> AsyncIterator[bytes]:
        return maybe_gunzip(self.compressed())

    async def mount_source(self) -> Optional[Repository]:
        return self.fetcher.repo


class RemoteImage(Image):
    def __init__(self, fetcher: Fetcher, raw_manifest: bytes, desc: Descriptor) -> None:
        self.fetcher = fetcher
        self._raw_manifest = raw_manifest
        self.desc = desc
        self._raw_config: Optional[bytes] = None
        self._lock = asyncio.Lock()

    @property
    def repository(self) -> Repository:
        return self.fetcher.repo

    async def raw_manifest(self) -> bytes:
        return self._raw_manifest

    async def media_type(self) -> str:
        return self.desc.media_type or await super().media_type()

    async def raw_config_file(self) -> bytes:
        if media_types.is_schema1(self.desc.media_type):
            raise UnsupportedMediaTypeError(f"schema 1 image {self.desc.digest} has no config blob")
        async with self._lock:
            if self._raw_config is None:
                manifest = await self.manifest()
                config = manifest.config
                if config.data is not None:
                    self._raw_config = config.data
                else:
                    self._raw_config = await self.fetcher.fetch_blob_bytes(config.digest, config.size)
            return self._raw_config

    async def layer_by_digest(self, h: Hash) -> Layer:
        manifest = await self.manifest()
        if manifest.config.digest == h:
            return RemoteLayer(self.fetcher, manifest.config, None)
        for desc in manifest.layers:
            if desc.digest == h:
                return RemoteLayer(self.fetcher, desc, self)
        raise NotFoundError(f"blob {h} not found in image {self.desc.digest}")

    async def descriptor(self) -> Descriptor:
        desc = await super().descriptor()
        desc.platform = self.desc.platform
        return desc


class RemoteIndex(ImageIndex):
    def __init__(self, fetcher: Fetcher, raw_manifest: bytes, desc: Descriptor) -> None:
        self.fetcher = fetcher
        self._raw_manifest = raw_manifest
        self.desc = desc

    @property
    def repository(self) -> Repository:
        return self.fetcher.repo

    async def raw_manifest(self) -> bytes:
        return self._raw_manifest

    async def media_type(self) -> str:
        return self.desc.media_type or await super().media_type()

    async def _child_descriptor(self, h: Hash) -> Optional[Descriptor]:
        for desc in (await self.index_manifest()).manifests:
            if desc.digest == h:
                return desc
        return None

    async def _fetch_child(self, h: Hash) -> tuple[bytes, Descriptor]:
        child = await self._child_descriptor(h)
        if child is not None and child.data is not None:
            return child.data, child
        raw, desc = await self.fetcher.fetch_manifest(Digest(self.fetcher.repo, str(h)))
        if child is not None:
            desc.platform = child.platform
        return raw, desc

    async def image(self, h: Hash) -> Image:
        raw, desc = await self._fetch_child(h)
        if not media_types.is_image(desc.media_type) and not media_types.is_schema1(desc.media_type):
            raise UnsupportedMediaTypeError(f"child {h} is not an image: {desc.media_type}")
        return RemoteImage(self.fetcher, raw, desc)

    async def image_index(self, h: Hash) -> ImageIndex:
        raw, desc = await self._fetch_child(h)
        if not media_types.is_index(desc.media_type):
            raise UnsupportedMediaTypeError(f"child {h} is not an index: {desc.media_type}")
        return RemoteIndex(self.fetcher, raw, desc)


@dataclass
class RemoteDescriptor:
    """A fetched manifest together with what it describes."""

    ref: Ref
    descriptor: Descriptor
    manifest: bytes
    fetcher: Fetcher

    @property
    def media_type(self) -> str:
        return self.descriptor.media_type

    @property
    def digest(self) -> Hash:
        return self.descriptor.digest

    def is_index(self) -> bool:
        return media_types.is_index(self.descriptor.media_type)

    async def image(self, platform: Optional[Platform] = None) -> Image:
        """The image, resolving an index to its child matching ``platform``.

        Without a platform an index resolves to ``linux/amd64``.
        """
        if self.is_index():
            idx = await self.image_index()
            return await image_for_platform(idx, platform or Platform(os="linux", architecture="amd64"))
        if media_types.is_image(self.media_type) or media_types.is_schema1(self.media_type):
            return RemoteImage(self.fetcher, self.manifest, self.descriptor)
        raise UnsupportedMediaTypeError(f"{self.ref} is not an image: {self.media_type}")

    async def image_index(self) -> ImageIndex:
        if not self.is_index():
            raise UnsupportedMediaTypeError(f"{self.ref} is not an index: {self.media_type}")
        return RemoteIndex(self.fetcher, self.manifest, self.descriptor)

    async def artifact(self, platform: Optional[Platform] = None) -> Union[Image, ImageIndex]:
        """An index (unless ``platform`` picks a child) or an image."""
        if self.is_index() and platform is None:
            return await self.image_index()
        return await self.image(platform)
