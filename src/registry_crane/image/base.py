"""Image and index capabilities, derived from a minimal core.

Concrete images only implement ``raw_manifest``, ``raw_config_file`` and
``layer_by_digest``; everything else (parsed manifest, digest, size, config
lookups, diffID lookups) is derived here. Indexes implement ``raw_manifest``
plus child accessors.
"""

import abc
import asyncio
import logging
from typing import Callable, Optional, Union

from .. import media_types
from ..exceptions import NotFoundError, UnsupportedMediaTypeError
from ..models import ConfigFile, Descriptor, IndexManifest, Manifest, Platform
from ..utils.digest import Hash
from .layer import Layer, StaticLayer

logger = logging.getLogger(__name__)

Matcher = Callable[[Descriptor], bool]


class Image(abc.ABC):
    """A container image: manifest, config blob and ordered layers."""

    @abc.abstractmethod
    async def raw_manifest(self) -> bytes:
        ...

    @abc.abstractmethod
    async def raw_config_file(self) -> bytes:
        ...

    @abc.abstractmethod
    async def layer_by_digest(self, h: Hash) -> Layer:
        ...

    async def media_type(self) -> str:
        return (await self.manifest()).media_type or media_types.DOCKER_MANIFEST_SCHEMA2

    async def manifest(self) -> Manifest:
        return Manifest.from_json(await self.raw_manifest())

    async def digest(self) -> Hash:
        return Hash.of(await self.raw_manifest())

    async def size(self) -> int:
        return len(await self.raw_manifest())

    async def config_name(self) -> Hash:
        return Hash.of(await self.raw_config_file())

    async def config_file(self) -> ConfigFile:
        return ConfigFile.from_json(await self.raw_config_file())

    async def config_layer(self) -> Layer:
        """The config blob as an uploadable layer."""
        manifest = await self.manifest()
        return StaticLayer(await self.raw_config_file(), manifest.config.media_type)

    async def layers(self) -> list[Layer]:
        manifest = await self.manifest()
        return list(await asyncio.gather(*(self.layer_by_digest(d.digest) for d in manifest.layers)))

    async def layer_by_diff_id(self, h: Hash) -> Layer:
        digest = await diff_id_to_digest(self, h)
        return await self.layer_by_digest(digest)

    async def descriptor(self) -> Descriptor:
        manifest = await self.manifest()
        return Descriptor(
            media_type=await self.media_type(),
            size=await self.size(),
            digest=await self.digest(),
            artifact_type=manifest.artifact_type,
        )


class ImageIndex(abc.ABC):
    """A list of image (or nested index) descriptors."""

    @abc.abstractmethod
    async def raw_manifest(self) -> bytes:
        ...

    @abc.abstractmethod
    async def image(self, h: Hash) -> Image:
        ...

    @abc.abstractmethod
    async def image_index(self, h: Hash) -> "ImageIndex":
        ...

    async def media_type(self) -> str:
        return (await self.index_manifest()).media_type or media_types.OCI_IMAGE_INDEX

    async def index_manifest(self) -> IndexManifest:
        return IndexManifest.from_json(await self.raw_manifest())

    # Alias so indexes and images share the ``manifest`` spelling where
    # callers only need raw bytes or annotations.
    async def manifest(self) -> IndexManifest:
        return await self.index_manifest()

    async def digest(self) -> Hash:
        return Hash.of(await self.raw_manifest())

    async def size(self) -> int:
        return len(await self.raw_manifest())

    async def descriptor(self) -> Descriptor:
        manifest = await self.index_manifest()
        return Descriptor(
            media_type=await self.media_type(),
            size=await self.size(),
            digest=await self.digest(),
            artifact_type=manifest.artifact_type,
        )

    async def child(self, desc: Descriptor) -> Union[Image, "ImageIndex"]:
        if media_types.is_index(desc.media_type):
            return await self.image_index(desc.digest)
        if media_types.is_image(desc.media_type):
            return await self.image(desc.digest)
        raise UnsupportedMediaTypeError(f"unexpected media type for child {desc.digest}: {desc.media_type}")


Artifact = Union[Image, ImageIndex]


async def diff_id_to_digest(img: Image, h: Hash) -> Hash:
    config = await img.config_file()
    manifest = await img.manifest()
    for i, diff_id in enumerate(config.rootfs.diff_ids):
        if diff_id == h:
            if i >= len(manifest.layers):
                break
            return manifest.layers[i].digest
    raise NotFoundError(f"unknown diffID {h}")


async def digest_to_diff_id(img: Image, h: Hash) -> Hash:
    config = await img.config_file()
    manifest = await img.manifest()
    for i, desc in enumerate(manifest.layers):
        if desc.digest == h:
            if i >= len(config.rootfs.diff_ids):
                break
            return config.rootfs.diff_ids[i]
    raise NotFoundError(f"unknown blob {h}")


def platform_matcher(platform: Platform) -> Matcher:
    def match(desc: Descriptor) -> bool:
        return desc.platform is not None and desc.platform.satisfies(platform)

    return match


def digest_matcher(h: Hash) -> Matcher:
    return lambda desc: desc.digest == h


def annotation_matcher(key: str, value: str) -> Matcher:
    return lambda desc: desc.annotations.get(key) == value


async def find_manifests(idx: ImageIndex, matcher: Matcher) -> list[Descriptor]:
    """Descriptors of ``idx`` (recursively) satisfying ``matcher``."""
    found = []
    for desc in (await idx.index_manifest()).manifests:
        if matcher(desc):
            found.append(desc)
        if media_types.is_index(desc.media_type):
            child = await idx.image_index(desc.digest)
            found.extend(await find_manifests(child, matcher))
    return found


async def find_images(idx: ImageIndex, matcher: Matcher) -> list[Image]:
    images = []
    for desc in (await idx.index_manifest()).manifests:
        if media_types.is_index(desc.media_type):
            images.extend(await find_images(await idx.image_index(desc.digest), matcher))
        elif media_types.is_image(desc.media_type) and matcher(desc):
            images.append(await idx.image(desc.digest))
    return images


async def image_for_platform(idx: ImageIndex, platform: Platform) -> Image:
    """Resolve the child image of ``idx`` that satisfies ``platform``."""
    for desc in (await idx.index_manifest()).manifests:
        if media_types.is_index(desc.media_type):
            try:
                return await image_for_platform(await idx.image_index(desc.digest), platform)
            except NotFoundError:
                continue
        if desc.platform is not None and desc.platform.satisfies(platform):
            return await idx.image(desc.digest)
    raise NotFoundError(f"no child with platform {platform} in index")


async def uncompressed_size(img: Image) -> int:
    total = 0
    for layer in await img.layers():
        async for chunk in layer.uncompressed():
            total += len(chunk)
    return total


async def platform_of(img: Image) -> Optional[Platform]:
    config = await img.config_file()
    if not config.os and not config.architecture:
        return None
    return config.platform()
