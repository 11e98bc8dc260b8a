"""OCI image layout on disk.

A layout is a directory with an ``oci-layout`` marker, a top-level
``index.json`` and content-addressed ``blobs/<algorithm>/<hex>`` files.
Blobs are written once: a blob already present is never rewritten.
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Optional, Union

import aiofiles
import aiofiles.os

from .. import media_types
from ..exceptions import DigestMismatchError, NotFoundError, UnsupportedMediaTypeError
from ..image.base import Artifact, Image, ImageIndex, Matcher, digest_to_diff_id
from ..image.layer import Layer
from ..models import Descriptor, IndexManifest, Platform
from ..utils.digest import Hash, Hasher, ahash_chunks
from ..utils.gzip import CHUNK_SIZE, iter_bytes, maybe_gunzip

logger = logging.getLogger(__name__)

LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"
LAYOUT_VERSION = "1.0.0"
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"


class Layout:
    """A directory holding an OCI image layout."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._index_lock = asyncio.Lock()

    @classmethod
    async def create(cls, path: Union[str, Path], index: Optional[IndexManifest] = None) -> "Layout":
        """Initialize (or reuse) a layout at ``path``."""
        layout = cls(path)
        await aiofiles.os.makedirs(layout.path / "blobs", exist_ok=True)
        await layout._write_file(LAYOUT_FILE, json.dumps({"imageLayoutVersion": LAYOUT_VERSION}).encode("utf-8"))
        if index is not None or not await aiofiles.os.path.exists(layout.path / INDEX_FILE):
            await layout.write_index_manifest(index or IndexManifest(manifests=[]))
        return layout

    @classmethod
    async def open(cls, path: Union[str, Path]) -> "Layout":
        """Open an existing layout.

        Raises:
            NotFoundError: If ``path`` has no ``oci-layout`` marker
        """
        layout = cls(path)
        if not await aiofiles.os.path.exists(layout.path / LAYOUT_FILE):
            raise NotFoundError(f"{path} is not an OCI image layout")
        return layout

    def blob_path(self, h: Hash) -> Path:
        return self.path / "blobs" / h.algorithm / h.hex

    async def _write_file(self, name: str, data: bytes) -> None:
        target = self.path / name
        partial = target.with_name(f".{target.name}.{uuid.uuid4().hex}")
        async with aiofiles.open(partial, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(partial, target)

    async def has_blob(self, h: Hash) -> bool:
        return await aiofiles.os.path.exists(self.blob_path(h))

    async def write_blob(self, h: Hash, chunks: AsyncIterable[bytes]) -> None:
        """Store a blob, verifying its digest; existing blobs are left alone."""
        final = self.blob_path(h)
        if await aiofiles.os.path.exists(final):
            return
        await aiofiles.os.makedirs(final.parent, exist_ok=True)
        partial = final.with_name(f".{final.name}.{uuid.uuid4().hex}.partial")
        hasher = Hasher(h.algorithm)
        try:
            async with aiofiles.open(partial, "wb") as f:
                async for chunk in chunks:
                    hasher.update(chunk)
                    await f.write(chunk)
            if hasher.digest() != h:
                raise DigestMismatchError(h, hasher.digest(), "blob")
            await aiofiles.os.replace(partial, final)
            logger.debug("stored blob %s in %s", h, self.path)
        finally:
            if await aiofiles.os.path.exists(partial):
                await aiofiles.os.remove(partial)

    async def blob(self, h: Hash) -> AsyncIterator[bytes]:
        path = self.blob_path(h)
        if not await aiofiles.os.path.exists(path):
            raise NotFoundError(f"blob {h} not found in layout {self.path}")
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def read_blob(self, h: Hash) -> bytes:
        path = self.blob_path(h)
        if not await aiofiles.os.path.exists(path):
            raise NotFoundError(f"blob {h} not found in layout {self.path}")
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def index_manifest(self) -> IndexManifest:
        async with aiofiles.open(self.path / INDEX_FILE, "rb") as f:
            return IndexManifest.from_json(await f.read())

    async def write_index_manifest(self, index: IndexManifest) -> None:
        await self._write_file(INDEX_FILE, index.to_json())

    async def image_index(self) -> "LayoutIndex":
        """The top-level ``index.json`` as an index."""
        async with aiofiles.open(self.path / INDEX_FILE, "rb") as f:
            raw = await f.read()
        return LayoutIndex(self, raw)

    async def write_image(self, img: Image) -> None:
        """Store the blobs and manifest of ``img`` (no index entry)."""
        layers = await img.layers()
        await asyncio.gather(*(self.write_blob(await layer.digest(), layer.compressed()) for layer in layers))
        raw_config = await img.raw_config_file()
        await self.write_blob(Hash.of(raw_config), iter_bytes(raw_config))
        raw = await img.raw_manifest()
        await self.write_blob(Hash.of(raw), iter_bytes(raw))

    async def write_index(self, idx: ImageIndex) -> None:
        """Store ``idx`` and every child it references (no index entry)."""
        for desc in (await idx.index_manifest()).manifests:
            if await self.has_blob(desc.digest):
                continue
            child = await idx.child(desc)
            if isinstance(child, ImageIndex):
                await self.write_index(child)
            else:
                await self.write_image(child)
        raw = await idx.raw_manifest()
        await self.write_blob(Hash.of(raw), iter_bytes(raw))

    async def append(
        self,
        artifact: Artifact,
        annotations: Optional[dict[str, str]] = None,
        platform: Optional[Platform] = None,
    ) -> Descriptor:
        """Write ``artifact`` and add it to ``index.json``."""
        if isinstance(artifact, ImageIndex):
            await self.write_index(artifact)
        else:
            await self.write_image(artifact)
        desc = await artifact.descriptor()
        if annotations:
            desc.annotations = {**desc.annotations, **annotations}
        if platform is not None:
            desc.platform = platform
        await self.append_descriptor(desc)
        return desc

    async def append_descriptor(self, desc: Descriptor) -> None:
        async with self._index_lock:
            index = await self.index_manifest()
            index.manifests.append(desc)
            await self.write_index_manifest(index)

    async def replace(self, artifact: Artifact, matcher: Matcher, annotations: Optional[dict[str, str]] = None) -> None:
        """Drop index entries matching ``matcher`` and append ``artifact``."""
        async with self._index_lock:
            index = await self.index_manifest()
            index.manifests = [d for d in index.manifests if not matcher(d)]
            await self.write_index_manifest(index)
        await self.append(artifact, annotations)

    async def remove_descriptors(self, matcher: Matcher) -> None:
        async with self._index_lock:
            index = await self.index_manifest()
            index.manifests = [d for d in index.manifests if not matcher(d)]
            await self.write_index_manifest(index)


class LayoutLayer(Layer):
    def __init__(self, layout: Layout, desc: Descriptor, image: Optional[Image] = None) -> None:
        self.layout = layout
        self.desc = desc
        self._image = image

    async def digest(self) -> Hash:
        return self.desc.digest

    async def diff_id(self) -> Hash:
        if self._image is not None:
            return await digest_to_diff_id(self._image, self.desc.digest)
        diff_id, _ = await ahash_chunks(self.uncompressed())
        return diff_id

    async def size(self) -> int:
        return self.desc.size

    async def media_type(self) -> str:
        return self.desc.media_type

    def compressed(self) -> AsyncIterator[bytes]:
        return self.layout.blob(self.desc.digest)

    def uncompressed(self) -> AsyncIterator[bytes]:
        return maybe_gunzip(self.compressed())


class LayoutImage(Image):
    def __init__(self, layout: Layout, raw_manifest: bytes, desc: Optional[Descriptor] = None) -> None:
        self.layout = layout
        self._raw_manifest = raw_manifest
        self.desc = desc

    async def raw_manifest(self) -> bytes:
        return self._raw_manifest

    async def media_type(self) -> str:
        if self.desc is not None and self.desc.media_type:
            return self.desc.media_type
        return await super().media_type()

    async def raw_config_file(self) -> bytes:
        return await self.layout.read_blob((await self.manifest()).config.digest)

    async def layer_by_digest(self, h: Hash) -> Layer:
        manifest = await self.manifest()
        if manifest.config.digest == h:
            return LayoutLayer(self.layout, manifest.config)
        for desc in manifest.layers:
            if desc.digest == h:
                return LayoutLayer(self.layout, desc, self)
        raise NotFoundError(f"blob {h} not found in image")


class LayoutIndex(ImageIndex):
    def __init__(self, layout: Layout, raw_manifest: bytes) -> None:
        self.layout = layout
        self._raw_manifest = raw_manifest

    async def raw_manifest(self) -> bytes:
        return self._raw_manifest

    async def _descriptor(self, h: Hash) -> Descriptor:
        for desc in (await self.index_manifest()).manifests:
            if desc.digest == h:
                return desc
        raise NotFoundError(f"no child {h} in index")

    async def image(self, h: Hash) -> Image:
        desc = await self._descriptor(h)
        if not media_types.is_image(desc.media_type):
            raise UnsupportedMediaTypeError(f"child {h} is not an image: {desc.media_type}")
        return LayoutImage(self.layout, await self.layout.read_blob(h), desc)

    async def image_index(self, h: Hash) -> ImageIndex:
        desc = await self._descriptor(h)
        if not media_types.is_index(desc.media_type):
            raise UnsupportedMediaTypeError(f"child {h} is not an index: {desc.media_type}")
        return LayoutIndex(self.layout, await self.layout.read_blob(h))


def ref_name_matcher(name: str) -> Matcher:
    return lambda desc: desc.annotations.get(REF_NAME_ANNOTATION) == name
