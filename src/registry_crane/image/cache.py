"""A filesystem cache of compressed layer blobs, keyed by digest."""

import logging
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import aiofiles
import aiofiles.os

from ..exceptions import NotFoundError
from ..utils.digest import Hash, Hasher
from ..utils.gzip import maybe_gunzip
from .base import Image
from .layer import Layer, MediaTypeLayer, layer_from_file

logger = logging.getLogger(__name__)


class FilesystemCache:
    """Stores each layer's compressed bytes at ``<path>/<algorithm>/<hex>``."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def _blob_path(self, h: Hash) -> Path:
        return self.path / h.algorithm / h.hex

    async def get(self, h: Hash) -> Layer:
        path = self._blob_path(h)
        if not await aiofiles.os.path.exists(path):
            raise NotFoundError(f"layer {h} not in cache")
        return layer_from_file(path)

    def put(self, layer: Layer) -> Layer:
        """Wrap ``layer`` so its compressed bytes are persisted on first read."""
        return _CachingLayer(layer, self)

    async def delete(self, h: Hash) -> None:
        path = self._blob_path(h)
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)


class _CachingLayer(Layer):
    def __init__(self, layer: Layer, cache: FilesystemCache) -> None:
        self.layer = layer
        self.cache = cache

    async def digest(self) -> Hash:
        return await self.layer.digest()

    async def diff_id(self) -> Hash:
        return await self.layer.diff_id()

    async def size(self) -> int:
        return await self.layer.size()

    async def media_type(self) -> str:
        return await self.layer.media_type()

    async def mount_source(self) -> Optional[object]:
        return await self.layer.mount_source()

    def compressed(self) -> AsyncIterator[bytes]:
        return self._tee()

    def uncompressed(self) -> AsyncIterator[bytes]:
        return maybe_gunzip(self._tee())

    async def _tee(self) -> AsyncIterator[bytes]:
        expected = await self.layer.digest()
        final = self.cache._blob_path(expected)
        await aiofiles.os.makedirs(final.parent, exist_ok=True)
        partial = final.with_name(f".{final.name}.{uuid.uuid4().hex}.partial")
        hasher = Hasher(expected.algorithm)
        complete = False
        try:
            async with aiofiles.open(partial, "wb") as f:
                async for chunk in self.layer.compressed():
                    hasher.update(chunk)
                    await f.write(chunk)
                    yield chunk
            complete = hasher.digest() == expected
            if complete:
                await aiofiles.os.replace(partial, final)
                logger.debug("cached layer %s", expected)
            else:
                logger.warning("not caching layer %s: content hashed to %s", expected, hasher.digest())
        finally:
            if not complete and await aiofiles.os.path.exists(partial):
                await aiofiles.os.remove(partial)


class _CachedImage(Image):
    def __init__(self, img: Image, cache: FilesystemCache) -> None:
        self.img = img
        self.cache = cache

    async def raw_manifest(self) -> bytes:
        return await self.img.raw_manifest()

    async def raw_config_file(self) -> bytes:
        return await self.img.raw_config_file()

    async def media_type(self) -> str:
        return await self.img.media_type()

    async def layer_by_digest(self, h: Hash) -> Layer:
        layer = await self.img.layer_by_digest(h)
        try:
            cached = await self.cache.get(h)
        except NotFoundError:
            return self.cache.put(layer)
        return MediaTypeLayer(cached, await layer.media_type())


def cached_image(img: Image, cache: FilesystemCache) -> Image:
    """Serve ``img``'s layers from ``cache``, filling it as layers are read."""
    return _CachedImage(img, cache)
