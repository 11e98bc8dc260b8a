"""The empty image and the empty index: starting points for construction."""

from .. import media_types
from ..exceptions import NotFoundError
from ..models import ConfigFile, Descriptor, IndexManifest, Manifest
from ..utils.digest import Hash
from .base import Image, ImageIndex
from .layer import Layer


class _EmptyImage(Image):
    """An image with no layers and a bare config."""

    def __init__(self) -> None:
        self._config = ConfigFile().to_json()
        self._manifest = Manifest(
            media_type=media_types.DOCKER_MANIFEST_SCHEMA2,
            config=Descriptor(
                media_type=media_types.DOCKER_CONFIG_JSON,
                size=len(self._config),
                digest=Hash.of(self._config),
            ),
        ).to_json()

    async def raw_manifest(self) -> bytes:
        return self._manifest

    async def raw_config_file(self) -> bytes:
        return self._config

    async def layer_by_digest(self, h: Hash) -> Layer:
        raise NotFoundError(f"empty image has no layer {h}")


class _EmptyIndex(ImageIndex):
    def __init__(self) -> None:
        self._manifest = IndexManifest(media_type=media_types.OCI_IMAGE_INDEX).to_json()

    async def raw_manifest(self) -> bytes:
        return self._manifest

    async def image(self, h: Hash) -> Image:
        raise NotFoundError(f"empty index has no image {h}")

    async def image_index(self, h: Hash) -> ImageIndex:
        raise NotFoundError(f"empty index has no child index {h}")


EMPTY_IMAGE: Image = _EmptyImage()
EMPTY_INDEX: ImageIndex = _EmptyIndex()
