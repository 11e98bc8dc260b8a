"""Pure transformers over images and indexes.

Every function returns a new value; inputs are never modified.
"""

from typing import Callable, TypeVar, Union

from .. import media_types
from ..image.base import Image, ImageIndex, Matcher
from ..image.layer import Layer
from ..models import Config, ConfigFile, Descriptor, History
from .extract import extract, extract_layers
from .flatten import FLATTEN_CREATED_BY, flatten, flatten_index, partial_flatten, squash
from .image import Addendum, IndexAddendum, MutatedImage, MutatedIndex, rebuild_index
from .rebase import rebase, rebase_index
from .timestamps import canonical, created_at, layer_time, time

T = TypeVar("T", Image, ImageIndex)

APPEND_CREATED_BY = "append layer"


def append(img: Image, *adds: Addendum) -> Image:
    return MutatedImage(img, adds=adds)


def append_layers(img: Image, *layers: Layer) -> Image:
    """Append ``layers`` on top of ``img``, each with a default history entry."""
    return MutatedImage(
        img,
        adds=[Addendum(layer=layer, history=History(created_by=APPEND_CREATED_BY)) for layer in layers],
    )


def config(img: Image, cfg: Config) -> Image:
    """Replace the ``config`` subtree of the image's config file."""
    return MutatedImage(img, config=cfg)


def config_file(img: Image, cfg: ConfigFile) -> Image:
    """Replace the whole config file; rootfs diffIDs stay those of the layers."""
    return MutatedImage(img, config_file=cfg)


def annotations(target: T, values: dict[str, str]) -> T:
    """Merge ``values`` into the manifest annotations; new keys win."""
    if isinstance(target, ImageIndex):
        return MutatedIndex(target, annotations=values)
    return MutatedImage(target, annotations=values)


def media_type(img: Image, value: str) -> Image:
    return MutatedImage(img, media_type=value)


def config_media_type(img: Image, value: str) -> Image:
    return MutatedImage(img, config_media_type=value)


def index_media_type(idx: ImageIndex, value: str) -> ImageIndex:
    return MutatedIndex(idx, media_type=value)


def subject(target: T, desc: Descriptor) -> T:
    """Point the manifest's ``subject`` at ``desc``."""
    if isinstance(target, ImageIndex):
        return MutatedIndex(target, subject=desc)
    return MutatedImage(target, subject=desc)


def artifact_type(target: T, value: str) -> T:
    if isinstance(target, ImageIndex):
        return MutatedIndex(target, artifact_type=value)
    return MutatedImage(target, artifact_type=value)


def append_manifests(idx: ImageIndex, *adds: IndexAddendum) -> ImageIndex:
    return MutatedIndex(idx, adds=adds)


def remove_manifests(idx: ImageIndex, matcher: Matcher) -> ImageIndex:
    return MutatedIndex(idx, remove=matcher)


def _strip_docker_fields(cf: ConfigFile) -> None:
    cf.container = ""
    cf.docker_version = ""
    cf.container_config = None
    cf.config.hostname = ""
    cf.config.domainname = ""


def oci_image(img: Image) -> Image:
    """Convert ``img`` to OCI media types; layer bytes are untouched."""
    return MutatedImage(
        img,
        media_type=media_types.OCI_MANIFEST_SCHEMA1,
        config_media_type=media_types.OCI_CONFIG_JSON,
        layer_media_type=media_types.to_oci,
        config_edit=_strip_docker_fields,
    )


async def oci_index(idx: ImageIndex) -> ImageIndex:
    """Convert ``idx`` and every child to OCI media types."""

    async def transform(desc: Descriptor, child: Union[Image, ImageIndex]):
        if isinstance(child, ImageIndex):
            return await oci_index(child)
        return oci_image(child)

    return await rebuild_index(idx, transform, media_type=media_types.OCI_IMAGE_INDEX)


def remove_platforms(idx: ImageIndex, keep: Callable[[Descriptor], bool]) -> ImageIndex:
    """Drop every child for which ``keep`` is false."""
    return MutatedIndex(idx, remove=lambda desc: not keep(desc))


__all__ = [
    "Addendum",
    "IndexAddendum",
    "MutatedImage",
    "MutatedIndex",
    "FLATTEN_CREATED_BY",
    "APPEND_CREATED_BY",
    "append",
    "append_layers",
    "config",
    "config_file",
    "annotations",
    "media_type",
    "config_media_type",
    "index_media_type",
    "subject",
    "artifact_type",
    "append_manifests",
    "remove_manifests",
    "remove_platforms",
    "oci_image",
    "oci_index",
    "rebase",
    "rebase_index",
    "flatten",
    "flatten_index",
    "partial_flatten",
    "squash",
    "extract",
    "extract_layers",
    "created_at",
    "time",
    "canonical",
    "layer_time",
]
