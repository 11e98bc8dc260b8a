"""Reference-level remote operations."""

import logging
from typing import Union

from .. import media_types
from ..exceptions import UnsupportedMediaTypeError
from ..image.base import Artifact, Image, ImageIndex
from ..image.layer import Layer
from ..models import Descriptor
from ..name import Digest, Repository, Tag
from ..utils.digest import Hash
from .fetcher import Fetcher, Ref
from .image import RemoteDescriptor, RemoteLayer
from .options import RemoteOptions
from .writer import Writer

logger = logging.getLogger(__name__)


async def _fetcher(repo: Repository, options: RemoteOptions) -> Fetcher:
    return Fetcher(await options.transport(repo, "pull"), repo)


async def get(ref: Ref, options: RemoteOptions) -> RemoteDescriptor:
    """Fetch the manifest ``ref`` points at, whatever its media type."""
    fetcher = await _fetcher(ref.context(), options)
    raw, desc = await fetcher.fetch_manifest(ref)
    return RemoteDescriptor(ref, desc, raw, fetcher)


async def head(ref: Ref, options: RemoteOptions) -> Descriptor:
    """Describe the manifest at ``ref`` without downloading it."""
    fetcher = await _fetcher(ref.context(), options)
    return await fetcher.head_manifest(ref)


async def image(ref: Ref, options: RemoteOptions) -> Image:
    """The image at ``ref``; an index resolves via ``options.platform``."""
    desc = await get(ref, options)
    return await desc.image(options.platform)


async def index(ref: Ref, options: RemoteOptions) -> ImageIndex:
    desc = await get(ref, options)
    return await desc.image_index()


async def layer(ref: Digest, options: RemoteOptions) -> Layer:
    """The blob ``ref`` as a layer; its size comes from a HEAD request."""
    fetcher = await _fetcher(ref.context(), options)
    size = await fetcher.head_blob(ref.hash)
    if size is None:
        size = -1
    return RemoteLayer(fetcher, Descriptor(media_type=media_types.DOCKER_LAYER, size=size, digest=ref.hash))


def _mount_sources(artifact: object) -> tuple[Repository, ...]:
    repo = getattr(artifact, "repository", None)
    return (repo,) if isinstance(repo, Repository) else ()


async def write(ref: Ref, img: Image, options: RemoteOptions) -> Hash:
    """Push ``img``: blobs first, then the manifest at ``ref``."""
    writer = await Writer.create(ref.context(), options, _mount_sources(img))
    return await writer.write_image(img, ref.identifier)


async def write_index(ref: Ref, idx: ImageIndex, options: RemoteOptions) -> Hash:
    writer = await Writer.create(ref.context(), options, _mount_sources(idx))
    return await writer.write_index(idx, ref.identifier)


async def write_artifact(ref: Ref, artifact: Artifact, options: RemoteOptions) -> Hash:
    if isinstance(artifact, ImageIndex):
        return await write_index(ref, artifact, options)
    if isinstance(artifact, Image):
        return await write(ref, artifact, options)
    raise UnsupportedMediaTypeError(f"cannot write {type(artifact).__name__}")


async def write_layer(repo: Repository, layer: Layer, options: RemoteOptions) -> None:
    writer = await Writer.create(repo, options, _mount_sources(layer))
    await writer.write_layer(layer)


async def put(ref: Ref, raw: bytes, media_type: str, options: RemoteOptions) -> Hash:
    """PUT manifest bytes as-is (no blob uploads)."""
    writer = await Writer.create(ref.context(), options)
    return await writer.put_manifest(ref.identifier, raw, media_type)


async def tag(ref: Ref, new_tag: str, options: RemoteOptions) -> Hash:
    """Point ``new_tag`` (in the same repository) at the manifest of ``ref``."""
    desc = await get(ref, options)
    return await put(Tag(ref.context(), new_tag), desc.manifest, desc.media_type, options)


async def delete(ref: Union[Tag, Digest], options: RemoteOptions) -> None:
    writer = await Writer.create(ref.context(), options)
    await writer.delete(ref.identifier)
