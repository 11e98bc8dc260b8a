"""Consistency checks for images and indexes."""

import logging

from .. import media_types
from ..exceptions import ValidationError
from ..utils.digest import Hash, Hasher
from ..utils.gzip import Inflater
from .base import Image, ImageIndex

logger = logging.getLogger(__name__)


async def _check_layers(img: Image, errors: list[str]) -> None:
    manifest = await img.manifest()
    config = await img.config_file()
    diff_ids = config.rootfs.diff_ids
    if len(diff_ids) != len(manifest.layers):
        errors.append(f"rootfs has {len(diff_ids)} diffIDs but manifest has {len(manifest.layers)} layers")

    for i, desc in enumerate(manifest.layers):
        if not media_types.is_distributable(desc.media_type) and desc.urls:
            # Foreign layers are fetched from their URLs, not the registry.
            continue
        layer = await img.layer_by_digest(desc.digest)
        blob, tar = Hasher(desc.digest.algorithm), Hasher()
        inflater = Inflater() if media_types.is_gzipped(desc.media_type) else None
        async for chunk in layer.compressed():
            blob.update(chunk)
            tar.update(inflater.feed(chunk) if inflater else chunk)
        if inflater:
            tar.update(inflater.flush())
        if blob.digest() != desc.digest:
            errors.append(f"layer {i}: digest {blob.digest()} does not match manifest {desc.digest}")
        if blob.size != desc.size:
            errors.append(f"layer {i}: size {blob.size} does not match manifest {desc.size}")
        if i < len(diff_ids) and tar.digest() != diff_ids[i]:
            errors.append(f"layer {i}: diffID {tar.digest()} does not match config {diff_ids[i]}")


async def validate_image(img: Image, fast: bool = False) -> None:
    """Verify digests, sizes, diffIDs and history of ``img``.

    With ``fast=True`` layer contents are not downloaded.

    Raises:
        ValidationError: Listing every violated invariant
    """
    errors: list[str] = []
    raw = await img.raw_manifest()
    if Hash.of(raw) != await img.digest():
        errors.append("manifest digest does not match its content")

    manifest = await img.manifest()
    raw_config = await img.raw_config_file()
    if Hash.of(raw_config, manifest.config.digest.algorithm) != manifest.config.digest:
        errors.append(f"config digest {Hash.of(raw_config)} does not match manifest {manifest.config.digest}")
    if len(raw_config) != manifest.config.size:
        errors.append(f"config size {len(raw_config)} does not match manifest {manifest.config.size}")

    config = await img.config_file()
    if config.history:
        non_empty = sum(1 for h in config.history if not h.empty_layer)
        if non_empty != len(manifest.layers):
            errors.append(f"history has {non_empty} non-empty entries but image has {len(manifest.layers)} layers")

    if not fast:
        await _check_layers(img, errors)

    if errors:
        raise ValidationError("; ".join(errors))
    logger.debug("validated image %s", await img.digest())


async def validate_index(idx: ImageIndex, fast: bool = False) -> None:
    """Validate every child of ``idx`` and the descriptors that point at it."""
    errors: list[str] = []
    for desc in (await idx.index_manifest()).manifests:
        if media_types.is_index(desc.media_type):
            child = await idx.image_index(desc.digest)
            try:
                await validate_index(child, fast)
            except ValidationError as e:
                errors.append(f"child {desc.digest}: {e}")
        elif media_types.is_image(desc.media_type):
            child = await idx.image(desc.digest)
            try:
                await validate_image(child, fast)
            except ValidationError as e:
                errors.append(f"child {desc.digest}: {e}")
        else:
            continue
        if await child.digest() != desc.digest:
            errors.append(f"child digest {await child.digest()} does not match descriptor {desc.digest}")
        if await child.size() != desc.size:
            errors.append(f"child {desc.digest} size {await child.size()} does not match descriptor {desc.size}")
    if errors:
        raise ValidationError("; ".join(errors))
