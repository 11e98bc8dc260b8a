"""Replace the base layers of an image (or of each image in an index)."""

import logging

from .. import media_types
from ..exceptions import NotBasedError, NotFoundError, RebaseIncompatibleError
from ..image.base import Image, ImageIndex, image_for_platform
from ..image.empty import EMPTY_IMAGE
from ..image.layer import Layer
from ..models import ConfigFile, Descriptor, History, Platform
from .image import Addendum, MutatedImage, pad_history, rebuild_index

logger = logging.getLogger(__name__)


def _addenda(history: list[History], layers: list[Layer]) -> list[Addendum]:
    """Pair history entries with layers, in order.

    Empty-layer entries become layer-less addenda; layers beyond the
    history get default entries.
    """
    adds = []
    remaining = list(layers)
    for entry in history:
        if entry.empty_layer:
            adds.append(Addendum(history=entry))
        elif remaining:
            adds.append(Addendum(layer=remaining.pop(0), history=entry))
    for layer in remaining:
        adds.append(Addendum(layer=layer))
    return adds


async def rebase(orig: Image, old_base: Image, new_base: Image) -> Image:
    """Swap ``old_base``'s layers at the bottom of ``orig`` for ``new_base``'s.

    ``config.config`` of ``orig`` is preserved; os, architecture and os
    version come from the new base. When the bases differ in manifest
    family (Docker vs OCI) the upper layers follow the new base's family.

    Raises:
        NotBasedError: If ``orig`` does not start with ``old_base``'s layers
        RebaseIncompatibleError: If the history cannot be split at the base
    """
    orig_manifest = await orig.manifest()
    old_manifest = await old_base.manifest()
    new_manifest = await new_base.manifest()

    orig_digests = [d.digest for d in orig_manifest.layers]
    old_digests = [d.digest for d in old_manifest.layers]
    if len(old_digests) > len(orig_digests):
        raise NotBasedError(
            f"image has fewer layers ({len(orig_digests)}) than the old base ({len(old_digests)})"
        )
    for i, (have, want) in enumerate(zip(orig_digests, old_digests)):
        if have != want:
            raise NotBasedError(f"image layer {i} is {have}, old base has {want}")

    orig_config = await orig.config_file()
    old_config = await old_base.config_file()
    new_config = await new_base.config_file()
    pad_history(orig_config, len(orig_digests))
    pad_history(old_config, len(old_digests))
    pad_history(new_config, len(new_manifest.layers))

    if len(old_config.history) > len(orig_config.history):
        raise RebaseIncompatibleError(
            f"old base history ({len(old_config.history)}) is longer than image history "
            f"({len(orig_config.history)})"
        )
    base_non_empty = sum(1 for h in orig_config.history[: len(old_config.history)] if not h.empty_layer)
    if base_non_empty != len(old_digests):
        raise RebaseIncompatibleError(
            f"old base history covers {base_non_empty} layers of the image, old base has {len(old_digests)}"
        )

    new_mt = new_manifest.media_type or media_types.DOCKER_MANIFEST_SCHEMA2
    orig_mt = orig_manifest.media_type or media_types.DOCKER_MANIFEST_SCHEMA2
    top_layer_type = None
    if media_types.is_oci(new_mt) != media_types.is_oci(orig_mt):
        top_layer_type = media_types.to_oci if media_types.is_oci(new_mt) else media_types.to_docker

    orig_layers = await orig.layers()
    top_layers = orig_layers[len(old_digests) :]
    top_adds = _addenda(orig_config.history[len(old_config.history) :], top_layers)
    if top_layer_type is not None:
        for add in top_adds:
            if add.layer is not None:
                add.media_type = top_layer_type(await add.layer.media_type())

    rebased_config = ConfigFile(
        architecture=new_config.architecture,
        os=new_config.os,
        os_version=new_config.os_version,
        variant=new_config.variant,
        author=orig_config.author,
        created=orig_config.created,
        config=orig_config.config.copy(),
        extra=dict(orig_config.extra),
    )
    start = MutatedImage(
        EMPTY_IMAGE,
        config_file=rebased_config,
        media_type=new_mt,
        config_media_type=media_types.config_type_for(new_mt),
        annotations=orig_manifest.annotations,
    )
    with_base = MutatedImage(start, adds=_addenda(new_config.history, await new_base.layers()))
    logger.debug(
        "rebasing %d layers from %d onto %d base layers",
        len(top_layers),
        len(old_digests),
        len(new_manifest.layers),
    )
    return MutatedImage(with_base, adds=top_adds)


async def rebase_index(orig: ImageIndex, old_base: ImageIndex, new_base: ImageIndex) -> ImageIndex:
    """Rebase every platform of ``orig`` present in both bases.

    Children whose platform is missing from either base are kept verbatim;
    platforms only present in ``new_base`` are ignored.
    """

    async def transform(desc: Descriptor, child):
        if not isinstance(child, Image) or desc.platform is None:
            return None
        platform: Platform = desc.platform
        try:
            old_child = await image_for_platform(old_base, platform)
            new_child = await image_for_platform(new_base, platform)
        except NotFoundError:
            logger.debug("keeping %s: platform %s not in both bases", desc.digest, platform)
            return None
        return await rebase(child, old_child, new_child)

    return await rebuild_index(orig, transform)
