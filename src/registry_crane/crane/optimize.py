"""Rewrite images as eStargz for lazy pulling."""

import logging
from typing import Optional, Sequence

from ..exceptions import NotFoundError
from ..image.base import Image, ImageIndex, platform_matcher
from ..image.estargz import estargz_layer
from ..models import Descriptor, Manifest, Platform
from ..mutate import MutatedImage, rebuild_index
from ..mutate.extract import normalize

logger = logging.getLogger(__name__)


async def _optimize_image(img: Image, prioritize: Sequence[str]) -> tuple[Image, set[str]]:
    layers = []
    annotations = []
    found: set[str] = set()
    for layer in await img.layers():
        converted, layer_annotations, layer_found = await estargz_layer(layer, prioritize)
        layers.append(converted)
        annotations.append(layer_annotations)
        found |= layer_found

    def edit(manifest: Manifest) -> None:
        for desc, extra in zip(manifest.layers, annotations):
            desc.annotations = {**desc.annotations, **extra}

    return MutatedImage(img, layers=layers, manifest_edit=edit), found


def _check_missing(prioritize: Sequence[str], found: set[str]) -> None:
    missing = sorted({normalize(p) for p in prioritize} - found)
    if missing:
        raise NotFoundError(f"the following prioritized files were missing from image: {missing}")


async def optimize_image(img: Image, prioritize: Sequence[str] = ()) -> Image:
    """Convert every layer of ``img``, moving ``prioritize`` to the front.

    Raises:
        NotFoundError: If a prioritized path is in none of the layers
    """
    optimized, found = await _optimize_image(img, prioritize)
    _check_missing(prioritize, found)
    return optimized


async def optimize_index(
    idx: ImageIndex, prioritize: Sequence[str] = (), platform: Optional[Platform] = None
) -> ImageIndex:
    """Optimize each child image; every prioritized path must appear in each one."""
    matches = platform_matcher(platform) if platform is not None else None

    async def transform(desc: Descriptor, child):
        if isinstance(child, ImageIndex):
            return await optimize_index(child, prioritize, platform)
        if matches is not None and not matches(desc):
            return None
        optimized, found = await _optimize_image(child, prioritize)
        _check_missing(prioritize, found)
        logger.info("optimized %s", desc.digest)
        return optimized

    return await rebuild_index(idx, transform)
