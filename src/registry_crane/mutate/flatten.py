"""Collapse layers: flatten, partial flatten and squash."""

import json
import logging
from typing import Optional

from .. import media_types
from ..exceptions import ValidationError
from ..image.base import Image, ImageIndex, platform_matcher
from ..image.layer import Layer, layer_from_bytes
from ..models import ConfigFile, Descriptor, History, Platform
from ..utils.gzip import read_all
from .extract import extract_layers
from .image import MutatedImage, pad_history, rebuild_index

logger = logging.getLogger(__name__)

FLATTEN_CREATED_BY = "registry-crane flatten"


def _history_comment(history: list[History]) -> str:
    return json.dumps([h.to_dict() for h in history], separators=(",", ":"))


async def _merged_layer(layers: list[Layer], manifest_media_type: str) -> Layer:
    data = await read_all(extract_layers(layers))
    return layer_from_bytes(data, media_types.layer_type_for(manifest_media_type))


def _is_flattened(config: ConfigFile, layer_count: int) -> bool:
    return (
        layer_count == 1
        and len(config.history) == 1
        and config.history[0].created_by == FLATTEN_CREATED_BY
    )


async def flatten(img: Image) -> Image:
    """Return ``img`` with all layers merged into one.

    The single layer holds the extracted filesystem. History is replaced by
    one entry whose comment is the original history as JSON; flattening an
    already flattened image keeps that entry, so the digest is stable.
    """
    manifest = await img.manifest()
    config = await img.config_file()
    layer = await _merged_layer(await img.layers(), manifest.media_type)

    if _is_flattened(config, len(manifest.layers)):
        history = config.history[0]
    else:
        history = History(
            created=config.created,
            created_by=FLATTEN_CREATED_BY,
            comment=_history_comment(config.history),
        )

    def edit(cf: ConfigFile) -> None:
        cf.history = [history]

    logger.debug("flattened %d layers", len(manifest.layers))
    return MutatedImage(img, layers=[layer], config_edit=edit)


async def squash(img: Image) -> Image:
    """Merge all layers into one, keeping the original history entries.

    Every entry but the last non-empty one is marked ``empty_layer`` so the
    history still accounts for exactly one layer.
    """
    manifest = await img.manifest()
    config = await img.config_file()
    layer = await _merged_layer(await img.layers(), manifest.media_type)

    history = [History(**vars(h)) for h in config.history]
    if not history:
        history = [History(created=config.created, created_by=FLATTEN_CREATED_BY)]
    last = max((i for i, h in enumerate(history) if not h.empty_layer), default=None)
    if last is None:
        history.append(History(created=config.created, created_by=FLATTEN_CREATED_BY))
        last = len(history) - 1
    for i, entry in enumerate(history):
        entry.empty_layer = i != last

    def edit(cf: ConfigFile) -> None:
        cf.history = history

    return MutatedImage(img, layers=[layer], config_edit=edit)


async def partial_flatten(img: Image, n: int) -> Image:
    """Merge only the top ``n`` layers into one.

    The lower layers and their history entries are kept; the merged layer
    gets one entry whose comment records the history it replaced.
    """
    manifest = await img.manifest()
    layers = await img.layers()
    if not 1 <= n <= len(layers):
        raise ValidationError(f"cannot flatten {n} of {len(layers)} layers")

    config = await img.config_file()
    pad_history(config, len(layers))
    keep = len(layers) - n

    # Split history at the entry that owns the first merged layer.
    kept_history: list[History] = []
    seen = 0
    split = len(config.history)
    for i, entry in enumerate(config.history):
        if not entry.empty_layer:
            if seen == keep:
                split = i
                break
            seen += 1
        kept_history.append(entry)
    merged_history = config.history[split:]

    merged = await _merged_layer(layers[keep:], manifest.media_type)
    history = kept_history + [
        History(
            created=config.created,
            created_by=FLATTEN_CREATED_BY,
            comment=_history_comment(merged_history),
        )
    ]

    def edit(cf: ConfigFile) -> None:
        cf.history = history

    return MutatedImage(img, layers=layers[:keep] + [merged], config_edit=edit)


async def flatten_index(idx: ImageIndex, platform: Optional[Platform] = None) -> ImageIndex:
    """Flatten every child image (only those matching ``platform`` if set)."""
    matches = platform_matcher(platform) if platform is not None else None

    async def transform(desc: Descriptor, child):
        if isinstance(child, ImageIndex):
            return await flatten_index(child, platform)
        if matches is not None and not matches(desc):
            return None
        return await flatten(child)

    return await rebuild_index(idx, transform)
