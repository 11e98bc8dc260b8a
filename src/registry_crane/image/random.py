"""Random images and indexes, mostly for tests."""

import os
import secrets
from datetime import datetime, timezone

from .. import media_types
from ..models import ConfigFile, History, format_time
from .base import Image, ImageIndex
from .empty import EMPTY_IMAGE, EMPTY_INDEX
from .layer import Layer, layer_from_files


def random_layer(byte_size: int, media_type: str = media_types.DOCKER_LAYER) -> Layer:
    """A layer holding one file of ``byte_size`` random bytes."""
    name = f"random_file_{secrets.token_hex(8)}"
    return layer_from_files({name: os.urandom(byte_size)}, media_type)


def random_image(
    byte_size: int,
    layers: int,
    media_type: str = media_types.DOCKER_MANIFEST_SCHEMA2,
) -> Image:
    """An image of ``layers`` random layers, each with ``byte_size`` bytes of payload."""
    from .. import mutate

    now = format_time(datetime.now(timezone.utc).replace(microsecond=0))
    adds = [
        mutate.Addendum(
            layer=random_layer(byte_size, media_types.layer_type_for(media_type)),
            history=History(author="random", created=now, created_by="random"),
        )
        for _ in range(layers)
    ]
    cfg = ConfigFile(architecture="amd64", os="linux", created=now)
    base = mutate.MutatedImage(
        EMPTY_IMAGE,
        config_file=cfg,
        media_type=media_type,
        config_media_type=media_types.config_type_for(media_type),
    )
    return mutate.append(base, *adds)


def random_index(byte_size: int, layers: int, count: int) -> ImageIndex:
    """An OCI index of ``count`` random images."""
    from .. import mutate

    children = [
        mutate.IndexAddendum(add=random_image(byte_size, layers, media_types.OCI_MANIFEST_SCHEMA1))
        for _ in range(count)
    ]
    return mutate.append_manifests(EMPTY_INDEX, *children)
