"""Timestamp rewriting: created_at, time and canonical."""

import asyncio
import io
import tarfile
from datetime import datetime
from typing import BinaryIO

from .. import media_types
from ..image.base import Image
from ..image.layer import Layer, layer_from_bytes
from ..models import EPOCH, ConfigFile, format_time
from ..utils.gzip import spool
from .image import MutatedImage


def _retar(source: BinaryIO, mtime: int) -> bytes:
    out = io.BytesIO()
    with tarfile.open(fileobj=source, mode="r:") as tar, tarfile.open(
        fileobj=out, mode="w", format=tarfile.GNU_FORMAT
    ) as writer:
        for member in tar:
            member.mtime = mtime
            if member.isreg():
                writer.addfile(member, tar.extractfile(member))
            else:
                writer.addfile(member)
    return out.getvalue()


async def layer_time(layer: Layer, when: datetime) -> Layer:
    """Rebuild ``layer`` with every entry's mtime set to ``when``.

    Blobs that are not tar layers (artifact payloads) are returned unchanged.
    """
    media_type = await layer.media_type()
    if not media_types.is_layer(media_type):
        return layer
    source = await spool(layer.uncompressed())
    try:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, _retar, source, int(when.timestamp()))
    finally:
        source.close()
    return layer_from_bytes(data, media_type)


def created_at(img: Image, when: datetime) -> Image:
    """Set only the config's ``created`` field."""

    def edit(cf: ConfigFile) -> None:
        cf.created = format_time(when)

    return MutatedImage(img, config_edit=edit)


async def time(img: Image, when: datetime) -> Image:
    """Set config, history and every layer entry timestamps to ``when``."""
    layers = [await layer_time(layer, when) for layer in await img.layers()]
    stamp = format_time(when)

    def edit(cf: ConfigFile) -> None:
        cf.created = stamp
        for entry in cf.history:
            entry.created = stamp

    return MutatedImage(img, layers=layers, config_edit=edit)


async def canonical(img: Image) -> Image:
    """Strip nondeterministic metadata so equal content yields equal digests."""
    img = await time(img, EPOCH)

    def edit(cf: ConfigFile) -> None:
        cf.container = ""
        cf.docker_version = ""
        cf.config.hostname = ""
        if cf.container_config is not None:
            cf.container_config.hostname = ""

    return MutatedImage(img, config_edit=edit)
