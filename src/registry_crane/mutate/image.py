"""Lazily computed mutations of images and indexes.

A :class:`MutatedImage` records a set of changes against a base image and
materializes the new manifest and config only when first asked. The base is
never modified; unchanged layers are shared by reference.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from .. import media_types
from ..exceptions import NotComputedError, NotFoundError, ValidationError
from ..image.base import Artifact, Image, ImageIndex, Matcher
from ..image.layer import Layer, MediaTypeLayer
from ..models import (
    Config,
    ConfigFile,
    Descriptor,
    History,
    IndexManifest,
    Manifest,
)
from ..utils.digest import Hash

ConfigEdit = Callable[[ConfigFile], None]
ManifestEdit = Callable[[Manifest], None]


@dataclass
class Addendum:
    """A layer (or an empty history entry) to append to an image."""

    layer: Optional[Layer] = None
    history: Optional[History] = None
    annotations: dict[str, str] = field(default_factory=dict)
    urls: list[str] = field(default_factory=list)
    media_type: str = ""


@dataclass
class IndexAddendum:
    """A child to append to an index.

    ``add`` is the child itself; ``descriptor`` supplies platform,
    annotations or a media type override. With ``add`` unset the descriptor
    is appended verbatim and child lookups fall through to the base index.
    """

    add: Optional[Artifact] = None
    descriptor: Optional[Descriptor] = None


def pad_history(config: ConfigFile, layer_count: int) -> None:
    """Append default non-empty history entries until every layer has one."""
    non_empty = sum(1 for h in config.history if not h.empty_layer)
    for _ in range(layer_count - non_empty):
        config.history.append(History())


class MutatedImage(Image):
    def __init__(
        self,
        base: Image,
        *,
        adds: Sequence[Addendum] = (),
        layers: Optional[Sequence[Layer]] = None,
        config_file: Optional[ConfigFile] = None,
        config: Optional[Config] = None,
        config_edit: Optional[ConfigEdit] = None,
        manifest_edit: Optional[ManifestEdit] = None,
        layer_media_type: Optional[Callable[[str], str]] = None,
        annotations: Optional[dict[str, str]] = None,
        media_type: str = "",
        config_media_type: str = "",
        subject: Optional[Descriptor] = None,
        artifact_type: Optional[str] = None,
    ) -> None:
        self.base = base
        self._adds = list(adds)
        self._layers = list(layers) if layers is not None else None
        self._config_file = config_file.copy() if config_file is not None else None
        self._config = config.copy() if config is not None else None
        self._config_edit = config_edit
        self._manifest_edit = manifest_edit
        self._layer_media_type = layer_media_type
        self._annotations = dict(annotations) if annotations is not None else None
        self._media_type = media_type
        self._config_media_type = config_media_type
        self._subject = subject
        self._artifact_type = artifact_type

        for add in self._adds:
            if add.layer is None and not (add.history and add.history.empty_layer):
                raise ValidationError("unable to add a nil layer to the image")

        self._lock = asyncio.Lock()
        self._raw_manifest: Optional[bytes] = None
        self._raw_config: Optional[bytes] = None
        self._by_digest: dict[Hash, Layer] = {}

    async def _compute(self) -> None:
        async with self._lock:
            if self._raw_manifest is not None:
                return

            manifest = (await self.base.manifest()).copy()
            config_changed = False
            config_file = (await self.base.config_file()).copy()

            if self._layers is not None:
                manifest.layers = []
                config_file.rootfs.diff_ids = []
                for layer in self._layers:
                    desc = await layer.descriptor()
                    manifest.layers.append(desc)
                    config_file.rootfs.diff_ids.append(await layer.diff_id())
                    self._by_digest[desc.digest] = layer
                config_changed = True

            if self._layer_media_type is not None:
                for desc in manifest.layers:
                    desc.media_type = self._layer_media_type(desc.media_type)

            if self._config_file is not None:
                diff_ids = config_file.rootfs.diff_ids
                config_file = self._config_file.copy()
                config_file.rootfs.diff_ids = list(diff_ids)
                config_changed = True
            if self._config is not None:
                config_file.config = self._config.copy()
                config_changed = True
            if self._config_edit is not None:
                self._config_edit(config_file)
                config_changed = True

            if self._adds:
                pad_history(config_file, len(manifest.layers))
                config_changed = True
            for add in self._adds:
                history = add.history or History()
                if add.layer is None:
                    config_file.history.append(history)
                    continue
                desc = await add.layer.descriptor()
                if add.media_type:
                    desc.media_type = add.media_type
                desc.urls = list(add.urls)
                desc.annotations = dict(add.annotations)
                manifest.layers.append(desc)
                config_file.rootfs.diff_ids.append(await add.layer.diff_id())
                config_file.history.append(history)
                self._by_digest[desc.digest] = add.layer

            if config_changed:
                raw_config = config_file.to_json()
            else:
                raw_config = await self.base.raw_config_file()
            self._raw_config = raw_config

            if self._media_type:
                manifest.media_type = self._media_type
            config_mt = self._config_media_type or manifest.config.media_type
            manifest.config = Descriptor(
                media_type=config_mt,
                size=len(raw_config),
                digest=Hash.of(raw_config),
                annotations=dict(manifest.config.annotations),
            )
            if self._annotations is not None:
                manifest.annotations = {**manifest.annotations, **self._annotations}
            if self._subject is not None:
                manifest.subject = self._subject.copy()
            if self._artifact_type is not None:
                manifest.artifact_type = self._artifact_type
            if self._manifest_edit is not None:
                self._manifest_edit(manifest)

            self._raw_manifest = manifest.to_json()

    async def raw_manifest(self) -> bytes:
        await self._compute()
        assert self._raw_manifest is not None
        return self._raw_manifest

    async def raw_config_file(self) -> bytes:
        await self._compute()
        assert self._raw_config is not None
        return self._raw_config

    async def layers(self) -> list[Layer]:
        try:
            await self._compute()
        except NotComputedError:
            # An unread stream layer; list what would be written without the manifest.
            if self._layers is not None:
                layers = list(self._layers)
            else:
                layers = await self.base.layers()
                if self._layer_media_type is not None:
                    layers = [MediaTypeLayer(l, self._layer_media_type(await l.media_type())) for l in layers]
            return layers + [add.layer for add in self._adds if add.layer is not None]
        return await super().layers()

    async def layer_by_digest(self, h: Hash) -> Layer:
        await self._compute()
        if h in self._by_digest:
            return self._by_digest[h]
        if self._layers is not None:
            raise NotFoundError(f"unknown layer {h}")
        layer = await self.base.layer_by_digest(h)
        if self._layer_media_type is not None:
            return MediaTypeLayer(layer, self._layer_media_type(await layer.media_type()))
        return layer


class MutatedIndex(ImageIndex):
    def __init__(
        self,
        base: ImageIndex,
        *,
        adds: Sequence[IndexAddendum] = (),
        remove: Optional[Matcher] = None,
        annotations: Optional[dict[str, str]] = None,
        media_type: str = "",
        subject: Optional[Descriptor] = None,
        artifact_type: Optional[str] = None,
    ) -> None:
        self.base = base
        self._adds = list(adds)
        self._remove = remove
        self._annotations = dict(annotations) if annotations is not None else None
        self._media_type = media_type
        self._subject = subject
        self._artifact_type = artifact_type
        self._lock = asyncio.Lock()
        self._raw_manifest: Optional[bytes] = None
        self._children: dict[Hash, Artifact] = {}

    async def _compute(self) -> None:
        async with self._lock:
            if self._raw_manifest is not None:
                return
            manifest: IndexManifest = (await self.base.index_manifest()).copy()
            if self._remove is not None:
                manifest.manifests = [d for d in manifest.manifests if not self._remove(d)]
            for add in self._adds:
                manifest.manifests.append(await _index_descriptor(add))
                if add.add is not None:
                    self._children[manifest.manifests[-1].digest] = add.add
            if self._media_type:
                manifest.media_type = self._media_type
            if self._annotations is not None:
                manifest.annotations = {**manifest.annotations, **self._annotations}
            if self._subject is not None:
                manifest.subject = self._subject.copy()
            if self._artifact_type is not None:
                manifest.artifact_type = self._artifact_type
            self._raw_manifest = manifest.to_json()

    async def raw_manifest(self) -> bytes:
        await self._compute()
        assert self._raw_manifest is not None
        return self._raw_manifest

    async def image(self, h: Hash) -> Image:
        await self._compute()
        child = self._children.get(h)
        if isinstance(child, Image):
            return child
        if child is not None:
            raise NotFoundError(f"child {h} is an index, not an image")
        return await self.base.image(h)

    async def image_index(self, h: Hash) -> ImageIndex:
        await self._compute()
        child = self._children.get(h)
        if isinstance(child, ImageIndex):
            return child
        if child is not None:
            raise NotFoundError(f"child {h} is an image, not an index")
        return await self.base.image_index(h)


async def _index_descriptor(add: IndexAddendum) -> Descriptor:
    if add.add is None:
        if add.descriptor is None:
            raise ValidationError("index addendum needs a child or a descriptor")
        return add.descriptor.copy()

    desc = await add.add.descriptor()
    if add.descriptor is not None:
        override = add.descriptor
        if override.media_type:
            desc.media_type = override.media_type
        desc.urls = list(override.urls)
        desc.annotations = dict(override.annotations)
        desc.platform = override.platform
        if override.artifact_type:
            desc.artifact_type = override.artifact_type

    if isinstance(add.add, Image):
        manifest = await add.add.manifest()
        if desc.platform is None:
            config = await add.add.config_file()
            if config.os or config.architecture:
                desc.platform = config.platform()
        config_mt = manifest.config.media_type
        if not desc.artifact_type and config_mt and not media_types.is_config(config_mt):
            desc.artifact_type = config_mt
    return desc


Transform = Callable[[Descriptor, Artifact], Awaitable[Optional[Artifact]]]


async def rebuild_index(idx: ImageIndex, transform: Transform, media_type: str = "") -> ImageIndex:
    """Rebuild ``idx`` with each child replaced by ``transform(desc, child)``.

    Children for which the transform returns ``None`` are kept verbatim.
    Descriptor order, platforms and annotations are preserved.
    """
    adds = []
    for desc in (await idx.index_manifest()).manifests:
        if not (media_types.is_image(desc.media_type) or media_types.is_index(desc.media_type)):
            adds.append(IndexAddendum(descriptor=desc))
            continue
        replacement = await transform(desc, await idx.child(desc))
        if replacement is None:
            adds.append(IndexAddendum(descriptor=desc))
            continue
        override = desc.copy(media_type=await replacement.media_type())
        adds.append(IndexAddendum(add=replacement, descriptor=override))
    return MutatedIndex(idx, adds=adds, remove=lambda _: True, media_type=media_type)

