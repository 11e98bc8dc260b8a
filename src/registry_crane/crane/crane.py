"""High-level verbs over the registry client and the image engine.

Every verb takes plain reference strings, applies the client's options and
re-raises failures with what it was doing in front of the message
(``"copying a:1 to b:1: ..."``), keeping the original exception type.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Awaitable, BinaryIO, Callable, Mapping, Optional, Sequence, TypeVar, Union

from .. import media_types, mutate, remote
from ..core.connectivity import check_connectivity
from ..exceptions import ManifestError, RegistryError, RegistryNotFoundError, ValidationError
from ..image.base import Artifact, Image, ImageIndex
from ..image.empty import EMPTY_IMAGE, EMPTY_INDEX
from ..image.layer import Layer, StaticLayer, layer_from_file
from ..image.validate import validate_image, validate_index
from ..layout import REF_NAME_ANNOTATION, Layout
from ..models import Descriptor, IndexManifest, Platform
from ..name import Digest, Reference, Registry, Tag
from ..tarball import image_from_path, write, write_legacy
from ..utils.digest import Hash
from .optimize import optimize_image, optimize_index
from .options import Option, Options

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_NAME_ANNOTATION = "org.opencontainers.image.base.name"
BASE_DIGEST_ANNOTATION = "org.opencontainers.image.base.digest"

_RELEASE = re.compile(r"^(v?)(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")


def parse_release(tag: str) -> Optional[tuple[str, int, int, int]]:
    """``(prefix, major, minor, patch)`` for release tags like ``v1.2.3``.

    Prerelease and build metadata suffixes are not releases.
    """
    m = _RELEASE.match(tag)
    if m is None:
        return None
    return m.group(1), int(m.group(2)), int(m.group(3)), int(m.group(4))


def _key_values(pairs: Optional[Mapping[str, str]]) -> dict[str, str]:
    return dict(pairs or {})


class Crane:
    """A registry client bound to one set of options.

        async with Crane(insecure()) as crane:
            await crane.copy("localhost:5000/a:1", "localhost:5000/b:1")
    """

    def __init__(self, *opts: Option, options: Optional[Options] = None) -> None:
        self.options = options if options is not None else Options.make(*opts)
        self.remote = self.options.remote()

    async def __aenter__(self) -> "Crane":
        await self.remote.get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.remote.close()

    async def _run(self, context: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        try:
            if self.options.timeout is not None:
                return await asyncio.wait_for(fn(*args), self.options.timeout)
            return await fn(*args)
        except RegistryError as e:
            e.add_context(context)
            raise

    def _ref(self, value: str) -> Reference:
        return self.options.reference(value)

    async def _destination(self, src: Reference, dst: str, artifact: Artifact) -> Reference:
        """``dst`` if given; otherwise ``src``, or a digest ref when ``src`` is one."""
        if dst:
            return self._ref(dst)
        if isinstance(src, Tag):
            return src
        return src.context().digest(await artifact.digest())

    async def _check_clobber(self, ref: Reference) -> None:
        if not self.options.no_clobber or not isinstance(ref, Tag):
            return
        try:
            await remote.head(ref, self.remote)
        except RegistryNotFoundError:
            return
        raise ManifestError(f"refusing to clobber existing tag {ref}")

    async def _write(self, ref: Reference, artifact: Artifact) -> Hash:
        await self._check_clobber(ref)
        return await remote.write_artifact(ref, artifact, self.remote)

    async def _artifact(self, ref: Reference) -> Artifact:
        desc = await remote.get(ref, self.remote)
        return await desc.artifact(self.options.platform)

    # Reading

    async def get(self, src: str) -> remote.RemoteDescriptor:
        return await self._run(f"fetching {src}", lambda: remote.get(self._ref(src), self.remote))

    async def pull(self, src: str) -> Image:
        """The image at ``src``; an index resolves to the configured platform."""
        return await self._run(f"pulling {src}", lambda: remote.image(self._ref(src), self.remote))

    async def pull_index(self, src: str) -> ImageIndex:
        return await self._run(f"pulling {src}", lambda: remote.index(self._ref(src), self.remote))

    async def pull_artifact(self, src: str) -> Artifact:
        """An index as-is (unless a platform is set), otherwise an image."""
        return await self._run(f"pulling {src}", lambda: self._artifact(self._ref(src)))

    async def digest(self, src: str) -> str:
        async def run() -> str:
            ref = self._ref(src)
            if self.options.platform is None:
                return str((await remote.head(ref, self.remote)).digest)
            desc = await remote.get(ref, self.remote)
            if desc.is_index():
                img = await desc.image(self.options.platform)
                return str(await img.digest())
            return str(desc.digest)

        return await self._run(f"computing digest of {src}", run)

    async def manifest(self, src: str) -> bytes:
        async def run() -> bytes:
            desc = await remote.get(self._ref(src), self.remote)
            if desc.is_index() and self.options.platform is not None:
                img = await desc.image(self.options.platform)
                return await img.raw_manifest()
            return desc.manifest

        return await self._run(f"fetching manifest {src}", run)

    async def config(self, src: str) -> bytes:
        async def run() -> bytes:
            img = await remote.image(self._ref(src), self.remote)
            return await img.raw_config_file()

        return await self._run(f"fetching config {src}", run)

    async def blob(self, src: str) -> Layer:
        """The blob ``repo@sha256:...`` as a layer; stream it with ``compressed()``."""

        async def run() -> Layer:
            ref = self._ref(src)
            if not isinstance(ref, Digest):
                raise ValidationError(f"blob reference must be a digest: {src}")
            return await remote.layer(ref, self.remote)

        return await self._run(f"fetching blob {src}", run)

    async def list_tags(self, repo: str) -> list[str]:
        return await self._run(
            f"listing tags of {repo}", lambda: remote.list_tags(self.options.repository(repo), self.remote)
        )

    async def catalog(self, registry: str) -> list[str]:
        return await self._run(
            f"reading catalog of {registry}",
            lambda: remote.catalog(Registry(registry, insecure=self.options.insecure), self.remote),
        )

    async def ping(self, registry: str) -> bool:
        async def run() -> bool:
            return await check_connectivity(
                Registry(registry, insecure=self.options.insecure), self.options.config, await self.remote.get_session()
            )

        return await self._run(f"pinging {registry}", run)

    # Writing

    async def push(self, artifact: Artifact, dst: str) -> Hash:
        return await self._run(f"pushing {dst}", lambda: self._write(self._ref(dst), artifact))

    async def copy(self, src: str, dst: str) -> Hash:
        """Copy an index with all its children, or one image when a platform is set."""

        async def run() -> Hash:
            desc = await remote.get(self._ref(src), self.remote)
            dst_ref = self._ref(dst)
            if desc.is_index() and self.options.platform is None:
                return await self._write(dst_ref, await desc.image_index())
            return await self._write(dst_ref, await desc.image(self.options.platform))

        return await self._run(f"copying {src} to {dst}", run)

    async def copy_repository(self, src: str, dst: str) -> list[str]:
        """Copy every tag of repository ``src`` into ``dst``."""
        src_repo = self.options.repository(src)
        dst_repo = self.options.repository(dst)

        async def run() -> list[str]:
            tags = await remote.list_tags(src_repo, self.remote)
            for t in tags:
                desc = await remote.get(src_repo.tag(t), self.remote)
                await self._write(dst_repo.tag(t), await desc.artifact())
            return tags

        return await self._run(f"copying repository {src} to {dst}", run)

    async def tag(self, src: str, new_tag: str) -> Hash:
        async def run() -> Hash:
            ref = self._ref(src)
            await self._check_clobber(ref.context().tag(new_tag))
            return await remote.tag(ref, new_tag, self.remote)

        return await self._run(f"tagging {src} as {new_tag}", run)

    async def delete(self, src: str) -> None:
        await self._run(f"deleting {src}", lambda: remote.delete(self._ref(src), self.remote))

    async def bump(self, src: str, tag: str) -> list[str]:
        """Tag ``src`` as ``tag`` and move the ``vMAJOR.MINOR``, ``vMAJOR``
        and ``latest`` aliases when ``tag`` is the newest release they cover.

        Aliases already pointing at the manifest are left alone. Returns the
        tags that were written.
        """

        async def run() -> list[str]:
            release = parse_release(tag)
            if release is None:
                raise ValidationError(f"{tag} is not a release version (MAJOR.MINOR.PATCH, no prerelease or build)")
            prefix, major, minor, patch = release
            version = (major, minor, patch)
            ref = self._ref(src)
            repo = ref.context()
            desc = await remote.get(ref, self.remote)

            existing = []
            for t in await remote.list_tags(repo, self.remote):
                parsed = parse_release(t)
                if parsed is not None:
                    existing.append(parsed[1:])

            def newest(match: Callable[[tuple[int, int, int]], bool]) -> Optional[tuple[int, int, int]]:
                return max((v for v in existing if match(v)), default=None)

            targets = [tag]
            aliases = (
                (f"{prefix}{major}.{minor}", lambda v: v[:2] == (major, minor)),
                (f"{prefix}{major}", lambda v: v[0] == major),
                ("latest", lambda v: True),
            )
            for alias, covers in aliases:
                current = newest(covers)
                if current is None or version >= current:
                    targets.append(alias)

            written = []
            for target in targets:
                try:
                    head = await remote.head(repo.tag(target), self.remote)
                    if head.digest == desc.digest:
                        logger.info("%s:%s already at %s", repo, target, desc.digest)
                        continue
                except RegistryNotFoundError:
                    pass
                await remote.put(repo.tag(target), desc.manifest, desc.media_type, self.remote)
                written.append(target)
            return written

        return await self._run(f"bumping {src} to {tag}", run)

    # Mutating

    async def append(self, base: Optional[Image], paths: Sequence[Union[str, Path]]) -> Image:
        """``base`` (or the empty image) with one layer per tarball in ``paths``."""
        img = base if base is not None else EMPTY_IMAGE
        manifest_type = (await img.manifest()).media_type or media_types.DOCKER_MANIFEST_SCHEMA2
        layer_type = media_types.layer_type_for(manifest_type)
        layers = [layer_from_file(path, layer_type) for path in paths]
        return mutate.append_layers(img, *layers)

    async def rebase(self, orig: str, old_base: str = "", new_base: str = "", dst: str = "") -> Hash:
        """Rebase ``orig`` and push it; returns the new digest.

        Missing bases come from the ``org.opencontainers.image.base.*``
        annotations of ``orig``: the old base by digest, the new base by
        name (its current tag). The result carries annotations for the
        new base.
        """

        async def run() -> Hash:
            orig_ref = self._ref(orig)
            orig_desc = await remote.get(orig_ref, self.remote)
            if orig_desc.is_index():
                manifest_annotations = IndexManifest.from_json(orig_desc.manifest).annotations
            else:
                manifest_annotations = (await (await orig_desc.image(self.options.platform)).manifest()).annotations
            old_name = old_base
            new_name = new_base
            if not old_name:
                name = manifest_annotations.get(BASE_NAME_ANNOTATION)
                digest = manifest_annotations.get(BASE_DIGEST_ANNOTATION)
                if not name or not digest:
                    raise ValidationError(f"{orig} has no base annotations; an old base is required")
                old_name = f"{self._ref(name).context()}@{digest}"
            if not new_name:
                new_name = manifest_annotations.get(BASE_NAME_ANNOTATION, "")
                if not new_name:
                    raise ValidationError(f"{orig} has no base name annotation; a new base is required")

            old_desc = await remote.get(self._ref(old_name), self.remote)
            new_ref = self._ref(new_name)
            new_desc = await remote.get(new_ref, self.remote)

            rebased: Artifact
            if orig_desc.is_index() and self.options.platform is None:
                rebased = await mutate.rebase_index(
                    await orig_desc.image_index(), await old_desc.image_index(), await new_desc.image_index()
                )
            else:
                platform = self.options.platform
                rebased = await mutate.rebase(
                    await orig_desc.image(platform), await old_desc.image(platform), await new_desc.image(platform)
                )
            rebased = mutate.annotations(
                rebased,
                {
                    BASE_NAME_ANNOTATION: str(new_ref) if isinstance(new_ref, Tag) else str(new_ref.context()),
                    BASE_DIGEST_ANNOTATION: str(new_desc.digest),
                },
            )
            return await self._write(await self._destination(orig_ref, dst, rebased), rebased)

        return await self._run(f"rebasing {orig}", run)

    async def _transform(
        self,
        context: str,
        src: str,
        dst: str,
        on_image: Callable[[Image], Awaitable[Image]],
        on_index: Optional[Callable[[ImageIndex], Awaitable[ImageIndex]]] = None,
    ) -> Hash:
        async def run() -> Hash:
            ref = self._ref(src)
            desc = await remote.get(ref, self.remote)
            result: Artifact
            if desc.is_index() and on_index is not None:
                result = await on_index(await desc.image_index())
            else:
                result = await on_image(await desc.image(self.options.platform))
            return await self._write(await self._destination(ref, dst, result), result)

        return await self._run(f"{context} {src}", run)

    async def flatten(self, src: str, dst: str = "") -> Hash:
        """Flatten an image, or every child of an index (restricted by platform)."""
        return await self._transform(
            "flattening",
            src,
            dst,
            mutate.flatten,
            lambda idx: mutate.flatten_index(idx, self.options.platform),
        )

    async def squash(self, src: str, dst: str = "") -> Hash:
        return await self._transform("squashing", src, dst, mutate.squash)

    async def optimize(self, src: str, dst: str, prioritize: Sequence[str] = ()) -> Hash:
        """Rewrite ``src`` as eStargz with ``prioritize`` first and push to ``dst``."""
        return await self._transform(
            "optimizing",
            src,
            dst,
            lambda img: optimize_image(img, prioritize),
            lambda idx: optimize_index(idx, prioritize, self.options.platform),
        )

    async def annotate(self, src: str, annotations: Mapping[str, str], dst: str = "") -> Hash:
        """Merge ``annotations`` into the manifest (image or index) of ``src``."""

        async def run() -> Hash:
            ref = self._ref(src)
            artifact = mutate.annotations(await self._artifact(ref), dict(annotations))
            return await self._write(await self._destination(ref, dst, artifact), artifact)

        return await self._run(f"annotating {src}", run)

    async def mutate(
        self,
        src: str,
        dst: str = "",
        *,
        labels: Optional[Mapping[str, str]] = None,
        annotations: Optional[Mapping[str, str]] = None,
        entrypoint: Optional[Sequence[str]] = None,
        cmd: Optional[Sequence[str]] = None,
        env: Optional[Sequence[str]] = None,
        user: Optional[str] = None,
        workdir: Optional[str] = None,
        append: Sequence[Union[str, Path]] = (),
    ) -> Hash:
        """Edit the config of ``src`` and push the result."""

        def edit(cf) -> None:
            cfg = cf.config
            cfg.labels = {**cfg.labels, **_key_values(labels)}
            if entrypoint is not None:
                cfg.entrypoint = list(entrypoint)
            if cmd is not None:
                cfg.cmd = list(cmd)
            if env:
                names = {e.split("=", 1)[0] for e in env}
                cfg.env = [e for e in cfg.env if e.split("=", 1)[0] not in names] + list(env)
            if user is not None:
                cfg.user = user
            if workdir is not None:
                cfg.working_dir = workdir

        async def on_image(img: Image) -> Image:
            if append:
                img = await self.append(img, append)
            result: Image = mutate.MutatedImage(img, config_edit=edit)
            if annotations:
                result = mutate.annotations(result, _key_values(annotations))
            return result

        return await self._transform("mutating", src, dst, on_image)

    async def attach(self, src: str, payload: bytes, media_type: str) -> Hash:
        """Push ``payload`` as the single layer of an artifact whose subject is ``src``.

        The artifact is pushed by digest with ``artifactType`` set to
        ``media_type``. A digest reference whose manifest does not exist yet
        is still used as the subject.
        """

        async def run() -> Hash:
            ref = self._ref(src)
            try:
                subject = await remote.head(ref, self.remote)
            except RegistryNotFoundError:
                if not isinstance(ref, Digest):
                    raise
                subject = Descriptor(media_type=media_types.OCI_MANIFEST_SCHEMA1, size=0, digest=ref.hash)
            base = mutate.MutatedImage(
                EMPTY_IMAGE,
                media_type=media_types.OCI_MANIFEST_SCHEMA1,
                config_media_type=media_types.OCI_CONFIG_JSON,
            )
            artifact = mutate.append_layers(base, StaticLayer(payload, media_type))
            artifact = mutate.artifact_type(mutate.subject(artifact, subject.copy(platform=None, annotations={})), media_type)
            return await self._write(ref.context().digest(await artifact.digest()), artifact)

        return await self._run(f"attaching to {src}", run)

    async def referrers(self, src: str, artifact_type: str = "") -> IndexManifest:
        async def run() -> IndexManifest:
            ref = self._ref(src)
            if not isinstance(ref, Digest):
                desc = await remote.head(ref, self.remote)
                ref = ref.context().digest(desc.digest)
            return await remote.referrers(ref, self.remote, artifact_type)

        return await self._run(f"listing referrers of {src}", run)

    async def index_filter(self, src: str, platforms: Sequence[Union[str, Platform]], dst: str = "") -> Hash:
        """Keep only the children of index ``src`` matching one of ``platforms``."""
        wanted = [Platform.parse(p) if isinstance(p, str) else p for p in platforms]

        def keep(desc: Descriptor) -> bool:
            return desc.platform is not None and any(desc.platform.satisfies(p) for p in wanted)

        async def run() -> Hash:
            ref = self._ref(src)
            idx = mutate.remove_platforms(await remote.index(ref, self.remote), keep)
            return await self._write(await self._destination(ref, dst, idx), idx)

        return await self._run(f"filtering index {src}", run)

    async def index_append(self, src: str, manifests: Sequence[str], dst: str = "") -> Hash:
        """Append ``manifests`` to index ``src`` (or an empty index) and push to ``dst``."""

        async def run() -> Hash:
            if not dst and not src:
                raise ValidationError("a destination is required when starting from an empty index")
            if src:
                base: ImageIndex = await remote.index(self._ref(src), self.remote)
            else:
                base = EMPTY_INDEX
            adds = []
            for m in manifests:
                desc = await remote.get(self._ref(m), self.remote)
                adds.append(mutate.IndexAddendum(add=await desc.artifact()))
            idx = mutate.append_manifests(base, *adds)
            return await self._write(await self._destination(self._ref(src or dst), dst, idx), idx)

        return await self._run(f"appending to index {src or dst}", run)

    # Local formats

    async def save(self, images: Mapping[str, Image], path: Union[str, Path]) -> None:
        """Write ``images`` (keyed by tag) as a Docker tarball."""
        tagged = {self._ref(name): img for name, img in images.items()}
        await self._run(f"saving {path}", write, path, tagged)

    async def save_legacy(self, images: Mapping[str, Image], path: Union[str, Path]) -> None:
        tagged = {}
        for name, img in images.items():
            ref = self._ref(name)
            if not isinstance(ref, Tag):
                raise ValidationError(f"legacy tarballs need tags, got {name}")
            tagged[ref] = img
        await self._run(f"saving {path}", write_legacy, path, tagged)

    async def save_oci(self, artifacts: Mapping[str, Artifact], path: Union[str, Path]) -> None:
        """Add ``artifacts`` to the OCI layout at ``path``, named by ``ref.name``."""

        async def run() -> None:
            layout = await Layout.create(path)
            for name, artifact in artifacts.items():
                await layout.append(artifact, {REF_NAME_ANNOTATION: name} if name else None)

        await self._run(f"saving {path}", run)

    async def load(self, path: Union[str, Path], tag: Optional[str] = None) -> Image:
        return await self._run(f"loading {path}", image_from_path, path, tag)

    async def load_oci(self, path: Union[str, Path]) -> ImageIndex:
        async def run() -> ImageIndex:
            return await (await Layout.open(path)).image_index()

        return await self._run(f"loading {path}", run)

    async def export(self, img: Image, out: BinaryIO) -> None:
        """Write the filesystem of ``img`` as a tar stream.

        An image whose only layer is not a filesystem layer is exported as
        that blob, unchanged.
        """

        async def run() -> None:
            layers = await img.layers()
            if len(layers) == 1 and not media_types.is_layer(await layers[0].media_type()):
                stream = layers[0].compressed()
            else:
                stream = mutate.extract(img)
            async for chunk in stream:
                out.write(chunk)

        await self._run("exporting filesystem", run)

    async def validate(self, artifact: Artifact, fast: bool = False) -> None:
        async def run() -> None:
            if isinstance(artifact, ImageIndex):
                await validate_index(artifact, fast)
            else:
                await validate_image(artifact, fast)

        await self._run("validating", run)

