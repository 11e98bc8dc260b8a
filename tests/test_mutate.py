"""Tests for image and index mutations."""

import io
import json
import tarfile
from datetime import datetime, timezone

import pytest

from registry_crane import media_types, mutate
from registry_crane.exceptions import NotBasedError, ValidationError
from registry_crane.image.empty import EMPTY_IMAGE, EMPTY_INDEX
from registry_crane.image.layer import StaticLayer, layer_from_files
from registry_crane.image.random import random_image, random_index
from registry_crane.models import Config, Descriptor, History, Platform
from registry_crane.utils.digest import Hash
from tests.helpers import tar_contents, tar_names


async def collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


def image_of(*layers):
    return mutate.append_layers(EMPTY_IMAGE, *(layer_from_files(files) for files in layers))


def platform_descriptor(value: str) -> Descriptor:
    # Only the platform of an override descriptor is used.
    return Descriptor("", 0, Hash.of(b""), platform=Platform.parse(value))


class TestExtract:
    """Merging layers into one filesystem."""

    @pytest.mark.asyncio
    async def test_upper_layer_wins(self):
        """Test a path written twice keeps the upper content."""
        img = image_of({"a.txt": "old", "b.txt": "b"}, {"a.txt": "new"})
        contents = tar_contents(await collect(mutate.extract(img)))
        assert contents == {"b.txt": b"b", "a.txt": b"new"}

    @pytest.mark.asyncio
    async def test_whiteouts(self):
        """Test whiteout and opaque markers hide lower entries."""
        img = image_of(
            {"a.txt": "a", "dir/x": "x", "gone/y": "y", "keep/z": "z"},
            {
                ".wh.a.txt": "",
                "dir/.wh..wh..opq": "",
                "dir/new": "n",
                ".wh.gone": "",
            },
        )
        names = tar_names(await collect(mutate.extract(img)))
        assert names == ["keep/z", "dir/new"]

    @pytest.mark.asyncio
    async def test_whiteout_only_affects_lower_layers(self):
        """Test a whiteout does not hide a file added later."""
        img = image_of({"a.txt": "a"}, {".wh.a.txt": ""}, {"a.txt": "again"})
        contents = tar_contents(await collect(mutate.extract(img)))
        assert contents == {"a.txt": b"again"}

    @pytest.mark.asyncio
    async def test_deterministic(self):
        """Test extracting twice yields identical bytes."""
        img = image_of({"x": "1"}, {"y": "2"})
        assert await collect(mutate.extract(img)) == await collect(mutate.extract(img))


class TestAppend:
    """Appending layers, config and annotations."""

    @pytest.mark.asyncio
    async def test_append_layers(self):
        """Test layers, diffIDs and history grow together."""
        layers = [layer_from_files({"a": "a"}), layer_from_files({"b": "b"})]
        img = mutate.append_layers(EMPTY_IMAGE, *layers)

        manifest = await img.manifest()
        config = await img.config_file()
        assert [d.digest for d in manifest.layers] == [await l.digest() for l in layers]
        assert config.rootfs.diff_ids == [await l.diff_id() for l in layers]
        assert [h.created_by for h in config.history] == [mutate.APPEND_CREATED_BY] * 2
        assert manifest.config.digest == Hash.of(await img.raw_config_file())
        assert await img.layer_by_digest(manifest.layers[1].digest) is layers[1]

    @pytest.mark.asyncio
    async def test_base_is_unchanged(self):
        """Test mutation never touches the input image."""
        base = image_of({"a": "a"})
        before = await base.raw_manifest()
        mutate.append_layers(base, layer_from_files({"b": "b"}))
        mutate.annotations(base, {"k": "v"})
        assert await base.raw_manifest() == before

    @pytest.mark.asyncio
    async def test_empty_layer_history(self):
        """Test a layer-less addendum only adds a history entry."""
        img = mutate.append(
            image_of({"a": "a"}),
            mutate.Addendum(history=History(created_by="ENV A=1", empty_layer=True)),
        )
        config = await img.config_file()
        assert len((await img.manifest()).layers) == 1
        assert config.history[-1].empty_layer

        with pytest.raises(ValidationError):
            mutate.append(EMPTY_IMAGE, mutate.Addendum())

    @pytest.mark.asyncio
    async def test_addendum_annotations(self):
        """Test per-layer annotations and media type overrides."""
        img = mutate.append(
            EMPTY_IMAGE,
            mutate.Addendum(
                layer=layer_from_files({"a": "a"}),
                annotations={"org.example": "yes"},
                media_type=media_types.OCI_LAYER,
            ),
        )
        (desc,) = (await img.manifest()).layers
        assert desc.annotations == {"org.example": "yes"}
        assert desc.media_type == media_types.OCI_LAYER

    @pytest.mark.asyncio
    async def test_config(self):
        """Test replacing the run config keeps rootfs."""
        img = image_of({"a": "a"})
        changed = mutate.config(img, Config(env=["A=1"], entrypoint=["/bin/sh"]))
        config = await changed.config_file()
        assert config.config.env == ["A=1"]
        assert config.rootfs.diff_ids == (await img.config_file()).rootfs.diff_ids
        assert await changed.digest() != await img.digest()

    @pytest.mark.asyncio
    async def test_annotations_merge(self):
        """Test new annotation keys win over existing ones."""
        img = mutate.annotations(image_of({"a": "a"}), {"a": "1", "keep": "x"})
        img = mutate.annotations(img, {"a": "2", "b": "3"})
        assert (await img.manifest()).annotations == {"a": "2", "keep": "x", "b": "3"}

    @pytest.mark.asyncio
    async def test_subject_and_artifact_type(self):
        """Test subject and artifactType are set on the manifest."""
        base = image_of({"a": "a"})
        img = mutate.artifact_type(mutate.subject(EMPTY_IMAGE, await base.descriptor()), "application/vnd.x")
        manifest = await img.manifest()
        assert manifest.subject is not None
        assert manifest.subject.digest == await base.digest()
        assert manifest.artifact_type == "application/vnd.x"

    @pytest.mark.asyncio
    async def test_oci_image(self):
        """Test conversion to OCI types keeps layer bytes."""
        img = image_of({"a": "a"})
        oci = mutate.oci_image(img)
        manifest = await oci.manifest()
        assert manifest.media_type == media_types.OCI_MANIFEST_SCHEMA1
        assert manifest.config.media_type == media_types.OCI_CONFIG_JSON
        assert manifest.layers[0].media_type == media_types.OCI_LAYER
        assert manifest.layers[0].digest == (await img.manifest()).layers[0].digest
        (layer,) = await oci.layers()
        assert await layer.media_type() == media_types.OCI_LAYER


class TestFlatten:
    """Flatten, partial flatten and squash."""

    @pytest.mark.asyncio
    async def test_flatten_history(self):
        """Test the flattened history records the original entries."""
        img = image_of({"a": "a"}, {"b": "b"}, {"c": "c"})
        flat = await mutate.flatten(img)
        (entry,) = (await flat.config_file()).history
        assert entry.created_by == mutate.FLATTEN_CREATED_BY
        assert len(json.loads(entry.comment)) == 3
        assert tar_contents(await collect(mutate.extract(flat))) == {"a": b"a", "b": b"b", "c": b"c"}

    @pytest.mark.asyncio
    async def test_partial_flatten(self):
        """Test only the top layers are merged."""
        img = image_of({"a": "a"}, {"b": "b"}, {"c": "c"})
        partial = await mutate.partial_flatten(img, 2)

        manifest = await partial.manifest()
        assert len(manifest.layers) == 2
        assert manifest.layers[0].digest == (await img.manifest()).layers[0].digest
        history = (await partial.config_file()).history
        assert [h.created_by for h in history] == [mutate.APPEND_CREATED_BY, mutate.FLATTEN_CREATED_BY]
        assert len(json.loads(history[1].comment)) == 2

        with pytest.raises(ValidationError):
            await mutate.partial_flatten(img, 0)
        with pytest.raises(ValidationError):
            await mutate.partial_flatten(img, 4)

    @pytest.mark.asyncio
    async def test_squash_keeps_history(self):
        """Test squash marks all but the last entry as empty."""
        img = image_of({"a": "a"}, {"b": "b"})
        squashed = await mutate.squash(img)
        assert len((await squashed.manifest()).layers) == 1
        history = (await squashed.config_file()).history
        assert [h.empty_layer for h in history] == [True, False]

    @pytest.mark.asyncio
    async def test_flatten_index(self):
        """Test only children matching the platform are flattened."""
        amd = image_of({"a": "a"}, {"b": "b"})
        arm = image_of({"c": "c"}, {"d": "d"})
        idx = mutate.append_manifests(
            EMPTY_INDEX,
            mutate.IndexAddendum(add=amd, descriptor=platform_descriptor("linux/amd64")),
            mutate.IndexAddendum(add=arm, descriptor=platform_descriptor("linux/arm64")),
        )
        flat = await mutate.flatten_index(idx, Platform.parse("linux/arm64"))
        amd_desc, arm_desc = (await flat.index_manifest()).manifests
        assert amd_desc.digest == await amd.digest()
        assert arm_desc.digest != await arm.digest()
        assert str(arm_desc.platform) == "linux/arm64"
        assert len((await (await flat.image(arm_desc.digest)).manifest()).layers) == 1


class TestRebase:
    """Rebase failure modes."""

    @pytest.mark.asyncio
    async def test_not_based(self):
        """Test rebasing onto a base the image does not start with fails."""
        img = image_of({"a": "a"}, {"b": "b"})
        with pytest.raises(NotBasedError):
            await mutate.rebase(img, image_of({"z": "z"}), image_of({"y": "y"}))

    @pytest.mark.asyncio
    async def test_platform_from_new_base(self):
        """Test os and architecture come from the new base."""
        old = image_of({"a": "a"})
        img = mutate.append_layers(old, layer_from_files({"app": "app"}))
        img = mutate.config(img, Config(cmd=["run"]))
        new = image_of({"n": "n"})
        new_cfg = await new.config_file()
        new_cfg.architecture, new_cfg.os = "arm64", "linux"
        new = mutate.config_file(new, new_cfg)

        rebased = await mutate.rebase(img, old, new)
        config = await rebased.config_file()
        assert (config.os, config.architecture) == ("linux", "arm64")
        assert config.config.cmd == ["run"]
        assert len(config.rootfs.diff_ids) == 2


class TestTimestamps:
    """Rewriting times for reproducible digests."""

    @pytest.mark.asyncio
    async def test_created_at(self):
        """Test only the config creation time changes."""
        img = image_of({"a": "a"})
        when = datetime(2020, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
        stamped = mutate.created_at(img, when)
        assert (await stamped.config_file()).created == "2020-05-06T07:08:09Z"
        assert (await stamped.manifest()).layers == (await img.manifest()).layers

    @pytest.mark.asyncio
    async def test_time_sets_layer_mtimes(self):
        """Test every layer entry takes the new mtime."""
        img = mutate.append_layers(EMPTY_IMAGE, layer_from_files({"a": "a"}, mtime=1234))
        when = datetime(2021, 1, 1, tzinfo=timezone.utc)
        stamped = await mutate.time(img, when)
        data = await collect(mutate.extract(stamped))
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            assert {m.mtime for m in tar.getmembers()} == {int(when.timestamp())}

    @pytest.mark.asyncio
    async def test_canonical_is_reproducible(self):
        """Test equal content with different timestamps canonicalizes to one digest."""
        one = mutate.append_layers(EMPTY_IMAGE, layer_from_files({"a": "a"}, mtime=100))
        two = mutate.append_layers(EMPTY_IMAGE, layer_from_files({"a": "a"}, mtime=200))
        two = mutate.created_at(two, datetime.now(timezone.utc))
        assert await one.digest() != await two.digest()

        first, second = await mutate.canonical(one), await mutate.canonical(two)
        assert await first.digest() == await second.digest()
        assert (await first.config_file()).created == "1970-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_time_keeps_artifact_payloads(self):
        """Test blobs that are not tar layers pass through unchanged."""
        note = StaticLayer(b"reviewed", "text/plain")
        artifact = mutate.append(EMPTY_IMAGE, mutate.Addendum(layer=note))
        stamped = await mutate.time(artifact, datetime(2021, 1, 1, tzinfo=timezone.utc))
        (desc,) = (await stamped.manifest()).layers
        assert desc.digest == Hash.of(b"reviewed")
        assert desc.media_type == "text/plain"
        assert (await stamped.config_file()).created == "2021-01-01T00:00:00Z"


class TestIndex:
    """Index construction and editing."""

    @pytest.mark.asyncio
    async def test_random_index(self):
        """Test children are addressable and carry platforms."""
        idx = random_index(64, 1, 3)
        manifest = await idx.index_manifest()
        assert len(manifest.manifests) == 3
        for desc in manifest.manifests:
            child = await idx.image(desc.digest)
            assert await child.digest() == desc.digest
            assert str(desc.platform) == "linux/amd64"

    @pytest.mark.asyncio
    async def test_remove_manifests(self):
        """Test children matching the predicate are dropped."""
        keep, drop = random_image(32, 1), random_image(32, 1)
        idx = mutate.append_manifests(
            EMPTY_INDEX, mutate.IndexAddendum(add=keep), mutate.IndexAddendum(add=drop)
        )
        drop_digest = await drop.digest()
        pruned = mutate.remove_manifests(idx, lambda d: d.digest == drop_digest)
        assert [d.digest for d in (await pruned.index_manifest()).manifests] == [await keep.digest()]

    @pytest.mark.asyncio
    async def test_artifact_type_from_config(self):
        """Test a child with a non-image config type reports it as artifactType."""
        artifact = mutate.config_media_type(
            mutate.media_type(EMPTY_IMAGE, media_types.OCI_MANIFEST_SCHEMA1), "application/vnd.example.sbom"
        )
        idx = mutate.append_manifests(EMPTY_INDEX, mutate.IndexAddendum(add=artifact))
        (desc,) = (await idx.index_manifest()).manifests
        assert desc.artifact_type == "application/vnd.example.sbom"
        assert desc.platform is None

    @pytest.mark.asyncio
    async def test_oci_index(self):
        """Test every child is converted to OCI media types."""
        docker = random_image(32, 1)
        idx = mutate.append_manifests(EMPTY_INDEX, mutate.IndexAddendum(add=docker))
        converted = await mutate.oci_index(idx)
        (desc,) = (await converted.index_manifest()).manifests
        assert desc.media_type == media_types.OCI_MANIFEST_SCHEMA1
        child = await converted.image(desc.digest)
        assert (await child.manifest()).config.media_type == media_types.OCI_CONFIG_JSON
