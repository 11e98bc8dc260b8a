"""Tests for reading and writing Docker tarballs."""

import io
import json
import tarfile

import pytest

from registry_crane import media_types, mutate
from registry_crane.exceptions import NotFoundError, TarReadError
from registry_crane.image.empty import EMPTY_IMAGE
from registry_crane.image.layer import StaticLayer, layer_from_files
from registry_crane.image.random import random_image
from registry_crane.name import parse_reference
from registry_crane.tarball import (
    TarballReader,
    image_from_path,
    images_from_path,
    validate_docker_tar,
    write,
    write_legacy,
    write_to,
)
from tests.helpers import create_docker_tar, create_raw_tar, layer_tar, tar_names

TAG = "registry.example.com/app:1.0"


def read_member(path, name: str) -> bytes:
    with tarfile.open(path) as tar:
        fileobj = tar.extractfile(name)
        assert fileobj is not None
        return fileobj.read()


class TestWrite:
    """Writing images with ``write``."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        """Test an image written and read back keeps its digest."""
        img = random_image(256, 2)
        path = tmp_path / "image.tar"
        await write(path, {parse_reference(TAG): img})

        validate_docker_tar(path)
        loaded = await image_from_path(path, TAG)
        assert await loaded.digest() == await img.digest()
        assert await loaded.raw_config_file() == await img.raw_config_file()
        assert [await l.diff_id() for l in await loaded.layers()] == [await l.diff_id() for l in await img.layers()]

    @pytest.mark.asyncio
    async def test_layout(self, tmp_path):
        """Test members are named by digest and sorted."""
        img = random_image(64, 1)
        path = tmp_path / "image.tar"
        await write(path, {parse_reference(TAG): img})

        config_hex = (await img.config_name()).hex
        layer_hex = (await img.manifest()).layers[0].digest.hex
        names = tar_names(path.read_bytes())
        assert names == sorted(names)
        assert set(names) == {"manifest.json", "repositories", f"{config_hex}.json", f"{layer_hex}.tar.gz"}

        manifest = json.loads(read_member(path, "manifest.json"))
        assert manifest == [{"Config": f"{config_hex}.json", "RepoTags": [TAG], "Layers": [f"{layer_hex}.tar.gz"]}]
        repositories = json.loads(read_member(path, "repositories"))
        assert repositories == {"registry.example.com/app": {"1.0": layer_hex}}

    @pytest.mark.asyncio
    async def test_uncompressed_layer_suffix(self, tmp_path):
        """Test uncompressed layers are stored as plain .tar members."""
        plain = StaticLayer(layer_tar({"a.txt": "a"}), media_types.DOCKER_UNCOMPRESSED_LAYER)
        img = mutate.append_layers(EMPTY_IMAGE, plain, layer_from_files({"b.txt": "b"}))
        path = tmp_path / "mixed.tar"
        await write(path, {TAG: img})

        plain_hex, gzip_hex = (d.digest.hex for d in (await img.manifest()).layers)
        (entry,) = json.loads(read_member(path, "manifest.json"))
        assert entry["Layers"] == [f"{plain_hex}.tar", f"{gzip_hex}.tar.gz"]
        assert read_member(path, f"{plain_hex}.tar") == layer_tar({"a.txt": "a"})

    @pytest.mark.asyncio
    async def test_reproducible(self, tmp_path):
        """Test writing the same images twice gives identical archives."""
        img = random_image(64, 2)
        first, second = tmp_path / "a.tar", tmp_path / "b.tar"
        await write(first, {TAG: img})
        await write(second, {TAG: img})
        assert first.read_bytes() == second.read_bytes()

    @pytest.mark.asyncio
    async def test_shared_image_lists_every_tag(self, tmp_path):
        """Test two tags of one image share one manifest entry."""
        img = random_image(64, 1)
        other = random_image(64, 1)
        path = tmp_path / "multi.tar"
        await write(path, {"app:1": img, "app:latest": img, "other:1": other})

        manifest = json.loads(read_member(path, "manifest.json"))
        assert sorted(len(e["RepoTags"]) for e in manifest) == [1, 2]
        assert len(await images_from_path(path)) == 2

        with pytest.raises(NotFoundError):
            await image_from_path(path)
        with pytest.raises(NotFoundError):
            await image_from_path(path, "missing:tag")
        assert await (await image_from_path(path, "other:1")).digest() == await other.digest()

    @pytest.mark.asyncio
    async def test_write_to_stream(self):
        """Test writing to an open binary stream."""
        out = io.BytesIO()
        await write_to(out, {TAG: random_image(64, 1)})
        assert "manifest.json" in tar_names(out.getvalue())


class TestLegacy:
    """The pre-1.10 layout."""

    @pytest.mark.asyncio
    async def test_legacy_layout(self, tmp_path):
        """Test layer directories and repositories point at the top layer."""
        img = random_image(64, 2)
        tag = parse_reference(TAG)
        path = tmp_path / "legacy.tar"
        await write_legacy(path, {tag: img})

        names = tar_names(path.read_bytes())
        layer_dirs = {n.split("/")[0] for n in names if n.endswith("/layer.tar")}
        assert len(layer_dirs) == 2
        for layer_id in layer_dirs:
            assert f"{layer_id}/VERSION" in names
            assert f"{layer_id}/json" in names

        repositories = json.loads(read_member(path, "repositories"))
        top = repositories["registry.example.com/app"]["1.0"]
        top_json = json.loads(read_member(path, f"{top}/json"))
        assert top_json["id"] == top
        assert top_json["parent"] in layer_dirs
        assert top_json["architecture"] == "amd64"

    @pytest.mark.asyncio
    async def test_legacy_is_readable(self, tmp_path):
        """Test a legacy archive loads back with the same filesystem."""
        img = random_image(64, 2)
        path = tmp_path / "legacy.tar"
        await write_legacy(path, {parse_reference(TAG): img})

        loaded = await image_from_path(path, TAG)
        assert await loaded.raw_config_file() == await img.raw_config_file()
        assert [await l.diff_id() for l in await loaded.layers()] == [await l.diff_id() for l in await img.layers()]


class TestRead:
    """Reading ``docker save`` archives."""

    @pytest.mark.asyncio
    async def test_docker_save_archive(self, tmp_path):
        """Test uncompressed layers are exposed with their diffIDs."""
        path = create_docker_tar(tmp_path / "saved.tar", ["nginx:alpine"], layers=[{"a": "a"}, {"b": "b"}])
        img = await image_from_path(path)
        config = await img.config_file()
        layers = await img.layers()
        assert [await l.diff_id() for l in layers] == config.rootfs.diff_ids
        assert (await img.manifest()).layers[0].digest == await layers[0].digest()
        assert await img.layer_by_digest(await layers[1].digest()) is layers[1]

    @pytest.mark.asyncio
    async def test_reader_lists_members(self, tmp_path):
        """Test the reader exposes manifest entries and member names."""
        path = create_docker_tar(tmp_path / "saved.tar", ["nginx:alpine"], repositories=True)
        async with TarballReader(path) as reader:
            (entry,) = await reader.get_manifest()
            assert entry.repo_tags == ["nginx:alpine"]
            assert "repositories" in await reader.names()
            assert "nginx" in await reader.get_repositories()
            with pytest.raises(TarReadError):
                await reader.read_file("absent")

    @pytest.mark.asyncio
    async def test_malformed_manifest(self, tmp_path):
        """Test unreadable manifests raise a read error."""
        path = create_raw_tar(tmp_path / "bad.tar", {"manifest.json": b"{"})
        with pytest.raises(TarReadError):
            await image_from_path(path)

    def test_missing_file(self, tmp_path):
        """Test opening a missing archive fails immediately."""
        with pytest.raises(TarReadError):
            TarballReader(tmp_path / "absent.tar")
