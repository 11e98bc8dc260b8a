"""Tests for the OCI image layout."""

import json

import pytest

from registry_crane import media_types
from registry_crane.exceptions import DigestMismatchError, NotFoundError
from registry_crane.image.layer import compressed_bytes
from registry_crane.image.random import random_image, random_index
from registry_crane.layout import REF_NAME_ANNOTATION, Layout, ref_name_matcher
from registry_crane.utils.digest import Hash
from registry_crane.utils.gzip import iter_bytes


class TestLayout:
    """Blob storage and index.json bookkeeping."""

    @pytest.mark.asyncio
    async def test_create(self, tmp_path):
        """Test a new layout has its marker and an empty index."""
        layout = await Layout.create(tmp_path / "oci")
        assert json.loads((tmp_path / "oci" / "oci-layout").read_text()) == {"imageLayoutVersion": "1.0.0"}
        assert (await layout.index_manifest()).manifests == []

        reopened = await Layout.open(tmp_path / "oci")
        assert reopened.path == layout.path

    @pytest.mark.asyncio
    async def test_open_requires_marker(self, tmp_path):
        """Test opening a plain directory fails."""
        with pytest.raises(NotFoundError):
            await Layout.open(tmp_path)

    @pytest.mark.asyncio
    async def test_write_blob_verifies_digest(self, tmp_path):
        """Test blobs are stored by digest and mismatches leave nothing behind."""
        layout = await Layout.create(tmp_path)
        h = Hash.of(b"hello")
        await layout.write_blob(h, iter_bytes(b"hello"))
        assert (tmp_path / "blobs" / "sha256" / h.hex).read_bytes() == b"hello"
        assert await layout.read_blob(h) == b"hello"

        wrong = Hash.of(b"other")
        with pytest.raises(DigestMismatchError):
            await layout.write_blob(wrong, iter_bytes(b"hello"))
        assert not await layout.has_blob(wrong)
        assert sorted(p.name for p in (tmp_path / "blobs" / "sha256").iterdir()) == [h.hex]

        with pytest.raises(NotFoundError):
            await layout.read_blob(wrong)

    @pytest.mark.asyncio
    async def test_append_image(self, tmp_path):
        """Test an appended image reads back with identical content."""
        layout = await Layout.create(tmp_path)
        img = random_image(128, 2)
        desc = await layout.append(img, annotations={REF_NAME_ANNOTATION: "v1"})
        assert desc.digest == await img.digest()

        index = await layout.image_index()
        (entry,) = (await index.index_manifest()).manifests
        assert entry.annotations == {REF_NAME_ANNOTATION: "v1"}

        loaded = await index.image(entry.digest)
        assert await loaded.raw_manifest() == await img.raw_manifest()
        assert await loaded.raw_config_file() == await img.raw_config_file()
        for mine, theirs in zip(await img.layers(), await loaded.layers()):
            assert await theirs.diff_id() == await mine.diff_id()
            assert await compressed_bytes(theirs) == await compressed_bytes(mine)

    @pytest.mark.asyncio
    async def test_append_index(self, tmp_path):
        """Test an index is stored with every child."""
        layout = await Layout.create(tmp_path)
        idx = random_index(64, 1, 2)
        await layout.append(idx)

        (entry,) = (await layout.index_manifest()).manifests
        assert entry.media_type == media_types.OCI_IMAGE_INDEX
        stored = await (await layout.image_index()).image_index(entry.digest)
        for child in (await stored.index_manifest()).manifests:
            img = await stored.image(child.digest)
            assert await img.digest() == child.digest

    @pytest.mark.asyncio
    async def test_replace_and_remove(self, tmp_path):
        """Test entries can be swapped by reference name and removed."""
        layout = await Layout.create(tmp_path)
        first, second = random_image(32, 1), random_image(32, 1)
        await layout.append(first, annotations={REF_NAME_ANNOTATION: "latest"})
        await layout.replace(second, ref_name_matcher("latest"), {REF_NAME_ANNOTATION: "latest"})

        (entry,) = (await layout.index_manifest()).manifests
        assert entry.digest == await second.digest()
        # Blobs are never deleted.
        assert await layout.has_blob(await first.digest())

        await layout.remove_descriptors(ref_name_matcher("latest"))
        assert (await layout.index_manifest()).manifests == []
