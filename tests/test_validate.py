"""Tests for image and index validation."""

import pytest

from registry_crane import mutate
from registry_crane.exceptions import ValidationError
from registry_crane.image.random import random_image, random_index
from registry_crane.image.validate import validate_image, validate_index
from registry_crane.models import History


@pytest.mark.asyncio
async def test_random_image_is_valid():
    """Test a freshly built image passes full validation."""
    await validate_image(random_image(256, 3))


@pytest.mark.asyncio
async def test_random_index_is_valid():
    """Test every child of a built index passes."""
    await validate_index(random_index(64, 2, 2))


@pytest.mark.asyncio
async def test_layer_size_mismatch():
    """Test a manifest lying about layer size fails unless fast."""

    def shrink(manifest):
        manifest.layers[0].size = 1

    img = mutate.MutatedImage(random_image(128, 1), manifest_edit=shrink)
    await validate_image(img, fast=True)
    with pytest.raises(ValidationError, match="size"):
        await validate_image(img)


@pytest.mark.asyncio
async def test_history_mismatch():
    """Test history must account for every layer."""

    def extra_history(config):
        config.history.append(History(created_by="phantom"))

    img = mutate.MutatedImage(random_image(128, 1), config_edit=extra_history)
    with pytest.raises(ValidationError, match="history has 2 non-empty entries"):
        await validate_image(img, fast=True)


@pytest.mark.asyncio
async def test_index_child_descriptor_mismatch():
    """Test an index descriptor with the wrong size is reported."""
    idx = random_index(64, 1, 1)
    (desc,) = (await idx.index_manifest()).manifests
    wrong = desc.copy(size=desc.size + 1)
    broken = mutate.append_manifests(
        mutate.remove_manifests(idx, lambda d: True),
        mutate.IndexAddendum(descriptor=wrong),
    )
    with pytest.raises(ValidationError, match="does not match descriptor"):
        await validate_index(broken)
