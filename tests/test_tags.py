"""Tests for tag extraction from Docker tar files."""

import json

import pytest

from registry_crane.exceptions import InvalidReferenceError, TarReadError
from registry_crane.tarball.tags import (
    extract_original_tags,
    get_primary_tag,
    parse_repository_tag,
    repo_tags_from_manifest,
    repo_tags_from_repositories,
)
from tests.helpers import create_docker_tar, create_raw_tar


@pytest.mark.asyncio
async def test_repo_tags_from_manifest(tmp_path):
    """Test extracting repo tags from manifest.json."""
    repo_tags = ["nginx:alpine", "nginx:latest", "my-nginx:v1.0"]
    tar_path = create_docker_tar(tmp_path / "image.tar", repo_tags)

    assert await repo_tags_from_manifest(tar_path) == repo_tags


@pytest.mark.asyncio
async def test_repo_tags_from_manifest_empty(tmp_path):
    """Test extracting from manifest with empty RepoTags."""
    tar_path = create_docker_tar(tmp_path / "image.tar", [])

    assert await repo_tags_from_manifest(tar_path) == []


@pytest.mark.asyncio
async def test_repo_tags_from_repositories(tmp_path):
    """Test extracting repo tags from the legacy repositories file."""
    repositories = {
        "nginx": {"alpine": "abc123", "latest": "def456"},
        "my-app": {"v1.0": "ghi789"},
    }
    tar_path = create_raw_tar(tmp_path / "legacy.tar", {"repositories": json.dumps(repositories).encode()})

    tags = await repo_tags_from_repositories(tar_path)
    assert set(tags) == {"nginx:alpine", "nginx:latest", "my-app:v1.0"}


@pytest.mark.asyncio
async def test_extract_original_tags_prefers_manifest(tmp_path):
    """Test that manifest.json wins over the repositories file."""
    tar_path = create_docker_tar(tmp_path / "image.tar", ["nginx:alpine"], repositories=True)

    assert await extract_original_tags(tar_path) == ["nginx:alpine"]


@pytest.mark.asyncio
async def test_extract_original_tags_falls_back_to_repositories(tmp_path):
    """Test an archive without manifest.json still yields its repositories tags."""
    tar_path = create_raw_tar(
        tmp_path / "legacy.tar",
        {"repositories": json.dumps({"busybox": {"1.36": "0" * 64}}).encode()},
    )

    assert await extract_original_tags(tar_path) == ["busybox:1.36"]


def test_parse_repository_tag():
    """Test parsing repository:tag strings into tag references."""
    tag = parse_repository_tag("nginx:alpine")
    assert tag.repository.path == "library/nginx"
    assert tag.tag == "alpine"

    assert parse_repository_tag("nginx").tag == "latest"

    tag = parse_repository_tag("localhost:5000/nginx:alpine")
    assert str(tag.registry) == "localhost:5000"
    assert tag.repository.path == "nginx"
    assert tag.tag == "alpine"

    tag = parse_repository_tag("registry.io:443/user/app:v1.0")
    assert str(tag.registry) == "registry.io:443"
    assert tag.repository.path == "user/app"
    assert tag.tag == "v1.0"


def test_parse_repository_tag_rejects_digest():
    """Test a digest reference is not accepted as a tag."""
    with pytest.raises(InvalidReferenceError):
        parse_repository_tag("nginx@sha256:" + "a" * 64)

    with pytest.raises(InvalidReferenceError):
        parse_repository_tag("app:")


@pytest.mark.asyncio
async def test_get_primary_tag(tmp_path):
    """Test getting the primary (first) tag from a tar file."""
    tar_path = create_docker_tar(tmp_path / "image.tar", ["nginx:alpine", "nginx:latest"])

    primary = await get_primary_tag(tar_path)
    assert primary is not None
    assert primary.repository.path == "library/nginx"
    assert primary.tag == "alpine"


@pytest.mark.asyncio
async def test_get_primary_tag_no_tags(tmp_path):
    """Test getting primary tag when no tags exist."""
    tar_path = create_docker_tar(tmp_path / "image.tar", [])

    assert await get_primary_tag(tar_path) is None


@pytest.mark.asyncio
async def test_get_primary_tag_unreadable(tmp_path):
    """Test an unreadable archive has no primary tag."""
    bogus = tmp_path / "bogus.tar"
    bogus.write_bytes(b"")

    assert await get_primary_tag(bogus) is None


@pytest.mark.asyncio
async def test_extract_tags_invalid_tar(tmp_path):
    """Test error handling for invalid tar files."""
    invalid_tar = tmp_path / "invalid.tar"
    invalid_tar.touch()

    with pytest.raises(TarReadError):
        await repo_tags_from_manifest(invalid_tar)


@pytest.mark.asyncio
async def test_extract_tags_missing_manifest(tmp_path):
    """Test error handling when manifest.json is missing."""
    tar_path = create_raw_tar(tmp_path / "other.tar", {"other.txt": b"other content"})

    with pytest.raises(TarReadError):
        await repo_tags_from_manifest(tar_path)


@pytest.mark.asyncio
async def test_extract_tags_missing_file(tmp_path):
    """Test a missing archive is reported as a read error."""
    with pytest.raises(TarReadError):
        await extract_original_tags(tmp_path / "absent.tar")
