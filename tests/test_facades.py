"""Tests for the functional registry and push helpers."""

import pytest

from registry_crane.exceptions import NotFoundError, RegistryConnectionError, RegistryError, TarReadError
from registry_crane.name import Registry
from registry_crane.push import (
    check_registry_connectivity,
    push_docker_tar,
    push_docker_tar_with_all_original_tags,
    push_docker_tar_with_original_tags,
)
from registry_crane.registry import (
    delete_image,
    delete_image_by_digest,
    get_image_info,
    get_manifest,
    get_uncompressed_size,
    list_repositories,
    list_tags,
    registry_from_url,
)
from tests.helpers import create_docker_tar, layer_tar

LAYERS = [{"etc/motd": "welcome\n"}, {"app/main.py": "print('hi')\n"}]


def test_registry_from_url():
    """Test URLs and bare hosts become registries."""
    assert registry_from_url("http://localhost:15000") == Registry("localhost:15000", insecure=True)
    assert registry_from_url("https://registry.example.com/") == Registry("registry.example.com")
    assert registry_from_url("registry.example.com/") == Registry("registry.example.com")
    with pytest.raises(RegistryError):
        registry_from_url("http://")


@pytest.mark.asyncio
async def test_connectivity(registry):
    """Test a running registry answers and a closed port raises."""
    assert await check_registry_connectivity(f"http://{registry}")
    with pytest.raises(RegistryConnectionError):
        await check_registry_connectivity("http://127.0.0.1:1", timeout=2)


@pytest.mark.asyncio
async def test_push_with_original_tags(registry, tmp_path):
    """Test the first RepoTag names the pushed image."""
    tar = create_docker_tar(tmp_path / "nginx.tar", ["docker.io/library/nginx:alpine"], layers=LAYERS)
    url = f"http://{registry}"
    digest = await push_docker_tar_with_original_tags(tar, url)

    assert await list_repositories(url) == ["library/nginx"]
    assert await list_tags(url, "library/nginx") == ["alpine"]
    manifest = await get_manifest(url, "library/nginx", "alpine")
    assert manifest["digest"] == digest
    assert len(manifest["layers"]) == 2


@pytest.mark.asyncio
async def test_push_with_overrides(registry, tmp_path):
    """Test repository and tag arguments win over RepoTags."""
    tar = create_docker_tar(tmp_path / "app.tar", ["app:1"], layers=LAYERS)
    url = f"http://{registry}"
    seen = []
    digest = await push_docker_tar(
        tar, url, repository="team/app", tag="v2", progress_callback=lambda done, total, msg: seen.append(msg)
    )
    assert await list_tags(url, "team/app") == ["v2"]
    assert seen

    by_digest = await get_manifest(url, "team/app", digest)
    assert by_digest["digest"] == digest


@pytest.mark.asyncio
async def test_push_without_repository(registry, tmp_path):
    """Test an untagged archive needs an explicit repository."""
    tar = create_docker_tar(tmp_path / "untagged.tar", [])
    with pytest.raises(RegistryError, match="No repository specified"):
        await push_docker_tar(tar, f"http://{registry}")
    await push_docker_tar(tar, f"http://{registry}", repository="named")
    assert await list_tags(f"http://{registry}", "named") == ["latest"]


@pytest.mark.asyncio
async def test_push_missing_file(registry, tmp_path):
    """Test a missing archive fails before any request."""
    with pytest.raises(TarReadError):
        await push_docker_tar(tmp_path / "absent.tar", f"http://{registry}")


@pytest.mark.asyncio
async def test_push_all_original_tags(registry, tmp_path):
    """Test every RepoTag is pushed onto the target registry."""
    tar = create_docker_tar(
        tmp_path / "multi.tar", ["myapp:latest", "myapp:v1.0", "registry.io/myapp:prod"], layers=LAYERS
    )
    url = f"http://{registry}"
    digests = await push_docker_tar_with_all_original_tags(tar, url)
    assert len(digests) == 3 and len(set(digests)) == 1
    assert await list_tags(url, "myapp") == ["latest", "prod", "v1.0"]

    untagged = create_docker_tar(tmp_path / "untagged.tar", [])
    with pytest.raises(RegistryError, match="No original tags"):
        await push_docker_tar_with_all_original_tags(untagged, url)


@pytest.mark.asyncio
async def test_image_info_and_size(registry, tmp_path):
    """Test image details and the uncompressed size."""
    tar = create_docker_tar(tmp_path / "app.tar", ["app:1"], layers=LAYERS, architecture="arm64")
    url = f"http://{registry}"
    digest = await push_docker_tar(tar, url)

    info = await get_image_info(url, "app", "1")
    assert info["digest"] == digest
    assert (info["architecture"], info["os"]) == ("arm64", "linux")
    assert len(info["layers"]) == 2
    assert info["size"] == sum(layer["size"] for layer in info["layers"]) + (await get_manifest(url, "app", "1"))[
        "config"
    ]["size"]

    expected = sum(len(layer_tar(files)) for files in LAYERS)
    assert await get_uncompressed_size(url, "app", "1") == expected


@pytest.mark.asyncio
async def test_delete(registry, tmp_path):
    """Test tag deletion keeps the manifest; digest deletion removes it."""
    tar = create_docker_tar(tmp_path / "app.tar", ["app:1", "app:2"], layers=LAYERS)
    url = f"http://{registry}"
    digests = await push_docker_tar_with_all_original_tags(tar, url)

    assert await delete_image(url, "app", "1")
    assert await list_tags(url, "app") == ["2"]
    assert (await get_manifest(url, "app", digests[0]))["digest"] == digests[0]

    assert await delete_image_by_digest(url, "app", digests[0])
    with pytest.raises(NotFoundError):
        await get_manifest(url, "app", "2")
    with pytest.raises(NotFoundError):
        await delete_image(url, "app", "missing")
