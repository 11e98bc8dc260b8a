"""Async functional registry operations."""

import json
from typing import Any
from urllib.parse import urlsplit

from . import remote
from .core.types import TransportConfig
from .exceptions import RegistryError
from .image.base import uncompressed_size
from .name import Digest, Registry, Repository, Tag
from .remote.options import RemoteOptions


def registry_from_url(registry_url: str) -> Registry:
    """``http://host:port`` 또는 ``host:port`` 형태의 URL을 Registry로 변환합니다.

    ``http://`` 스킴은 insecure(평문 HTTP) 레지스트리로 취급합니다.
    """
    if "://" not in registry_url:
        return Registry(registry_url.rstrip("/"))
    parts = urlsplit(registry_url)
    if not parts.netloc:
        raise RegistryError(f"Invalid registry URL: {registry_url}")
    return Registry(parts.netloc, insecure=parts.scheme == "http")


def _options(registry: Registry, timeout: float) -> RemoteOptions:
    return RemoteOptions(config=TransportConfig(timeout=timeout, insecure=registry.insecure))


async def list_repositories(registry_url: str, timeout: int = 10) -> list[str]:
    """레지스트리의 모든 저장소 목록을 조회합니다.

    카탈로그가 여러 페이지로 나뉘어 있으면 ``Link`` 헤더를 따라 모두 읽습니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        list[str]: 저장소 이름 목록 (예: ["nginx", "myapp", "test/image"])

    Raises:
        RegistryError: 요청 실패 시

    Examples:
        repos = await list_repositories("http://localhost:15000")
        print(f"발견된 저장소: {repos}")
    """
    registry = registry_from_url(registry_url)
    async with _options(registry, timeout) as options:
        return await remote.catalog(registry, options)


async def list_tags(registry_url: str, repository: str, timeout: int = 10) -> list[str]:
    """특정 저장소의 모든 태그 목록을 조회합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        list[str]: 태그 이름 목록 (예: ["latest", "v1.0.0", "alpine"])

    Raises:
        RegistryError: 요청 실패 시
    """
    registry = registry_from_url(registry_url)
    async with _options(registry, timeout) as options:
        return await remote.list_tags(Repository(registry, repository), options)


async def get_manifest(registry_url: str, repository: str, tag: str, timeout: int = 10) -> dict[str, Any]:
    """이미지(또는 인덱스)의 매니페스트를 조회합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")
        tag: 태그 이름 또는 digest (예: "latest", "sha256:abc123...")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        dict[str, Any]: 매니페스트 딕셔너리. ``digest`` 키에 매니페스트 digest가
        추가됩니다.

    Raises:
        NotFoundError: 매니페스트가 없는 경우
        RegistryError: 요청 실패 시

    Examples:
        manifest = await get_manifest("http://localhost:15000", "nginx", "latest")
        print(f"스키마 버전: {manifest['schemaVersion']}")
    """
    registry = registry_from_url(registry_url)
    repo = Repository(registry, repository)
    ref = Digest(repo, tag) if ":" in tag else Tag(repo, tag)
    async with _options(registry, timeout) as options:
        desc = await remote.get(ref, options)
    manifest = json.loads(desc.manifest)
    manifest["digest"] = str(desc.digest)
    return manifest


async def get_image_info(registry_url: str, repository: str, tag: str, timeout: int = 10) -> dict[str, Any]:
    """이미지의 상세 정보를 조회합니다.

    인덱스를 가리키는 태그는 linux/amd64 이미지로 해석합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")
        tag: 태그 이름 (예: "latest", "v1.0.0")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        dict[str, Any]: digest, 아키텍처, OS, 생성일, 레이어 목록과 압축 크기 합계

    Raises:
        RegistryError: 요청 실패 시

    Examples:
        info = await get_image_info("http://localhost:15000", "nginx", "latest")
        print(f"아키텍처: {info['architecture']}, 크기: {info['size']:,} bytes")
    """
    registry = registry_from_url(registry_url)
    async with _options(registry, timeout) as options:
        img = await remote.image(Tag(Repository(registry, repository), tag), options)
        manifest = await img.manifest()
        config = await img.config_file()
        return {
            "digest": str(await img.digest()),
            "media_type": await img.media_type(),
            "architecture": config.architecture,
            "os": config.os,
            "created": config.created,
            "config_digest": str(manifest.config.digest),
            "layers": [{"digest": str(d.digest), "size": d.size, "media_type": d.media_type} for d in manifest.layers],
            "size": manifest.config.size + sum(d.size for d in manifest.layers),
        }


async def get_uncompressed_size(registry_url: str, repository: str, tag: str, timeout: int = 300) -> int:
    """모든 레이어를 내려받아 압축 해제된 크기의 합을 계산합니다."""
    registry = registry_from_url(registry_url)
    async with _options(registry, timeout) as options:
        img = await remote.image(Tag(Repository(registry, repository), tag), options)
        return await uncompressed_size(img)


async def delete_image(registry_url: str, repository: str, tag: str, timeout: int = 10) -> bool:
    """레지스트리에서 태그를 삭제합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")
        tag: 태그 이름 (예: "latest", "v1.0.0")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        bool: 삭제 성공 시 True

    Raises:
        NotFoundError: 태그가 없는 경우
        RegistryError: 삭제 실패 시

    Note:
        태그만 제거되며 매니페스트와 블롭은 digest로 계속 조회할 수 있습니다.
    """
    registry = registry_from_url(registry_url)
    async with _options(registry, timeout) as options:
        await remote.delete(Tag(Repository(registry, repository), tag), options)
    return True


async def delete_image_by_digest(registry_url: str, repository: str, digest: str, timeout: int = 10) -> bool:
    """매니페스트 digest로 이미지를 삭제합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")
        digest: 매니페스트 digest (예: "sha256:abc123...")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        bool: 삭제 성공 시 True

    Raises:
        InvalidReferenceError: digest 형식이 잘못된 경우
        RegistryError: 삭제 실패 시

    Note:
        해당 매니페스트를 가리키는 모든 태그도 함께 사라집니다.

    Examples:
        manifest = await get_manifest("http://localhost:15000", "nginx", "latest")
        await delete_image_by_digest("http://localhost:15000", "nginx", manifest["digest"])
    """
    registry = registry_from_url(registry_url)
    async with _options(registry, timeout) as options:
        await remote.delete(Digest(Repository(registry, repository), digest), options)
    return True
