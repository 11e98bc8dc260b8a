"""Async functional style push operations for Docker tarballs."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from . import remote
from .core.connectivity import check_connectivity
from .core.types import TransportConfig
from .exceptions import InvalidReferenceError, RegistryConnectionError, RegistryError
from .name import Registry, Repository, Tag, parse_reference
from .registry import registry_from_url
from .remote.options import ProgressCallback, RemoteOptions
from .tarball import extract_original_tags, image_from_path, validate_docker_tar

logger = logging.getLogger(__name__)


def _retarget(repo_tag: str, registry: Registry) -> Optional[Tag]:
    """Move ``repo:tag`` from its original registry onto ``registry``."""
    try:
        ref = parse_reference(repo_tag, default_registry=registry.host)
    except InvalidReferenceError:
        logger.warning("ignoring unparsable RepoTag %r", repo_tag)
        return None
    if not isinstance(ref, Tag):
        return None
    return Tag(Repository(registry, ref.repository.path), ref.tag)


async def _open(registry: Registry, timeout: float, progress_callback: Optional[ProgressCallback]) -> RemoteOptions:
    options = RemoteOptions(
        config=TransportConfig(timeout=timeout, insecure=registry.insecure),
        progress_callback=progress_callback,
    )
    reachable = await check_connectivity(registry, options.config, await options.get_session())
    if not reachable:
        await options.close()
        raise RegistryConnectionError(f"{registry} does not answer as a v2 registry")
    return options


async def check_registry_connectivity(registry_url: str, timeout: int = 10) -> bool:
    """레지스트리 연결 상태를 확인합니다.

    ``/v2/`` 엔드포인트가 200 또는 401(인증 필요)로 응답하면 접근 가능한
    것으로 판단합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000", "https://registry.example.com")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        bool: 레지스트리가 v2 API로 응답하면 True

    Raises:
        RegistryConnectionError: 레지스트리에 연결할 수 없는 경우

    Examples:
        accessible = await check_registry_connectivity("http://localhost:15000")
    """
    registry = registry_from_url(registry_url)
    return await check_connectivity(registry, TransportConfig(timeout=timeout, insecure=registry.insecure))


async def push_docker_tar(
    tar_path: Union[str, Path],
    registry_url: str,
    repository: Optional[str] = None,
    tag: Optional[str] = None,
    timeout: int = 300,
    progress_callback: Optional[ProgressCallback] = None,
) -> str:
    """Docker tar 파일을 레지스트리에 비동기로 푸시합니다.

    저장소명이나 태그를 지정하지 않으면 tar 파일의 첫 번째 RepoTags 항목에서
    가져옵니다. 원본 레지스트리 호스트는 버리고 저장소 경로만 사용합니다.
    레지스트리에 이미 있는 블롭은 다시 업로드하지 않습니다.

    Args:
        tar_path: ``docker save``로 만든 tar 파일 경로 (상대/절대 경로)
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (선택사항, 예: "mycompany/myapp")
        tag: 이미지 태그 (선택사항, 기본값은 원본 태그 또는 "latest")
        timeout: 요청 타임아웃 (초, 기본값: 300초)
        progress_callback: ``(업로드한 바이트, 전체 바이트, 메시지)``를 받는
            콜백 (동기/비동기 모두 가능)

    Returns:
        str: 푸시된 매니페스트 digest (예: "sha256:abc123...")

    Raises:
        TarReadError: tar 파일이 없거나 읽을 수 없는 경우
        ValidationError: tar 파일 구조가 올바르지 않은 경우
        RegistryError: 푸시 실패 또는 저장소명을 결정할 수 없는 경우

    Examples:
        # tar 파일의 원본 저장소명과 태그 사용
        await push_docker_tar("nginx.tar", "http://localhost:15000")

        # 저장소명과 태그 모두 덮어쓰기
        await push_docker_tar("nginx.tar", "http://localhost:15000", repository="my-nginx", tag="v1.0")
    """
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, validate_docker_tar, tar_path)

    registry = registry_from_url(registry_url)
    original_tag: Optional[str] = None
    original: Optional[Tag] = None
    for repo_tag in await extract_original_tags(tar_path):
        original = _retarget(repo_tag, registry)
        if original is not None:
            original_tag = repo_tag
            break

    final_repository = repository or (original.repository.path if original else None)
    if not final_repository:
        raise RegistryError(
            "No repository specified and could not extract repository from tar file. "
            "Please provide a repository name or ensure the tar file contains valid repository tags."
        )
    final_tag = tag or (original.tag if original else "latest")
    target = Tag(Repository(registry, final_repository), final_tag)

    img = await image_from_path(tar_path, original_tag)
    options = await _open(registry, timeout, progress_callback)
    async with options:
        digest = await remote.write(target, img, options)
    logger.info("pushed %s as %s", tar_path, target)
    return str(digest)


async def push_docker_tar_with_original_tags(
    tar_path: Union[str, Path], registry_url: str, timeout: int = 300
) -> str:
    """Docker tar 파일을 원본 저장소명과 태그로 푸시합니다.

    ``push_docker_tar``에서 저장소명과 태그를 모두 tar 파일에서 가져오도록
    고정한 편의 함수입니다.

    Returns:
        str: 푸시된 매니페스트 digest
    """
    return await push_docker_tar(tar_path, registry_url, repository=None, tag=None, timeout=timeout)


async def push_docker_tar_with_all_original_tags(
    tar_path: Union[str, Path], registry_url: str, timeout: int = 300
) -> list[str]:
    """Docker tar 파일의 모든 원본 태그로 이미지를 푸시합니다.

    tar 파일에 여러 이미지가 들어 있으면 각 태그는 자신의 이미지로
    푸시됩니다. 같은 블롭은 한 번만 업로드됩니다.

    Args:
        tar_path: Docker tar 파일 경로
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        timeout: 요청 타임아웃 (초, 기본값: 300초)

    Returns:
        list[str]: RepoTags 순서대로의 매니페스트 digest 목록

    Raises:
        RegistryError: 원본 태그가 없거나 푸시가 실패한 경우

    Note:
        원본 tar 파일에 ['myapp:latest', 'myapp:v1.0', 'registry.io/myapp:prod'] 태그가 있다면
        localhost 레지스트리의 myapp:latest, myapp:v1.0, myapp:prod 로 푸시됩니다.
    """
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, validate_docker_tar, tar_path)

    registry = registry_from_url(registry_url)
    targets = []
    for repo_tag in await extract_original_tags(tar_path):
        target = _retarget(repo_tag, registry)
        if target is not None:
            targets.append((repo_tag, target))
    if not targets:
        raise RegistryError(
            "No original tags found in tar file. Please ensure the tar file contains valid repository tags."
        )

    digests = []
    options = await _open(registry, timeout, None)
    async with options:
        for repo_tag, target in targets:
            img = await image_from_path(tar_path, repo_tag)
            digests.append(str(await remote.write(target, img, options)))
    return digests
