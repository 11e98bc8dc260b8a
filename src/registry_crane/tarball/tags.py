"""Tag extraction from Docker tarballs."""

import logging
from pathlib import Path
from typing import Optional, Union

from ..exceptions import InvalidReferenceError, TarReadError
from ..name import Tag, parse_reference
from .reader import TarballReader

logger = logging.getLogger(__name__)


async def repo_tags_from_manifest(tar_path: Union[str, Path]) -> list[str]:
    """RepoTags of every image in ``manifest.json``, in archive order.

    Raises:
        TarReadError: If the archive or its manifest cannot be read
    """
    async with TarballReader(tar_path) as reader:
        entries = await reader.get_manifest()
    tags: list[str] = []
    for entry in entries:
        tags.extend(t for t in entry.repo_tags if t not in tags)
    return tags


async def repo_tags_from_repositories(tar_path: Union[str, Path]) -> list[str]:
    """``repo:tag`` pairs from the legacy ``repositories`` file (empty when absent)."""
    async with TarballReader(tar_path) as reader:
        repositories = await reader.get_repositories()
    return [
        f"{repo_name}:{tag_name}"
        for repo_name, tag_dict in repositories.items()
        if isinstance(tag_dict, dict)
        for tag_name in tag_dict
    ]


async def extract_original_tags(tar_path: Union[str, Path]) -> list[str]:
    """Docker tar 파일에서 원본 이미지 태그를 추출합니다.

    manifest.json의 RepoTags를 우선 사용하고, 비어 있으면 repositories
    파일의 저장소 태그를 사용합니다.

    Args:
        tar_path: Docker tar 파일 경로
            - 문자열 경로: "/Users/user/images/nginx.tar"
            - Path 객체: Path("./docker-exports/app.tar")

    Returns:
        list[str]: 원본 저장소 태그 목록 (예: ["nginx:alpine", "myapp:latest"]),
            태그가 없으면 빈 목록

    Raises:
        TarReadError: tar 파일을 읽을 수 없는 경우

    Examples:
        tags = await extract_original_tags("nginx.tar")
        for tag in tags:
            print(f"원본 태그: {tag}")
        # 출력: 원본 태그: nginx:alpine
    """
    try:
        tags = await repo_tags_from_manifest(tar_path)
    except TarReadError as e:
        logger.debug("no usable manifest.json in %s: %s", tar_path, e)
        tags = []
    if tags:
        return tags
    return await repo_tags_from_repositories(tar_path)


def parse_repository_tag(repo_tag: str, *, insecure: bool = False) -> Tag:
    """저장소:태그 문자열을 태그 참조로 파싱합니다.

    Args:
        repo_tag: 저장소 태그 문자열
            - 예: "nginx:alpine", "localhost:5000/myapp:latest"
            - 태그가 없으면 "latest"가 사용됩니다

    Returns:
        Tag: 레지스트리, 저장소, 태그를 담은 참조

    Raises:
        InvalidReferenceError: 태그 참조가 아닌 경우 (예: digest 참조)

    Examples:
        tag = parse_repository_tag("localhost:5000/myapp:latest")
        print(tag.repository.path, tag.tag)
        # 출력: myapp latest
    """
    ref = parse_reference(repo_tag, insecure=insecure)
    if not isinstance(ref, Tag):
        raise InvalidReferenceError(f"not a tag reference: {repo_tag}")
    return ref


async def get_primary_tag(tar_path: Union[str, Path]) -> Optional[Tag]:
    """tar 파일에서 주요(첫 번째) 태그를 가져옵니다.

    Args:
        tar_path: Docker tar 파일 경로

    Returns:
        Optional[Tag]: 첫 번째 원본 태그, 태그가 없거나 읽을 수 없으면 None

    Examples:
        primary = await get_primary_tag("nginx.tar")
        if primary:
            print(f"주요 태그: {primary}")
        else:
            print("태그를 찾을 수 없습니다")
    """
    try:
        tags = await extract_original_tags(tar_path)
    except TarReadError:
        return None
    for repo_tag in tags:
        try:
            return parse_repository_tag(repo_tag)
        except InvalidReferenceError:
            continue
    return None
