"""Structural checks for Docker tarballs."""

import hashlib
import json
import tarfile
from pathlib import Path
from typing import Any, Union

from ..exceptions import TarReadError, ValidationError
from .reader import MANIFEST_FILE, TarballEntry


def _members(tar: tarfile.TarFile) -> set[str]:
    return {member.name for member in tar.getmembers()}


def _read_manifest(tar: tarfile.TarFile) -> list[dict[str, Any]]:
    fileobj = tar.extractfile(MANIFEST_FILE)
    if fileobj is None:
        raise ValidationError("manifest.json is not a regular file")
    try:
        data = json.loads(fileobj.read().decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Invalid JSON in manifest.json: {e}") from e
    if not isinstance(data, list) or not data:
        raise ValidationError("manifest.json must be a non-empty array")
    return data


def _config_matches_name(tar: tarfile.TarFile, config_path: str) -> bool:
    # Configs are named after their sha256: "<hex>.json" or "blobs/sha256/<hex>".
    stem = config_path.rsplit("/", 1)[-1]
    if stem.endswith(".json"):
        stem = stem[: -len(".json")]
    if len(stem) != 64:
        return True
    fileobj = tar.extractfile(config_path)
    if fileobj is None:
        return False
    return hashlib.sha256(fileobj.read()).hexdigest() == stem


def entry_problems(tar: tarfile.TarFile, entry: TarballEntry, members: set[str]) -> list[str]:
    problems = []
    if entry.config not in members:
        problems.append(f"config {entry.config} is missing")
    elif not _config_matches_name(tar, entry.config):
        problems.append(f"config {entry.config} does not match its digest")
    problems.extend(f"layer {layer} is missing" for layer in entry.layers if layer not in members)
    return problems


def validate_docker_tar(tar_path: Union[str, Path]) -> None:
    """tar 파일이 유효한 Docker 이미지 tar 파일인지 검증합니다.

    manifest.json이 있고, 각 항목의 Config와 Layers가 아카이브에 존재하며,
    Config 파일이 이름의 digest와 일치하는지 확인합니다.

    Args:
        tar_path: 검증할 tar 파일 경로
            - Path 객체: Path("/Users/user/images/app.tar")
            - 문자열 경로: "./docker-images/nginx.tar"

    Raises:
        TarReadError: 파일이 없거나 tar 형식이 아닌 경우
        ValidationError: 매니페스트나 참조된 파일에 문제가 있는 경우
            (모든 문제를 한 메시지에 담습니다)

    Examples:
        try:
            validate_docker_tar(Path("nginx.tar"))
            print("유효한 Docker 이미지 tar 파일입니다")
        except ValidationError as e:
            print(f"유효하지 않은 tar 파일입니다: {e}")
    """
    path = Path(tar_path)
    if not path.exists():
        raise TarReadError(f"Tar file does not exist: {path}")
    if not tarfile.is_tarfile(path):
        raise TarReadError(f"Not a tar file: {path}")
    try:
        with tarfile.open(path, "r") as tar:
            members = _members(tar)
            if MANIFEST_FILE not in members:
                raise ValidationError("manifest.json not found in tar file")
            problems = []
            for raw in _read_manifest(tar):
                try:
                    entry = TarballEntry.from_dict(raw)
                except TarReadError as e:
                    problems.append(str(e))
                    continue
                problems.extend(entry_problems(tar, entry, members))
    except (tarfile.TarError, OSError) as e:
        raise TarReadError(f"Error reading tar file: {e}") from e
    if problems:
        raise ValidationError("; ".join(problems))


def is_docker_tar(tar_path: Union[str, Path]) -> bool:
    try:
        validate_docker_tar(tar_path)
    except (TarReadError, ValidationError):
        return False
    return True
