"""Builders for synthetic test archives and images."""

import hashlib
import io
import json
import tarfile
from pathlib import Path
from typing import Optional, Union


def add_bytes(tar: tarfile.TarFile, name: str, content: bytes) -> None:
    """Add a regular file member holding ``content``."""
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = 0o644
    tar.addfile(info, fileobj=io.BytesIO(content))


def layer_tar(files: dict[str, Union[bytes, str]]) -> bytes:
    """An uncompressed layer tar with one member per entry."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            add_bytes(tar, name, data)
    return buf.getvalue()


def create_docker_tar(
    tar_path: Union[str, Path],
    repo_tags: list[str],
    layers: Optional[list[dict[str, Union[bytes, str]]]] = None,
    repositories: bool = False,
    architecture: str = "amd64",
) -> Path:
    """Write a ``docker save`` style archive with consistent digests.

    Each layer is stored uncompressed as ``<diffid>/layer.tar`` and the
    config as ``<sha256>.json`` whose rootfs lists the layers' diffIDs.
    """
    if layers is None:
        layers = [{"hello.txt": "hello world\n"}]
    blobs = [layer_tar(files) for files in layers]
    diff_ids = [hashlib.sha256(blob).hexdigest() for blob in blobs]
    config = json.dumps(
        {
            "architecture": architecture,
            "os": "linux",
            "created": "2024-01-01T00:00:00Z",
            "config": {"Env": ["PATH=/usr/bin"]},
            "history": [{"created_by": f"layer {i}"} for i in range(len(blobs))],
            "rootfs": {"type": "layers", "diff_ids": [f"sha256:{d}" for d in diff_ids]},
        }
    ).encode("utf-8")
    config_name = f"{hashlib.sha256(config).hexdigest()}.json"
    layer_names = [f"{d}/layer.tar" for d in diff_ids]
    manifest = [{"Config": config_name, "RepoTags": repo_tags, "Layers": layer_names}]

    path = Path(tar_path)
    with tarfile.open(path, "w") as tar:
        add_bytes(tar, "manifest.json", json.dumps(manifest).encode("utf-8"))
        add_bytes(tar, config_name, config)
        for name, blob in zip(layer_names, blobs):
            add_bytes(tar, name, blob)
        if repositories:
            repos: dict[str, dict[str, str]] = {}
            for repo_tag in repo_tags:
                repo, _, tag = repo_tag.rpartition(":")
                repos.setdefault(repo, {})[tag] = diff_ids[-1]
            add_bytes(tar, "repositories", json.dumps(repos).encode("utf-8"))
    return path


def create_raw_tar(tar_path: Union[str, Path], members: dict[str, bytes]) -> Path:
    """Write an arbitrary tar, for malformed-archive tests."""
    path = Path(tar_path)
    with tarfile.open(path, "w") as tar:
        for name, content in members.items():
            add_bytes(tar, name, content)
    return path


def tar_names(data: bytes) -> list[str]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
        return tar.getnames()


def tar_contents(data: bytes) -> dict[str, bytes]:
    """Regular-file contents of a tar, by member name."""
    out = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
        for member in tar.getmembers():
            if member.isfile():
                fileobj = tar.extractfile(member)
                assert fileobj is not None
                out[member.name] = fileobj.read()
    return out
