"""Tests for Docker tar file validation."""

import json

import pytest

from registry_crane.exceptions import TarReadError, ValidationError
from registry_crane.tarball.validator import is_docker_tar, validate_docker_tar
from tests.helpers import create_docker_tar, create_raw_tar


def test_validate_synthetic_docker_tar(tmp_path):
    """Test validation with a synthetic Docker tar file."""
    tar_path = create_docker_tar(
        tmp_path / "synthetic.tar",
        ["test/synthetic:latest"],
        layers=[{"a.txt": "a"}, {"b.txt": "b"}],
    )

    validate_docker_tar(tar_path)
    assert is_docker_tar(tar_path)


def test_validate_untagged_tar(tmp_path):
    """Test an archive without RepoTags is still valid."""
    tar_path = create_docker_tar(tmp_path / "untagged.tar", [])

    validate_docker_tar(str(tar_path))


def test_validate_missing_manifest(tmp_path):
    """Test validation fails when manifest.json is missing."""
    tar_path = create_raw_tar(tmp_path / "no_manifest.tar", {"other.txt": b"hello"})

    with pytest.raises(ValidationError, match="manifest.json not found"):
        validate_docker_tar(tar_path)


def test_validate_invalid_manifest_json(tmp_path):
    """Test validation fails on malformed JSON."""
    tar_path = create_raw_tar(tmp_path / "bad_json.tar", {"manifest.json": b"{invalid json"})

    with pytest.raises(ValidationError, match="Invalid JSON"):
        validate_docker_tar(tar_path)


def test_validate_invalid_manifest_structure(tmp_path):
    """Test validation fails when the manifest is not an array."""
    tar_path = create_raw_tar(
        tmp_path / "bad_structure.tar",
        {"manifest.json": json.dumps({"Config": "c.json", "Layers": []}).encode()},
    )

    with pytest.raises(ValidationError, match="non-empty array"):
        validate_docker_tar(tar_path)


def test_validate_empty_manifest(tmp_path):
    """Test validation fails on an empty manifest array."""
    tar_path = create_raw_tar(tmp_path / "empty.tar", {"manifest.json": b"[]"})

    with pytest.raises(ValidationError):
        validate_docker_tar(tar_path)


def test_validate_entry_without_layers(tmp_path):
    """Test an entry missing its Layers field is reported."""
    manifest = [{"Config": "config.json", "RepoTags": []}]
    tar_path = create_raw_tar(
        tmp_path / "no_layers.tar",
        {"manifest.json": json.dumps(manifest).encode(), "config.json": b"{}"},
    )

    with pytest.raises(ValidationError, match="Config and Layers"):
        validate_docker_tar(tar_path)


def test_validate_missing_config_file(tmp_path):
    """Test validation fails when the config file is missing."""
    manifest = [{"Config": "blobs/sha256/missing", "RepoTags": [], "Layers": ["layer.tar"]}]
    tar_path = create_raw_tar(
        tmp_path / "no_config.tar",
        {"manifest.json": json.dumps(manifest).encode(), "layer.tar": b"layer"},
    )

    with pytest.raises(ValidationError, match="config blobs/sha256/missing is missing"):
        validate_docker_tar(tar_path)


def test_validate_missing_layer_file(tmp_path):
    """Test validation reports every missing layer."""
    manifest = [{"Config": "config.json", "RepoTags": [], "Layers": ["one.tar", "two.tar"]}]
    tar_path = create_raw_tar(
        tmp_path / "no_layer.tar",
        {"manifest.json": json.dumps(manifest).encode(), "config.json": b"{}"},
    )

    with pytest.raises(ValidationError) as excinfo:
        validate_docker_tar(tar_path)
    assert "layer one.tar is missing" in str(excinfo.value)
    assert "layer two.tar is missing" in str(excinfo.value)


def test_validate_config_digest_mismatch(tmp_path):
    """Test a config whose content does not hash to its name is rejected."""
    name = "a" * 64 + ".json"
    manifest = [{"Config": name, "RepoTags": [], "Layers": []}]
    tar_path = create_raw_tar(
        tmp_path / "tampered.tar",
        {"manifest.json": json.dumps(manifest).encode(), name: b'{"os":"linux"}'},
    )

    with pytest.raises(ValidationError, match="does not match its digest"):
        validate_docker_tar(tar_path)
    assert not is_docker_tar(tar_path)


def test_validate_not_a_tar_file(tmp_path):
    """Test validation with a non-tar file."""
    not_tar = tmp_path / "not_a_tar.txt"
    not_tar.write_text("This is not a tar file")

    with pytest.raises(TarReadError, match="Not a tar file"):
        validate_docker_tar(not_tar)
    assert not is_docker_tar(not_tar)


def test_validate_nonexistent_file(tmp_path):
    """Test validation with a nonexistent file."""
    with pytest.raises(TarReadError, match="does not exist"):
        validate_docker_tar(tmp_path / "nonexistent.tar")
