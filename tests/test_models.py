"""Tests for manifest and config models."""

import json
from datetime import datetime, timezone

import pytest

from registry_crane import media_types
from registry_crane.models import (
    ConfigFile,
    Descriptor,
    IndexManifest,
    Manifest,
    Platform,
    format_time,
    parse_time,
)
from registry_crane.utils.digest import Hash

CONFIG_DIGEST = Hash.of(b"{}")


class TestPlatform:
    """Platform strings and matching."""

    def test_parse(self):
        """Test os/arch/variant:osversion parsing."""
        p = Platform.parse("linux/arm64/v8")
        assert (p.os, p.architecture, p.variant) == ("linux", "arm64", "v8")
        assert str(p) == "linux/arm64/v8"

        w = Platform.parse("windows/amd64:10.0.17763.1234")
        assert w.os_version == "10.0.17763.1234"
        assert str(w) == "windows/amd64:10.0.17763.1234"

        with pytest.raises(ValueError):
            Platform.parse("a/b/c/d")

    def test_satisfies(self):
        """Test only fields set in the requirement are compared."""
        arm = Platform(os="linux", architecture="arm64", variant="v8")
        assert arm.satisfies(Platform(os="linux", architecture="arm64"))
        assert arm.satisfies(Platform(os="linux"))
        assert not arm.satisfies(Platform(os="linux", architecture="amd64"))
        assert not arm.satisfies(Platform(os="linux", architecture="arm64", variant="v7"))


class TestManifest:
    """Manifest serialization."""

    def test_omits_empty_fields(self):
        """Test empty annotations, urls and subject are not serialized."""
        m = Manifest(
            config=Descriptor(media_types.DOCKER_CONFIG_JSON, 2, CONFIG_DIGEST),
            layers=[Descriptor(media_types.DOCKER_LAYER, 10, Hash.of(b"layer"))],
        )
        data = json.loads(m.to_json())
        assert set(data) == {"schemaVersion", "mediaType", "config", "layers"}
        assert set(data["layers"][0]) == {"mediaType", "size", "digest"}

    def test_round_trip_preserves_fields(self):
        """Test parsing and reserializing keeps subject, artifactType and data."""
        raw = {
            "schemaVersion": 2,
            "mediaType": media_types.OCI_MANIFEST_SCHEMA1,
            "artifactType": "application/vnd.test",
            "config": {
                "mediaType": media_types.OCI_EMPTY_JSON,
                "size": 2,
                "digest": str(CONFIG_DIGEST),
                "data": "e30=",
            },
            "layers": [],
            "annotations": {"a": "b"},
            "subject": {"mediaType": media_types.OCI_MANIFEST_SCHEMA1, "size": 7, "digest": str(Hash.of(b"subject"))},
        }
        m = Manifest.from_dict(raw)
        assert m.config.data == b"{}"
        assert m.subject is not None and m.subject.size == 7
        assert json.loads(m.to_json()) == raw

    def test_descriptor_copy_is_deep(self):
        """Test copies do not share annotations."""
        d = Descriptor(media_types.OCI_LAYER, 1, CONFIG_DIGEST, annotations={"k": "v"})
        c = d.copy(size=2)
        c.annotations["k"] = "changed"
        assert d.annotations == {"k": "v"}
        assert c.size == 2


class TestIndexManifest:
    """Index serialization."""

    def test_platforms(self):
        """Test child platforms survive a round trip."""
        idx = IndexManifest(
            manifests=[
                Descriptor(
                    media_types.OCI_MANIFEST_SCHEMA1,
                    100,
                    Hash.of(b"child"),
                    platform=Platform(os="linux", architecture="amd64"),
                )
            ]
        )
        back = IndexManifest.from_json(idx.to_json())
        assert back.media_type == media_types.OCI_IMAGE_INDEX
        assert back.manifests[0].platform == Platform(os="linux", architecture="amd64")


class TestConfigFile:
    """Config file parsing."""

    def test_unknown_keys_are_kept(self):
        """Test fields this model does not know are written back."""
        raw = {
            "architecture": "amd64",
            "os": "linux",
            "rootfs": {"type": "layers", "diff_ids": [str(Hash.of(b"x"))]},
            "config": {"Env": ["A=1"], "Labels": {"k": "v"}},
            "moby.buildkit.buildinfo.v1": "abc",
        }
        cfg = ConfigFile.from_dict(raw)
        assert cfg.config.env == ["A=1"]
        assert cfg.rootfs.diff_ids == [Hash.of(b"x")]
        assert cfg.to_dict()["moby.buildkit.buildinfo.v1"] == "abc"

    def test_platform(self):
        """Test the platform is derived from the config."""
        cfg = ConfigFile(architecture="arm", os="linux", variant="v7")
        assert str(cfg.platform()) == "linux/arm/v7"

    def test_history_empty_layer(self):
        """Test empty_layer is only written when true."""
        cfg = ConfigFile.from_dict(
            {"history": [{"created_by": "RUN x"}, {"created_by": "ENV y", "empty_layer": True}]}
        )
        out = cfg.to_dict()["history"]
        assert out == [{"created_by": "RUN x"}, {"created_by": "ENV y", "empty_layer": True}]


def test_time_round_trip():
    """Test RFC 3339 formatting and parsing, including nanoseconds."""
    t = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert format_time(t) == "2024-01-02T03:04:05Z"
    assert parse_time("2024-01-02T03:04:05Z") == t
    assert parse_time("2024-01-02T03:04:05.123456789Z").microsecond == 123456
