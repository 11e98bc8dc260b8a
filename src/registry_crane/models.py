"""Data models for manifests, indexes, descriptors and image configs.

Each model round-trips through ``from_dict``/``to_dict`` using the JSON
field names of the OCI and Docker specifications. Optional fields are
omitted when empty so serialization stays stable.
"""

import base64
import copy
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional, Union

from . import media_types
from .utils.digest import Hash

__all__ = [
    "Platform",
    "Descriptor",
    "Manifest",
    "IndexManifest",
    "HealthConfig",
    "Config",
    "History",
    "RootFS",
    "ConfigFile",
    "format_time",
    "parse_time",
    "to_json",
]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_json(data: dict[str, Any]) -> bytes:
    """Serialize compactly; the bytes are what gets hashed."""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: str) -> datetime:
    text = value.replace("Z", "+00:00")
    # fromisoformat wants exactly six fractional digits on older interpreters.
    if "." in text:
        head, rest = text.split(".", 1)
        n = len(rest) - len(rest.lstrip("0123456789"))
        text = f"{head}.{rest[:n][:6].ljust(6, '0')}{rest[n:]}"
    return datetime.fromisoformat(text)


def _put(out: dict[str, Any], key: str, value: Any) -> None:
    # omitempty: None, False, 0 and empty containers are left out
    if value is None or value is False:
        return
    if isinstance(value, (str, list, dict, tuple)) and not value:
        return
    if isinstance(value, int) and value == 0:
        return
    out[key] = value


@dataclass
class Platform:
    architecture: str = ""
    os: str = ""
    os_version: str = ""
    os_features: list[str] = field(default_factory=list)
    variant: str = ""
    features: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Parse ``os/arch[/variant][:osversion]``."""
        if not value:
            raise ValueError("empty platform")
        os_version = ""
        if ":" in value:
            value, os_version = value.split(":", 1)
        parts = value.split("/")
        if len(parts) > 3:
            raise ValueError(f"too many slashes in platform spec: {value}")
        return cls(
            os=parts[0],
            architecture=parts[1] if len(parts) > 1 else "",
            variant=parts[2] if len(parts) > 2 else "",
            os_version=os_version,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Platform":
        return cls(
            architecture=data.get("architecture", ""),
            os=data.get("os", ""),
            os_version=data.get("os.version", ""),
            os_features=list(data.get("os.features") or []),
            variant=data.get("variant", ""),
            features=list(data.get("features") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"architecture": self.architecture, "os": self.os}
        _put(out, "os.version", self.os_version)
        _put(out, "os.features", self.os_features)
        _put(out, "variant", self.variant)
        _put(out, "features", self.features)
        return out

    def satisfies(self, spec: "Platform") -> bool:
        """Report whether this platform matches every field set in ``spec``."""
        if spec.os and spec.os != self.os:
            return False
        if spec.architecture and spec.architecture != self.architecture:
            return False
        if spec.variant and spec.variant != self.variant:
            return False
        if spec.os_version and spec.os_version != self.os_version:
            return False
        if not set(spec.os_features) <= set(self.os_features):
            return False
        return set(spec.features) <= set(self.features)

    def __str__(self) -> str:
        text = "/".join(p for p in (self.os, self.architecture, self.variant) if p)
        if self.os_version:
            text += f":{self.os_version}"
        return text


@dataclass
class Descriptor:
    media_type: str
    size: int
    digest: Hash
    data: Optional[bytes] = None
    urls: list[str] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)
    platform: Optional[Platform] = None
    artifact_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Descriptor":
        raw = data.get("data")
        platform = data.get("platform")
        return cls(
            media_type=data.get("mediaType", ""),
            size=int(data.get("size", 0)),
            digest=Hash.parse(data["digest"]),
            data=base64.b64decode(raw) if raw else None,
            urls=list(data.get("urls") or []),
            annotations=dict(data.get("annotations") or {}),
            platform=Platform.from_dict(platform) if platform else None,
            artifact_type=data.get("artifactType", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "mediaType": self.media_type,
            "size": self.size,
            "digest": str(self.digest),
        }
        if self.data is not None:
            out["data"] = base64.b64encode(self.data).decode("ascii")
        _put(out, "urls", self.urls)
        _put(out, "annotations", self.annotations)
        if self.platform is not None:
            out["platform"] = self.platform.to_dict()
        _put(out, "artifactType", self.artifact_type)
        return out

    def copy(self, **changes: Any) -> "Descriptor":
        return replace(copy.deepcopy(self), **changes)


@dataclass
class Manifest:
    """An image manifest (Docker schema 2 or OCI)."""

    config: Descriptor
    layers: list[Descriptor] = field(default_factory=list)
    media_type: str = media_types.DOCKER_MANIFEST_SCHEMA2
    schema_version: int = 2
    annotations: dict[str, str] = field(default_factory=dict)
    subject: Optional[Descriptor] = None
    artifact_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        subject = data.get("subject")
        return cls(
            schema_version=int(data.get("schemaVersion", 2)),
            media_type=data.get("mediaType", ""),
            config=Descriptor.from_dict(data["config"]),
            layers=[Descriptor.from_dict(d) for d in data.get("layers") or []],
            annotations=dict(data.get("annotations") or {}),
            subject=Descriptor.from_dict(subject) if subject else None,
            artifact_type=data.get("artifactType", ""),
        )

    @classmethod
    def from_json(cls, raw: Union[bytes, str]) -> "Manifest":
        return cls.from_dict(json.loads(raw))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"schemaVersion": self.schema_version}
        _put(out, "mediaType", self.media_type)
        _put(out, "artifactType", self.artifact_type)
        out["config"] = self.config.to_dict()
        out["layers"] = [d.to_dict() for d in self.layers]
        _put(out, "annotations", self.annotations)
        if self.subject is not None:
            out["subject"] = self.subject.to_dict()
        return out

    def to_json(self) -> bytes:
        return to_json(self.to_dict())

    def copy(self) -> "Manifest":
        return copy.deepcopy(self)


@dataclass
class IndexManifest:
    """An image index (OCI) or manifest list (Docker)."""

    manifests: list[Descriptor] = field(default_factory=list)
    media_type: str = media_types.OCI_IMAGE_INDEX
    schema_version: int = 2
    annotations: dict[str, str] = field(default_factory=dict)
    subject: Optional[Descriptor] = None
    artifact_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IndexManifest":
        subject = data.get("subject")
        return cls(
            schema_version=int(data.get("schemaVersion", 2)),
            media_type=data.get("mediaType", ""),
            manifests=[Descriptor.from_dict(d) for d in data.get("manifests") or []],
            annotations=dict(data.get("annotations") or {}),
            subject=Descriptor.from_dict(subject) if subject else None,
            artifact_type=data.get("artifactType", ""),
        )

    @classmethod
    def from_json(cls, raw: Union[bytes, str]) -> "IndexManifest":
        return cls.from_dict(json.loads(raw))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"schemaVersion": self.schema_version}
        _put(out, "mediaType", self.media_type)
        _put(out, "artifactType", self.artifact_type)
        out["manifests"] = [d.to_dict() for d in self.manifests]
        _put(out, "annotations", self.annotations)
        if self.subject is not None:
            out["subject"] = self.subject.to_dict()
        return out

    def to_json(self) -> bytes:
        return to_json(self.to_dict())

    def copy(self) -> "IndexManifest":
        return copy.deepcopy(self)


@dataclass
class HealthConfig:
    test: list[str] = field(default_factory=list)
    interval: int = 0
    timeout: int = 0
    start_period: int = 0
    retries: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthConfig":
        return cls(
            test=list(data.get("Test") or []),
            interval=int(data.get("Interval", 0)),
            timeout=int(data.get("Timeout", 0)),
            start_period=int(data.get("StartPeriod", 0)),
            retries=int(data.get("Retries", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        _put(out, "Test", self.test)
        _put(out, "Interval", self.interval)
        _put(out, "Timeout", self.timeout)
        _put(out, "StartPeriod", self.start_period)
        _put(out, "Retries", self.retries)
        return out


# JSON names of Config fields, in serialization order.
_CONFIG_FIELDS = (
    ("hostname", "Hostname"),
    ("domainname", "Domainname"),
    ("user", "User"),
    ("attach_stdin", "AttachStdin"),
    ("attach_stdout", "AttachStdout"),
    ("attach_stderr", "AttachStderr"),
    ("exposed_ports", "ExposedPorts"),
    ("tty", "Tty"),
    ("open_stdin", "OpenStdin"),
    ("stdin_once", "StdinOnce"),
    ("env", "Env"),
    ("cmd", "Cmd"),
    ("args_escaped", "ArgsEscaped"),
    ("image", "Image"),
    ("volumes", "Volumes"),
    ("working_dir", "WorkingDir"),
    ("entrypoint", "Entrypoint"),
    ("on_build", "OnBuild"),
    ("labels", "Labels"),
    ("stop_signal", "StopSignal"),
    ("shell", "Shell"),
)


@dataclass
class Config:
    """The ``config`` subtree of a config file: how to run the image."""

    hostname: str = ""
    domainname: str = ""
    user: str = ""
    attach_stdin: bool = False
    attach_stdout: bool = False
    attach_stderr: bool = False
    exposed_ports: dict[str, dict] = field(default_factory=dict)
    tty: bool = False
    open_stdin: bool = False
    stdin_once: bool = False
    env: list[str] = field(default_factory=list)
    cmd: list[str] = field(default_factory=list)
    args_escaped: bool = False
    image: str = ""
    volumes: dict[str, dict] = field(default_factory=dict)
    working_dir: str = ""
    entrypoint: list[str] = field(default_factory=list)
    on_build: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    stop_signal: str = ""
    shell: list[str] = field(default_factory=list)
    healthcheck: Optional[HealthConfig] = None

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Config":
        data = data or {}
        kwargs: dict[str, Any] = {}
        for attr, key in _CONFIG_FIELDS:
            value = data.get(key)
            if value is not None:
                kwargs[attr] = copy.deepcopy(value)
        if data.get("Healthcheck"):
            kwargs["healthcheck"] = HealthConfig.from_dict(data["Healthcheck"])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for attr, key in _CONFIG_FIELDS:
            _put(out, key, getattr(self, attr))
        if self.healthcheck is not None:
            out["Healthcheck"] = self.healthcheck.to_dict()
        return out

    def copy(self) -> "Config":
        return copy.deepcopy(self)


@dataclass
class History:
    created: str = ""
    created_by: str = ""
    author: str = ""
    comment: str = ""
    empty_layer: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "History":
        return cls(
            created=data.get("created", "") or "",
            created_by=data.get("created_by", ""),
            author=data.get("author", ""),
            comment=data.get("comment", ""),
            empty_layer=bool(data.get("empty_layer", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        _put(out, "created", self.created)
        _put(out, "created_by", self.created_by)
        _put(out, "author", self.author)
        _put(out, "comment", self.comment)
        if self.empty_layer:
            out["empty_layer"] = True
        return out


@dataclass
class RootFS:
    type: str = "layers"
    diff_ids: list[Hash] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "RootFS":
        data = data or {}
        return cls(
            type=data.get("type", "layers"),
            diff_ids=[Hash.parse(d) for d in data.get("diff_ids") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "diff_ids": [str(d) for d in self.diff_ids]}


# Top-level keys this model understands; anything else is carried verbatim.
_KNOWN_CONFIG_KEYS = {
    "architecture", "author", "container", "created", "docker_version",
    "history", "os", "rootfs", "config", "os.version", "variant",
    "os.features", "container_config",
}


@dataclass
class ConfigFile:
    """The image config blob."""

    architecture: str = ""
    os: str = ""
    os_version: str = ""
    os_features: list[str] = field(default_factory=list)
    variant: str = ""
    author: str = ""
    container: str = ""
    created: str = ""
    docker_version: str = ""
    history: list[History] = field(default_factory=list)
    rootfs: RootFS = field(default_factory=RootFS)
    config: Config = field(default_factory=Config)
    container_config: Optional[Config] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfigFile":
        container_config = data.get("container_config")
        return cls(
            architecture=data.get("architecture", ""),
            os=data.get("os", ""),
            os_version=data.get("os.version", ""),
            os_features=list(data.get("os.features") or []),
            variant=data.get("variant", ""),
            author=data.get("author", ""),
            container=data.get("container", ""),
            created=data.get("created", "") or "",
            docker_version=data.get("docker_version", ""),
            history=[History.from_dict(h) for h in data.get("history") or []],
            rootfs=RootFS.from_dict(data.get("rootfs")),
            config=Config.from_dict(data.get("config")),
            container_config=Config.from_dict(container_config) if container_config else None,
            extra={k: v for k, v in data.items() if k not in _KNOWN_CONFIG_KEYS},
        )

    @classmethod
    def from_json(cls, raw: Union[bytes, str]) -> "ConfigFile":
        return cls.from_dict(json.loads(raw))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"architecture": self.architecture}
        _put(out, "author", self.author)
        _put(out, "container", self.container)
        _put(out, "created", self.created)
        _put(out, "docker_version", self.docker_version)
        if self.history:
            out["history"] = [h.to_dict() for h in self.history]
        out["os"] = self.os
        out["rootfs"] = self.rootfs.to_dict()
        out["config"] = self.config.to_dict()
        if self.container_config is not None:
            out["container_config"] = self.container_config.to_dict()
        _put(out, "os.version", self.os_version)
        _put(out, "variant", self.variant)
        _put(out, "os.features", self.os_features)
        for key, value in self.extra.items():
            out.setdefault(key, value)
        return out

    def to_json(self) -> bytes:
        return to_json(self.to_dict())

    def platform(self) -> Platform:
        return Platform(
            architecture=self.architecture,
            os=self.os,
            os_version=self.os_version,
            os_features=list(self.os_features),
            variant=self.variant,
        )

    def copy(self) -> "ConfigFile":
        return copy.deepcopy(self)
