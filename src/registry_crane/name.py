"""Image reference parsing.

References look like ``[registry/]repository[:tag|@algorithm:hex]``. Parsing
fills in the defaults Docker users expect: ``index.docker.io`` as registry,
``library/`` for single-component Docker Hub repositories and ``latest`` as
tag.
"""

import ipaddress
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Union

from .exceptions import InvalidReferenceError
from .utils.digest import Hash

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"
_DOCKER_HUB_ALIASES = {"docker.io", "registry-1.docker.io", DEFAULT_REGISTRY}

_REPO_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|[-]*)[a-z0-9]+)*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_REGISTRY = re.compile(r"^(?:[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*|\[[0-9a-fA-F:]+\])(?::[0-9]+)?$")


def _is_loopback_or_private(host: str) -> bool:
    hostname = host
    if hostname.startswith("["):
        hostname = hostname[1 : hostname.index("]")]
    elif ":" in hostname:
        hostname = hostname.rsplit(":", 1)[0]
    if hostname == "localhost" or hostname.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.is_loopback or address.is_private


@dataclass(frozen=True)
class Registry:
    """A registry host, e.g. ``gcr.io`` or ``localhost:5000``."""

    host: str = DEFAULT_REGISTRY
    insecure: bool = False

    def __post_init__(self) -> None:
        host = self.host or DEFAULT_REGISTRY
        if host in _DOCKER_HUB_ALIASES:
            host = DEFAULT_REGISTRY
        if not _REGISTRY.match(host):
            raise InvalidReferenceError(f"registries must be valid RFC 3986 URI authorities: {host}")
        object.__setattr__(self, "host", host)

    @property
    def scheme(self) -> str:
        """Plain HTTP for insecure, loopback and private-network registries."""
        if self.insecure or _is_loopback_or_private(self.host):
            return "http"
        return "https"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def registry_str(self) -> str:
        return self.host

    def __str__(self) -> str:
        return self.host


@dataclass(frozen=True)
class Repository:
    """A repository within a registry (the "context" of a reference)."""

    registry: Registry
    path: str

    def __post_init__(self) -> None:
        path = self.path
        if not path:
            raise InvalidReferenceError("a repository name must be specified")
        if self.registry.host == DEFAULT_REGISTRY and "/" not in path:
            path = f"library/{path}"
        for component in path.split("/"):
            if not _REPO_COMPONENT.match(component):
                raise InvalidReferenceError(
                    f"repository can only contain the characters `abcdefghijklmnopqrstuvwxyz0123456789_-./`: {path}"
                )
        object.__setattr__(self, "path", path)

    @property
    def name(self) -> str:
        return f"{self.registry.host}/{self.path}"

    def registry_str(self) -> str:
        return self.registry.host

    def scope(self, action: str) -> str:
        return f"repository:{self.path}:{action}"

    def tag(self, tag: str) -> "Tag":
        return Tag(self, tag)

    def digest(self, digest: Union[str, Hash]) -> "Digest":
        return Digest(self, str(digest))

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Reference(ABC):
    """Base of tag and digest references."""

    repository: Repository

    def context(self) -> Repository:
        return self.repository

    @property
    def registry(self) -> Registry:
        return self.repository.registry

    @property
    @abstractmethod
    def identifier(self) -> str:
        """The tag or digest part, as used in manifest URLs."""

    def registry_str(self) -> str:
        return self.repository.registry_str()

    def scope(self, action: str) -> str:
        return self.repository.scope(action)


@dataclass(frozen=True)
class Tag(Reference):
    tag: str = DEFAULT_TAG

    def __post_init__(self) -> None:
        if not _TAG.match(self.tag):
            raise InvalidReferenceError(
                f"tag can only contain the characters `abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-.`: {self.tag}"
            )

    @property
    def identifier(self) -> str:
        return self.tag

    def __str__(self) -> str:
        return f"{self.repository.name}:{self.tag}"


@dataclass(frozen=True)
class Digest(Reference):
    digest: str = ""
    # An optional tag that accompanied the digest (``repo:tag@sha256:...``).
    original_tag: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        try:
            Hash.parse(self.digest)
        except ValueError as e:
            raise InvalidReferenceError(f"invalid digest {self.digest!r}: {e}") from e

    @property
    def identifier(self) -> str:
        return self.digest

    @property
    def hash(self) -> Hash:
        return Hash.parse(self.digest)

    def __str__(self) -> str:
        return f"{self.repository.name}@{self.digest}"


def _split_registry(name: str) -> tuple[str, str]:
    parts = name.split("/", 1)
    if len(parts) == 2 and (
        "." in parts[0] or ":" in parts[0] or parts[0] == "localhost" or parts[0].startswith("[")
    ):
        return parts[0], parts[1]
    return "", name


def parse_repository(name: str, *, insecure: bool = False, default_registry: str = DEFAULT_REGISTRY) -> Repository:
    if not name:
        raise InvalidReferenceError("empty repository name")
    host, path = _split_registry(name)
    return Repository(Registry(host or default_registry, insecure=insecure), path)


def parse_reference(
    value: str,
    *,
    strict: bool = False,
    insecure: bool = False,
    default_registry: str = DEFAULT_REGISTRY,
) -> Union[Tag, Digest]:
    """Parse ``value`` into a :class:`Tag` or :class:`Digest` reference.

    Under weak validation (the default) a missing tag means ``latest``; with
    ``strict=True`` the registry and the tag or digest must be explicit.

    Raises:
        InvalidReferenceError: If the reference is malformed
    """
    if not value or value != value.strip():
        raise InvalidReferenceError(f"could not parse reference: {value!r}")

    if "@" in value:
        base, digest = value.split("@", 1)
        tag = ""
        # repo:tag@digest keeps the tag for display only.
        slash = base.rfind("/")
        colon = base.rfind(":")
        if colon > slash:
            base, tag = base[:colon], base[colon + 1 :]
        repo = parse_repository(base, insecure=insecure, default_registry=default_registry)
        if strict and not _split_registry(base)[0]:
            raise InvalidReferenceError(f"strict validation requires the registry to be explicitly defined: {value}")
        return Digest(repo, digest, original_tag=tag)

    base, tag = value, ""
    slash = value.rfind("/")
    colon = value.rfind(":")
    if colon > slash:
        base, tag = value[:colon], value[colon + 1 :]
        if not tag:
            raise InvalidReferenceError(f"could not parse reference: {value}")
    if strict:
        if not tag:
            raise InvalidReferenceError(f"strict validation requires the tag to be explicitly defined: {value}")
        if not _split_registry(base)[0]:
            raise InvalidReferenceError(f"strict validation requires the registry to be explicitly defined: {value}")
    repo = parse_repository(base, insecure=insecure, default_registry=default_registry)
    return Tag(repo, tag or DEFAULT_TAG)
