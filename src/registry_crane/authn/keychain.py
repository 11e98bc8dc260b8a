"""Keychains: map a registry to an authenticator.

The default keychain reads the docker config file (``$DOCKER_CONFIG`` or
``~/.docker/config.json``), then the podman auth files
(``$REGISTRY_AUTH_FILE``, ``$XDG_RUNTIME_DIR/containers/auth.json``), and
consults ``docker-credential-<helper>`` binaries as those files direct.
"""

import abc
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol, Union

import aiofiles

from ..exceptions import AuthError
from ..name import DEFAULT_REGISTRY
from .authenticator import ANONYMOUS, AuthConfig, Authenticator, Basic, FromConfig

logger = logging.getLogger(__name__)

DOCKER_HUB_AUTH_KEY = "https://index.docker.io/v1/"
CREDENTIALS_NOT_FOUND = "credentials not found in native keychain"


class Resource(Protocol):
    def registry_str(self) -> str:
        ...


class Keychain(abc.ABC):
    @abc.abstractmethod
    async def resolve(self, target: Resource) -> Authenticator:
        ...


def _normalize_key(key: str) -> str:
    """``https://host/v1/`` style config keys down to ``host``."""
    if "://" in key:
        key = key.split("://", 1)[1]
    return key.split("/", 1)[0]


def _hostname(target: Resource) -> str:
    return target.registry_str()


def _lookup_key(host: str) -> str:
    return DOCKER_HUB_AUTH_KEY if host == DEFAULT_REGISTRY else host


def docker_config_paths() -> list[Path]:
    paths = []
    docker_config = os.environ.get("DOCKER_CONFIG")
    if docker_config:
        paths.append(Path(docker_config) / "config.json")
    else:
        paths.append(Path.home() / ".docker" / "config.json")
    auth_file = os.environ.get("REGISTRY_AUTH_FILE")
    if auth_file:
        paths.append(Path(auth_file))
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        paths.append(Path(runtime_dir) / "containers" / "auth.json")
    return paths


async def _load_config(paths: list[Path]) -> Optional[dict[str, Any]]:
    """Load the first config file that exists."""
    for path in paths:
        if not path.is_file():
            continue
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise AuthError(f"invalid JSON in {path}: {e}") from e
        logger.debug("loaded credentials config %s", path)
        return data
    return None


async def run_credential_helper(helper: str, server: str) -> Optional[AuthConfig]:
    """Ask ``docker-credential-<helper>`` for ``server``'s credentials.

    Returns ``None`` when the helper is not installed or has no entry.

    Raises:
        AuthError: If the helper fails or prints malformed output
    """
    binary = f"docker-credential-{helper}"
    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            "get",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        logger.debug("credential helper %s not found", binary)
        return None
    stdout, stderr = await proc.communicate(server.encode("utf-8"))
    if proc.returncode != 0:
        output = (stdout + stderr).decode("utf-8", "replace").strip()
        if CREDENTIALS_NOT_FOUND in output:
            return None
        raise AuthError(f"{binary} get failed: {output}")
    try:
        data = json.loads(stdout)
        username, secret = data["Username"], data["Secret"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise AuthError(f"malformed output from {binary}: {e}") from e
    return AuthConfig(username=username, password=secret)


def _entry_to_config(entry: dict[str, Any]) -> AuthConfig:
    return AuthConfig(
        username=entry.get("username", ""),
        password=entry.get("password", ""),
        auth=entry.get("auth", ""),
        identity_token=entry.get("identitytoken", ""),
        registry_token=entry.get("registrytoken", ""),
    )


class DefaultKeychain(Keychain):
    """Docker/podman config files plus credential helpers.

    Lookup failures degrade to anonymous access with a warning, unless the
    keychain is ``strict``.
    """

    def __init__(self, strict: bool = False, paths: Optional[list[Path]] = None) -> None:
        self.strict = strict
        self.paths = paths

    async def resolve(self, target: Resource) -> Authenticator:
        try:
            return await self._resolve(_hostname(target))
        except (AuthError, OSError) as e:
            if self.strict:
                raise
            logger.warning("credential lookup for %s failed, using anonymous: %s", _hostname(target), e)
            return ANONYMOUS

    async def _resolve(self, host: str) -> Authenticator:
        config = await _load_config(self.paths if self.paths is not None else docker_config_paths())
        if not config:
            return ANONYMOUS
        key = _lookup_key(host)

        helper = (config.get("credHelpers") or {}).get(host)
        if helper:
            found = await run_credential_helper(helper, key)
            return FromConfig(found) if found and not found.is_anonymous else ANONYMOUS

        for name, entry in (config.get("auths") or {}).items():
            if _normalize_key(name) == _normalize_key(key) and isinstance(entry, dict):
                cfg = _entry_to_config(entry)
                if not cfg.is_anonymous:
                    return FromConfig(cfg)

        store = config.get("credsStore")
        if store:
            found = await run_credential_helper(store, key)
            if found and not found.is_anonymous:
                return FromConfig(found)
        return ANONYMOUS


class StaticKeychain(Keychain):
    """Fixed credentials per registry host."""

    def __init__(self, entries: dict[str, Union[Authenticator, tuple[str, str]]]) -> None:
        self.entries: dict[str, Authenticator] = {}
        for host, value in entries.items():
            self.entries[host] = Basic(*value) if isinstance(value, tuple) else value

    async def resolve(self, target: Resource) -> Authenticator:
        return self.entries.get(_hostname(target), ANONYMOUS)


class MultiKeychain(Keychain):
    """Try each keychain in order; the first non-anonymous answer wins."""

    def __init__(self, *keychains: Keychain) -> None:
        self.keychains = keychains

    async def resolve(self, target: Resource) -> Authenticator:
        for keychain in self.keychains:
            auth = await keychain.resolve(target)
            if auth is not ANONYMOUS and not (await auth.authorization()).is_anonymous:
                return auth
        return ANONYMOUS


DEFAULT_KEYCHAIN = DefaultKeychain()
