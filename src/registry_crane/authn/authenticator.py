"""Authenticators: where registry credentials come from."""

import abc
import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Optional

from ..exceptions import AuthError

logger = logging.getLogger(__name__)

# Docker credential helpers return this username for identity tokens.
IDENTITY_TOKEN_USERNAME = "<token>"


@dataclass
class AuthConfig:
    """Credentials in the shape of a docker config ``auths`` entry."""

    username: str = ""
    password: str = ""
    auth: str = ""
    identity_token: str = ""
    registry_token: str = ""
    # Unix time after which the credentials must be fetched again.
    expires_at: Optional[float] = None

    def __post_init__(self) -> None:
        if self.auth and not self.username:
            try:
                decoded = base64.b64decode(self.auth).decode("utf-8")
            except (ValueError, UnicodeDecodeError) as e:
                raise AuthError(f"unable to decode auth field: {e}") from e
            user, sep, password = decoded.partition(":")
            if not sep:
                raise AuthError("unable to parse auth field, must be formatted as base64(username:password)")
            self.username, self.password = user, password
        if self.username == IDENTITY_TOKEN_USERNAME and self.password and not self.identity_token:
            self.identity_token, self.username, self.password = self.password, "", ""

    @property
    def is_anonymous(self) -> bool:
        return not (self.username or self.password or self.identity_token or self.registry_token)

    def basic_header(self) -> Optional[str]:
        if not (self.username or self.password):
            return None
        raw = f"{self.username}:{self.password}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")


class Authenticator(abc.ABC):
    @abc.abstractmethod
    async def authorization(self) -> AuthConfig:
        ...


class Anonymous(Authenticator):
    async def authorization(self) -> AuthConfig:
        return AuthConfig()

    def __repr__(self) -> str:
        return "Anonymous()"


ANONYMOUS = Anonymous()


class Basic(Authenticator):
    def __init__(self, username: str, password: str) -> None:
        self.username = username
        self.password = password

    async def authorization(self) -> AuthConfig:
        return AuthConfig(username=self.username, password=self.password)

    def __repr__(self) -> str:
        return f"Basic(username={self.username!r})"


class Bearer(Authenticator):
    """A pre-acquired registry token sent as ``Authorization: Bearer``."""

    def __init__(self, token: str) -> None:
        self.token = token

    async def authorization(self) -> AuthConfig:
        return AuthConfig(registry_token=self.token)

    def __repr__(self) -> str:
        return "Bearer(***)"


class FromConfig(Authenticator):
    def __init__(self, config: AuthConfig) -> None:
        self.config = config

    async def authorization(self) -> AuthConfig:
        return self.config


class Refreshing(Authenticator):
    """Caches another authenticator's credentials and renews them early.

    Credentials are fetched again ``margin`` seconds before their
    ``expires_at``; credentials without an expiry are kept for ``ttl``.
    """

    def __init__(self, source: Authenticator, ttl: float = 300.0, margin: float = 30.0) -> None:
        self.source = source
        self.ttl = ttl
        self.margin = margin
        self._lock = asyncio.Lock()
        self._cached: Optional[AuthConfig] = None
        self._deadline = 0.0

    async def authorization(self) -> AuthConfig:
        async with self._lock:
            now = time.time()
            if self._cached is None or now >= self._deadline:
                self._cached = await self.source.authorization()
                expires_at = self._cached.expires_at or now + self.ttl
                self._deadline = expires_at - self.margin
                logger.debug("refreshed credentials from %r", self.source)
            return self._cached
