"""Authenticated, retrying HTTP access to one registry.

A :class:`Transport` is bound to a registry and a set of token scopes. On
first use it pings ``/v2/`` to learn the auth challenge, exchanges
credentials for a bearer token when asked to, and attaches the right
``Authorization`` header to every request. Transient failures of idempotent
requests are retried with capped exponential backoff.
"""

import asyncio
import contextlib
import email.utils
import logging
import time
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, AsyncIterator, Iterable, Mapping, Optional
from urllib.parse import urlencode

import aiohttp
import www_authenticate

from ..authn import ANONYMOUS, AuthConfig, Authenticator
from ..exceptions import AuthError, RegistryConnectionError, TransportError
from ..models import parse_time
from ..name import Registry
from .session import check_response, error_from_response, parse_json_response
from .types import TransportConfig

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE", "OPTIONS"})
DEFAULT_TOKEN_TTL = 60
CLIENT_ID = "registry-crane"


@dataclass
class Challenge:
    """What ``/v2/`` asked for: ``anonymous``, ``basic`` or ``bearer``."""

    scheme: str
    realm: str = ""
    service: str = ""
    scope: str = ""

    @classmethod
    def parse(cls, header: Optional[str]) -> "Challenge":
        if not header:
            return cls("anonymous")
        parsed = www_authenticate.parse(header)
        for scheme in ("bearer", "basic"):
            if scheme in parsed:
                params = parsed[scheme]
                if not isinstance(params, Mapping):
                    params = {}
                return cls(
                    scheme,
                    realm=params.get("realm", ""),
                    service=params.get("service", ""),
                    scope=params.get("scope", ""),
                )
        raise AuthError(f"unrecognized WWW-Authenticate challenge: {header}")


@dataclass
class ChallengeCache:
    """Ping results by registry host; shared by a client's transports."""

    challenges: dict[str, Challenge] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def redact(headers: Mapping[str, str]) -> dict[str, str]:
    return {k: ("<redacted>" if k.lower() == "authorization" else v) for k, v in headers.items()}


def retry_after(response: aiohttp.ClientResponse) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    if value.isdigit():
        return float(value)
    parsed = email.utils.parsedate_to_datetime(value)
    if parsed is None:
        return None
    return max(0.0, parsed.timestamp() - time.time())


def token_expiry(data: Mapping[str, Any], now: float) -> float:
    """When a token response expires: ``issued_at`` (or ``now``) plus ``expires_in``."""
    start = now
    issued_at = data.get("issued_at")
    if issued_at:
        try:
            issued = parse_time(issued_at)
        except ValueError:
            logger.debug("ignoring unparseable issued_at %r", issued_at)
        else:
            if issued.tzinfo is None:
                issued = issued.replace(tzinfo=timezone.utc)
            start = issued.timestamp()
    return start + int(data.get("expires_in") or DEFAULT_TOKEN_TTL)


class Transport:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        registry: Registry,
        auth: Authenticator = ANONYMOUS,
        scopes: Iterable[str] = (),
        config: Optional[TransportConfig] = None,
        challenges: Optional[ChallengeCache] = None,
    ) -> None:
        self.session = session
        self.registry = registry
        self.auth = auth
        self.scopes: list[str] = list(dict.fromkeys(scopes))
        self.config = config or TransportConfig()
        self.challenges = challenges or ChallengeCache()
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._token_expiry = 0.0

    @property
    def insecure(self) -> bool:
        return self.config.insecure or self.registry.insecure

    def url(self, path: str) -> str:
        return f"{self.registry.base_url}{path}"

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        data: Any = None,
        params: Optional[Mapping[str, str]] = None,
        allow_redirects: bool = True,
    ) -> aiohttp.ClientResponse:
        kwargs: dict[str, Any] = {"headers": headers, "allow_redirects": allow_redirects}
        if data is not None:
            kwargs["data"] = data
        if params:
            kwargs["params"] = params
        if self.insecure:
            kwargs["ssl"] = False
        logger.debug("--> %s %s %s", method, url, redact(headers))
        try:
            resp = await self.session.request(method, url, **kwargs)
        except aiohttp.ClientError as e:
            logger.debug("<-- %s %s failed: %s", method, url, e)
            raise
        logger.debug("<-- %s %s %d", method, url, resp.status)
        return resp

    async def ping(self) -> Challenge:
        """Learn (once per registry) how ``/v2/`` wants to be authenticated."""
        async with self.challenges.lock:
            cached = self.challenges.challenges.get(self.registry.host)
            if cached is not None:
                return cached
            url = self.url("/v2/")
            try:
                resp = await self._send("GET", url, {"User-Agent": self.config.user_agent})
            except aiohttp.ClientError as e:
                raise RegistryConnectionError(f"Failed to connect to registry {self.registry}: {e}") from e
            try:
                if resp.status == 200:
                    challenge = Challenge("anonymous")
                elif resp.status == 401:
                    challenge = Challenge.parse(resp.headers.get("WWW-Authenticate"))
                else:
                    raise await error_from_response(resp)
            finally:
                resp.release()
            self.challenges.challenges[self.registry.host] = challenge
            return challenge

    async def _authorization(self) -> Optional[str]:
        challenge = await self.ping()
        if challenge.scheme == "anonymous":
            return None
        async with self._lock:
            cfg = await self.auth.authorization()
            if cfg.registry_token:
                return f"Bearer {cfg.registry_token}"
            if challenge.scheme == "basic":
                return cfg.basic_header()
            if self._token is None or time.time() >= self._token_expiry:
                await self._refresh_token(challenge, cfg)
            return f"Bearer {self._token}"

    async def _refresh_token(self, challenge: Challenge, cfg: AuthConfig) -> None:
        scopes = self.scopes or ([challenge.scope] if challenge.scope else [])
        if cfg.identity_token:
            data = await self._token_by_refresh(challenge, cfg, scopes)
        else:
            data = await self._token_by_basic(challenge, cfg, scopes)
        token = data.get("token") or data.get("access_token")
        if not token:
            raise AuthError(f"no token in response from {challenge.realm}")
        now = time.time()
        self._token = token
        # Renew a little early so an in-flight request never carries an expired token.
        self._token_expiry = max(token_expiry(data, now) - 5, now + 1)
        logger.debug("obtained token for %s scopes=%s expires_at=%.0f", self.registry, scopes, self._token_expiry)

    async def _token_by_basic(self, challenge: Challenge, cfg: AuthConfig, scopes: list[str]) -> dict[str, Any]:
        query = [("service", challenge.service)] if challenge.service else []
        query += [("scope", s) for s in scopes]
        sep = "&" if "?" in challenge.realm else "?"
        url = f"{challenge.realm}{sep}{urlencode(query)}" if query else challenge.realm
        headers = {"User-Agent": self.config.user_agent}
        basic = cfg.basic_header()
        if basic:
            headers["Authorization"] = basic
        return await self._token_request("GET", url, headers)

    async def _token_by_refresh(self, challenge: Challenge, cfg: AuthConfig, scopes: list[str]) -> dict[str, Any]:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": cfg.identity_token,
            "service": challenge.service,
            "client_id": CLIENT_ID,
        }
        if scopes:
            form["scope"] = " ".join(scopes)
        headers = {"User-Agent": self.config.user_agent, "Content-Type": "application/x-www-form-urlencoded"}
        return await self._token_request("POST", challenge.realm, headers, urlencode(form).encode("utf-8"))

    async def _token_request(
        self, method: str, url: str, headers: dict[str, str], data: Optional[bytes] = None
    ) -> dict[str, Any]:
        try:
            resp = await self._send(method, url, headers, data)
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(f"token request to {url} failed: {e}") from e
        try:
            if resp.status != 200:
                err = await error_from_response(resp)
                raise AuthError(f"token exchange with {url} failed: {err}") from err
            data = await parse_json_response(resp)
        finally:
            resp.release()
        if not isinstance(data, dict):
            raise AuthError(f"unexpected token response from {url}")
        return data

    async def _escalate(self, response: aiohttp.ClientResponse) -> bool:
        """Widen the token scopes from a bearer 401 and drop the cached token.

        Returns False when the response carries no bearer challenge.
        """
        header = response.headers.get("WWW-Authenticate")
        if not header:
            return False
        challenge = Challenge.parse(header)
        if challenge.scheme != "bearer":
            return False
        async with self._lock:
            for scope in challenge.scope.split():
                if scope not in self.scopes:
                    self.scopes.append(scope)
            self._token = None
        async with self.challenges.lock:
            cached = self.challenges.challenges.get(self.registry.host)
            if cached is None or cached.scheme == "anonymous":
                self.challenges.challenges[self.registry.host] = challenge
        return True

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        data: Any = None,
        params: Optional[Mapping[str, str]] = None,
        replayable: Optional[bool] = None,
        allow_redirects: bool = True,
    ) -> aiohttp.ClientResponse:
        """Send one request with auth and retries. The caller releases the response.

        Raises:
            AuthError: If the registry still answers 401 after a token refresh
            RegistryConnectionError: If the registry cannot be reached
        """
        if replayable is None:
            replayable = data is None or isinstance(data, (bytes, bytearray, str))
        retryable = replayable and method in IDEMPOTENT_METHODS
        policy = self.config.retry
        attempt = 0
        escalated = False
        while True:
            attempt += 1
            hdrs = {"User-Agent": self.config.user_agent, **(headers or {})}
            authorization = await self._authorization()
            if authorization:
                hdrs["Authorization"] = authorization
            try:
                resp = await self._send(method, url, hdrs, data, params, allow_redirects)
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                if retryable and attempt < policy.attempts:
                    delay = policy.backoff(attempt)
                    logger.debug("retrying %s %s in %.2fs after %s", method, url, delay, e)
                    await asyncio.sleep(delay)
                    continue
                raise RegistryConnectionError(f"{method} {url}: {e}") from e

            if resp.status == 401 and replayable:
                if not escalated and await self._escalate(resp):
                    resp.release()
                    escalated = True
                    attempt -= 1
                    continue
                err = await error_from_response(resp)
                resp.release()
                raise AuthError(str(err)) from err

            if resp.status in policy.statuses and retryable and attempt < policy.attempts:
                delay = retry_after(resp)
                if delay is None:
                    delay = policy.backoff(attempt)
                delay = min(delay, policy.max_backoff)
                resp.release()
                logger.debug("retrying %s %s in %.2fs after status %d", method, url, delay, resp.status)
                await asyncio.sleep(delay)
                continue
            return resp

    @contextlib.asynccontextmanager
    async def request(
        self,
        method: str,
        url: str,
        *,
        expected: Iterable[int] = (200,),
        headers: Optional[Mapping[str, str]] = None,
        data: Any = None,
        params: Optional[Mapping[str, str]] = None,
        replayable: Optional[bool] = None,
        allow_redirects: bool = True,
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """Send a request and check its status against ``expected``.

        Raises:
            TransportError: If the status is not expected
                (:class:`RegistryNotFoundError` for 404)
        """
        resp = await self.send(
            method,
            url,
            headers=headers,
            data=data,
            params=params,
            replayable=replayable,
            allow_redirects=allow_redirects,
        )
        try:
            expected = tuple(expected)
            if expected:
                await check_response(resp, *expected)
            yield resp
        finally:
            resp.release()


__all__ = ["Challenge", "ChallengeCache", "Transport", "TransportError", "redact", "retry_after"]
