"""Tests for credentials, keychains and the authenticating transport."""

import base64
import json
import time
from datetime import datetime, timezone

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from registry_crane.authn import (
    ANONYMOUS,
    AuthConfig,
    Basic,
    Bearer,
    DefaultKeychain,
    MultiKeychain,
    Refreshing,
    StaticKeychain,
    run_credential_helper,
)
from registry_crane.authn.authenticator import Authenticator
from registry_crane.core import Challenge, RetryPolicy, Transport, TransportConfig
from registry_crane.core.transport import DEFAULT_TOKEN_TTL, token_expiry
from registry_crane.exceptions import AuthError, RegistryNotFoundError
from registry_crane.name import Registry


def b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


class TestAuthConfig:
    """Docker config entries."""

    def test_auth_field_is_decoded(self):
        """Test the base64 auth field fills username and password."""
        cfg = AuthConfig(auth=b64("alice:s3cr:et"))
        assert (cfg.username, cfg.password) == ("alice", "s3cr:et")
        assert cfg.basic_header() == "Basic " + b64("alice:s3cr:et")

    def test_invalid_auth_field(self):
        """Test auth without a colon is rejected."""
        with pytest.raises(AuthError):
            AuthConfig(auth=b64("nocolon"))
        with pytest.raises(AuthError):
            AuthConfig(auth="!!!not-base64")

    def test_identity_token_username(self):
        """Test the <token> username marks an identity token."""
        cfg = AuthConfig(username="<token>", password="refresh-me")
        assert cfg.identity_token == "refresh-me"
        assert cfg.username == ""
        assert cfg.basic_header() is None
        assert not cfg.is_anonymous

    def test_anonymous(self):
        """Test an empty config is anonymous."""
        assert AuthConfig().is_anonymous


class TestAuthenticators:
    """Authenticator implementations."""

    @pytest.mark.asyncio
    async def test_basic_and_bearer(self):
        """Test basic and bearer authenticators."""
        assert (await Basic("u", "p").authorization()).basic_header() == "Basic " + b64("u:p")
        assert (await Bearer("tok").authorization()).registry_token == "tok"
        assert (await ANONYMOUS.authorization()).is_anonymous
        assert "tok" not in repr(Bearer("tok"))

    @pytest.mark.asyncio
    async def test_refreshing_caches_until_deadline(self):
        """Test credentials are reused until the margin before expiry."""

        class Counting(Authenticator):
            calls = 0

            async def authorization(self):
                Counting.calls += 1
                return AuthConfig(username="u", password=str(Counting.calls), expires_at=time.time() + 3600)

        auth = Refreshing(Counting(), margin=30)
        first = await auth.authorization()
        second = await auth.authorization()
        assert first is second
        assert Counting.calls == 1

        expiring = Refreshing(Counting(), margin=7200)
        await expiring.authorization()
        await expiring.authorization()
        assert Counting.calls == 3


class TestKeychains:
    """Keychain lookups."""

    @pytest.mark.asyncio
    async def test_default_keychain_reads_auths(self, tmp_path):
        """Test entries match by host, including URL-style keys."""
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "auths": {
                        "https://registry.example.com/v1/": {"auth": b64("alice:pw")},
                        "https://index.docker.io/v1/": {"username": "hub", "password": "hubpw"},
                    }
                }
            )
        )
        keychain = DefaultKeychain(paths=[path])

        cfg = await (await keychain.resolve(Registry("registry.example.com"))).authorization()
        assert (cfg.username, cfg.password) == ("alice", "pw")

        hub = await (await keychain.resolve(Registry("docker.io"))).authorization()
        assert hub.username == "hub"

        assert await keychain.resolve(Registry("other.example.com")) is ANONYMOUS

    @pytest.mark.asyncio
    async def test_missing_config_is_anonymous(self, tmp_path):
        """Test no config file means anonymous access."""
        keychain = DefaultKeychain(paths=[tmp_path / "absent.json"])
        assert await keychain.resolve(Registry("registry.example.com")) is ANONYMOUS

    @pytest.mark.asyncio
    async def test_invalid_config(self, tmp_path):
        """Test a broken config degrades to anonymous unless strict."""
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert await DefaultKeychain(paths=[path]).resolve(Registry("r.example.com")) is ANONYMOUS
        with pytest.raises(AuthError):
            await DefaultKeychain(strict=True, paths=[path]).resolve(Registry("r.example.com"))

    @pytest.mark.asyncio
    async def test_missing_credential_helper(self, tmp_path):
        """Test an uninstalled helper yields no credentials."""
        assert await run_credential_helper("registry-crane-test-absent", "r.example.com") is None
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"credHelpers": {"r.example.com": "registry-crane-test-absent"}}))
        assert await DefaultKeychain(paths=[path]).resolve(Registry("r.example.com")) is ANONYMOUS

    @pytest.mark.asyncio
    async def test_static_and_multi(self):
        """Test the first keychain with credentials wins."""
        empty = StaticKeychain({})
        static = StaticKeychain({"r.example.com": ("u", "p")})
        multi = MultiKeychain(empty, static)
        cfg = await (await multi.resolve(Registry("r.example.com"))).authorization()
        assert cfg.username == "u"
        assert await multi.resolve(Registry("x.example.com")) is ANONYMOUS


def test_challenge_parse():
    """Test WWW-Authenticate headers are parsed into challenges."""
    assert Challenge.parse(None).scheme == "anonymous"
    bearer = Challenge.parse('Bearer realm="https://auth.example.com/token",service="registry",scope="repository:a:pull"')
    assert bearer == Challenge("bearer", "https://auth.example.com/token", "registry", "repository:a:pull")
    assert Challenge.parse('Basic realm="registry"').scheme == "basic"


def test_token_expiry():
    """Test token lifetimes count from issued_at when the server sends it."""
    issued = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc).timestamp()
    now = issued + 100
    assert token_expiry({"expires_in": 300, "issued_at": "2024-03-01T12:00:00Z"}, now) == issued + 300
    assert token_expiry({"expires_in": 300, "issued_at": "2024-03-01T12:00:00.123456789Z"}, now) == pytest.approx(issued + 300.123456)
    assert token_expiry({"expires_in": 300}, now) == now + 300
    assert token_expiry({"issued_at": "not a time"}, now) == now + DEFAULT_TOKEN_TTL


def token_registry() -> web.Application:
    """A registry that demands bearer tokens issued for alice."""
    app = web.Application()
    app["token_requests"] = []
    app["attempts"] = 0

    def challenge(request: web.Request, scope: str = "") -> web.Response:
        header = f'Bearer realm="http://{request.host}/token",service="test-registry"'
        if scope:
            header += f',scope="{scope}"'
        return web.json_response(
            {"errors": [{"code": "UNAUTHORIZED", "message": "authentication required"}]},
            status=401,
            headers={"WWW-Authenticate": header},
        )

    async def ping(request: web.Request) -> web.Response:
        return challenge(request)

    async def token(request: web.Request) -> web.Response:
        request.app["token_requests"].append(request.query.getall("scope", []))
        if request.headers.get("Authorization") != "Basic " + b64("alice:pw"):
            return web.json_response({"details": "bad credentials"}, status=401)
        scopes = " ".join(request.query.getall("scope", []))
        return web.json_response({"token": f"tok[{scopes}]", "expires_in": 300})

    async def manifest(request: web.Request) -> web.Response:
        if request.headers.get("Authorization") != "Bearer tok[repository:app:pull]":
            return challenge(request, "repository:app:pull")
        return web.json_response({"ok": True})

    async def flaky(request: web.Request) -> web.Response:
        request.app["attempts"] += 1
        if request.app["attempts"] < 3:
            return web.Response(status=503)
        return web.Response(text="done")

    app.router.add_get("/v2/", ping)
    app.router.add_get("/token", token)
    app.router.add_get("/v2/app/manifests/latest", manifest)
    app.router.add_get("/v2/app/flaky", flaky)
    return app


class TestTransport:
    """Token exchange and retries against a local registry."""

    @pytest.mark.asyncio
    async def test_bearer_token_exchange(self):
        """Test a 401 widens scopes and the retried request succeeds."""
        app = token_registry()
        server = TestServer(app, host="127.0.0.1")
        await server.start_server()
        try:
            async with aiohttp.ClientSession() as session:
                transport = Transport(session, Registry(f"127.0.0.1:{server.port}"), Basic("alice", "pw"))
                async with transport.request("GET", transport.url("/v2/app/manifests/latest")) as resp:
                    assert await resp.json() == {"ok": True}
                assert transport.scopes == ["repository:app:pull"]
                assert app["token_requests"][-1] == ["repository:app:pull"]

                # The cached token is reused.
                count = len(app["token_requests"])
                async with transport.request("GET", transport.url("/v2/app/manifests/latest")):
                    pass
                assert len(app["token_requests"]) == count
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_bad_credentials(self):
        """Test a rejected token request raises an auth error."""
        server = TestServer(token_registry(), host="127.0.0.1")
        await server.start_server()
        try:
            async with aiohttp.ClientSession() as session:
                transport = Transport(session, Registry(f"127.0.0.1:{server.port}"), Basic("alice", "wrong"))
                with pytest.raises(AuthError):
                    async with transport.request("GET", transport.url("/v2/app/manifests/latest")):
                        pass
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_retries_transient_status(self):
        """Test idempotent requests retry on 503."""
        app = token_registry()
        server = TestServer(app, host="127.0.0.1")
        await server.start_server()
        config = TransportConfig(retry=RetryPolicy(attempts=3, initial_backoff=0.0))
        try:
            async with aiohttp.ClientSession() as session:
                transport = Transport(session, Registry(f"127.0.0.1:{server.port}"), Bearer("static"), config=config)
                async with transport.request("GET", transport.url("/v2/app/flaky")) as resp:
                    assert await resp.text() == "done"
                assert app["attempts"] == 3

                with pytest.raises(RegistryNotFoundError):
                    async with transport.request("GET", transport.url("/v2/app/absent")):
                        pass
        finally:
            await server.close()
