"""aiohttp session construction and response helpers."""

import json
import logging
import os
import ssl
from typing import Any, Optional, Union

import aiohttp

from ..exceptions import Diagnostic, RegistryNotFoundError, TransportError
from .types import TransportConfig

logger = logging.getLogger(__name__)


def _ssl_setting(config: TransportConfig) -> Union[bool, ssl.SSLContext]:
    if config.insecure:
        return False
    ca_file = config.ca_file or os.environ.get("SSL_CERT_FILE")
    ca_dir = config.ca_dir or os.environ.get("SSL_CERT_DIR")
    if ca_file or ca_dir:
        return ssl.create_default_context(cafile=ca_file, capath=ca_dir)
    return True


async def create_session(
    config: Optional[TransportConfig] = None,
    connector: Optional[aiohttp.BaseConnector] = None,
) -> aiohttp.ClientSession:
    """Create a client session for registry traffic.

    Proxy variables are honored through ``trust_env``.
    """
    config = config or TransportConfig()
    if connector is None:
        connector = aiohttp.TCPConnector(ssl=_ssl_setting(config))
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=config.timeout),
        headers={"User-Agent": config.user_agent},
        trust_env=True,
    )


async def parse_json_response(response: aiohttp.ClientResponse) -> Any:
    """Decode a JSON body regardless of the declared content type."""
    body = await response.read()
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise TransportError(
            response.status,
            method=response.method,
            url=str(response.url),
            raw_body=f"invalid JSON: {e}",
        ) from e


async def error_from_response(response: aiohttp.ClientResponse) -> TransportError:
    """Build the error for an unexpected response, parsing its ``errors`` body."""
    body = await response.read()
    errors: list[Diagnostic] = []
    raw = ""
    try:
        data = json.loads(body) if body else {}
        errors = [Diagnostic.from_dict(e) for e in data.get("errors") or [] if isinstance(e, dict)]
    except (json.JSONDecodeError, AttributeError, UnicodeDecodeError):
        raw = body[:512].decode("utf-8", "replace")
    if not errors and not raw and body:
        raw = body[:512].decode("utf-8", "replace")

    cls = RegistryNotFoundError if response.status == 404 or _all_unknown(errors) else TransportError
    return cls(
        response.status,
        errors=errors,
        method=response.method,
        url=str(response.url),
        raw_body=raw,
    )


def _all_unknown(errors: list[Diagnostic]) -> bool:
    return bool(errors) and all(e.code.endswith("_UNKNOWN") for e in errors)


async def check_response(response: aiohttp.ClientResponse, *expected: int) -> None:
    if response.status not in expected:
        raise await error_from_response(response)
