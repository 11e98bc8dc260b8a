"""Registry reachability checks."""

import logging
from typing import Optional

import aiohttp

from ..exceptions import RegistryConnectionError
from ..name import Registry
from .session import create_session
from .types import TransportConfig

logger = logging.getLogger(__name__)

API_VERSION_HEADER = "Docker-Distribution-API-Version"


async def check_connectivity(
    registry: Registry,
    config: Optional[TransportConfig] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> bool:
    """Ping ``/v2/`` and report whether the registry speaks the v2 API.

    A 401 counts as reachable: the endpoint exists but wants credentials.

    Raises:
        RegistryConnectionError: If the registry cannot be reached
    """
    own_session = session is None
    if session is None:
        session = await create_session(config)
    url = f"{registry.base_url}/v2/"
    try:
        async with session.get(url) as resp:
            logger.debug("GET %s %d", url, resp.status)
            if resp.status not in (200, 401):
                return False
            version = resp.headers.get(API_VERSION_HEADER)
            if version and not version.startswith("registry/2"):
                return False
            return True
    except aiohttp.ClientError as e:
        raise RegistryConnectionError(f"Failed to connect to registry {registry}: {e}") from e
    finally:
        if own_session:
            await session.close()
