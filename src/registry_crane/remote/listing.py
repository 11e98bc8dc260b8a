"""Tag and catalog listing with ``n``/``last`` and ``Link`` pagination."""

import logging
import re
from typing import Optional
from urllib.parse import urljoin

from ..core.session import parse_json_response
from ..core.transport import Transport
from ..name import Registry, Repository
from .options import RemoteOptions

logger = logging.getLogger(__name__)

CATALOG_SCOPE = "registry:catalog:*"

_LINK_NEXT = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')


def next_link(header: Optional[str], base_url: str) -> Optional[str]:
    """URL of the next page from an RFC 5988 ``Link`` header."""
    if not header:
        return None
    match = _LINK_NEXT.search(header)
    if not match:
        return None
    return urljoin(base_url, match.group(1))


async def _paginate(
    transport: Transport, url: str, key: str, page_size: Optional[int], last: str = ""
) -> list[str]:
    params: Optional[dict[str, str]] = {}
    if page_size:
        params["n"] = str(page_size)
    if last:
        params["last"] = last
    items: list[str] = []
    next_url: Optional[str] = url
    while next_url:
        async with transport.request("GET", next_url, params=params or None) as resp:
            data = await parse_json_response(resp)
            link = resp.headers.get("Link")
        items.extend(data.get(key) or [])
        next_url = next_link(link, transport.registry.base_url + "/")
        # The link carries its own query.
        params = None
        if next_url:
            logger.debug("following %s page: %s", key, next_url)
    return items


async def list_tags(
    repo: Repository, options: RemoteOptions, page_size: Optional[int] = None, last: str = ""
) -> list[str]:
    """All tags of ``repo``, following every page."""
    transport = await options.transport(repo, "pull")
    return await _paginate(transport, transport.url(f"/v2/{repo.path}/tags/list"), "tags", page_size, last)


async def catalog(
    registry: Registry, options: RemoteOptions, page_size: Optional[int] = None, last: str = ""
) -> list[str]:
    """All repositories of ``registry``, following every page."""
    transport = await options.transport_for(registry, (CATALOG_SCOPE,))
    return await _paginate(transport, transport.url("/v2/_catalog"), "repositories", page_size, last)


async def catalog_page(
    registry: Registry, options: RemoteOptions, page_size: int, last: str = ""
) -> tuple[list[str], Optional[str]]:
    """One page of the catalog and the ``last`` value for the next one."""
    transport = await options.transport_for(registry, (CATALOG_SCOPE,))
    params = {"n": str(page_size)}
    if last:
        params["last"] = last
    async with transport.request("GET", transport.url("/v2/_catalog"), params=params) as resp:
        data = await parse_json_response(resp)
        link = resp.headers.get("Link")
    repos = data.get("repositories") or []
    has_next = next_link(link, transport.registry.base_url + "/") is not None
    return repos, (repos[-1] if has_next and repos else None)
