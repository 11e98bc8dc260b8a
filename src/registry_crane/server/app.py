"""A distribution-spec v2 registry on ``aiohttp.web``.

Usage::

    app = create_app()
    web.run_app(app, port=5000)

Blobs live in a pluggable :class:`~.storage.BlobStore`; manifests, tags and
upload sessions are kept in memory.
"""

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlencode

import aiohttp
from aiohttp import web

from .. import media_types
from ..remote.fetcher import DIGEST_HEADER
from ..remote.referrers import FILTERS_HEADER
from ..remote.writer import SUBJECT_HEADER
from ..utils.digest import Hash
from .errors import ServerError, blob_unknown, digest_invalid, unauthorized, unsupported
from .manifests import ManifestStore
from .storage import BlobStore, MemoryBlobStore
from .uploads import UploadRegistry

logger = logging.getLogger(__name__)

API_VERSION_HEADER = "Docker-Distribution-API-Version"
UPLOAD_UUID_HEADER = "Docker-Upload-UUID"
MAX_BODY_SIZE = 1 << 30
DEFAULT_PORT = 5000

Authenticate = Callable[[str, str], Union[bool, Awaitable[bool]]]


@dataclass
class RegistryState:
    """Everything one registry instance serves from."""

    blobs: BlobStore
    manifests: ManifestStore
    uploads: UploadRegistry = field(default_factory=UploadRegistry)
    allow_blob_delete: bool = True
    # Digests committed through upload sessions and through mounts, in order.
    committed: list[Hash] = field(default_factory=list)
    mounted: list[Hash] = field(default_factory=list)


STATE = web.AppKey("state", RegistryState)
routes = web.RouteTableDef()


def _state(request: web.Request) -> RegistryState:
    return request.app[STATE]


def _parse_hash(value: str) -> Hash:
    try:
        return Hash.parse(value)
    except ValueError as e:
        raise digest_invalid(str(e)) from None


def _page(request: web.Request, items: list[str], path: str) -> tuple[list[str], dict[str, str]]:
    """Apply ``n``/``last`` and build the ``Link`` header for the next page."""
    last = request.query.get("last", "")
    if last:
        items = [item for item in items if item > last]
    n = request.query.get("n")
    if not n:
        return items, {}
    try:
        size = int(n)
    except ValueError:
        raise ServerError(400, "PAGINATION_NUMBER_INVALID", f"invalid page size {n!r}") from None
    if size < 0:
        raise ServerError(400, "PAGINATION_NUMBER_INVALID", f"invalid page size {n!r}")
    page = items[:size]
    if len(items) <= size or not page:
        return page, {}
    query = urlencode({"n": size, "last": page[-1]})
    return page, {"Link": f'<{path}?{query}>; rel="next"'}


def _accepts(request: web.Request, media_type: str) -> bool:
    values = request.headers.getall("Accept", [])
    accepted = {part.split(";", 1)[0].strip() for value in values for part in value.split(",")}
    accepted.discard("")
    return not accepted or "*/*" in accepted or media_type in accepted


def _content_type(request: web.Request) -> str:
    return request.headers.get("Content-Type", "").split(";", 1)[0].strip()


@web.middleware
async def access_log(request: web.Request, handler):
    """One line per request: ``<METHOD> <path> <status> [<code> <message>]``."""
    response = await handler(request)
    error = request.get("error")
    if error is not None:
        logger.info("%s %s %d %s %s", request.method, request.path, response.status, error.code, error.message)
    else:
        logger.info("%s %s %d", request.method, request.path, response.status)
    return response


@web.middleware
async def errors(request: web.Request, handler):
    try:
        return await handler(request)
    except ServerError as e:
        request["error"] = e
        return e.to_response()


def authentication(authenticate: Authenticate, realm: str = "registry"):
    """Middleware demanding HTTP Basic credentials accepted by ``authenticate``."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        header = request.headers.get("Authorization", "")
        try:
            credentials = aiohttp.BasicAuth.decode(header) if header else None
        except ValueError:
            credentials = None
        if credentials is None:
            raise unauthorized(realm)
        allowed = authenticate(credentials.login, credentials.password)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        if not allowed:
            raise unauthorized(realm)
        return await handler(request)

    return middleware


async def _add_version_header(request: web.Request, response: web.StreamResponse) -> None:
    response.headers[API_VERSION_HEADER] = "registry/2.0"


@routes.get("/v2/")
async def ping(request: web.Request) -> web.Response:
    return web.json_response({})


@routes.get("/v2/_catalog")
async def catalog(request: web.Request) -> web.Response:
    repos, headers = _page(request, _state(request).manifests.repositories(), "/v2/_catalog")
    return web.json_response({"repositories": repos}, headers=headers)


@routes.get("/v2/{repo:.+}/tags/list")
async def tags_list(request: web.Request) -> web.Response:
    repo = request.match_info["repo"]
    tags, headers = _page(request, _state(request).manifests.tags(repo), f"/v2/{repo}/tags/list")
    return web.json_response({"name": repo, "tags": tags}, headers=headers)


@routes.get("/v2/{repo:.+}/manifests/{reference}")
async def get_manifest(request: web.Request) -> web.Response:
    repo, reference = request.match_info["repo"], request.match_info["reference"]
    stored = _state(request).manifests.get(repo, reference)
    if media_types.is_index(stored.media_type) and not _accepts(request, stored.media_type):
        raise ServerError(
            404, "MANIFEST_UNKNOWN", f"manifest is an index of type {stored.media_type}, not accepted by client"
        )
    headers = {DIGEST_HEADER: str(stored.digest), "Content-Type": stored.media_type}
    return web.Response(body=stored.raw, headers=headers)


@routes.put("/v2/{repo:.+}/manifests/{reference}")
async def put_manifest(request: web.Request) -> web.Response:
    repo, reference = request.match_info["repo"], request.match_info["reference"]
    raw = await request.read()
    stored = await _state(request).manifests.put(repo, reference, raw, _content_type(request))
    headers = {
        "Location": f"/v2/{repo}/manifests/{stored.digest}",
        DIGEST_HEADER: str(stored.digest),
    }
    if stored.subject is not None:
        headers[SUBJECT_HEADER] = str(stored.subject.digest)
    return web.Response(status=201, headers=headers)


@routes.delete("/v2/{repo:.+}/manifests/{reference}")
async def delete_manifest(request: web.Request) -> web.Response:
    await _state(request).manifests.delete(request.match_info["repo"], request.match_info["reference"])
    return web.Response(status=202)


@routes.get("/v2/{repo:.+}/referrers/{digest}")
async def referrers(request: web.Request) -> web.Response:
    subject = _parse_hash(request.match_info["digest"])
    artifact_type = request.query.get("artifactType", "")
    index = _state(request).manifests.referrers(request.match_info["repo"], subject, artifact_type)
    headers = {FILTERS_HEADER: "artifactType"} if artifact_type else {}
    return web.Response(body=index.to_json(), content_type=media_types.OCI_IMAGE_INDEX, headers=headers)


@routes.route("HEAD", "/v2/{repo:.+}/blobs/{digest}")
async def head_blob(request: web.Request) -> web.Response:
    repo = request.match_info["repo"]
    h = _parse_hash(request.match_info["digest"])
    size = await _state(request).blobs.stat(repo, h)
    if size is None:
        raise blob_unknown(str(h))
    return web.Response(
        headers={
            "Content-Length": str(size),
            "Content-Type": "application/octet-stream",
            DIGEST_HEADER: str(h),
        }
    )


def _byte_range(header: str, size: int) -> tuple[int, int]:
    """Inclusive ``(start, end)`` of a single ``bytes=`` range."""
    unit, _, spec = header.partition("=")
    try:
        if unit.strip() != "bytes" or "," in spec:
            raise ValueError(header)
        first, _, last = spec.strip().partition("-")
        if first:
            start = int(first)
            end = int(last) if last else size - 1
        else:
            start, end = size - int(last), size - 1
    except ValueError:
        start, end = size, size
    if start < 0 or start >= size or end < start:
        raise ServerError(
            416,
            "RANGE_INVALID",
            f"range {header!r} not satisfiable for {size} bytes",
            headers={"Content-Range": f"bytes */{size}"},
        )
    return start, min(end, size - 1)


@routes.get("/v2/{repo:.+}/blobs/{digest}", allow_head=False)
async def get_blob(request: web.Request) -> web.StreamResponse:
    repo = request.match_info["repo"]
    h = _parse_hash(request.match_info["digest"])
    state = _state(request)
    size = await state.blobs.stat(repo, h)
    if size is None:
        raise blob_unknown(str(h))

    start, end = 0, size - 1
    response = web.StreamResponse(headers={"Content-Type": "application/octet-stream", DIGEST_HEADER: str(h)})
    range_header = request.headers.get("Range")
    if range_header and size:
        start, end = _byte_range(range_header, size)
        response.set_status(206)
        response.headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    response.content_length = end - start + 1 if size else 0
    await response.prepare(request)
    if size:
        async for chunk in state.blobs.read(repo, h, start, end):
            await response.write(chunk)
    await response.write_eof()
    return response


@routes.delete("/v2/{repo:.+}/blobs/{digest}")
async def delete_blob(request: web.Request) -> web.Response:
    state = _state(request)
    if not state.allow_blob_delete or not state.blobs.allow_delete:
        raise unsupported("blob deletion is disabled")
    h = _parse_hash(request.match_info["digest"])
    if not await state.blobs.delete(request.match_info["repo"], h):
        raise blob_unknown(str(h))
    return web.Response(status=202)


def _committed(repo: str, h: Hash) -> web.Response:
    return web.Response(status=201, headers={"Location": f"/v2/{repo}/blobs/{h}", DIGEST_HEADER: str(h)})


def _session_headers(session) -> dict[str, str]:
    headers = {"Location": session.location, UPLOAD_UUID_HEADER: session.id}
    committed = session.range_header()
    if committed:
        headers["Range"] = committed
    return headers


@routes.post("/v2/{repo:.+}/blobs/uploads/")
async def start_upload(request: web.Request) -> web.Response:
    repo = request.match_info["repo"]
    state = _state(request)
    mount, source = request.query.get("mount"), request.query.get("from")
    if mount and source and state.blobs.shared:
        h = _parse_hash(mount)
        if await state.blobs.stat(source, h) is not None:
            state.mounted.append(h)
            logger.debug("mounted %s from %s into %s", h, source, repo)
            return _committed(repo, h)

    digest = request.query.get("digest")
    if digest:
        h = _parse_hash(digest)
        data = await request.read()
        if Hash.of(data, h.algorithm) != h:
            raise digest_invalid(f"uploaded content does not match {h}")
        await state.blobs.put(repo, h, data)
        state.committed.append(h)
        return _committed(repo, h)

    session = state.uploads.start(repo)
    return web.Response(status=202, headers=_session_headers(session))


@routes.get("/v2/{repo:.+}/blobs/uploads/{session}")
async def upload_status(request: web.Request) -> web.Response:
    session = _state(request).uploads.get(request.match_info["repo"], request.match_info["session"])
    return web.Response(status=204, headers=_session_headers(session))


@routes.patch("/v2/{repo:.+}/blobs/uploads/{session}")
async def patch_upload(request: web.Request) -> web.Response:
    session = _state(request).uploads.get(request.match_info["repo"], request.match_info["session"])
    session.append(await request.read(), request.headers.get("Content-Range"))
    return web.Response(status=202, headers=_session_headers(session))


@routes.put("/v2/{repo:.+}/blobs/uploads/{session}")
async def finish_upload(request: web.Request) -> web.Response:
    repo = request.match_info["repo"]
    state = _state(request)
    session = state.uploads.get(repo, request.match_info["session"])
    digest = request.query.get("digest")
    if not digest:
        raise digest_invalid("digest query parameter is required to finish an upload")
    expected = _parse_hash(digest)
    body = await request.read()
    if body:
        session.append(body, request.headers.get("Content-Range"))

    if expected.algorithm == session.hasher.algorithm:
        actual = session.hasher.digest()
    else:
        actual = Hash.of(bytes(session.data), expected.algorithm)
    state.uploads.finish(session.id)
    if actual != expected:
        raise digest_invalid(f"uploaded content has digest {actual}, not {expected}")
    await state.blobs.put(repo, expected, bytes(session.data))
    state.committed.append(expected)
    return _committed(repo, expected)


@routes.delete("/v2/{repo:.+}/blobs/uploads/{session}")
async def cancel_upload(request: web.Request) -> web.Response:
    state = _state(request)
    session = state.uploads.get(request.match_info["repo"], request.match_info["session"])
    state.uploads.finish(session.id)
    return web.Response(status=204)


def create_app(
    blobs: Optional[BlobStore] = None,
    *,
    authenticate: Optional[Authenticate] = None,
    allow_blob_delete: bool = True,
) -> web.Application:
    """Build the registry application.

    Args:
        blobs: Blob storage policy (in memory when omitted)
        authenticate: ``(username, password) -> bool`` (or awaitable);
            when set every request needs accepted Basic credentials
        allow_blob_delete: Answer blob DELETE with 405 ``UNSUPPORTED`` when False
    """
    blobs = blobs or MemoryBlobStore()
    middlewares = [access_log, errors]
    if authenticate is not None:
        middlewares.append(authentication(authenticate))
    app = web.Application(middlewares=middlewares, client_max_size=MAX_BODY_SIZE)
    app[STATE] = RegistryState(blobs, ManifestStore(blobs), allow_blob_delete=allow_blob_delete)
    app.add_routes(routes)
    app.on_response_prepare.append(_add_version_header)
    return app


def default_port() -> int:
    return int(os.environ.get("PORT", DEFAULT_PORT))


async def start(app: web.Application, host: str = "0.0.0.0", port: Optional[int] = None) -> web.AppRunner:
    """Start serving ``app``; the caller owns the returned runner."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, default_port() if port is None else port)
    await site.start()
    for address in runner.addresses:
        logger.info("serving registry on %s", address)
    return runner


async def serve(app: web.Application, host: str = "0.0.0.0", port: Optional[int] = None) -> None:
    """Serve until cancelled."""
    runner = await start(app, host, port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
