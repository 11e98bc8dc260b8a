"""Read side of the distribution API: manifests and blobs."""

import json
import logging
from typing import AsyncIterator, Optional, Union

from .. import media_types
from ..core.transport import Transport
from ..exceptions import DigestMismatchError, ManifestError, RegistryNotFoundError
from ..models import Descriptor
from ..name import Digest, Repository, Tag
from ..utils.digest import Hash, verify_stream

logger = logging.getLogger(__name__)

DIGEST_HEADER = "Docker-Content-Digest"
BLOB_CHUNK_SIZE = 1 << 16

Ref = Union[Tag, Digest]


def _content_type(value: Optional[str]) -> str:
    return (value or "").split(";", 1)[0].strip()


class Fetcher:
    """Fetches manifests and blobs of one repository."""

    def __init__(self, transport: Transport, repo: Repository) -> None:
        self.transport = transport
        self.repo = repo

    def _url(self, kind: str, identifier: str) -> str:
        return self.transport.url(f"/v2/{self.repo.path}/{kind}/{identifier}")

    async def fetch_manifest(
        self, ref: Ref, accept: tuple[str, ...] = media_types.MANIFEST_ACCEPT
    ) -> tuple[bytes, Descriptor]:
        """GET a manifest and describe it.

        Returns:
            The raw manifest bytes and a descriptor (media type from the
            response, digest computed locally)

        Raises:
            RegistryNotFoundError: If the manifest does not exist
            DigestMismatchError: If a digest reference resolved to other bytes
        """
        url = self._url("manifests", ref.identifier)
        async with self.transport.request("GET", url, headers={"Accept": ", ".join(accept)}) as resp:
            body = await resp.read()
            media_type = _content_type(resp.headers.get("Content-Type"))
            header_digest = resp.headers.get(DIGEST_HEADER)

        computed = Hash.of(body)
        if isinstance(ref, Digest):
            expected = ref.hash
            if Hash.of(body, expected.algorithm) != expected:
                raise DigestMismatchError(expected, Hash.of(body, expected.algorithm), "manifest")
            computed = expected
        elif header_digest and header_digest.startswith("sha256:") and header_digest != str(computed):
            raise DigestMismatchError(header_digest, computed, "manifest")

        if not media_type or media_type in ("application/json", "text/plain"):
            media_type = _sniff_media_type(body)
        if media_type not in accept and not media_types.is_schema1(media_type):
            logger.debug("manifest %s has media type %s outside the Accept list", ref, media_type)
        return body, Descriptor(media_type=media_type, size=len(body), digest=computed)

    async def head_manifest(
        self, ref: Ref, accept: tuple[str, ...] = media_types.MANIFEST_ACCEPT
    ) -> Descriptor:
        """HEAD a manifest; falls back to GET if the registry omits headers."""
        url = self._url("manifests", ref.identifier)
        async with self.transport.request("HEAD", url, headers={"Accept": ", ".join(accept)}) as resp:
            media_type = _content_type(resp.headers.get("Content-Type"))
            digest = resp.headers.get(DIGEST_HEADER)
            length = resp.headers.get("Content-Length")
        if not digest or not media_type or length is None:
            _, desc = await self.fetch_manifest(ref, accept)
            return desc
        return Descriptor(media_type=media_type, size=int(length), digest=Hash.parse(digest))

    async def head_blob(self, h: Hash) -> Optional[int]:
        """Size of blob ``h``, or ``None`` when the repository lacks it."""
        url = self._url("blobs", str(h))
        try:
            async with self.transport.request("HEAD", url) as resp:
                length = resp.headers.get("Content-Length")
                return int(length) if length is not None else -1
        except RegistryNotFoundError:
            return None

    async def blob_exists(self, h: Hash) -> bool:
        return await self.head_blob(h) is not None

    async def fetch_blob(self, h: Hash, size: int = -1) -> AsyncIterator[bytes]:
        """Stream blob ``h``, verifying its digest (and size) at EOF."""
        url = self._url("blobs", str(h))
        async with self.transport.request("GET", url) as resp:
            async for chunk in verify_stream(resp.content.iter_chunked(BLOB_CHUNK_SIZE), h, size):
                yield chunk

    async def fetch_blob_range(self, h: Hash, start: int, end: int) -> bytes:
        """Bytes ``start..end`` (inclusive) of blob ``h``; not digest-verified."""
        url = self._url("blobs", str(h))
        headers = {"Range": f"bytes={start}-{end}"}
        async with self.transport.request("GET", url, headers=headers, expected=(200, 206)) as resp:
            body = await resp.read()
            if resp.status == 200:
                body = body[start : end + 1]
            return body

    async def fetch_blob_bytes(self, h: Hash, size: int = -1) -> bytes:
        parts = [chunk async for chunk in self.fetch_blob(h, size)]
        return b"".join(parts)


def _sniff_media_type(body: bytes) -> str:
    try:
        data = json.loads(body)
    except ValueError as e:
        raise ManifestError(f"manifest is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError("manifest is not a JSON object")
    media_type = data.get("mediaType")
    if media_type:
        return media_type
    if data.get("schemaVersion") == 1:
        return media_types.DOCKER_MANIFEST_SCHEMA1_SIGNED
    if "manifests" in data:
        return media_types.OCI_IMAGE_INDEX
    return media_types.OCI_MANIFEST_SCHEMA1
