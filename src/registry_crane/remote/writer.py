"""Write side of the distribution API.

Blob uploads follow a small state machine::

    IDLE --HEAD 200--------------------------------> COMMITTED
    IDLE --POST ?mount 201-------------------------> COMMITTED
    IDLE --POST (or mount 202)--> STARTED --PUT ?digest (monolithic)--> COMMITTED
                                  STARTED --PATCH--> WRITING --PUT ?digest--> COMMITTED

A failed PATCH is resumed from the offset the registry reports for the
session. The manifest PUT comes last, so readers that see a manifest can
fetch every blob it references.
"""

import asyncio
import enum
import logging
from typing import AsyncIterable, AsyncIterator, Optional, Union
from urllib.parse import urljoin

import aiohttp

from .. import media_types
from ..core.session import error_from_response
from ..core.transport import Transport
from ..exceptions import (
    BlobUploadError,
    DigestMismatchError,
    ManifestError,
    NotComputedError,
    RegistryConnectionError,
    RegistryNotFoundError,
    TransportError,
    UnsupportedMediaTypeError,
)
from ..image.base import Image, ImageIndex
from ..image.layer import Layer
from ..models import Descriptor, IndexManifest, Manifest
from ..name import Digest, Repository, Tag
from ..utils.digest import Hash
from .fetcher import Fetcher
from .options import RemoteOptions

logger = logging.getLogger(__name__)

SUBJECT_HEADER = "OCI-Subject"
RESUME_ATTEMPTS = 3


class UploadState(enum.Enum):
    IDLE = "idle"
    STARTED = "started"
    WRITING = "writing"
    COMMITTED = "committed"


def fallback_tag(h: Hash) -> str:
    """Tag under which the referrers of ``h`` are kept when the API is missing."""
    return f"{h.algorithm}-{h.hex}"


def _with_query(url: str, **params: str) -> str:
    query = "&".join(f"{k}={v}" for k, v in params.items())
    return f"{url}&{query}" if "?" in url else f"{url}?{query}"


def _parse_range(value: Optional[str]) -> int:
    """Next offset from a ``Range: 0-<last>`` header (0 when absent)."""
    if not value:
        return 0
    last = value.split("-", 1)[-1].strip()
    return int(last) + 1 if last.isdigit() else 0


async def _rechunk(chunks: AsyncIterable[bytes], size: int) -> AsyncIterator[bytes]:
    buf = bytearray()
    async for chunk in chunks:
        buf.extend(chunk)
        while len(buf) >= size:
            yield bytes(buf[:size])
            del buf[:size]
    if buf:
        yield bytes(buf)


async def _is_computed(layer: Layer) -> bool:
    try:
        await layer.digest()
    except NotComputedError:
        return False
    return True


class BlobUpload:
    """One blob upload session, tracked through :class:`UploadState`."""

    def __init__(self, writer: "Writer", digest: Optional[Hash]) -> None:
        self.writer = writer
        self.transport = writer.transport
        self.digest = digest
        self.state = UploadState.IDLE
        self.location = ""
        self.offset = 0

    def _resolve(self, location: str) -> str:
        return urljoin(self.transport.registry.base_url + "/", location)

    def _label(self) -> str:
        return str(self.digest)[:19] if self.digest else "stream"

    async def start(self, mount_from: Optional[Repository] = None) -> bool:
        """Open a session; returns True when a mount already committed the blob."""
        url = self.transport.url(f"/v2/{self.writer.repo.path}/blobs/uploads/")
        params = {}
        if mount_from is not None and self.digest is not None:
            params = {"mount": str(self.digest), "from": mount_from.path}
        async with self.transport.request("POST", url, params=params, expected=(201, 202)) as resp:
            if resp.status == 201:
                self.state = UploadState.COMMITTED
                logger.info("mounted blob %s from %s", self.digest, mount_from)
                return True
            location = resp.headers.get("Location")
            if not location:
                raise BlobUploadError(f"registry returned no upload location for {self.writer.repo}")
            self.location = self._resolve(location)
        self.state = UploadState.STARTED
        return False

    async def put_monolithic(self, data: bytes) -> None:
        assert self.digest is not None
        url = _with_query(self.location, digest=str(self.digest))
        headers = {"Content-Type": "application/octet-stream"}
        await self._commit(url, headers, data)

    async def _patch(self, chunk: bytes, start: int) -> aiohttp.ClientResponse:
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Range": f"{start}-{start + len(chunk) - 1}",
        }
        return await self.transport.send("PATCH", self.location, headers=headers, data=chunk, replayable=False)

    async def _status(self) -> int:
        """Ask the registry how much of the session it holds."""
        async with self.transport.request("GET", self.location, expected=(204,)) as resp:
            location = resp.headers.get("Location")
            if location:
                self.location = self._resolve(location)
            return _parse_range(resp.headers.get("Range"))

    async def write_chunk(self, chunk: bytes) -> None:
        start = self.offset
        for attempt in range(1, RESUME_ATTEMPTS + 1):
            sent = chunk[self.offset - start :]
            failure: Union[TransportError, RegistryConnectionError]
            try:
                resp = await self._patch(sent, self.offset)
            except RegistryConnectionError as e:
                failure = e
            else:
                try:
                    if resp.status == 202:
                        location = resp.headers.get("Location")
                        if location:
                            self.location = self._resolve(location)
                        self.offset = start + len(chunk)
                        self.state = UploadState.WRITING
                        return
                    failure = await error_from_response(resp)
                finally:
                    resp.release()

            if attempt == RESUME_ATTEMPTS:
                raise BlobUploadError(f"Failed to upload chunk of {self._label()}: {failure}") from failure
            committed = await self._status()
            logger.warning(
                "chunk upload of %s failed (%s); resuming at offset %d", self._label(), failure, committed
            )
            if committed < start or committed > start + len(chunk):
                raise BlobUploadError(
                    f"cannot resume upload of {self._label()}: registry holds {committed} bytes, chunk starts at {start}"
                ) from failure
            self.offset = committed
            if committed == start + len(chunk):
                self.state = UploadState.WRITING
                return

    async def commit(self) -> None:
        assert self.digest is not None
        url = _with_query(self.location, digest=str(self.digest))
        await self._commit(url, {}, b"")

    async def _commit(self, url: str, headers: dict[str, str], data: bytes) -> None:
        try:
            async with self.transport.request("PUT", url, headers=headers, data=data, expected=(201, 204)):
                pass
        except TransportError as e:
            if "DIGEST_INVALID" in e.codes:
                raise DigestMismatchError(self.digest, "content uploaded", "blob") from e
            raise BlobUploadError(f"Failed to commit blob {self.digest}: {e}") from e
        self.state = UploadState.COMMITTED


class Writer:
    """Pushes blobs and manifests into one repository.

    Blob uploads are deduplicated by digest and limited to
    ``options.jobs`` at a time.
    """

    def __init__(self, repo: Repository, transport: Transport, options: RemoteOptions) -> None:
        self.repo = repo
        self.transport = transport
        self.options = options
        self.fetcher = Fetcher(transport, repo)
        self._semaphore = options.semaphore()
        self._uploads: dict[Hash, asyncio.Task] = {}
        self.uploaded_bytes = 0

    @classmethod
    async def create(
        cls, repo: Repository, options: RemoteOptions, mount_from: tuple[Repository, ...] = ()
    ) -> "Writer":
        extra = tuple(src.scope("pull") for src in mount_from if src != repo)
        transport = await options.transport(repo, "pull", "push", extra_scopes=extra)
        return cls(repo, transport, options)

    async def write_layer(self, layer: Layer) -> None:
        """Upload one layer (or config) blob unless the registry has it."""
        try:
            digest = await layer.digest()
        except NotComputedError:
            await self._upload_stream(layer)
            return
        media_type = await layer.media_type()
        if media_types.is_layer(media_type) and not media_types.is_distributable(media_type):
            if not self.options.allow_nondistributable:
                logger.info("skipping non-distributable layer %s", digest)
                return
        task = self._uploads.get(digest)
        if task is None:
            task = asyncio.ensure_future(self._upload(layer, digest))
            self._uploads[digest] = task
        await task

    async def _upload(self, layer: Layer, digest: Hash) -> None:
        async with self._semaphore:
            if await self.fetcher.blob_exists(digest):
                logger.info("existing blob: %s", digest)
                return
            source = await layer.mount_source()
            mount_from = None
            if (
                isinstance(source, Repository)
                and source.registry.host == self.repo.registry.host
                and source.path != self.repo.path
            ):
                mount_from = source
            upload = BlobUpload(self, digest)
            if await upload.start(mount_from):
                return

            size = await layer.size()
            if 0 <= size <= self.options.config.chunk_size:
                data = b"".join([chunk async for chunk in layer.compressed()])
                await upload.put_monolithic(data)
                self.uploaded_bytes += len(data)
                await self.options.progress(len(data), size, f"Uploading {str(digest)[:19]}...")
            else:
                await self._write_chunks(upload, layer.compressed(), size)
                await upload.commit()
            logger.info("pushed blob: %s", digest)

    async def _write_chunks(self, upload: BlobUpload, chunks: AsyncIterable[bytes], total: int) -> None:
        async for chunk in _rechunk(chunks, self.options.config.chunk_size):
            await upload.write_chunk(chunk)
            self.uploaded_bytes += len(chunk)
            await self.options.progress(upload.offset, total, f"Uploading {upload._label()}...")

    async def _upload_stream(self, layer: Layer) -> None:
        """Streamed layers always go chunked; the digest is known only at the end."""
        async with self._semaphore:
            upload = BlobUpload(self, None)
            await upload.start()
            await self._write_chunks(upload, layer.compressed(), -1)
            upload.digest = await layer.digest()
            await upload.commit()
            logger.info("pushed streamed blob: %s", upload.digest)

    async def put_manifest(self, identifier: str, raw: bytes, media_type: str) -> Hash:
        """PUT manifest bytes at a tag or digest; returns their digest."""
        url = self.transport.url(f"/v2/{self.repo.path}/manifests/{identifier}")
        try:
            async with self.transport.request(
                "PUT", url, headers={"Content-Type": media_type}, data=raw, expected=(200, 201, 202)
            ) as resp:
                has_subject_support = SUBJECT_HEADER in resp.headers
        except RegistryNotFoundError:
            raise
        except TransportError as e:
            raise ManifestError(f"Failed to upload manifest {self.repo}:{identifier}: {e}") from e
        digest = Hash.of(raw)
        logger.info("pushed manifest %s:%s (%s)", self.repo, identifier, digest)

        if not has_subject_support and media_type in (media_types.OCI_MANIFEST_SCHEMA1, media_types.OCI_IMAGE_INDEX):
            subject = _subject_of(raw, media_type)
            if subject is not None:
                await self._update_fallback_index(subject, raw, media_type)
        return digest

    async def _update_fallback_index(self, subject: Descriptor, raw: bytes, media_type: str) -> None:
        tag = Tag(self.repo, fallback_tag(subject.digest))
        try:
            existing, _ = await self.fetcher.fetch_manifest(tag, (media_types.OCI_IMAGE_INDEX,))
            index = IndexManifest.from_json(existing)
        except RegistryNotFoundError:
            index = IndexManifest(manifests=[])
        desc = referrer_descriptor(raw, media_type)
        if any(d.digest == desc.digest for d in index.manifests):
            return
        index.manifests.append(desc)
        logger.warning("registry lacks the referrers API; updating fallback tag %s", tag.tag)
        await self.put_manifest(tag.tag, index.to_json(), media_types.OCI_IMAGE_INDEX)

    async def write_image(self, img: Image, identifier: Optional[str] = None) -> Hash:
        """Upload config and layers, then the manifest (at ``identifier`` or its digest).

        Stream layers go first: the manifest and config depend on their
        digests, which exist only once the stream has been read.
        """
        ready, streamed = [], []
        for layer in await img.layers():
            (ready if await _is_computed(layer) else streamed).append(layer)
        await asyncio.gather(*(self.write_layer(layer) for layer in streamed))
        manifest = await img.manifest()
        await asyncio.gather(
            *(self.write_layer(layer) for layer in ready),
            self.write_layer(await img.config_layer()),
        )
        raw = await img.raw_manifest()
        media_type = await img.media_type()
        if manifest.media_type and manifest.media_type != media_type:
            media_type = manifest.media_type
        return await self.put_manifest(identifier or str(Hash.of(raw)), raw, media_type)

    async def write_index(self, idx: ImageIndex, identifier: Optional[str] = None) -> Hash:
        """Ensure every child exists (recursively), then PUT the index."""
        manifest = await idx.index_manifest()

        async def ensure(desc: Descriptor) -> None:
            if await self._manifest_exists(desc.digest):
                logger.info("existing manifest: %s", desc.digest)
                return
            if media_types.is_index(desc.media_type):
                await self.write_index(await idx.image_index(desc.digest), str(desc.digest))
            elif media_types.is_image(desc.media_type):
                await self.write_image(await idx.image(desc.digest), str(desc.digest))
            else:
                raise UnsupportedMediaTypeError(f"cannot write index child {desc.digest} of type {desc.media_type}")

        await asyncio.gather(*(ensure(desc) for desc in manifest.manifests))
        raw = await idx.raw_manifest()
        return await self.put_manifest(identifier or str(Hash.of(raw)), raw, await idx.media_type())

    async def _manifest_exists(self, h: Hash) -> bool:
        try:
            await self.fetcher.head_manifest(Digest(self.repo, str(h)))
        except RegistryNotFoundError:
            return False
        return True

    async def delete(self, identifier: str) -> None:
        url = self.transport.url(f"/v2/{self.repo.path}/manifests/{identifier}")
        async with self.transport.request("DELETE", url, expected=(200, 202)):
            pass
        logger.info("deleted %s:%s", self.repo, identifier)


def _subject_of(raw: bytes, media_type: str) -> Optional[Descriptor]:
    if media_types.is_index(media_type):
        return IndexManifest.from_json(raw).subject
    return Manifest.from_json(raw).subject


def referrer_descriptor(raw: bytes, media_type: str) -> Descriptor:
    """Descriptor listing the manifest ``raw`` in a referrers index."""
    if media_types.is_index(media_type):
        index = IndexManifest.from_json(raw)
        artifact_type, annotations = index.artifact_type, index.annotations
    else:
        manifest = Manifest.from_json(raw)
        artifact_type = manifest.artifact_type or manifest.config.media_type
        annotations = manifest.annotations
    return Descriptor(
        media_type=media_type,
        size=len(raw),
        digest=Hash.of(raw),
        annotations=dict(annotations),
        artifact_type=artifact_type,
    )
