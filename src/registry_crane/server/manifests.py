"""Per-repository manifest, tag and referrer bookkeeping."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from .. import media_types
from ..models import Descriptor, IndexManifest, Manifest
from ..remote.writer import referrer_descriptor
from ..utils.digest import Hash
from .errors import ServerError, digest_invalid, manifest_unknown, name_unknown
from .storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class StoredManifest:
    raw: bytes
    media_type: str
    digest: Hash
    subject: Optional[Descriptor] = None


@dataclass
class _Repository:
    manifests: dict[Hash, StoredManifest] = field(default_factory=dict)
    tags: dict[str, Hash] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _is_digest(reference: str) -> bool:
    return ":" in reference


def _parse(raw: bytes, media_type: str) -> tuple[str, Optional[Descriptor], list[Descriptor], list[Descriptor]]:
    """Media type, subject, referenced blobs and child manifests of ``raw``."""
    try:
        data = json.loads(raw)
        media_type = media_type or data.get("mediaType", "")
        if media_types.is_index(media_type) or (not media_type and "manifests" in data):
            index = IndexManifest.from_dict(data)
            return media_type or media_types.OCI_IMAGE_INDEX, index.subject, [], index.manifests
        if media_types.is_image(media_type) or (not media_type and "config" in data):
            manifest = Manifest.from_dict(data)
            blobs = [manifest.config] + [
                d for d in manifest.layers if media_types.is_distributable(d.media_type) or not d.urls
            ]
            return media_type or media_types.OCI_MANIFEST_SCHEMA1, manifest.subject, blobs, []
    except (ValueError, KeyError, TypeError) as e:
        raise ServerError(400, "MANIFEST_INVALID", f"manifest invalid: {e}") from None
    return media_type, None, [], []


class ManifestStore:
    """Manifests by digest with a mutable tag map, per repository.

    Writes to one repository are serialised by its lock. Reads do not
    await, so they always observe a fully applied write.
    """

    def __init__(self, blobs: BlobStore) -> None:
        self.blobs = blobs
        self._repos: dict[str, _Repository] = {}

    def repositories(self) -> list[str]:
        return sorted(name for name, repo in self._repos.items() if repo.manifests)

    def tags(self, name: str) -> list[str]:
        repo = self._repos.get(name)
        if repo is None or not repo.manifests:
            raise name_unknown(name)
        return sorted(repo.tags)

    def get(self, name: str, reference: str) -> StoredManifest:
        repo = self._repos.get(name)
        if repo is None:
            raise name_unknown(name)
        if _is_digest(reference):
            try:
                h = Hash.parse(reference)
            except ValueError as e:
                raise digest_invalid(str(e)) from None
        else:
            h = repo.tags.get(reference)
        stored = repo.manifests.get(h) if h is not None else None
        if stored is None:
            raise manifest_unknown(reference)
        return stored

    def has(self, name: str, h: Hash) -> bool:
        repo = self._repos.get(name)
        return repo is not None and h in repo.manifests

    async def put(self, name: str, reference: str, raw: bytes, media_type: str) -> StoredManifest:
        """Store ``raw`` and point ``reference`` at it when that is a tag.

        Raises:
            ServerError: 400 for malformed bodies, digest mismatches and
                references to blobs or manifests the registry lacks
        """
        h = Hash.of(raw)
        if _is_digest(reference) and not h.matches(reference):
            raise digest_invalid(f"manifest digest {h} does not match reference {reference}")
        media_type, subject, blobs, children = _parse(raw, media_type)

        for desc in blobs:
            if await self.blobs.stat(name, desc.digest) is None:
                raise ServerError(
                    400, "MANIFEST_BLOB_UNKNOWN", "blob unknown to registry", {"digest": str(desc.digest)}
                )
        repo = self._repos.setdefault(name, _Repository())
        for desc in children:
            if desc.digest not in repo.manifests:
                raise ServerError(
                    400, "MANIFEST_UNKNOWN", "sub-manifest unknown to registry", {"digest": str(desc.digest)}
                )

        stored = StoredManifest(bytes(raw), media_type, h, subject)
        async with repo.lock:
            repo.manifests[h] = stored
            if not _is_digest(reference):
                repo.tags[reference] = h
        logger.debug("stored manifest %s@%s as %s", name, h, reference)
        return stored

    async def delete(self, name: str, reference: str) -> None:
        """Drop a tag, or a manifest together with every tag naming it."""
        repo = self._repos.get(name)
        if repo is None:
            raise name_unknown(name)
        async with repo.lock:
            if not _is_digest(reference):
                if repo.tags.pop(reference, None) is None:
                    raise manifest_unknown(reference)
                return
            try:
                h = Hash.parse(reference)
            except ValueError as e:
                raise digest_invalid(str(e)) from None
            if repo.manifests.pop(h, None) is None:
                raise manifest_unknown(reference)
            for tag in [t for t, target in repo.tags.items() if target == h]:
                del repo.tags[tag]

    def referrers(self, name: str, subject: Hash, artifact_type: str = "") -> IndexManifest:
        """Index of the manifests in ``name`` whose subject is ``subject``."""
        repo = self._repos.get(name)
        found = []
        for stored in repo.manifests.values() if repo else ():
            if stored.subject is None or stored.subject.digest != subject:
                continue
            desc = referrer_descriptor(stored.raw, stored.media_type)
            if artifact_type and desc.artifact_type != artifact_type:
                continue
            found.append(desc)
        found.sort(key=lambda d: str(d.digest))
        return IndexManifest(manifests=found)
