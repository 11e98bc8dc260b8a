"""Referrers lookup (OCI 1.1) with the tag-schema fallback."""

import logging

from .. import media_types
from ..core.session import parse_json_response
from ..exceptions import RegistryNotFoundError
from ..models import IndexManifest
from ..name import Digest, Tag
from .fetcher import Fetcher
from .options import RemoteOptions
from .writer import fallback_tag

logger = logging.getLogger(__name__)

FILTERS_HEADER = "OCI-Filters-Applied"


async def referrers(ref: Digest, options: RemoteOptions, artifact_type: str = "") -> IndexManifest:
    """Index of the manifests whose ``subject`` is ``ref``.

    Uses ``/v2/<repo>/referrers/<digest>``; when the registry answers 404,
    reads the ``<alg>-<hex>`` fallback tag instead. An unknown subject
    yields an empty index.
    """
    repo = ref.context()
    transport = await options.transport(repo, "pull")
    url = transport.url(f"/v2/{repo.path}/referrers/{ref.digest}")
    params = {"artifactType": artifact_type} if artifact_type else None
    try:
        async with transport.request(
            "GET", url, params=params, headers={"Accept": media_types.OCI_IMAGE_INDEX}
        ) as resp:
            data = await parse_json_response(resp)
            filtered = "artifactType" in resp.headers.get(FILTERS_HEADER, "")
        index = IndexManifest.from_dict(data)
    except RegistryNotFoundError:
        logger.warning("registry has no referrers API; reading fallback tag for %s", ref.digest)
        fetcher = Fetcher(transport, repo)
        try:
            raw, _ = await fetcher.fetch_manifest(Tag(repo, fallback_tag(ref.hash)), (media_types.OCI_IMAGE_INDEX,))
            index = IndexManifest.from_json(raw)
        except RegistryNotFoundError:
            index = IndexManifest(manifests=[])
        filtered = False
    if artifact_type and not filtered:
        index.manifests = [d for d in index.manifests if d.artifact_type == artifact_type]
    return index
