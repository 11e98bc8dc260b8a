"""Registry client: read, write, list and delete over the distribution API."""

from .api import delete, get, head, image, index, layer, put, tag, write, write_artifact, write_index, write_layer
from .fetcher import Fetcher
from .image import RemoteDescriptor, RemoteImage, RemoteIndex, RemoteLayer
from .listing import catalog, catalog_page, list_tags
from .options import RemoteOptions
from .referrers import referrers
from .writer import BlobUpload, UploadState, Writer, fallback_tag, referrer_descriptor

__all__ = [
    "BlobUpload",
    "Fetcher",
    "RemoteDescriptor",
    "RemoteImage",
    "RemoteIndex",
    "RemoteLayer",
    "RemoteOptions",
    "UploadState",
    "Writer",
    "catalog",
    "catalog_page",
    "delete",
    "fallback_tag",
    "get",
    "head",
    "image",
    "index",
    "layer",
    "list_tags",
    "put",
    "referrer_descriptor",
    "referrers",
    "tag",
    "write",
    "write_artifact",
    "write_index",
    "write_layer",
]
