"""Registry Crane - Async Python client, image engine and server for OCI/Docker v2 registries."""

__version__ = "0.1.0"

from .crane import Crane
from .exceptions import (
    AuthError,
    BlobUploadError,
    DigestMismatchError,
    InvalidReferenceError,
    ManifestError,
    NotFoundError,
    RegistryConnectionError,
    RegistryError,
    TarReadError,
    TransportError,
    ValidationError,
)
from .name import Digest, Registry, Repository, Tag, parse_reference
from .push import (
    check_registry_connectivity,
    push_docker_tar,
    push_docker_tar_with_all_original_tags,
    push_docker_tar_with_original_tags,
)
from .registry import (
    delete_image,
    delete_image_by_digest,
    get_image_info,
    get_manifest,
    get_uncompressed_size,
    list_repositories,
    list_tags,
)

__all__ = [
    "AuthError",
    "BlobUploadError",
    "Crane",
    "Digest",
    "DigestMismatchError",
    "InvalidReferenceError",
    "ManifestError",
    "NotFoundError",
    "Registry",
    "RegistryConnectionError",
    "RegistryError",
    "Repository",
    "Tag",
    "TarReadError",
    "TransportError",
    "ValidationError",
    "check_registry_connectivity",
    "delete_image",
    "delete_image_by_digest",
    "get_image_info",
    "get_manifest",
    "get_uncompressed_size",
    "list_repositories",
    "list_tags",
    "parse_reference",
    "push_docker_tar",
    "push_docker_tar_with_all_original_tags",
    "push_docker_tar_with_original_tags",
]
