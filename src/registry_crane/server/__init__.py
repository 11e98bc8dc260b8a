"""In-process v2 registry for tests and local workflows."""

from .app import STATE, RegistryState, create_app, serve, start
from .errors import ServerError
from .manifests import ManifestStore
from .storage import BlobStore, DiskBlobStore, MemoryBlobStore, SplitBlobStore, blob_store

__all__ = [
    "STATE",
    "BlobStore",
    "DiskBlobStore",
    "ManifestStore",
    "MemoryBlobStore",
    "RegistryState",
    "ServerError",
    "SplitBlobStore",
    "blob_store",
    "create_app",
    "serve",
    "start",
]
