"""Media type taxonomy for the Docker and OCI image families."""

OCI_CONTENT_DESCRIPTOR = "application/vnd.oci.descriptor.v1+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST_SCHEMA1 = "application/vnd.oci.image.manifest.v1+json"
OCI_CONFIG_JSON = "application/vnd.oci.image.config.v1+json"
OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"
OCI_LAYER_ZSTD = "application/vnd.oci.image.layer.v1.tar+zstd"
OCI_RESTRICTED_LAYER = "application/vnd.oci.image.layer.nondistributable.v1.tar+gzip"
OCI_UNCOMPRESSED_LAYER = "application/vnd.oci.image.layer.v1.tar"
OCI_UNCOMPRESSED_RESTRICTED_LAYER = "application/vnd.oci.image.layer.nondistributable.v1.tar"
OCI_EMPTY_JSON = "application/vnd.oci.empty.v1+json"

DOCKER_MANIFEST_SCHEMA1 = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_MANIFEST_SCHEMA1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"
DOCKER_MANIFEST_SCHEMA2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"
DOCKER_CONFIG_JSON = "application/vnd.docker.container.image.v1+json"
DOCKER_PLUGIN_CONFIG = "application/vnd.docker.plugin.v1+json"
DOCKER_FOREIGN_LAYER = "application/vnd.docker.image.rootfs.foreign.diff.tar.gzip"
DOCKER_UNCOMPRESSED_LAYER = "application/vnd.docker.image.rootfs.diff.tar"

APPLICATION_JSON = "application/json"

INDEX_TYPES = frozenset({OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST})
IMAGE_TYPES = frozenset({OCI_MANIFEST_SCHEMA1, DOCKER_MANIFEST_SCHEMA2})
SCHEMA1_TYPES = frozenset({DOCKER_MANIFEST_SCHEMA1, DOCKER_MANIFEST_SCHEMA1_SIGNED})
CONFIG_TYPES = frozenset({OCI_CONFIG_JSON, DOCKER_CONFIG_JSON})
LAYER_TYPES = frozenset(
    {
        OCI_LAYER,
        OCI_LAYER_ZSTD,
        OCI_RESTRICTED_LAYER,
        OCI_UNCOMPRESSED_LAYER,
        OCI_UNCOMPRESSED_RESTRICTED_LAYER,
        DOCKER_LAYER,
        DOCKER_FOREIGN_LAYER,
        DOCKER_UNCOMPRESSED_LAYER,
    }
)
NON_DISTRIBUTABLE_TYPES = frozenset(
    {DOCKER_FOREIGN_LAYER, OCI_RESTRICTED_LAYER, OCI_UNCOMPRESSED_RESTRICTED_LAYER}
)

# Every manifest type a client can handle, in preference order.
MANIFEST_ACCEPT = (
    OCI_IMAGE_INDEX,
    OCI_MANIFEST_SCHEMA1,
    DOCKER_MANIFEST_LIST,
    DOCKER_MANIFEST_SCHEMA2,
    DOCKER_MANIFEST_SCHEMA1,
    DOCKER_MANIFEST_SCHEMA1_SIGNED,
)

_DOCKER_TO_OCI = {
    DOCKER_LAYER: OCI_LAYER,
    DOCKER_UNCOMPRESSED_LAYER: OCI_UNCOMPRESSED_LAYER,
    DOCKER_FOREIGN_LAYER: OCI_RESTRICTED_LAYER,
    DOCKER_MANIFEST_SCHEMA2: OCI_MANIFEST_SCHEMA1,
    DOCKER_MANIFEST_LIST: OCI_IMAGE_INDEX,
    DOCKER_CONFIG_JSON: OCI_CONFIG_JSON,
}
_OCI_TO_DOCKER = {v: k for k, v in _DOCKER_TO_OCI.items()}
_OCI_TO_DOCKER[OCI_UNCOMPRESSED_RESTRICTED_LAYER] = DOCKER_UNCOMPRESSED_LAYER


def is_index(media_type: str) -> bool:
    return media_type in INDEX_TYPES


def is_image(media_type: str) -> bool:
    return media_type in IMAGE_TYPES


def is_schema1(media_type: str) -> bool:
    return media_type in SCHEMA1_TYPES


def is_config(media_type: str) -> bool:
    return media_type in CONFIG_TYPES


def is_layer(media_type: str) -> bool:
    return media_type in LAYER_TYPES


def is_distributable(media_type: str) -> bool:
    """Foreign (non-distributable) layers must not be pushed by default."""
    return media_type not in NON_DISTRIBUTABLE_TYPES


def is_gzipped(media_type: str) -> bool:
    return media_type.endswith(("+gzip", ".tar.gzip"))


def is_oci(media_type: str) -> bool:
    return media_type.startswith("application/vnd.oci.")


def is_docker(media_type: str) -> bool:
    return media_type.startswith("application/vnd.docker.")


def to_oci(media_type: str) -> str:
    """Map a Docker media type to its OCI counterpart; others pass through."""
    return _DOCKER_TO_OCI.get(media_type, media_type)


def to_docker(media_type: str) -> str:
    """Map an OCI media type to its Docker counterpart; others pass through."""
    return _OCI_TO_DOCKER.get(media_type, media_type)


def layer_type_for(manifest_media_type: str, compressed: bool = True) -> str:
    """Pick the layer type of the same family as ``manifest_media_type``."""
    if is_oci(manifest_media_type):
        return OCI_LAYER if compressed else OCI_UNCOMPRESSED_LAYER
    return DOCKER_LAYER if compressed else DOCKER_UNCOMPRESSED_LAYER


def config_type_for(manifest_media_type: str) -> str:
    if is_oci(manifest_media_type):
        return OCI_CONFIG_JSON
    return DOCKER_CONFIG_JSON
