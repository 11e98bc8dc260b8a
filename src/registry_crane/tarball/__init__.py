"""Docker tarballs: ``docker save`` archives, current and legacy layouts."""

from .legacy import write_legacy
from .reader import TarballEntry, TarballImage, TarballReader, image_from_path, images_from_path
from .tags import extract_original_tags, get_primary_tag, parse_repository_tag
from .validator import is_docker_tar, validate_docker_tar
from .writer import write, write_to

__all__ = [
    "TarballEntry",
    "TarballImage",
    "TarballReader",
    "extract_original_tags",
    "get_primary_tag",
    "image_from_path",
    "images_from_path",
    "is_docker_tar",
    "parse_repository_tag",
    "validate_docker_tar",
    "write",
    "write_legacy",
    "write_to",
]
