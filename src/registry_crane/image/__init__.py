"""Image, index and layer abstractions."""

from .base import Artifact, Image, ImageIndex, find_images, find_manifests, image_for_platform
from .empty import EMPTY_IMAGE, EMPTY_INDEX
from .layer import (
    Layer,
    StaticLayer,
    StreamLayer,
    layer_from_bytes,
    layer_from_file,
    layer_from_files,
    layer_from_opener,
)

__all__ = [
    "Artifact",
    "Image",
    "ImageIndex",
    "find_images",
    "find_manifests",
    "image_for_platform",
    "EMPTY_IMAGE",
    "EMPTY_INDEX",
    "Layer",
    "StaticLayer",
    "StreamLayer",
    "layer_from_bytes",
    "layer_from_file",
    "layer_from_files",
    "layer_from_opener",
]
