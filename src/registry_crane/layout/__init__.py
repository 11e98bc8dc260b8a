"""OCI image layout read and write."""

from .layout import (
    INDEX_FILE,
    LAYOUT_FILE,
    REF_NAME_ANNOTATION,
    Layout,
    LayoutImage,
    LayoutIndex,
    LayoutLayer,
    ref_name_matcher,
)

__all__ = [
    "INDEX_FILE",
    "LAYOUT_FILE",
    "REF_NAME_ANNOTATION",
    "Layout",
    "LayoutImage",
    "LayoutIndex",
    "LayoutLayer",
    "ref_name_matcher",
]
