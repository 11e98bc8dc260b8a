"""Digest and compression helpers."""

from .digest import Hash, Hasher, calculate_digest, validate_digest

__all__ = ["Hash", "Hasher", "calculate_digest", "validate_digest"]
