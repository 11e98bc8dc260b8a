"""Custom exceptions for the registry client, image engine and server."""

from dataclasses import dataclass, field
from typing import Any


class RegistryError(Exception):
    """Base exception for all registry-related errors.

    ``context`` prefixes the message with what the caller was doing, e.g.
    ``"pulling localhost:5000/app:1.0: MANIFEST_UNKNOWN: ..."``.
    """

    context: str = ""

    def describe(self) -> str:
        return super().__str__()

    def add_context(self, context: str) -> None:
        self.context = f"{context}: {self.context}" if self.context else context

    def __str__(self) -> str:
        if self.context:
            return f"{self.context}: {self.describe()}"
        return self.describe()


class InvalidReferenceError(RegistryError, ValueError):
    """Raised when an image reference string is malformed."""

    pass


class AuthError(RegistryError):
    """Raised when credentials are refused or cannot be resolved."""

    pass


class RegistryConnectionError(RegistryError):
    """Raised when unable to connect to the registry."""

    pass


class NotFoundError(RegistryError):
    """Raised when a manifest, blob, layer or repository does not exist."""

    pass


@dataclass
class Diagnostic:
    """A single entry of a registry error response body."""

    code: str
    message: str = ""
    detail: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Diagnostic":
        return cls(
            code=str(data.get("code", "UNKNOWN")),
            message=str(data.get("message", "")),
            detail=data.get("detail"),
        )

    def __str__(self) -> str:
        if self.detail:
            return f"{self.code}: {self.message}; {self.detail}"
        return f"{self.code}: {self.message}"


@dataclass(eq=False)
class TransportError(RegistryError):
    """Raised when the registry answers with an unexpected status.

    The ``errors`` list carries the structured codes of the distribution
    spec (``MANIFEST_UNKNOWN``, ``BLOB_UNKNOWN``, ``DENIED`` ...).
    """

    status: int
    errors: list[Diagnostic] = field(default_factory=list)
    method: str = ""
    url: str = ""
    raw_body: str = ""

    def __post_init__(self) -> None:
        super().__init__(str(self))

    @property
    def codes(self) -> list[str]:
        return [e.code for e in self.errors]

    @property
    def diagnostic_url(self) -> str:
        return self.url

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_temporary(self) -> bool:
        if self.status in (408, 429, 500, 502, 503, 504):
            return True
        return any(c in ("TOOMANYREQUESTS", "UNAVAILABLE") for c in self.codes)

    def describe(self) -> str:
        prefix = f"{self.method} {self.url}".strip()
        if self.errors:
            detail = "; ".join(str(e) for e in self.errors)
        elif self.raw_body:
            detail = f"unexpected status code {self.status}: {self.raw_body}"
        else:
            detail = f"unexpected status code {self.status}"
        return f"{prefix}: {detail}" if prefix else detail


class RegistryNotFoundError(TransportError, NotFoundError):
    """Raised when the registry answers 404."""

    pass


class BlobUploadError(RegistryError):
    """Raised when blob upload fails."""

    pass


class ManifestError(RegistryError):
    """Raised when manifest operations fail."""

    pass


class DigestMismatchError(RegistryError):
    """Raised when computed content digest differs from the declared one."""

    def __init__(self, expected: Any, actual: Any, what: str = "content") -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"{what} digest mismatch: expected {expected}, got {actual}")


class NotComputedError(RegistryError):
    """Raised when a stream layer is queried before it has been consumed."""

    pass


class StreamConsumedError(RegistryError):
    """Raised when a one-shot stream layer is read a second time."""

    pass


class NotBasedError(RegistryError):
    """Raised when an image is not based on the declared old base."""

    pass


class RebaseIncompatibleError(RegistryError):
    """Raised when layer and history counts make a rebase impossible."""

    pass


class ValidationError(RegistryError):
    """Raised when an image, index or archive violates its invariants."""

    pass


class UnsupportedMediaTypeError(RegistryError):
    """Raised for media types outside the recognised set."""

    pass


class TarReadError(RegistryError):
    """Raised when unable to read or parse tar file."""

    pass
