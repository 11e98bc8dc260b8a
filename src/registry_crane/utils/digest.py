"""Content digests: the ``Hash`` value type and streaming helpers."""

import hashlib
import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, BinaryIO, Iterable, Union

from ..exceptions import DigestMismatchError

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")

SUPPORTED_ALGORITHMS = {"sha256": 64, "sha512": 128}


@dataclass(frozen=True, order=True)
class Hash:
    """A content address, ``algorithm:hex``.

    The canonical form is lowercase; parsing rejects uppercase hex and
    lengths that do not match the algorithm.
    """

    algorithm: str
    hex: str

    @classmethod
    def parse(cls, value: str) -> "Hash":
        if not isinstance(value, str) or ":" not in value:
            raise ValueError(f"cannot parse hash: {value!r}")
        algorithm, hexpart = value.split(":", 1)
        expected = SUPPORTED_ALGORITHMS.get(algorithm)
        if expected is None:
            raise ValueError(f"unsupported hash algorithm: {algorithm!r}")
        if len(hexpart) != expected:
            raise ValueError(
                f"wrong length for {algorithm} hash: got {len(hexpart)}, want {expected}"
            )
        if not DIGEST_PATTERN.match(value):
            raise ValueError(f"hash must be lowercase hex: {value!r}")
        return cls(algorithm, hexpart)

    @classmethod
    def of(cls, data: Union[bytes, bytearray], algorithm: str = "sha256") -> "Hash":
        return cls(algorithm, hashlib.new(algorithm, data).hexdigest())

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"

    def matches(self, other: Union["Hash", str]) -> bool:
        """Compare case-insensitively on hex."""
        if isinstance(other, str):
            if ":" not in other:
                return False
            alg, hexpart = other.split(":", 1)
            return alg == self.algorithm and hexpart.lower() == self.hex
        return other.algorithm == self.algorithm and other.hex.lower() == self.hex


def calculate_digest(data: Union[bytes, bytearray], algorithm: str = "sha256") -> str:
    """Calculate digest of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Digest string in format "algorithm:hex"

    Raises:
        ValueError: If algorithm is not supported
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Data must be bytes or bytearray")

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    return str(Hash.of(data, algorithm))


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if valid digest format
    """
    try:
        Hash.parse(digest)
    except ValueError:
        return False
    return True


def verify_digest(data: Union[bytes, bytearray], expected_digest: str) -> bool:
    """Verify data matches expected digest.

    Raises:
        ValueError: If digest format is invalid
    """
    expected = Hash.parse(expected_digest)
    return Hash.of(data, expected.algorithm) == expected


class Hasher:
    """Incremental digest and byte counter."""

    def __init__(self, algorithm: str = "sha256") -> None:
        self.algorithm = algorithm
        self._h = hashlib.new(algorithm)
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self._h.update(chunk)
        self.size += len(chunk)

    def digest(self) -> Hash:
        return Hash(self.algorithm, self._h.hexdigest())


def hash_file(fileobj: BinaryIO, algorithm: str = "sha256", chunk_size: int = 1 << 16) -> tuple[Hash, int]:
    """Digest a binary file object from its current position."""
    hasher = Hasher(algorithm)
    while True:
        chunk = fileobj.read(chunk_size)
        if not chunk:
            break
        hasher.update(chunk)
    return hasher.digest(), hasher.size


def hash_chunks(chunks: Iterable[bytes], algorithm: str = "sha256") -> tuple[Hash, int]:
    hasher = Hasher(algorithm)
    for chunk in chunks:
        hasher.update(chunk)
    return hasher.digest(), hasher.size


async def ahash_chunks(chunks: AsyncIterable[bytes], algorithm: str = "sha256") -> tuple[Hash, int]:
    hasher = Hasher(algorithm)
    async for chunk in chunks:
        hasher.update(chunk)
    return hasher.digest(), hasher.size


async def verify_stream(
    chunks: AsyncIterable[bytes], expected: Hash, size: int = -1
) -> AsyncIterator[bytes]:
    """Yield ``chunks`` unchanged, failing at EOF if digest or size differ."""
    hasher = Hasher(expected.algorithm)
    async for chunk in chunks:
        hasher.update(chunk)
        yield chunk
    if size >= 0 and hasher.size != size:
        raise DigestMismatchError(f"{size} bytes", f"{hasher.size} bytes", "size of")
    actual = hasher.digest()
    if actual != expected:
        raise DigestMismatchError(expected, actual)
