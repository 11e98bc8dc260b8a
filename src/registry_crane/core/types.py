"""Transport configuration types."""

from dataclasses import dataclass, field
from typing import Optional

DEFAULT_USER_AGENT = "registry-crane/0.1.0"
DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024  # 5MB


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff for transient failures."""

    attempts: int = 3
    initial_backoff: float = 0.5
    factor: float = 2.0
    max_backoff: float = 10.0
    statuses: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.initial_backoff * self.factor ** (attempt - 1), self.max_backoff)


NO_RETRY = RetryPolicy(attempts=1)


@dataclass
class TransportConfig:
    """Settings shared by every request a client makes.

    Attributes:
        timeout: Per-request timeout in seconds
        retry: Retry policy for idempotent requests
        chunk_size: Upload chunk size; blobs up to this size go in one PUT
        user_agent: Value of the User-Agent header
        insecure: Use plain HTTP and skip TLS verification
        ca_file: Extra CA bundle (defaults to ``SSL_CERT_FILE``)
        ca_dir: Extra CA directory (defaults to ``SSL_CERT_DIR``)
    """

    timeout: float = 300
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    user_agent: str = DEFAULT_USER_AGENT
    insecure: bool = False
    ca_file: Optional[str] = None
    ca_dir: Optional[str] = None
