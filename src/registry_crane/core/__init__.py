"""HTTP plumbing shared by the remote client and the façade."""

from .connectivity import API_VERSION_HEADER, check_connectivity
from .session import check_response, create_session, error_from_response, parse_json_response
from .transport import Challenge, ChallengeCache, Transport
from .types import DEFAULT_CHUNK_SIZE, DEFAULT_USER_AGENT, NO_RETRY, RetryPolicy, TransportConfig

__all__ = [
    "API_VERSION_HEADER",
    "Challenge",
    "ChallengeCache",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_USER_AGENT",
    "NO_RETRY",
    "RetryPolicy",
    "Transport",
    "TransportConfig",
    "check_connectivity",
    "check_response",
    "create_session",
    "error_from_response",
    "parse_json_response",
]
