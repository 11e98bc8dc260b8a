"""Credentials: authenticators and keychains."""

from .authenticator import (
    ANONYMOUS,
    Anonymous,
    AuthConfig,
    Authenticator,
    Basic,
    Bearer,
    FromConfig,
    Refreshing,
)
from .keychain import (
    DEFAULT_KEYCHAIN,
    DefaultKeychain,
    Keychain,
    MultiKeychain,
    StaticKeychain,
    run_credential_helper,
)

__all__ = [
    "ANONYMOUS",
    "Anonymous",
    "AuthConfig",
    "Authenticator",
    "Basic",
    "Bearer",
    "FromConfig",
    "Refreshing",
    "DEFAULT_KEYCHAIN",
    "DefaultKeychain",
    "Keychain",
    "MultiKeychain",
    "StaticKeychain",
    "run_credential_helper",
]
