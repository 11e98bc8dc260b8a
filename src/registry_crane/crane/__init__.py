"""One-call verbs: pull, push, copy, tag, rebase, flatten and friends."""

from .crane import BASE_DIGEST_ANNOTATION, BASE_NAME_ANNOTATION, Crane, parse_release
from .optimize import optimize_image, optimize_index
from .options import (
    Option,
    Options,
    insecure,
    with_auth,
    with_auth_from_keychain,
    with_jobs,
    with_no_clobber,
    with_nondistributable,
    with_platform,
    with_progress,
    with_timeout,
    with_transport,
    with_user_agent,
)

__all__ = [
    "BASE_DIGEST_ANNOTATION",
    "BASE_NAME_ANNOTATION",
    "Crane",
    "Option",
    "Options",
    "insecure",
    "optimize_image",
    "optimize_index",
    "parse_release",
    "with_auth",
    "with_auth_from_keychain",
    "with_jobs",
    "with_no_clobber",
    "with_nondistributable",
    "with_platform",
    "with_progress",
    "with_timeout",
    "with_transport",
    "with_user_agent",
]
