"""Options for crane verbs, built from option functions.

    async with Crane(insecure(), with_platform("linux/arm64")) as crane:
        digest = await crane.digest("localhost:5000/app:1.0")
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Union

import aiohttp

from ..authn import DEFAULT_KEYCHAIN, Authenticator, Keychain
from ..core.types import TransportConfig
from ..models import Platform
from ..name import Reference, Repository, parse_reference, parse_repository
from ..remote.options import DEFAULT_JOBS, ProgressCallback, RemoteOptions


@dataclass
class Options:
    config: TransportConfig = field(default_factory=TransportConfig)
    auth: Optional[Authenticator] = None
    keychain: Keychain = DEFAULT_KEYCHAIN
    session: Optional[aiohttp.ClientSession] = None
    platform: Optional[Platform] = None
    insecure: bool = False
    allow_nondistributable: bool = False
    no_clobber: bool = False
    # Deadline for a whole verb, in seconds; requests still use config.timeout.
    timeout: Optional[float] = None
    jobs: int = DEFAULT_JOBS
    progress_callback: Optional[ProgressCallback] = None

    @classmethod
    def make(cls, *opts: "Option") -> "Options":
        options = cls()
        for opt in opts:
            opt(options)
        return options

    def remote(self) -> RemoteOptions:
        return RemoteOptions(
            config=self.config,
            session=self.session,
            auth=self.auth,
            keychain=self.keychain,
            platform=self.platform,
            jobs=self.jobs,
            progress_callback=self.progress_callback,
            allow_nondistributable=self.allow_nondistributable,
        )

    def reference(self, value: str) -> Reference:
        return parse_reference(value, insecure=self.insecure)

    def repository(self, value: str) -> Repository:
        return parse_repository(value, insecure=self.insecure)


Option = Callable[[Options], None]


def insecure() -> Option:
    """Use plain HTTP and skip TLS verification for every registry."""

    def apply(o: Options) -> None:
        o.insecure = True
        o.config = replace(o.config, insecure=True)

    return apply


def with_auth(auth: Authenticator) -> Option:
    def apply(o: Options) -> None:
        o.auth = auth

    return apply


def with_auth_from_keychain(keychain: Keychain) -> Option:
    def apply(o: Options) -> None:
        o.keychain = keychain

    return apply


def with_transport(session: aiohttp.ClientSession) -> Option:
    """Send every request through ``session``; the caller keeps ownership."""

    def apply(o: Options) -> None:
        o.session = session

    return apply


def with_platform(platform: Union[str, Platform, None]) -> Option:
    def apply(o: Options) -> None:
        o.platform = Platform.parse(platform) if isinstance(platform, str) else platform

    return apply


def with_timeout(seconds: float) -> Option:
    def apply(o: Options) -> None:
        o.timeout = seconds

    return apply


def with_user_agent(user_agent: str) -> Option:
    def apply(o: Options) -> None:
        o.config = replace(o.config, user_agent=user_agent)

    return apply


def with_nondistributable() -> Option:
    """Push foreign layers too instead of skipping them."""

    def apply(o: Options) -> None:
        o.allow_nondistributable = True

    return apply


def with_no_clobber(no_clobber: bool = True) -> Option:
    """Refuse to overwrite a tag that already exists."""

    def apply(o: Options) -> None:
        o.no_clobber = no_clobber

    return apply


def with_jobs(jobs: int) -> Option:
    def apply(o: Options) -> None:
        o.jobs = jobs

    return apply


def with_progress(callback: ProgressCallback) -> Option:
    def apply(o: Options) -> None:
        o.progress_callback = callback

    return apply
