"""Settings shared by every remote operation of one client."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import aiohttp

from ..authn import DEFAULT_KEYCHAIN, Authenticator, Keychain
from ..core.session import create_session
from ..core.transport import ChallengeCache, Transport
from ..core.types import TransportConfig
from ..models import Platform
from ..name import Registry, Repository

logger = logging.getLogger(__name__)

DEFAULT_JOBS = 4

ProgressCallback = Callable[[int, int, str], Any]


@dataclass
class RemoteOptions:
    """Credentials, HTTP session and transfer settings for remote calls.

    Use as an async context manager so a session created here is closed:

        async with RemoteOptions(config=TransportConfig(insecure=True)) as opts:
            img = await remote.image(ref, opts)
    """

    config: TransportConfig = field(default_factory=TransportConfig)
    session: Optional[aiohttp.ClientSession] = None
    auth: Optional[Authenticator] = None
    keychain: Keychain = DEFAULT_KEYCHAIN
    platform: Optional[Platform] = None
    jobs: int = DEFAULT_JOBS
    progress_callback: Optional[ProgressCallback] = None
    allow_nondistributable: bool = False
    challenges: ChallengeCache = field(default_factory=ChallengeCache)
    _own_session: bool = field(default=False, repr=False)
    _transports: dict[tuple[str, tuple[str, ...]], Transport] = field(default_factory=dict, repr=False)

    async def __aenter__(self) -> "RemoteOptions":
        await self.get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = await create_session(self.config)
            self._own_session = True
        return self.session

    async def close(self) -> None:
        if self._own_session and self.session is not None and not self.session.closed:
            await self.session.close()
        self._transports.clear()

    async def transport(self, repo: Repository, *actions: str, extra_scopes: tuple[str, ...] = ()) -> Transport:
        """The transport for ``repo`` holding tokens for ``actions``.

        Transports are reused per repository and scope set so tokens are
        fetched once.
        """
        scopes = (repo.scope(",".join(actions or ("pull",))),) + tuple(extra_scopes)
        return await self.transport_for(repo.registry, scopes)

    async def transport_for(self, registry: Registry, scopes: tuple[str, ...]) -> Transport:
        key = (registry.host, scopes)
        transport = self._transports.get(key)
        if transport is None:
            auth = self.auth if self.auth is not None else await self.keychain.resolve(registry)
            transport = Transport(
                await self.get_session(),
                registry,
                auth,
                scopes,
                self.config,
                self.challenges,
            )
            self._transports[key] = transport
        return transport

    async def progress(self, done: int, total: int, message: str) -> None:
        callback = self.progress_callback
        if callback is None:
            return
        result = callback(done, total, message)
        if inspect.isawaitable(result):
            await result

    def semaphore(self) -> asyncio.Semaphore:
        return asyncio.Semaphore(max(1, self.jobs))
