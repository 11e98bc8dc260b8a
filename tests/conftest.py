"""Test configuration and fixtures."""

import asyncio
import threading

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from registry_crane.remote import RemoteOptions
from registry_crane.server import create_app, start


@pytest.fixture
def registry_app() -> web.Application:
    """A fresh in-memory registry application."""
    return create_app()


@pytest_asyncio.fixture
async def registry(registry_app):
    """Serve ``registry_app`` on a free loopback port; yields ``host:port``."""
    server = TestServer(registry_app, host="127.0.0.1")
    await server.start_server()
    try:
        yield f"127.0.0.1:{server.port}"
    finally:
        await server.close()


@pytest_asyncio.fixture
async def options():
    """Remote options whose session is closed after the test."""
    async with RemoteOptions() as opts:
        yield opts


class ThreadedRegistry:
    """A registry served from its own event loop thread.

    Used by tests whose code under test calls ``asyncio.run`` itself.
    """

    def __init__(self, app: web.Application) -> None:
        self.app = app
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.runner = None
        self.host = ""

    def __enter__(self) -> "ThreadedRegistry":
        self.thread.start()
        future = asyncio.run_coroutine_threadsafe(start(self.app, "127.0.0.1", 0), self.loop)
        self.runner = future.result(timeout=10)
        port = self.runner.addresses[0][1]
        self.host = f"127.0.0.1:{port}"
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        asyncio.run_coroutine_threadsafe(self.runner.cleanup(), self.loop).result(timeout=10)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=10)
        self.loop.close()


@pytest.fixture
def threaded_registry():
    with ThreadedRegistry(create_app()) as server:
        yield server
