from typing import AsyncGenerator

import pytest
import pytest_asyncio
from graph_server import GraphServer
from graph_media_client.graph_media_client import GraphMediaClient
from graph_media_client.models import ClientConfig, ReelUploadConfig


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[GraphServer, None]:
    """Start and yield a scripted GraphServer on a random port."""
    port = unused_tcp_port_factory()
    server_instance = GraphServer()
    await server_instance.start(port=port)
    try:
        yield server_instance
    finally:
        await server_instance.stop()


@pytest.fixture
def config(server) -> ClientConfig:
    """Point both graph hosts at the fake server, single attempt by default."""
    return ClientConfig(
        graph_url=f"{server.base_url}/",
        video_url=f"{server.base_url}/",
        timeout=5.0,
        upload_timeout=5.0,
        retry_count=0,
    )


@pytest_asyncio.fixture
async def client(config) -> AsyncGenerator[GraphMediaClient, None]:
    async with GraphMediaClient(config) as graph_client:
        yield graph_client


@pytest.fixture
def upload_config() -> ReelUploadConfig:
    """Reel config without delays between polls."""
    return ReelUploadConfig(
        uploading_interval=0,
        copyright_interval=0,
        processing_interval=0,
        publishing_interval=0,
        max_iterations=5,
    )


class FakeOperation:
    """Replays scripted outcomes; exceptions are raised, strings returned."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome
