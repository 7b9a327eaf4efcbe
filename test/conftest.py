from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from platform_api_client.auth import AccessToken, ApplicationToken, Token
from platform_api_client.client import PlatformClient
from platform_api_client.models import WaitConfig
from platform_server import TEST_PRIVATE_KEY, PlatformServer

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[Tuple[PlatformServer, int], None]:
    """Start and yield a test PlatformServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = PlatformServer()
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def token_dict() -> dict:
    return {
        "access_token": {
            "token_id": "token-1",
            "private_key": TEST_PRIVATE_KEY,
            "created_at": "2019-01-01T00:00:00Z",
        },
        "base_api_url": "https://api.test",
    }


def make_token(port: int, token_cls=Token) -> Token:
    return token_cls(
        access_token=AccessToken(token_id="token-1", private_key=TEST_PRIVATE_KEY),
        base_api_url=BASE_URL_TEMPLATE.format(port),
    )


@pytest_asyncio.fixture
async def client(server) -> AsyncGenerator[PlatformClient, None]:
    """Provide a client pointed at the test server, with fast polling."""
    _, port = server
    async with PlatformClient(
        make_token(port), wait_config=WaitConfig(poll_interval=0.05, max_wait=2.0)
    ) as platform_client:
        yield platform_client


@pytest.fixture
def app_token_factory():
    return lambda port: make_token(port, ApplicationToken)
