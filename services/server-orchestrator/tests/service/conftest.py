from collections.abc import AsyncGenerator

from httpx import ASGITransport, AsyncClient
import pytest

from server_orchestrator.main import create_app


@pytest.fixture
def app(settings, services):
    return create_app(settings, services=services)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
