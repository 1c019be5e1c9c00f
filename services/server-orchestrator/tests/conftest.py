import fakeredis.aioredis
import pytest

from server_orchestrator.config import Settings
from server_orchestrator.dependencies import build_services
from server_orchestrator.models import (
    CreateFtpServerRequest,
    CreateNasServerRequest,
    CreateSftpServerRequest,
)
from server_orchestrator.platform import InMemoryPlatform


@pytest.fixture
def settings():
    """Fast timeouts so failure paths finish in milliseconds."""
    return Settings(
        platform_backend="memory",
        instance_id="testinstance",
        external_host="sim.test",
        readiness_timeout=0.3,
        readiness_poll_interval=0.01,
        deletion_timeout=0.3,
        deletion_poll_interval=0.01,
        busy_wait_timeout=1.0,
        discovery_timeout=0.2,
    )


@pytest.fixture
def platform():
    return InMemoryPlatform()


@pytest.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def services(settings, platform, redis_client):
    services = build_services(settings, gateway=platform, redis_client=redis_client)
    yield services
    await services.lifecycle.shutdown()


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


@pytest.fixture
def registry(services):
    return services.registry


@pytest.fixture
def nas_request():
    def make(name: str, path: str = "input", **kwargs) -> CreateNasServerRequest:
        return CreateNasServerRequest(name=name, backing_path=path, **kwargs)

    return make


@pytest.fixture
def ftp_request():
    def make(name: str, path: str | None = None) -> CreateFtpServerRequest:
        return CreateFtpServerRequest(
            name=name,
            backing_path=path,
            credentials={"username": "tester", "password": "secret123"},
        )

    return make


@pytest.fixture
def sftp_request():
    def make(name: str, **kwargs) -> CreateSftpServerRequest:
        return CreateSftpServerRequest(
            name=name,
            credentials={"username": "tester", "password": "secret123"},
            **kwargs,
        )

    return make
