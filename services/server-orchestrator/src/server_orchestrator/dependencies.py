"""Service wiring and FastAPI dependencies."""

from dataclasses import dataclass

from fastapi import Request
from redis.asyncio import Redis
import structlog

from .config import Settings
from .configuration import ConfigurationService
from .discovery import ConfigMapDiscoveryStore, DiscoverySync, RedisDiscoveryStore
from .events import EventPublisher
from .lifecycle import LifecycleController
from .platform import InMemoryPlatform, PlatformGateway
from .ports import PortAllocator
from .readiness import ReadinessWatcher
from .registry import ServerRegistry
from .topology import static_records

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    registry: ServerRegistry
    gateway: PlatformGateway
    discovery: DiscoverySync
    lifecycle: LifecycleController
    configuration: ConfigurationService
    redis: Redis | None = None

    async def close(self) -> None:
        await self.lifecycle.shutdown()
        await self.gateway.close()
        if self.redis is not None:
            await self.redis.aclose()


def build_gateway(settings: Settings) -> PlatformGateway:
    if settings.platform_backend == "memory":
        return InMemoryPlatform()
    from .platform.kubernetes import KubernetesGateway

    return KubernetesGateway(settings.namespace, in_cluster=settings.kube_in_cluster)


def build_services(
    settings: Settings,
    gateway: PlatformGateway | None = None,
    redis_client: Redis | None = None,
) -> Services:
    """Assemble the orchestrator. Missing collaborators are created from settings."""
    gateway = gateway or build_gateway(settings)
    needs_redis = settings.discovery_backend == "redis" or settings.events_enabled
    if redis_client is None and needs_redis:
        redis_client = Redis.from_url(settings.redis_url, decode_responses=True)

    registry = ServerRegistry()
    registry.seed_static(static_records(settings))

    if settings.discovery_backend == "configmap":
        store = ConfigMapDiscoveryStore(gateway, settings.resolved_endpoints_config_map)
    else:
        store = RedisDiscoveryStore(redis_client, prefix=settings.discovery_key_prefix)
    discovery = DiscoverySync(
        store, registry, namespace=settings.namespace, timeout=settings.discovery_timeout
    )
    events = EventPublisher(
        redis_client if settings.events_enabled else None, prefix=settings.events_prefix
    )

    lifecycle = LifecycleController(
        settings=settings,
        registry=registry,
        gateway=gateway,
        allocator=PortAllocator(gateway, settings.port_range_min, settings.port_range_max),
        passive_allocator=PortAllocator(
            gateway,
            settings.passive_port_range_min,
            settings.passive_port_range_max,
            name="passive",
        ),
        readiness=ReadinessWatcher(
            gateway,
            timeout=settings.readiness_timeout,
            poll_interval=settings.readiness_poll_interval,
        ),
        discovery=discovery,
        events=events,
    )
    logger.info(
        "services_built",
        platform=settings.platform_backend,
        discovery=settings.discovery_backend,
        namespace=settings.namespace,
    )
    return Services(
        settings=settings,
        registry=registry,
        gateway=gateway,
        discovery=discovery,
        lifecycle=lifecycle,
        configuration=ConfigurationService(settings, lifecycle),
        redis=redis_client,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_lifecycle(request: Request) -> LifecycleController:
    return request.app.state.services.lifecycle


def get_discovery(request: Request) -> DiscoverySync:
    return request.app.state.services.discovery


def get_configuration(request: Request) -> ConfigurationService:
    return request.app.state.services.configuration
