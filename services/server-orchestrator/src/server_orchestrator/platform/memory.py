"""Process-local platform used for local runs (PLATFORM_BACKEND=memory) and tests."""

import asyncio
import time

import structlog

from ..errors import PlatformError, ResourceConflictError
from ..models import (
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    MANAGED_BY,
    PlatformResource,
    ResourceDescriptor,
    ResourceKind,
    WorkloadStatus,
)

logger = structlog.get_logger()


class InMemoryPlatform:
    """Dict-backed platform with the same conflict rules as a real cluster.

    Knobs for exercising failure paths:
      * ``fail_create``: kinds whose create raises PlatformError
      * ``never_ready``: workload names that never report a ready replica
      * ``lingering``: resource names that survive delete
      * ``ready_after``: seconds before a (re)started workload becomes ready
    """

    def __init__(self, ready_after: float = 0.0, latency: float = 0.0):
        self.ready_after = ready_after
        self.latency = latency
        self.fail_create: set[ResourceKind] = set()
        self.never_ready: set[str] = set()
        self.lingering: set[str] = set()
        self.calls: list[tuple[str, str, str]] = []
        self._resources: dict[tuple[ResourceKind, str], PlatformResource] = {}
        self._replicas: dict[str, int] = {}
        self._started_at: dict[str, float] = {}
        self._config_maps: dict[str, dict[str, str]] = {}

    async def _tick(self) -> None:
        # Yield so concurrent callers interleave like they would against a remote API
        await asyncio.sleep(self.latency)

    def resources(self) -> list[PlatformResource]:
        return list(self._resources.values())

    async def create(self, descriptor: ResourceDescriptor) -> PlatformResource:
        await self._tick()
        self.calls.append(("create", descriptor.kind.value, descriptor.name))
        if descriptor.kind in self.fail_create:
            raise PlatformError(f"injected create failure for {descriptor.kind.value} {descriptor.name}")
        key = (descriptor.kind, descriptor.name)
        if key in self._resources:
            raise ResourceConflictError(f"{descriptor.kind.value} '{descriptor.name}' already exists")

        node_ports: list[int] = []
        if descriptor.kind == ResourceKind.ENDPOINT:
            spec_ports = descriptor.manifest.get("spec", {}).get("ports", [])
            node_ports = [p["nodePort"] for p in spec_ports if p.get("nodePort")]
            taken = {
                port
                for resource in self._resources.values()
                for port in resource.node_ports
            }
            clash = sorted(taken.intersection(node_ports))
            if clash:
                raise ResourceConflictError(f"NodePort(s) {clash} already allocated")
        else:
            self._replicas[descriptor.name] = (
                descriptor.manifest.get("spec", {}).get("replicas", 1)
            )
            self._started_at[descriptor.name] = time.monotonic()

        resource = PlatformResource(
            kind=descriptor.kind,
            name=descriptor.name,
            labels=dict(descriptor.labels),
            node_ports=node_ports,
            cluster_ip="10.96.0.1" if descriptor.kind == ResourceKind.ENDPOINT else None,
        )
        self._resources[key] = resource
        return resource

    async def delete(self, kind: ResourceKind, name: str) -> bool:
        await self._tick()
        self.calls.append(("delete", kind.value, name))
        key = (kind, name)
        if key not in self._resources:
            return False
        if name in self.lingering:
            return True
        del self._resources[key]
        if kind == ResourceKind.WORKLOAD:
            self._replicas.pop(name, None)
            self._started_at.pop(name, None)
        return True

    async def get(self, kind: ResourceKind, name: str) -> PlatformResource | None:
        await self._tick()
        return self._resources.get((kind, name))

    async def list(
        self,
        kind: ResourceKind | None = None,
        owner_token: str | None = None,
    ) -> list[PlatformResource]:
        await self._tick()
        return [
            resource
            for resource in self._resources.values()
            if resource.labels.get(LABEL_MANAGED_BY) == MANAGED_BY
            and (kind is None or resource.kind == kind)
            and (owner_token is None or resource.owner_token == owner_token)
        ]

    async def workload_status(self, name: str) -> WorkloadStatus | None:
        await self._tick()
        if (ResourceKind.WORKLOAD, name) not in self._resources:
            return None
        replicas = self._replicas.get(name, 0)
        elapsed = time.monotonic() - self._started_at.get(name, 0.0)
        ready = name not in self.never_ready and elapsed >= self.ready_after
        return WorkloadStatus(name=name, replicas=replicas, ready_replicas=replicas if ready else 0)

    async def scale(self, name: str, replicas: int) -> None:
        await self._tick()
        self.calls.append(("scale", ResourceKind.WORKLOAD.value, name))
        if (ResourceKind.WORKLOAD, name) not in self._resources:
            raise PlatformError(f"Deployment '{name}' not found", status=404)
        self._replicas[name] = replicas
        self._started_at[name] = time.monotonic()

    async def restart(self, instance: str) -> int:
        await self._tick()
        restarted = 0
        for (kind, name), resource in self._resources.items():
            if kind == ResourceKind.WORKLOAD and resource.labels.get(LABEL_INSTANCE) == instance:
                self._started_at[name] = time.monotonic()
                restarted += self._replicas.get(name, 0)
        return restarted

    async def read_config_map(self, name: str) -> dict[str, str] | None:
        await self._tick()
        data = self._config_maps.get(name)
        return dict(data) if data is not None else None

    async def write_config_map(
        self, name: str, data: dict[str, str], labels: dict[str, str] | None = None
    ) -> None:
        await self._tick()
        self._config_maps[name] = dict(data)

    async def close(self) -> None:
        logger.debug("memory_platform_closed", resources=len(self._resources))
