"""Platform gateway contract.

The gateway is the only component that talks to the container platform.
Everything else works with ResourceDescriptor / PlatformResource.
"""

from typing import Protocol

from ..models import PlatformResource, ResourceDescriptor, ResourceKind, WorkloadStatus


class PlatformGateway(Protocol):
    async def create(self, descriptor: ResourceDescriptor) -> PlatformResource:
        """Create a resource. Raises ResourceConflictError if it (or a NodePort) exists."""
        ...

    async def delete(self, kind: ResourceKind, name: str) -> bool:
        """Delete a resource. Returns False if it was already gone."""
        ...

    async def get(self, kind: ResourceKind, name: str) -> PlatformResource | None: ...

    async def list(
        self,
        kind: ResourceKind | None = None,
        owner_token: str | None = None,
    ) -> list[PlatformResource]:
        """List orchestrator-managed resources, optionally narrowed to one owner token."""
        ...

    async def workload_status(self, name: str) -> WorkloadStatus | None: ...

    async def scale(self, name: str, replicas: int) -> None: ...

    async def restart(self, instance: str) -> int:
        """Recreate the pods of a server instance. Returns how many were deleted."""
        ...

    async def read_config_map(self, name: str) -> dict[str, str] | None: ...

    async def write_config_map(
        self, name: str, data: dict[str, str], labels: dict[str, str] | None = None
    ) -> None: ...

    async def close(self) -> None: ...


async def used_node_ports(gateway: PlatformGateway) -> set[int]:
    """NodePorts held by live orchestrator-managed endpoints."""
    endpoints = await gateway.list(kind=ResourceKind.ENDPOINT)
    return {port for endpoint in endpoints for port in endpoint.node_ports}
