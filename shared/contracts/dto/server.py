"""Server record contract shared by the orchestrator API, CLI and discovery consumers."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_EXPORT_OPTIONS = "rw,sync,no_subtree_check,no_root_squash"


class ServerProtocol(str, Enum):
    FTP = "FTP"
    SFTP = "SFTP"
    NAS = "NAS"


class ServerSource(str, Enum):
    STATIC = "Static"
    DYNAMIC = "Dynamic"


class ServerStatus(str, Enum):
    """Server lifecycle.

    Pending -> Provisioning -> Running -> Stopping -> Deleted,
    Failed is reachable from Pending or Provisioning.
    Stopped is a scaled-down server that still owns its resources.
    """

    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    STOPPING = "Stopping"
    STOPPED = "Stopped"
    DELETED = "Deleted"
    FAILED = "Failed"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Credentials(CamelModel):
    username: str
    password: str


class ServerRecord(CamelModel):
    """One protocol server, static or dynamic."""

    name: str
    protocol: ServerProtocol
    source: ServerSource
    status: ServerStatus = ServerStatus.PENDING
    host: str
    port: int | None = None
    credentials: Credentials | None = None
    backing_path: str | None = None
    owner_token: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # In-cluster address of the network endpoint resource
    service_name: str | None = None
    cluster_port: int | None = None
    passive_ports: tuple[int, int] | None = None
    # Protocol options the workload was composed with (uid/gid, NFS export options)
    options: dict[str, Any] = Field(default_factory=dict, exclude=True)

    discovery_stale: bool = False
    needs_sweep: bool = False
    error: str | None = None

    @property
    def is_static(self) -> bool:
        return self.source == ServerSource.STATIC


class DiscoveryEntry(CamelModel):
    """Discovery document entry for a running server."""

    name: str
    protocol: ServerProtocol
    host: str
    port: int
    credentials: Credentials | None = None
    service_address: str | None = None

    @classmethod
    def from_record(cls, record: ServerRecord, namespace: str | None = None) -> "DiscoveryEntry":
        service_address = None
        if record.service_name and record.cluster_port and namespace:
            service_address = (
                f"{record.service_name}.{namespace}.svc.cluster.local:{record.cluster_port}"
            )
        return cls(
            name=record.name,
            protocol=record.protocol,
            host=record.host,
            port=record.port or 0,
            credentials=record.credentials,
            service_address=service_address,
        )
