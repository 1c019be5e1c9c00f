"""Server orchestrator configuration.

Optional everywhere: defaults target an in-cluster deployment in the
``file-simulator`` namespace with the dynamic NodePort range 32150-32199.
"""

from functools import lru_cache
from typing import Literal
import uuid

from pydantic import Field, model_validator

from shared.config import BaseSettings, redis_url_field


class Settings(BaseSettings):
    """Server orchestrator settings."""

    service_name: str = "server-orchestrator"
    http_host: str = "0.0.0.0"  # noqa: S104
    http_port: int = 8000

    # Platform
    platform_backend: Literal["kubernetes", "memory"] = Field(
        default="kubernetes",
        description="kubernetes = real cluster, memory = process-local platform for local runs",
    )
    kube_in_cluster: bool = True
    namespace: str = "file-simulator"
    release_prefix: str = "file-sim-file-simulator"
    pvc_name: str | None = Field(default=None, description="Shared data PVC, defaults to <release_prefix>-pvc")
    external_host: str = Field(
        default="file-simulator.local",
        description="Externally routable host that fronts the NodePorts",
    )

    # Orchestrator identity, stamped into every owner token
    instance_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    # Downward API values; enable native cascade delete via ownerReferences
    pod_name: str | None = None
    pod_uid: str | None = None

    # Port pools
    port_range_min: int = Field(default=32150, ge=1, le=65535)
    port_range_max: int = Field(default=32199, ge=1, le=65535)
    passive_port_range_min: int = Field(default=30200, ge=1, le=65535)
    passive_port_range_max: int = Field(default=30299, ge=1, le=65535)
    passive_ports_per_server: int = Field(default=5, ge=1)

    # Timeouts (seconds)
    readiness_timeout: float = Field(default=60.0, gt=0)
    readiness_poll_interval: float = Field(default=2.0, gt=0)
    deletion_timeout: float = Field(default=60.0, gt=0)
    deletion_poll_interval: float = Field(default=1.0, gt=0)
    busy_wait_timeout: float = Field(
        default=90.0,
        ge=0,
        description="How long a delete waits for an in-flight operation on the same name",
    )
    discovery_timeout: float = Field(default=5.0, gt=0)

    # Background loops (seconds)
    discovery_reconcile_interval: float = Field(default=15.0, gt=0)
    orphan_sweep_interval: float = Field(default=300.0, gt=0)

    # Discovery document
    discovery_backend: Literal["redis", "configmap"] = "redis"
    discovery_key_prefix: str = "discovery"
    endpoints_config_map: str | None = Field(
        default=None, description="Discovery ConfigMap, defaults to <release_prefix>-endpoints"
    )

    # Redis (discovery document + status events)
    redis_url: str = redis_url_field(required=False)
    events_enabled: bool = True
    events_prefix: str = "servers"

    @model_validator(mode="after")
    def validate_ranges(self) -> "Settings":
        if self.port_range_min > self.port_range_max:
            raise ValueError("port_range_min must not exceed port_range_max")
        if self.passive_port_range_min > self.passive_port_range_max:
            raise ValueError("passive_port_range_min must not exceed passive_port_range_max")
        overlap = not (
            self.port_range_max < self.passive_port_range_min
            or self.passive_port_range_max < self.port_range_min
        )
        if overlap:
            raise ValueError("Dynamic and passive port ranges must not overlap")
        return self

    @property
    def resolved_pvc_name(self) -> str:
        return self.pvc_name or f"{self.release_prefix}-pvc"

    @property
    def resolved_endpoints_config_map(self) -> str:
        return self.endpoints_config_map or f"{self.release_prefix}-endpoints"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
