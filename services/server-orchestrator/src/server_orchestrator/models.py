"""Request models and platform resource types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from pydantic import Field, field_validator

from shared.contracts.dto.server import DEFAULT_EXPORT_OPTIONS, CamelModel, Credentials, ServerProtocol

NAME_PATTERN = r"^[a-z0-9-]+$"

# Platform labels
LABEL_APP_NAME = "app.kubernetes.io/name"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_PART_OF = "app.kubernetes.io/part-of"
LABEL_OWNER_TOKEN = "file-simulator.io/owner-token"

APP_NAME = "file-simulator"
MANAGED_BY = "control-api"
PART_OF = "file-simulator-suite"


def _validate_credentials(credentials: Credentials) -> Credentials:
    if not 3 <= len(credentials.username) <= 32:  # noqa: PLR2004
        raise ValueError("Username must be between 3 and 32 characters")
    if len(credentials.password) < 8:  # noqa: PLR2004
        raise ValueError("Password must be at least 8 characters")
    return credentials


class CreateServerRequest(CamelModel):
    """Fields shared by all server creation requests."""

    protocol: ClassVar[ServerProtocol]

    name: str = Field(..., min_length=3, max_length=32, pattern=NAME_PATTERN)
    backing_path: str | None = Field(default=None, max_length=256)
    credentials: Credentials | None = None

    @field_validator("backing_path")
    @classmethod
    def validate_backing_path(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if ".." in v:
            raise ValueError("Backing path must not contain '..' path traversal")
        if v.startswith("/"):
            raise ValueError("Backing path must be relative (not start with '/')")
        return v or None

    def options(self) -> dict[str, Any]:
        """Protocol-specific composer options."""
        return {}


class CreateFtpServerRequest(CreateServerRequest):
    protocol: ClassVar[ServerProtocol] = ServerProtocol.FTP

    credentials: Credentials

    @field_validator("credentials")
    @classmethod
    def validate_credentials(cls, v: Credentials) -> Credentials:
        return _validate_credentials(v)


class CreateSftpServerRequest(CreateServerRequest):
    protocol: ClassVar[ServerProtocol] = ServerProtocol.SFTP

    credentials: Credentials
    uid: int = Field(default=1000, ge=1, le=65534)
    gid: int = Field(default=1000, ge=1, le=65534)

    @field_validator("credentials")
    @classmethod
    def validate_credentials(cls, v: Credentials) -> Credentials:
        return _validate_credentials(v)

    def options(self) -> dict[str, Any]:
        return {"uid": self.uid, "gid": self.gid}


class CreateNasServerRequest(CreateServerRequest):
    protocol: ClassVar[ServerProtocol] = ServerProtocol.NAS

    backing_path: str = Field(..., min_length=1, max_length=256)
    export_options: str = Field(default=DEFAULT_EXPORT_OPTIONS, min_length=1, max_length=512)
    read_only: bool = False

    @field_validator("credentials")
    @classmethod
    def reject_credentials(cls, v: Credentials | None) -> None:
        if v is not None:
            raise ValueError("NAS servers do not take credentials")
        return None

    def options(self) -> dict[str, Any]:
        export_options = self.export_options
        if self.read_only:
            parts = ["ro" if p == "rw" else p for p in export_options.split(",")]
            if "ro" not in parts:
                parts.insert(0, "ro")
            export_options = ",".join(parts)
        return {"export_options": export_options}


class ResourceKind(str, Enum):
    ENDPOINT = "Service"
    WORKLOAD = "Deployment"


@dataclass(frozen=True)
class OwnerReference:
    """Platform object that owns every dynamic resource (the control plane pod)."""

    name: str
    uid: str
    kind: str = "Pod"
    api_version: str = "v1"


@dataclass(frozen=True)
class ResourceDescriptor:
    """A platform resource to create, as produced by the composer."""

    kind: ResourceKind
    name: str
    owner_token: str
    labels: dict[str, str]
    manifest: dict[str, Any]


@dataclass
class PlatformResource:
    """A live resource as reported by the platform."""

    kind: ResourceKind
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    node_ports: list[int] = field(default_factory=list)
    cluster_ip: str | None = None

    @property
    def owner_token(self) -> str | None:
        return self.labels.get(LABEL_OWNER_TOKEN)

    @property
    def instance(self) -> str | None:
        return self.labels.get(LABEL_INSTANCE)


@dataclass
class WorkloadStatus:
    name: str
    replicas: int = 0
    ready_replicas: int = 0

    @property
    def ready(self) -> bool:
        return self.ready_replicas >= 1
