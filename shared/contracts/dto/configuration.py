"""Portable server configuration: what `GET /configuration/export` produces and import consumes."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import Field, computed_field, field_validator

from .server import DEFAULT_EXPORT_OPTIONS, CamelModel, ServerProtocol

EXPORT_VERSION = "2.0"

# Stand-in for values owned by the Helm release (static servers)
HELM_MANAGED = "[helm-managed]"


class FtpConfiguration(CamelModel):
    username: str
    password: str
    directory: str | None = None
    passive_port_start: int | None = None
    passive_port_end: int | None = None


class SftpConfiguration(CamelModel):
    username: str
    password: str
    directory: str | None = None
    uid: int = 1000
    gid: int = 1000


class NasConfiguration(CamelModel):
    directory: str
    export_options: str = DEFAULT_EXPORT_OPTIONS


class ServerConfiguration(CamelModel):
    """One server definition. Exactly the sub-config matching ``protocol`` is used."""

    name: str
    protocol: ServerProtocol
    node_port: int | None = None
    is_dynamic: bool = True
    ftp: FtpConfiguration | None = None
    sftp: SftpConfiguration | None = None
    nas: NasConfiguration | None = None

    @field_validator("protocol", mode="before")
    @classmethod
    def normalize_protocol(cls, v: Any) -> Any:
        # NFS is accepted as a synonym for NAS
        if isinstance(v, str):
            v = v.upper()
            return ServerProtocol.NAS.value if v == "NFS" else v
        return v


class ExportMetadata(CamelModel):
    description: str | None = None
    exported_by: str | None = None
    environment: str | None = None


class ServerConfigurationExport(CamelModel):
    version: str = EXPORT_VERSION
    exported_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    namespace: str = ""
    release_prefix: str = ""
    servers: list[ServerConfiguration] = Field(default_factory=list)
    metadata: ExportMetadata | None = None


class ConflictStrategy(str, Enum):
    """What import does with a server whose name already exists."""

    SKIP = "Skip"
    REPLACE = "Replace"
    RENAME = "Rename"


class ImportConfigurationRequest(CamelModel):
    configuration: ServerConfigurationExport
    strategy: ConflictStrategy = ConflictStrategy.SKIP


class ImportResult(CamelModel):
    created: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @computed_field(alias="totalProcessed")
    @property
    def total_processed(self) -> int:
        return len(self.created) + len(self.skipped) + len(self.failed)
