"""Configuration export and import.

Export snapshots every known server as a ServerConfiguration. Import replays
dynamic definitions one at a time through the lifecycle controller, the same
path an API create takes.
"""

from pydantic import ValidationError
import structlog

from shared.contracts.dto.configuration import (
    HELM_MANAGED,
    ConflictStrategy,
    ExportMetadata,
    FtpConfiguration,
    ImportResult,
    NasConfiguration,
    ServerConfiguration,
    ServerConfigurationExport,
    SftpConfiguration,
)
from shared.contracts.dto.server import (
    DEFAULT_EXPORT_OPTIONS,
    Credentials,
    ServerProtocol,
    ServerRecord,
    ServerStatus,
)

from .config import Settings
from .errors import OrchestratorError, ProtectedServerError, ServerNotFoundError
from .lifecycle import LifecycleController
from .models import (
    MANAGED_BY,
    CreateFtpServerRequest,
    CreateNasServerRequest,
    CreateServerRequest,
    CreateSftpServerRequest,
)

logger = structlog.get_logger()

MAX_RENAME_ATTEMPTS = 100


def to_configuration(record: ServerRecord) -> ServerConfiguration:
    """Describe a server record as an importable definition."""
    static = record.is_static
    config = ServerConfiguration(
        name=record.name,
        protocol=record.protocol,
        node_port=record.port,
        is_dynamic=not static,
    )
    credentials = record.credentials
    username = credentials.username if credentials else HELM_MANAGED
    password = HELM_MANAGED if static or credentials is None else credentials.password

    if record.protocol == ServerProtocol.FTP:
        start, end = record.passive_ports or (None, None)
        config.ftp = FtpConfiguration(
            username=username,
            password=password,
            directory=record.backing_path,
            passive_port_start=start,
            passive_port_end=end,
        )
    elif record.protocol == ServerProtocol.SFTP:
        config.sftp = SftpConfiguration(
            username=username,
            password=password,
            directory=record.backing_path,
            uid=record.options.get("uid", 1000),
            gid=record.options.get("gid", 1000),
        )
    else:
        config.nas = NasConfiguration(
            directory=record.backing_path or HELM_MANAGED,
            export_options=record.options.get("export_options", DEFAULT_EXPORT_OPTIONS),
        )
    return config


def to_create_request(server: ServerConfiguration) -> CreateServerRequest:
    """Build the create request for a dynamic server definition.

    Raises ValueError (including pydantic's ValidationError) when the
    definition lacks its protocol section or fails request validation.
    """
    if server.protocol == ServerProtocol.FTP and server.ftp is not None:
        return CreateFtpServerRequest(
            name=server.name,
            backing_path=server.ftp.directory,
            credentials=Credentials(username=server.ftp.username, password=server.ftp.password),
        )
    if server.protocol == ServerProtocol.SFTP and server.sftp is not None:
        return CreateSftpServerRequest(
            name=server.name,
            backing_path=server.sftp.directory,
            credentials=Credentials(username=server.sftp.username, password=server.sftp.password),
            uid=server.sftp.uid,
            gid=server.sftp.gid,
        )
    if server.protocol == ServerProtocol.NAS and server.nas is not None:
        return CreateNasServerRequest(
            name=server.name,
            backing_path=server.nas.directory,
            export_options=server.nas.export_options,
        )
    raise ValueError(
        f"Cannot import {server.protocol.value} server: missing configuration or unsupported protocol"
    )


def _reason(e: ValueError) -> str:
    if isinstance(e, ValidationError):
        return "; ".join(error["msg"] for error in e.errors())
    return str(e)


class ConfigurationService:
    def __init__(self, settings: Settings, lifecycle: LifecycleController):
        self.settings = settings
        self.lifecycle = lifecycle

    def export(self, description: str | None = None) -> ServerConfigurationExport:
        servers = [
            to_configuration(record)
            for record in self.lifecycle.list_servers()
            if record.status != ServerStatus.FAILED
        ]
        logger.info("configuration_exported", servers=len(servers))
        return ServerConfigurationExport(
            namespace=self.settings.namespace,
            release_prefix=self.settings.release_prefix,
            servers=servers,
            metadata=ExportMetadata(description=description, exported_by=MANAGED_BY),
        )

    def _taken_names(self) -> set[str]:
        return {
            record.name
            for record in self.lifecycle.list_servers()
            if not self.lifecycle.is_name_available(record.name)
        }

    @staticmethod
    def _free_name(name: str, taken: set[str]) -> str:
        for n in range(1, MAX_RENAME_ATTEMPTS + 1):
            candidate = f"{name}-{n}"
            if candidate not in taken:
                return candidate
        raise ValueError(f"No free name for '{name}' after {MAX_RENAME_ATTEMPTS} attempts")

    async def import_configuration(
        self,
        configuration: ServerConfigurationExport,
        strategy: ConflictStrategy = ConflictStrategy.SKIP,
        wait: bool = True,
        dry_run: bool = False,
    ) -> ImportResult:
        """Create the dynamic servers of ``configuration``.

        Static definitions are skipped. Name conflicts follow ``strategy``.
        With ``dry_run`` nothing is deleted or created; the result reports
        what an import would do right now.
        """
        result = ImportResult()
        taken = self._taken_names()

        for server in configuration.servers:
            name = server.name
            if not server.is_dynamic:
                result.skipped.append(f"{name} (static)")
                continue
            try:
                request = to_create_request(server)
                if name in taken and strategy == ConflictStrategy.RENAME:
                    name = self._free_name(name, taken)
                    request = type(request).model_validate({**request.model_dump(), "name": name})
            except ValueError as e:
                result.failed[name] = _reason(e)
                continue

            if name in taken:
                if strategy == ConflictStrategy.SKIP:
                    result.skipped.append(f"{name} (conflict)")
                    continue
                error = await self._remove_for_replacement(name, dry_run)
                if error is not None:
                    result.failed[name] = error
                    continue

            if not dry_run:
                try:
                    await self.lifecycle.create(request, wait=wait)
                except OrchestratorError as e:
                    result.failed[name] = str(e)
                    continue
            taken.add(name)
            result.created.append(name)

        logger.info(
            "configuration_imported",
            strategy=strategy.value,
            dry_run=dry_run,
            created=len(result.created),
            skipped=len(result.skipped),
            failed=len(result.failed),
        )
        return result

    async def _remove_for_replacement(self, name: str, dry_run: bool) -> str | None:
        record = self.lifecycle.registry.get(name)
        if record is not None and record.is_static:
            return f"Failed to delete for replacement: {ProtectedServerError(name)}"
        if dry_run:
            return None
        try:
            await self.lifecycle.delete(name)
        except ServerNotFoundError:
            pass
        except OrchestratorError as e:
            return f"Failed to delete for replacement: {e}"
        return None
