"""Statically provisioned NAS servers (deployed by the Helm chart, not by us)."""

from shared.contracts.dto.server import ServerProtocol, ServerRecord, ServerSource, ServerStatus

from .config import Settings

# (name, nodePort, backing directory)
STATIC_NAS_SERVERS: tuple[tuple[str, int, str], ...] = (
    ("nas-input-1", 32049, "nas-input-1"),
    ("nas-input-2", 32050, "nas-input-2"),
    ("nas-input-3", 32051, "nas-input-3"),
    ("nas-backup", 32052, "nas-backup"),
    ("nas-output-1", 32053, "nas-output-1"),
    ("nas-output-2", 32054, "nas-output-2"),
    ("nas-output-3", 32055, "nas-output-3"),
)

NFS_PORT = 2049


def static_records(settings: Settings) -> list[ServerRecord]:
    return [
        ServerRecord(
            name=name,
            protocol=ServerProtocol.NAS,
            source=ServerSource.STATIC,
            status=ServerStatus.RUNNING,
            host=settings.external_host,
            port=node_port,
            backing_path=directory,
            service_name=f"{settings.release_prefix}-{name}",
            cluster_port=NFS_PORT,
        )
        for name, node_port, directory in STATIC_NAS_SERVERS
    ]
