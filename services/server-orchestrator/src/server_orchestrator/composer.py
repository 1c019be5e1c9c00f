"""Platform manifests for dynamic protocol servers.

compose() is pure: the same inputs always give the same descriptors, and it
never talks to the platform.
"""

from dataclasses import dataclass
import secrets
from typing import Any

from shared.contracts.dto.server import DEFAULT_EXPORT_OPTIONS, Credentials, ServerProtocol

from .models import (
    APP_NAME,
    LABEL_APP_NAME,
    LABEL_COMPONENT,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_OWNER_TOKEN,
    LABEL_PART_OF,
    MANAGED_BY,
    PART_OF,
    OwnerReference,
    ResourceDescriptor,
    ResourceKind,
)

FTP_IMAGE = "fauria/vsftpd:latest"
SFTP_IMAGE = "atmoz/sftp:latest"
NFS_IMAGE = "erichough/nfs-server:latest"
SYNC_IMAGE = "alpine:3.19"

PROTOCOL_PORTS = {
    ServerProtocol.FTP: 21,
    ServerProtocol.SFTP: 22,
    ServerProtocol.NAS: 2049,
}

NAS_DIRECTORY_PRESETS = {
    "input": "nas-input-dynamic",
    "output": "nas-output-dynamic",
    "backup": "nas-backup-dynamic",
}

SMALL_RESOURCES = {
    "requests": {"memory": "64Mi", "cpu": "50m"},
    "limits": {"memory": "256Mi", "cpu": "200m"},
}
NFS_RESOURCES = {
    "requests": {"memory": "128Mi", "cpu": "100m"},
    "limits": {"memory": "512Mi", "cpu": "500m"},
}


@dataclass(frozen=True)
class ComposerContext:
    """Deployment-wide inputs to every manifest."""

    namespace: str
    release_prefix: str
    pvc_name: str
    external_host: str
    owner: OwnerReference | None = None


def new_owner_token(instance_id: str) -> str:
    """Identity of one create attempt: orchestrator instance + random suffix."""
    return f"{instance_id}-{secrets.token_hex(4)}"


def resource_name(release_prefix: str, protocol: ServerProtocol, name: str) -> str:
    return f"{release_prefix}-{protocol.value.lower()}-{name}"


def resource_labels(protocol: ServerProtocol, name: str, owner_token: str) -> dict[str, str]:
    return {
        LABEL_APP_NAME: APP_NAME,
        LABEL_COMPONENT: protocol.value.lower(),
        LABEL_MANAGED_BY: MANAGED_BY,
        LABEL_INSTANCE: name,
        LABEL_PART_OF: PART_OF,
        LABEL_OWNER_TOKEN: owner_token,
    }


def nas_directory(backing_path: str) -> str:
    return NAS_DIRECTORY_PRESETS.get(backing_path, backing_path)


def _metadata(
    resource: str, namespace: str, labels: dict[str, str], owner: OwnerReference | None
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": resource, "namespace": namespace, "labels": labels}
    if owner is not None:
        metadata["ownerReferences"] = [
            {
                "apiVersion": owner.api_version,
                "kind": owner.kind,
                "name": owner.name,
                "uid": owner.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
    return metadata


def _data_mount(mount_path: str, backing_path: str | None) -> dict[str, Any]:
    mount: dict[str, Any] = {"name": "data", "mountPath": mount_path}
    if backing_path:
        mount["subPath"] = backing_path
    return mount


def _pvc_volume(name: str, pvc_name: str) -> dict[str, Any]:
    return {"name": name, "persistentVolumeClaim": {"claimName": pvc_name}}


def _tcp_probe(port: int) -> dict[str, Any]:
    return {
        "tcpSocket": {"port": port},
        "initialDelaySeconds": 2,
        "periodSeconds": 2,
        "failureThreshold": 30,
    }


def _ftp_pod(
    name: str,
    credentials: Credentials,
    backing_path: str | None,
    context: ComposerContext,
    passive_ports: tuple[int, int],
) -> dict[str, Any]:
    passive_start, passive_end = passive_ports
    container_ports = [{"containerPort": 21, "protocol": "TCP", "name": "ftp"}]
    container_ports.extend(
        {"containerPort": port, "protocol": "TCP", "name": f"pasv-{port}"}
        for port in range(passive_start, passive_end + 1)
    )
    return {
        "containers": [
            {
                "name": "vsftpd",
                "image": FTP_IMAGE,
                "imagePullPolicy": "IfNotPresent",
                "ports": container_ports,
                "env": [
                    {"name": "FTP_USER", "value": credentials.username},
                    {"name": "FTP_PASS", "value": credentials.password},
                    {"name": "LOG_STDOUT", "value": "YES"},
                    {"name": "LOCAL_UMASK", "value": "022"},
                    {"name": "PASV_ADDRESS", "value": context.external_host},
                    {"name": "PASV_MIN_PORT", "value": str(passive_start)},
                    {"name": "PASV_MAX_PORT", "value": str(passive_end)},
                ],
                "volumeMounts": [
                    _data_mount(f"/home/vsftpd/{credentials.username}", backing_path)
                ],
                "readinessProbe": _tcp_probe(21),
                "resources": SMALL_RESOURCES,
            }
        ],
        "volumes": [_pvc_volume("data", context.pvc_name)],
    }


def _sftp_pod(
    name: str,
    credentials: Credentials,
    backing_path: str | None,
    context: ComposerContext,
    uid: int,
    gid: int,
) -> dict[str, Any]:
    return {
        "containers": [
            {
                "name": "sftp",
                "image": SFTP_IMAGE,
                "imagePullPolicy": "IfNotPresent",
                "ports": [{"containerPort": 22, "protocol": "TCP", "name": "sftp"}],
                # atmoz/sftp user format: username:password:uid:gid
                "args": [f"{credentials.username}:{credentials.password}:{uid}:{gid}"],
                "volumeMounts": [_data_mount(f"/home/{credentials.username}/data", backing_path)],
                "securityContext": {"capabilities": {"add": ["SYS_CHROOT"]}},
                "readinessProbe": _tcp_probe(22),
                "resources": SMALL_RESOURCES,
            }
        ],
        "volumes": [_pvc_volume("data", context.pvc_name)],
    }


def _nas_pod(name: str, backing_path: str, context: ComposerContext, export_options: str) -> dict[str, Any]:
    # NFS cannot export the shared (host-mounted) volume directly, so an init
    # container copies the backing directory into an emptyDir that is exported.
    sync_script = "\n".join(
        [
            "set -e",
            f"echo 'Syncing data for NAS {name}'",
            "apk add --no-cache rsync",
            "mkdir -p /nfs-data",
            "rsync -av /source/ /nfs-data/",
        ]
    )
    return {
        "initContainers": [
            {
                "name": "sync-data",
                "image": SYNC_IMAGE,
                "imagePullPolicy": "IfNotPresent",
                "command": ["sh", "-c"],
                "args": [sync_script],
                "volumeMounts": [
                    {"name": "source-data", "mountPath": "/source", "subPath": nas_directory(backing_path)},
                    {"name": "nfs-export", "mountPath": "/nfs-data"},
                ],
            }
        ],
        "containers": [
            {
                "name": "nfs-server",
                "image": NFS_IMAGE,
                "imagePullPolicy": "IfNotPresent",
                "ports": [
                    {"containerPort": 2049, "protocol": "TCP", "name": "nfs"},
                    {"containerPort": 111, "protocol": "TCP", "name": "rpcbind"},
                ],
                "env": [
                    {"name": "NFS_EXPORT_0", "value": f"/data *({export_options},fsid=0)"},
                    {"name": "NFS_DISABLE_VERSION_3", "value": "false"},
                ],
                "volumeMounts": [{"name": "nfs-export", "mountPath": "/data"}],
                "securityContext": {
                    "privileged": True,
                    "capabilities": {"add": ["SYS_ADMIN", "DAC_READ_SEARCH"]},
                },
                "readinessProbe": _tcp_probe(2049),
                "resources": NFS_RESOURCES,
            }
        ],
        "volumes": [
            {"name": "nfs-export", "emptyDir": {}},
            _pvc_volume("source-data", context.pvc_name),
        ],
    }


def _service_ports(
    protocol: ServerProtocol, port: int, passive_ports: tuple[int, int] | None
) -> list[dict[str, Any]]:
    target = PROTOCOL_PORTS[protocol]
    ports = [
        {
            "name": protocol.value.lower(),
            "port": target,
            "targetPort": target,
            "protocol": "TCP",
            "nodePort": port,
        }
    ]
    if passive_ports is not None:
        # Passive ports are exposed 1:1 so PASV replies are routable from outside
        ports.extend(
            {
                "name": f"pasv-{p}",
                "port": p,
                "targetPort": p,
                "protocol": "TCP",
                "nodePort": p,
            }
            for p in range(passive_ports[0], passive_ports[1] + 1)
        )
    return ports


def compose(
    protocol: ServerProtocol,
    name: str,
    credentials: Credentials | None,
    backing_path: str | None,
    owner_token: str,
    *,
    port: int,
    context: ComposerContext,
    passive_ports: tuple[int, int] | None = None,
    options: dict[str, Any] | None = None,
) -> list[ResourceDescriptor]:
    """Build the [endpoint, workload] descriptors for a server, in creation order."""
    options = options or {}
    resource = resource_name(context.release_prefix, protocol, name)
    labels = resource_labels(protocol, name, owner_token)
    selector = {LABEL_APP_NAME: APP_NAME, LABEL_INSTANCE: name}

    if protocol == ServerProtocol.FTP:
        if credentials is None or passive_ports is None:
            raise ValueError("FTP servers need credentials and a passive port block")
        pod = _ftp_pod(name, credentials, backing_path, context, passive_ports)
    elif protocol == ServerProtocol.SFTP:
        if credentials is None:
            raise ValueError("SFTP servers need credentials")
        pod = _sftp_pod(
            name,
            credentials,
            backing_path,
            context,
            uid=options.get("uid", 1000),
            gid=options.get("gid", 1000),
        )
    else:
        if not backing_path:
            raise ValueError("NAS servers need a backing path")
        pod = _nas_pod(
            name, backing_path, context, options.get("export_options", DEFAULT_EXPORT_OPTIONS)
        )

    endpoint = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(resource, context.namespace, labels, context.owner),
        "spec": {
            "type": "NodePort",
            "selector": selector,
            "ports": _service_ports(protocol, port, passive_ports),
        },
    }
    workload = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(resource, context.namespace, labels, context.owner),
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": selector},
            "template": {"metadata": {"labels": labels}, "spec": pod},
        },
    }
    return [
        ResourceDescriptor(ResourceKind.ENDPOINT, resource, owner_token, labels, endpoint),
        ResourceDescriptor(ResourceKind.WORKLOAD, resource, owner_token, labels, workload),
    ]
