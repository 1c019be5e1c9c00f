from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from kubernetes.client.rest import ApiException
import pytest

from server_orchestrator.errors import PlatformError, ResourceConflictError
from server_orchestrator.models import ResourceDescriptor, ResourceKind


@pytest.fixture
def gateway():
    with (
        patch("server_orchestrator.platform.kubernetes.config") as mock_config,
        patch("server_orchestrator.platform.kubernetes.client"),
    ):
        from server_orchestrator.platform.kubernetes import KubernetesGateway

        gw = KubernetesGateway("file-simulator")
        mock_config.load_incluster_config.assert_called_once()
        yield gw
        gw._executor.shutdown(wait=False)


def _service(name: str, node_port: int, token: str = "tok"):
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            labels={"app.kubernetes.io/managed-by": "control-api", "file-simulator.io/owner-token": token},
        ),
        spec=SimpleNamespace(
            ports=[SimpleNamespace(node_port=node_port)],
            cluster_ip="10.0.0.7",
        ),
    )


def _deployment(name: str, token: str = "tok"):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels={"file-simulator.io/owner-token": token}),
        spec=SimpleNamespace(replicas=1),
    )


@pytest.mark.asyncio
async def test_create_service_returns_resource(gateway):
    gateway._core.create_namespaced_service.return_value = _service("svc", 32150)
    descriptor = ResourceDescriptor(ResourceKind.ENDPOINT, "svc", "tok", {}, {"kind": "Service"})

    resource = await gateway.create(descriptor)

    gateway._core.create_namespaced_service.assert_called_once_with("file-simulator", {"kind": "Service"})
    assert resource.node_ports == [32150]
    assert resource.cluster_ip == "10.0.0.7"
    assert resource.owner_token == "tok"


@pytest.mark.asyncio
async def test_create_conflict_maps_to_resource_conflict(gateway):
    gateway._apps.create_namespaced_deployment.side_effect = ApiException(status=409, reason="AlreadyExists")
    descriptor = ResourceDescriptor(ResourceKind.WORKLOAD, "wl", "tok", {}, {})

    with pytest.raises(ResourceConflictError) as exc_info:
        await gateway.create(descriptor)
    assert exc_info.value.status == 409


@pytest.mark.asyncio
async def test_create_other_error_maps_to_platform_error(gateway):
    gateway._core.create_namespaced_service.side_effect = ApiException(status=422, reason="Invalid")
    descriptor = ResourceDescriptor(ResourceKind.ENDPOINT, "svc", "tok", {}, {})

    with pytest.raises(PlatformError) as exc_info:
        await gateway.create(descriptor)
    assert not isinstance(exc_info.value, ResourceConflictError)


@pytest.mark.asyncio
async def test_delete_missing_returns_false(gateway):
    gateway._core.delete_namespaced_service.side_effect = ApiException(status=404, reason="NotFound")

    assert await gateway.delete(ResourceKind.ENDPOINT, "svc") is False


@pytest.mark.asyncio
async def test_delete_deployment_uses_foreground_propagation(gateway):
    assert await gateway.delete(ResourceKind.WORKLOAD, "wl") is True

    gateway._apps.delete_namespaced_deployment.assert_called_once_with(
        "wl", "file-simulator", propagation_policy="Foreground"
    )


@pytest.mark.asyncio
async def test_list_filters_by_owner_token(gateway):
    gateway._core.list_namespaced_service.return_value = SimpleNamespace(items=[_service("svc", 32150)])
    gateway._apps.list_namespaced_deployment.return_value = SimpleNamespace(items=[_deployment("wl")])

    resources = await gateway.list(owner_token="tok")

    assert [(r.kind, r.name) for r in resources] == [
        (ResourceKind.ENDPOINT, "svc"),
        (ResourceKind.WORKLOAD, "wl"),
    ]
    selector = gateway._core.list_namespaced_service.call_args.kwargs["label_selector"]
    assert selector == "app.kubernetes.io/managed-by=control-api,file-simulator.io/owner-token=tok"


@pytest.mark.asyncio
async def test_workload_status_missing_is_none(gateway):
    gateway._apps.read_namespaced_deployment_status.side_effect = ApiException(status=404)

    assert await gateway.workload_status("wl") is None


@pytest.mark.asyncio
async def test_workload_status_reads_ready_replicas(gateway):
    gateway._apps.read_namespaced_deployment_status.return_value = SimpleNamespace(
        status=SimpleNamespace(replicas=1, ready_replicas=None)
    )

    status = await gateway.workload_status("wl")

    assert status.replicas == 1
    assert status.ready_replicas == 0
    assert not status.ready


@pytest.mark.asyncio
async def test_write_config_map_creates_when_missing(gateway):
    gateway._core.replace_namespaced_config_map.side_effect = ApiException(status=404)

    await gateway.write_config_map("endpoints", {"A": "1"})

    body = gateway._core.create_namespaced_config_map.call_args.args[1]
    assert body["metadata"]["name"] == "endpoints"
    assert body["data"] == {"A": "1"}


@pytest.mark.asyncio
async def test_restart_deletes_instance_pods(gateway):
    pods = [SimpleNamespace(metadata=SimpleNamespace(name=f"pod-{i}")) for i in range(2)]
    gateway._core.list_namespaced_pod.return_value = SimpleNamespace(items=pods)
    gateway._core.delete_namespaced_pod = MagicMock()

    assert await gateway.restart("ftp-1") == 2
    assert gateway._core.list_namespaced_pod.call_args.kwargs["label_selector"] == (
        "app.kubernetes.io/instance=ftp-1"
    )
