import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import structlog

from ..errors import PlatformError, ResourceConflictError
from ..models import (
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_OWNER_TOKEN,
    MANAGED_BY,
    PlatformResource,
    ResourceDescriptor,
    ResourceKind,
    WorkloadStatus,
)

logger = structlog.get_logger()

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409


class KubernetesGateway:
    """
    Async wrapper around the blocking kubernetes client.
    All calls are namespaced and run in a thread pool.
    """

    def __init__(self, namespace: str, in_cluster: bool = True, max_workers: int = 5):
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config()
        api_client = client.ApiClient()
        self._core = client.CoreV1Api(api_client)
        self._apps = client.AppsV1Api(api_client)
        self._api_client = api_client
        self._namespace = namespace
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    async def _run(self, func, *args, **kwargs):
        """Run blocking function in thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def _call(self, func, *args, **kwargs):
        """Run a client call, translating ApiException into PlatformError."""
        try:
            return await self._run(func, *args, **kwargs)
        except ApiException as e:
            operation = getattr(func, "__name__", "kubernetes call")
            if e.status == HTTP_CONFLICT:
                raise ResourceConflictError(f"{operation}: {e.reason}", status=e.status) from e
            raise PlatformError(f"{operation}: {e.reason}", status=e.status) from e

    @staticmethod
    def _selector(owner_token: str | None = None) -> str:
        selector = f"{LABEL_MANAGED_BY}={MANAGED_BY}"
        if owner_token:
            selector += f",{LABEL_OWNER_TOKEN}={owner_token}"
        return selector

    @staticmethod
    def _to_resource(kind: ResourceKind, obj: Any) -> PlatformResource:
        labels = dict(obj.metadata.labels or {})
        node_ports: list[int] = []
        cluster_ip = None
        if kind == ResourceKind.ENDPOINT and obj.spec is not None:
            node_ports = [p.node_port for p in (obj.spec.ports or []) if p.node_port]
            cluster_ip = obj.spec.cluster_ip
        return PlatformResource(
            kind=kind,
            name=obj.metadata.name,
            labels=labels,
            node_ports=node_ports,
            cluster_ip=cluster_ip,
        )

    async def create(self, descriptor: ResourceDescriptor) -> PlatformResource:
        if descriptor.kind == ResourceKind.ENDPOINT:
            func = self._core.create_namespaced_service
        else:
            func = self._apps.create_namespaced_deployment
        obj = await self._call(func, self._namespace, descriptor.manifest)
        logger.info(
            "platform_resource_created",
            kind=descriptor.kind.value,
            name=descriptor.name,
            owner_token=descriptor.owner_token,
        )
        return self._to_resource(descriptor.kind, obj)

    async def delete(self, kind: ResourceKind, name: str) -> bool:
        try:
            if kind == ResourceKind.ENDPOINT:
                await self._run(self._core.delete_namespaced_service, name, self._namespace)
            else:
                # Foreground so the ReplicaSet and pods are gone before the Deployment
                await self._run(
                    self._apps.delete_namespaced_deployment,
                    name,
                    self._namespace,
                    propagation_policy="Foreground",
                )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return False
            raise PlatformError(f"delete {kind.value} {name}: {e.reason}", status=e.status) from e
        logger.info("platform_resource_deleted", kind=kind.value, name=name)
        return True

    async def get(self, kind: ResourceKind, name: str) -> PlatformResource | None:
        if kind == ResourceKind.ENDPOINT:
            func = self._core.read_namespaced_service
        else:
            func = self._apps.read_namespaced_deployment
        try:
            obj = await self._run(func, name, self._namespace)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return None
            raise PlatformError(f"get {kind.value} {name}: {e.reason}", status=e.status) from e
        return self._to_resource(kind, obj)

    async def list(
        self,
        kind: ResourceKind | None = None,
        owner_token: str | None = None,
    ) -> list[PlatformResource]:
        selector = self._selector(owner_token)
        resources: list[PlatformResource] = []
        if kind in (None, ResourceKind.ENDPOINT):
            services = await self._call(
                self._core.list_namespaced_service, self._namespace, label_selector=selector
            )
            resources.extend(self._to_resource(ResourceKind.ENDPOINT, s) for s in services.items)
        if kind in (None, ResourceKind.WORKLOAD):
            deployments = await self._call(
                self._apps.list_namespaced_deployment, self._namespace, label_selector=selector
            )
            resources.extend(
                self._to_resource(ResourceKind.WORKLOAD, d) for d in deployments.items
            )
        return resources

    async def workload_status(self, name: str) -> WorkloadStatus | None:
        try:
            deployment = await self._run(
                self._apps.read_namespaced_deployment_status, name, self._namespace
            )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return None
            raise PlatformError(f"status {name}: {e.reason}", status=e.status) from e
        status = deployment.status
        return WorkloadStatus(
            name=name,
            replicas=(status.replicas or 0) if status else 0,
            ready_replicas=(status.ready_replicas or 0) if status else 0,
        )

    async def scale(self, name: str, replicas: int) -> None:
        await self._call(
            self._apps.patch_namespaced_deployment_scale,
            name,
            self._namespace,
            {"spec": {"replicas": replicas}},
        )
        logger.info("platform_workload_scaled", name=name, replicas=replicas)

    async def restart(self, instance: str) -> int:
        pods = await self._call(
            self._core.list_namespaced_pod,
            self._namespace,
            label_selector=f"{LABEL_INSTANCE}={instance}",
        )
        deleted = 0
        for pod in pods.items:
            try:
                await self._run(self._core.delete_namespaced_pod, pod.metadata.name, self._namespace)
                deleted += 1
            except ApiException as e:
                if e.status != HTTP_NOT_FOUND:
                    raise PlatformError(
                        f"delete pod {pod.metadata.name}: {e.reason}", status=e.status
                    ) from e
        logger.info("platform_pods_restarted", instance=instance, count=deleted)
        return deleted

    async def read_config_map(self, name: str) -> dict[str, str] | None:
        try:
            config_map = await self._run(
                self._core.read_namespaced_config_map, name, self._namespace
            )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return None
            raise PlatformError(f"read configmap {name}: {e.reason}", status=e.status) from e
        return dict(config_map.data or {})

    async def write_config_map(
        self, name: str, data: dict[str, str], labels: dict[str, str] | None = None
    ) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name, "labels": labels or {}},
            "data": data,
        }
        try:
            await self._run(self._core.replace_namespaced_config_map, name, self._namespace, body)
        except ApiException as e:
            if e.status != HTTP_NOT_FOUND:
                raise PlatformError(f"write configmap {name}: {e.reason}", status=e.status) from e
            await self._call(self._core.create_namespaced_config_map, self._namespace, body)

    async def close(self) -> None:
        self._api_client.close()
        self._executor.shutdown(wait=False)
