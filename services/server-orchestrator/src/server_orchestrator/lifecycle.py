"""Server lifecycle: create, delete, stop/start/restart and orphan sweeping.

Every mutation of a dynamic server goes through LifecycleController while
holding that server's name lock.
"""

import asyncio
from functools import partial
from typing import Any

import structlog

from shared.contracts.dto.server import ServerProtocol, ServerRecord, ServerSource, ServerStatus

from .composer import (
    PROTOCOL_PORTS,
    ComposerContext,
    compose,
    new_owner_token,
    resource_name,
)
from .config import Settings
from .discovery import DiscoverySync
from .errors import (
    DeletionTimeoutError,
    InvalidStateError,
    NameInUseError,
    OrchestratorError,
    ProtectedServerError,
    ProvisioningFailedError,
    ReadinessTimeoutError,
    ServerBusyError,
    ServerNotFoundError,
)
from .events import EventPublisher
from .models import CreateServerRequest, OwnerReference, PlatformResource, ResourceKind
from .platform.gateway import PlatformGateway
from .ports import PortAllocator
from .readiness import ReadinessResult, ReadinessWatcher
from .registry import ServerRegistry
from .saga import Saga

logger = structlog.get_logger()


class LifecycleController:
    """Drives dynamic servers through Pending -> Provisioning -> Running -> Stopping -> Deleted."""

    def __init__(
        self,
        settings: Settings,
        registry: ServerRegistry,
        gateway: PlatformGateway,
        allocator: PortAllocator,
        passive_allocator: PortAllocator,
        readiness: ReadinessWatcher,
        discovery: DiscoverySync,
        events: EventPublisher,
    ):
        self.settings = settings
        self.registry = registry
        self.gateway = gateway
        self.allocator = allocator
        self.passive_allocator = passive_allocator
        self.readiness = readiness
        self.discovery = discovery
        self.events = events

        owner = None
        if settings.pod_name and settings.pod_uid:
            owner = OwnerReference(name=settings.pod_name, uid=settings.pod_uid)
        self.context = ComposerContext(
            namespace=settings.namespace,
            release_prefix=settings.release_prefix,
            pvc_name=settings.resolved_pvc_name,
            external_host=settings.external_host,
            owner=owner,
        )
        self._tasks: set[asyncio.Task] = set()
        self._pending_deletes: dict[str, asyncio.Task] = {}

    # Queries

    def list_servers(self) -> list[ServerRecord]:
        return self.registry.list()

    def get_server(self, name: str) -> ServerRecord:
        record = self.registry.get(name)
        if record is None:
            raise ServerNotFoundError(name)
        return record

    def is_name_available(self, name: str) -> bool:
        if self.registry.is_busy(name):
            return False
        record = self.registry.get(name)
        if record is None:
            return True
        return (
            not record.is_static
            and record.status == ServerStatus.FAILED
            and not record.needs_sweep
        )

    # Helpers

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _get_dynamic(self, name: str) -> ServerRecord:
        record = self.get_server(name)
        if record.is_static:
            raise ProtectedServerError(name)
        return record

    async def _transition(self, name: str, status: ServerStatus, **changes: Any) -> ServerRecord:
        previous = self.registry.get(name)
        record = self.registry.update(name, status=status, **changes)
        logger.info(
            "server_status_changed",
            name=name,
            status=status.value,
            previous=previous.status.value if previous else None,
        )
        await self.events.publish_status(record, previous.status if previous else None)
        return record

    @staticmethod
    def _holds_ports(record: ServerRecord) -> bool:
        # A Failed record released its ports unless cleanup left residue behind
        return record.port is not None and (
            record.status != ServerStatus.FAILED or record.needs_sweep
        )

    async def _release_ports(self, record: ServerRecord) -> None:
        if record.port is not None:
            await self.allocator.release(record.port)
        if record.passive_ports is not None:
            start, end = record.passive_ports
            await self.passive_allocator.release(start, end - start + 1)

    async def _purge_owner(self, owner_token: str) -> list[PlatformResource]:
        """Delete every resource stamped with owner_token. Returns what is still listed."""
        for resource in await self.gateway.list(owner_token=owner_token):
            await self.gateway.delete(resource.kind, resource.name)
        return await self.gateway.list(owner_token=owner_token)

    # Create

    async def create(self, request: CreateServerRequest, wait: bool = True) -> ServerRecord:
        """Create a dynamic server.

        Name and port checks happen before any platform call. Provisioning
        runs in its own task so a disconnecting caller never interrupts it;
        with ``wait=False`` the Pending record is returned right away.
        """
        protocol = request.protocol
        name = request.name
        if self.registry.is_busy(name):
            raise NameInUseError(name)

        record = ServerRecord(
            name=name,
            protocol=protocol,
            source=ServerSource.DYNAMIC,
            status=ServerStatus.PENDING,
            host=self.settings.external_host,
            credentials=request.credentials,
            backing_path=request.backing_path,
            owner_token=new_owner_token(self.settings.instance_id),
            service_name=resource_name(self.settings.release_prefix, protocol, name),
            cluster_port=PROTOCOL_PORTS[protocol],
            options=request.options(),
        )
        self.registry.insert_new(record)
        await self.registry.acquire(name)

        try:
            port = await self.allocator.allocate()
            passive_ports = None
            if protocol == ServerProtocol.FTP:
                count = self.settings.passive_ports_per_server
                try:
                    start = await self.passive_allocator.allocate(count)
                except BaseException:
                    await self.allocator.release(port)
                    raise
                passive_ports = (start, start + count - 1)
        except BaseException:
            self.registry.remove(name)
            self.registry.release(name)
            raise

        record = self.registry.update(name, port=port, passive_ports=passive_ports)
        logger.info(
            "server_create_started",
            name=name,
            protocol=protocol.value,
            port=port,
            passive_ports=passive_ports,
            owner_token=record.owner_token,
        )

        task = self._track(
            asyncio.create_task(self._provision(record), name=f"provision-{name}")
        )
        task.add_done_callback(_consume_result)
        if not wait:
            return record
        return await asyncio.shield(task)

    async def _provision(self, record: ServerRecord) -> ServerRecord:
        name = record.name
        saga = Saga(f"create-{name}")
        try:
            await self.events.publish_status(record)
            descriptors = compose(
                record.protocol,
                name,
                record.credentials,
                record.backing_path,
                record.owner_token,
                port=record.port,
                context=self.context,
                passive_ports=record.passive_ports,
                options=record.options,
            )
            await self._transition(name, ServerStatus.PROVISIONING)
            for descriptor in descriptors:
                await saga.step(
                    f"create {descriptor.kind.value} {descriptor.name}",
                    partial(self.gateway.create, descriptor),
                    partial(self.gateway.delete, descriptor.kind, descriptor.name),
                )

            workload = descriptors[-1].name
            result = await self.readiness.wait_ready(workload)
            if result != ReadinessResult.READY:
                raise ReadinessTimeoutError(name, self.readiness.timeout)

            record = await self._transition(name, ServerStatus.RUNNING, error=None)
            await self.discovery.publish(record)
            logger.info("server_created", name=name, protocol=record.protocol.value, port=record.port)
            return self.registry.get(name) or record
        except (Exception, asyncio.CancelledError) as e:
            await self._rollback(record, saga, e)
            if isinstance(e, (ReadinessTimeoutError, asyncio.CancelledError)):
                raise
            raise ProvisioningFailedError(f"Failed to provision server '{name}': {e}") from e
        finally:
            self.registry.release(name)

    async def _rollback(self, record: ServerRecord, saga: Saga, cause: BaseException) -> None:
        name = record.name
        failed_steps = await saga.compensate()
        try:
            verified = not await self._purge_owner(record.owner_token)
        except Exception as e:
            verified = False
            logger.error(
                "server_rollback_verify_failed",
                name=name,
                error=str(e),
                error_type=type(e).__name__,
            )

        needs_sweep = bool(failed_steps) or not verified
        if not needs_sweep:
            await self._release_ports(record)
        error = str(cause) or type(cause).__name__
        await self._transition(name, ServerStatus.FAILED, needs_sweep=needs_sweep, error=error)
        logger.error(
            "server_create_failed",
            name=name,
            error=error,
            error_type=type(cause).__name__,
            failed_steps=failed_steps,
            needs_sweep=needs_sweep,
        )

    # Delete

    def request_delete(self, name: str) -> ServerRecord:
        """Validate and schedule a delete in the background."""
        record = self._get_dynamic(name)
        pending = self._pending_deletes.get(name)
        if pending is None or pending.done():
            task = self._track(
                asyncio.create_task(self._delete_in_background(name), name=f"delete-{name}")
            )
            self._pending_deletes[name] = task
            task.add_done_callback(lambda _: self._pending_deletes.pop(name, None))
        return record

    async def _delete_in_background(self, name: str) -> None:
        try:
            await self.delete(name)
        except ServerNotFoundError:
            logger.info("server_delete_skipped", name=name, reason="already_deleted")
        except Exception as e:
            logger.error(
                "server_delete_failed",
                name=name,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def delete(self, name: str) -> None:
        """Tear a dynamic server down and forget it.

        Waits up to busy_wait_timeout for an in-flight operation on the same
        name. The record is removed only once the platform reports nothing
        left for its owner token.
        """
        self._get_dynamic(name)
        try:
            await self.registry.acquire(name, timeout=self.settings.busy_wait_timeout)
        except asyncio.TimeoutError as e:
            raise ServerBusyError(name) from e

        try:
            record = self._get_dynamic(name)
            holds_ports = self._holds_ports(record)
            record = await self._transition(name, ServerStatus.STOPPING)
            try:
                await asyncio.wait_for(self._teardown(record), timeout=self.settings.deletion_timeout)
            except asyncio.TimeoutError as e:
                self.registry.update(name, needs_sweep=True)
                logger.error(
                    "server_delete_timeout", name=name, timeout=self.settings.deletion_timeout
                )
                raise DeletionTimeoutError(name, self.settings.deletion_timeout) from e
            except Exception as e:
                self.registry.update(name, needs_sweep=True, error=str(e))
                raise

            if holds_ports:
                await self._release_ports(record)
            removed = self.registry.remove(name)
            await self.events.publish_status(
                removed.model_copy(update={"status": ServerStatus.DELETED}), ServerStatus.STOPPING
            )
            await self.discovery.retract(name)
            logger.info("server_deleted", name=name, port=record.port)
        finally:
            self.registry.release(name)

    async def _teardown(self, record: ServerRecord) -> None:
        resource = resource_name(self.settings.release_prefix, record.protocol, record.name)
        await self.gateway.delete(ResourceKind.ENDPOINT, resource)
        await self.gateway.delete(ResourceKind.WORKLOAD, resource)
        while await self._purge_owner(record.owner_token):
            await asyncio.sleep(self.settings.deletion_poll_interval)

    # Stop / start / restart

    async def _acquire_now(self, name: str) -> None:
        if self.registry.is_busy(name):
            raise ServerBusyError(name)
        await self.registry.acquire(name)

    async def stop(self, name: str) -> ServerRecord:
        self._get_dynamic(name)
        await self._acquire_now(name)
        try:
            record = self._get_dynamic(name)
            if record.status == ServerStatus.STOPPED:
                return record
            if record.status != ServerStatus.RUNNING:
                raise InvalidStateError(name, record.status.value, "stop")
            await self.gateway.scale(record.service_name, 0)
            record = await self._transition(name, ServerStatus.STOPPED)
            await self.discovery.retract(name)
            return record
        finally:
            self.registry.release(name)

    async def start(self, name: str) -> ServerRecord:
        self._get_dynamic(name)
        await self._acquire_now(name)
        try:
            record = self._get_dynamic(name)
            if record.status == ServerStatus.RUNNING:
                return record
            if record.status != ServerStatus.STOPPED:
                raise InvalidStateError(name, record.status.value, "start")
            await self.gateway.scale(record.service_name, 1)
            result = await self.readiness.wait_ready(record.service_name)
            if result != ReadinessResult.READY:
                await self.gateway.scale(record.service_name, 0)
                raise ReadinessTimeoutError(name, self.readiness.timeout)
            record = await self._transition(name, ServerStatus.RUNNING)
            await self.discovery.publish(record)
            return record
        finally:
            self.registry.release(name)

    async def restart(self, name: str) -> ServerRecord:
        self._get_dynamic(name)
        await self._acquire_now(name)
        try:
            record = self._get_dynamic(name)
            if record.status != ServerStatus.RUNNING:
                raise InvalidStateError(name, record.status.value, "restart")
            restarted = await self.gateway.restart(name)
            logger.info("server_restarting", name=name, pods=restarted)
            result = await self.readiness.wait_ready(record.service_name)
            if result != ReadinessResult.READY:
                raise ReadinessTimeoutError(name, self.readiness.timeout)
            return record
        finally:
            self.registry.release(name)

    # Orphan sweep

    async def sweep_orphans(self) -> int:
        """Delete platform resources no live record owns and finish stuck cleanups.

        Returns the number of resources deleted.
        """
        deleted = 0
        for resource in await self.gateway.list():
            token = resource.owner_token
            # Ownership is checked per resource; records can appear while the list is in flight
            if token is None or token in self.registry.owner_tokens():
                continue
            if self.registry.is_busy(resource.instance or ""):
                continue
            try:
                if await self.gateway.delete(resource.kind, resource.name):
                    deleted += 1
                    logger.info(
                        "orphan_resource_deleted",
                        kind=resource.kind.value,
                        name=resource.name,
                        owner_token=token,
                    )
            except Exception as e:
                logger.error(
                    "orphan_resource_delete_failed",
                    kind=resource.kind.value,
                    name=resource.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        for record in self.registry.dynamic():
            if not record.needs_sweep or self.registry.is_busy(record.name):
                continue
            if record.status == ServerStatus.FAILED:
                await self._finish_failed_cleanup(record)
            elif record.status == ServerStatus.STOPPING:
                try:
                    await self.delete(record.name)
                except Exception as e:
                    logger.error(
                        "orphan_sweep_delete_failed",
                        name=record.name,
                        error=str(e),
                        error_type=type(e).__name__,
                    )

        if deleted:
            logger.info("orphan_sweep_completed", deleted=deleted)
        return deleted

    async def _finish_failed_cleanup(self, record: ServerRecord) -> None:
        remaining = await self._purge_owner(record.owner_token)
        if remaining:
            logger.warning("failed_server_residue_remaining", name=record.name, count=len(remaining))
            return
        await self._release_ports(record)
        self.registry.update(record.name, needs_sweep=False)
        logger.info("failed_server_cleaned_up", name=record.name)

    async def shutdown(self) -> None:
        """Cancel in-flight operations; create sagas compensate before exiting."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("lifecycle_shutdown", cancelled=len(tasks))


def _consume_result(task: asyncio.Task) -> None:
    # Provisioning errors are logged by the saga; fire-and-forget creates have no awaiter
    if not task.cancelled():
        exc = task.exception()
        if exc is not None and not isinstance(exc, OrchestratorError):
            logger.error("server_provision_task_failed", error=str(exc), error_type=type(exc).__name__)
