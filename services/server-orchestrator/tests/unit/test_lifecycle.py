import asyncio

import pytest

from server_orchestrator.composer import resource_name
from server_orchestrator.errors import (
    DeletionTimeoutError,
    InvalidStateError,
    NameInUseError,
    PlatformError,
    ProtectedServerError,
    ProvisioningFailedError,
    RangeExhaustedError,
    ReadinessTimeoutError,
    ServerBusyError,
    ServerNotFoundError,
)
from server_orchestrator.models import ResourceDescriptor, ResourceKind
from shared.contracts.dto.server import ServerProtocol, ServerStatus


def _resource(settings, name: str, protocol: ServerProtocol = ServerProtocol.NAS) -> str:
    return resource_name(settings.release_prefix, protocol, name)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_first_nas_server_gets_first_port(lifecycle, platform, services, settings, nas_request):
    record = await lifecycle.create(nas_request("nas-a"))

    assert record.status == ServerStatus.RUNNING
    assert record.port == 32150
    assert record.host == "sim.test"
    assert record.owner_token.startswith("testinstance-")

    resources = await platform.list(owner_token=record.owner_token)
    assert {(r.kind, r.name) for r in resources} == {
        (ResourceKind.ENDPOINT, _resource(settings, "nas-a")),
        (ResourceKind.WORKLOAD, _resource(settings, "nas-a")),
    }
    assert platform.calls[:2] == [
        ("create", "Service", _resource(settings, "nas-a")),
        ("create", "Deployment", _resource(settings, "nas-a")),
    ]
    document = await services.discovery.document()
    assert document["nas-a"].port == 32150


@pytest.mark.asyncio
async def test_concurrent_creates_get_distinct_ports(lifecycle, platform, nas_request):
    platform.latency = 0.001

    first, second = await asyncio.gather(
        lifecycle.create(nas_request("nas-a")),
        lifecycle.create(nas_request("nas-b")),
    )

    assert {first.port, second.port} == {32150, 32151}


@pytest.mark.asyncio
async def test_many_concurrent_creates_never_share_a_port(lifecycle, platform, nas_request):
    platform.latency = 0.001

    records = await asyncio.gather(*(lifecycle.create(nas_request(f"nas-{i:02d}")) for i in range(12)))

    ports = [r.port for r in records]
    assert len(set(ports)) == 12
    node_ports = [p for r in platform.resources() for p in r.node_ports]
    assert len(node_ports) == len(set(node_ports))


@pytest.mark.asyncio
async def test_ftp_server_gets_passive_port_block(lifecycle, ftp_request):
    record = await lifecycle.create(ftp_request("ftp-a"))

    assert record.protocol == ServerProtocol.FTP
    assert record.port == 32150
    assert record.passive_ports == (30200, 30204)
    assert record.cluster_port == 21


@pytest.mark.asyncio
async def test_duplicate_name_is_rejected(lifecycle, nas_request):
    await lifecycle.create(nas_request("nas-a"))

    with pytest.raises(NameInUseError):
        await lifecycle.create(nas_request("nas-a"))
    with pytest.raises(NameInUseError):
        await lifecycle.create(nas_request("nas-input-1"))


@pytest.mark.asyncio
async def test_delete_static_server_is_rejected_without_side_effects(lifecycle, platform, registry):
    before = registry.list()

    with pytest.raises(ProtectedServerError):
        await lifecycle.delete("nas-input-1")
    with pytest.raises(ProtectedServerError):
        lifecycle.request_delete("nas-input-1")

    assert registry.list() == before
    assert platform.calls == []


@pytest.mark.asyncio
async def test_delete_removes_everything_and_is_idempotent(lifecycle, platform, services, nas_request):
    record = await lifecycle.create(nas_request("nas-a"))

    await lifecycle.delete("nas-a")

    assert lifecycle.registry.get("nas-a") is None
    assert await platform.list(owner_token=record.owner_token) == []
    assert lifecycle.allocator.reserved == frozenset()
    assert "nas-a" not in await services.discovery.document()
    deletes = [c for c in platform.calls if c[0] == "delete"]
    assert deletes[:2] == [
        ("delete", "Service", record.service_name),
        ("delete", "Deployment", record.service_name),
    ]

    with pytest.raises(ServerNotFoundError):
        await lifecycle.delete("nas-a")


@pytest.mark.asyncio
async def test_delete_during_provisioning_waits_for_create(lifecycle, platform, nas_request):
    platform.ready_after = 0.1

    pending = await lifecycle.create(nas_request("nas-a"), wait=False)
    assert pending.status == ServerStatus.PENDING
    assert pending.port == 32150

    await lifecycle.delete("nas-a")

    assert lifecycle.registry.get("nas-a") is None
    assert platform.resources() == []
    assert lifecycle.allocator.reserved == frozenset()


@pytest.mark.asyncio
async def test_delete_gives_up_when_busy_too_long(lifecycle, platform, settings, nas_request):
    platform.never_ready.add(_resource(settings, "nas-a"))
    settings.busy_wait_timeout = 0.05

    await lifecycle.create(nas_request("nas-a"), wait=False)
    await asyncio.sleep(0.01)

    with pytest.raises(ServerBusyError):
        await lifecycle.delete("nas-a")

    # The create still runs to completion and rolls back
    await _wait_until(lambda: lifecycle.registry.get("nas-a").status == ServerStatus.FAILED)
    assert platform.resources() == []


@pytest.mark.asyncio
async def test_readiness_timeout_rolls_back_and_frees_port(lifecycle, platform, settings, nas_request):
    platform.never_ready.add(_resource(settings, "nas-slow"))

    with pytest.raises(ReadinessTimeoutError):
        await lifecycle.create(nas_request("nas-slow"))

    record = lifecycle.registry.get("nas-slow")
    assert record.status == ServerStatus.FAILED
    assert record.needs_sweep is False
    assert platform.resources() == []
    assert lifecycle.allocator.reserved == frozenset()

    other = await lifecycle.create(nas_request("nas-next"))
    assert other.port == 32150


@pytest.mark.asyncio
async def test_platform_failure_compensates_and_chains_cause(lifecycle, platform, nas_request):
    platform.fail_create.add(ResourceKind.WORKLOAD)

    with pytest.raises(ProvisioningFailedError) as exc_info:
        await lifecycle.create(nas_request("nas-a"))

    assert isinstance(exc_info.value.__cause__, PlatformError)
    assert platform.resources() == []
    record = lifecycle.registry.get("nas-a")
    assert record.status == ServerStatus.FAILED
    assert "injected" in record.error
    assert lifecycle.allocator.reserved == frozenset()


@pytest.mark.asyncio
async def test_failed_name_can_be_reused(lifecycle, platform, nas_request):
    platform.fail_create.add(ResourceKind.ENDPOINT)
    with pytest.raises(ProvisioningFailedError):
        await lifecycle.create(nas_request("nas-a"))
    assert lifecycle.is_name_available("nas-a")

    platform.fail_create.clear()
    record = await lifecycle.create(nas_request("nas-a"))

    assert record.status == ServerStatus.RUNNING


@pytest.mark.asyncio
async def test_residue_keeps_ports_until_sweep(lifecycle, platform, settings, nas_request):
    resource = _resource(settings, "nas-a")
    platform.lingering.add(resource)
    platform.fail_create.add(ResourceKind.WORKLOAD)

    with pytest.raises(ProvisioningFailedError):
        await lifecycle.create(nas_request("nas-a"))

    record = lifecycle.registry.get("nas-a")
    assert record.needs_sweep is True
    assert 32150 in lifecycle.allocator.reserved
    assert not lifecycle.is_name_available("nas-a")

    platform.lingering.clear()
    await lifecycle.sweep_orphans()

    record = lifecycle.registry.get("nas-a")
    assert record.needs_sweep is False
    assert platform.resources() == []
    assert lifecycle.allocator.reserved == frozenset()


@pytest.mark.asyncio
async def test_delete_timeout_leaves_record_for_sweep(lifecycle, platform, settings, nas_request):
    await lifecycle.create(nas_request("nas-a"))
    platform.lingering.add(_resource(settings, "nas-a"))

    with pytest.raises(DeletionTimeoutError):
        await lifecycle.delete("nas-a")

    record = lifecycle.registry.get("nas-a")
    assert record.status == ServerStatus.STOPPING
    assert record.needs_sweep is True
    assert 32150 in lifecycle.allocator.reserved

    platform.lingering.clear()
    await lifecycle.sweep_orphans()

    assert lifecycle.registry.get("nas-a") is None
    assert platform.resources() == []
    assert lifecycle.allocator.reserved == frozenset()


@pytest.mark.asyncio
async def test_range_exhausted_leaves_no_record(lifecycle, nas_request):
    lifecycle.allocator.max_port = 32150
    await lifecycle.create(nas_request("nas-a"))

    with pytest.raises(RangeExhaustedError):
        await lifecycle.create(nas_request("nas-b"))

    assert lifecycle.registry.get("nas-b") is None
    assert lifecycle.is_name_available("nas-b")


@pytest.mark.asyncio
async def test_sweep_deletes_resources_of_unknown_owners(lifecycle, platform, nas_request):
    kept = await lifecycle.create(nas_request("nas-a"))
    orphan_labels = {
        "app.kubernetes.io/managed-by": "control-api",
        "app.kubernetes.io/instance": "old-server",
        "file-simulator.io/owner-token": "previous-process-1234",
    }
    await platform.create(
        ResourceDescriptor(ResourceKind.ENDPOINT, "orphan", "previous-process-1234", orphan_labels, {})
    )
    await platform.create(
        ResourceDescriptor(ResourceKind.WORKLOAD, "orphan", "previous-process-1234", orphan_labels, {})
    )

    deleted = await lifecycle.sweep_orphans()

    assert deleted == 2
    remaining = {r.owner_token for r in platform.resources()}
    assert remaining == {kept.owner_token}



@pytest.mark.asyncio
async def test_sweep_keeps_resources_of_server_created_during_listing(lifecycle, platform, nas_request):
    full_list = platform.list

    async def slow_full_list(kind=None, owner_token=None):
        if kind is None and owner_token is None:
            await asyncio.sleep(0.2)
        return await full_list(kind=kind, owner_token=owner_token)

    platform.list = slow_full_list
    sweep = asyncio.create_task(lifecycle.sweep_orphans())
    await asyncio.sleep(0)

    record = await lifecycle.create(nas_request("nas-live"))
    assert record.status == ServerStatus.RUNNING

    assert await sweep == 0
    assert len(await full_list(owner_token=record.owner_token)) == 2
    assert lifecycle.registry.get("nas-live").status == ServerStatus.RUNNING

@pytest.mark.asyncio
async def test_request_delete_runs_in_background_once(lifecycle, platform, nas_request):
    await lifecycle.create(nas_request("nas-a"))

    first = lifecycle.request_delete("nas-a")
    second = lifecycle.request_delete("nas-a")

    assert first.name == second.name == "nas-a"
    await _wait_until(lambda: lifecycle.registry.get("nas-a") is None)
    assert platform.resources() == []
    assert len([c for c in platform.calls if c == ("delete", "Service", first.service_name)]) == 1


@pytest.mark.asyncio
async def test_request_delete_unknown_name(lifecycle):
    with pytest.raises(ServerNotFoundError):
        lifecycle.request_delete("missing")


@pytest.mark.asyncio
async def test_stop_start_restart(lifecycle, platform, services, nas_request):
    await lifecycle.create(nas_request("nas-a"))

    stopped = await lifecycle.stop("nas-a")
    assert stopped.status == ServerStatus.STOPPED
    assert "nas-a" not in await services.discovery.document()
    status = await platform.workload_status(stopped.service_name)
    assert status.replicas == 0

    with pytest.raises(InvalidStateError):
        await lifecycle.restart("nas-a")

    started = await lifecycle.start("nas-a")
    assert started.status == ServerStatus.RUNNING
    assert "nas-a" in await services.discovery.document()

    restarted = await lifecycle.restart("nas-a")
    assert restarted.status == ServerStatus.RUNNING


@pytest.mark.asyncio
async def test_stop_static_server_is_protected(lifecycle):
    with pytest.raises(ProtectedServerError):
        await lifecycle.stop("nas-backup")
    with pytest.raises(ProtectedServerError):
        await lifecycle.start("nas-backup")
    with pytest.raises(ProtectedServerError):
        await lifecycle.restart("nas-backup")


@pytest.mark.asyncio
async def test_shutdown_cancels_and_compensates_in_flight_create(lifecycle, platform, settings, nas_request):
    platform.never_ready.add(_resource(settings, "nas-a"))
    await lifecycle.create(nas_request("nas-a"), wait=False)
    await _wait_until(lambda: len(platform.resources()) == 2)

    await lifecycle.shutdown()

    assert platform.resources() == []
    record = lifecycle.registry.get("nas-a")
    assert record.status == ServerStatus.FAILED
    assert not lifecycle.registry.is_busy("nas-a")
    assert lifecycle.allocator.reserved == frozenset()


@pytest.mark.asyncio
async def test_caller_cancellation_does_not_interrupt_provisioning(lifecycle, platform, nas_request):
    platform.ready_after = 0.05

    caller = asyncio.create_task(lifecycle.create(nas_request("nas-a")))
    await asyncio.sleep(0.01)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    await _wait_until(lambda: lifecycle.registry.get("nas-a").status == ServerStatus.RUNNING)
    assert len(platform.resources()) == 2


@pytest.mark.asyncio
async def test_failed_record_can_be_deleted(lifecycle, platform, nas_request):
    platform.fail_create.add(ResourceKind.ENDPOINT)
    with pytest.raises(ProvisioningFailedError):
        await lifecycle.create(nas_request("nas-a"))

    await lifecycle.delete("nas-a")

    assert lifecycle.registry.get("nas-a") is None
    assert lifecycle.allocator.reserved == frozenset()


@pytest.mark.asyncio
async def test_deleted_servers_do_not_keep_name_locks(lifecycle, nas_request):
    for i in range(3):
        await lifecycle.create(nas_request(f"nas-{i}"))
        await lifecycle.delete(f"nas-{i}")
    lifecycle.allocator.max_port = lifecycle.allocator.min_port - 1
    with pytest.raises(RangeExhaustedError):
        await lifecycle.create(nas_request("nas-x"))

    assert not any(name.startswith("nas-") for name in lifecycle.registry._locks)
