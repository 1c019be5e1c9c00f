"""Discovery document: where clients find every running server.

The document is a projection of the registry's Running set. Individual
publish/retract calls keep it fresh; the reconciler repairs it after failures.
"""

import asyncio
from datetime import UTC, datetime
import re
from typing import Protocol

import redis.asyncio as redis
import structlog

from shared.contracts.dto.server import DiscoveryEntry, ServerRecord, ServerStatus

from .errors import DiscoverySyncStaleError
from .models import APP_NAME, LABEL_APP_NAME, LABEL_MANAGED_BY, MANAGED_BY, NAME_PATTERN
from .platform.gateway import PlatformGateway
from .registry import ServerRegistry

logger = structlog.get_logger()


class DiscoveryStore(Protocol):
    async def put(self, entry: DiscoveryEntry) -> None: ...

    async def remove(self, name: str) -> None: ...

    async def replace(self, entries: dict[str, DiscoveryEntry]) -> None: ...

    async def read(self) -> dict[str, DiscoveryEntry]: ...


class RedisDiscoveryStore:
    """Redis hash ``{prefix}:servers`` (name -> JSON entry) plus ``{prefix}:updated_at``."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "discovery"):
        self.redis = redis_client
        self.servers_key = f"{prefix}:servers"
        self.updated_key = f"{prefix}:updated_at"

    @staticmethod
    def _now() -> str:
        return datetime.now(UTC).isoformat()

    async def put(self, entry: DiscoveryEntry) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.servers_key, entry.name, entry.model_dump_json(by_alias=True))
            pipe.set(self.updated_key, self._now())
            await pipe.execute()

    async def remove(self, name: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self.servers_key, name)
            pipe.set(self.updated_key, self._now())
            await pipe.execute()

    async def replace(self, entries: dict[str, DiscoveryEntry]) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self.servers_key)
            if entries:
                pipe.hset(
                    self.servers_key,
                    mapping={
                        name: entry.model_dump_json(by_alias=True) for name, entry in entries.items()
                    },
                )
            pipe.set(self.updated_key, self._now())
            await pipe.execute()

    async def read(self) -> dict[str, DiscoveryEntry]:
        raw = await self.redis.hgetall(self.servers_key)
        return {
            _text(name): DiscoveryEntry.model_validate_json(value) for name, value in raw.items()
        }


def _text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


class ConfigMapDiscoveryStore:
    """Endpoints ConfigMap consumed by in-cluster clients.

    Holds one JSON entry per server name, the env-style keys
    ``PROTOCOL_NAME=<service>.<ns>.svc.cluster.local:<port>`` and
    ``PROTOCOL_NAME_NODEPORT=<nodePort>``, plus ``UPDATED_AT`` / ``SERVER_COUNT``.
    """

    def __init__(self, gateway: PlatformGateway, config_map_name: str):
        self.gateway = gateway
        self.config_map_name = config_map_name
        self._lock = asyncio.Lock()

    @staticmethod
    def env_key(entry: DiscoveryEntry) -> str:
        return f"{entry.protocol.value}_{entry.name}".replace("-", "_").upper()

    def _render(self, entries: dict[str, DiscoveryEntry]) -> dict[str, str]:
        data: dict[str, str] = {}
        for name, entry in sorted(entries.items()):
            data[name] = entry.model_dump_json(by_alias=True)
            key = self.env_key(entry)
            if entry.service_address:
                data[key] = entry.service_address
            data[f"{key}_NODEPORT"] = str(entry.port)
        data["UPDATED_AT"] = datetime.now(UTC).isoformat()
        data["SERVER_COUNT"] = str(len(entries))
        return data

    async def _write(self, entries: dict[str, DiscoveryEntry]) -> None:
        labels = {LABEL_APP_NAME: APP_NAME, LABEL_MANAGED_BY: MANAGED_BY}
        await self.gateway.write_config_map(self.config_map_name, self._render(entries), labels)

    async def read(self) -> dict[str, DiscoveryEntry]:
        data = await self.gateway.read_config_map(self.config_map_name) or {}
        return {
            key: DiscoveryEntry.model_validate_json(value)
            for key, value in data.items()
            if re.fullmatch(NAME_PATTERN, key)
        }

    async def put(self, entry: DiscoveryEntry) -> None:
        async with self._lock:
            entries = await self.read()
            entries[entry.name] = entry
            await self._write(entries)

    async def remove(self, name: str) -> None:
        async with self._lock:
            entries = await self.read()
            entries.pop(name, None)
            await self._write(entries)

    async def replace(self, entries: dict[str, DiscoveryEntry]) -> None:
        async with self._lock:
            await self._write(entries)


class DiscoverySync:
    """Keeps the discovery document converged with the registry."""

    def __init__(
        self,
        store: DiscoveryStore,
        registry: ServerRegistry,
        namespace: str | None = None,
        timeout: float = 5.0,
    ):
        self.store = store
        self.registry = registry
        self.namespace = namespace
        self.timeout = timeout

    def entry_for(self, record: ServerRecord) -> DiscoveryEntry:
        return DiscoveryEntry.from_record(record, namespace=self.namespace)

    async def _bounded(self, action: str, coro) -> None:
        try:
            await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise DiscoverySyncStaleError(f"Discovery {action} timed out after {self.timeout:g}s") from e
        except Exception as e:
            raise DiscoverySyncStaleError(f"Discovery {action} failed: {e}") from e

    def _mark_stale(self, name: str) -> None:
        record = self.registry.get(name)
        if record is not None and not record.is_static:
            self.registry.update(name, discovery_stale=True)

    async def publish(self, record: ServerRecord) -> bool:
        """Add or refresh a running server. Returns False (and marks it stale) on failure."""
        try:
            await self._bounded("publish", self.store.put(self.entry_for(record)))
        except DiscoverySyncStaleError as e:
            logger.warning("discovery_publish_failed", name=record.name, error=str(e))
            self._mark_stale(record.name)
            return False
        logger.info("discovery_published", name=record.name, port=record.port)
        return True

    async def retract(self, name: str) -> bool:
        """Remove a server from the document. Missing entries are not an error."""
        try:
            await self._bounded("retract", self.store.remove(name))
        except DiscoverySyncStaleError as e:
            logger.warning("discovery_retract_failed", name=name, error=str(e))
            self._mark_stale(name)
            return False
        logger.info("discovery_retracted", name=name)
        return True

    async def document(self) -> dict[str, DiscoveryEntry]:
        return await self.store.read()

    async def reconcile(self) -> bool:
        """Rewrite the document from the registry if they differ. Returns True if rewritten."""
        desired = {record.name: self.entry_for(record) for record in self.registry.running()}
        current = await asyncio.wait_for(self.store.read(), timeout=self.timeout)
        changed = current != desired
        if changed:
            await self._bounded("reconcile", self.store.replace(desired))
            logger.info(
                "discovery_reconciled",
                servers=len(desired),
                added=sorted(desired.keys() - current.keys()),
                removed=sorted(current.keys() - desired.keys()),
            )
        for record in self.registry.dynamic():
            if record.discovery_stale and self._converged(record, desired):
                self.registry.update(record.name, discovery_stale=False)
        return changed

    def _converged(self, record: ServerRecord, desired: dict[str, DiscoveryEntry]) -> bool:
        # Only records the written snapshot already reflects
        if record.status == ServerStatus.RUNNING:
            return desired.get(record.name) == self.entry_for(record)
        return record.name not in desired
