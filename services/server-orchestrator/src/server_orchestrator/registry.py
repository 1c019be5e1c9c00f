"""Authoritative in-memory view of all servers."""

import asyncio
from typing import Any, List

import structlog

from shared.contracts.dto.server import ServerRecord, ServerSource, ServerStatus

from .errors import NameInUseError, ProtectedServerError, ServerNotFoundError

logger = structlog.get_logger()


class ServerRegistry:
    """Map of server name -> ServerRecord.

    Reads are lock-free. Writers serialize per name through ``acquire(name)`` and
    ``release(name)``; the registry itself refuses to remove or modify Static
    records.
    """

    def __init__(self) -> None:
        self._records: dict[str, ServerRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def seed_static(self, records: list[ServerRecord]) -> None:
        for record in records:
            if not record.is_static:
                raise ValueError(f"Seed record '{record.name}' is not static")
            self._records[record.name] = record
        logger.info("registry_seeded", static_count=len(records))

    def list(self) -> list[ServerRecord]:
        return sorted(self._records.values(), key=lambda r: (r.source != ServerSource.STATIC, r.name))

    def get(self, name: str) -> ServerRecord | None:
        return self._records.get(name)

    def running(self) -> List[ServerRecord]:
        return [r for r in self._records.values() if r.status == ServerStatus.RUNNING]

    def dynamic(self) -> List[ServerRecord]:
        return [r for r in self._records.values() if not r.is_static]

    def owner_tokens(self) -> set[str]:
        """Tokens of records that may still own platform resources."""
        return {
            r.owner_token
            for r in self._records.values()
            if r.owner_token and r.status != ServerStatus.FAILED
        }

    def insert_new(self, record: ServerRecord) -> ServerRecord:
        """Insert a new dynamic record, failing if the name is taken.

        A Failed record that left nothing behind on the platform may be replaced.
        """
        if record.is_static:
            raise ProtectedServerError(record.name)
        existing = self._records.get(record.name)
        if existing is not None:
            replaceable = (
                not existing.is_static
                and existing.status == ServerStatus.FAILED
                and not existing.needs_sweep
            )
            if not replaceable:
                raise NameInUseError(record.name)
        self._records[record.name] = record
        return record

    def upsert(self, record: ServerRecord) -> ServerRecord:
        existing = self._records.get(record.name)
        if record.is_static or (existing is not None and existing.is_static):
            raise ProtectedServerError(record.name)
        self._records[record.name] = record
        return record

    def update(self, name: str, **changes: Any) -> ServerRecord:
        existing = self._records.get(name)
        if existing is None:
            raise ServerNotFoundError(name)
        return self.upsert(existing.model_copy(update=changes))

    def remove(self, name: str) -> ServerRecord:
        existing = self._records.get(name)
        if existing is None:
            raise ServerNotFoundError(name)
        if existing.is_static:
            raise ProtectedServerError(name)
        record = self._records.pop(name)
        if name not in self._holders:
            self._locks.pop(name, None)
        return record

    def lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def acquire(self, name: str, timeout: float | None = None) -> asyncio.Lock:
        """Take the name lock, waiting at most ``timeout`` seconds when given.

        Callers pair this with ``release(name)``. A lock is dropped once its
        record is gone and nobody holds or waits on it.
        """
        lock = self.lock(name)
        self._holders[name] = self._holders.get(name, 0) + 1
        try:
            if timeout is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except BaseException:
            self._forget(name)
            raise
        return lock

    def release(self, name: str) -> None:
        self._locks[name].release()
        self._forget(name)

    def _forget(self, name: str) -> None:
        count = self._holders.get(name, 0) - 1
        if count > 0:
            self._holders[name] = count
            return
        self._holders.pop(name, None)
        if name not in self._records:
            self._locks.pop(name, None)

    def is_busy(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()
