import asyncio

import structlog

from .errors import RangeExhaustedError
from .platform.gateway import PlatformGateway, used_node_ports

logger = structlog.get_logger()


class PortAllocator:
    """Hands out NodePorts (or contiguous blocks of them) from a fixed range.

    A port is free when no live managed endpoint holds it and no in-flight
    create has reserved it. Reservations last until ``release``.
    """

    def __init__(self, gateway: PlatformGateway, min_port: int, max_port: int, name: str = "dynamic"):
        self.gateway = gateway
        self.min_port = min_port
        self.max_port = max_port
        self.name = name
        self._reserved: set[int] = set()
        self._lock = asyncio.Lock()

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._reserved)

    async def allocate(self, count: int = 1) -> int:
        """Reserve ``count`` consecutive ports and return the first one."""
        live = await used_node_ports(self.gateway)
        async with self._lock:
            taken = live | self._reserved
            start = self.min_port
            while start + count - 1 <= self.max_port:
                block = range(start, start + count)
                clash = [port for port in block if port in taken]
                if not clash:
                    self._reserved.update(block)
                    logger.debug("ports_allocated", pool=self.name, start=start, count=count)
                    return start
                start = clash[-1] + 1
        logger.warning(
            "port_range_exhausted",
            pool=self.name,
            min_port=self.min_port,
            max_port=self.max_port,
            count=count,
        )
        raise RangeExhaustedError(self.min_port, self.max_port, count)

    async def release(self, start: int, count: int = 1) -> None:
        async with self._lock:
            self._reserved.difference_update(range(start, start + count))
        logger.debug("ports_released", pool=self.name, start=start, count=count)

