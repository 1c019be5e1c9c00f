import asyncio
from enum import Enum

import structlog

from .platform.gateway import PlatformGateway

logger = structlog.get_logger()


class ReadinessResult(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


class ReadinessWatcher:
    """Gates a server on platform-reported readiness (ready replicas >= 1).

    Polling happens in the caller's task, so cancelling the caller stops it.
    """

    def __init__(self, gateway: PlatformGateway, timeout: float = 60.0, poll_interval: float = 2.0):
        self.gateway = gateway
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def wait_ready(self, workload_name: str, timeout: float | None = None) -> ReadinessResult:
        timeout = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            status = await self.gateway.workload_status(workload_name)
            if status is not None and status.ready:
                logger.info("workload_ready", workload=workload_name)
                return ReadinessResult.READY

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("workload_readiness_timeout", workload=workload_name, timeout=timeout)
                return ReadinessResult.TIMED_OUT
            await asyncio.sleep(min(self.poll_interval, remaining))
