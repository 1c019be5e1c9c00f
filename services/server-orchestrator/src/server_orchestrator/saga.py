from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

Compensation = Callable[[], Awaitable[Any]]


class Saga:
    """Ordered (action, compensation) steps.

    On failure the caller runs ``compensate()``, which undoes completed steps
    in reverse order and keeps going past compensation errors.
    """

    def __init__(self, name: str):
        self.name = name
        self._compensations: list[tuple[str, Compensation]] = []

    @property
    def completed(self) -> list[str]:
        return [step for step, _ in self._compensations]

    async def step(
        self,
        description: str,
        action: Callable[[], Awaitable[T]],
        compensation: Compensation | None = None,
    ) -> T:
        result = await action()
        if compensation is not None:
            self._compensations.append((description, compensation))
        logger.debug("saga_step_completed", saga=self.name, step=description)
        return result

    async def compensate(self) -> list[str]:
        """Undo completed steps, newest first. Returns the steps whose undo failed."""
        failed: list[str] = []
        while self._compensations:
            description, compensation = self._compensations.pop()
            try:
                await compensation()
                logger.info("saga_step_compensated", saga=self.name, step=description)
            except Exception as e:
                failed.append(description)
                logger.error(
                    "saga_compensation_failed",
                    saga=self.name,
                    step=description,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return failed
