from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

from shared.contracts.dto.server import ServerStatus


class ServerStatusEvent(BaseModel):
    """Server status change notification (channel servers:{name}:status)."""

    type: Literal["status"] = "status"
    name: str
    status: ServerStatus
    previous: ServerStatus | None = None
    port: int | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
