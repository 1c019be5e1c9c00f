from pydantic import Field

from shared.config import BaseSettings, api_url_field


class Config(BaseSettings):
    """simctl configuration."""

    api_url: str = api_url_field(required=False)

    timeout: float = Field(
        default=150.0,
        alias="SIMCTL_TIMEOUT",
        description="HTTP timeout in seconds (creates wait for readiness)",
    )
