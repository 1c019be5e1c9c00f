"""Correlation IDs tie together the log lines of one request or background run."""

import uuid

import structlog

CORRELATION_KEY = "correlation_id"


def new_correlation_id(prefix: str = "req") -> str:
    """Short ID such as ``req_1a2b3c4d``."""
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def set_correlation_id(correlation_id: str, **context: object) -> None:
    """Bind the correlation ID (and any extra fields) to the current context."""
    structlog.contextvars.bind_contextvars(**{CORRELATION_KEY: correlation_id}, **context)


def get_correlation_id() -> str | None:
    return structlog.contextvars.get_contextvars().get(CORRELATION_KEY)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
