"""Orchestrator error taxonomy."""


class OrchestratorError(Exception):
    """Base class for lifecycle errors surfaced to callers."""

    code = "OrchestratorError"


class NameInUseError(OrchestratorError):
    code = "NameInUse"

    def __init__(self, name: str):
        super().__init__(f"Server name '{name}' is already in use")
        self.name = name


class RangeExhaustedError(OrchestratorError):
    code = "RangeExhausted"

    def __init__(self, min_port: int, max_port: int, count: int = 1):
        super().__init__(f"No free block of {count} port(s) in range {min_port}-{max_port}")
        self.min_port = min_port
        self.max_port = max_port


class ProtectedServerError(OrchestratorError):
    code = "Protected"

    def __init__(self, name: str):
        super().__init__(f"Server '{name}' is statically provisioned and cannot be modified")
        self.name = name


class ServerNotFoundError(OrchestratorError):
    code = "NotFound"

    def __init__(self, name: str):
        super().__init__(f"Server '{name}' not found")
        self.name = name


class ServerBusyError(OrchestratorError):
    code = "Busy"

    def __init__(self, name: str):
        super().__init__(f"Server '{name}' has another operation in progress")
        self.name = name


class ProvisioningFailedError(OrchestratorError):
    """Creation failed mid-sequence; raised after compensation ran."""

    code = "ProvisioningFailed"


class ReadinessTimeoutError(OrchestratorError):
    code = "ReadinessTimeout"

    def __init__(self, name: str, timeout: float):
        super().__init__(f"Server '{name}' did not become ready within {timeout:g}s")
        self.name = name
        self.timeout = timeout


class DeletionTimeoutError(OrchestratorError):
    code = "DeletionTimeout"

    def __init__(self, name: str, timeout: float):
        super().__init__(
            f"Server '{name}' resources were not confirmed deleted within {timeout:g}s"
        )
        self.name = name
        self.timeout = timeout


class DiscoverySyncStaleError(OrchestratorError):
    """Discovery document update failed. Never fails the triggering operation."""

    code = "DiscoverySyncStale"


class PlatformError(Exception):
    """Container platform call failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ResourceConflictError(PlatformError):
    """Resource (or one of its NodePorts) already exists on the platform."""


class InvalidStateError(OrchestratorError):
    """Operation does not apply to the server's current status."""

    code = "InvalidState"

    def __init__(self, name: str, status: str, operation: str):
        super().__init__(f"Cannot {operation} server '{name}' while it is {status}")
        self.name = name
        self.status = status
