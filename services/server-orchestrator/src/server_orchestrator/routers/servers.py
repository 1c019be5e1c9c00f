"""Servers router."""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from shared.contracts.dto.server import ServerRecord

from ..dependencies import get_lifecycle
from ..errors import (
    DeletionTimeoutError,
    InvalidStateError,
    NameInUseError,
    OrchestratorError,
    ProtectedServerError,
    ProvisioningFailedError,
    RangeExhaustedError,
    ReadinessTimeoutError,
    ServerBusyError,
    ServerNotFoundError,
)
from ..lifecycle import LifecycleController
from ..models import (
    CreateFtpServerRequest,
    CreateNasServerRequest,
    CreateServerRequest,
    CreateSftpServerRequest,
)

router = APIRouter(prefix="/servers", tags=["servers"])

ERROR_STATUS: dict[type[OrchestratorError], int] = {
    NameInUseError: status.HTTP_409_CONFLICT,
    ServerBusyError: status.HTTP_409_CONFLICT,
    InvalidStateError: status.HTTP_409_CONFLICT,
    RangeExhaustedError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ProtectedServerError: status.HTTP_403_FORBIDDEN,
    ServerNotFoundError: status.HTTP_404_NOT_FOUND,
    ProvisioningFailedError: status.HTTP_502_BAD_GATEWAY,
    ReadinessTimeoutError: status.HTTP_504_GATEWAY_TIMEOUT,
    DeletionTimeoutError: status.HTTP_504_GATEWAY_TIMEOUT,
}


def _http_error(e: OrchestratorError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(type(e), status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"error": e.code, "message": str(e)},
    )


async def _create(
    lifecycle: LifecycleController, request: CreateServerRequest, wait: bool
) -> ServerRecord:
    try:
        return await lifecycle.create(request, wait=wait)
    except OrchestratorError as e:
        raise _http_error(e) from e


@router.get("", response_model=list[ServerRecord])
async def list_servers(lifecycle: LifecycleController = Depends(get_lifecycle)) -> list[ServerRecord]:
    """List static and dynamic servers."""
    return lifecycle.list_servers()


@router.get("/check-name/{name}")
async def check_name(name: str, lifecycle: LifecycleController = Depends(get_lifecycle)) -> dict:
    """Check whether a server name can be used for a new server."""
    return {"name": name, "available": lifecycle.is_name_available(name)}


@router.get("/{name}", response_model=ServerRecord)
async def get_server(name: str, lifecycle: LifecycleController = Depends(get_lifecycle)) -> ServerRecord:
    try:
        return lifecycle.get_server(name)
    except OrchestratorError as e:
        raise _http_error(e) from e


@router.post("/ftp", response_model=ServerRecord, status_code=status.HTTP_201_CREATED)
async def create_ftp_server(
    request: CreateFtpServerRequest,
    wait: bool = Query(default=True, description="Wait until the server is ready"),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> ServerRecord:
    return await _create(lifecycle, request, wait)


@router.post("/sftp", response_model=ServerRecord, status_code=status.HTTP_201_CREATED)
async def create_sftp_server(
    request: CreateSftpServerRequest,
    wait: bool = Query(default=True, description="Wait until the server is ready"),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> ServerRecord:
    return await _create(lifecycle, request, wait)


@router.post("/nas", response_model=ServerRecord, status_code=status.HTTP_201_CREATED)
async def create_nas_server(
    request: CreateNasServerRequest,
    wait: bool = Query(default=True, description="Wait until the server is ready"),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> ServerRecord:
    return await _create(lifecycle, request, wait)


@router.delete("/{name}", status_code=status.HTTP_202_ACCEPTED)
async def delete_server(name: str, lifecycle: LifecycleController = Depends(get_lifecycle)) -> dict:
    """Start deleting a dynamic server. Static servers are rejected with 403."""
    try:
        record = lifecycle.request_delete(name)
    except OrchestratorError as e:
        raise _http_error(e) from e
    return {"name": record.name, "message": f"Deletion of server '{name}' started"}


@router.post("/{name}/stop", response_model=ServerRecord)
async def stop_server(name: str, lifecycle: LifecycleController = Depends(get_lifecycle)) -> ServerRecord:
    try:
        return await lifecycle.stop(name)
    except OrchestratorError as e:
        raise _http_error(e) from e


@router.post("/{name}/start", response_model=ServerRecord)
async def start_server(name: str, lifecycle: LifecycleController = Depends(get_lifecycle)) -> ServerRecord:
    try:
        return await lifecycle.start(name)
    except OrchestratorError as e:
        raise _http_error(e) from e


@router.post("/{name}/restart", response_model=ServerRecord)
async def restart_server(
    name: str, lifecycle: LifecycleController = Depends(get_lifecycle)
) -> ServerRecord:
    try:
        return await lifecycle.restart(name)
    except OrchestratorError as e:
        raise _http_error(e) from e
