"""Configuration export/import router."""

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse

from shared.contracts.dto.configuration import (
    EXPORT_VERSION,
    ImportConfigurationRequest,
    ImportResult,
    ServerConfigurationExport,
)

from ..configuration import ConfigurationService
from ..dependencies import get_configuration

router = APIRouter(prefix="/configuration", tags=["configuration"])


def _check_importable(configuration: ServerConfigurationExport) -> None:
    message = None
    if not configuration.servers:
        message = "Configuration contains no servers"
    elif configuration.version.split(".")[0] != EXPORT_VERSION.split(".")[0]:
        message = f"Unsupported configuration version '{configuration.version}'"
    if message:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "InvalidConfiguration", "message": message},
        )


@router.get("/export")
async def export_configuration(
    description: str | None = Query(default=None),
    service: ConfigurationService = Depends(get_configuration),
) -> JSONResponse:
    """Download the current server configuration as a JSON file."""
    export = service.export(description)
    filename = f"file-simulator-config-{export.exported_at:%Y%m%d-%H%M%S}.json"
    return JSONResponse(
        content=export.model_dump(mode="json", by_alias=True),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/preview", response_model=ServerConfigurationExport)
async def preview_configuration(
    description: str | None = Query(default=None),
    service: ConfigurationService = Depends(get_configuration),
) -> ServerConfigurationExport:
    return service.export(description)


@router.post("/validate", response_model=ImportResult)
async def validate_configuration(
    request: ImportConfigurationRequest,
    service: ConfigurationService = Depends(get_configuration),
) -> ImportResult:
    """Report what an import would create, skip or reject, without changing anything."""
    _check_importable(request.configuration)
    return await service.import_configuration(request.configuration, request.strategy, dry_run=True)


@router.post("/import", response_model=ImportResult)
async def import_configuration(
    request: ImportConfigurationRequest,
    response: Response,
    wait: bool = Query(default=True, description="Wait until each server is ready"),
    service: ConfigurationService = Depends(get_configuration),
) -> ImportResult:
    """Create the configuration's dynamic servers. 207 when any server failed."""
    _check_importable(request.configuration)
    result = await service.import_configuration(request.configuration, request.strategy, wait=wait)
    if result.failed:
        response.status_code = status.HTTP_207_MULTI_STATUS
    return result
