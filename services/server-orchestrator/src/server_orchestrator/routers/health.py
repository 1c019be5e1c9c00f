"""Health check router."""

from fastapi import APIRouter, Depends

from shared.contracts.dto.server import ServerStatus

from ..dependencies import Services, get_services

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: Services = Depends(get_services)) -> dict:
    """Health check endpoint."""
    servers = services.registry.list()
    return {
        "status": "ok",
        "platform": services.settings.platform_backend,
        "servers": len(servers),
        "running": sum(1 for s in servers if s.status == ServerStatus.RUNNING),
    }
