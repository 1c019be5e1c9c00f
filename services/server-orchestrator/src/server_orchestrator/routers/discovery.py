"""Discovery document router."""

from fastapi import APIRouter, Depends, HTTPException, status

from shared.contracts.dto.server import DiscoveryEntry

from ..dependencies import get_discovery
from ..discovery import DiscoverySync

router = APIRouter(prefix="/discovery", tags=["discovery"])


@router.get("", response_model=dict[str, DiscoveryEntry])
async def get_document(discovery: DiscoverySync = Depends(get_discovery)) -> dict[str, DiscoveryEntry]:
    """Current discovery document (name -> endpoint)."""
    try:
        return await discovery.document()
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "DiscoveryUnavailable", "message": str(e)},
        ) from e
