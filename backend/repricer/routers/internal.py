from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session
from typing import Optional

from ..config import settings
from ..models_sqlalchemy import get_db, get_session_factory
from ..models.ebay import (
    ConnectionStatusResponse,
    DisconnectResponse,
    ReductionPassRequest,
    ReductionPassResponse,
)
from ..services.ebay_token_service import EbayTokenService
from ..services.price_reduction_service import run_reduction_pass
from ..utils.logger import logger

router = APIRouter(prefix="/api/internal", tags=["internal"])


def require_internal_key(x_internal_api_key: Optional[str] = Header(default=None)) -> None:
    """Shared-secret guard for scheduler / admin tooling endpoints."""
    expected_key = settings.INTERNAL_API_KEY
    if not expected_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal_api_key_not_configured",
        )
    if x_internal_api_key != expected_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid_internal_api_key",
        )


@router.get(
    "/ebay/{user_id}/status",
    response_model=ConnectionStatusResponse,
    dependencies=[Depends(require_internal_key)],
)
async def get_ebay_connection_status(user_id: str, db: Session = Depends(get_db)):
    service = EbayTokenService(db, user_id)
    return await service.get_connection_status()


@router.post(
    "/ebay/{user_id}/disconnect",
    response_model=DisconnectResponse,
    dependencies=[Depends(require_internal_key)],
)
async def disconnect_ebay_account(user_id: str, db: Session = Depends(get_db)):
    service = EbayTokenService(db, user_id)
    if not service.disconnect():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ebay_account_not_found")
    return DisconnectResponse(user_id=user_id, disconnected=True, connection_status="disconnected")


@router.post(
    "/price-reduction/run",
    response_model=ReductionPassResponse,
    dependencies=[Depends(require_internal_key)],
)
async def run_price_reduction(
    payload: Optional[ReductionPassRequest] = None,
    session_factory=Depends(get_session_factory),
):
    """Run one reduction pass now (manual trigger)."""
    payload = payload or ReductionPassRequest()
    try:
        return await run_reduction_pass(
            session_factory=session_factory,
            dry_run=payload.dry_run,
            user_id=payload.user_id,
            reduction_type="manual",
        )
    except Exception as e:
        logger.error(f"Manual price reduction pass failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"price_reduction_failed: {str(e)}",
        )
