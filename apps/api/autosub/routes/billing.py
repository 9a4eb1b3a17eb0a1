"""Billing routes."""

from typing import Annotated

from fastapi import APIRouter, Depends

from autosub.routes.dependencies import get_settlement
from autosub.schemas.billing import SettlementReport
from autosub.schemas.error import ErrorResponse, UpstreamError
from autosub.services.settlement import PurchaseSettlement

router = APIRouter(prefix="/billing", tags=["Billing"])


@router.post(
    "/sync",
    response_model=SettlementReport,
    responses={401: {"model": ErrorResponse}, 502: {"model": UpstreamError}},
)
async def sync_billing(settlement: Annotated[PurchaseSettlement, Depends(get_settlement)]) -> SettlementReport:
    return await settlement.sync()
