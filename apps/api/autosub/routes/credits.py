"""Credit balance routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from autosub.routes.dependencies import get_ledger
from autosub.schemas.error import ErrorResponse
from autosub.schemas.ledger import BalanceResponse, CreditEstimate, TransactionPage
from autosub.services.ledger import CreditLedger

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.get(
    "",
    response_model=BalanceResponse,
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def get_balance(ledger: Annotated[CreditLedger, Depends(get_ledger)]) -> BalanceResponse:
    balance = await ledger.balance()
    return BalanceResponse(balance=balance, pending_sync=ledger.pending_sync_count)


@router.get(
    "/transactions",
    response_model=TransactionPage,
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def list_transactions(
    ledger: Annotated[CreditLedger, Depends(get_ledger)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> TransactionPage:
    return TransactionPage(items=await ledger.transactions(limit))


@router.get(
    "/estimate",
    response_model=CreditEstimate,
    responses={401: {"model": ErrorResponse}},
)
async def estimate_credits(
    ledger: Annotated[CreditLedger, Depends(get_ledger)],
    duration_seconds: Annotated[float, Query(ge=0)],
) -> CreditEstimate:
    required = ledger.required_credits(duration_seconds)
    available = await ledger.balance()
    return CreditEstimate(
        duration_seconds=duration_seconds,
        required=required,
        available=available,
        sufficient=available >= required,
    )
