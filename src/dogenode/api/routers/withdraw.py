"""Withdrawal API endpoints."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from dogenode.api.dependencies import get_engine, get_selector
from dogenode.api.schemas import record_data, success
from dogenode.rails.selector import RailSelector
from dogenode.settlement.engine import SettlementEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/withdraw", tags=["Withdrawals"])


# Request models
class WithdrawalRequestBody(BaseModel):
    """Withdrawal request."""
    user_id: str = Field(min_length=1, max_length=64)
    to_address: str = Field(min_length=1, max_length=255)
    amount: Decimal


class ValidateAddressBody(BaseModel):
    """Request to validate a destination address."""
    address: str


@router.post("/request")
async def request_withdrawal(
    body: WithdrawalRequestBody,
    engine: SettlementEngine = Depends(get_engine),
) -> dict:
    """Reserve funds and dispatch a withdrawal.

    The returned record is normally ``processing`` with a transaction hash;
    the confirmation monitor completes it.
    """
    logger.info(f"Withdrawal requested: {body.amount} DOGE for {body.user_id} to {body.to_address}")
    record = await engine.request_withdrawal(body.user_id, body.to_address, body.amount)
    return success(record_data(record))


@router.get("/status/{record_id}")
async def withdrawal_status(
    record_id: str,
    engine: SettlementEngine = Depends(get_engine),
) -> dict:
    """Get the current state of a withdrawal."""
    record = await engine.get_withdrawal(record_id)
    return success(record_data(record))


@router.post("/retry/{record_id}")
async def retry_withdrawal(
    record_id: str,
    engine: SettlementEngine = Depends(get_engine),
) -> dict:
    """Retry a failed withdrawal."""
    record = await engine.retry_withdrawal(record_id)
    return success(record_data(record))


@router.post("/cancel/{record_id}")
async def cancel_withdrawal(
    record_id: str,
    engine: SettlementEngine = Depends(get_engine),
) -> dict:
    """Cancel a withdrawal that has not been dispatched."""
    record = await engine.cancel_withdrawal(record_id)
    return success(record_data(record))


@router.get("/estimate")
async def estimate_fee(
    amount: Decimal = Query(...),
    rail: Optional[str] = Query(default=None),
    engine: SettlementEngine = Depends(get_engine),
) -> dict:
    """Estimate the service fee for an amount."""
    estimate = engine.estimate_fee(amount, rail)
    return success(estimate.to_dict())


@router.post("/validate")
async def validate_address(
    body: ValidateAddressBody,
    selector: RailSelector = Depends(get_selector),
) -> dict:
    """Check a destination address against every rail."""
    rails = await selector.validate_destination(body.address)
    return success({
        "address": body.address,
        "valid": any(rails.values()),
        "rails": rails,
    })
