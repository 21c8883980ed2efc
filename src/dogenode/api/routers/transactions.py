"""Transaction history and confirmation webhook endpoints."""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dogenode.api.dependencies import get_app_settings, get_monitor, get_session_factory
from dogenode.api.schemas import record_data, success
from dogenode.config import Settings
from dogenode.errors import Unauthorized
from dogenode.ledger.database import get_db
from dogenode.ledger.models import SettlementKind, SettlementStatus
from dogenode.ledger.transactions import TransactionStore
from dogenode.settlement.monitor import ConfirmationMonitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/transactions", tags=["Transactions"])


class ConfirmationWebhookPayload(BaseModel):
    """Pushed confirmation update."""
    tx_hash: str = Field(min_length=1)
    confirmations: int = Field(ge=0)
    block_height: Optional[int] = Field(default=None, ge=0)


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    secret: str,
    algorithm: str = "sha256",
) -> bool:
    """Verify webhook signature using HMAC.

    Args:
        payload: Raw request body
        signature: Hex signature from header, optionally prefixed ("sha256=...")
        secret: Webhook secret key
        algorithm: Hash algorithm (sha256, sha512)

    Returns:
        True if signature is valid
    """
    if "=" in signature:
        signature = signature.split("=", 1)[1]

    expected = hmac.new(
        secret.encode(),
        payload,
        getattr(hashlib, algorithm),
    ).hexdigest()

    return hmac.compare_digest(expected, signature.lower())


@router.get("/details/{record_id}")
async def transaction_details(
    record_id: str,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = Depends(get_session_factory),
) -> dict:
    """Get any settlement record by id."""
    async with get_db(session_factory) as session:
        record = await TransactionStore(session).get_or_raise(record_id)
    return success(record_data(record))


@router.post("/webhook/confirmation")
async def confirmation_webhook(
    request: Request,
    payload: ConfirmationWebhookPayload,
    x_webhook_signature: Optional[str] = Header(None),
    settings: Settings = Depends(get_app_settings),
    monitor: ConfirmationMonitor = Depends(get_monitor),
) -> dict:
    """Apply a ``{tx_hash, confirmations}`` update from an external watcher.

    When a webhook secret is configured the body must carry a valid
    ``X-Webhook-Signature`` (HMAC-SHA256 of the raw body).
    """
    if settings.webhook_secret:
        body = await request.body()
        if not x_webhook_signature or not verify_webhook_signature(
            body, x_webhook_signature, settings.webhook_secret
        ):
            logger.warning(f"Invalid webhook signature for tx {payload.tx_hash}")
            raise Unauthorized("Invalid webhook signature")

    record = await monitor.handle_webhook(
        payload.tx_hash, payload.confirmations, block_height=payload.block_height
    )
    return success(record_data(record))


@router.get("/{user_id}")
async def list_transactions(
    user_id: str,
    kind: Optional[SettlementKind] = Query(default=None),
    status: Optional[SettlementStatus] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    session_factory: Optional[async_sessionmaker[AsyncSession]] = Depends(get_session_factory),
) -> dict:
    """List a user's settlement records, newest first."""
    async with get_db(session_factory) as session:
        records, total = await TransactionStore(session).list_by_user(
            user_id, kind=kind, status=status, limit=limit, offset=skip
        )

    return success({
        "transactions": [record_data(r) for r in records],
        "pagination": {
            "total": total,
            "limit": limit,
            "skip": skip,
            "has_more": skip + len(records) < total,
        },
    })
