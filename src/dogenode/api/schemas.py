"""Response models shared by the routers."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel

from dogenode.errors import SettlementError
from dogenode.ledger.models import SettlementRecord


class ChainInfoOut(BaseModel):
    """On-chain data of a record."""
    tx_hash: Optional[str] = None
    block_height: Optional[int] = None
    confirmations: int = 0
    explorer_url: Optional[str] = None
    network: Optional[str] = None


class ErrorOut(BaseModel):
    kind: str
    message: Optional[str] = None


class SettlementRecordOut(BaseModel):
    """Settlement record as returned by the API."""
    id: str
    user_id: str
    kind: str
    rail: str
    status: str
    gross_amount: Decimal
    fee: Decimal
    net_amount: Decimal
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    description: Optional[str] = None
    chain: ChainInfoOut
    retries: int = 0
    last_retry_at: Optional[datetime] = None
    error: Optional[ErrorOut] = None
    needs_review: bool = False
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: SettlementRecord) -> "SettlementRecordOut":
        chain = record.chain
        return cls(
            id=record.id,
            user_id=record.user_id,
            kind=record.kind,
            rail=record.rail,
            status=record.status,
            gross_amount=record.gross_amount,
            fee=record.fee,
            net_amount=record.net_amount,
            from_address=record.from_address,
            to_address=record.to_address,
            description=record.description,
            chain=ChainInfoOut(
                tx_hash=chain.tx_hash,
                block_height=chain.block_height,
                confirmations=chain.confirmations,
                explorer_url=chain.explorer_url,
                network=chain.network,
            ),
            retries=record.retries,
            last_retry_at=record.last_retry_at,
            error=ErrorOut(**record.error) if record.error else None,
            needs_review=record.needs_review,
            created_at=record.created_at,
            processed_at=record.processed_at,
            completed_at=record.completed_at,
        )


def record_data(record: SettlementRecord) -> dict:
    return SettlementRecordOut.from_record(record).model_dump(mode="json")


def success(data: Any) -> dict:
    """Success envelope."""
    return {"success": True, "data": data}


def error_payload(error: SettlementError) -> dict:
    """Error envelope; ``record_id`` is present when a record was involved."""
    payload = {"success": False, "error": error.to_dict()}
    if error.record_id:
        payload["record_id"] = error.record_id
    return payload
