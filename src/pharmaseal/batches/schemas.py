"""Pydantic schemas for batch endpoints."""

import base64
import binascii
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class BatchCreate(BaseModel):
    batch_id: str = Field(..., min_length=1, max_length=100)
    document: str = Field(..., min_length=1, description="Base64-encoded batch document")
    metadata: dict[str, Any] = {}

    @field_validator("document")
    @classmethod
    def _decodable(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("document must be valid base64") from None
        return value

    def document_bytes(self) -> bytes:
        return base64.b64decode(self.document, validate=True)


class TransferRequest(BaseModel):
    to_wallet: str = Field(..., min_length=1)


class StatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)


class BatchResponse(BaseModel):
    id: str
    batch_id: str
    token_id: Optional[str] = None
    status: str
    custodian: str
    manufacturer: str
    document_ref: str
    content_hash: str
    linkage_hash: str
    last_tx_hash: str = ""
    failure_reason: str = ""
    metadata: dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, batch) -> "BatchResponse":
        return cls(
            id=batch.id,
            batch_id=batch.batch_id,
            token_id=batch.ledger_token,
            status=batch.status,
            custodian=batch.custodian,
            manufacturer=batch.manufacturer,
            document_ref=batch.document_ref,
            content_hash=batch.content_hash,
            linkage_hash=batch.linkage_hash,
            last_tx_hash=batch.last_tx_hash or "",
            failure_reason=batch.failure_reason or "",
            metadata=batch.metadata_ or {},
            created_at=batch.created_at,
            updated_at=batch.updated_at,
        )


class HistoryEntryResponse(BaseModel):
    sequence: int
    actor: str
    action: str
    previous_custodian: Optional[str] = None
    new_custodian: Optional[str] = None
    tx_hash: str = ""
    occurred_at: datetime
    prev_hash: Optional[str] = None
    entry_hash: str

    model_config = {"from_attributes": True}


class ChainVerification(BaseModel):
    valid: bool
    entries_checked: int
    break_at: Optional[str] = None


class HistoryResponse(BaseModel):
    batch_id: str
    token_id: Optional[str] = None
    entries: list[HistoryEntryResponse]
    chain: ChainVerification


class VerificationResponse(BaseModel):
    identifier: str
    authentic: bool
    result: str
    reason: str
    batch_id: Optional[str] = None
    token_id: Optional[str] = None
    status: Optional[str] = None
    ledger_status: Optional[str] = None
    custodian: Optional[str] = None
    content_hash: Optional[str] = None
    linkage_hash: Optional[str] = None
    checks: dict[str, bool] = {}


class ReconcileResponse(BaseModel):
    batch_id: str
    token_id: Optional[str] = None
    previous_status: str
    status: str
    changes: list[str]


class QRCodeResponse(BaseModel):
    """Signed payload to print as a batch QR code; ``data`` is the encoded text."""

    url: str
    payload: dict[str, Any]
    signature: str
    data: str


class QRVerifyRequest(BaseModel):
    payload: dict[str, Any]
    signature: str = Field(..., min_length=1)
