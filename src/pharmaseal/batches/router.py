"""Batch API router."""

from fastapi import APIRouter, Depends, Query

from pharmaseal.auth.authority import Session
from pharmaseal.auth.permissions import Action
from pharmaseal.batches.schemas import (
    BatchCreate,
    BatchResponse,
    HistoryEntryResponse,
    HistoryResponse,
    QRCodeResponse,
    QRVerifyRequest,
    ReconcileResponse,
    StatusUpdate,
    TransferRequest,
    VerificationResponse,
)
from pharmaseal.common.schemas import Envelope, PaginatedResponse, ok
from pharmaseal.common.security import require_session

router = APIRouter()


def _get_manager():
    from pharmaseal.deps import get_lifecycle_manager
    return get_lifecycle_manager()


def _get_authority():
    from pharmaseal.deps import get_session_authority
    return get_session_authority()


def _get_settings():
    from pharmaseal.common.config import get_settings
    return get_settings()


@router.post("/batches", response_model=Envelope, status_code=201)
async def create_batch(body: BatchCreate, session: Session = Depends(require_session)):
    manager = _get_manager()
    batch = await manager.create_batch(
        body.document_bytes(), body.batch_id, session, metadata=body.metadata,
    )
    if batch.status == "MINTING":
        manager.schedule_confirmation(batch.batch_id)
    return ok(BatchResponse.from_model(batch))


@router.get("/batches", response_model=Envelope)
async def list_batches(
    status: str | None = Query(None),
    custodian: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int | None = Query(None, ge=1),
    session: Session = Depends(require_session),
):
    _get_authority().require(session, Action.BATCH_READ)
    settings = _get_settings()
    size = min(page_size or settings.default_page_size, settings.max_page_size)
    items, total = await _get_manager().list_batches(
        status=status, custodian=custodian, offset=(page - 1) * size, limit=size,
    )
    return ok(PaginatedResponse(
        items=[BatchResponse.from_model(b) for b in items],
        total=total,
        page=page,
        page_size=size,
        pages=(total + size - 1) // size,
    ))


# Declared before /batches/{token_id} so "verify" is never read as a token id.
@router.get("/batches/verify/{identifier}", response_model=Envelope)
async def verify_batch(identifier: str):
    result = await _get_manager().verify(identifier)
    data = result.to_dict()
    data["result"] = data.pop("outcome")
    return ok(VerificationResponse(**data))


@router.post("/batches/verify/qr", response_model=Envelope)
async def verify_qr(body: QRVerifyRequest):
    result = await _get_manager().verify_qr(body.payload, body.signature)
    data = result.to_dict()
    data["result"] = data.pop("outcome")
    return ok(VerificationResponse(**data))


@router.get("/batches/{token_id}", response_model=Envelope)
async def get_batch(token_id: str, session: Session = Depends(require_session)):
    _get_authority().require(session, Action.BATCH_READ)
    batch = await _get_manager().get_batch(token_id)
    return ok(BatchResponse.from_model(batch))


@router.get("/batches/{token_id}/history", response_model=Envelope)
async def get_history(token_id: str, session: Session = Depends(require_session)):
    _get_authority().require(session, Action.BATCH_READ)
    batch, entries, chain = await _get_manager().get_history(token_id)
    return ok(HistoryResponse(
        batch_id=batch.batch_id,
        token_id=batch.ledger_token,
        entries=[HistoryEntryResponse.model_validate(e) for e in entries],
        chain=chain,
    ))


@router.get("/batches/{token_id}/qr", response_model=Envelope)
async def get_qr(token_id: str, session: Session = Depends(require_session)):
    _get_authority().require(session, Action.BATCH_READ)
    issued = await _get_manager().qr_payload(token_id)
    return ok(QRCodeResponse(url=issued["payload"]["url"], **issued))


@router.put("/batches/{token_id}/status", response_model=Envelope)
async def update_status(
    token_id: str, body: StatusUpdate, session: Session = Depends(require_session),
):
    batch = await _get_manager().update_status(token_id, body.status, session)
    return ok(BatchResponse.from_model(batch))


@router.post("/batches/{token_id}/transfer", response_model=Envelope)
async def transfer_batch(
    token_id: str, body: TransferRequest, session: Session = Depends(require_session),
):
    batch = await _get_manager().transfer(token_id, body.to_wallet, session)
    return ok(BatchResponse.from_model(batch))


@router.post("/batches/{identifier}/reconcile", response_model=Envelope)
async def reconcile_batch(identifier: str, session: Session = Depends(require_session)):
    report = await _get_manager().reconcile(identifier, session)
    return ok(ReconcileResponse(**report))
