"""Stakeholder API router."""

from fastapi import APIRouter, Depends, Query

from pharmaseal.auth.authority import Session
from pharmaseal.auth.permissions import Action
from pharmaseal.common.schemas import Envelope, PaginatedResponse, ok
from pharmaseal.common.security import require_session
from pharmaseal.stakeholders.schemas import (
    StakeholderCreate,
    StakeholderCreateResponse,
    StakeholderResponse,
    StakeholderUpdate,
)

router = APIRouter()


def _get_service():
    from pharmaseal.deps import get_stakeholder_service
    return get_stakeholder_service()


def _get_db():
    from pharmaseal.deps import get_db
    return get_db()


def _get_authority():
    from pharmaseal.deps import get_session_authority
    return get_session_authority()


@router.post("/stakeholders/register", response_model=Envelope, status_code=201)
async def register_stakeholder(body: StakeholderCreate):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        stakeholder, credential = await svc.register(
            session, body.wallet_address, body.name, body.role,
            license_number=body.license_number,
        )
        return ok(StakeholderCreateResponse(
            wallet_address=stakeholder.wallet_address,
            name=stakeholder.name,
            role=stakeholder.role,
            license_number=stakeholder.license_number,
            is_active=stakeholder.is_active,
            created_at=stakeholder.created_at,
            credential=credential,
        ))


@router.get("/stakeholders", response_model=Envelope)
async def list_stakeholders(
    role: str | None = Query(None),
    is_active: bool | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    session: Session = Depends(require_session),
):
    _get_authority().require(session, Action.STAKEHOLDER_READ)
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as db_session:
        items, total = await svc.list_stakeholders(
            db_session, role=role, is_active=is_active,
            offset=(page - 1) * page_size, limit=page_size,
        )
        return ok(PaginatedResponse(
            items=[StakeholderResponse.model_validate(s) for s in items],
            total=total,
            page=page,
            page_size=page_size,
            pages=(total + page_size - 1) // page_size,
        ))


@router.get("/stakeholders/me", response_model=Envelope)
async def get_me(session: Session = Depends(require_session)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as db_session:
        stakeholder = await svc.require(db_session, session.subject)
        return ok(StakeholderResponse.model_validate(stakeholder))


@router.get("/stakeholders/{wallet_address}", response_model=Envelope)
async def get_stakeholder(wallet_address: str, session: Session = Depends(require_session)):
    _get_authority().require(session, Action.STAKEHOLDER_READ)
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as db_session:
        stakeholder = await svc.require(db_session, wallet_address)
        return ok(StakeholderResponse.model_validate(stakeholder))


@router.patch("/stakeholders/{wallet_address}", response_model=Envelope)
async def update_stakeholder(
    wallet_address: str,
    body: StakeholderUpdate,
    session: Session = Depends(require_session),
):
    _get_authority().require(session, Action.STAKEHOLDER_MANAGE)
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as db_session:
        stakeholder = await svc.update(
            db_session, wallet_address, session.role,
            role=body.role,
            is_active=body.is_active,
            license_number=body.license_number,
        )
        return ok(StakeholderResponse.model_validate(stakeholder))
