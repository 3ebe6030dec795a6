"""Session API router."""

from fastapi import APIRouter, Header

from pharmaseal.auth.schemas import LoginRequest, LogoutRequest, RefreshRequest, TokenResponse
from pharmaseal.common.schemas import Envelope, ok
from pharmaseal.common.security import bearer_token

router = APIRouter()


def _get_authority():
    from pharmaseal.deps import get_session_authority
    return get_session_authority()


@router.post("/auth/login", response_model=Envelope)
async def login(body: LoginRequest):
    pair = await _get_authority().issue(body.wallet_address, body.proof)
    return ok(TokenResponse.from_pair(pair))


@router.post("/auth/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest):
    pair = await _get_authority().refresh(body.refresh_token)
    return ok(TokenResponse.from_pair(pair))


@router.post("/auth/logout", response_model=Envelope)
async def logout(
    body: LogoutRequest | None = None,
    authorization: str = Header(None, alias="Authorization"),
):
    _get_authority().revoke(
        bearer_token(authorization),
        refresh_token=body.refresh_token if body else None,
    )
    return ok({"logged_out": True})
