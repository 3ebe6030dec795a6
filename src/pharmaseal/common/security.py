"""Bearer session dependencies."""

from fastapi import Header

from pharmaseal.auth.authority import Session
from pharmaseal.common.exceptions import UnauthorizedError


def bearer_token(authorization: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Authorization header must be 'Bearer <token>'")
    return token.strip()


async def require_session(
    authorization: str = Header(None, alias="Authorization"),
) -> Session:
    """FastAPI dependency that validates the bearer access token."""
    from pharmaseal.deps import get_session_authority

    return get_session_authority().validate(bearer_token(authorization))
