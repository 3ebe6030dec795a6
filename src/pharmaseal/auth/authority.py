"""Session authority: issues, validates, rotates and revokes bearer tokens.

Access and refresh tokens are itsdangerous-signed payloads carrying subject,
role, token id (jti) and an explicit expiry. Expiry is judged against the
authority's clock, so no token outlives ``exp`` regardless of signature age.

Refresh tokens are single-use: each refresh consumes the presented token id
and issues a new pair. Only this class mutates the rotation state.
"""

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from pharmaseal.auth.permissions import Action, is_permitted
from pharmaseal.common.config import PharmaSealSettings
from pharmaseal.common.database import DatabaseManager
from pharmaseal.common.enums import Role
from pharmaseal.common.exceptions import (
    ForbiddenError,
    SessionExpiredError,
    SessionInvalidError,
    UnauthorizedError,
)
from pharmaseal.common.logging import get_logger
from pharmaseal.stakeholders.service import StakeholderService, hash_credential

logger = get_logger("auth")

ACCESS_SALT = "pharmaseal-access"
REFRESH_SALT = "pharmaseal-refresh"


@dataclass(frozen=True)
class Session:
    """A validated, short-lived proof of identity."""

    subject: str
    role: Role
    issued_at: datetime
    expires_at: datetime
    refreshable: bool
    token_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    role: Role
    subject: str
    token_type: str = "bearer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionAuthority:
    """Owns every credential decision for the API surface."""

    def __init__(
        self,
        settings: PharmaSealSettings,
        db: DatabaseManager,
        stakeholders: StakeholderService,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.db = db
        self.stakeholders = stakeholders
        self.clock = clock
        self._access = URLSafeTimedSerializer(settings.secret_key, salt=ACCESS_SALT)
        self._refresh = URLSafeTimedSerializer(settings.secret_key, salt=REFRESH_SALT)
        # jti -> expiry (epoch seconds)
        self._live_refresh: dict[str, float] = {}
        self._revoked_access: dict[str, float] = {}

    # ── Issue ──

    async def issue(self, wallet_address: str, proof: str) -> TokenPair:
        """Validate proof of identity and open a session for the stakeholder."""
        wallet = (wallet_address or "").strip().lower()
        if not wallet or not proof:
            raise UnauthorizedError("Wallet address and proof are required")

        async with self.db.get_session() as session:
            stakeholder = await self.stakeholders.get_by_wallet(session, wallet)

        if stakeholder is None or not hmac.compare_digest(
            stakeholder.credential_hash, hash_credential(proof)
        ):
            logger.warning("Login rejected", extra={"wallet_address": wallet})
            raise UnauthorizedError("Invalid credentials")
        if not stakeholder.is_active:
            logger.warning("Login by inactive stakeholder", extra={"wallet_address": wallet})
            raise UnauthorizedError("Stakeholder is not active")

        pair = self._mint_pair(stakeholder.wallet_address, Role(stakeholder.role))
        logger.info("Session issued", extra={"wallet_address": wallet, "role": stakeholder.role})
        return pair

    # ── Validate ──

    def validate(self, access_token: str) -> Session:
        """Return the Session for a live access token or raise."""
        payload = self._load(self._access, access_token, "access")
        if payload["jti"] in self._revoked_access:
            raise SessionInvalidError("Session token has been revoked")
        return Session(
            subject=payload["sub"],
            role=Role(payload["role"]),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            refreshable=False,
            token_id=payload["jti"],
        )

    # ── Refresh ──

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token. The presented token is consumed."""
        payload = self._load(self._refresh, refresh_token, "refresh")
        jti = payload["jti"]
        # Consume before any await so two concurrent refreshes cannot both win.
        if self._live_refresh.pop(jti, None) is None:
            logger.warning("Refresh token reuse", extra={"wallet_address": payload["sub"]})
            raise SessionInvalidError("Refresh token already used or revoked")

        async with self.db.get_session() as session:
            stakeholder = await self.stakeholders.get_by_wallet(session, payload["sub"])
        if stakeholder is None or not stakeholder.is_active:
            raise UnauthorizedError("Stakeholder is not active")

        return self._mint_pair(stakeholder.wallet_address, Role(stakeholder.role))

    # ── Revoke ──

    def revoke(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Log out: blacklist the access token and drop the refresh token."""
        payload = self._load(self._access, access_token, "access")
        self._revoked_access[payload["jti"]] = payload["exp"]
        if refresh_token:
            try:
                refresh_payload = self._load(self._refresh, refresh_token, "refresh")
            except (SessionInvalidError, SessionExpiredError):
                refresh_payload = None
            if refresh_payload and refresh_payload["sub"] == payload["sub"]:
                self._live_refresh.pop(refresh_payload["jti"], None)
        logger.info("Session revoked", extra={"wallet_address": payload["sub"]})

    # ── Authorize ──

    def authorize(
        self,
        session: Session,
        action: Action,
        resource_owner: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> bool:
        return is_permitted(session.role, session.subject, action, resource_owner, recipient)

    def require(
        self,
        session: Session,
        action: Action,
        resource_owner: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> None:
        if not self.authorize(session, action, resource_owner, recipient):
            logger.warning(
                "Authorization denied",
                extra={"wallet_address": session.subject, "role": session.role.value,
                       "action": Action(action).value},
            )
            raise ForbiddenError(f"Role {session.role.value} may not perform {Action(action).value}")

    # ── Internal helpers ──

    def _mint_pair(self, subject: str, role: Role) -> TokenPair:
        self._prune()
        now = self.clock()
        access_exp = now + timedelta(seconds=self.settings.access_token_ttl)
        refresh_exp = now + timedelta(seconds=self.settings.refresh_token_ttl)
        access_jti = secrets.token_urlsafe(16)
        refresh_jti = secrets.token_urlsafe(16)

        access = self._access.dumps({
            "sub": subject, "role": role.value, "jti": access_jti, "typ": "access",
            "iat": now.timestamp(), "exp": access_exp.timestamp(),
        })
        refresh = self._refresh.dumps({
            "sub": subject, "role": role.value, "jti": refresh_jti, "typ": "refresh",
            "iat": now.timestamp(), "exp": refresh_exp.timestamp(),
        })
        self._live_refresh[refresh_jti] = refresh_exp.timestamp()
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            role=role,
            subject=subject,
        )

    def _load(self, serializer: URLSafeTimedSerializer, token: str, typ: str) -> dict:
        if not token:
            raise SessionInvalidError("Token required")
        try:
            payload = serializer.loads(token)
        except SignatureExpired as exc:
            raise SessionExpiredError() from exc
        except BadSignature as exc:
            raise SessionInvalidError() from exc
        if not isinstance(payload, dict) or payload.get("typ") != typ:
            raise SessionInvalidError()
        if self.clock().timestamp() >= payload["exp"]:
            raise SessionExpiredError()
        return payload

    def _prune(self) -> None:
        now = self.clock().timestamp()
        for store in (self._live_refresh, self._revoked_access):
            for jti in [j for j, exp in store.items() if exp <= now]:
                del store[jti]

