"""Stakeholder registry — registration, lookup and regulator-managed updates."""

import hashlib
import re
import secrets
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmaseal.common.enums import Role
from pharmaseal.common.exceptions import (
    DuplicateStakeholderError,
    ForbiddenError,
    StakeholderNotFoundError,
    ValidationError,
)
from pharmaseal.common.logging import get_logger
from pharmaseal.stakeholders.models import StakeholderModel

logger = get_logger("stakeholders")

_WALLET = re.compile(r"^0x[0-9a-f]{40}$")


def hash_credential(raw_credential: str) -> str:
    """SHA-256 hash of a raw stakeholder credential for storage."""
    return hashlib.sha256(raw_credential.encode()).hexdigest()


def normalize_wallet(wallet_address: str) -> str:
    wallet = (wallet_address or "").strip().lower()
    if not _WALLET.match(wallet):
        raise ValidationError(f"Invalid wallet address: {wallet_address!r}")
    return wallet


def parse_role(role: str) -> Role:
    try:
        return Role(str(role).upper())
    except ValueError:
        raise ValidationError(f"Unknown role: {role!r}") from None


class StakeholderService:
    """Stakeholder management operations."""

    async def register(
        self,
        session: AsyncSession,
        wallet_address: str,
        name: str,
        role: str,
        license_number: str = "",
        is_active: bool = False,
    ) -> tuple[StakeholderModel, str]:
        """Register a stakeholder. Returns (model, raw_credential).

        The raw credential is the stakeholder's proof of identity at login and
        is only ever returned here.
        """
        wallet = normalize_wallet(wallet_address)
        parsed_role = parse_role(role)
        if not name or not name.strip():
            raise ValidationError("Stakeholder name is required")
        if await self.get_by_wallet(session, wallet) is not None:
            raise DuplicateStakeholderError(f"Stakeholder {wallet} already registered")

        raw_credential = f"psk_{secrets.token_urlsafe(32)}"
        stakeholder = StakeholderModel(
            wallet_address=wallet,
            name=name.strip(),
            role=parsed_role.value,
            license_number=license_number,
            is_active=is_active,
            credential_hash=hash_credential(raw_credential),
        )
        session.add(stakeholder)
        await session.flush()
        logger.info(
            "Stakeholder registered",
            extra={"wallet_address": wallet, "role": parsed_role.value, "is_active": is_active},
        )
        return stakeholder, raw_credential

    async def get_by_wallet(
        self, session: AsyncSession, wallet_address: str
    ) -> StakeholderModel | None:
        result = await session.execute(
            select(StakeholderModel).where(
                StakeholderModel.wallet_address == (wallet_address or "").strip().lower()
            )
        )
        return result.scalar_one_or_none()

    async def require(
        self, session: AsyncSession, wallet_address: str
    ) -> StakeholderModel:
        stakeholder = await self.get_by_wallet(session, wallet_address)
        if stakeholder is None:
            raise StakeholderNotFoundError(f"Stakeholder {wallet_address} not found")
        return stakeholder

    async def require_active(
        self, session: AsyncSession, wallet_address: str
    ) -> StakeholderModel:
        """Return the stakeholder if it may act in a transaction."""
        stakeholder = await self.require(session, wallet_address)
        if not stakeholder.is_active:
            raise ForbiddenError(f"Stakeholder {stakeholder.wallet_address} is not active")
        return stakeholder

    async def list_stakeholders(
        self,
        session: AsyncSession,
        role: str | None = None,
        is_active: bool | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[StakeholderModel], int]:
        filters = []
        if role:
            filters.append(StakeholderModel.role == parse_role(role).value)
        if is_active is not None:
            filters.append(StakeholderModel.is_active == is_active)

        count_result = await session.execute(
            select(func.count(StakeholderModel.id)).where(*filters)
        )
        total = count_result.scalar() or 0

        result = await session.execute(
            select(StakeholderModel)
            .where(*filters)
            .order_by(StakeholderModel.created_at.asc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def update(
        self,
        session: AsyncSession,
        wallet_address: str,
        actor_role: Role | str,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        license_number: Optional[str] = None,
    ) -> StakeholderModel:
        """Regulator-initiated update of role, activation or license."""
        if Role(actor_role) != Role.REGULATOR:
            raise ForbiddenError("Only a regulator may update stakeholders")
        stakeholder = await self.require(session, wallet_address)

        changed = []
        if role is not None and parse_role(role).value != stakeholder.role:
            stakeholder.role = parse_role(role).value
            changed.append("role")
        if is_active is not None and is_active != stakeholder.is_active:
            stakeholder.is_active = is_active
            changed.append("is_active")
        if license_number is not None and license_number != stakeholder.license_number:
            stakeholder.license_number = license_number
            changed.append("license_number")
        await session.flush()

        logger.info(
            "Stakeholder updated",
            extra={"wallet_address": stakeholder.wallet_address, "fields": changed},
        )
        return stakeholder
