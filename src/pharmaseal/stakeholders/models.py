"""SQLAlchemy model for supply-chain stakeholders."""

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from pharmaseal.common.models import Base, TimestampMixin, generate_uuid


class StakeholderModel(Base, TimestampMixin):
    __tablename__ = "stakeholders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    wallet_address: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    license_number: Mapped[str] = mapped_column(String(100), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    credential_hash: Mapped[str] = mapped_column(String(64), nullable=False)
