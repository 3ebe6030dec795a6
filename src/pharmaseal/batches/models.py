"""SQLAlchemy models for batches and their custody history."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pharmaseal.common.enums import BatchStatus
from pharmaseal.common.models import Base, TimestampMixin, generate_uuid, utcnow


class BatchModel(Base, TimestampMixin):
    __tablename__ = "batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    batch_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    ledger_token: Mapped[str | None] = mapped_column(
        String(78), unique=True, nullable=True, index=True
    )
    document_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    linkage_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=BatchStatus.DRAFT.value, index=True)
    custodian: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    manufacturer: Mapped[str] = mapped_column(String(64), nullable=False)
    mint_key: Mapped[str] = mapped_column(String(64), nullable=False)
    last_tx_hash: Mapped[str] = mapped_column(String(80), default="")
    failure_reason: Mapped[str] = mapped_column(Text, default="")
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)


class BatchHistoryModel(Base):
    """One append-only, hash-chained custody/lifecycle entry."""

    __tablename__ = "batch_history"
    __table_args__ = (
        UniqueConstraint("batch_pk", "sequence", name="uq_history_batch_sequence"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    batch_pk: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_custodian: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_custodian: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tx_hash: Mapped[str] = mapped_column(String(80), default="")
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature: Mapped[str] = mapped_column(String(64), nullable=False)
