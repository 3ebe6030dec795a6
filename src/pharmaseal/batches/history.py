"""Batch history — append, verify and query the hash-chained custody log."""

import hashlib
import hmac as hmac_mod
import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmaseal.batches.models import BatchHistoryModel, BatchModel
from pharmaseal.common.config import PharmaSealSettings
from pharmaseal.common.models import utcnow


def _iso(value: datetime) -> str:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class BatchHistory:
    """Immutable, hash-chained entry log per batch."""

    def __init__(self, settings: PharmaSealSettings):
        self.settings = settings

    # ── Write ──

    async def append(
        self,
        session: AsyncSession,
        batch: BatchModel,
        actor: str,
        action: str,
        previous_custodian: str | None = None,
        new_custodian: str | None = None,
        tx_hash: str = "",
    ) -> BatchHistoryModel:
        """Append a new entry to the batch's history chain."""
        head = await self.get_head(session, batch.id)
        prev_hash = head.entry_hash if head else None
        sequence = head.sequence + 1 if head else 0
        occurred_at = utcnow()

        entry_hash = self._compute_entry_hash(
            batch.batch_id, sequence, actor, action,
            previous_custodian, new_custodian, tx_hash,
            _iso(occurred_at), prev_hash,
        )
        entry = BatchHistoryModel(
            batch_pk=batch.id,
            sequence=sequence,
            actor=actor,
            action=action,
            previous_custodian=previous_custodian,
            new_custodian=new_custodian,
            tx_hash=tx_hash,
            occurred_at=occurred_at,
            prev_hash=prev_hash,
            entry_hash=entry_hash,
            signature=self._sign(entry_hash),
        )
        session.add(entry)
        await session.flush()
        return entry

    # ── Read ──

    async def get_head(
        self, session: AsyncSession, batch_pk: str,
    ) -> BatchHistoryModel | None:
        """Return the most recent entry for a batch."""
        result = await session.execute(
            select(BatchHistoryModel)
            .where(BatchHistoryModel.batch_pk == batch_pk)
            .order_by(BatchHistoryModel.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def length(self, session: AsyncSession, batch_pk: str) -> int:
        head = await self.get_head(session, batch_pk)
        return head.sequence + 1 if head else 0

    async def entries(
        self, session: AsyncSession, batch_pk: str,
    ) -> list[BatchHistoryModel]:
        """Entries oldest first."""
        result = await session.execute(
            select(BatchHistoryModel)
            .where(BatchHistoryModel.batch_pk == batch_pk)
            .order_by(BatchHistoryModel.sequence.asc())
        )
        return list(result.scalars().all())

    # ── Verify ──

    async def verify_chain(
        self, session: AsyncSession, batch: BatchModel,
    ) -> dict[str, Any]:
        """Walk the chain oldest→newest, verify links, hashes and signatures."""
        entries = await self.entries(session, batch.id)

        prev_hash = None
        for index, entry in enumerate(entries):
            expected_hash = self._compute_entry_hash(
                batch.batch_id, entry.sequence, entry.actor, entry.action,
                entry.previous_custodian, entry.new_custodian, entry.tx_hash,
                _iso(entry.occurred_at), entry.prev_hash,
            )
            if (
                entry.sequence != index
                or entry.prev_hash != prev_hash
                or entry.entry_hash != expected_hash
                or not self._verify_signature(entry.entry_hash, entry.signature)
            ):
                return {"valid": False, "entries_checked": index, "break_at": entry.id}
            prev_hash = entry.entry_hash

        return {"valid": True, "entries_checked": len(entries), "break_at": None}

    # ── Internal helpers ──

    @staticmethod
    def _compute_entry_hash(
        batch_id: str,
        sequence: int,
        actor: str,
        action: str,
        previous_custodian: str | None,
        new_custodian: str | None,
        tx_hash: str,
        occurred_at: str,
        prev_hash: str | None,
    ) -> str:
        """SHA-256 of canonical JSON of the entry fields."""
        canonical = json.dumps(
            {
                "batch_id": batch_id,
                "sequence": sequence,
                "actor": actor,
                "action": action,
                "previous_custodian": previous_custodian,
                "new_custodian": new_custodian,
                "tx_hash": tx_hash,
                "occurred_at": occurred_at,
                "prev_hash": prev_hash,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    def _sign(self, entry_hash: str) -> str:
        return hmac_mod.new(
            self.settings.secret_key.encode(),
            entry_hash.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _verify_signature(self, entry_hash: str, signature: str) -> bool:
        return hmac_mod.compare_digest(self._sign(entry_hash), signature)
