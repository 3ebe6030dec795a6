"""In-process ledger used in development and tests.

Enforces the same rules a deployed batch-token contract does: one token per
batch id, transfers only from the current custodian, and idempotent
resubmission under an operation key. Fault knobs simulate the failure modes
the lifecycle manager must survive.
"""

import asyncio
import hashlib
import itertools
from datetime import datetime, timezone
from typing import Optional

from pharmaseal.common.enums import BatchStatus
from pharmaseal.common.exceptions import (
    LedgerRecordNotFoundError,
    LedgerRejectedError,
    LedgerTimeoutError,
    ServiceUnavailableError,
)
from pharmaseal.ledger.types import LedgerOperation, LedgerRecord, PendingHandle, Receipt


class InMemoryLedger:
    """Ledger state held in dictionaries.

    Fault knobs (each counts down by one per affected call):
        unavailable_submits: submit() raises ServiceUnavailableError
        silent_timeouts: the operation lands but await_confirmation() times out
        unavailable_confirmations: the operation lands but polling for its
            confirmation raises ServiceUnavailableError
        lost_submits: submit() returns a handle but the operation never lands
        reject_next: reason string; the next submit() is rejected
    """

    def __init__(self, confirm_delay: float = 0.0):
        self.confirm_delay = confirm_delay
        self.unavailable_submits = 0
        self.silent_timeouts = 0
        self.unavailable_confirmations = 0
        self.lost_submits = 0
        self.reject_next: Optional[str] = None

        self._records: dict[str, LedgerRecord] = {}
        self._receipts: dict[str, Receipt] = {}
        self._handles: dict[str, str] = {}  # handle id -> operation key
        self._tokens_by_batch: dict[str, list[str]] = {}
        self._token_seq = itertools.count(1)
        self._handle_seq = itertools.count(1)
        self._block = 0
        self.submissions: list[LedgerOperation] = []

    # ── LedgerClient ──

    async def submit(self, operation: LedgerOperation) -> PendingHandle:
        await asyncio.sleep(0)
        if self.unavailable_submits > 0:
            self.unavailable_submits -= 1
            raise ServiceUnavailableError("Ledger node unreachable")
        if self.reject_next is not None:
            reason, self.reject_next = self.reject_next, None
            raise LedgerRejectedError(f"Ledger rejected {operation.kind}: {reason}")

        self.submissions.append(operation)
        handle = PendingHandle(
            handle_id=f"h-{next(self._handle_seq)}",
            operation_key=operation.key,
            kind=operation.kind,
        )
        self._handles[handle.handle_id] = operation.key

        if operation.key in self._receipts:
            return handle
        if self.lost_submits > 0:
            self.lost_submits -= 1
            return handle

        self._receipts[operation.key] = self._apply(operation)
        receipt = self._receipts[operation.key]
        if not receipt.success:
            del self._receipts[operation.key]
            raise LedgerRejectedError(f"Ledger rejected {operation.kind}: {receipt.reason}")
        return handle

    async def await_confirmation(self, handle: PendingHandle, timeout: float) -> Receipt:
        if self.unavailable_confirmations > 0:
            self.unavailable_confirmations -= 1
            await asyncio.sleep(0)
            raise ServiceUnavailableError("Ledger node unreachable while polling")
        if self.silent_timeouts > 0:
            self.silent_timeouts -= 1
            await asyncio.sleep(min(timeout, 0.001))
            raise LedgerTimeoutError("Confirmation wait elapsed")

        receipt = self._receipts.get(handle.operation_key)
        if receipt is None or self.confirm_delay > timeout:
            await asyncio.sleep(timeout)
            raise LedgerTimeoutError("Confirmation wait elapsed")
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        return receipt

    async def read(self, token_id: str) -> LedgerRecord:
        await asyncio.sleep(0)
        record = self._records.get(str(token_id))
        if record is None:
            raise LedgerRecordNotFoundError(f"Token {token_id} not on ledger")
        return record

    async def find_receipt(self, operation_key: str) -> Optional[Receipt]:
        await asyncio.sleep(0)
        return self._receipts.get(operation_key)

    # ── Inspection helpers ──

    def tokens_for_batch(self, batch_id: str) -> list[str]:
        return list(self._tokens_by_batch.get(batch_id, []))

    # ── Contract rules ──

    def _apply(self, op: LedgerOperation) -> Receipt:
        if op.kind == "mint":
            return self._mint(op)
        if op.kind == "transfer":
            return self._transfer(op)
        if op.kind == "status":
            return self._status(op)
        return self._rejected(op, f"unknown operation kind {op.kind!r}")

    def _mint(self, op: LedgerOperation) -> Receipt:
        if not op.batch_id:
            return self._rejected(op, "mint without batch id")
        if self._tokens_by_batch.get(op.batch_id):
            return self._rejected(op, f"batch {op.batch_id} already minted")
        token_id = str(next(self._token_seq))
        self._records[token_id] = LedgerRecord(
            token_id=token_id,
            batch_id=op.batch_id,
            linkage_hash=op.payload["linkage_hash"],
            document_ref=op.payload["document_ref"],
            status=BatchStatus.MINTED.value,
            custodian=op.actor,
            minted_at=datetime.now(timezone.utc),
            metadata=dict(op.payload.get("metadata") or {}),
        )
        self._tokens_by_batch.setdefault(op.batch_id, []).append(token_id)
        return self._confirmed(op, token_id)

    def _transfer(self, op: LedgerOperation) -> Receipt:
        record = self._records.get(str(op.token_id))
        if record is None:
            return self._rejected(op, "nonexistent token")
        if record.status == BatchStatus.FAILED.value:
            return self._rejected(op, "token is in FAILED state")
        if record.custodian != op.actor:
            return self._rejected(op, "caller is not the custodian")
        record.custodian = op.payload["to"]
        record.status = BatchStatus.IN_TRANSIT.value
        return self._confirmed(op, record.token_id)

    def _status(self, op: LedgerOperation) -> Receipt:
        record = self._records.get(str(op.token_id))
        if record is None:
            return self._rejected(op, "nonexistent token")
        if record.status == BatchStatus.FAILED.value:
            return self._rejected(op, "token is in FAILED state")
        record.status = op.payload["status"]
        return self._confirmed(op, record.token_id)

    def _confirmed(self, op: LedgerOperation, token_id: str) -> Receipt:
        self._block += 1
        return Receipt(
            operation_key=op.key,
            kind=op.kind,
            token_id=token_id,
            success=True,
            tx_hash="0x" + hashlib.sha256(f"{op.key}:{self._block}".encode()).hexdigest(),
            block_number=self._block,
        )

    @staticmethod
    def _rejected(op: LedgerOperation, reason: str) -> Receipt:
        return Receipt(operation_key=op.key, kind=op.kind, token_id=op.token_id,
                       success=False, reason=reason)
