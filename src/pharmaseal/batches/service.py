"""Batch lifecycle manager — the provenance orchestration core.

Sequences the document store, the ledger and the session authority for every
lifecycle transition, and keeps the relational cache reconcilable against the
ledger, which is the system of record for confirmed facts.

Ledger operations follow a two-phase protocol: ``submit`` then
``await_confirmation``. A confirmation timeout is never answered with a blind
resubmission; the operation's derived key is looked up first, and only if the
ledger has no receipt is the same operation (same key) submitted again.

Every mutating operation runs inside a per-batch ``asyncio.Lock``. Requests
take a snapshot of the batch before queueing on the lock; if the batch moved
on while they waited, they fail with ``StalePreconditionError``.
"""

import asyncio
import weakref
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmaseal.auth.authority import Session, SessionAuthority
from pharmaseal.auth.permissions import Action
from pharmaseal.batches.history import BatchHistory
from pharmaseal.batches.models import BatchHistoryModel, BatchModel
from pharmaseal.batches.qr import create_qr_payload, verify_qr_payload
from pharmaseal.common.config import PharmaSealSettings
from pharmaseal.common.database import DatabaseManager
from pharmaseal.common.enums import TOKENIZED_STATES, BatchStatus, Role
from pharmaseal.common.exceptions import (
    AmbiguousIdentifierError,
    BatchNotFoundError,
    DocumentNotFoundError,
    DuplicateBatchError,
    InvariantViolationError,
    LedgerRecordNotFoundError,
    LedgerRejectedError,
    LedgerTimeoutError,
    ServiceDegradedError,
    ServiceUnavailableError,
    StalePreconditionError,
    ValidationError,
)
from pharmaseal.common.logging import get_logger
from pharmaseal.documents.store import DocumentStore
from pharmaseal.hashing.engine import content_hash, linkage_hash, operation_key
from pharmaseal.ledger.client import LedgerClient
from pharmaseal.ledger.types import LedgerOperation, PendingHandle, Receipt
from pharmaseal.stakeholders.service import StakeholderService, normalize_wallet

logger = get_logger("batches")

T = TypeVar("T")

MAX_BATCH_ID_LEN = 100


class VerificationOutcome(str, Enum):
    AUTHENTIC = "AUTHENTIC"
    TAMPERED = "TAMPERED"
    UNVERIFIABLE = "UNVERIFIABLE"


@dataclass
class VerificationResult:
    """Outcome of verify(); a valid result even when not authentic."""

    identifier: str
    outcome: VerificationOutcome
    reason: str
    batch_id: Optional[str] = None
    token_id: Optional[str] = None
    status: Optional[str] = None
    ledger_status: Optional[str] = None
    custodian: Optional[str] = None
    content_hash: Optional[str] = None
    linkage_hash: Optional[str] = None
    checks: dict[str, bool] = field(default_factory=dict)

    @property
    def authentic(self) -> bool:
        return self.outcome == VerificationOutcome.AUTHENTIC

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["authentic"] = self.authentic
        return data


@dataclass(frozen=True)
class _Snapshot:
    pk: str
    batch_id: str
    token_id: Optional[str]
    status: str
    custodian: str
    version: int


class BatchLifecycleManager:
    """Owns the batch state machine and the authoritative batch cache."""

    def __init__(
        self,
        settings: PharmaSealSettings,
        db: DatabaseManager,
        ledger: LedgerClient,
        documents: DocumentStore,
        authority: SessionAuthority,
        stakeholders: StakeholderService,
        history: BatchHistory | None = None,
    ):
        self.settings = settings
        self.db = db
        self.ledger = ledger
        self.documents = documents
        self.authority = authority
        self.stakeholders = stakeholders
        self.history = history or BatchHistory(settings)
        # Held weakly: a lock lives only while a request holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._pending_mints: dict[str, PendingHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── Create / mint ──

    async def create_batch(
        self,
        document: bytes,
        batch_id: str,
        actor: Session,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> BatchModel:
        """Store the document, record the batch and submit its mint.

        Returns the batch in MINTING; confirm_mint() completes the mint.
        """
        self.authority.require(actor, Action.BATCH_MINT)
        batch_id = self._validate_batch_id(batch_id)
        if not isinstance(document, (bytes, bytearray)) or not document:
            raise ValidationError("Batch document must be non-empty bytes")
        document = bytes(document)

        async with self._lock(batch_id):
            async with self.db.get_session() as session:
                await self.stakeholders.require_active(session, actor.subject)
                if await self._find(session, batch_id, by_batch_id=True) is not None:
                    raise DuplicateBatchError(f"Batch {batch_id} already exists")

            digest = content_hash(document)
            document_ref = await self._retrying(
                "document store put",
                lambda: self.documents.put(document, timeout=self._store_timeout(timeout)),
                self._store_timeout(timeout),
            )
            link = linkage_hash(batch_id, digest)

            async with self.db.get_session() as session:
                batch = BatchModel(
                    batch_id=batch_id,
                    ledger_token=None,
                    document_ref=document_ref,
                    content_hash=digest,
                    linkage_hash=link,
                    status=BatchStatus.DRAFT.value,
                    custodian=actor.subject,
                    manufacturer=actor.subject,
                    mint_key=operation_key("mint", batch_id),
                    metadata_=dict(metadata or {}),
                )
                session.add(batch)
                await session.flush()
                await self.history.append(
                    session, batch, actor.subject, "CREATED", None, actor.subject,
                )
                # Intent is durable before the ledger sees anything.
                batch.status = BatchStatus.MINTING.value

            operation = self._mint_operation(batch)
            try:
                handle = await self._retrying(
                    "ledger submit", lambda: self.ledger.submit(operation), None,
                )
            except LedgerRejectedError as exc:
                await self._fail_mint(batch.id, actor.subject, exc.message)
                raise
            except LedgerTimeoutError:
                # Ambiguous; confirm_mint() reads by key before any resubmit.
                logger.warning("Mint submit timed out", extra={"batch_id": batch_id})
            else:
                self._pending_mints[batch_id] = handle

            logger.info(
                "Batch mint submitted",
                extra={"batch_id": batch_id, "content_hash": digest, "document_ref": document_ref},
            )
            return batch

    async def confirm_mint(self, batch_id: str, timeout: float | None = None) -> BatchModel:
        """Wait for the mint to land and record the ledger token."""
        async with self._lock(batch_id):
            async with self.db.get_session() as session:
                batch = await self._require(session, batch_id, by_batch_id=True)
            if batch.status not in (BatchStatus.MINTING.value, BatchStatus.DRAFT.value):
                return batch

            handle = self._pending_mints.pop(batch_id, None)
            operation = self._mint_operation(batch)
            try:
                receipt = await self._settle(
                    operation, handle=handle, read_first=handle is None, timeout=timeout,
                )
            except LedgerRejectedError as exc:
                return await self._fail_mint(batch.id, batch.manufacturer, exc.message)

            return await self._record_mint(batch.id, receipt)

    def schedule_confirmation(self, batch_id: str) -> asyncio.Task:
        """Run confirm_mint() in the background (used by the API surface)."""
        task = asyncio.create_task(self._confirm_in_background(batch_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background confirmations."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Custody and status transitions ──

    async def transfer(
        self,
        token_id: str,
        to_wallet: str,
        actor: Session,
        timeout: float | None = None,
    ) -> BatchModel:
        """Move custody of a minted batch to another active stakeholder."""
        recipient = normalize_wallet(to_wallet)
        if recipient == actor.subject.lower():
            raise ValidationError("Cannot transfer a batch to its current holder")

        snapshot = await self._snapshot(token_id)
        self.authority.require(actor, Action.BATCH_TRANSFER, resource_owner=snapshot.custodian)
        self._require_state(snapshot, {BatchStatus.MINTED, BatchStatus.IN_TRANSIT})

        async with self._lock(snapshot.batch_id):
            async with self.db.get_session() as session:
                batch = await self._recheck(session, snapshot)
                await self.stakeholders.require_active(session, actor.subject)
                target = await self.stakeholders.require(session, recipient)
                if not target.is_active:
                    raise ValidationError(f"Recipient {recipient} is not active")
                sequence = await self.history.length(session, batch.id)

            operation = LedgerOperation(
                kind="transfer",
                key=operation_key("transfer", batch.ledger_token, sequence, recipient),
                actor=actor.subject,
                token_id=batch.ledger_token,
                batch_id=batch.batch_id,
                payload={"from": batch.custodian, "to": recipient},
            )
            receipt = await self._settle(operation, timeout=timeout)

            async with self.db.get_session() as session:
                batch = await self._reload(session, batch.id)
                previous = batch.custodian
                batch.custodian = recipient
                batch.status = BatchStatus.IN_TRANSIT.value
                batch.last_tx_hash = receipt.tx_hash
                await self.history.append(
                    session, batch, actor.subject, "TRANSFERRED",
                    previous, recipient, receipt.tx_hash,
                )

        logger.info(
            "Batch transferred",
            extra={"batch_id": batch.batch_id, "token_id": batch.ledger_token,
                   "from": previous, "to": recipient, "tx_hash": receipt.tx_hash},
        )
        return batch

    async def mark_delivered(
        self, token_id: str, actor: Session, timeout: float | None = None,
    ) -> BatchModel:
        """Custodian confirms physical receipt of an in-transit batch."""
        snapshot = await self._snapshot(token_id)
        self.authority.require(actor, Action.BATCH_DELIVER, resource_owner=snapshot.custodian)
        self._require_state(snapshot, {BatchStatus.IN_TRANSIT})
        return await self._status_transition(
            snapshot, actor, BatchStatus.DELIVERED, "DELIVERED", timeout,
        )

    async def mark_verified(
        self, token_id: str, actor: Session, timeout: float | None = None,
    ) -> BatchModel:
        """Certify a delivered batch. Regulators may certify any batch."""
        snapshot = await self._snapshot(token_id)
        self.authority.require(actor, Action.BATCH_CERTIFY)
        if actor.role != Role.REGULATOR:
            self.authority.require(
                actor, Action.BATCH_DELIVER, resource_owner=snapshot.custodian,
            )
        self._require_state(snapshot, {BatchStatus.DELIVERED})
        return await self._status_transition(
            snapshot, actor, BatchStatus.VERIFIED, "VERIFIED", timeout,
        )

    async def update_status(
        self, token_id: str, status: str, actor: Session, timeout: float | None = None,
    ) -> BatchModel:
        try:
            target = BatchStatus(str(status).upper())
        except ValueError:
            raise ValidationError(f"Unknown status: {status!r}") from None
        if target == BatchStatus.DELIVERED:
            return await self.mark_delivered(token_id, actor, timeout)
        if target == BatchStatus.VERIFIED:
            return await self.mark_verified(token_id, actor, timeout)
        raise ValidationError(f"Status {target.value} cannot be set directly")

    # ── Verification ──

    async def verify(self, identifier: str, timeout: float | None = None) -> VerificationResult:
        """Check that the stored document, the cache and the ledger agree.

        Read-only: never writes the cache and never submits to the ledger.
        """
        async with self.db.get_session() as session:
            batch = await self._require(session, identifier)

        result = VerificationResult(
            identifier=identifier,
            outcome=VerificationOutcome.UNVERIFIABLE,
            reason="",
            batch_id=batch.batch_id,
            token_id=batch.ledger_token,
            status=batch.status,
            custodian=batch.custodian,
        )
        if batch.ledger_token is None:
            result.reason = (
                "Mint was rejected by the ledger" if batch.status == BatchStatus.FAILED.value
                else "Batch is not yet confirmed on the ledger"
            )
            return result

        call_timeout = timeout or self.settings.ledger_call_timeout
        try:
            record = await self._retrying(
                "ledger read", lambda: self.ledger.read(batch.ledger_token), call_timeout,
            )
        except LedgerRecordNotFoundError:
            result.reason = "Ledger has no record for this token"
            return result
        result.ledger_status = record.status
        result.custodian = record.custodian

        try:
            document = await self._retrying(
                "document store get",
                lambda: self.documents.get(record.document_ref, timeout=self._store_timeout(timeout)),
                self._store_timeout(timeout),
            )
        except DocumentNotFoundError:
            result.reason = "Document is missing from the document store"
            return result

        recomputed_content = content_hash(document)
        recomputed_link = linkage_hash(record.batch_id, recomputed_content)
        result.content_hash = recomputed_content
        result.linkage_hash = recomputed_link
        result.checks = {
            "content_hash": recomputed_content == batch.content_hash,
            "ledger_linkage": recomputed_link == record.linkage_hash,
            "cached_linkage": batch.linkage_hash == record.linkage_hash,
            "batch_id": record.batch_id == batch.batch_id,
        }

        if record.status == BatchStatus.FAILED.value:
            result.reason = "Ledger record is in FAILED state"
        elif all(result.checks.values()):
            result.outcome = VerificationOutcome.AUTHENTIC
            result.reason = "Document, cache and ledger record agree"
        else:
            failed = ", ".join(name for name, passed in result.checks.items() if not passed)
            result.outcome = VerificationOutcome.TAMPERED
            result.reason = f"Mismatch: {failed}"

        logger.info(
            "Batch verified",
            extra={"batch_id": batch.batch_id, "outcome": result.outcome.value},
        )
        return result

    # ── QR codes ──

    async def qr_payload(self, identifier: str) -> dict[str, Any]:
        """Signed verification payload for a minted batch's QR code."""
        async with self.db.get_session() as session:
            batch = await self._require(session, identifier)
        if batch.ledger_token is None:
            raise StalePreconditionError(
                f"Batch {batch.batch_id} is {batch.status} and has no ledger token yet"
            )
        issued = create_qr_payload(
            batch,
            self.settings.secret_key,
            self.settings.public_base_url,
            self.settings.api_prefix,
        )
        logger.info(
            "QR payload issued",
            extra={"batch_id": batch.batch_id, "token_id": batch.ledger_token},
        )
        return issued

    async def verify_qr(
        self, payload: dict[str, Any], signature: str, timeout: float | None = None,
    ) -> VerificationResult:
        """Check a scanned QR code's signature, then verify the batch it names."""
        token_id = str(payload.get("token_id", "")) if isinstance(payload, dict) else ""
        if not verify_qr_payload(payload, signature, self.settings.secret_key):
            logger.warning("QR signature mismatch", extra={"token_id": token_id})
            return VerificationResult(
                identifier=token_id,
                outcome=VerificationOutcome.TAMPERED,
                reason="QR code signature does not match",
                checks={"qr_signature": False},
            )

        result = await self.verify(token_id, timeout)
        result.checks["qr_signature"] = True
        if result.outcome == VerificationOutcome.UNVERIFIABLE:
            return result
        result.checks["qr_batch"] = (
            payload["batch_id"] == result.batch_id
            and payload["linkage_hash"] == result.linkage_hash
        )
        if result.outcome == VerificationOutcome.AUTHENTIC and not result.checks["qr_batch"]:
            result.outcome = VerificationOutcome.TAMPERED
            result.reason = "QR code does not match the batch on record"
        return result

    # ── Reconciliation ──

    async def reconcile(self, identifier: str, actor: Session, timeout: float | None = None) -> dict[str, Any]:
        """Repair the cache for one batch against the ledger."""
        self.authority.require(actor, Action.BATCH_RECONCILE)
        async with self.db.get_session() as session:
            batch = await self._require(session, identifier)

        async with self._lock(batch.batch_id):
            async with self.db.get_session() as session:
                batch = await self._reload(session, batch.id)

            report: dict[str, Any] = {
                "batch_id": batch.batch_id,
                "previous_status": batch.status,
                "changes": [],
            }
            if batch.status in (BatchStatus.DRAFT.value, BatchStatus.MINTING.value):
                handle = self._pending_mints.pop(batch.batch_id, None)
                try:
                    receipt = await self._settle(
                        self._mint_operation(batch), handle=handle,
                        read_first=handle is None, timeout=timeout,
                    )
                except LedgerRejectedError as exc:
                    batch = await self._fail_mint(batch.id, actor.subject, exc.message)
                    report["changes"].append("mint_rejected")
                else:
                    batch = await self._record_mint(batch.id, receipt)
                    report["changes"].append("mint_confirmed")
            elif batch.ledger_token is not None:
                record = await self._retrying(
                    "ledger read", lambda: self.ledger.read(batch.ledger_token),
                    timeout or self.settings.ledger_call_timeout,
                )
                batch, changes = await self._adopt_ledger_state(batch.id, record, actor.subject)
                report["changes"].extend(changes)

            report["status"] = batch.status
            report["token_id"] = batch.ledger_token
        logger.info("Batch reconciled", extra=report)
        return report

    # ── Queries ──

    async def get_batch(self, identifier: str) -> BatchModel:
        async with self.db.get_session() as session:
            return await self._require(session, identifier)

    async def list_batches(
        self,
        status: str | None = None,
        custodian: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[BatchModel], int]:
        filters = []
        if status:
            try:
                filters.append(BatchModel.status == BatchStatus(status.upper()).value)
            except ValueError:
                raise ValidationError(f"Unknown status: {status!r}") from None
        if custodian:
            filters.append(BatchModel.custodian == custodian.strip().lower())

        async with self.db.get_session() as session:
            count_result = await session.execute(
                select(func.count(BatchModel.id)).where(*filters)
            )
            total = count_result.scalar() or 0
            result = await session.execute(
                select(BatchModel)
                .where(*filters)
                .order_by(BatchModel.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            items = list(result.scalars().all())
        for batch in items:
            self._check_invariants(batch)
        return items, total

    async def get_history(
        self, identifier: str,
    ) -> tuple[BatchModel, list[BatchHistoryModel], dict[str, Any]]:
        async with self.db.get_session() as session:
            batch = await self._require(session, identifier)
            entries = await self.history.entries(session, batch.id)
            chain = await self.history.verify_chain(session, batch)
        return batch, entries, chain

    # ── Ledger protocol ──

    async def _settle(
        self,
        operation: LedgerOperation,
        handle: PendingHandle | None = None,
        read_first: bool = False,
        timeout: float | None = None,
    ) -> Receipt:
        """Drive an operation to a confirmed receipt.

        Every (re)submission after the first is preceded by a lookup of the
        operation key, so an operation whose confirmation timed out or could
        not be polled, but which did land, is adopted rather than duplicated.
        """
        wait = timeout or self.settings.confirmation_timeout
        timeouts = 0
        while True:
            if read_first:
                receipt = await self._retrying(
                    "ledger find_receipt",
                    lambda: self.ledger.find_receipt(operation.key),
                    self.settings.ledger_call_timeout,
                )
                if receipt is not None:
                    logger.info(
                        "Adopted ledger receipt",
                        extra={"kind": operation.kind, "operation_key": operation.key,
                               "token_id": receipt.token_id},
                    )
                    return self._accept(operation, receipt)
                if timeouts > self.settings.reconcile_attempts:
                    raise ServiceDegradedError(
                        f"Ledger {operation.kind} unresolved after {timeouts} confirmation timeouts"
                    )
            read_first = True
            try:
                if handle is None:
                    handle = await self._retrying(
                        "ledger submit", lambda: self.ledger.submit(operation), None,
                    )
                receipt = await self.ledger.await_confirmation(handle, wait)
                logger.info(
                    "Ledger operation confirmed",
                    extra={"kind": operation.kind, "operation_key": operation.key,
                           "tx_hash": receipt.tx_hash, "block_number": receipt.block_number},
                )
                return self._accept(operation, receipt)
            except (LedgerTimeoutError, ServiceUnavailableError) as exc:
                # Submit failures are already absorbed by _retrying, so this is
                # the confirmation wait. The operation may have landed.
                timeouts += 1
                handle = None
                logger.warning(
                    "Ledger confirmation unresolved; reconciling",
                    extra={"kind": operation.kind, "operation_key": operation.key,
                           "attempt": timeouts, "error": exc.code},
                )

    @staticmethod
    def _accept(operation: LedgerOperation, receipt: Receipt) -> Receipt:
        if not receipt.success:
            raise LedgerRejectedError(f"Ledger rejected {operation.kind}: {receipt.reason}")
        return receipt

    async def _retrying(
        self,
        what: str,
        call: Callable[[], Awaitable[T]],
        timeout: float | None,
    ) -> T:
        """Retry transient collaborator failures with exponential backoff."""
        attempts = max(1, self.settings.retry_attempts)
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                if timeout is None:
                    return await call()
                return await asyncio.wait_for(call(), timeout)
            except ServiceUnavailableError as exc:
                last_error = exc
            except asyncio.TimeoutError as exc:
                last_error = exc
            logger.warning(
                "Collaborator unavailable",
                extra={"call": what, "attempt": attempt + 1, "error": str(last_error)},
            )
            if attempt + 1 < attempts:
                await asyncio.sleep(self.settings.retry_backoff_base * 2 ** attempt)
        raise ServiceDegradedError(f"{what} unavailable after {attempts} attempts") from last_error

    def _mint_operation(self, batch: BatchModel) -> LedgerOperation:
        return LedgerOperation(
            kind="mint",
            key=batch.mint_key,
            actor=batch.manufacturer,
            batch_id=batch.batch_id,
            payload={
                "linkage_hash": batch.linkage_hash,
                "content_hash": batch.content_hash,
                "document_ref": batch.document_ref,
                "metadata": batch.metadata_ or {},
            },
        )

    # ── State persistence ──

    async def _record_mint(self, batch_pk: str, receipt: Receipt) -> BatchModel:
        if not receipt.token_id:
            raise InvariantViolationError("Mint receipt carries no token id")
        async with self.db.get_session() as session:
            batch = await self._reload(session, batch_pk)
            batch.ledger_token = str(receipt.token_id)
            batch.status = BatchStatus.MINTED.value
            batch.last_tx_hash = receipt.tx_hash
            await self.history.append(
                session, batch, batch.manufacturer, "MINTED",
                batch.custodian, batch.custodian, receipt.tx_hash,
            )
        logger.info(
            "Batch minted",
            extra={"batch_id": batch.batch_id, "token_id": batch.ledger_token,
                   "tx_hash": receipt.tx_hash},
        )
        return batch

    async def _fail_mint(self, batch_pk: str, actor: str, reason: str) -> BatchModel:
        async with self.db.get_session() as session:
            batch = await self._reload(session, batch_pk)
            batch.status = BatchStatus.FAILED.value
            batch.failure_reason = reason
            await self.history.append(
                session, batch, actor, "MINT_REJECTED", batch.custodian, batch.custodian,
            )
        logger.warning(
            "Batch mint rejected",
            extra={"batch_id": batch.batch_id, "reason": reason, "document_ref": batch.document_ref},
        )
        return batch

    async def _status_transition(
        self,
        snapshot: _Snapshot,
        actor: Session,
        target: BatchStatus,
        history_action: str,
        timeout: float | None,
    ) -> BatchModel:
        async with self._lock(snapshot.batch_id):
            async with self.db.get_session() as session:
                batch = await self._recheck(session, snapshot)
                await self.stakeholders.require_active(session, actor.subject)
                sequence = await self.history.length(session, batch.id)

            operation = LedgerOperation(
                kind="status",
                key=operation_key("status", batch.ledger_token, sequence, target.value),
                actor=actor.subject,
                token_id=batch.ledger_token,
                batch_id=batch.batch_id,
                payload={"status": target.value},
            )
            receipt = await self._settle(operation, timeout=timeout)

            async with self.db.get_session() as session:
                batch = await self._reload(session, batch.id)
                batch.status = target.value
                batch.last_tx_hash = receipt.tx_hash
                await self.history.append(
                    session, batch, actor.subject, history_action,
                    batch.custodian, batch.custodian, receipt.tx_hash,
                )

        logger.info(
            "Batch status updated",
            extra={"batch_id": batch.batch_id, "token_id": batch.ledger_token,
                   "status": target.value, "tx_hash": receipt.tx_hash},
        )
        return batch

    async def _adopt_ledger_state(
        self, batch_pk: str, record, actor: str,
    ) -> tuple[BatchModel, list[str]]:
        changes = []
        async with self.db.get_session() as session:
            batch = await self._reload(session, batch_pk)
            if record.linkage_hash != batch.linkage_hash:
                # Never rewrite the linkage; surface it instead.
                changes.append("linkage_mismatch")
            status_known = record.status in {s.value for s in TOKENIZED_STATES}
            if status_known and record.status != batch.status:
                batch.status = record.status
                changes.append("status")
            if record.custodian != batch.custodian:
                previous = batch.custodian
                batch.custodian = record.custodian
                changes.append("custodian")
                await self.history.append(
                    session, batch, actor, "RECONCILED", previous, record.custodian,
                )
            elif "status" in changes:
                await self.history.append(
                    session, batch, actor, "RECONCILED", batch.custodian, batch.custodian,
                )
        return batch, changes

    # ── Lookup helpers ──

    def _lock(self, batch_id: str) -> asyncio.Lock:
        lock = self._locks.get(batch_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[batch_id] = lock
        return lock

    async def _find(
        self, session: AsyncSession, identifier: str, by_batch_id: bool = False,
    ) -> BatchModel | None:
        """Resolve a ledger token id or a business batch id.

        An identifier that is one batch's token id and a different batch's
        batch id is refused rather than guessed.
        """
        if by_batch_id:
            result = await session.execute(
                select(BatchModel).where(BatchModel.batch_id == identifier)
            )
            return result.scalar_one_or_none()

        result = await session.execute(
            select(BatchModel).where(
                or_(BatchModel.ledger_token == identifier, BatchModel.batch_id == identifier)
            )
        )
        matches = {batch.id: batch for batch in result.scalars().all()}
        if len(matches) > 1:
            raise AmbiguousIdentifierError(
                f"{identifier} is one batch's token id and another batch's batch id; "
                "address the batch by its other identifier"
            )
        return next(iter(matches.values()), None)

    async def _require(
        self, session: AsyncSession, identifier: str, by_batch_id: bool = False,
    ) -> BatchModel:
        batch = await self._find(session, str(identifier), by_batch_id=by_batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {identifier} not found")
        self._check_invariants(batch)
        return batch

    async def _reload(self, session: AsyncSession, batch_pk: str) -> BatchModel:
        batch = await session.get(BatchModel, batch_pk)
        if batch is None:
            raise BatchNotFoundError()
        self._check_invariants(batch)
        return batch

    async def _snapshot(self, identifier: str) -> _Snapshot:
        async with self.db.get_session() as session:
            batch = await self._require(session, identifier)
            version = await self.history.length(session, batch.id)
        return _Snapshot(
            pk=batch.id,
            batch_id=batch.batch_id,
            token_id=batch.ledger_token,
            status=batch.status,
            custodian=batch.custodian,
            version=version,
        )

    async def _recheck(self, session: AsyncSession, snapshot: _Snapshot) -> BatchModel:
        """Reload under the batch lock and confirm nothing moved since the snapshot."""
        batch = await self._reload(session, snapshot.pk)
        version = await self.history.length(session, batch.id)
        if (
            version != snapshot.version
            or batch.status != snapshot.status
            or batch.custodian != snapshot.custodian
        ):
            raise StalePreconditionError(
                f"Batch {snapshot.batch_id} changed while the request was queued"
            )
        return batch

    @staticmethod
    def _require_state(snapshot: _Snapshot, allowed: set[BatchStatus]) -> None:
        if snapshot.status not in {s.value for s in allowed}:
            names = ", ".join(sorted(s.value for s in allowed))
            raise StalePreconditionError(
                f"Batch {snapshot.batch_id} is {snapshot.status}; expected one of {names}"
            )

    @staticmethod
    def _check_invariants(batch: BatchModel) -> None:
        tokenized = batch.status in {s.value for s in TOKENIZED_STATES}
        if tokenized != (batch.ledger_token is not None):
            logger.error(
                "Batch invariant violated",
                extra={"batch_id": batch.batch_id, "status": batch.status,
                       "ledger_token": batch.ledger_token},
            )
            raise InvariantViolationError(
                f"Batch {batch.batch_id}: ledger token presence does not match status {batch.status}"
            )

    @staticmethod
    def _validate_batch_id(batch_id: str) -> str:
        if not isinstance(batch_id, str) or not batch_id.strip():
            raise ValidationError("batch_id is required")
        batch_id = batch_id.strip()
        if len(batch_id) > MAX_BATCH_ID_LEN:
            raise ValidationError(f"batch_id longer than {MAX_BATCH_ID_LEN} characters")
        if "/" in batch_id:
            raise ValidationError("batch_id may not contain '/'")
        return batch_id

    def _store_timeout(self, timeout: float | None) -> float:
        return timeout or self.settings.store_timeout

    async def _confirm_in_background(self, batch_id: str) -> None:
        try:
            await self.confirm_mint(batch_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background mint confirmation failed", extra={"batch_id": batch_id})
