"""Tests for the batch lifecycle manager."""

import asyncio
import gc
import hashlib
from types import SimpleNamespace

import pytest
from sqlalchemy import update

from pharmaseal.auth.authority import SessionAuthority
from pharmaseal.batches.models import BatchModel
from pharmaseal.batches.qr import create_qr_payload
from pharmaseal.batches.service import BatchLifecycleManager, VerificationOutcome
from pharmaseal.common.config import PharmaSealSettings
from pharmaseal.common.database import DatabaseManager
from pharmaseal.common.enums import BatchStatus
from pharmaseal.common.exceptions import (
    AmbiguousIdentifierError,
    BatchNotFoundError,
    DuplicateBatchError,
    ForbiddenError,
    InvariantViolationError,
    LedgerRejectedError,
    ServiceDegradedError,
    StakeholderNotFoundError,
    StalePreconditionError,
    ValidationError,
)
from pharmaseal.documents.store import InMemoryDocumentStore
from pharmaseal.hashing.engine import linkage_hash
from pharmaseal.ledger.memory import InMemoryLedger
from pharmaseal.stakeholders.service import StakeholderService


SECRET_KEY = "test-secret-key-for-unit-tests"
DOCUMENT = b"%PDF-1.7 Amoxicillin 500mg lot B1 certificate of analysis"

MANUFACTURER = "0x" + "a1" * 20
DISTRIBUTOR = "0x" + "b2" * 20
DISTRIBUTOR_2 = "0x" + "b3" * 20
RETAILER = "0x" + "c3" * 20
REGULATOR = "0x" + "e5" * 20
INACTIVE = "0x" + "f6" * 20

STAKEHOLDERS = [
    (MANUFACTURER, "MANUFACTURER", True),
    (DISTRIBUTOR, "DISTRIBUTOR", True),
    (DISTRIBUTOR_2, "DISTRIBUTOR", True),
    (RETAILER, "RETAILER", True),
    (REGULATOR, "REGULATOR", True),
    (INACTIVE, "MANUFACTURER", False),
]


def make_settings(**overrides) -> PharmaSealSettings:
    defaults = {
        "secret_key": SECRET_KEY,
        "db_url": "sqlite+aiosqlite://",
        "confirmation_timeout": 0.05,
        "retry_backoff_base": 0.0,
        "retry_attempts": 3,
        "reconcile_attempts": 2,
    }
    defaults.update(overrides)
    return PharmaSealSettings(**defaults)


class Harness:
    """Lifecycle manager wired to in-memory collaborators."""

    def __init__(self, settings, db):
        self.db = db
        self.ledger = InMemoryLedger()
        self.store = InMemoryDocumentStore()
        self.stakeholders = StakeholderService()
        self.authority = SessionAuthority(settings, db, self.stakeholders)
        self.manager = BatchLifecycleManager(
            settings, db,
            ledger=self.ledger,
            documents=self.store,
            authority=self.authority,
            stakeholders=self.stakeholders,
        )
        self.credentials = {}

    async def seed(self):
        async with self.db.get_session() as session:
            for wallet, role, active in STAKEHOLDERS:
                _, self.credentials[wallet] = await self.stakeholders.register(
                    session, wallet, role.title(), role, is_active=True,
                )
                if not active:
                    await self.stakeholders.update(session, wallet, "REGULATOR", is_active=False)

    async def actor(self, wallet):
        if wallet == INACTIVE:
            # Session opened while the stakeholder was still active.
            async with self.db.get_session() as session:
                await self.stakeholders.update(session, wallet, "REGULATOR", is_active=True)
            pair = await self.authority.issue(wallet, self.credentials[wallet])
            async with self.db.get_session() as session:
                await self.stakeholders.update(session, wallet, "REGULATOR", is_active=False)
        else:
            pair = await self.authority.issue(wallet, self.credentials[wallet])
        return self.authority.validate(pair.access_token)

    async def minted(self, batch_id="B1", document=DOCUMENT):
        manufacturer = await self.actor(MANUFACTURER)
        await self.manager.create_batch(document, batch_id, manufacturer)
        return await self.manager.confirm_mint(batch_id)

    async def in_transit(self, batch_id="B1"):
        batch = await self.minted(batch_id)
        return await self.manager.transfer(
            batch.ledger_token, DISTRIBUTOR, await self.actor(MANUFACTURER),
        )

    async def history_length(self, identifier):
        _, entries, _ = await self.manager.get_history(identifier)
        return len(entries)


@pytest.fixture
async def env(tmp_path):
    settings = make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'lifecycle.db'}")
    db = DatabaseManager(settings)
    await db.init()
    await db.create_all()
    harness = Harness(settings, db)
    await harness.seed()
    yield harness
    await harness.manager.drain()
    await db.close()


class TestCreateBatch:
    async def test_create_returns_minting(self, env):
        batch = await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        assert batch.status == BatchStatus.MINTING.value
        assert batch.ledger_token is None
        assert batch.content_hash == hashlib.sha256(DOCUMENT).hexdigest()
        assert batch.linkage_hash == linkage_hash("B1", batch.content_hash)
        assert batch.custodian == MANUFACTURER
        assert batch.document_ref in env.store

    async def test_confirm_mint(self, env):
        batch = await env.minted()
        assert batch.status == BatchStatus.MINTED.value
        assert batch.ledger_token == "1"
        assert batch.last_tx_hash.startswith("0x")
        record = await env.ledger.read("1")
        assert record.linkage_hash == batch.linkage_hash
        assert record.document_ref == batch.document_ref
        _, entries, chain = await env.manager.get_history("B1")
        assert [e.action for e in entries] == ["CREATED", "MINTED"]
        assert chain["valid"] is True

    async def test_confirm_mint_is_idempotent(self, env):
        first = await env.minted()
        again = await env.manager.confirm_mint("B1")
        assert again.ledger_token == first.ledger_token
        assert env.ledger.tokens_for_batch("B1") == ["1"]

    async def test_metadata_reaches_ledger(self, env):
        await env.manager.create_batch(
            DOCUMENT, "B1", await env.actor(MANUFACTURER),
            metadata={"drug_name": "Amoxicillin", "quantity": 1000},
        )
        batch = await env.manager.confirm_mint("B1")
        assert batch.metadata_ == {"drug_name": "Amoxicillin", "quantity": 1000}
        assert (await env.ledger.read("1")).metadata["drug_name"] == "Amoxicillin"

    async def test_only_manufacturer_creates(self, env):
        with pytest.raises(ForbiddenError):
            await env.manager.create_batch(DOCUMENT, "B1", await env.actor(DISTRIBUTOR))

    async def test_inactive_actor(self, env):
        session = await env.actor(INACTIVE)
        with pytest.raises(ForbiddenError):
            await env.manager.create_batch(DOCUMENT, "B1", session)

    async def test_duplicate_batch_id(self, env):
        await env.minted()
        with pytest.raises(DuplicateBatchError):
            await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))

    async def test_lot_number_equal_to_existing_token(self, env):
        first = await env.minted("LOT-A")
        assert first.ledger_token == "1"

        created = await env.manager.create_batch(
            b"other document", "1", await env.actor(MANUFACTURER),
        )
        assert created.status == BatchStatus.MINTING.value
        second = await env.manager.confirm_mint("1")
        assert second.status == BatchStatus.MINTED.value
        assert second.ledger_token == "2"

    @pytest.mark.parametrize("document", [b"", "text", None])
    async def test_bad_document(self, env, document):
        with pytest.raises(ValidationError):
            await env.manager.create_batch(document, "B1", await env.actor(MANUFACTURER))

    @pytest.mark.parametrize("batch_id", ["", "   ", "a/b", "x" * 101])
    async def test_bad_batch_id(self, env, batch_id):
        with pytest.raises(ValidationError):
            await env.manager.create_batch(DOCUMENT, batch_id, await env.actor(MANUFACTURER))

    async def test_mint_rejected_marks_failed(self, env):
        env.ledger.reject_next = "contract paused"
        with pytest.raises(LedgerRejectedError):
            await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        batch = await env.manager.get_batch("B1")
        assert batch.status == BatchStatus.FAILED.value
        assert "contract paused" in batch.failure_reason
        assert batch.ledger_token is None
        assert batch.document_ref in env.store

    async def test_document_store_down_persists_nothing(self, env):
        env.store.available = False
        with pytest.raises(ServiceDegradedError):
            await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        with pytest.raises(BatchNotFoundError):
            await env.manager.get_batch("B1")
        assert env.ledger.submissions == []

    async def test_transient_ledger_outage_is_retried(self, env):
        env.ledger.unavailable_submits = 2
        batch = await env.minted()
        assert batch.status == BatchStatus.MINTED.value
        assert len(env.ledger.submissions) == 1

    async def test_ledger_down_leaves_batch_minting(self, env):
        env.ledger.unavailable_submits = 3
        with pytest.raises(ServiceDegradedError):
            await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        batch = await env.manager.get_batch("B1")
        assert batch.status == BatchStatus.MINTING.value

        report = await env.manager.reconcile("B1", await env.actor(MANUFACTURER))
        assert report["status"] == BatchStatus.MINTED.value
        assert report["changes"] == ["mint_confirmed"]
        assert env.ledger.tokens_for_batch("B1") == ["1"]


class TestConfirmationTimeouts:
    async def test_timed_out_mint_that_landed_is_adopted(self, env):
        env.ledger.silent_timeouts = 1
        batch = await env.minted()
        assert batch.status == BatchStatus.MINTED.value
        assert env.ledger.tokens_for_batch("B1") == [batch.ledger_token]
        assert len(env.ledger.submissions) == 1

    async def test_lost_mint_is_resubmitted_under_same_key(self, env):
        env.ledger.lost_submits = 1
        batch = await env.minted()
        assert batch.status == BatchStatus.MINTED.value
        assert env.ledger.tokens_for_batch("B1") == [batch.ledger_token]
        keys = {op.key for op in env.ledger.submissions}
        assert len(env.ledger.submissions) == 2
        assert keys == {batch.mint_key}

    async def test_unresolved_mint_degrades_then_reconciles(self, env):
        env.ledger.lost_submits = 10
        await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        with pytest.raises(ServiceDegradedError):
            await env.manager.confirm_mint("B1")
        assert (await env.manager.get_batch("B1")).status == BatchStatus.MINTING.value
        assert len(env.ledger.submissions) == 3

        env.ledger.lost_submits = 0
        await env.manager.reconcile("B1", await env.actor(REGULATOR))
        batch = await env.manager.get_batch("B1")
        assert batch.status == BatchStatus.MINTED.value
        assert env.ledger.tokens_for_batch("B1") == [batch.ledger_token]

    async def test_timed_out_transfer_that_landed_is_adopted(self, env):
        batch = await env.minted()
        env.ledger.silent_timeouts = 1
        moved = await env.manager.transfer(
            batch.ledger_token, DISTRIBUTOR, await env.actor(MANUFACTURER),
        )
        assert moved.custodian == DISTRIBUTOR
        transfers = [op for op in env.ledger.submissions if op.kind == "transfer"]
        assert len(transfers) == 1

    async def test_unreachable_confirmation_that_landed_is_adopted(self, env):
        batch = await env.minted()
        manufacturer = await env.actor(MANUFACTURER)
        env.ledger.unavailable_confirmations = 1

        moved = await env.manager.transfer(batch.ledger_token, DISTRIBUTOR, manufacturer)
        assert moved.custodian == DISTRIBUTOR
        assert (await env.ledger.read(batch.ledger_token)).custodian == DISTRIBUTOR
        transfers = [op for op in env.ledger.submissions if op.kind == "transfer"]
        assert len(transfers) == 1

        # Custody has moved on, so a follow-up request by the old holder is refused.
        with pytest.raises(ForbiddenError):
            await env.manager.transfer(batch.ledger_token, DISTRIBUTOR_2, manufacturer)
        cached = await env.manager.get_batch(batch.ledger_token)
        assert cached.custodian == (await env.ledger.read(batch.ledger_token)).custodian

    async def test_unresolved_transfer_never_overwrites_custody(self, env):
        batch = await env.minted()
        manufacturer = await env.actor(MANUFACTURER)
        env.ledger.lost_submits = 10
        with pytest.raises(ServiceDegradedError):
            await env.manager.transfer(batch.ledger_token, DISTRIBUTOR, manufacturer)

        # The ledger then applies the first request late.
        env.ledger.lost_submits = 0
        first = env.ledger.submissions[-1]
        await env.ledger.submit(first)
        assert (await env.ledger.read(batch.ledger_token)).custodian == DISTRIBUTOR

        # A different request at the same history position gets its own key
        # and is judged by the ledger on its own merits.
        with pytest.raises(LedgerRejectedError):
            await env.manager.transfer(batch.ledger_token, DISTRIBUTOR_2, manufacturer)
        assert (await env.manager.get_batch(batch.ledger_token)).custodian == MANUFACTURER

        await env.manager.reconcile(batch.ledger_token, await env.actor(REGULATOR))
        assert (await env.manager.get_batch(batch.ledger_token)).custodian == DISTRIBUTOR

    async def test_background_confirmation(self, env):
        await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        env.manager.schedule_confirmation("B1")
        await env.manager.drain()
        assert (await env.manager.get_batch("B1")).status == BatchStatus.MINTED.value


class TestTransfer:
    async def test_transfer_to_distributor(self, env):
        batch = await env.minted()
        _, before, _ = await env.manager.get_history("B1")
        moved = await env.manager.transfer(
            batch.ledger_token, DISTRIBUTOR, await env.actor(MANUFACTURER),
        )
        assert moved.custodian == DISTRIBUTOR
        assert moved.status == BatchStatus.IN_TRANSIT.value
        assert (await env.ledger.read(batch.ledger_token)).custodian == DISTRIBUTOR

        _, after, chain = await env.manager.get_history("B1")
        assert len(after) == len(before) + 1
        assert [e.entry_hash for e in after[:-1]] == [e.entry_hash for e in before]
        assert after[-1].action == "TRANSFERRED"
        assert after[-1].previous_custodian == MANUFACTURER
        assert after[-1].new_custodian == DISTRIBUTOR
        assert chain["valid"] is True

    async def test_onward_transfer(self, env):
        batch = await env.in_transit()
        moved = await env.manager.transfer(
            batch.ledger_token, RETAILER, await env.actor(DISTRIBUTOR),
        )
        assert moved.custodian == RETAILER

    async def test_non_custodian_forbidden(self, env):
        batch = await env.minted()
        with pytest.raises(ForbiddenError):
            await env.manager.transfer(
                batch.ledger_token, DISTRIBUTOR_2, await env.actor(DISTRIBUTOR),
            )

    async def test_recipient_must_be_active(self, env):
        batch = await env.minted()
        with pytest.raises(ValidationError):
            await env.manager.transfer(
                batch.ledger_token, INACTIVE, await env.actor(MANUFACTURER),
            )

    async def test_unknown_recipient(self, env):
        batch = await env.minted()
        with pytest.raises(StakeholderNotFoundError):
            await env.manager.transfer(
                batch.ledger_token, "0x" + "9" * 40, await env.actor(MANUFACTURER),
            )

    async def test_transfer_to_self(self, env):
        batch = await env.minted()
        with pytest.raises(ValidationError):
            await env.manager.transfer(
                batch.ledger_token, MANUFACTURER, await env.actor(MANUFACTURER),
            )

    async def test_minting_batch_cannot_move(self, env):
        await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        with pytest.raises(StalePreconditionError):
            await env.manager.transfer("B1", DISTRIBUTOR, await env.actor(MANUFACTURER))

    async def test_unknown_token(self, env):
        with pytest.raises(BatchNotFoundError):
            await env.manager.transfer("404", DISTRIBUTOR, await env.actor(MANUFACTURER))

    async def test_batch_locks_released_after_use(self, env):
        await env.in_transit("B1")
        await env.in_transit("B2")
        gc.collect()
        assert "B1" not in env.manager._locks
        assert "B2" not in env.manager._locks

    async def test_concurrent_transfers_one_wins(self, env):
        batch = await env.minted()
        manufacturer = await env.actor(MANUFACTURER)
        env.ledger.confirm_delay = 0.02

        results = await asyncio.gather(
            env.manager.transfer(batch.ledger_token, DISTRIBUTOR, manufacturer),
            env.manager.transfer(batch.ledger_token, DISTRIBUTOR_2, manufacturer),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, BatchModel)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], StalePreconditionError)

        final = await env.manager.get_batch(batch.ledger_token)
        assert final.custodian == winners[0].custodian
        assert (await env.ledger.read(batch.ledger_token)).custodian == final.custodian
        assert await env.history_length("B1") == 3


class TestStatusTransitions:
    async def test_deliver_then_certify(self, env):
        batch = await env.in_transit()
        delivered = await env.manager.mark_delivered(batch.ledger_token, await env.actor(DISTRIBUTOR))
        assert delivered.status == BatchStatus.DELIVERED.value
        verified = await env.manager.update_status(
            batch.ledger_token, "verified", await env.actor(REGULATOR),
        )
        assert verified.status == BatchStatus.VERIFIED.value
        assert (await env.ledger.read(batch.ledger_token)).status == "VERIFIED"
        _, entries, chain = await env.manager.get_history("B1")
        assert [e.action for e in entries][-2:] == ["DELIVERED", "VERIFIED"]
        assert chain["valid"] is True

    async def test_retailer_custodian_certifies(self, env):
        batch = await env.in_transit()
        await env.manager.transfer(batch.ledger_token, RETAILER, await env.actor(DISTRIBUTOR))
        retailer = await env.actor(RETAILER)
        await env.manager.mark_delivered(batch.ledger_token, retailer)
        verified = await env.manager.mark_verified(batch.ledger_token, retailer)
        assert verified.status == BatchStatus.VERIFIED.value

    async def test_only_custodian_delivers(self, env):
        batch = await env.in_transit()
        with pytest.raises(ForbiddenError):
            await env.manager.mark_delivered(batch.ledger_token, await env.actor(DISTRIBUTOR_2))

    async def test_distributor_cannot_certify(self, env):
        batch = await env.in_transit()
        distributor = await env.actor(DISTRIBUTOR)
        await env.manager.mark_delivered(batch.ledger_token, distributor)
        with pytest.raises(ForbiddenError):
            await env.manager.mark_verified(batch.ledger_token, distributor)

    async def test_certify_requires_delivery(self, env):
        batch = await env.in_transit()
        with pytest.raises(StalePreconditionError):
            await env.manager.mark_verified(batch.ledger_token, await env.actor(REGULATOR))

    async def test_manufacturer_cannot_deliver(self, env):
        batch = await env.minted()
        with pytest.raises(ForbiddenError):
            await env.manager.mark_delivered(batch.ledger_token, await env.actor(MANUFACTURER))

    @pytest.mark.parametrize("status", ["MINTED", "FAILED", "SHIPPED"])
    async def test_update_status_rejects_other_targets(self, env, status):
        batch = await env.minted()
        with pytest.raises(ValidationError):
            await env.manager.update_status(batch.ledger_token, status, await env.actor(MANUFACTURER))


class TestVerify:
    async def test_authentic(self, env):
        batch = await env.minted()
        result = await env.manager.verify(batch.ledger_token)
        assert result.outcome == VerificationOutcome.AUTHENTIC
        assert result.authentic
        assert all(result.checks.values())

    async def test_authentic_after_transfer_by_batch_id(self, env):
        await env.in_transit()
        result = await env.manager.verify("B1")
        assert result.outcome == VerificationOutcome.AUTHENTIC
        assert result.custodian == DISTRIBUTOR

    async def test_tampered_document(self, env):
        batch = await env.minted()
        env.store._objects[batch.document_ref] = DOCUMENT.replace(b"500mg", b"250mg")
        result = await env.manager.verify(batch.ledger_token)
        assert result.outcome == VerificationOutcome.TAMPERED
        assert result.checks["content_hash"] is False
        assert result.checks["ledger_linkage"] is False

    async def test_tampered_ledger_linkage(self, env):
        batch = await env.minted()
        env.ledger._records[batch.ledger_token].linkage_hash = "0" * 64
        result = await env.manager.verify(batch.ledger_token)
        assert result.outcome == VerificationOutcome.TAMPERED
        assert result.checks["content_hash"] is True

    async def test_missing_document(self, env):
        batch = await env.minted()
        del env.store._objects[batch.document_ref]
        result = await env.manager.verify(batch.ledger_token)
        assert result.outcome == VerificationOutcome.UNVERIFIABLE

    async def test_minting_batch_unverifiable(self, env):
        await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        result = await env.manager.verify("B1")
        assert result.outcome == VerificationOutcome.UNVERIFIABLE
        assert result.token_id is None

    async def test_failed_ledger_record_unverifiable(self, env):
        batch = await env.minted()
        env.ledger._records[batch.ledger_token].status = "FAILED"
        result = await env.manager.verify(batch.ledger_token)
        assert result.outcome == VerificationOutcome.UNVERIFIABLE

    async def test_unknown_identifier(self, env):
        with pytest.raises(BatchNotFoundError):
            await env.manager.verify("nope")

    async def test_verify_has_no_side_effects(self, env):
        batch = await env.minted()
        submissions = len(env.ledger.submissions)
        length = await env.history_length("B1")
        await env.manager.verify(batch.ledger_token)
        assert len(env.ledger.submissions) == submissions
        assert await env.history_length("B1") == length

    async def test_store_outage_degrades(self, env):
        batch = await env.minted()
        env.store.available = False
        with pytest.raises(ServiceDegradedError):
            await env.manager.verify(batch.ledger_token)

    async def test_to_dict(self, env):
        batch = await env.minted()
        data = (await env.manager.verify(batch.ledger_token)).to_dict()
        assert data["outcome"] == "AUTHENTIC"
        assert data["authentic"] is True


class TestQRCodes:
    async def test_payload_for_minted_batch(self, env):
        batch = await env.minted()
        issued = await env.manager.qr_payload("B1")
        assert issued["payload"]["token_id"] == batch.ledger_token
        assert issued["payload"]["linkage_hash"] == batch.linkage_hash
        assert issued["payload"]["url"].endswith(f"/batches/verify/{batch.ledger_token}")

    async def test_minting_batch_has_no_payload(self, env):
        await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        with pytest.raises(StalePreconditionError):
            await env.manager.qr_payload("B1")

    async def test_scanned_code_authentic(self, env):
        await env.minted()
        issued = await env.manager.qr_payload("B1")
        result = await env.manager.verify_qr(issued["payload"], issued["signature"])
        assert result.outcome == VerificationOutcome.AUTHENTIC
        assert result.checks["qr_signature"] is True
        assert result.checks["qr_batch"] is True

    async def test_forged_code_tampered(self, env):
        await env.minted()
        issued = await env.manager.qr_payload("B1")
        payload = dict(issued["payload"], batch_id="B2")
        result = await env.manager.verify_qr(payload, issued["signature"])
        assert result.outcome == VerificationOutcome.TAMPERED
        assert result.checks == {"qr_signature": False}

    async def test_code_for_other_linkage_tampered(self, env):
        batch = await env.minted()
        stale = SimpleNamespace(
            ledger_token=batch.ledger_token, batch_id="B1",
            manufacturer=MANUFACTURER, linkage_hash="00" * 32,
        )
        issued = create_qr_payload(stale, SECRET_KEY, "http://localhost:8080")
        result = await env.manager.verify_qr(issued["payload"], issued["signature"])
        assert result.outcome == VerificationOutcome.TAMPERED
        assert result.checks["qr_batch"] is False

    async def test_tampered_document_behind_valid_code(self, env):
        batch = await env.minted()
        issued = await env.manager.qr_payload("B1")
        env.store._objects[batch.document_ref] = b"forged"
        result = await env.manager.verify_qr(issued["payload"], issued["signature"])
        assert result.outcome == VerificationOutcome.TAMPERED
        assert result.checks["qr_signature"] is True


class TestReconcile:
    async def test_adopts_ledger_custodian(self, env):
        batch = await env.minted()
        env.ledger._records[batch.ledger_token].custodian = DISTRIBUTOR_2
        report = await env.manager.reconcile(batch.ledger_token, await env.actor(REGULATOR))
        assert "custodian" in report["changes"]
        assert (await env.manager.get_batch("B1")).custodian == DISTRIBUTOR_2
        _, entries, chain = await env.manager.get_history("B1")
        assert entries[-1].action == "RECONCILED"
        assert chain["valid"] is True

    async def test_in_sync_batch_unchanged(self, env):
        batch = await env.minted()
        report = await env.manager.reconcile(batch.ledger_token, await env.actor(MANUFACTURER))
        assert report["changes"] == []
        assert report["status"] == BatchStatus.MINTED.value

    async def test_distributor_forbidden(self, env):
        batch = await env.minted()
        with pytest.raises(ForbiddenError):
            await env.manager.reconcile(batch.ledger_token, await env.actor(DISTRIBUTOR))


class TestQueries:
    async def test_ambiguous_identifier_refused(self, env):
        await env.minted("LOT-A")
        await env.minted("1")
        with pytest.raises(AmbiguousIdentifierError):
            await env.manager.get_batch("1")
        with pytest.raises(AmbiguousIdentifierError):
            await env.manager.verify("1")
        assert (await env.manager.get_batch("LOT-A")).ledger_token == "1"
        assert (await env.manager.get_batch("2")).batch_id == "1"
        assert (await env.manager.verify("2")).outcome == VerificationOutcome.AUTHENTIC

    async def test_list_batches(self, env):
        await env.minted("B1")
        await env.in_transit("B2")
        items, total = await env.manager.list_batches()
        assert total == 2
        items, total = await env.manager.list_batches(status="in_transit")
        assert [b.batch_id for b in items] == ["B2"]
        items, total = await env.manager.list_batches(custodian=MANUFACTURER)
        assert [b.batch_id for b in items] == ["B1"]

    async def test_list_unknown_status(self, env):
        with pytest.raises(ValidationError):
            await env.manager.list_batches(status="LOST")

    async def test_invariant_violation_detected(self, env):
        await env.manager.create_batch(DOCUMENT, "B1", await env.actor(MANUFACTURER))
        async with env.db.get_session() as session:
            await session.execute(
                update(BatchModel)
                .where(BatchModel.batch_id == "B1")
                .values(status=BatchStatus.MINTED.value)
            )
        with pytest.raises(InvariantViolationError):
            await env.manager.get_batch("B1")
