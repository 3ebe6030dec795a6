"""Dependency injection singletons for PharmaSeal."""

from pharmaseal.auth.authority import SessionAuthority
from pharmaseal.batches.history import BatchHistory
from pharmaseal.batches.service import BatchLifecycleManager
from pharmaseal.common.config import get_settings
from pharmaseal.common.database import DatabaseManager
from pharmaseal.documents.http import HttpDocumentStore
from pharmaseal.documents.store import DocumentStore, InMemoryDocumentStore
from pharmaseal.ledger.client import HttpLedgerClient, LedgerClient
from pharmaseal.ledger.memory import InMemoryLedger
from pharmaseal.stakeholders.service import StakeholderService

_db: DatabaseManager | None = None
_stakeholders: StakeholderService | None = None
_history: BatchHistory | None = None
_documents: DocumentStore | None = None
_ledger: LedgerClient | None = None
_authority: SessionAuthority | None = None
_lifecycle: BatchLifecycleManager | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_stakeholder_service() -> StakeholderService:
    global _stakeholders
    if _stakeholders is None:
        _stakeholders = StakeholderService()
    return _stakeholders


def get_batch_history() -> BatchHistory:
    global _history
    if _history is None:
        _history = BatchHistory(get_settings())
    return _history


def get_document_store() -> DocumentStore:
    global _documents
    if _documents is None:
        settings = get_settings()
        if settings.document_store_backend == "http":
            _documents = HttpDocumentStore(
                settings.document_store_url, timeout=settings.store_timeout,
            )
        else:
            _documents = InMemoryDocumentStore()
    return _documents


def get_ledger() -> LedgerClient:
    global _ledger
    if _ledger is None:
        settings = get_settings()
        if settings.ledger_backend == "http":
            _ledger = HttpLedgerClient(
                settings.ledger_url, call_timeout=settings.ledger_call_timeout,
            )
        else:
            _ledger = InMemoryLedger()
    return _ledger


def get_session_authority() -> SessionAuthority:
    global _authority
    if _authority is None:
        _authority = SessionAuthority(
            get_settings(), get_db(), get_stakeholder_service(),
        )
    return _authority


def get_lifecycle_manager() -> BatchLifecycleManager:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = BatchLifecycleManager(
            get_settings(),
            get_db(),
            ledger=get_ledger(),
            documents=get_document_store(),
            authority=get_session_authority(),
            stakeholders=get_stakeholder_service(),
            history=get_batch_history(),
        )
    return _lifecycle


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _stakeholders, _history, _documents, _ledger, _authority, _lifecycle
    _db = None
    _stakeholders = None
    _history = None
    _documents = None
    _ledger = None
    _authority = None
    _lifecycle = None
