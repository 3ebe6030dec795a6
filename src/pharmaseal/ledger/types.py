"""Value types exchanged with the distributed ledger."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class LedgerOperation:
    """A state-changing ledger operation.

    kind is one of ``mint``, ``transfer`` or ``status``. ``key`` is the
    deterministic operation key from ``hashing.engine.operation_key``; the
    ledger treats a resubmission under the same key as the same operation.
    """

    kind: str
    key: str
    actor: str
    token_id: Optional[str] = None
    batch_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PendingHandle:
    """Returned by submit(); not a confirmation."""

    handle_id: str
    operation_key: str
    kind: str


@dataclass(frozen=True)
class Receipt:
    """Durable inclusion result for an operation."""

    operation_key: str
    kind: str
    token_id: Optional[str]
    success: bool = True
    tx_hash: str = ""
    block_number: int = 0
    reason: str = ""


@dataclass
class LedgerRecord:
    """Ledger-resident state of one batch token."""

    token_id: str
    batch_id: str
    linkage_hash: str
    document_ref: str
    status: str
    custodian: str
    minted_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
