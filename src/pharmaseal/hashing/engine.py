"""
Deterministic digests binding batch documents to ledger records.

- content_hash: SHA-256 over the raw document bytes
- linkage_hash: SHA-256 over canonical JSON of (batch_id, content_hash)
- operation_key: SHA-256 over canonical JSON of (kind, subject, sequence,
  target), the idempotency key a ledger operation is submitted and
  reconciled under

Canonical JSON is ``json.dumps(..., sort_keys=True, separators=(",", ":"))``
encoded as UTF-8, so any third party can recompute the same digests.
"""

import hashlib
import json
import re

from pharmaseal.common.exceptions import ValidationError

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")

OPERATION_KINDS = frozenset({"mint", "transfer", "status"})


def _canonical(fields: dict) -> bytes:
    return json.dumps(fields, sort_keys=True, separators=(",", ":")).encode("utf-8")


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw document bytes."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ValidationError("Document content must be bytes")
    return hashlib.sha256(bytes(data)).hexdigest()


def linkage_hash(batch_id: str, content_digest: str) -> str:
    """
    Bind a business batch identifier to a document digest.

    Args:
        batch_id: Manufacturer-assigned lot number
        content_digest: Output of content_hash() for the batch document

    Returns:
        64-char lowercase hex SHA-256 digest
    """
    if not isinstance(batch_id, str) or not batch_id.strip():
        raise ValidationError("batch_id must be a non-empty string")
    if not isinstance(content_digest, str) or not _HEX_DIGEST.match(content_digest):
        raise ValidationError("content hash must be a 64-char lowercase hex digest")
    return hashlib.sha256(
        _canonical({"batch_id": batch_id, "content_hash": content_digest})
    ).hexdigest()


def operation_key(kind: str, subject: str, sequence: int = 0, target: str = "") -> str:
    """Derive the idempotency key for a ledger operation.

    A mint is keyed on the batch id alone, so every retry of the same mint
    reuses one key. Transfers and status updates are keyed on the token id
    and the batch's history sequence at submission time, plus the target
    (recipient wallet or new status) so a different request at the same
    sequence never collides with an earlier one.
    """
    if kind not in OPERATION_KINDS:
        raise ValidationError(f"Unknown operation kind: {kind!r}")
    if not subject:
        raise ValidationError("Operation subject must be non-empty")
    return hashlib.sha256(
        _canonical({
            "kind": kind,
            "subject": str(subject),
            "sequence": int(sequence),
            "target": str(target),
        })
    ).hexdigest()


def is_digest(value: str) -> bool:
    return isinstance(value, str) and bool(_HEX_DIGEST.match(value))
