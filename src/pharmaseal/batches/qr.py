"""Signed verification payloads for batch QR codes.

The payload printed on a batch's packaging carries the token id, batch id,
manufacturer and linkage hash, plus the public verification URL. It is
HMAC-signed so a scanner can tell a code issued by this service from a
forged one before asking the ledger anything.
"""

import hashlib
import hmac
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

QR_PAYLOAD_VERSION = "1.0"


@dataclass
class QRPayload:
    """The data signed into a batch QR code."""

    token_id: str
    batch_id: str
    manufacturer: str
    linkage_hash: str
    url: str
    issued_at: str  # ISO format
    version: str = QR_PAYLOAD_VERSION


def verification_url(base_url: str, api_prefix: str, token_id: str) -> str:
    return f"{base_url.rstrip('/')}{api_prefix}/batches/verify/{token_id}"


def _signature(fields: dict[str, Any], hmac_key: str) -> str:
    canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"))
    return hmac.new(hmac_key.encode(), canonical.encode(), hashlib.sha256).hexdigest()


def create_qr_payload(
    batch,
    hmac_key: str,
    base_url: str,
    api_prefix: str = "",
    issued_at: datetime | None = None,
) -> dict[str, Any]:
    """Build the signed payload for a minted batch.

    Returns:
        Dict with 'payload', 'signature' and 'data', the compact JSON string
        to encode in the QR image
    """
    payload = QRPayload(
        token_id=str(batch.ledger_token),
        batch_id=batch.batch_id,
        manufacturer=batch.manufacturer,
        linkage_hash=batch.linkage_hash,
        url=verification_url(base_url, api_prefix, batch.ledger_token),
        issued_at=(issued_at or datetime.now(timezone.utc)).isoformat(),
    )
    payload_dict = asdict(payload)
    signature = _signature(payload_dict, hmac_key)
    data = json.dumps(
        {**payload_dict, "signature": signature}, sort_keys=True, separators=(",", ":"),
    )
    return {"payload": payload_dict, "signature": signature, "data": data}


def verify_qr_payload(payload: dict[str, Any], signature: str, hmac_key: str) -> bool:
    """Check a scanned payload's signature.

    Unknown or missing fields fail the check rather than raising.
    """
    try:
        fields = asdict(QRPayload(**payload))
    except TypeError:
        return False
    if not isinstance(signature, str):
        return False
    return hmac.compare_digest(_signature(fields, hmac_key), signature)
