"""Ledger client interface and HTTP gateway client.

Submission and confirmation are separate calls: ``submit`` returns a
``PendingHandle`` immediately, ``await_confirmation`` suspends until the
operation is durably included. A timeout is ambiguous; callers resolve it
with ``find_receipt`` under the operation's derived key, never by blind
resubmission.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from pharmaseal.common.exceptions import (
    LedgerRecordNotFoundError,
    LedgerRejectedError,
    LedgerTimeoutError,
    ServiceUnavailableError,
)
from pharmaseal.ledger.types import LedgerOperation, LedgerRecord, PendingHandle, Receipt

logger = logging.getLogger(__name__)


@runtime_checkable
class LedgerClient(Protocol):
    async def submit(self, operation: LedgerOperation) -> PendingHandle: ...

    async def await_confirmation(self, handle: PendingHandle, timeout: float) -> Receipt: ...

    async def read(self, token_id: str) -> LedgerRecord: ...

    async def find_receipt(self, operation_key: str) -> Optional[Receipt]: ...


def receipt_from_json(data: dict[str, Any]) -> Receipt:
    return Receipt(
        operation_key=data["operation_key"],
        kind=data.get("kind", ""),
        token_id=data.get("token_id"),
        success=data.get("status", "confirmed") == "confirmed",
        tx_hash=data.get("tx_hash", ""),
        block_number=int(data.get("block_number", 0)),
        reason=data.get("reason", ""),
    )


def record_from_json(data: dict[str, Any]) -> LedgerRecord:
    minted_at = data.get("minted_at")
    return LedgerRecord(
        token_id=str(data["token_id"]),
        batch_id=data["batch_id"],
        linkage_hash=data["linkage_hash"],
        document_ref=data["document_ref"],
        status=data["status"],
        custodian=data["custodian"],
        minted_at=datetime.fromisoformat(minted_at) if minted_at else None,
        metadata=data.get("metadata") or {},
    )


class HttpLedgerClient:
    """Talks to a ledger gateway that fronts the batch-token contract.

    Each call opens its own ``httpx.AsyncClient``; no connection state is
    kept between operations.
    """

    def __init__(
        self,
        base_url: str,
        call_timeout: float = 15.0,
        poll_interval: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.call_timeout = call_timeout
        self.poll_interval = poll_interval
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.call_timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, url: str, timeout: float | None = None, **kwargs) -> httpx.Response:
        try:
            async with self._client(timeout) as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ServiceUnavailableError("Ledger gateway timed out") from exc
        except httpx.HTTPError as exc:
            raise ServiceUnavailableError(f"Ledger gateway unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise ServiceUnavailableError(f"Ledger gateway returned HTTP {resp.status_code}")
        return resp

    async def submit(self, operation: LedgerOperation) -> PendingHandle:
        resp = await self._request(
            "POST",
            "/operations",
            json={
                "kind": operation.kind,
                "key": operation.key,
                "actor": operation.actor,
                "token_id": operation.token_id,
                "batch_id": operation.batch_id,
                "payload": operation.payload,
            },
        )
        if resp.status_code in (400, 409, 422):
            reason = resp.json().get("reason", f"HTTP {resp.status_code}")
            raise LedgerRejectedError(f"Ledger rejected {operation.kind}: {reason}")
        resp.raise_for_status()
        handle_id = resp.json()["handle"]
        logger.info(
            "Submitted ledger operation",
            extra={"kind": operation.kind, "operation_key": operation.key, "handle": handle_id},
        )
        return PendingHandle(handle_id=handle_id, operation_key=operation.key, kind=operation.kind)

    async def await_confirmation(self, handle: PendingHandle, timeout: float) -> Receipt:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LedgerTimeoutError(
                    f"No confirmation for {handle.kind} {handle.operation_key[:12]} within {timeout}s"
                )
            wait = min(remaining, self.poll_interval)
            resp = await self._request(
                "GET",
                f"/operations/{handle.handle_id}",
                params={"wait": wait},
                timeout=self.call_timeout + wait,
            )
            if resp.status_code == 200:
                receipt = receipt_from_json(resp.json())
                if not receipt.success:
                    raise LedgerRejectedError(f"Ledger rejected {handle.kind}: {receipt.reason}")
                return receipt
            if resp.status_code != 202:
                resp.raise_for_status()
            await asyncio.sleep(0)

    async def read(self, token_id: str) -> LedgerRecord:
        resp = await self._request("GET", f"/tokens/{token_id}")
        if resp.status_code == 404:
            raise LedgerRecordNotFoundError(f"Token {token_id} not on ledger")
        resp.raise_for_status()
        return record_from_json(resp.json())

    async def find_receipt(self, operation_key: str) -> Optional[Receipt]:
        resp = await self._request("GET", f"/operations/by-key/{operation_key}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return receipt_from_json(resp.json())
