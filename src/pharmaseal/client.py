"""
ProvenanceClient SDK — sync client for PharmaSeal.

Used by pharmacies, clinics and integrators to verify batches, compare a
locally held batch document against the recorded one, and drive custody
transfers with a stakeholder session.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from pharmaseal.hashing.engine import content_hash


@dataclass
class ClientVerification:
    """Result of verify() call."""

    identifier: str
    authentic: bool
    result: str = ""
    reason: str = ""
    batch_id: Optional[str] = None
    token_id: Optional[str] = None
    custodian: Optional[str] = None
    status: Optional[str] = None
    content_hash: Optional[str] = None
    checks: dict[str, bool] = field(default_factory=dict)
    code: str = ""


class ProvenanceClient:
    """
    Synchronous HTTP client for PharmaSeal.

    Public verification needs no credentials; custody operations need a
    session opened with login().
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8080",
        timeout: int = 30,
        max_retries: int = 3,
        retry_backoff_base: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_backoff_base = retry_backoff_base
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self._http = httpx.Client(
            base_url=self.server_url,
            timeout=timeout,
            transport=transport,
        )

    def _auth_headers(self) -> dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Central HTTP method with retry; returns the response envelope.

        Retries timeouts, connection errors and 5xx responses. Other error
        responses are returned as their envelope.
        """
        last_error = None
        for attempt in range(self.max_retries):
            try:
                resp = self._http.request(method, path, **kwargs)
                if resp.status_code >= 500 and attempt < self.max_retries - 1:
                    last_error = f"HTTP {resp.status_code}"
                    time.sleep(self.retry_backoff_base * (2 ** attempt))
                    continue
                try:
                    return resp.json()
                except ValueError:
                    return {
                        "success": False,
                        "error": {"code": "JSON_ERROR", "message": "Invalid JSON response"},
                    }
            except httpx.HTTPError as e:
                last_error = str(e)
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_backoff_base * (2 ** attempt))

        return {
            "success": False,
            "error": {
                "code": "CONNECTION_ERROR",
                "message": f"All {self.max_retries} retries exhausted: {last_error}",
            },
        }

    @staticmethod
    def _error_code(envelope: dict[str, Any]) -> str:
        return (envelope.get("error") or {}).get("code", "")

    # ── Sessions ──

    def login(self, wallet_address: str, proof: str) -> bool:
        envelope = self._request(
            "POST", "/auth/login",
            json={"wallet_address": wallet_address, "proof": proof},
        )
        if not envelope.get("success"):
            return False
        self.access_token = envelope["data"]["access_token"]
        self.refresh_token = envelope["data"]["refresh_token"]
        return True

    def refresh(self) -> bool:
        if not self.refresh_token:
            return False
        envelope = self._request(
            "POST", "/auth/refresh", json={"refresh_token": self.refresh_token},
        )
        if not envelope.get("success"):
            return False
        self.access_token = envelope["data"]["access_token"]
        self.refresh_token = envelope["data"]["refresh_token"]
        return True

    def logout(self) -> None:
        if self.access_token:
            self._request(
                "POST", "/auth/logout",
                json={"refresh_token": self.refresh_token},
                headers=self._auth_headers(),
            )
        self.access_token = None
        self.refresh_token = None

    # ── Verification ──

    def verify(self, identifier: str) -> ClientVerification:
        """Verify a batch by token id or batch id (no session required)."""
        envelope = self._request("GET", f"/batches/verify/{identifier}")
        return self._verification(identifier, envelope)

    def verify_qr(self, data: str) -> ClientVerification:
        """Verify the text scanned from a batch QR code (no session required)."""
        try:
            scanned = json.loads(data)
            signature = scanned.pop("signature")
        except (ValueError, TypeError, AttributeError, KeyError):
            return ClientVerification(
                identifier="",
                authentic=False,
                result="TAMPERED",
                reason="QR code text is not a signed batch payload",
            )
        envelope = self._request(
            "POST", "/batches/verify/qr", json={"payload": scanned, "signature": signature},
        )
        return self._verification(str(scanned.get("token_id", "")), envelope)

    def _verification(self, identifier: str, envelope: dict[str, Any]) -> ClientVerification:
        if not envelope.get("success"):
            return ClientVerification(
                identifier=identifier,
                authentic=False,
                result="ERROR",
                reason=(envelope.get("error") or {}).get("message", ""),
                code=self._error_code(envelope),
            )
        data = envelope["data"]
        return ClientVerification(
            identifier=identifier,
            authentic=data.get("authentic", False),
            result=data.get("result", ""),
            reason=data.get("reason", ""),
            batch_id=data.get("batch_id"),
            token_id=data.get("token_id"),
            custodian=data.get("custodian"),
            status=data.get("status"),
            content_hash=data.get("content_hash"),
            checks=data.get("checks", {}),
        )

    def verify_document(self, identifier: str, document: bytes) -> ClientVerification:
        """Verify a batch and check that a locally held copy matches it."""
        result = self.verify(identifier)
        if result.authentic:
            matches = content_hash(document) == result.content_hash
            result.checks["local_copy"] = matches
            if not matches:
                result.authentic = False
                result.result = "TAMPERED"
                result.reason = "Local document does not match the recorded batch document"
        return result

    # ── Batches ──

    def get_batch(self, identifier: str) -> dict[str, Any]:
        return self._request("GET", f"/batches/{identifier}", headers=self._auth_headers())

    def get_history(self, identifier: str) -> dict[str, Any]:
        return self._request(
            "GET", f"/batches/{identifier}/history", headers=self._auth_headers(),
        )

    def transfer(self, token_id: str, to_wallet: str) -> dict[str, Any]:
        return self._request(
            "POST", f"/batches/{token_id}/transfer",
            json={"to_wallet": to_wallet},
            headers=self._auth_headers(),
        )

    # ── Lifecycle ──

    def close(self) -> None:
        """Close the HTTP client."""
        self._http.close()
