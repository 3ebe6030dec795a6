"""HTTP client for a content-addressed document store gateway."""

import logging

import httpx

from pharmaseal.common.exceptions import (
    DocumentNotFoundError,
    ServiceUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class HttpDocumentStore:
    """Stores and fetches batch documents through the store's HTTP gateway.

    ``POST /documents`` takes raw bytes and answers ``{"cid": ...}``;
    ``GET /documents/{cid}`` answers the bytes or 404.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self, timeout: float | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    async def put(self, data: bytes, timeout: float | None = None) -> str:
        if not data:
            raise ValidationError("Cannot store an empty document")
        try:
            async with self._client(timeout) as client:
                resp = await client.post(
                    "/documents",
                    content=data,
                    headers={"Content-Type": "application/octet-stream"},
                )
        except httpx.HTTPError as exc:
            logger.warning("Document store put failed: %s", exc)
            raise ServiceUnavailableError("Document store unreachable") from exc

        if resp.status_code >= 500:
            raise ServiceUnavailableError(f"Document store returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise ValidationError(f"Document store refused upload: HTTP {resp.status_code}")
        cid = resp.json().get("cid")
        if not cid:
            raise ServiceUnavailableError("Document store response missing cid")
        logger.info("Stored document", extra={"cid": cid, "size": len(data)})
        return cid

    async def get(self, ref: str, timeout: float | None = None) -> bytes:
        try:
            async with self._client(timeout) as client:
                resp = await client.get(f"/documents/{ref}")
        except httpx.HTTPError as exc:
            logger.warning("Document store get failed: %s", exc)
            raise ServiceUnavailableError("Document store unreachable") from exc

        if resp.status_code == 404:
            raise DocumentNotFoundError(f"Document {ref} not found")
        if resp.status_code >= 400:
            raise ServiceUnavailableError(f"Document store returned HTTP {resp.status_code}")
        return resp.content
