"""Document store interface and in-memory content-addressed store."""

import asyncio
import hashlib
from typing import Protocol, runtime_checkable

from pharmaseal.common.exceptions import (
    DocumentNotFoundError,
    ServiceUnavailableError,
    ValidationError,
)

CID_PREFIX = "bafk"


@runtime_checkable
class DocumentStore(Protocol):
    """Content-addressed store: identical bytes always map to one identifier."""

    async def put(self, data: bytes, timeout: float | None = None) -> str: ...

    async def get(self, ref: str, timeout: float | None = None) -> bytes: ...


def content_identifier(data: bytes) -> str:
    """Identifier the in-memory store assigns to ``data``."""
    return CID_PREFIX + hashlib.sha256(data).hexdigest()


class InMemoryDocumentStore:
    """Process-local document store for development and tests.

    ``available`` can be flipped to simulate an unreachable store.
    """

    def __init__(self):
        self._objects: dict[str, bytes] = {}
        self.available = True
        self.put_calls = 0

    def _check_available(self) -> None:
        if not self.available:
            raise ServiceUnavailableError("Document store unreachable")

    async def put(self, data: bytes, timeout: float | None = None) -> str:
        self._check_available()
        if not data:
            raise ValidationError("Cannot store an empty document")
        self.put_calls += 1
        await asyncio.sleep(0)
        cid = content_identifier(bytes(data))
        self._objects.setdefault(cid, bytes(data))
        return cid

    async def get(self, ref: str, timeout: float | None = None) -> bytes:
        self._check_available()
        await asyncio.sleep(0)
        try:
            return self._objects[ref]
        except KeyError:
            raise DocumentNotFoundError(f"Document {ref} not found") from None

    def __contains__(self, ref: str) -> bool:
        return ref in self._objects
