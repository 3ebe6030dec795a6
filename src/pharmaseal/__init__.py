"""PharmaSeal: tamper-evident provenance for pharmaceutical batches."""

from pharmaseal.client import ProvenanceClient
from pharmaseal.hashing.engine import content_hash, linkage_hash, operation_key

__all__ = [
    "ProvenanceClient",
    "content_hash",
    "linkage_hash",
    "operation_key",
]
__version__ = "0.1.0"
