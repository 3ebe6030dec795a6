"""Shared enumerations for stakeholder roles and batch lifecycle states."""

from enum import Enum


class Role(str, Enum):
    MANUFACTURER = "MANUFACTURER"
    DISTRIBUTOR = "DISTRIBUTOR"
    RETAILER = "RETAILER"
    HEALTHCARE_PROVIDER = "HEALTHCARE_PROVIDER"
    REGULATOR = "REGULATOR"


class BatchStatus(str, Enum):
    DRAFT = "DRAFT"
    MINTING = "MINTING"
    MINTED = "MINTED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


# States in which the ledger has confirmed a mint (ledger token must be set).
TOKENIZED_STATES = frozenset({
    BatchStatus.MINTED,
    BatchStatus.IN_TRANSIT,
    BatchStatus.DELIVERED,
    BatchStatus.VERIFIED,
})
