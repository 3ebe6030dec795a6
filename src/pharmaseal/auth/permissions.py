"""Role-to-action permission table.

Authorization is a lookup in ``ROLE_PERMISSIONS`` plus, for custody actions,
a check that the caller holds the batch (or is the named recipient).
"""

from enum import Enum
from typing import Optional

from pharmaseal.common.enums import Role


class Action(str, Enum):
    BATCH_READ = "batch:read"
    BATCH_MINT = "batch:mint"
    BATCH_TRANSFER = "batch:transfer"
    BATCH_DELIVER = "batch:deliver"
    BATCH_CERTIFY = "batch:certify"
    BATCH_RECONCILE = "batch:reconcile"
    STAKEHOLDER_READ = "stakeholder:read"
    STAKEHOLDER_MANAGE = "stakeholder:manage"


READ_ACTIONS = frozenset({Action.BATCH_READ, Action.STAKEHOLDER_READ})

# Actions that change or depend on who holds the batch.
CUSTODY_ACTIONS = frozenset({Action.BATCH_TRANSFER, Action.BATCH_DELIVER})

ROLE_PERMISSIONS: dict[Role, frozenset[Action]] = {
    Role.MANUFACTURER: READ_ACTIONS | {
        Action.BATCH_MINT,
        Action.BATCH_TRANSFER,
        Action.BATCH_RECONCILE,
    },
    Role.DISTRIBUTOR: READ_ACTIONS | {
        Action.BATCH_TRANSFER,
        Action.BATCH_DELIVER,
    },
    Role.RETAILER: READ_ACTIONS | {
        Action.BATCH_TRANSFER,
        Action.BATCH_DELIVER,
        Action.BATCH_CERTIFY,
    },
    Role.HEALTHCARE_PROVIDER: READ_ACTIONS | {
        Action.BATCH_DELIVER,
        Action.BATCH_CERTIFY,
    },
    Role.REGULATOR: READ_ACTIONS | {
        Action.BATCH_CERTIFY,
        Action.BATCH_RECONCILE,
        Action.STAKEHOLDER_MANAGE,
    },
}


def role_allows(role: Role | str, action: Action | str) -> bool:
    """Pure table lookup: may ``role`` perform ``action`` at all?"""
    try:
        role = Role(role)
        action = Action(action)
    except ValueError:
        return False
    return action in ROLE_PERMISSIONS.get(role, frozenset())


def is_permitted(
    role: Role | str,
    subject: str,
    action: Action | str,
    resource_owner: Optional[str] = None,
    recipient: Optional[str] = None,
) -> bool:
    """Table lookup plus the custody rule for custody-changing actions."""
    if not role_allows(role, action):
        return False
    if Action(action) in CUSTODY_ACTIONS:
        holders = {h.lower() for h in (resource_owner, recipient) if h}
        return subject.lower() in holders
    return True
