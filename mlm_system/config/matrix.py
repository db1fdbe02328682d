# mlm_system/config/matrix.py
"""
Matrix engine enums and constants.
"""
from enum import Enum
from decimal import Decimal


class PositionStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class EntryType(Enum):
    NEW = "new"  # Purchase flow
    REENTRY = "reentry"  # Created by a cycle
    CROSS = "cross"  # Created in another level by a cycle
    MANUAL = "manual"  # Created by an admin


class EntryStatus(Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class CommissionKind(Enum):
    REFERRAL = "referral"
    CYCLE = "cycle"
    MATCHING = "matching"


class CronState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STUCK = "stuck"


class OrphanPlacement(Enum):
    GLOBAL = "global"  # Sponsor without a position -> global root pool
    REJECT = "reject"  # Sponsor without a position -> SponsorNotFound


class RootPolicy(Enum):
    OPEN = "open"  # No open slot -> entrant becomes a new root
    SINGLE = "single"  # Only the first entrant of a level is a root


HUNDRED = Decimal("100")
CENT = Decimal("0.01")

# Paging defaults for the admin queue listing
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 500
