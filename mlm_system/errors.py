# mlm_system/errors.py
"""
Typed failures raised by the matrix engine.

Validation errors fail the queue entry for good, transient errors leave it
pending for the next run, structural errors stop the run and park the cron
lock in the stuck state.
"""


class MatrixError(Exception):
    """Base class for all matrix engine errors."""


class EntryValidationError(MatrixError):
    """Entry can never be processed as-is."""


class InvalidLevel(EntryValidationError):
    def __init__(self, level):
        super().__init__(f"Matrix level {level} is not configured or inactive")
        self.level = level


class UserNotFound(EntryValidationError):
    def __init__(self, user):
        super().__init__(f"User not found: {user}")
        self.user = user


class SponsorNotFound(EntryValidationError):
    def __init__(self, sponsor, reason: str = "not found"):
        super().__init__(f"Sponsor {sponsor} {reason}")
        self.sponsor = sponsor


class LevelFull(EntryValidationError):
    def __init__(self, level):
        super().__init__(f"No open slot left in matrix level {level}")
        self.level = level


class TransientError(MatrixError):
    """Collaborator unavailable - retry on the next run."""


class LedgerUnavailable(TransientError):
    pass


class LedgerError(MatrixError):
    """Ledger rejected a credit (missing or blocked account)."""


class StructuralError(MatrixError):
    """Matrix tree is inconsistent - needs admin inspection."""


class TreeInconsistency(StructuralError):
    pass
