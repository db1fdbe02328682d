# mlm_system/services/queue_service.py
"""
Entry queue - ordered, append-only log of pending placement requests.
"""
import math
from datetime import datetime
from typing import List, Dict, Optional
from sqlalchemy.orm import Session
import logging

from models import User, QueueEntry, MatrixLevelConfig
from mlm_system.config.matrix import EntryType, EntryStatus, DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from mlm_system.errors import UserNotFound, InvalidLevel
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class QueueService:
    """Service for reading and finalizing queue entries."""

    def __init__(self, session: Session):
        self.session = session

    def _pendingQuery(self):
        return self.session.query(QueueEntry).filter(
            QueueEntry.processed == False,
            QueueEntry.enqueuedAt <= timeMachine.now
        )

    async def fetchPending(self, limit: int) -> List[QueueEntry]:
        """Due, unprocessed entries in enqueue order, id as tiebreak."""
        return self._pendingQuery().order_by(
            QueueEntry.enqueuedAt.asc(),
            QueueEntry.entryID.asc()
        ).limit(limit).all()

    async def countPending(self) -> int:
        return self._pendingQuery().count()

    async def markProcessed(self, entryId: int) -> bool:
        """
        Finalize an entry. Returns False when it was already finalized,
        so calling twice is a no-op.
        """
        updated = self.session.query(QueueEntry).filter(
            QueueEntry.entryID == entryId,
            QueueEntry.processed == False
        ).update({
            QueueEntry.processed: True,
            QueueEntry.processedAt: timeMachine.now,
            QueueEntry.status: EntryStatus.DONE.value,
        }, synchronize_session="fetch")
        self.session.commit()

        if not updated:
            logger.debug(f"Queue entry {entryId} already processed")
        return bool(updated)

    async def markFailed(self, entryId: int, reason: str) -> bool:
        """Finalize an entry as failed. It is never retried automatically."""
        updated = self.session.query(QueueEntry).filter(
            QueueEntry.entryID == entryId,
            QueueEntry.processed == False
        ).update({
            QueueEntry.processed: True,
            QueueEntry.processedAt: timeMachine.now,
            QueueEntry.status: EntryStatus.FAILED.value,
            QueueEntry.failureReason: reason,
        }, synchronize_session="fetch")
        self.session.commit()

        if updated:
            logger.warning(f"Queue entry {entryId} failed: {reason}")
        return bool(updated)

    def enqueue(
            self,
            user: User,
            level: int,
            entryType: EntryType = EntryType.NEW,
            sponsorHint: Optional[str] = None,
            enqueuedAt: Optional[datetime] = None
    ) -> QueueEntry:
        """Add an entry to the current transaction. The caller commits."""
        entry = QueueEntry(
            userID=user.userID,
            username=user.username,
            level=level,
            enqueuedAt=enqueuedAt or timeMachine.now,
            entryType=entryType.value,
            sponsorHint=sponsorHint,
            processed=False,
            status=EntryStatus.PENDING.value
        )
        self.session.add(entry)
        return entry

    async def createEntry(
            self,
            username: str,
            level: int,
            date: Optional[datetime] = None,
            entryType: EntryType = EntryType.NEW,
            sponsor: Optional[str] = None
    ) -> QueueEntry:
        """Create and commit an entry for an existing user and level."""
        user = self.session.query(User).filter_by(username=username).first()
        if not user:
            raise UserNotFound(username)

        levelConfig = self.session.query(MatrixLevelConfig).filter_by(level=level).first()
        if not levelConfig or not levelConfig.isActive:
            raise InvalidLevel(level)

        entry = self.enqueue(user, level, entryType, sponsor, date)
        self.session.commit()

        logger.info(
            f"Queue entry {entry.entryID} created: user={username}, level={level}, "
            f"type={entryType.value}, sponsor={sponsor}"
        )
        return entry

    async def deleteEntry(self, entryId: int) -> bool:
        """Delete an entry that has not been placed yet."""
        entry = self.session.query(QueueEntry).filter_by(entryID=entryId).first()
        if not entry:
            return False

        if entry.positionID and not entry.processed:
            raise ValueError(f"Queue entry {entryId} is already placed and awaiting commissions")

        self.session.delete(entry)
        self.session.commit()
        logger.info(f"Queue entry {entryId} deleted")
        return True

    async def listEntries(
            self,
            processed: Optional[bool] = None,
            page: int = 1,
            limit: int = DEFAULT_PAGE_LIMIT
    ) -> Dict:
        """Paginated listing for the admin surface."""
        page = max(1, int(page))
        limit = min(max(1, int(limit)), MAX_PAGE_LIMIT)

        query = self.session.query(QueueEntry)
        if processed is not None:
            query = query.filter(QueueEntry.processed == processed)

        total = query.count()
        entries = query.order_by(
            QueueEntry.enqueuedAt.asc(),
            QueueEntry.entryID.asc()
        ).offset((page - 1) * limit).limit(limit).all()

        return {
            "entries": [entry.toDict() for entry in entries],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit) if total else 0
            }
        }
