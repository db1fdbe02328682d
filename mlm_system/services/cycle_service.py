# mlm_system/services/cycle_service.py
"""
Cycle detector - completes ancestors whose matrix window is full.
"""
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

import config
from models import User, MatrixPosition, MatrixLevelConfig, QueueEntry
from mlm_system.config.matrix import PositionStatus, EntryType
from mlm_system.errors import TreeInconsistency
from mlm_system.events.event_bus import eventBus, MatrixEvents
from mlm_system.services.commission_service import CommissionService
from mlm_system.services.ledger_service import Ledger
from mlm_system.services.placement_service import PlacementService, windowAncestors
from mlm_system.services.queue_service import QueueService
from mlm_system.services.sponsor_service import SponsorService
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class CycleService:
    """Service for detecting and settling matrix cycles."""

    def __init__(self, session: Session, ledger: Optional[Ledger] = None):
        self.session = session
        self.commissionService = CommissionService(session, ledger)
        self.queueService = QueueService(session)
        self.placementService = PlacementService(session)
        self.sponsorService = SponsorService(session)

    async def detectCycles(self, position: MatrixPosition, resume: bool = False) -> List[MatrixPosition]:
        """
        Evaluate the ancestors of a new position, nearest first.

        Each completion is committed on its own before its payout, so a
        nested parent is evaluated only after its child has cycled. With
        resume=True, payouts of ancestors that already completed are
        attempted again; the ledger keys make that safe.
        """
        levelConfig = self.session.query(MatrixLevelConfig).filter_by(level=position.level).first()
        if not levelConfig:
            raise TreeInconsistency(f"Position {position.positionID} references missing level {position.level}")

        depth = levelConfig.depth
        capacity = levelConfig.maxPositions
        ancestorIds = list(reversed((position.positionPath or [])[-depth:]))

        completed = []
        for ancestorId in ancestorIds:
            ancestor = self.session.query(MatrixPosition).filter_by(positionID=ancestorId).first()
            if not ancestor:
                raise TreeInconsistency(f"Ancestor {ancestorId} of position {position.positionID} missing")

            filled = self.countDescendants(ancestor, levelConfig.width, depth)
            if filled < capacity:
                continue

            if ancestor.status == PositionStatus.COMPLETED.value:
                if resume:
                    await self.commissionService.payCycle(ancestor, levelConfig)
                continue

            await self._complete(ancestor, levelConfig)
            completed.append(ancestor)

            await eventBus.emit(MatrixEvents.CYCLE_COMPLETED, {
                "positionId": ancestor.positionID,
                "userId": ancestor.userID,
                "level": ancestor.level,
                "cycleCount": ancestor.cycleCount
            })

            await self.commissionService.payCycle(ancestor, levelConfig)

        return completed

    def countDescendants(self, position: MatrixPosition, width: int, depth: int) -> int:
        return len(self.descendantIds(position, width, depth))

    def descendantIds(self, position: MatrixPosition, width: int, depth: int) -> List[int]:
        """Descendants within depth levels below position, level by level."""
        found = []
        frontier = [position.positionID]

        for _ in range(depth):
            rows = self.session.query(
                MatrixPosition.positionID, MatrixPosition.parentPositionID
            ).filter(MatrixPosition.parentPositionID.in_(frontier)).all()

            perParent = {}
            for row in rows:
                perParent[row.parentPositionID] = perParent.get(row.parentPositionID, 0) + 1
            overfull = [parentId for parentId, count in perParent.items() if count > width]
            if overfull:
                raise TreeInconsistency(
                    f"Positions {overfull} have more than {width} children"
                )

            frontier = [row.positionID for row in rows]
            found.extend(frontier)
            if not frontier:
                break

        return found

    async def _complete(self, position: MatrixPosition, levelConfig: MatrixLevelConfig):
        """Mark completed, release the window and enqueue recycling entries in one commit."""
        position.status = PositionStatus.COMPLETED.value
        position.cycleCount = (position.cycleCount or 0) + 1
        position.cycledAt = timeMachine.now

        released = self._released(position, levelConfig)
        levelConfig.positionsFilled = max(0, (levelConfig.positionsFilled or 0) - released)

        entries = []
        owner = self.session.query(User).filter_by(userID=position.userID).first()
        if owner and not (config.SYSTEM_USERNAME and owner.username == config.SYSTEM_USERNAME):
            entries = self._recycle(owner, levelConfig)

        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"Position {position.positionID} of user {position.userID} completed cycle "
            f"{position.cycleCount} in level {levelConfig.level}, {len(entries)} entries queued"
        )

    def _released(self, position: MatrixPosition, levelConfig: MatrixLevelConfig) -> int:
        """
        Descendants of a just-completed position that no longer sit in any
        open window. Those still under an uncycled ancestor stay counted.
        """
        depth = levelConfig.depth
        descendantIds = self.descendantIds(position, levelConfig.width, depth)
        if not descendantIds:
            return 0

        rows = self.session.query(
            MatrixPosition.positionID, MatrixPosition.positionPath
        ).filter(MatrixPosition.positionID.in_(descendantIds)).all()

        # Autoflush makes the completed status visible to this query
        ancestorIds = {ancestorId for row in rows for ancestorId in windowAncestors(row.positionPath, depth)}
        openIds = self.placementService.openAncestorIds(list(ancestorIds))

        return sum(1 for row in rows if not openIds.intersection(windowAncestors(row.positionPath, depth)))

    def _recycle(self, owner: User, levelConfig: MatrixLevelConfig) -> list:
        sponsor = self.sponsorService.findSponsor(owner)
        sponsorHint = sponsor.username if sponsor else None

        entries = []
        if levelConfig.reentryEnabled:
            for _ in range(levelConfig.reentryCount or 1):
                entries.append(self.queueService.enqueue(
                    owner, levelConfig.level, EntryType.REENTRY, sponsorHint
                ))

        for cross in levelConfig.crossEntries or []:
            targetLevel = int(cross.get("level", 0))
            target = self.session.query(MatrixLevelConfig).filter_by(level=targetLevel).first()
            if not target or not target.isActive:
                logger.warning(
                    f"Cross entry from level {levelConfig.level} to unknown level {targetLevel} skipped"
                )
                continue

            for _ in range(int(cross.get("count", 1))):
                entries.append(self.queueService.enqueue(
                    owner, targetLevel, EntryType.CROSS, sponsorHint,
                    self._crossEntryTime(owner, targetLevel)
                ))

        return entries

    def _crossEntryTime(self, owner: User, level: int) -> datetime:
        """Keep a member's entries into one level CROSS_ENTRY_SPACING seconds apart."""
        now = timeMachine.now
        spacing = config.CROSS_ENTRY_SPACING
        if spacing <= 0:
            return now

        since = now - timedelta(seconds=spacing)
        latest = self.session.query(func.max(QueueEntry.enqueuedAt)).filter(
            QueueEntry.userID == owner.userID,
            QueueEntry.level == level,
            QueueEntry.enqueuedAt >= since
        ).scalar()
        if latest is None:
            latest = self.session.query(func.max(MatrixPosition.createdAt)).filter(
                MatrixPosition.userID == owner.userID,
                MatrixPosition.level == level,
                MatrixPosition.createdAt >= since
            ).scalar()

        if latest is None:
            return now
        return timeMachine.aware(latest) + timedelta(seconds=spacing)
