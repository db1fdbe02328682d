# mlm_system/services/placement_service.py
"""
Placement allocator - breadth-first spillover into the forced matrix.
"""
from collections import OrderedDict, deque
from typing import List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

import config
from models import User, MatrixPosition, MatrixLevelConfig, QueueEntry
from mlm_system.config.matrix import PositionStatus, OrphanPlacement, RootPolicy
from mlm_system.errors import SponsorNotFound, LevelFull, TreeInconsistency
from mlm_system.events.event_bus import eventBus, MatrixEvents
from mlm_system.services.level_service import LevelService
from mlm_system.services.sponsor_service import SponsorService
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class Frontier:
    """BFS state of one start set: open nodes in fill order, with hop distance."""

    def __init__(self, startIds: List[int]):
        self.queue = deque((positionId, 0) for positionId in startIds)
        self.seen = set(startIds)

    def extend(self, childIds: List[int], hops: int):
        for childId in childIds:
            if childId not in self.seen:
                self.seen.add(childId)
                self.queue.append((childId, hops))


class FrontierCache:
    """
    Remembers where the last search for a start set stopped.

    Positions are never deleted and a full node never gets a free slot
    again, so everything popped from a frontier stays closed and the next
    search can resume at the head of the queue.
    """

    _instance = None
    maxSize = 1024

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._frontiers = OrderedDict()
        return cls._instance

    def get(self, key: Tuple) -> Optional[Frontier]:
        frontier = self._frontiers.get(key)
        if frontier is not None:
            self._frontiers.move_to_end(key)
        return frontier

    def put(self, key: Tuple, frontier: Frontier):
        self._frontiers[key] = frontier
        self._frontiers.move_to_end(key)
        while len(self._frontiers) > self.maxSize:
            self._frontiers.popitem(last=False)

    def invalidate(self, key: Optional[Tuple] = None):
        if key is None:
            self._frontiers.clear()
        else:
            self._frontiers.pop(key, None)


# Global frontier cache
frontierCache = FrontierCache()


def windowAncestors(positionPath: Optional[List[int]], depth: int) -> List[int]:
    """Ancestors whose cycle window contains the position, nearest last."""
    path = list(positionPath or [])
    return path[-depth:] if depth > 0 else []


class PlacementService:
    """Service for allocating matrix positions."""

    def __init__(self, session: Session):
        self.session = session
        self.levelService = LevelService(session)
        self.sponsorService = SponsorService(session)

    async def placePosition(
            self,
            user: User,
            level: int,
            sponsor: Optional[User] = None,
            entry: Optional[QueueEntry] = None
    ) -> MatrixPosition:
        """
        Place user into level under sponsor's subtree.

        Position insert, level counter update and the link from the queue
        entry are committed together.
        Raises InvalidLevel, SponsorNotFound or LevelFull.
        """
        levelConfig = self.levelService.getLevel(level)
        startIds = self._startPositions(level, sponsor)

        parent = None
        slotIndex = None
        cacheKey = None

        if startIds:
            cacheKey = (level, tuple(startIds))
            parent, slotIndex = self._findOpenSlot(levelConfig, cacheKey, startIds)

            if parent is None:
                if RootPolicy(config.ROOT_POLICY) == RootPolicy.SINGLE:
                    raise LevelFull(level)
                logger.warning(
                    f"No open slot within {config.PLACEMENT_SEARCH_DEPTH} levels "
                    f"for user {user.userID} in level {level}, opening a new root"
                )

        position = MatrixPosition(
            userID=user.userID,
            username=user.username,
            sponsorID=sponsor.userID if sponsor else None,
            level=level,
            createdAt=timeMachine.now,
            status=PositionStatus.ACTIVE.value,
            totalEarned=0,
            cycleCount=0
        )

        if parent is not None:
            position.parentPositionID = parent.positionID
            position.slotIndex = slotIndex
            position.treeDepth = parent.treeDepth + 1
            position.positionPath = list(parent.positionPath or []) + [parent.positionID]
            if self.openAncestorIds(windowAncestors(position.positionPath, levelConfig.depth)):
                levelConfig.positionsFilled = (levelConfig.positionsFilled or 0) + 1
        else:
            position.treeDepth = 0
            position.positionPath = []

        try:
            self.session.add(position)
            self.session.flush()
            if entry is not None:
                entry.positionID = position.positionID
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            if cacheKey:
                frontierCache.invalidate(cacheKey)
            raise TreeInconsistency(
                f"Slot {slotIndex} under position {parent.positionID if parent else None} "
                f"already taken: {e}"
            ) from e
        except Exception:
            self.session.rollback()
            if cacheKey:
                frontierCache.invalidate(cacheKey)
            raise

        logger.info(
            f"Placed user {user.userID} at position {position.positionID} in level {level} "
            f"(parent={position.parentPositionID}, slot={position.slotIndex}, "
            f"open={levelConfig.positionsFilled})"
        )

        await eventBus.emit(MatrixEvents.POSITION_PLACED, {
            "positionId": position.positionID,
            "userId": user.userID,
            "level": level,
            "parentPositionId": position.parentPositionID,
            "slotIndex": position.slotIndex
        })

        return position

    def _ownedPositionIds(self, userId: int, level: int) -> List[int]:
        rows = self.session.query(MatrixPosition.positionID).filter_by(
            userID=userId,
            level=level
        ).order_by(MatrixPosition.createdAt.asc(), MatrixPosition.positionID.asc()).all()
        return [row.positionID for row in rows]

    def _rootPositionIds(self, level: int) -> List[int]:
        rows = self.session.query(MatrixPosition.positionID).filter(
            MatrixPosition.level == level,
            MatrixPosition.parentPositionID.is_(None)
        ).order_by(MatrixPosition.createdAt.asc(), MatrixPosition.positionID.asc()).all()
        return [row.positionID for row in rows]

    def _startPositions(self, level: int, sponsor: Optional[User]) -> List[int]:
        """
        Positions the search starts from: the sponsor's, an upline
        sponsor's, or the level's roots. Empty list means the level is empty.
        """
        if sponsor is not None:
            positionIds = self._ownedPositionIds(sponsor.userID, level)
            if positionIds:
                return positionIds

            if config.ALLOW_SPONSOR_LOOKUP:
                chain = self.sponsorService.findSponsorChain(sponsor, config.SPONSOR_LOOKUP_DEPTH)
                for upline in chain:
                    positionIds = self._ownedPositionIds(upline.userID, level)
                    if positionIds:
                        logger.info(
                            f"Sponsor {sponsor.username} has no position in level {level}, "
                            f"placing under upline {upline.username}"
                        )
                        return positionIds

            if OrphanPlacement(config.ORPHAN_PLACEMENT) == OrphanPlacement.REJECT:
                raise SponsorNotFound(sponsor.username, f"has no position in level {level}")

            logger.info(f"Sponsor {sponsor.username} has no position in level {level}, using global pool")

        return self._rootPositionIds(level)

    def _childSlots(self, parentId: int) -> List[Tuple[int, int]]:
        rows = self.session.query(
            MatrixPosition.positionID, MatrixPosition.slotIndex
        ).filter_by(parentPositionID=parentId).order_by(MatrixPosition.slotIndex.asc()).all()
        return [(row.positionID, row.slotIndex) for row in rows]

    def _findOpenSlot(
            self,
            levelConfig: MatrixLevelConfig,
            cacheKey: Tuple,
            startIds: List[int]
    ) -> Tuple[Optional[MatrixPosition], Optional[int]]:
        """Breadth-first, left-to-right search for the first node with a free slot."""
        width = levelConfig.width
        maxHops = config.PLACEMENT_SEARCH_DEPTH

        frontier = frontierCache.get(cacheKey)
        if frontier is None:
            frontier = Frontier(startIds)
            frontierCache.put(cacheKey, frontier)

        while frontier.queue:
            nodeId, hops = frontier.queue[0]
            children = self._childSlots(nodeId)

            if len(children) > width:
                frontierCache.invalidate(cacheKey)
                raise TreeInconsistency(
                    f"Position {nodeId} has {len(children)} children, width is {width}"
                )

            if len(children) < width:
                taken = {slot for _, slot in children}
                freeSlot = next(slot for slot in range(width) if slot not in taken)
                parent = self.session.query(MatrixPosition).filter_by(positionID=nodeId).first()
                return parent, freeSlot

            frontier.queue.popleft()
            if maxHops and hops + 1 > maxHops:
                continue
            frontier.extend([childId for childId, _ in children], hops + 1)

        return None, None

    def openAncestorIds(self, ancestorIds: List[int]) -> set:
        """Those of ancestorIds that have not cycled yet."""
        if not ancestorIds:
            return set()
        rows = self.session.query(MatrixPosition.positionID).filter(
            MatrixPosition.positionID.in_(ancestorIds),
            MatrixPosition.status != PositionStatus.COMPLETED.value
        ).all()
        return {row.positionID for row in rows}

    def countOpen(self, level: int) -> int:
        """positionsFilled recomputed from the position rows."""
        levelConfig = self.session.query(MatrixLevelConfig).filter_by(level=level).first()
        if not levelConfig:
            return 0

        rows = self.session.query(
            MatrixPosition.positionID, MatrixPosition.status, MatrixPosition.positionPath
        ).filter_by(level=level).all()
        completed = {row.positionID for row in rows if row.status == PositionStatus.COMPLETED.value}

        return sum(
            1 for row in rows
            if any(ancestorId not in completed
                   for ancestorId in windowAncestors(row.positionPath, levelConfig.depth))
        )

    def countFilled(self, level: int) -> int:
        """All-time non-root positions of a level."""
        return self.session.query(func.count(MatrixPosition.positionID)).filter(
            MatrixPosition.level == level,
            MatrixPosition.parentPositionID.isnot(None)
        ).scalar()
