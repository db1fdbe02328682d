# mlm_system/services/admin_service.py
"""
Admin operations over the matrix engine: cron control, queue and levels.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Callable, Union
import logging

from mlm_system.config.matrix import EntryType, DEFAULT_PAGE_LIMIT
from mlm_system.errors import UserNotFound, InvalidLevel
from mlm_system.services.cron_service import CronService
from mlm_system.services.level_service import LevelService
from mlm_system.services.placement_service import PlacementService
from mlm_system.services.queue_service import QueueService
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class AdminService:
    """Result-dict facade for the admin bot. Opens one session per call."""

    def __init__(self, sessionFactory: Callable, ledgerFactory: Optional[Callable] = None):
        self.sessionFactory = sessionFactory
        self.ledgerFactory = ledgerFactory
        self._runs = set()

    def _cronService(self, session) -> CronService:
        ledger = self.ledgerFactory(session) if self.ledgerFactory else None
        return CronService(session, ledger)

    async def getCronStatus(self) -> Dict:
        with self.sessionFactory() as session:
            return await CronService(session).getStatus()

    async def runCronManually(self) -> Dict:
        """
        Take the lock now and process the batch in the background.
        A held lock is rejected with status 409 before anything is placed.
        """
        with self.sessionFactory() as session:
            started = await CronService(session).start()

        if not started["success"]:
            return started

        task = asyncio.create_task(self._runLocked(), name="matrix_cron_manual")
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)

        logger.info("Manual cron run started")
        return {
            "success": True,
            "status": 202,
            "startedAt": started["startedAt"].isoformat()
        }

    async def _runLocked(self) -> Dict:
        try:
            with self.sessionFactory() as session:
                return await self._cronService(session).run()
        except Exception as e:
            logger.error(f"Manual cron run crashed: {e}", exc_info=True)
            raise

    async def waitForRuns(self):
        """Wait for background runs started by runCronManually."""
        if self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    async def unlockCron(self) -> Dict:
        with self.sessionFactory() as session:
            return await CronService(session).forceUnlock()

    async def createQueueEntry(
            self,
            username: str,
            level: int,
            date: Optional[Union[datetime, str]] = None,
            entryType: Optional[str] = None,
            sponsor: Optional[str] = None
    ) -> Dict:
        try:
            kind = EntryType(entryType) if entryType else EntryType.MANUAL
            if isinstance(date, str):
                date = datetime.fromisoformat(date)
            # Stored as naive UTC
            date = timeMachine.aware(date)
            level = int(level)
        except ValueError as e:
            return {"success": False, "error": str(e), "status": 400}

        with self.sessionFactory() as session:
            try:
                entry = await QueueService(session).createEntry(username, level, date, kind, sponsor)
            except UserNotFound as e:
                return {"success": False, "error": str(e), "status": 404}
            except InvalidLevel as e:
                return {"success": False, "error": str(e), "status": 400}

            return {"success": True, "entry": entry.toDict()}

    async def deleteQueueEntry(self, entryId: int) -> Dict:
        with self.sessionFactory() as session:
            try:
                deleted = await QueueService(session).deleteEntry(int(entryId))
            except ValueError as e:
                return {"success": False, "error": str(e), "status": 409}

        if not deleted:
            return {"success": False, "error": f"Queue entry {entryId} not found", "status": 404}
        return {"success": True, "entryId": int(entryId)}

    async def listQueueEntries(
            self,
            processed: Optional[bool] = None,
            page: int = 1,
            limit: int = DEFAULT_PAGE_LIMIT
    ) -> Dict:
        with self.sessionFactory() as session:
            listing = await QueueService(session).listEntries(processed, page, limit)
        return {"success": True, **listing}

    async def listLevels(self) -> Dict:
        with self.sessionFactory() as session:
            placementService = PlacementService(session)
            levels = []
            for levelConfig in await LevelService(session).listLevels():
                levels.append({
                    "level": levelConfig.level,
                    "name": levelConfig.name,
                    "isActive": levelConfig.isActive,
                    "price": levelConfig.price,
                    "width": levelConfig.width,
                    "depth": levelConfig.depth,
                    "positionsFilled": levelConfig.positionsFilled,
                    "maxPositions": levelConfig.maxPositions,
                    "placed": placementService.countFilled(levelConfig.level),
                })
        return {"success": True, "levels": levels}

    async def upsertLevel(self, level: int, **fields) -> Dict:
        for key in ("price", "referralBonusPct", "matrixBonusPct", "matchingBonusPct"):
            if key in fields and fields[key] is not None:
                fields[key] = Decimal(str(fields[key]))

        with self.sessionFactory() as session:
            try:
                levelConfig = await LevelService(session).upsertLevel(int(level), **fields)
            except ValueError as e:
                session.rollback()
                return {"success": False, "error": str(e), "status": 400}
            return {"success": True, "level": levelConfig.level, "maxPositions": levelConfig.maxPositions}
