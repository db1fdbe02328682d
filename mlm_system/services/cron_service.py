# mlm_system/services/cron_service.py
"""
Cron orchestrator - single-flight processing of the verifier queue.

Lock states: idle -> running -> idle on a normal run, running -> stuck
when an entry hits a structural error, stuck -> idle through forceUnlock.
"""
import asyncio
from typing import Dict, Optional, Callable
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

import config
from models import User, QueueEntry, MatrixPosition, CronLockState, CRON_LOCK_ID
from mlm_system.config.matrix import CronState, EntryType
from mlm_system.errors import EntryValidationError, TransientError, UserNotFound, TreeInconsistency
from mlm_system.events.event_bus import eventBus, MatrixEvents
from mlm_system.services.cycle_service import CycleService
from mlm_system.services.ledger_service import Ledger
from mlm_system.services.placement_service import PlacementService
from mlm_system.services.queue_service import QueueService
from mlm_system.services.sponsor_service import SponsorService
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "AlreadyRunning"


class CronService:
    """Service for running the matrix queue under the cron lock."""

    def __init__(self, session: Session, ledger: Optional[Ledger] = None):
        self.session = session
        self.queueService = QueueService(session)
        self.placementService = PlacementService(session)
        self.cycleService = CycleService(session, ledger)
        self.commissionService = self.cycleService.commissionService
        self.sponsorService = SponsorService(session)

    def getLock(self) -> Optional[CronLockState]:
        return self.session.query(CronLockState).filter_by(lockID=CRON_LOCK_ID).first()

    async def start(self) -> Dict:
        """
        Take the lock with a guarded UPDATE so two triggers cannot both
        enter running. Losing the race is a normal result, not an error.
        """
        now = timeMachine.now
        acquired = self.session.query(CronLockState).filter(
            CronLockState.lockID == CRON_LOCK_ID,
            CronLockState.active == False
        ).update({
            CronLockState.active: True,
            CronLockState.state: CronState.RUNNING.value,
            CronLockState.startedAt: now,
            CronLockState.lastRun: now,
            CronLockState.lastError: None,
        }, synchronize_session="fetch")
        self.session.commit()

        if not acquired and self.getLock() is None:
            try:
                self.session.add(CronLockState(
                    lockID=CRON_LOCK_ID,
                    active=True,
                    state=CronState.RUNNING.value,
                    startedAt=now,
                    lastRun=now
                ))
                self.session.commit()
                acquired = 1
            except IntegrityError:
                self.session.rollback()

        if not acquired:
            lock = self.getLock()
            logger.warning(f"Cron start rejected, lock is {lock.state if lock else 'held'}")
            return {
                "success": False,
                "error": ALREADY_RUNNING,
                "status": 409,
                "state": lock.state if lock else CronState.RUNNING.value
            }

        logger.info(f"Cron lock acquired at {now}")
        return {"success": True, "startedAt": now}

    async def run(self) -> Dict:
        """
        Process one batch of due entries in order. The caller holds the lock.

        Validation failures finalize the entry and move on, a transient
        failure leaves it pending and ends the batch, anything else parks
        the lock in the stuck state.
        """
        stats = {
            "processed": 0,
            "failed": 0,
            "deferred": 0,
            "cycles": 0,
            "stuck": False
        }
        entryId = None

        try:
            entries = await self.queueService.fetchPending(config.CRON_BATCH_SIZE)
            logger.info(f"Cron run: {len(entries)} entries due")

            for entry in entries:
                entryId = entry.entryID
                try:
                    outcome = await self.processEntry(entry)
                except EntryValidationError as e:
                    self.session.rollback()
                    await self._failEntry(entryId, e)
                    stats["failed"] += 1
                    continue
                except TransientError as e:
                    self.session.rollback()
                    self._deferEntry(entryId, e)
                    stats["deferred"] += 1
                    break

                self._advanceCursor(entryId)
                await self.queueService.markProcessed(entryId)
                stats["processed"] += 1
                stats["cycles"] += outcome["cycles"]

        except Exception as e:
            self.session.rollback()
            logger.error(f"Cron run stopped at entry {entryId}: {e}", exc_info=True)
            await self._markStuck(entryId, e)
            stats["stuck"] = True
            return stats

        await self._release()
        logger.info(
            f"Cron run finished: {stats['processed']} processed, {stats['failed']} failed, "
            f"{stats['deferred']} deferred, {stats['cycles']} cycles"
        )
        return stats

    async def processVerifierQueue(self) -> Dict:
        """Start and run in one call, the scheduler entry point."""
        started = await self.start()
        if not started["success"]:
            return started

        stats = await self.run()
        return {"success": not stats["stuck"], **stats}

    async def processEntry(self, entry: QueueEntry) -> Dict:
        """Place, detect cycles and cascade commissions for one entry."""
        user = None
        if entry.userID:
            user = self.session.query(User).filter_by(userID=entry.userID).first()
        if user is None:
            user = self.sponsorService.findUserByUsername(entry.username)
        if user is None:
            raise UserNotFound(entry.username)

        resume = entry.positionID is not None
        if resume:
            position = self.session.query(MatrixPosition).filter_by(positionID=entry.positionID).first()
            if not position:
                raise TreeInconsistency(f"Entry {entry.entryID} links missing position {entry.positionID}")
            logger.info(f"Resuming entry {entry.entryID} at position {position.positionID}")
        else:
            self.placementService.levelService.getLevel(entry.level)

            if entry.sponsorHint:
                sponsor = self.sponsorService.applySponsorHint(user, entry.sponsorHint)
            else:
                sponsor = self.sponsorService.findSponsor(user)

            position = await self.placementService.placePosition(user, entry.level, sponsor, entry)

        completed = await self.cycleService.detectCycles(position, resume=resume)
        await self.commissionService.processPlacement(position, EntryType(entry.entryType or EntryType.NEW.value))

        return {"positionId": position.positionID, "cycles": len(completed)}

    def _advanceCursor(self, entryId: int):
        # Flushed with the next commit
        lock = self.getLock()
        if lock:
            lock.lastProcessedEntryID = entryId

    async def _failEntry(self, entryId: int, error: Exception):
        entry = self.session.query(QueueEntry).filter_by(entryID=entryId).first()
        self._advanceCursor(entryId)
        await self.queueService.markFailed(entryId, str(error))

        await eventBus.emit(MatrixEvents.ENTRY_FAILED, {
            "entryId": entryId,
            "username": entry.username if entry else None,
            "level": entry.level if entry else None,
            "reason": str(error)
        })

    def _deferEntry(self, entryId: int, error: Exception):
        logger.warning(f"Entry {entryId} deferred to the next run: {error}")
        entry = self.session.query(QueueEntry).filter_by(entryID=entryId).first()
        if entry:
            entry.attempts = (entry.attempts or 0) + 1
        lock = self.getLock()
        if lock:
            lock.lastError = f"entry {entryId}: {error}"
        self.session.commit()

    async def _markStuck(self, entryId: Optional[int], error: Exception):
        lock = self.getLock()
        if lock:
            lock.state = CronState.STUCK.value
            lock.lastError = f"entry {entryId}: {error}"
            self.session.commit()

        await eventBus.emit(MatrixEvents.CRON_STUCK, {
            "entryId": entryId,
            "error": str(error)
        })

    async def _release(self):
        self.session.query(CronLockState).filter_by(lockID=CRON_LOCK_ID).update({
            CronLockState.active: False,
            CronLockState.state: CronState.IDLE.value,
        }, synchronize_session="fetch")
        self.session.commit()
        logger.info("Cron lock released")

    async def forceUnlock(self) -> Dict:
        """Reset the lock without touching the cursor."""
        lock = self.getLock()
        if not lock:
            return {"success": True, "previousState": CronState.IDLE.value}

        previousState = lock.state
        lock.active = False
        lock.state = CronState.IDLE.value
        self.session.commit()

        logger.warning(
            f"Cron lock force-unlocked from {previousState}, "
            f"cursor stays at entry {lock.lastProcessedEntryID}"
        )
        return {"success": True, "previousState": previousState}

    async def getStatus(self) -> Dict:
        lock = self.getLock()
        pendingCount = await self.queueService.countPending()

        if not lock:
            return {
                "active": False,
                "state": CronState.IDLE.value,
                "lastRun": None,
                "lastProcessedEntryId": None,
                "pendingCount": pendingCount,
                "lastError": None
            }

        state = lock.state
        elapsed = timeMachine.secondsSince(lock.startedAt)
        if (lock.active and state == CronState.RUNNING.value
                and elapsed is not None and elapsed > config.CRON_STUCK_AFTER):
            state = CronState.STUCK.value

        lastRun = timeMachine.aware(lock.lastRun)
        return {
            "active": lock.active,
            "state": state,
            "lastRun": lastRun.isoformat() if lastRun else None,
            "lastProcessedEntryId": lock.lastProcessedEntryID,
            "pendingCount": pendingCount,
            "lastError": lock.lastError
        }


class CronScheduler:
    """Periodic driver for the verifier queue."""

    def __init__(
            self,
            sessionFactory: Callable,
            interval: Optional[int] = None,
            ledgerFactory: Optional[Callable] = None
    ):
        self.sessionFactory = sessionFactory
        self.interval = interval or config.CRON_INTERVAL
        self.ledgerFactory = ledgerFactory
        self._running = False

    async def tick(self) -> Dict:
        with self.sessionFactory() as session:
            ledger = self.ledgerFactory(session) if self.ledgerFactory else None
            result = await CronService(session, ledger).processVerifierQueue()

        if result.get("error") == ALREADY_RUNNING:
            logger.info("Scheduled cron tick skipped, previous run still active")
        return result

    async def run(self):
        logger.info(f"Matrix cron scheduler started, interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in matrix cron scheduler loop: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    async def stop(self):
        self._running = False
        logger.info("Matrix cron scheduler stopped")
