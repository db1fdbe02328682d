# mlm_system/events/notifications.py
"""
Turns matrix events into Notification rows for the delivery processor.
"""
from typing import Callable, Dict, Any
import logging

from models import Notification
from mlm_system.events.event_bus import eventBus, MatrixEvents

logger = logging.getLogger(__name__)

SOURCE = "matrix_cron"


async def flagForReview(session, subject: str, reason: str) -> Notification:
    """Queue an admin review item. Commits the session."""
    notification = Notification(
        source=SOURCE,
        text=f"⚠️ {subject}\n{reason}",
        targetType="admin",
        targetValue="all",
        priority=2,
        category="review",
        importance="high"
    )
    session.add(notification)
    session.commit()

    logger.warning(f"Flagged for review: {subject} ({reason})")
    return notification


class MatrixNotifier:
    """Subscribes to matrix events and writes user and admin notifications."""

    def __init__(self, sessionFactory: Callable):
        self.sessionFactory = sessionFactory
        self._handlers = {
            MatrixEvents.CYCLE_COMPLETED: self.onCycleCompleted,
            MatrixEvents.BONUS_AWARDED: self.onBonusAwarded,
            MatrixEvents.ENTRY_FAILED: self.onEntryFailed,
            MatrixEvents.CRON_STUCK: self.onCronStuck,
        }

    def setup(self):
        for eventName, handler in self._handlers.items():
            eventBus.subscribe(eventName, handler)
        logger.info("Matrix notifier subscribed")

    def teardown(self):
        for eventName, handler in self._handlers.items():
            eventBus.unsubscribe(eventName, handler)

    def _write(self, text: str, targetType: str, targetValue: str, category: str, priority: int = 1):
        with self.sessionFactory() as session:
            session.add(Notification(
                source=SOURCE,
                text=text,
                targetType=targetType,
                targetValue=targetValue,
                priority=priority,
                category=category,
                importance="high" if priority > 1 else "normal"
            ))
            session.commit()

    async def onCycleCompleted(self, data: Dict[str, Any]):
        self._write(
            f"🎉 Your position #{data['positionId']} in level {data['level']} completed a cycle!",
            "user", str(data["userId"]), "matrix"
        )

    async def onBonusAwarded(self, data: Dict[str, Any]):
        self._write(
            f"💰 You received a {data['type']} bonus of {data['amount']} "
            f"from matrix level {data['level']}",
            "user", str(data["userId"]), "matrix"
        )

    async def onEntryFailed(self, data: Dict[str, Any]):
        self._write(
            f"❌ Queue entry {data['entryId']} ({data.get('username')}, level {data.get('level')}) "
            f"failed: {data['reason']}",
            "admin", "all", "review", priority=2
        )

    async def onCronStuck(self, data: Dict[str, Any]):
        self._write(
            f"🚨 Matrix cron is stuck at entry {data.get('entryId')}: {data['error']}\n"
            f"Inspect the tree, then run &unlockcron",
            "admin", "all", "review", priority=3
        )
