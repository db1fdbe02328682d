# models/matrix/cron_lock.py
"""
CronLockState model - singleton row acting as the cron mutex and resume cursor.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from models.base import Base

CRON_LOCK_ID = 1


class CronLockState(Base):
    __tablename__ = 'cron_lock_state'

    lockID = Column(Integer, primary_key=True, autoincrement=False, default=CRON_LOCK_ID)

    active = Column(Boolean, default=False, nullable=False)
    state = Column(String, default="idle", nullable=False)  # idle, running, stuck
    startedAt = Column(DateTime, nullable=True)
    lastRun = Column(DateTime, nullable=True)
    lastProcessedEntryID = Column(Integer, nullable=True)
    lastError = Column(Text, nullable=True)

    def __repr__(self):
        return f"<CronLockState(active={self.active}, state={self.state}, cursor={self.lastProcessedEntryID})>"
