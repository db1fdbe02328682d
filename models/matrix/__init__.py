# models/matrix/__init__.py
"""
Matrix engine tables.
"""

from models.matrix.level_config import MatrixLevelConfig
from models.matrix.position import MatrixPosition
from models.matrix.queue_entry import QueueEntry
from models.matrix.cron_lock import CronLockState, CRON_LOCK_ID

__all__ = [
    'MatrixLevelConfig',
    'MatrixPosition',
    'QueueEntry',
    'CronLockState',
    'CRON_LOCK_ID',
]
