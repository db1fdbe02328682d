# models/__init__.py
"""
Database models for the matrix platform.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.user import User
from models.bonus import Bonus
from models.notification import Notification

# Matrix models
from models.matrix.level_config import MatrixLevelConfig
from models.matrix.position import MatrixPosition
from models.matrix.queue_entry import QueueEntry
from models.matrix.cron_lock import CronLockState, CRON_LOCK_ID

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'User',
    'Bonus',
    'Notification',

    # Matrix
    'MatrixLevelConfig',
    'MatrixPosition',
    'QueueEntry',
    'CronLockState',
    'CRON_LOCK_ID',
]
