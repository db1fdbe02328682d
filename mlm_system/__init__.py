# mlm_system/__init__.py
"""
Matrix engine - forced-matrix placement, cycling and commission cascade.
"""

# Services
from mlm_system.services.queue_service import QueueService
from mlm_system.services.level_service import LevelService
from mlm_system.services.sponsor_service import SponsorService
from mlm_system.services.ledger_service import Ledger, DatabaseLedger
from mlm_system.services.placement_service import PlacementService, frontierCache
from mlm_system.services.cycle_service import CycleService
from mlm_system.services.commission_service import CommissionService
from mlm_system.services.cron_service import CronService, CronScheduler
from mlm_system.services.admin_service import AdminService

# Configuration
from mlm_system.config.matrix import PositionStatus, EntryType, CommissionKind, CronState

# Utilities
from mlm_system.utils.time_machine import timeMachine

# Events
from mlm_system.events.event_bus import eventBus, MatrixEvents
from mlm_system.events.notifications import MatrixNotifier

__all__ = [
    # Services
    'QueueService',
    'LevelService',
    'SponsorService',
    'Ledger',
    'DatabaseLedger',
    'PlacementService',
    'frontierCache',
    'CycleService',
    'CommissionService',
    'CronService',
    'CronScheduler',
    'AdminService',

    # Config
    'PositionStatus',
    'EntryType',
    'CommissionKind',
    'CronState',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'MatrixEvents',
    'MatrixNotifier',
]
