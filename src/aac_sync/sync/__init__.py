"""
sync/__init__.py - Sync engine and its triggers.
"""

from aac_sync.sync.engine import SyncEngine, SyncReport, SyncStatus, SyncTrigger
from aac_sync.sync.scheduler import SyncScheduler

__all__ = [
    "SyncEngine",
    "SyncReport",
    "SyncScheduler",
    "SyncStatus",
    "SyncTrigger",
]
