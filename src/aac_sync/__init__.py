"""
aac_sync - Offline-first sync client for an AAC phrase board.

Local phrases, settings and usage logs are the source of truth for the
user interface; a sync engine reconciles them with the remote backend
whenever connectivity allows. Remote instructions and peer-device
context feed the same phrase pipeline.
"""

from aac_sync.app import AACSyncApp
from aac_sync.config import ClientConfig
from aac_sync.errors import (
    AACSyncError,
    DecodingFailed,
    GatewayError,
    HttpError,
    MalformedInstruction,
    NetworkUnavailable,
    NotAuthenticated,
    PersistenceError,
    ValidationError,
)
from aac_sync.models import Phrase, SyncState, UsageLog, UserSettings
from aac_sync.store import EntityStore
from aac_sync.sync import SyncEngine, SyncScheduler, SyncTrigger

__version__ = "0.1.0"
__all__ = [
    "AACSyncApp",
    "ClientConfig",
    "EntityStore",
    "Phrase",
    "SyncEngine",
    "SyncScheduler",
    "SyncState",
    "SyncTrigger",
    "UsageLog",
    "UserSettings",
    # Errors
    "AACSyncError",
    "DecodingFailed",
    "GatewayError",
    "HttpError",
    "MalformedInstruction",
    "NetworkUnavailable",
    "NotAuthenticated",
    "PersistenceError",
    "ValidationError",
]
