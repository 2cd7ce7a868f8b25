"""
models.py - Local entity types and sync-state.

Phrase, UserSettings and UsageLog are persisted by the entity store.
Each carries a SyncState tag describing its relationship to the server copy.
ReceivedContext is ephemeral and never persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from aac_sync.config import (
    DEFAULT_LANGUAGE,
    DEFAULT_RESPONSE_MODE,
    SUPPORTED_LANGUAGES,
)
from aac_sync.utils.uuid7 import new_local_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncState(Enum):
    """Synchronization state of a local entity with the server."""
    SYNCED = "synced"
    PENDING_UPLOAD = "pendingUpload"    # created locally, never sent
    PENDING_UPDATE = "pendingUpdate"    # modified locally after a prior sync
    PENDING_DELETE = "pendingDelete"    # deleted locally, awaiting server deletion

    @property
    def is_pending(self) -> bool:
        return self is not SyncState.SYNCED

    @classmethod
    def parse(cls, raw: str | None) -> "SyncState":
        """Unknown or missing tags read back as pendingUpload."""
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING_UPLOAD


class UsageEventType(Enum):
    PHRASE_SPOKEN = "phrase_spoken"
    CUSTOM_TEXT_SPOKEN = "custom_text_spoken"
    CONTEXT_PACK_GENERATED = "context_pack_generated"
    SETTINGS_CHANGED = "settings_changed"
    APP_OPENED = "app_opened"
    APP_CLOSED = "app_closed"
    SYNC_COMPLETED = "sync_completed"
    ERROR_OCCURRED = "error_occurred"


@dataclass
class Phrase:
    """
    A board phrase.

    server_id is present iff the phrase has been synced at least once.
    """
    text: str
    category: str | None = None
    usage_count: int = 0
    is_favorite: bool = False
    sync_state: SyncState = SyncState.PENDING_UPLOAD
    server_id: str | None = None
    id: str = field(default_factory=new_local_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def mark_modified(self) -> None:
        """Stamp a local edit; a synced phrase becomes pendingUpdate."""
        self.updated_at = utcnow()
        if self.sync_state is SyncState.SYNCED:
            self.sync_state = SyncState.PENDING_UPDATE


@dataclass
class UserSettings:
    """Per-device settings singleton."""
    language: str = DEFAULT_LANGUAGE
    voice_speed: float = 1.0
    ai_enabled: bool = True
    response_mode: str = DEFAULT_RESPONSE_MODE
    sync_state: SyncState = SyncState.PENDING_UPLOAD
    id: str = field(default_factory=new_local_id)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def language_code(self) -> str:
        return SUPPORTED_LANGUAGES.get(self.language, "en-US")

    @property
    def has_local_edits(self) -> bool:
        # Lazily-created defaults are pendingUpload but carry no user intent
        return self.sync_state is SyncState.PENDING_UPDATE

    def mark_modified(self) -> None:
        self.updated_at = utcnow()
        if self.sync_state in (SyncState.SYNCED, SyncState.PENDING_UPLOAD):
            self.sync_state = SyncState.PENDING_UPDATE


@dataclass
class UsageLog:
    """Append-only analytics event."""
    event_type: UsageEventType
    event_data: str | None = None
    phrase_used: str | None = None
    session_id: str | None = None
    sync_state: SyncState = SyncState.PENDING_UPLOAD
    id: str = field(default_factory=new_local_id)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def phrase_spoken(cls, phrase: str, session_id: str | None) -> "UsageLog":
        return cls(UsageEventType.PHRASE_SPOKEN, phrase_used=phrase, session_id=session_id)

    @classmethod
    def custom_text_spoken(cls, text: str, session_id: str | None) -> "UsageLog":
        return cls(UsageEventType.CUSTOM_TEXT_SPOKEN, phrase_used=text, session_id=session_id)

    @classmethod
    def error(cls, message: str, session_id: str | None) -> "UsageLog":
        return cls(UsageEventType.ERROR_OCCURRED, event_data=message, session_id=session_id)


@dataclass(frozen=True)
class ReceivedContext:
    """Environment classification pushed by a peer device."""
    environment_type: str
    confidence: float
    source: str
    place_name: str | None = None
    scene_description: str | None = None
    received_at: datetime = field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return _ENVIRONMENT_NAMES.get(self.environment_type, "General")


_ENVIRONMENT_NAMES = {
    "hospital": "Hospital",
    "clinic": "Clinic",
    "pharmacy": "Pharmacy",
    "restaurant": "Restaurant",
    "cafe": "Cafe",
    "grocery": "Grocery",
    "retail": "Shopping",
    "bank": "Bank",
    "public_transport": "Transit",
    "publicTransport": "Transit",
    "airport": "Airport",
    "school": "School",
    "office": "Office",
    "home": "Home",
    "outdoors": "Outdoors",
    "gym": "Gym",
    "emergency": "Emergency",
}
