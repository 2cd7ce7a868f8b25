"""
board.py - Phrase board and settings mutations.

These are the user-facing edits that drive sync-state transitions:
creating, editing, favoriting, speaking and deleting phrases, and
changing settings. Every mutation persists through the EntityStore and
stamps the right SyncState so the SyncEngine picks it up.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime

from aac_sync.config import (
    DEFAULT_PHRASES,
    MAX_CONTEXT_PHRASES,
    MAX_VOICE_SPEED,
    MIN_VOICE_SPEED,
    RESPONSE_MODES,
    SUPPORTED_LANGUAGES,
)
from aac_sync.errors import ValidationError
from aac_sync.events import EventBus, PhrasesChanged
from aac_sync.models import (
    Phrase,
    SyncState,
    UsageEventType,
    UsageLog,
    UserSettings,
    utcnow,
)
from aac_sync.store import EntityStore
from aac_sync.utils.uuid7 import new_session_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Groups the usage logs of one continuous app session."""
    id: str = field(default_factory=new_session_id)
    started_at: datetime = field(default_factory=utcnow)


class PhraseBoard:
    """
    Phrase mutations on behalf of the user or a remote instruction.

    Usage:
        board = PhraseBoard(store, bus, Session())
        phrases = board.load()
        board.record_spoken(phrases[0])
    """

    def __init__(self, store: EntityStore, bus: EventBus, session: Session | None = None):
        self._store = store
        self._bus = bus
        self.session = session or Session()

    def load(self) -> list[Phrase]:
        """Visible phrases, most used first; seeds the defaults on an empty board."""
        phrases = self._store.visible_phrases()
        if phrases:
            return phrases
        with self._store.transaction():
            for text in DEFAULT_PHRASES:
                self._store.insert(Phrase(text=text))
        logger.info(f"Seeded {len(DEFAULT_PHRASES)} default phrases")
        return self._store.visible_phrases()

    def create(self, text: str, category: str | None = None) -> Phrase:
        phrase = Phrase(text=_clean_text(text), category=category)
        self._store.insert(phrase)
        self._changed()
        return phrase

    def edit(self, phrase: Phrase, text: str | None = None, category: str | None = None) -> Phrase:
        if text is not None:
            phrase.text = _clean_text(text)
        if category is not None:
            phrase.category = category
        phrase.mark_modified()
        self._store.update(phrase)
        self._changed()
        return phrase

    def toggle_favorite(self, phrase: Phrase) -> Phrase:
        phrase.is_favorite = not phrase.is_favorite
        phrase.mark_modified()
        self._store.update(phrase)
        self._changed()
        return phrase

    def record_spoken(self, phrase: Phrase) -> Phrase:
        """Count one utterance and log it."""
        phrase.usage_count += 1
        phrase.mark_modified()
        with self._store.transaction():
            self._store.update(phrase)
            self._store.append_log(UsageLog.phrase_spoken(phrase.text, self.session.id))
        return phrase

    def record_custom_text(self, text: str) -> UsageLog:
        return self._store.append_log(UsageLog.custom_text_spoken(_clean_text(text), self.session.id))

    def delete(self, phrase: Phrase) -> bool:
        """
        Delete a phrase.

        Returns:
            True if removed at once, False if kept as pendingDelete
        """
        removed = self._store.delete(phrase)
        self._changed()
        return removed

    def replace_with(self, texts: list[str] | tuple[str, ...], source: str) -> list[Phrase]:
        """
        Swap the board for a new phrase set.

        Every non-favorite phrase is marked pendingDelete; at most
        MAX_CONTEXT_PHRASES new phrases are inserted as pendingUpload.
        Favorites always survive.
        """
        texts = [t.strip() for t in texts if t and t.strip()][:MAX_CONTEXT_PHRASES]
        now = utcnow()
        created: list[Phrase] = []
        with self._store.transaction():
            for phrase in self._store.query(
                Phrase, is_favorite=False, exclude_state=SyncState.PENDING_DELETE
            ):
                phrase.sync_state = SyncState.PENDING_DELETE
                phrase.updated_at = now
                self._store.update(phrase)
            for text in texts:
                created.append(self._store.insert(Phrase(text=text)))
        logger.info(f"Replaced board with {len(created)} phrases from {source}")
        self._bus.publish(PhrasesChanged(source=source, phrases=tuple(texts)))
        return created

    def log_event(self, event_type: UsageEventType, event_data: str | None = None) -> UsageLog:
        return self._store.append_log(
            UsageLog(event_type, event_data=event_data, session_id=self.session.id)
        )

    def _changed(self) -> None:
        self._bus.publish(PhrasesChanged(source="board"))


class SettingsService:
    """Reads and edits the settings singleton."""

    def __init__(self, store: EntityStore, board: PhraseBoard):
        self._store = store
        self._board = board

    def get(self) -> UserSettings:
        return self._store.get_or_create_settings()

    def update(
        self,
        language: str | None = None,
        voice_speed: float | None = None,
        ai_enabled: bool | None = None,
        response_mode: str | None = None,
    ) -> UserSettings:
        """
        Apply a local settings edit.

        Raises:
            ValidationError: unknown language or response mode, or a voice
                speed outside [MIN_VOICE_SPEED, MAX_VOICE_SPEED]
        """
        changes = {}
        if language is not None:
            if language not in SUPPORTED_LANGUAGES:
                raise ValidationError("Unsupported language", field="language", value=language)
            changes["language"] = language
        if voice_speed is not None:
            if not MIN_VOICE_SPEED <= voice_speed <= MAX_VOICE_SPEED:
                raise ValidationError(
                    f"Voice speed must be between {MIN_VOICE_SPEED} and {MAX_VOICE_SPEED}",
                    field="voice_speed",
                    value=voice_speed,
                )
            changes["voice_speed"] = voice_speed
        if ai_enabled is not None:
            changes["ai_enabled"] = ai_enabled
        if response_mode is not None:
            if response_mode not in RESPONSE_MODES:
                raise ValidationError(
                    "Unknown response mode", field="response_mode", value=response_mode
                )
            changes["response_mode"] = response_mode

        with self._store.transaction():
            settings = self.get()
            if not changes:
                return settings
            for name, value in changes.items():
                setattr(settings, name, value)
            settings.mark_modified()
            self._store.update(settings)
            self._board.log_event(UsageEventType.SETTINGS_CHANGED, json.dumps(changes, sort_keys=True))
        return settings


def _clean_text(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValidationError("Phrase text must not be empty", field="text")
    return cleaned
