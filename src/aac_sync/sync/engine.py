"""
engine.py - Offline-first sync engine.

The SyncEngine reconciles the local entity store with the remote backend.
A pass runs per entity type in a fixed order (phrases, settings, analytics)
and always uploads before it downloads:

1. pendingUpload  -> create on server, stamp server id, mark synced
2. pendingUpdate  -> update on server, mark synced
3. pendingDelete  -> delete on server, remove locally (kept on network failure)
4. download       -> materialize new records, refresh untouched synced ones

Remote failures never escape a pass; they leave the item pending for the
next pass. Only a failed store commit fails the pass as a whole.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from aac_sync.api.client import APIGateway
from aac_sync.api.dto import LogEventRequest, PhraseDTO, SettingsDTO, UpdatePhraseRequest
from aac_sync.config import RESPONSE_MODES, SUPPORTED_LANGUAGES, SYNCED_LOG_RETENTION_SECONDS
from aac_sync.errors import (
    DecodingFailed,
    GatewayError,
    HttpError,
    NetworkUnavailable,
    NotAuthenticated,
    PersistenceError,
)
from aac_sync.events import EventBus, SyncStatusChanged
from aac_sync.metrics import (
    SyncLogger,
    last_sync_timestamp,
    pending_changes,
    sync_pass_seconds,
)
from aac_sync.models import Phrase, SyncState, UsageLog, UserSettings, utcnow
from aac_sync.reachability import ReachabilityMonitor
from aac_sync.store import EntityStore

logger = logging.getLogger(__name__)

PHRASES = "phrase"
SETTINGS = "settings"
LOGS = "usage_log"


class SyncTrigger(Enum):
    RECONNECT = "reconnect"
    MANUAL = "manual"
    FOREGROUND = "foreground"
    BACKGROUND = "background"
    INSTRUCTION = "instruction"


@dataclass
class SyncReport:
    """Outcome of one sync_all() call."""
    trigger: SyncTrigger
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    skipped_reason: str | None = None
    failed: bool = False
    error: str | None = None
    pending_changes: int = 0
    counts: Counter = field(default_factory=Counter)
    unauthenticated: set[str] = field(default_factory=set)

    @property
    def ran(self) -> bool:
        return self.skipped_reason is None

    def count(self, entity: str, operation: str, status: str = "ok") -> int:
        return self.counts[f"{entity}.{operation}.{status}"]

    def _record(self, entity: str, operation: str, status: str, n: int = 1) -> None:
        self.counts[f"{entity}.{operation}.{status}"] += n


@dataclass(frozen=True)
class SyncStatus:
    """Pass-boundary snapshot read by observers."""
    is_syncing: bool
    pending_changes: int
    last_sync_at: datetime | None
    last_pass_failed: bool


class SyncEngine:
    """
    Drives sync passes between the EntityStore and the APIGateway.

    Non-reentrant: a trigger that arrives while a pass is running is
    dropped. The flag is checked and set without an intervening await, so
    the guard holds on a single event loop.
    """

    def __init__(
        self,
        store: EntityStore,
        api: APIGateway,
        reachability: ReachabilityMonitor,
        bus: EventBus,
        log_retention_seconds: float = SYNCED_LOG_RETENTION_SECONDS,
    ):
        self._store = store
        self._api = api
        self._reachability = reachability
        self._bus = bus
        self._log_retention = timedelta(seconds=log_retention_seconds)
        self._sync_log = SyncLogger()

        self._syncing = False
        self._pending_changes = 0
        self._last_sync_at: datetime | None = None
        self._last_pass_failed = False
        self._quarantine: set[tuple[str, str]] = set()

    # =========================================================================
    # Observable state
    # =========================================================================

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def pending_changes(self) -> int:
        return self._pending_changes

    @property
    def last_sync_at(self) -> datetime | None:
        return self._last_sync_at

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(
            is_syncing=self._syncing,
            pending_changes=self._pending_changes,
            last_sync_at=self._last_sync_at,
            last_pass_failed=self._last_pass_failed,
        )

    def is_quarantined(self, entity: str, entity_id: str) -> bool:
        return (entity, entity_id) in self._quarantine

    def refresh_pending_count(self) -> int:
        """Recount pending entities and publish; only call at a pass boundary."""
        self._pending_changes = self._store.count_pending()
        pending_changes.set(self._pending_changes)
        self._publish_status()
        return self._pending_changes

    # =========================================================================
    # Pass
    # =========================================================================

    async def sync_all(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncReport:
        """
        Run one full sync pass.

        Never raises; the returned report says whether the pass ran,
        was skipped, or failed on a store commit.
        """
        report = SyncReport(trigger=trigger)
        if self._syncing:
            report.skipped_reason = "already_syncing"
            self._sync_log.pass_skipped(trigger.value, report.skipped_reason)
            return report
        if not self._reachability.is_connected:
            report.skipped_reason = "offline"
            self._sync_log.pass_skipped(trigger.value, report.skipped_reason)
            return report

        self._syncing = True
        self._publish_status()
        self._sync_log.pass_started(trigger.value)
        start = time.perf_counter()
        try:
            await self._sync_phrases(report)
            await self._sync_settings(report)
            await self._sync_analytics(report)
            self._store.prune_synced_logs(utcnow() - self._log_retention)
        except PersistenceError as e:
            report.failed = True
            report.error = str(e)
            self._sync_log.pass_failed(trigger.value, report.error)
        except Exception as e:
            logger.exception(f"Unexpected error during sync pass: {e}")
            report.failed = True
            report.error = f"{type(e).__name__}: {e}"
            self._sync_log.pass_failed(trigger.value, report.error)
        finally:
            duration = time.perf_counter() - start
            sync_pass_seconds.observe(duration)
            self._finish_pass(report, duration)
        return report

    def _finish_pass(self, report: SyncReport, duration: float) -> None:
        report.finished_at = utcnow()
        self._last_pass_failed = report.failed
        if not report.failed:
            self._last_sync_at = report.finished_at
            last_sync_timestamp.set(report.finished_at.timestamp())
        try:
            self._pending_changes = self._store.count_pending()
        except PersistenceError as e:
            logger.error(f"Cannot recount pending changes: {e}")
        pending_changes.set(self._pending_changes)
        report.pending_changes = self._pending_changes
        self._syncing = False
        if not report.failed:
            self._sync_log.pass_completed(
                report.trigger.value, dict(report.counts), self._pending_changes, duration * 1000
            )
        self._publish_status()

    def _publish_status(self) -> None:
        self._bus.publish(SyncStatusChanged(
            is_syncing=self._syncing,
            pending_changes=self._pending_changes,
            last_sync_at=self._last_sync_at,
            failed=self._last_pass_failed,
        ))

    # =========================================================================
    # Phrases
    # =========================================================================

    async def _sync_phrases(self, report: SyncReport) -> None:
        try:
            await self._upload_new_phrases(report)
            await self._upload_phrase_updates(report)
            await self._upload_phrase_deletes(report)
            await self._download_phrases(report)
        except NotAuthenticated as e:
            self._skip_unauthenticated(report, PHRASES, e)

    async def _upload_new_phrases(self, report: SyncReport) -> None:
        created: list[tuple[Phrase, PhraseDTO]] = []
        for phrase in self._store.query(Phrase, sync_state=SyncState.PENDING_UPLOAD):
            if self.is_quarantined(PHRASES, phrase.id):
                continue
            try:
                dto = await self._api.create_phrase(
                    phrase.text, phrase.category, idempotency_key=phrase.id
                )
            except NotAuthenticated:
                raise
            except GatewayError as e:
                self._item_failed(report, PHRASES, "create", phrase.id, e)
                continue
            created.append((phrase, dto))

        with self._store.transaction():
            for sent, dto in created:
                current = self._store.get(Phrase, sent.id)
                if current is None:
                    # Deleted locally while the create was in flight; the server copy must go too
                    sent.server_id = dto.id
                    sent.sync_state = SyncState.PENDING_DELETE
                    sent.updated_at = utcnow()
                    self._store.insert(sent)
                    logger.info(f"Phrase {sent.id} deleted during create; deleting server copy {dto.id}")
                    self._item_ok(report, PHRASES, "create")
                    continue
                current.server_id = dto.id
                # An edit made while the create was in flight still needs uploading
                if current.sync_state is SyncState.PENDING_UPLOAD:
                    edited = current.updated_at != sent.updated_at
                    current.sync_state = SyncState.PENDING_UPDATE if edited else SyncState.SYNCED
                self._store.update(current)
                self._item_ok(report, PHRASES, "create")

    async def _upload_phrase_updates(self, report: SyncReport) -> None:
        updated: list[Phrase] = []
        for phrase in self._store.query(Phrase, sync_state=SyncState.PENDING_UPDATE):
            if phrase.server_id is None:
                logger.warning(f"Phrase {phrase.id} is pendingUpdate without a server id; skipping")
                report._record(PHRASES, "update", "anomaly")
                continue
            if self.is_quarantined(PHRASES, phrase.id):
                continue
            try:
                await self._api.update_phrase(phrase.server_id, UpdatePhraseRequest(
                    phrase_text=phrase.text,
                    category=phrase.category,
                    usage_count=phrase.usage_count,
                    is_favorite=phrase.is_favorite,
                ))
            except NotAuthenticated:
                raise
            except GatewayError as e:
                self._item_failed(report, PHRASES, "update", phrase.id, e)
                continue
            updated.append(phrase)

        with self._store.transaction():
            for sent in updated:
                current = self._store.get(Phrase, sent.id)
                if (
                    current is None
                    or current.sync_state is not SyncState.PENDING_UPDATE
                    or current.updated_at != sent.updated_at
                ):
                    continue
                current.sync_state = SyncState.SYNCED
                self._store.update(current)
                self._item_ok(report, PHRASES, "update")

    async def _upload_phrase_deletes(self, report: SyncReport) -> None:
        removable: list[Phrase] = []
        for phrase in self._store.query(Phrase, sync_state=SyncState.PENDING_DELETE):
            if phrase.server_id is None:
                removable.append(phrase)
                continue
            try:
                await self._api.delete_phrase(phrase.server_id)
            except NotAuthenticated:
                raise
            except NetworkUnavailable as e:
                self._item_failed(report, PHRASES, "delete", phrase.id, e)
                continue
            except GatewayError as e:
                # The server answered: acknowledged or permanently rejected
                logger.info(f"Remote delete of phrase {phrase.id} rejected ({e}); removing locally")
            removable.append(phrase)

        with self._store.transaction():
            for phrase in removable:
                current = self._store.get(Phrase, phrase.id)
                if current is not None and current.sync_state is SyncState.PENDING_DELETE:
                    self._store.remove(current)
                    self._item_ok(report, PHRASES, "delete")

    async def _download_phrases(self, report: SyncReport) -> None:
        try:
            remote = await self._api.get_phrases()
        except NotAuthenticated:
            raise
        except GatewayError as e:
            self._item_failed(report, PHRASES, "download", "*", e)
            return

        with self._store.transaction():
            by_server_id: dict[str, list[Phrase]] = {}
            for phrase in self._store.query(Phrase):
                if phrase.server_id is not None:
                    by_server_id.setdefault(phrase.server_id, []).append(phrase)

            for dto in remote:
                local = by_server_id.get(dto.id)
                if not local:
                    phrase = _phrase_from_dto(dto)
                    self._store.insert(phrase)
                    by_server_id[dto.id] = [phrase]
                    report._record(PHRASES, "download", "created")
                    continue

                keeper = self._collapse_duplicates(local, report)
                by_server_id[dto.id] = [keeper]
                if keeper.sync_state is SyncState.SYNCED and _aware(dto.updated_at) > keeper.updated_at:
                    _apply_phrase_dto(keeper, dto)
                    self._store.update(keeper)
                    report._record(PHRASES, "download", "refreshed")

    def _collapse_duplicates(self, local: list[Phrase], report: SyncReport) -> Phrase:
        """Keep one local entity per server id; pending copies win over synced ones."""
        if len(local) == 1:
            return local[0]
        pending = [p for p in local if p.sync_state.is_pending]
        keeper = pending[0] if pending else local[0]
        for phrase in local:
            if phrase is not keeper and phrase.sync_state is SyncState.SYNCED:
                self._store.remove(phrase)
                report._record(PHRASES, "download", "collapsed")
        return keeper

    # =========================================================================
    # Settings
    # =========================================================================

    async def _sync_settings(self, report: SyncReport) -> None:
        settings = self._store.get_or_create_settings()
        if self.is_quarantined(SETTINGS, settings.id):
            return
        try:
            if settings.has_local_edits:
                await self._api.update_settings(_settings_to_dto(settings))
                current = self._store.get(UserSettings, settings.id)
                if current is not None and current.updated_at == settings.updated_at:
                    current.sync_state = SyncState.SYNCED
                    self._store.update(current)
                self._item_ok(report, SETTINGS, "upload")
            else:
                remote = await self._api.get_settings()
                current = self._store.get(UserSettings, settings.id)
                # Re-checked after the await: a local edit beats the download
                if current is not None and not current.has_local_edits:
                    apply_settings_dto(current, remote)
                    self._store.update(current)
                self._item_ok(report, SETTINGS, "download")
        except NotAuthenticated as e:
            self._skip_unauthenticated(report, SETTINGS, e)
        except GatewayError as e:
            self._item_failed(report, SETTINGS, "sync", settings.id, e)

    # =========================================================================
    # Analytics
    # =========================================================================

    async def _sync_analytics(self, report: SyncReport) -> None:
        logs = [
            log for log in self._store.pending_logs()
            if not self.is_quarantined(LOGS, log.id)
        ]
        if not logs:
            return
        try:
            await self._api.log_events([_log_to_request(log) for log in logs])
        except NotAuthenticated as e:
            self._skip_unauthenticated(report, LOGS, e)
            return
        except GatewayError as e:
            self._item_failed(report, LOGS, "upload", f"batch of {len(logs)}", e)
            if isinstance(e, DecodingFailed):
                for log in logs:
                    self._quarantine.add((LOGS, log.id))
            return
        self._store.mark_logs_synced(logs)
        report._record(LOGS, "upload", "ok", len(logs))
        self._sync_log.item_succeeded(LOGS, "upload")

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _item_ok(self, report: SyncReport, entity: str, operation: str) -> None:
        report._record(entity, operation, "ok")
        self._sync_log.item_succeeded(entity, operation)

    def _item_failed(
        self, report: SyncReport, entity: str, operation: str, entity_id: str, error: GatewayError
    ) -> None:
        report._record(entity, operation, "failed")
        self._sync_log.item_failed(entity, operation, entity_id, error, retryable=_retryable(error))
        if isinstance(error, DecodingFailed) and entity_id != "*":
            self._quarantine.add((entity, entity_id))

    def _skip_unauthenticated(self, report: SyncReport, entity: str, error: NotAuthenticated) -> None:
        report.unauthenticated.add(entity)
        logger.warning(f"Skipping {entity} sync: {error}")


# =============================================================================
# DTO mapping
# =============================================================================

def _retryable(error: GatewayError) -> bool:
    if isinstance(error, HttpError):
        return error.is_retryable
    return isinstance(error, NetworkUnavailable)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _phrase_from_dto(dto: PhraseDTO) -> Phrase:
    return Phrase(
        text=dto.phrase_text,
        category=dto.category,
        usage_count=dto.usage_count,
        is_favorite=dto.is_favorite,
        sync_state=SyncState.SYNCED,
        server_id=dto.id,
        created_at=_aware(dto.created_at),
        updated_at=_aware(dto.updated_at),
    )


def _apply_phrase_dto(phrase: Phrase, dto: PhraseDTO) -> None:
    phrase.text = dto.phrase_text
    phrase.category = dto.category
    phrase.usage_count = dto.usage_count
    phrase.is_favorite = dto.is_favorite
    phrase.updated_at = _aware(dto.updated_at)
    phrase.sync_state = SyncState.SYNCED


def _settings_to_dto(settings: UserSettings) -> SettingsDTO:
    return SettingsDTO(
        language=settings.language,
        voice_speed=settings.voice_speed,
        ai_enabled=settings.ai_enabled,
        response_mode=settings.response_mode,
    )


def apply_settings_dto(settings: UserSettings, dto: SettingsDTO) -> None:
    """
    Overwrite local settings with the server copy.

    Absent fields are kept, and so are values the client does not support;
    voice speed bounds are already enforced when the DTO is decoded.
    """
    if dto.language is not None:
        if dto.language in SUPPORTED_LANGUAGES:
            settings.language = dto.language
        else:
            logger.warning(f"Ignoring unsupported server language {dto.language!r}")
    if dto.voice_speed is not None:
        settings.voice_speed = dto.voice_speed
    if dto.ai_enabled is not None:
        settings.ai_enabled = dto.ai_enabled
    if dto.response_mode is not None:
        if dto.response_mode in RESPONSE_MODES:
            settings.response_mode = dto.response_mode
        else:
            logger.warning(f"Ignoring unsupported server response mode {dto.response_mode!r}")
    settings.sync_state = SyncState.SYNCED
    settings.updated_at = utcnow()


def _log_to_request(log: UsageLog) -> LogEventRequest:
    return LogEventRequest(
        event_type=log.event_type.value,
        event_data=log.event_data,
        phrase_used=log.phrase_used,
        session_id=log.session_id,
    )
