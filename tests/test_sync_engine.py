"""
test_sync_engine.py - Tests for sync passes.

These tests verify the upload/download ordering, the per-item failure
policy, reentrancy, pending-count accuracy and convergence after retries.
"""

import asyncio
import logging

from aac_sync.events import SyncStatusChanged
from aac_sync.models import Phrase, SyncState, UsageLog, UsageEventType
from aac_sync.sync.engine import LOGS, PHRASES, SETTINGS, SyncTrigger

from conftest import GARBAGE, LOST, NETWORK


def _phrases(store, **filters):
    return store.query(Phrase, **filters)


class TestUploadAndDownload:
    """Tests for the basic phrase round trip."""

    def test_new_phrase_is_created_and_marked_synced(self, store, engine, backend):
        store.insert(Phrase(text="I need water"))

        report = asyncio.run(engine.sync_all())

        assert report.ran and not report.failed
        [phrase] = _phrases(store)
        assert phrase.server_id == "srv-1"
        assert phrase.sync_state is SyncState.SYNCED
        assert backend.phrases["srv-1"]["phrase_text"] == "I need water"
        assert report.count(PHRASES, "create") == 1
        assert report.pending_changes == 0
        assert engine.pending_changes == 0
        assert engine.last_sync_at is not None

    def test_server_phrase_is_downloaded(self, store, engine, backend):
        backend.add_phrase("Hello", server_id="srv-2")

        report = asyncio.run(engine.sync_all())

        [phrase] = _phrases(store)
        assert phrase.text == "Hello"
        assert phrase.server_id == "srv-2"
        assert phrase.sync_state is SyncState.SYNCED
        assert report.count(PHRASES, "download", "created") == 1

    def test_uploads_run_before_download(self, store, engine, backend):
        store.insert(Phrase(text="Yes"))

        asyncio.run(engine.sync_all())

        phrase_calls = [r for r in backend.requests if r[1].startswith("/api/phrases")]
        assert phrase_calls == [("POST", "/api/phrases"), ("GET", "/api/phrases")]

    def test_synced_phrase_refreshed_from_newer_server_copy(self, store, engine, backend):
        store.insert(Phrase(
            text="Old text", server_id="srv-7", sync_state=SyncState.SYNCED,
        ))
        backend.add_phrase("New text", server_id="srv-7", usage_count=4)

        report = asyncio.run(engine.sync_all())

        [phrase] = _phrases(store)
        assert phrase.text == "New text"
        assert phrase.usage_count == 4
        assert report.count(PHRASES, "download", "refreshed") == 1


class TestFailurePolicy:
    """Tests for per-item failures leaving entities pending."""

    def test_failed_update_keeps_local_edit(self, store, engine, backend, board):
        backend.add_phrase("Thank you", server_id="srv-1")
        asyncio.run(engine.sync_all())
        [phrase] = _phrases(store)
        board.edit(phrase, text="Thank you so much")
        backend.fail("PUT", "/api/phrases/srv-1", 500)

        report = asyncio.run(engine.sync_all())

        [phrase] = _phrases(store)
        assert phrase.text == "Thank you so much"
        assert phrase.sync_state is SyncState.PENDING_UPDATE
        assert report.count(PHRASES, "update", "failed") == 1
        assert not report.failed
        assert backend.phrases["srv-1"]["phrase_text"] == "Thank you"

    def test_failure_log_marks_client_errors_not_retryable(self, store, engine, backend, board, caplog):
        backend.add_phrase("Thank you", server_id="srv-1")
        asyncio.run(engine.sync_all())
        [phrase] = _phrases(store)
        board.edit(phrase, text="Thank you so much")
        backend.fail("PUT", "/api/phrases/srv-1", 422, times=1)
        backend.fail("POST", "/api/phrases", 503, times=1)
        store.insert(Phrase(text="Water"))

        with caplog.at_level(logging.WARNING, logger="aac_sync.sync"):
            asyncio.run(engine.sync_all())

        failures = {r.operation: r.retryable for r in caplog.records
                    if getattr(r, "event", None) == "sync_item_failed"}
        assert failures == {"update": False, "create": True}
        assert _phrases(store, sync_state=SyncState.PENDING_UPDATE)[0].text == "Thank you so much"

    def test_delete_retried_after_network_failure(self, store, engine, backend, board):
        backend.add_phrase("Bathroom", server_id="srv-1")
        asyncio.run(engine.sync_all())
        [phrase] = _phrases(store)
        assert board.delete(phrase) is False
        backend.fail("DELETE", "/api/phrases/srv-1", NETWORK, times=1)

        first = asyncio.run(engine.sync_all())

        [kept] = _phrases(store)
        assert kept.sync_state is SyncState.PENDING_DELETE
        assert store.visible_phrases() == []
        assert first.count(PHRASES, "delete", "failed") == 1

        second = asyncio.run(engine.sync_all())

        assert _phrases(store) == []
        assert "srv-1" not in backend.phrases
        assert second.count(PHRASES, "delete") == 1

    def test_delete_rejected_by_server_removes_locally(self, store, engine, backend, board):
        phrase = store.insert(Phrase(text="Gone", server_id="srv-9", sync_state=SyncState.SYNCED))
        board.delete(phrase)

        asyncio.run(engine.sync_all())

        # 404 from the server: the record is already gone remotely
        assert _phrases(store) == []

    def test_never_synced_pending_delete_removed_without_request(self, store, engine, backend):
        store.insert(Phrase(text="Draft", sync_state=SyncState.PENDING_DELETE))

        asyncio.run(engine.sync_all())

        assert _phrases(store) == []
        assert backend.count("DELETE") == 0

    def test_download_failure_does_not_fail_pass(self, store, engine, backend):
        backend.fail("GET", "/api/phrases", 503)

        report = asyncio.run(engine.sync_all())

        assert not report.failed
        assert report.count(PHRASES, "download", "failed") == 1

    def test_bad_server_record_does_not_block_download(self, store, engine, backend):
        backend.add_phrase("Good", server_id="srv-good")
        backend.add_phrase("Bad", server_id="srv-bad", updated_at="not-a-date")

        report = asyncio.run(engine.sync_all())

        assert not report.failed
        assert report.count(PHRASES, "download", "failed") == 0
        assert store.phrase_by_server_id("srv-good").text == "Good"
        assert store.phrase_by_server_id("srv-bad") is None

    def test_undecodable_response_quarantines_item(self, store, engine, backend):
        phrase = store.insert(Phrase(text="Call nurse"))
        backend.fail("POST", "/api/phrases", GARBAGE)

        asyncio.run(engine.sync_all())
        asyncio.run(engine.sync_all())

        assert engine.is_quarantined(PHRASES, phrase.id)
        assert backend.count("POST", "/api/phrases") == 1
        assert store.get(Phrase, phrase.id).sync_state is SyncState.PENDING_UPLOAD


class TestReentrancy:
    """Tests for the single-pass guard."""

    def test_concurrent_triggers_run_one_pass(self, store, engine, backend):
        store.insert(Phrase(text="Help"))

        async def both():
            return await asyncio.gather(
                engine.sync_all(SyncTrigger.MANUAL),
                engine.sync_all(SyncTrigger.RECONNECT),
            )

        reports = asyncio.run(both())

        skipped = [r for r in reports if not r.ran]
        assert len(skipped) == 1
        assert skipped[0].skipped_reason == "already_syncing"
        assert backend.count("POST", "/api/phrases") == 1
        assert len(backend.phrases) == 1
        assert not engine.is_syncing

    def test_offline_pass_is_skipped(self, store, engine, backend, reachability):
        reachability.update(False)
        store.insert(Phrase(text="Yes"))

        report = asyncio.run(engine.sync_all())

        assert report.skipped_reason == "offline"
        assert backend.requests == []


class TestPendingCount:
    """Tests for pending-change accounting at pass boundaries."""

    def test_pending_count_matches_store(self, store, engine, backend, recorder):
        store.insert(Phrase(text="One"))
        store.insert(Phrase(text="Two"))
        backend.fail("POST", "/api/phrases", NETWORK, times=1)

        report = asyncio.run(engine.sync_all())

        assert report.pending_changes == store.count_pending() == 1
        statuses = recorder.of_type(SyncStatusChanged)
        assert statuses[0].is_syncing is True
        assert statuses[-1].is_syncing is False
        assert statuses[-1].pending_changes == 1
        # Only pass boundaries are published
        assert len(statuses) == 2

    def test_refresh_pending_count_publishes(self, store, engine, recorder):
        store.insert(Phrase(text="Local"))

        assert engine.refresh_pending_count() == 1
        assert recorder.of_type(SyncStatusChanged)[-1].pending_changes == 1

    def test_converges_to_zero_after_failures_clear(self, store, engine, backend, board):
        for text in ("A", "B", "C"):
            store.insert(Phrase(text=text))
        board.log_event(UsageEventType.APP_OPENED)
        backend.fail("POST", "/api/phrases", 500, times=2)
        backend.fail("POST", "/api/analytics/log", NETWORK, times=1)

        first = asyncio.run(engine.sync_all())
        second = asyncio.run(engine.sync_all())

        assert first.pending_changes > 0
        assert second.pending_changes == 0
        assert len(backend.phrases) == 3
        assert {p.sync_state for p in _phrases(store)} == {SyncState.SYNCED}


class TestIdempotency:
    """Tests for retried creates and duplicate server references."""

    def test_lost_create_response_does_not_duplicate(self, store, engine, backend):
        phrase = store.insert(Phrase(text="Pain level 5"))
        backend.fail("POST", "/api/phrases", LOST, times=1)

        first = asyncio.run(engine.sync_all())
        second = asyncio.run(engine.sync_all())

        assert first.count(PHRASES, "create", "failed") == 1
        assert len(backend.phrases) == 1
        local = _phrases(store, server_id="srv-1")
        assert len(local) == 1
        assert local[0].sync_state is SyncState.SYNCED
        assert second.count(PHRASES, "download", "collapsed") == 1
        assert store.get(Phrase, phrase.id) is not None

    def test_delete_during_create_removes_server_copy(self, store, engine, backend, board):
        phrase = board.create("Temporary")

        def delete_in_flight():
            board.delete(store.get(Phrase, phrase.id))

        backend.hooks[("POST", "/api/phrases")] = delete_in_flight

        first = asyncio.run(engine.sync_all())
        del backend.hooks[("POST", "/api/phrases")]
        asyncio.run(engine.sync_all())

        assert not first.failed
        assert first.count(PHRASES, "delete") == 1
        assert backend.phrases == {}
        assert _phrases(store) == []
        assert store.count_pending() == 0

    def test_tombstone_survives_failed_server_delete(self, store, engine, backend, board):
        phrase = board.create("Temporary")

        def delete_in_flight():
            board.delete(store.get(Phrase, phrase.id))

        backend.hooks[("POST", "/api/phrases")] = delete_in_flight
        backend.fail("DELETE", "/api/phrases/srv-1", NETWORK, times=1)

        asyncio.run(engine.sync_all())

        [tombstone] = _phrases(store)
        assert tombstone.server_id == "srv-1"
        assert tombstone.sync_state is SyncState.PENDING_DELETE
        assert store.visible_phrases() == []

        del backend.hooks[("POST", "/api/phrases")]
        asyncio.run(engine.sync_all())

        assert backend.phrases == {}
        assert _phrases(store) == []

    def test_edit_during_create_is_uploaded_as_update(self, store, engine, backend, board):
        phrase = store.insert(Phrase(text="I need water"))

        def edit_in_flight():
            current = store.get(Phrase, phrase.id)
            board.edit(current, text="I need cold water")

        backend.hooks[("POST", "/api/phrases")] = edit_in_flight

        report = asyncio.run(engine.sync_all())

        current = store.get(Phrase, phrase.id)
        assert current.text == "I need cold water"
        assert current.server_id == "srv-1"
        assert current.sync_state is SyncState.SYNCED
        assert report.count(PHRASES, "update") == 1
        assert backend.phrases["srv-1"]["phrase_text"] == "I need cold water"


class TestSettingsAndLogs:
    """Tests for settings reconciliation and usage-log upload."""

    def test_local_settings_edit_is_uploaded(self, store, engine, backend, settings_service):
        settings_service.update(voice_speed=1.5, language="Spanish")

        report = asyncio.run(engine.sync_all())

        assert backend.settings["voiceSpeed"] == 1.5
        assert backend.settings["language"] == "Spanish"
        assert store.get_settings().sync_state is SyncState.SYNCED
        assert report.count(SETTINGS, "upload") == 1
        assert backend.count("GET", "/api/settings") == 0

    def test_server_settings_downloaded_over_defaults(self, store, engine, backend):
        backend.settings.update({"language": "French", "voiceSpeed": 0.8})

        report = asyncio.run(engine.sync_all())

        settings = store.get_settings()
        assert settings.language == "French"
        assert settings.voice_speed == 0.8
        assert settings.sync_state is SyncState.SYNCED
        assert report.count(SETTINGS, "download") == 1

    def test_out_of_range_server_voice_speed_is_rejected(self, store, engine, backend):
        backend.settings["voiceSpeed"] = 5.0

        report = asyncio.run(engine.sync_all())

        settings = store.get_settings()
        assert settings.voice_speed == 1.0
        assert not report.failed
        assert report.count(SETTINGS, "sync", "failed") == 1
        assert engine.is_quarantined(SETTINGS, settings.id)

    def test_unsupported_server_language_and_mode_are_ignored(self, store, engine, backend):
        backend.settings.update({"language": "Klingon", "responseMode": "warp", "voiceSpeed": 1.5})

        report = asyncio.run(engine.sync_all())

        settings = store.get_settings()
        assert settings.language == "English"
        assert settings.response_mode == "general"
        assert settings.voice_speed == 1.5
        assert report.count(SETTINGS, "download") == 1

    def test_pending_logs_uploaded_and_marked_synced(self, store, engine, backend, board):
        phrase = store.insert(Phrase(text="Yes"))
        board.record_spoken(phrase)

        report = asyncio.run(engine.sync_all())

        assert [e["eventType"] for e in backend.events] == ["phrase_spoken"]
        assert backend.events[0]["phraseUsed"] == "Yes"
        assert backend.events[0]["sessionId"] == "session-1"
        assert store.pending_logs() == []
        assert report.count(LOGS, "upload") == 1

    def test_log_batch_failure_keeps_logs_pending(self, store, engine, backend, board):
        board.log_event(UsageEventType.APP_OPENED)
        board.log_event(UsageEventType.APP_CLOSED)
        backend.fail("POST", "/api/analytics/log", 500, times=1)

        asyncio.run(engine.sync_all())

        assert len(store.pending_logs()) == 2


class TestAuthentication:
    """Tests for passes without a stored token."""

    def test_unauthenticated_pass_makes_no_requests(self, store, engine, backend, credentials, board):
        asyncio.run(credentials.clear())
        store.insert(Phrase(text="Yes"))
        store.append_log(UsageLog(UsageEventType.APP_OPENED))

        report = asyncio.run(engine.sync_all())

        assert report.ran and not report.failed
        assert report.unauthenticated == {PHRASES, SETTINGS, LOGS}
        assert backend.requests == []
        assert store.count_pending() == 3
