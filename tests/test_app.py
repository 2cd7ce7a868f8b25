"""
test_app.py - Tests for the application container lifecycle and user actions.
"""

import asyncio
import io
import os

import httpx
import pytest
from rich.console import Console

from aac_sync.api import MemoryCredentialStore
from aac_sync.app import AACSyncApp
from aac_sync.config import DEFAULT_PHRASES, FALLBACK_GENERATED_PHRASES, ClientConfig
from aac_sync.generation import StaticPhraseGenerator
from aac_sync.models import Phrase, UsageEventType, UsageLog
from aac_sync.speech import ConsoleSpeechOutput
from aac_sync.store import EntityStore

from conftest import BASE_URL, TOKEN


@pytest.fixture
def make_app(temp_dir, backend):
    def build():
        config = ClientConfig(api_url=BASE_URL, db_path=os.path.join(temp_dir, "app.db"))
        return AACSyncApp(
            config,
            credentials=MemoryCredentialStore({"auth_token": TOKEN}),
            transport=httpx.MockTransport(backend.handle),
            speech=ConsoleSpeechOutput(Console(file=io.StringIO())),
            generator=StaticPhraseGenerator(),
            probe_reachability=False,
        )
    return build


def _event_types(db_path):
    with EntityStore(db_path) as store:
        return [log.event_type for log in store.query(UsageLog)]


class TestLifecycle:

    def test_start_and_stop_log_app_events(self, make_app):
        app = make_app()

        async def scenario():
            async with app:
                return [p.text for p in app.store.visible_phrases()]

        texts = asyncio.run(scenario())

        assert set(texts) == set(DEFAULT_PHRASES)
        types = _event_types(app.config.db_path)
        assert types[0] is UsageEventType.APP_OPENED
        assert types[-1] is UsageEventType.APP_CLOSED

    def test_offline_start_leaves_changes_pending(self, make_app, backend):
        app = make_app()

        async def scenario():
            await app.start(background=False)
            report = await app.scheduler.sync_now()
            pending = app.engine.status.pending_changes
            await app.stop()
            return report, pending

        report, pending = asyncio.run(scenario())

        assert report.skipped_reason == "offline"
        assert pending == len(DEFAULT_PHRASES) + 1
        assert backend.requests == []

    def test_sync_after_reconnect(self, make_app, backend):
        app = make_app()

        async def scenario():
            await app.start(background=False)
            app.reachability.update(True)
            report = await app.scheduler.sync_now()
            await app.stop()
            return report

        report = asyncio.run(scenario())

        assert not report.failed
        assert len(backend.phrases) == len(DEFAULT_PHRASES)


class TestUserActions:

    def test_speak_phrase_counts_usage(self, make_app):
        app = make_app()

        async def scenario():
            await app.start(background=False)
            phrase = app.store.visible_phrases()[0]
            await app.speak_phrase(phrase)
            loaded = app.store.get(Phrase, phrase.id)
            await app.stop()
            return phrase.text, loaded

        text, loaded = asyncio.run(scenario())

        assert loaded.usage_count == 1
        assert app.speech.spoken == [text]

    def test_custom_text_offers_follow_ups_when_online(self, make_app):
        app = make_app()

        async def scenario():
            await app.start(background=False)
            app.reachability.update(True)
            await app.speak_custom_text("Where is the station?")
            texts = {p.text for p in app.store.visible_phrases()}
            await app.stop()
            return texts

        assert asyncio.run(scenario()) == set(FALLBACK_GENERATED_PHRASES)
        [prompt] = app.generator.scenarios
        assert "Where is the station?" in prompt

    def test_custom_text_offline_keeps_board(self, make_app):
        app = make_app()

        async def scenario():
            await app.start(background=False)
            await app.speak_custom_text("Hello there")
            texts = {p.text for p in app.store.visible_phrases()}
            await app.stop()
            return texts

        assert asyncio.run(scenario()) == set(DEFAULT_PHRASES)
        assert UsageEventType.CUSTOM_TEXT_SPOKEN in _event_types(app.config.db_path)
