"""
test_dispatcher.py - Tests for remote instruction parsing and dispatch.

These tests verify that every instruction shape decodes to the right type,
that malformed instructions are discarded and audited, that ids are
applied at most once, and that emergency mode works without a network.
"""

import asyncio
import io

import pytest
from rich.console import Console

from aac_sync.config import EMERGENCY_PHRASES, FALLBACK_GENERATED_PHRASES
from aac_sync.errors import MalformedInstruction
from aac_sync.events import EmergencyActivated, InstructionHandled, PhrasesChanged, SpeakRequested
from aac_sync.generation import StaticPhraseGenerator
from aac_sync.instructions.dispatcher import DISCARDED, DUPLICATE, PROCESSED, InstructionDispatcher
from aac_sync.instructions.models import (
    Emergency,
    LoadContextPack,
    SpeakMessage,
    SyncPhrases,
    UpdatePhrases,
    parse_instruction,
)
from aac_sync.models import Phrase, SyncState, UsageEventType
from aac_sync.speech import ConsoleSpeechOutput

from conftest import NETWORK


class TestParseInstruction:
    """Tests for decoding raw payloads."""

    def test_push_shape(self):
        instruction = parse_instruction({
            "aps": {"content-available": 1},
            "data": {"type": "speak_message", "payload": {"message": "Hello"}, "id": "ins-1",
                     "sender": "caregiver"},
        })

        assert isinstance(instruction, SpeakMessage)
        assert instruction.message == "Hello"
        assert instruction.instruction_id == "ins-1"
        assert instruction.sender == "caregiver"

    def test_server_shape_with_alias(self):
        instruction = parse_instruction({
            "id": "ins-2",
            "type": "context_pack",
            "data": {"scenario": "restaurant"},
            "created_at": "2024-01-15T10:30:00Z",
        })

        assert isinstance(instruction, LoadContextPack)
        assert instruction.scenario == "restaurant"
        assert instruction.timestamp.year == 2024

    def test_flat_shape_and_aliases(self):
        assert isinstance(parse_instruction({"type": "sync"}), SyncPhrases)
        phrases = parse_instruction({"type": "phrases", "payload": {"phrases": ["A", " B "]}})
        assert isinstance(phrases, UpdatePhrases)
        assert phrases.phrases == ("A", "B")

    @pytest.mark.parametrize("raw", [
        "emergency",
        {},
        {"type": ""},
        {"type": "dance"},
        {"type": "speak_message", "payload": {}},
        {"type": "load_context_pack", "payload": {"scenario": "  "}},
        {"type": "update_phrases", "payload": {"phrases": "A, B"}},
        {"type": "emergency", "payload": ["not", "a", "map"]},
    ])
    def test_malformed_payloads(self, raw):
        with pytest.raises(MalformedInstruction):
            parse_instruction(raw)


class TestInstructionDispatcher:
    """Tests for instruction effects."""

    @pytest.fixture(autouse=True)
    def setup(self, store, board, engine, gateway, bus, backend, recorder, reachability):
        self.store = store
        self.board = board
        self.backend = backend
        self.recorder = recorder
        self.reachability = reachability
        self.generator = StaticPhraseGenerator()
        self.speech = ConsoleSpeechOutput(Console(file=io.StringIO()))
        self.dispatcher = InstructionDispatcher(
            store, board, engine, gateway, self.generator, self.speech, bus
        )

    def handle(self, raw, source="push"):
        return asyncio.run(self.dispatcher.handle(raw, source=source))

    def test_emergency_works_offline(self):
        self.reachability.update(False)
        self.board.load()
        favorite = self.store.insert(Phrase(
            text="Call Mom", is_favorite=True, server_id="srv-1", sync_state=SyncState.SYNCED,
        ))

        outcome = self.handle({"aps": {}, "data": {"type": "emergency", "id": "ins-e"}})

        assert outcome == PROCESSED
        uploads = self.store.query(Phrase, sync_state=SyncState.PENDING_UPLOAD)
        assert sorted(p.text for p in uploads) == sorted(EMERGENCY_PHRASES)
        assert len(self.store.query(Phrase, sync_state=SyncState.PENDING_DELETE)) == 8
        assert self.store.get(Phrase, favorite.id).sync_state is SyncState.SYNCED
        assert self.speech.spoken == ["Help me!"]
        assert self.recorder.of_type(EmergencyActivated)[0].first_phrase == "Help me!"
        assert self.backend.requests == []

    def test_duplicate_id_applied_once(self):
        raw = {"type": "speak_message", "payload": {"message": "Hello"}, "id": "ins-7"}

        assert self.handle(raw) == PROCESSED
        assert self.handle(raw) == DUPLICATE
        assert self.speech.spoken == ["Hello"]

    def test_concurrent_delivery_of_same_id_applied_once(self):
        self.board.load()
        spoken = []

        class SlowSpeech:
            async def speak(self, text, language="en-US", rate=1.0):
                await asyncio.sleep(0)
                spoken.append(text)

        self.dispatcher._speech = SlowSpeech()
        raw = {"type": "emergency", "id": "ins-1"}

        async def scenario():
            return await asyncio.gather(
                self.dispatcher.handle(raw, source="push"),
                self.dispatcher.handle(raw, source="server"),
            )

        outcomes = asyncio.run(scenario())

        assert sorted(outcomes) == sorted([PROCESSED, DUPLICATE])
        assert spoken == ["Help me!"]
        assert len(self.store.query(Phrase, sync_state=SyncState.PENDING_DELETE)) == 8
        assert [row["state"] for row in self.store.recent_instructions()] == [PROCESSED]

    def test_malformed_instruction_discarded_and_audited(self):
        outcome = self.handle({"type": "dance", "id": "ins-x"})

        assert outcome == DISCARDED
        [row] = self.store.recent_instructions()
        assert row["state"] == DISCARDED
        assert row["instruction_type"] == "dance"
        assert row["detail"] == "unknown type"
        [event] = self.recorder.of_type(InstructionHandled)
        assert event.outcome == DISCARDED
        assert self.speech.spoken == []

    def test_discarded_id_is_not_reapplied(self):
        self.handle({"type": "speak_message", "payload": {}, "id": "ins-y"})

        assert self.store.instruction_seen("ins-y")

    def test_speak_does_not_create_settings(self):
        self.handle({"type": "speak_message", "payload": {"message": "Good morning"}})

        assert self.speech.spoken == ["Good morning"]
        assert self.recorder.of_type(SpeakRequested)[0].text == "Good morning"
        assert self.store.get_settings() is None

    def test_context_pack_replaces_board(self):
        self.board.load()

        self.handle({"type": "load_context_pack", "payload": {"scenario": "restaurant"}})

        visible = {p.text for p in self.store.visible_phrases()}
        assert visible == set(FALLBACK_GENERATED_PHRASES)
        assert self.generator.scenarios == ["restaurant"]
        logs = [log for log in self.store.pending_logs()
                if log.event_type is UsageEventType.CONTEXT_PACK_GENERATED]
        assert [log.event_data for log in logs] == ["restaurant"]
        assert self.recorder.of_type(PhrasesChanged)[-1].source == "instruction"

    def test_update_phrases(self):
        self.handle({"type": "update_phrases", "payload": {"phrases": ["Coffee", "Tea"]}})

        assert {p.text for p in self.store.visible_phrases()} == {"Coffee", "Tea"}

    def test_update_settings_applies_server_copy(self):
        self.backend.settings["language"] = "German"

        self.handle({"type": "update_settings"})

        settings = self.store.get_settings()
        assert settings.language == "German"
        assert settings.sync_state is SyncState.SYNCED

    def test_update_settings_rejects_out_of_range_voice_speed(self):
        self.backend.settings["voiceSpeed"] = 0.1

        outcome = self.handle({"type": "update_settings", "id": "ins-v"})

        assert outcome == PROCESSED
        assert self.store.get_settings() is None
        [row] = self.store.recent_instructions()
        assert row["detail"].startswith("effect failed")

    def test_update_settings_keeps_local_edits(self, settings_service):
        settings_service.update(language="Hindi")
        self.backend.settings["language"] = "German"

        self.handle({"type": "update_settings"})

        assert self.store.get_settings().language == "Hindi"

    def test_effect_failure_still_consumes_instruction(self):
        self.backend.fail("GET", "/api/settings", NETWORK)

        outcome = self.handle({"type": "update_settings", "id": "ins-s"})

        assert outcome == PROCESSED
        [row] = self.store.recent_instructions()
        assert row["state"] == PROCESSED
        assert row["detail"].startswith("effect failed")

    def test_sync_instruction_runs_a_pass(self):
        self.store.insert(Phrase(text="Yes"))

        self.handle({"type": "sync_phrases"})

        assert self.backend.count("POST", "/api/phrases") == 1

    def test_typed_dispatch(self):
        outcome = asyncio.run(self.dispatcher.dispatch(Emergency(), source="local"))

        assert outcome == PROCESSED
        [row] = self.store.recent_instructions()
        assert row["source"] == "local"
        assert row["instruction_type"] == "emergency"

    def test_poll_pending_applies_and_acknowledges(self):
        self.backend.instructions = [
            {"id": "ins-9", "type": "speak_message", "data": {"message": "Hi"},
             "created_at": "2024-01-15T10:30:00Z"},
            {"id": "ins-10", "type": "bogus", "data": None,
             "created_at": "2024-01-15T10:31:00Z"},
        ]

        handled = asyncio.run(self.dispatcher.poll_pending())

        assert handled == 2
        assert self.backend.acknowledged == ["ins-9", "ins-10"]
        assert self.speech.spoken == ["Hi"]
        states = {row["instruction_id"]: row["state"] for row in self.store.recent_instructions()}
        assert states == {"ins-9": PROCESSED, "ins-10": DISCARDED}

    def test_poll_failure_is_contained(self):
        self.backend.fail("GET", "/api/instructions/pending", 500)

        assert asyncio.run(self.dispatcher.poll_pending()) == 0
