"""
dispatcher.py - Remote instruction dispatch.

Every raw instruction moves through an audited lifecycle:

    received -> processing -> processed
    received -> discarded            (malformed or unrecognized)

Instructions carrying an id are applied at most once. Effects mutate the
entity store and publish events; the dispatcher never touches UI state.
"""

import logging
from typing import Any

from aac_sync.api.client import APIGateway
from aac_sync.api.dto import ServerInstruction
from aac_sync.board import PhraseBoard
from aac_sync.config import EMERGENCY_PHRASES
from aac_sync.errors import AACSyncError, GatewayError, MalformedInstruction
from aac_sync.events import EmergencyActivated, EventBus, InstructionHandled, SpeakRequested
from aac_sync.generation import PhraseGenerator
from aac_sync.instructions.models import (
    Emergency,
    Instruction,
    LoadContextPack,
    SpeakMessage,
    SyncPhrases,
    UpdatePhrases,
    UpdateSettings,
    parse_instruction,
    raw_instruction_id,
)
from aac_sync.metrics import SyncLogger
from aac_sync.models import UsageEventType, UserSettings
from aac_sync.speech import SpeechOutput
from aac_sync.store import EntityStore
from aac_sync.sync.engine import SyncEngine, SyncTrigger, apply_settings_dto

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DISCARDED = "discarded"
DUPLICATE = "duplicate"


class InstructionDispatcher:
    """
    Routes typed instructions to their local effects.

    Usage:
        dispatcher = InstructionDispatcher(store, board, engine, api, generator, speech, bus)
        await dispatcher.handle({"aps": {}, "data": {"type": "emergency"}}, source="push")
    """

    def __init__(
        self,
        store: EntityStore,
        board: PhraseBoard,
        engine: SyncEngine,
        api: APIGateway,
        generator: PhraseGenerator,
        speech: SpeechOutput | None,
        bus: EventBus,
    ):
        self._store = store
        self._board = board
        self._engine = engine
        self._api = api
        self._generator = generator
        self._speech = speech
        self._bus = bus
        self._sync_log = SyncLogger("aac_sync.instructions")
        self._in_flight: set[str] = set()

    async def handle(self, raw: Any, source: str = "push") -> str:
        """
        Parse and apply one raw instruction.

        Returns:
            PROCESSED, DISCARDED, or DUPLICATE for an id already handled
        """
        try:
            instruction = parse_instruction(raw)
        except MalformedInstruction as e:
            raw_type = e.raw_type if isinstance(e.raw_type, str) else None
            self._store.record_instruction(
                raw_instruction_id(raw), raw_type, source, DISCARDED, e.reason
            )
            self._sync_log.instruction(raw_type or "unknown", DISCARDED, e.reason)
            self._bus.publish(InstructionHandled(
                instruction_type=raw_type or "unknown",
                outcome=DISCARDED,
                instruction_id=raw_instruction_id(raw),
            ))
            return DISCARDED

        return await self.dispatch(instruction, source)

    async def dispatch(self, instruction: Instruction, source: str = "local") -> str:
        """Apply an already-typed instruction."""
        instruction_id = instruction.instruction_id
        if instruction_id is None:
            return await self._dispatch(instruction, source)

        # Push and poll can deliver the same id concurrently
        if instruction_id in self._in_flight or self._store.instruction_seen(instruction_id):
            logger.info(f"Instruction {instruction_id} already handled; ignoring")
            return DUPLICATE

        self._in_flight.add(instruction_id)
        try:
            return await self._dispatch(instruction, source)
        finally:
            self._in_flight.discard(instruction_id)

    async def _dispatch(self, instruction: Instruction, source: str) -> str:
        instruction_id = instruction.instruction_id
        seq = self._store.record_instruction(
            instruction_id, instruction.type_tag, source, "received"
        )
        self._store.update_instruction_state(seq, "processing")

        detail = None
        try:
            await self._apply(instruction)
        except AACSyncError as e:
            # The instruction is consumed either way; the failure is kept in the audit row
            detail = f"effect failed: {e}"
            logger.warning(f"Instruction {instruction.type_tag} effect failed: {e}")

        self._store.update_instruction_state(seq, PROCESSED, detail)
        self._sync_log.instruction(instruction.type_tag, PROCESSED, detail)
        self._bus.publish(InstructionHandled(
            instruction_type=instruction.type_tag,
            outcome=PROCESSED,
            instruction_id=instruction_id,
        ))
        return PROCESSED

    async def poll_pending(self) -> int:
        """
        Fetch, apply and acknowledge pending server instructions.

        Every fetched instruction is acknowledged, including discarded
        ones, so a malformed record is never redelivered.
        """
        try:
            pending = await self._api.get_pending_instructions()
        except GatewayError as e:
            logger.warning(f"Failed to fetch pending instructions: {e}")
            return 0

        for record in pending:
            await self.handle(_server_record(record), source="server")
            try:
                await self._api.mark_instruction_processed(record.id)
            except GatewayError as e:
                logger.warning(f"Failed to acknowledge instruction {record.id}: {e}")
        return len(pending)

    # =========================================================================
    # Effects
    # =========================================================================

    async def _apply(self, instruction: Instruction) -> None:
        if isinstance(instruction, SyncPhrases):
            await self._engine.sync_all(SyncTrigger.INSTRUCTION)
        elif isinstance(instruction, LoadContextPack):
            await self.load_context_pack(instruction.scenario)
        elif isinstance(instruction, UpdatePhrases):
            self.update_phrases(instruction.phrases, source="instruction")
        elif isinstance(instruction, SpeakMessage):
            await self.speak(instruction.message)
        elif isinstance(instruction, UpdateSettings):
            await self._refresh_settings()
        elif isinstance(instruction, Emergency):
            await self.activate_emergency()

    def update_phrases(self, phrases: tuple[str, ...] | list[str], source: str) -> None:
        self._board.replace_with(phrases, source=source)

    async def load_context_pack(self, scenario: str) -> None:
        phrases = await self._generator.generate_context_pack(scenario)
        self.update_phrases(phrases, source="instruction")
        self._board.log_event(UsageEventType.CONTEXT_PACK_GENERATED, scenario)

    async def activate_emergency(self) -> None:
        """Emergency phrase set plus an immediate utterance; no network involved."""
        self._board.replace_with(EMERGENCY_PHRASES, source="emergency")
        self._bus.publish(EmergencyActivated(first_phrase=EMERGENCY_PHRASES[0]))
        await self.speak(EMERGENCY_PHRASES[0])

    async def speak(self, text: str) -> None:
        settings = self._store.get_settings() or UserSettings()
        self._bus.publish(SpeakRequested(text=text))
        if self._speech is not None:
            await self._speech.speak(
                text, language=settings.language_code, rate=settings.voice_speed
            )

    async def _refresh_settings(self) -> None:
        remote = await self._api.get_settings()
        current = self._store.get_or_create_settings()
        if current.has_local_edits:
            logger.info("Local settings edits pending; keeping local settings")
            return
        apply_settings_dto(current, remote)
        self._store.update(current)


def _server_record(record: ServerInstruction) -> dict[str, Any]:
    return {
        "id": record.id,
        "type": record.type,
        "data": record.data,
        "created_at": record.created_at,
    }
