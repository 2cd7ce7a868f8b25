"""
context_relay.py - Peer context into the phrase pipeline.

Environment context pushed by the paired device becomes a ReceivedContext
plus a phrase list, announced through the same PhrasesChanged event that
server instructions use. Only the most recent context is retained.
"""

import logging
from typing import Any, Callable

from aac_sync.errors import ValidationError
from aac_sync.events import ContextReceived, EventBus, PhrasesChanged, PhraseSpokenEcho
from aac_sync.instructions.dispatcher import InstructionDispatcher
from aac_sync.metrics import peer_messages_total
from aac_sync.models import ReceivedContext
from aac_sync.relay.messages import (
    ContextUpdate,
    CustomPhrases,
    PeerMessage,
    PhraseSpoken,
    RequestContext,
    parse_peer_message,
)
from aac_sync.relay.peer_link import PeerLink

logger = logging.getLogger(__name__)

ContextProvider = Callable[[], ContextUpdate | None]


class ContextRelay:
    """
    Receives peer messages and routes them.

    - context_update  -> latest ReceivedContext, ContextReceived and
                         PhrasesChanged(source="peer", persisted=False)
    - custom_phrases  -> the dispatcher's phrase replacement
    - request_context -> reply with the current context, if known
    - phrase_spoken   -> PhraseSpokenEcho
    """

    def __init__(
        self,
        dispatcher: InstructionDispatcher,
        bus: EventBus,
        link: PeerLink | None = None,
        context_provider: ContextProvider | None = None,
    ):
        self._dispatcher = dispatcher
        self._bus = bus
        self._link = link
        self._context_provider = context_provider
        self._latest: ReceivedContext | None = None
        self._latest_update: ContextUpdate | None = None
        self.latest_phrases: tuple[str, ...] = ()

    @property
    def latest_context(self) -> ReceivedContext | None:
        return self._latest

    async def receive(self, raw: dict[str, Any]) -> PeerMessage | None:
        """Handle one inbound message; invalid messages are logged and dropped."""
        try:
            message = parse_peer_message(raw)
        except ValidationError as e:
            logger.warning(f"Dropping invalid peer message: {e}")
            peer_messages_total.inc(direction="in", tier="rejected")
            return None
        peer_messages_total.inc(direction="in", tier="accepted")

        if isinstance(message, ContextUpdate):
            self._on_context(message)
        elif isinstance(message, CustomPhrases):
            self._dispatcher.update_phrases(message.phrases, source="peer")
        elif isinstance(message, RequestContext):
            await self._reply_with_context()
        elif isinstance(message, PhraseSpoken):
            self._bus.publish(PhraseSpokenEcho(phrase=message.phrase))
        return message

    def _on_context(self, message: ContextUpdate) -> None:
        context = ReceivedContext(
            environment_type=message.environment_type,
            confidence=message.confidence,
            source=message.source,
            place_name=message.place_name,
            scene_description=message.scene_description,
        )
        self._latest = context
        self._latest_update = message
        self.latest_phrases = message.phrases
        logger.info(
            f"Context from peer: {context.display_name} "
            f"({context.confidence:.0%}, {len(message.phrases)} phrases)"
        )
        self._bus.publish(ContextReceived(context=context, phrases=message.phrases))
        self._bus.publish(PhrasesChanged(source="peer", phrases=message.phrases, persisted=False))

    async def _reply_with_context(self) -> None:
        if self._link is None:
            return
        update = self._context_provider() if self._context_provider else self._latest_update
        if update is None:
            logger.debug("Context requested but none is known")
            return
        await self._link.send(update)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def request_context(self) -> str | None:
        if self._link is None:
            return None
        return await self._link.send(RequestContext())

    async def report_phrase_spoken(self, phrase: str) -> str | None:
        if self._link is None:
            return None
        return await self._link.send(PhraseSpoken(phrase=phrase))
