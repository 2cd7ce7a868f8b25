"""
app.py - Application container.

Constructs every service explicitly and owns their lifecycle:

    async with AACSyncApp(ClientConfig.from_env()) as app:
        await app.scheduler.sync_now()

Nothing here is a process-wide singleton; tests build as many
independent containers as they need.
"""

import logging

import httpx

from aac_sync.api.client import APIGateway
from aac_sync.api.credentials import (
    CredentialStore,
    EncryptedFileCredentialStore,
    MemoryCredentialStore,
)
from aac_sync.board import PhraseBoard, Session, SettingsService
from aac_sync.config import ClientConfig
from aac_sync.errors import GenerationError
from aac_sync.events import EventBus
from aac_sync.generation import GeminiPhraseGenerator, PhraseGenerator, StaticPhraseGenerator
from aac_sync.instructions.dispatcher import InstructionDispatcher
from aac_sync.models import Phrase, UsageEventType
from aac_sync.reachability import HttpReachabilityProbe, ReachabilityMonitor
from aac_sync.relay.context_relay import ContextRelay
from aac_sync.relay.peer_link import PeerLink, WebSocketPeerChannel
from aac_sync.speech import ConsoleSpeechOutput, SpeechOutput
from aac_sync.store import EntityStore
from aac_sync.sync.engine import SyncEngine
from aac_sync.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class AACSyncApp:
    """Wires store, gateway, sync, dispatch and relay for one device."""

    def __init__(
        self,
        config: ClientConfig,
        credentials: CredentialStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        speech: SpeechOutput | None = None,
        generator: PhraseGenerator | None = None,
        probe_reachability: bool = True,
    ):
        self.config = config
        self.bus = EventBus()
        self.store = EntityStore(config.db_path)
        self.credentials = credentials or _credential_store(config)
        self.api = APIGateway(
            config.api_url,
            self.credentials,
            request_timeout=config.request_timeout,
            resource_timeout=config.resource_timeout,
            transport=transport,
        )
        self.reachability = ReachabilityMonitor()
        self.probe = (
            HttpReachabilityProbe(self.reachability, config.api_url, transport=transport)
            if probe_reachability else None
        )
        self.engine = SyncEngine(self.store, self.api, self.reachability, self.bus)
        self.board = PhraseBoard(self.store, self.bus, Session())
        self.settings = SettingsService(self.store, self.board)
        self.generator = generator or _phrase_generator(config)
        self.speech = speech or ConsoleSpeechOutput()
        self.dispatcher = InstructionDispatcher(
            self.store, self.board, self.engine, self.api, self.generator, self.speech, self.bus
        )
        self.scheduler = SyncScheduler(
            self.engine,
            self.reachability,
            self.dispatcher,
            debounce_seconds=config.reconnect_debounce,
            background_interval=config.background_refresh_interval,
        )

        self.peer_channel: WebSocketPeerChannel | None = None
        self.peer_link: PeerLink | None = None
        if config.peer_url:
            self.peer_channel = WebSocketPeerChannel(config.peer_url)
            self.peer_link = PeerLink(self.peer_channel, self.store)
        self.relay = ContextRelay(self.dispatcher, self.bus, self.peer_link)
        if self.peer_channel is not None:
            self.peer_channel.set_handler(self.relay.receive)

        self._started = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self, background: bool = True) -> None:
        """
        Open the store and bring services up.

        Args:
            background: Also start the scheduler and reachability probe tasks
        """
        if self._started:
            return
        self.store.open()
        self.board.load()
        self.board.log_event(UsageEventType.APP_OPENED)
        if self.probe is not None:
            await self.probe.probe_once()
            if background:
                await self.probe.start()
        if background:
            await self.scheduler.start()
        if self.peer_channel is not None and await self.peer_channel.connect():
            await self.peer_link.flush_outbox()
        self.engine.refresh_pending_count()
        self._started = True
        logger.info(f"AAC sync client started (session {self.board.session.id})")

    async def stop(self) -> None:
        if not self._started:
            return
        self.board.log_event(UsageEventType.APP_CLOSED)
        await self.scheduler.stop()
        if self.probe is not None:
            await self.probe.stop()
        if self.peer_channel is not None:
            await self.peer_channel.close()
        if isinstance(self.generator, GeminiPhraseGenerator):
            await self.generator.aclose()
        await self.api.aclose()
        self.store.close()
        self._started = False
        logger.info("AAC sync client stopped")

    # =========================================================================
    # User actions
    # =========================================================================

    async def speak_phrase(self, phrase: Phrase) -> None:
        await self.dispatcher.speak(phrase.text)
        self.board.record_spoken(phrase)
        await self.relay.report_phrase_spoken(phrase.text)

    async def speak_custom_text(self, text: str) -> None:
        """Speak typed text; when online with AI enabled, offer follow-up phrases."""
        await self.dispatcher.speak(text)
        self.board.record_custom_text(text)
        if not (self.reachability.is_connected and self.settings.get().ai_enabled):
            return
        try:
            phrases = await self.generator.generate_follow_up(text)
        except GenerationError as e:
            logger.warning(f"Follow-up generation failed: {e}")
            return
        self.board.replace_with(phrases, source="follow_up")


def _credential_store(config: ClientConfig) -> CredentialStore:
    if config.credentials_secret:
        return EncryptedFileCredentialStore(config.credentials_path, config.credentials_secret)
    logger.warning("AAC_SYNC_CREDENTIALS_SECRET not set; credentials are kept in memory only")
    return MemoryCredentialStore()


def _phrase_generator(config: ClientConfig) -> PhraseGenerator:
    if config.gemini_api_key:
        return GeminiPhraseGenerator(config.gemini_api_key)
    return StaticPhraseGenerator()
