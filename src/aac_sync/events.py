"""
events.py - Typed event bus for cross-component notifications.

Services publish frozen event dataclasses; the UI layer (or tests)
subscribes per event type. The event vocabulary is the set of classes
in this module, so subscribers never match on strings.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, TypeVar

from aac_sync.models import ReceivedContext, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for all bus events."""
    timestamp: datetime = field(default_factory=utcnow, kw_only=True)


@dataclass(frozen=True)
class SyncStatusChanged(Event):
    """Published at pass boundaries only; never mid-pass."""
    is_syncing: bool
    pending_changes: int
    last_sync_at: datetime | None
    failed: bool = False


@dataclass(frozen=True)
class PhrasesChanged(Event):
    """The set of phrases the board should show has changed."""
    source: str                      # "instruction", "peer", "sync", "board"
    phrases: tuple[str, ...] = ()
    persisted: bool = True


@dataclass(frozen=True)
class SpeakRequested(Event):
    text: str


@dataclass(frozen=True)
class EmergencyActivated(Event):
    first_phrase: str


@dataclass(frozen=True)
class InstructionHandled(Event):
    instruction_type: str
    outcome: str                     # "processed" or "discarded"
    instruction_id: str | None = None


@dataclass(frozen=True)
class ContextReceived(Event):
    context: ReceivedContext
    phrases: tuple[str, ...] = ()


@dataclass(frozen=True)
class PhraseSpokenEcho(Event):
    """Telemetry echo from the peer device."""
    phrase: str


E = TypeVar("E", bound=Event)
Handler = Callable[[E], None]


class EventBus:
    """
    Synchronous publish/subscribe keyed by event class.

    Handlers run in publish order on the publisher's context. A failing
    handler is logged and does not prevent delivery to the others.
    """

    def __init__(self):
        self._handlers: dict[type, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: Event) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception(f"Event handler failed for {type(event).__name__}")


class EventRecorder:
    """Collects published events; handy for status views and tests."""

    def __init__(self, bus: EventBus, event_type: type[Event] = Event):
        self.events: list[Event] = []
        self._unsubscribe = bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type: type[E]) -> list[E]:
        return [e for e in self.events if isinstance(e, event_type)]

    def close(self) -> None:
        self._unsubscribe()
