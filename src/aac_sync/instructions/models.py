"""
models.py - Typed remote instructions.

Raw payloads from push notifications, the pending-instructions endpoint
and peer messages are decoded eagerly into one of the Instruction
subclasses below. Downstream code never inspects untyped maps.

Accepted raw shapes:
    push:    {"aps": {...}, "data": {"type": ..., "payload": {...}, "sender": ..., "id": ...}}
    flat:    {"type": ..., "payload": {...}, "id": ..., "sender": ...}
    server:  {"id": ..., "type": ..., "data": {...}, "created_at": ...}
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from aac_sync.errors import MalformedInstruction
from aac_sync.models import utcnow

# Older server-side type names
TYPE_ALIASES = {
    "sync": "sync_phrases",
    "phrases": "update_phrases",
    "context_pack": "load_context_pack",
}


@dataclass(frozen=True)
class Instruction:
    type_tag: ClassVar[str] = ""

    instruction_id: str | None = field(default=None, kw_only=True)
    sender: str | None = field(default=None, kw_only=True)
    timestamp: datetime = field(default_factory=utcnow, kw_only=True)


@dataclass(frozen=True)
class SyncPhrases(Instruction):
    type_tag: ClassVar[str] = "sync_phrases"


@dataclass(frozen=True)
class LoadContextPack(Instruction):
    type_tag: ClassVar[str] = "load_context_pack"
    scenario: str


@dataclass(frozen=True)
class UpdatePhrases(Instruction):
    type_tag: ClassVar[str] = "update_phrases"
    phrases: tuple[str, ...]


@dataclass(frozen=True)
class SpeakMessage(Instruction):
    type_tag: ClassVar[str] = "speak_message"
    message: str


@dataclass(frozen=True)
class UpdateSettings(Instruction):
    type_tag: ClassVar[str] = "update_settings"


@dataclass(frozen=True)
class Emergency(Instruction):
    type_tag: ClassVar[str] = "emergency"


INSTRUCTION_TYPES: dict[str, type[Instruction]] = {
    cls.type_tag: cls
    for cls in (SyncPhrases, LoadContextPack, UpdatePhrases, SpeakMessage, UpdateSettings, Emergency)
}


def raw_instruction_id(raw: Any) -> str | None:
    """Best-effort id extraction, usable even for malformed payloads."""
    if not isinstance(raw, dict):
        return None
    value = raw.get("id")
    if value is None and isinstance(raw.get("data"), dict) and "type" not in raw:
        value = raw["data"].get("id")
    return str(value) if value is not None else None


def parse_instruction(raw: Any) -> Instruction:
    """
    Decode a raw payload into a typed instruction.

    Raises:
        MalformedInstruction: missing or unknown type tag, or a payload
            lacking the fields its type requires
    """
    if not isinstance(raw, dict):
        raise MalformedInstruction("payload is not an object")

    if "type" in raw:
        raw_type = raw["type"]
        payload = raw["payload"] if "payload" in raw else raw.get("data")
        sender = raw.get("sender")
        timestamp = raw.get("created_at") or raw.get("timestamp")
    elif isinstance(raw.get("data"), dict):
        data = raw["data"]
        raw_type = data.get("type")
        payload = data.get("payload")
        sender = data.get("sender")
        timestamp = data.get("timestamp")
    else:
        raise MalformedInstruction("missing type")

    if not isinstance(raw_type, str) or not raw_type:
        raise MalformedInstruction("missing type", raw_type=raw_type)
    type_tag = TYPE_ALIASES.get(raw_type, raw_type)
    cls = INSTRUCTION_TYPES.get(type_tag)
    if cls is None:
        raise MalformedInstruction("unknown type", raw_type=raw_type)

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedInstruction("payload is not an object", raw_type=raw_type)

    common = {
        "instruction_id": raw_instruction_id(raw),
        "sender": sender if isinstance(sender, str) else None,
        "timestamp": _parse_timestamp(timestamp),
    }
    if cls is LoadContextPack:
        return LoadContextPack(scenario=_required_text(payload, "scenario", raw_type), **common)
    if cls is UpdatePhrases:
        return UpdatePhrases(phrases=_phrase_list(payload, raw_type), **common)
    if cls is SpeakMessage:
        return SpeakMessage(message=_required_text(payload, "message", raw_type), **common)
    return cls(**common)


def _required_text(payload: dict, key: str, raw_type: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedInstruction(f"missing {key}", raw_type=raw_type)
    return value.strip()


def _phrase_list(payload: dict, raw_type: str) -> tuple[str, ...]:
    value = payload.get("phrases")
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise MalformedInstruction("phrases must be a list of strings", raw_type=raw_type)
    return tuple(p.strip() for p in value if p.strip())


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return utcnow()
