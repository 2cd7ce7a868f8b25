"""
messages.py - Device-to-device message types.

Flat key-value payloads with a "type" discriminator, using the
camelCase keys the phone side sends.
"""

import time
from dataclasses import dataclass, field
from typing import Any, ClassVar

from aac_sync.errors import ValidationError


@dataclass(frozen=True)
class PeerMessage:
    type_tag: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type_tag}


@dataclass(frozen=True)
class ContextUpdate(PeerMessage):
    type_tag: ClassVar[str] = "context_update"
    environment_type: str
    confidence: float
    source: str
    phrases: tuple[str, ...] = ()
    place_name: str | None = None
    scene_description: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "type": self.type_tag,
            "environmentType": self.environment_type,
            "confidence": self.confidence,
            "source": self.source,
            "phrases": list(self.phrases),
            "timestamp": self.timestamp,
        }
        if self.place_name is not None:
            data["placeName"] = self.place_name
        if self.scene_description is not None:
            data["sceneDescription"] = self.scene_description
        return data


@dataclass(frozen=True)
class CustomPhrases(PeerMessage):
    type_tag: ClassVar[str] = "custom_phrases"
    scenario: str
    phrases: tuple[str, ...]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type_tag,
            "scenario": self.scenario,
            "phrases": list(self.phrases),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class RequestContext(PeerMessage):
    type_tag: ClassVar[str] = "request_context"


@dataclass(frozen=True)
class PhraseSpoken(PeerMessage):
    type_tag: ClassVar[str] = "phrase_spoken"
    phrase: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type_tag, "phrase": self.phrase, "timestamp": self.timestamp}


def parse_peer_message(raw: Any) -> PeerMessage:
    """
    Decode a raw peer payload.

    Raises:
        ValidationError: not an object, unknown type, or missing fields
    """
    if not isinstance(raw, dict):
        raise ValidationError("Peer message must be an object")
    message_type = raw.get("type")

    if message_type == ContextUpdate.type_tag:
        confidence = raw.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ValidationError("confidence must be a number", field="confidence", value=confidence)
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("confidence must be within [0, 1]", field="confidence", value=confidence)
        return ContextUpdate(
            environment_type=_text(raw, "environmentType"),
            confidence=float(confidence),
            source=_text(raw, "source"),
            phrases=_phrases(raw),
            place_name=_optional_text(raw, "placeName"),
            scene_description=_optional_text(raw, "sceneDescription"),
            timestamp=_timestamp(raw),
        )
    if message_type == CustomPhrases.type_tag:
        return CustomPhrases(
            scenario=_text(raw, "scenario"), phrases=_phrases(raw), timestamp=_timestamp(raw)
        )
    if message_type == RequestContext.type_tag:
        return RequestContext()
    if message_type == PhraseSpoken.type_tag:
        return PhraseSpoken(phrase=_text(raw, "phrase"), timestamp=_timestamp(raw))
    raise ValidationError("Unknown peer message type", field="type", value=message_type)


def _text(raw: dict, key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} is required", field=key, value=value)
    return value


def _optional_text(raw: dict, key: str) -> str | None:
    value = raw.get(key)
    return value if isinstance(value, str) and value else None


def _phrases(raw: dict) -> tuple[str, ...]:
    value = raw.get("phrases")
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise ValidationError("phrases must be a list of strings", field="phrases")
    return tuple(value)


def _timestamp(raw: dict) -> float:
    value = raw.get("timestamp")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return time.time()
