"""
generation.py - Context-pack phrase generation.

GeminiPhraseGenerator asks the Gemini text model for a JSON array of short
phrases. Unparseable model output falls back to a fixed phrase set;
transport and HTTP failures raise GenerationError.
"""

import json
import logging
from typing import Protocol

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from aac_sync.config import (
    FALLBACK_GENERATED_PHRASES,
    GEMINI_BASE_URL,
    GEMINI_TEXT_MODEL,
    MAX_CONTEXT_PHRASES,
    REQUEST_TIMEOUT_SECONDS,
)
from aac_sync.errors import GenerationError

logger = logging.getLogger(__name__)


class PhraseGenerator(Protocol):
    async def generate_context_pack(self, scenario: str) -> list[str]:
        ...

    async def generate_follow_up(self, spoken_text: str) -> list[str]:
        ...


class StaticPhraseGenerator:
    """Returns a fixed phrase list; used offline and in tests."""

    def __init__(self, phrases: list[str] | tuple[str, ...] = FALLBACK_GENERATED_PHRASES):
        self._phrases = list(phrases)
        self.scenarios: list[str] = []

    async def generate_context_pack(self, scenario: str) -> list[str]:
        self.scenarios.append(scenario)
        return list(self._phrases)

    async def generate_follow_up(self, spoken_text: str) -> list[str]:
        return await self.generate_context_pack(_follow_up_scenario(spoken_text))


class _Part(BaseModel):
    text: str | None = None


class _Content(BaseModel):
    parts: list[_Part] = []


class _Candidate(BaseModel):
    content: _Content | None = None


class _GenerateResponse(BaseModel):
    candidates: list[_Candidate] = []


class GeminiPhraseGenerator:
    """
    Phrase packs from the Gemini generateContent endpoint.

    The response schema constrains the model to an array of strings.
    """

    def __init__(
        self,
        api_key: str,
        model: str = GEMINI_TEXT_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise GenerationError("A Gemini API key is required")
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/models/{model}:generateContent"
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate_context_pack(self, scenario: str) -> list[str]:
        prompt = (
            "Generate 6 short, useful, spoken phrases (max 5 words each) for a person "
            f'with speech difficulties in this specific scenario: "{scenario}".'
        )
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": {"type": "array", "items": {"type": "string"}},
            },
        }
        try:
            response = await self._client.post(
                self._url, params={"key": self._api_key}, json=body
            )
        except httpx.TransportError as e:
            raise GenerationError(f"Phrase generation unavailable: {e}") from e
        if not response.is_success:
            raise GenerationError(f"Phrase generation failed with status {response.status_code}")

        phrases = _parse_phrases(response)
        if not phrases:
            logger.warning("Unparseable generation output; using fallback phrases")
            return list(FALLBACK_GENERATED_PHRASES)
        return phrases[:MAX_CONTEXT_PHRASES]

    async def generate_follow_up(self, spoken_text: str) -> list[str]:
        return await self.generate_context_pack(_follow_up_scenario(spoken_text))


def _parse_phrases(response: httpx.Response) -> list[str]:
    try:
        parsed = _GenerateResponse.model_validate(response.json())
    except (ValueError, PydanticValidationError):
        return []
    for candidate in parsed.candidates:
        if candidate.content is None:
            continue
        for part in candidate.content.parts:
            if not part.text:
                continue
            try:
                items = json.loads(part.text)
            except ValueError:
                return []
            if isinstance(items, list):
                return [str(item).strip() for item in items if str(item).strip()]
            return []
    return []


def _follow_up_scenario(spoken_text: str) -> str:
    return (
        f'User just said: "{spoken_text}". Generate 6-8 relevant follow-up dialogue '
        "choices for continuing this conversation."
    )
