"""
dto.py - Wire shapes for the REST backend.

Response records use snake_case keys; request bodies use camelCase.
Date-time fields must be ISO-8601; anything unparseable fails validation,
which the gateway reports as DecodingFailed.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aac_sync.config import MAX_VOICE_SPEED, MIN_VOICE_SPEED


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def _strict_datetime(value: Any) -> Any:
    # Reject epoch numbers and empty strings; only textual date-times are valid
    if not isinstance(value, (str, datetime)) or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"expected ISO-8601 date-time, got {value!r}")
    return value


# =============================================================================
# Authentication
# =============================================================================

class LoginRequest(_Request):
    email: str
    password: str


class SignupRequest(_Request):
    email: str
    password: str
    full_name: str | None = Field(default=None, alias="fullName")
    company_name: str | None = Field(default=None, alias="companyName")
    phone: str | None = None
    organization_type: str | None = Field(default=None, alias="organizationType")
    marketing_consent: bool | None = Field(default=None, alias="marketingConsent")


class UserDTO(_Response):
    id: str
    email: str
    full_name: str | None = None
    company_name: str | None = None
    phone: str | None = None
    account_status: str
    subscription_tier: str
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def check_created(cls, value: Any) -> Any:
        return _strict_datetime(value)


class AuthResponse(_Response):
    token: str
    user: UserDTO


# =============================================================================
# Phrases
# =============================================================================

class PhraseDTO(_Response):
    id: str
    phrase_text: str
    category: str | None = None
    usage_count: int = 0
    is_favorite: bool = False
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def check_dates(cls, value: Any) -> Any:
        return _strict_datetime(value)


class PhrasesResponse(_Response):
    # Records are validated one at a time so a bad one does not sink the list
    phrases: list[dict[str, Any]]


class CreatePhraseResponse(_Response):
    phrase: PhraseDTO


class CreatePhraseRequest(_Request):
    phrase_text: str = Field(alias="phraseText")
    category: str | None = None


class UpdatePhraseRequest(_Request):
    phrase_text: str | None = Field(default=None, alias="phraseText")
    category: str | None = None
    usage_count: int | None = Field(default=None, alias="usageCount")
    is_favorite: bool | None = Field(default=None, alias="isFavorite")


# =============================================================================
# Settings
# =============================================================================

class SettingsDTO(_Response):
    language: str | None = None
    voice_speed: float | None = Field(
        default=None, alias="voiceSpeed", ge=MIN_VOICE_SPEED, le=MAX_VOICE_SPEED
    )
    ai_enabled: bool | None = Field(default=None, alias="aiEnabled")
    response_mode: str | None = Field(default=None, alias="responseMode")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SettingsResponse(_Response):
    settings: SettingsDTO


# =============================================================================
# Analytics
# =============================================================================

class LogEventRequest(_Request):
    event_type: str = Field(alias="eventType")
    event_data: str | None = Field(default=None, alias="eventData")
    phrase_used: str | None = Field(default=None, alias="phraseUsed")
    session_id: str | None = Field(default=None, alias="sessionId")


class LogEventResponse(_Response):
    success: bool


# =============================================================================
# Devices and instructions
# =============================================================================

class RegisterDeviceRequest(_Request):
    token: str
    platform: str
    device_model: str = Field(alias="deviceModel")


class ServerInstruction(_Response):
    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def check_created(cls, value: Any) -> Any:
        return _strict_datetime(value)

    @field_validator("data", mode="before")
    @classmethod
    def none_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class PendingInstructionsResponse(_Response):
    instructions: list[ServerInstruction]


class SendInstructionRequest(_Request):
    target_user_id: str = Field(alias="targetUserId")
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class APIErrorBody(_Response):
    error: str
    message: str | None = None
