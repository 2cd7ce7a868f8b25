"""
config.py - Configuration for aac_sync.

Protocol and tuning constants are immutable and defined at module level.
Deployment settings are read once from the environment into ClientConfig.
"""

import os
from dataclasses import dataclass, replace
from typing import Final

# Remote API
DEFAULT_API_URL: Final[str] = "https://api.aiquickchat.com"
REQUEST_TIMEOUT_SECONDS: Final[float] = 30.0
RESOURCE_TIMEOUT_SECONDS: Final[float] = 60.0
DEVICE_PLATFORM: Final[str] = "watchos"

# Sync scheduling
RECONNECT_DEBOUNCE_SECONDS: Final[float] = 2.0
BACKGROUND_REFRESH_SECONDS: Final[float] = 15 * 60.0
REACHABILITY_PROBE_SECONDS: Final[float] = 10.0
DEFAULT_WAIT_FOR_CONNECTION_SECONDS: Final[float] = 10.0

# Synced usage logs are kept locally this long before pruning
SYNCED_LOG_RETENTION_SECONDS: Final[float] = 7 * 24 * 3600.0

# Settings bounds
MIN_VOICE_SPEED: Final[float] = 0.5
MAX_VOICE_SPEED: Final[float] = 2.0
DEFAULT_LANGUAGE: Final[str] = "English"
DEFAULT_RESPONSE_MODE: Final[str] = "general"

SUPPORTED_LANGUAGES: Final[dict[str, str]] = {
    "English": "en-US",
    "Spanish": "es-ES",
    "French": "fr-FR",
    "German": "de-DE",
    "Italian": "it-IT",
    "Portuguese": "pt-BR",
    "Hindi": "hi-IN",
    "Tamil": "ta-IN",
    "Telugu": "te-IN",
    "Bengali": "bn-IN",
    "Arabic": "ar-SA",
    "Mandarin Chinese": "zh-CN",
    "Cantonese": "zh-HK",
    "Japanese": "ja-JP",
    "Korean": "ko-KR",
}

RESPONSE_MODES: Final[dict[str, str]] = {
    "general": "General use",
    "public_transport": "Public Transport",
    "shopping": "Shopping / Retail",
    "school": "School / Campus",
    "hospital": "Hospital Ward",
    "office": "Office Meeting",
    "custom": "Custom Scenario",
}

# Phrase sets
MAX_CONTEXT_PHRASES: Final[int] = 8

DEFAULT_PHRASES: Final[tuple[str, ...]] = (
    "I need water",
    "Yes",
    "No",
    "Thank you",
    "Bathroom",
    "Help",
    "Pain level 5",
    "Call nurse",
)

EMERGENCY_PHRASES: Final[tuple[str, ...]] = (
    "Help me!",
    "Call 911",
    "I need help now",
    "Emergency",
    "Get a doctor",
    "I'm not okay",
    "Please help",
    "Urgent",
)

# Returned by the generator when the model output cannot be parsed
FALLBACK_GENERATED_PHRASES: Final[tuple[str, ...]] = (
    "Hello",
    "Yes",
    "No",
    "Help",
    "Thanks",
    "Goodbye",
)

# Phrase generation service
GEMINI_BASE_URL: Final[str] = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_TEXT_MODEL: Final[str] = "gemini-2.5-flash"

# SQLite PRAGMA settings for the local entity store
SQLITE_PRAGMAS: Final[dict[str, str]] = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "foreign_keys": "ON",
    "busy_timeout": "5000",
}

# Local schema version, stored in PRAGMA user_version
STORE_SCHEMA_VERSION: Final[int] = 1


@dataclass(frozen=True)
class ClientConfig:
    """Deployment configuration for one device."""
    api_url: str = DEFAULT_API_URL
    db_path: str = "aac_sync.db"
    credentials_path: str = "aac_sync.credentials"
    credentials_secret: str | None = None
    peer_url: str | None = None
    gemini_api_key: str | None = None
    log_level: str = "INFO"
    log_json: bool = False
    request_timeout: float = REQUEST_TIMEOUT_SECONDS
    resource_timeout: float = RESOURCE_TIMEOUT_SECONDS
    reconnect_debounce: float = RECONNECT_DEBOUNCE_SECONDS
    background_refresh_interval: float = BACKGROUND_REFRESH_SECONDS

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        """Build a config from AAC_SYNC_* environment variables; overrides win."""
        env = os.environ
        config = cls(
            api_url=env.get("AAC_SYNC_API_URL", DEFAULT_API_URL),
            db_path=env.get("AAC_SYNC_DB_PATH", "aac_sync.db"),
            credentials_path=env.get("AAC_SYNC_CREDENTIALS_PATH", "aac_sync.credentials"),
            credentials_secret=env.get("AAC_SYNC_CREDENTIALS_SECRET"),
            peer_url=env.get("AAC_SYNC_PEER_URL") or None,
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            log_level=env.get("AAC_SYNC_LOG_LEVEL", "INFO"),
            log_json=env.get("AAC_SYNC_LOG_JSON", "").lower() in ("1", "true", "yes"),
        )
        if overrides:
            config = replace(config, **overrides)
        if config.request_timeout >= config.resource_timeout:
            raise ValueError("request_timeout must be shorter than resource_timeout")
        return config
