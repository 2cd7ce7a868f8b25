"""
client.py - Remote API gateway for the AAC backend.

One coroutine per REST operation. Every call classifies failures into
exactly one of:

- NotAuthenticated: no token available, raised before any I/O
- NetworkUnavailable: transport failure or timeout
- HttpError(status): non-2xx answer
- DecodingFailed: body did not match the expected shape
"""

import asyncio
import logging
import platform
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from aac_sync.api.credentials import DEVICE_TOKEN, CredentialStore
from aac_sync.api.dto import (
    APIErrorBody,
    AuthResponse,
    CreatePhraseRequest,
    CreatePhraseResponse,
    LogEventRequest,
    LogEventResponse,
    LoginRequest,
    PendingInstructionsResponse,
    PhraseDTO,
    PhrasesResponse,
    RegisterDeviceRequest,
    SendInstructionRequest,
    ServerInstruction,
    SettingsDTO,
    SettingsResponse,
    SignupRequest,
    UpdatePhraseRequest,
    UserDTO,
)
from aac_sync.config import (
    DEVICE_PLATFORM,
    REQUEST_TIMEOUT_SECONDS,
    RESOURCE_TIMEOUT_SECONDS,
)
from aac_sync.errors import (
    DecodingFailed,
    GatewayError,
    HttpError,
    NetworkUnavailable,
    NotAuthenticated,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class APIGateway:
    """
    Typed client for the REST backend.

    Usage:
        gateway = APIGateway("https://api.example.com", MemoryCredentialStore())
        await gateway.login("user@example.com", "secret")
        phrases = await gateway.get_phrases()
        await gateway.aclose()

    A custom httpx transport may be injected (MockTransport, ASGITransport)
    for tests and the in-process development backend.
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialStore,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        resource_timeout: float = RESOURCE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        device_model: str | None = None,
    ):
        if request_timeout >= resource_timeout:
            raise ValueError("request_timeout must be shorter than resource_timeout")
        self._base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._resource_timeout = resource_timeout
        self._device_model = device_model or platform.machine() or "unknown"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=request_timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def is_authenticated(self) -> bool:
        return await self._credentials.get_auth_token() is not None

    # =========================================================================
    # Authentication
    # =========================================================================

    async def login(self, email: str, password: str) -> UserDTO:
        response = await self._request(
            "POST", "/api/auth/login",
            body=LoginRequest(email=email, password=password).to_json(),
            authenticated=False,
        )
        auth = self._decode(response, AuthResponse)
        await self._store_session(auth)
        logger.info(f"Logged in as {auth.user.email}")
        return auth.user

    async def signup(self, request: SignupRequest) -> UserDTO:
        response = await self._request(
            "POST", "/api/auth/signup", body=request.to_json(), authenticated=False
        )
        auth = self._decode(response, AuthResponse)
        await self._store_session(auth)
        logger.info(f"Signed up as {auth.user.email}")
        return auth.user

    async def logout(self) -> None:
        """
        Forget the local session.

        A registered device token is unregistered first so the backend stops
        pushing to this device; failing that is logged, not raised.
        """
        device_token = await self._credentials.get_device_token()
        if device_token and await self._credentials.get_auth_token():
            try:
                await self.unregister_device_token(device_token)
            except GatewayError as e:
                logger.warning(f"Could not unregister device token: {e}")
        await self._credentials.clear()
        logger.info("Logged out")

    async def get_profile(self) -> UserDTO:
        return self._decode(await self._request("GET", "/api/auth/profile"), UserDTO)

    async def _store_session(self, auth: AuthResponse) -> None:
        await self._credentials.save_auth_token(auth.token)
        await self._credentials.save_user_email(auth.user.email)

    # =========================================================================
    # Phrases
    # =========================================================================

    async def get_phrases(self, category: str | None = None) -> list[PhraseDTO]:
        """
        Fetch the server phrase list.

        An undecodable envelope raises DecodingFailed. Individual records
        that fail validation are logged and left out of the result.
        """
        params = {"category": category} if category else None
        response = await self._request("GET", "/api/phrases", params=params)
        phrases: list[PhraseDTO] = []
        for record in self._decode(response, PhrasesResponse).phrases:
            try:
                phrases.append(PhraseDTO.model_validate(record))
            except PydanticValidationError as e:
                logger.warning(
                    f"Skipping undecodable phrase {record.get('id', '?')!r}: "
                    f"{e.error_count()} validation errors"
                )
        return phrases

    async def create_phrase(
        self,
        text: str,
        category: str | None = None,
        idempotency_key: str | None = None,
    ) -> PhraseDTO:
        """
        Create a phrase on the server.

        Args:
            idempotency_key: Sent as the Idempotency-Key header; the local
                phrase id, so a retried create maps to the same record.
        """
        headers = {IDEMPOTENCY_HEADER: idempotency_key} if idempotency_key else None
        response = await self._request(
            "POST", "/api/phrases",
            body=CreatePhraseRequest(phrase_text=text, category=category).to_json(),
            headers=headers,
        )
        return self._decode(response, CreatePhraseResponse).phrase

    async def update_phrase(self, server_id: str, updates: UpdatePhraseRequest) -> PhraseDTO:
        response = await self._request(
            "PUT", f"/api/phrases/{server_id}", body=updates.to_json()
        )
        return self._decode(response, PhraseDTO)

    async def delete_phrase(self, server_id: str) -> None:
        await self._request("DELETE", f"/api/phrases/{server_id}")

    # =========================================================================
    # Settings
    # =========================================================================

    async def get_settings(self) -> SettingsDTO:
        response = await self._request("GET", "/api/settings")
        return self._decode(response, SettingsResponse).settings

    async def update_settings(self, settings: SettingsDTO) -> SettingsDTO:
        response = await self._request(
            "PUT", "/api/settings", body={"settings": settings.to_json()}
        )
        return self._decode(response, SettingsResponse).settings

    # =========================================================================
    # Analytics
    # =========================================================================

    async def log_event(self, event: LogEventRequest) -> None:
        response = await self._request("POST", "/api/analytics/log", body=event.to_json())
        self._decode(response, LogEventResponse)

    async def log_events(self, events: list[LogEventRequest]) -> None:
        """
        Upload a batch of usage events.

        The backend accepts one event per request; any failure aborts the
        batch and the caller treats the whole batch as not delivered.
        """
        for event in events:
            await self.log_event(event)

    # =========================================================================
    # Devices and instructions
    # =========================================================================

    async def register_device_token(self, token: str) -> None:
        request = RegisterDeviceRequest(
            token=token, platform=DEVICE_PLATFORM, device_model=self._device_model
        )
        await self._request("POST", "/api/devices/register", body=request.to_json())
        await self._credentials.save_device_token(token)
        logger.info("Registered device token for push delivery")

    async def unregister_device_token(self, token: str) -> None:
        await self._request("DELETE", f"/api/devices/{token}")
        if await self._credentials.get_device_token() == token:
            await self._credentials.delete(DEVICE_TOKEN)

    async def get_pending_instructions(self) -> list[ServerInstruction]:
        response = await self._request("GET", "/api/instructions/pending")
        return self._decode(response, PendingInstructionsResponse).instructions

    async def mark_instruction_processed(self, instruction_id: str) -> None:
        await self._request("POST", f"/api/instructions/{instruction_id}/processed", body={})

    async def send_instruction(self, request: SendInstructionRequest) -> None:
        await self._request("POST", "/api/instructions/send", body=request.to_json())

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(
        self,
        method: str,
        endpoint: str,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if authenticated:
            token = await self._credentials.get_auth_token()
            if not token:
                raise NotAuthenticated()
            request_headers["Authorization"] = f"Bearer {token}"

        try:
            response = await asyncio.wait_for(
                self._client.request(
                    method, endpoint, json=body, params=params, headers=request_headers
                ),
                timeout=self._resource_timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkUnavailable(
                f"Request exceeded {self._resource_timeout}s", endpoint=endpoint
            ) from e
        except httpx.TransportError as e:
            raise NetworkUnavailable(
                f"{type(e).__name__}: {e}", endpoint=endpoint
            ) from e

        if not response.is_success:
            raise HttpError(
                response.status_code,
                endpoint=endpoint,
                server_message=_server_message(response),
            )
        logger.debug(f"{method} {endpoint} -> {response.status_code}")
        return response

    def _decode(self, response: httpx.Response, model: type[M]) -> M:
        endpoint = response.request.url.path
        try:
            return model.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise DecodingFailed(
                f"Unexpected {model.__name__} payload: {e}", endpoint=endpoint
            ) from e


def _server_message(response: httpx.Response) -> str | None:
    try:
        body = APIErrorBody.model_validate(response.json())
    except (ValueError, PydanticValidationError):
        return None
    return body.message or body.error
