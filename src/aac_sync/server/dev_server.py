"""
dev_server.py - In-memory development backend.

A FastAPI implementation of the REST surface the gateway consumes, for
local development, demos and integration tests. State lives in process
memory and is lost on restart.

Run with:
    aac-sync serve --port 8000
"""

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from aac_sync.api.dto import (
    CreatePhraseRequest,
    LogEventRequest,
    LoginRequest,
    RegisterDeviceRequest,
    SendInstructionRequest,
    SettingsDTO,
    SignupRequest,
    UpdatePhraseRequest,
)
from aac_sync.config import DEFAULT_LANGUAGE, DEFAULT_RESPONSE_MODE

logger = logging.getLogger(__name__)


class APIError(Exception):
    def __init__(self, status: int, error: str, message: str | None = None):
        super().__init__(error)
        self.status = status
        self.error = error
        self.message = message


class UpdateSettingsBody(BaseModel):
    settings: SettingsDTO


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# State
# =============================================================================

@dataclass
class Account:
    id: str
    email: str
    password: str
    full_name: str | None = None
    company_name: str | None = None
    phone: str | None = None
    created_at: str = field(default_factory=_now)
    phrases: dict[str, dict[str, Any]] = field(default_factory=dict)
    idempotency: dict[str, str] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=lambda: {
        "language": DEFAULT_LANGUAGE,
        "voiceSpeed": 1.0,
        "aiEnabled": True,
        "responseMode": DEFAULT_RESPONSE_MODE,
    })
    instructions: list[dict[str, Any]] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    devices: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_user(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "company_name": self.company_name,
            "phone": self.phone,
            "account_status": "active",
            "subscription_tier": "free",
            "created_at": self.created_at,
        }


class InMemoryBackend:
    """Accounts, sessions and per-account data."""

    def __init__(self):
        self.accounts: dict[str, Account] = {}
        self.tokens: dict[str, str] = {}

    def signup(self, email: str, password: str, **profile) -> tuple[str, Account]:
        key = email.lower()
        if key in self.accounts:
            raise APIError(409, "Email already registered")
        account = Account(id=f"usr-{uuid.uuid4().hex[:12]}", email=email, password=password, **profile)
        self.accounts[key] = account
        return self._issue_token(account), account

    def login(self, email: str, password: str) -> tuple[str, Account]:
        account = self.accounts.get(email.lower())
        if account is None or not secrets.compare_digest(account.password, password):
            raise APIError(401, "Invalid credentials", "Email or password is incorrect")
        return self._issue_token(account), account

    def authenticate(self, token: str) -> Account:
        email = self.tokens.get(token)
        if email is None:
            raise APIError(401, "Unauthorized", "Invalid or expired token")
        return self.accounts[email]

    def account_by_id(self, user_id: str) -> Account | None:
        return next((a for a in self.accounts.values() if a.id == user_id), None)

    def _issue_token(self, account: Account) -> str:
        token = secrets.token_urlsafe(24)
        self.tokens[token] = account.email.lower()
        return token


# =============================================================================
# Application
# =============================================================================

def create_app(backend: InMemoryBackend | None = None) -> FastAPI:
    """Build a development backend app around the given state."""
    app = FastAPI(title="AAC Sync Development Backend")
    app.state.backend = backend or InMemoryBackend()

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        body = {"error": exc.error}
        if exc.message:
            body["message"] = exc.message
        return JSONResponse(status_code=exc.status, content=body)

    def get_backend(request: Request) -> InMemoryBackend:
        return request.app.state.backend

    def current_account(
        request: Request,
        authorization: str | None = Header(default=None),
    ) -> Account:
        if not authorization or not authorization.startswith("Bearer "):
            raise APIError(401, "Unauthorized", "Missing bearer token")
        return get_backend(request).authenticate(authorization[len("Bearer "):])

    @app.api_route("/", methods=["GET", "HEAD"])
    async def root():
        return {"status": "ok", "service": "aac-sync-dev"}

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    # --- auth ---------------------------------------------------------------

    @app.post("/api/auth/login")
    async def login(body: LoginRequest, backend: InMemoryBackend = Depends(get_backend)):
        token, account = backend.login(body.email, body.password)
        return {"token": token, "user": account.to_user()}

    @app.post("/api/auth/signup")
    async def signup(body: SignupRequest, backend: InMemoryBackend = Depends(get_backend)):
        token, account = backend.signup(
            body.email,
            body.password,
            full_name=body.full_name,
            company_name=body.company_name,
            phone=body.phone,
        )
        logger.info(f"Registered account {account.email}")
        return {"token": token, "user": account.to_user()}

    @app.get("/api/auth/profile")
    async def profile(account: Account = Depends(current_account)):
        return account.to_user()

    # --- phrases ------------------------------------------------------------

    @app.get("/api/phrases")
    async def list_phrases(category: str | None = None, account: Account = Depends(current_account)):
        phrases = [
            p for p in account.phrases.values()
            if category is None or p["category"] == category
        ]
        return {"phrases": phrases}

    @app.post("/api/phrases")
    async def create_phrase(
        body: CreatePhraseRequest,
        account: Account = Depends(current_account),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ):
        if idempotency_key and idempotency_key in account.idempotency:
            existing = account.phrases.get(account.idempotency[idempotency_key])
            if existing is not None:
                return {"phrase": existing}
        now = _now()
        phrase = {
            "id": f"phr-{uuid.uuid4().hex[:12]}",
            "phrase_text": body.phrase_text,
            "category": body.category,
            "usage_count": 0,
            "is_favorite": False,
            "created_at": now,
            "updated_at": now,
        }
        account.phrases[phrase["id"]] = phrase
        if idempotency_key:
            account.idempotency[idempotency_key] = phrase["id"]
        return {"phrase": phrase}

    @app.put("/api/phrases/{phrase_id}")
    async def update_phrase(
        phrase_id: str, body: UpdatePhraseRequest, account: Account = Depends(current_account)
    ):
        phrase = _phrase_or_404(account, phrase_id)
        if body.phrase_text is not None:
            phrase["phrase_text"] = body.phrase_text
        if body.category is not None:
            phrase["category"] = body.category
        if body.usage_count is not None:
            phrase["usage_count"] = body.usage_count
        if body.is_favorite is not None:
            phrase["is_favorite"] = body.is_favorite
        phrase["updated_at"] = _now()
        return phrase

    @app.delete("/api/phrases/{phrase_id}", status_code=204)
    async def delete_phrase(phrase_id: str, account: Account = Depends(current_account)):
        _phrase_or_404(account, phrase_id)
        del account.phrases[phrase_id]
        return Response(status_code=204)

    @app.post("/api/phrases/{phrase_id}/increment-usage")
    async def increment_usage(phrase_id: str, account: Account = Depends(current_account)):
        phrase = _phrase_or_404(account, phrase_id)
        phrase["usage_count"] += 1
        phrase["updated_at"] = _now()
        return {}

    # --- settings -----------------------------------------------------------

    @app.get("/api/settings")
    async def get_settings(account: Account = Depends(current_account)):
        return {"settings": account.settings}

    @app.put("/api/settings")
    async def put_settings(body: UpdateSettingsBody, account: Account = Depends(current_account)):
        account.settings.update(body.settings.to_json())
        return {"settings": account.settings}

    # --- analytics ----------------------------------------------------------

    @app.post("/api/analytics/log")
    async def log_event(body: LogEventRequest, account: Account = Depends(current_account)):
        account.events.append({**body.to_json(), "received_at": _now()})
        return {"success": True}

    # --- devices and instructions --------------------------------------------

    @app.post("/api/devices/register")
    async def register_device(body: RegisterDeviceRequest, account: Account = Depends(current_account)):
        account.devices[body.token] = body.to_json()
        return {}

    @app.delete("/api/devices/{token}", status_code=204)
    async def unregister_device(token: str, account: Account = Depends(current_account)):
        account.devices.pop(token, None)
        return Response(status_code=204)

    @app.get("/api/instructions/pending")
    async def pending_instructions(account: Account = Depends(current_account)):
        pending = [
            {k: v for k, v in i.items() if k != "processed"}
            for i in account.instructions if not i["processed"]
        ]
        return {"instructions": pending}

    @app.post("/api/instructions/{instruction_id}/processed")
    async def mark_processed(instruction_id: str, account: Account = Depends(current_account)):
        for instruction in account.instructions:
            if instruction["id"] == instruction_id:
                instruction["processed"] = True
                return {}
        raise APIError(404, "Instruction not found")

    @app.post("/api/instructions/send")
    async def send_instruction(
        body: SendInstructionRequest,
        account: Account = Depends(current_account),
        backend: InMemoryBackend = Depends(get_backend),
    ):
        target = backend.account_by_id(body.target_user_id)
        if target is None:
            raise APIError(404, "Target user not found")
        target.instructions.append({
            "id": f"ins-{uuid.uuid4().hex[:12]}",
            "type": body.type,
            "data": body.payload,
            "created_at": _now(),
            "sender": account.id,
            "processed": False,
        })
        return {}

    return app


def _phrase_or_404(account: Account, phrase_id: str) -> dict[str, Any]:
    phrase = account.phrases.get(phrase_id)
    if phrase is None:
        raise APIError(404, "Phrase not found")
    return phrase
