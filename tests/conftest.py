"""
conftest.py - pytest fixtures for aac_sync tests.

FakeBackend is an in-process stand-in for the REST backend, mounted on
httpx.MockTransport. Tests inject failures per endpoint and inspect the
requests the client made.
"""

import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Callable

import httpx
import pytest

from aac_sync.api.client import APIGateway
from aac_sync.api.credentials import MemoryCredentialStore
from aac_sync.board import PhraseBoard, Session, SettingsService
from aac_sync.events import EventBus, EventRecorder
from aac_sync.metrics import get_registry
from aac_sync.reachability import ConnectionType, ReachabilityMonitor
from aac_sync.store import EntityStore
from aac_sync.sync.engine import SyncEngine

BASE_URL = "http://backend.test"
TOKEN = "test-token"

# Failure kinds accepted by FakeBackend.fail()
NETWORK = "network"      # connect error, the server never sees the request
LOST = "lost"            # the server applies the request, the response is lost
GARBAGE = "garbage"      # 200 with a body matching no schema


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeBackend:
    """In-memory REST backend with failure injection."""

    def __init__(self):
        self.phrases: dict[str, dict] = {}
        self.idempotency: dict[str, str] = {}
        self.settings = {
            "language": "English",
            "voiceSpeed": 1.0,
            "aiEnabled": True,
            "responseMode": "general",
        }
        self.events: list[dict] = []
        self.instructions: list[dict] = []
        self.acknowledged: list[str] = []
        self.requests: list[tuple[str, str]] = []
        self.hooks: dict[tuple[str, str], Callable[[], None]] = {}
        self._failures: list[list] = []
        self._next_id = 1

    # --- test controls -------------------------------------------------------

    def fail(self, method: str, path: str, kind, times: int | None = None) -> None:
        """Fail matching requests; kind is NETWORK, LOST, GARBAGE or an HTTP status."""
        self._failures.append([method, path, kind, times])

    def add_phrase(self, text: str, server_id: str | None = None, **fields) -> dict:
        server_id = server_id or self._new_id()
        now = _now()
        phrase = {
            "id": server_id,
            "phrase_text": text,
            "category": None,
            "usage_count": 0,
            "is_favorite": False,
            "created_at": now,
            "updated_at": now,
        }
        phrase.update(fields)
        self.phrases[server_id] = phrase
        return phrase

    def count(self, method: str, path: str | None = None) -> int:
        return sum(1 for m, p in self.requests if m == method and (path is None or p == path))

    # --- transport -------------------------------------------------------------

    async def handle(self, request: httpx.Request) -> httpx.Response:
        # Every request yields once, as a real network round-trip would
        await asyncio.sleep(0)
        method, path = request.method, request.url.path
        self.requests.append((method, path))

        hook = self.hooks.get((method, path))
        if hook is not None:
            hook()

        failure = self._take_failure(method, path)
        if failure == NETWORK:
            raise httpx.ConnectError("connection refused", request=request)
        if failure == GARBAGE:
            return httpx.Response(200, json={"unexpected": True})
        if isinstance(failure, int):
            return httpx.Response(failure, json={"error": "Injected", "message": f"status {failure}"})

        if method == "HEAD":
            return httpx.Response(200)
        authorized = request.headers.get("Authorization") == f"Bearer {TOKEN}"
        if path.startswith("/api/") and path != "/api/auth/login" and not authorized:
            return httpx.Response(401, json={"error": "Unauthorized"})

        response = self._route(request, method, path)
        if failure == LOST:
            raise httpx.ReadError("connection reset", request=request)
        return response

    def _take_failure(self, method: str, path: str):
        for rule in self._failures:
            if rule[0] == method and rule[1] == path and rule[3] != 0:
                if rule[3] is not None:
                    rule[3] -= 1
                return rule[2]
        return None

    def _route(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        parts = path.strip("/").split("/")

        if path == "/api/auth/login":
            if body.get("password") != "secret":
                return httpx.Response(401, json={"error": "Invalid credentials"})
            return httpx.Response(200, json={"token": TOKEN, "user": self._user(body["email"])})
        if path == "/api/auth/profile":
            return httpx.Response(200, json=self._user("user@example.com"))

        if path == "/api/phrases" and method == "GET":
            return httpx.Response(200, json={"phrases": list(self.phrases.values())})
        if path == "/api/phrases" and method == "POST":
            key = request.headers.get("Idempotency-Key")
            if key and key in self.idempotency:
                return httpx.Response(200, json={"phrase": self.phrases[self.idempotency[key]]})
            phrase = self.add_phrase(body["phraseText"], category=body.get("category"))
            if key:
                self.idempotency[key] = phrase["id"]
            return httpx.Response(200, json={"phrase": phrase})
        if parts[:2] == ["api", "phrases"] and len(parts) == 3:
            phrase = self.phrases.get(parts[2])
            if phrase is None:
                return httpx.Response(404, json={"error": "Phrase not found"})
            if method == "DELETE":
                del self.phrases[parts[2]]
                return httpx.Response(204)
            if method == "PUT":
                for key, field in (
                    ("phraseText", "phrase_text"),
                    ("category", "category"),
                    ("usageCount", "usage_count"),
                    ("isFavorite", "is_favorite"),
                ):
                    if key in body:
                        phrase[field] = body[key]
                phrase["updated_at"] = _now()
                return httpx.Response(200, json=phrase)

        if path == "/api/settings" and method == "GET":
            return httpx.Response(200, json={"settings": self.settings})
        if path == "/api/settings" and method == "PUT":
            self.settings.update(body["settings"])
            return httpx.Response(200, json={"settings": self.settings})

        if path == "/api/analytics/log":
            self.events.append(body)
            return httpx.Response(200, json={"success": True})

        if path == "/api/instructions/pending":
            pending = [i for i in self.instructions if i["id"] not in self.acknowledged]
            return httpx.Response(200, json={"instructions": pending})
        if parts[:2] == ["api", "instructions"] and parts[-1] == "processed":
            self.acknowledged.append(parts[2])
            return httpx.Response(200, json={})

        return httpx.Response(404, json={"error": "Not found"})

    def _new_id(self) -> str:
        server_id = f"srv-{self._next_id}"
        self._next_id += 1
        return server_id

    @staticmethod
    def _user(email: str) -> dict:
        return {
            "id": "usr-1",
            "email": email,
            "account_status": "active",
            "subscription_tier": "free",
            "created_at": "2024-01-15T10:30:00Z",
        }


@pytest.fixture(autouse=True)
def reset_metrics():
    get_registry().reset()
    yield


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test databases."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store(temp_dir):
    store = EntityStore(os.path.join(temp_dir, "board.db"))
    store.open()
    yield store
    store.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def transport(backend):
    return httpx.MockTransport(backend.handle)


@pytest.fixture
def credentials():
    return MemoryCredentialStore({"auth_token": TOKEN})


@pytest.fixture
def gateway(transport, credentials):
    return APIGateway(BASE_URL, credentials, transport=transport)


@pytest.fixture
def reachability():
    return ReachabilityMonitor(connected=True, connection_type=ConnectionType.WIFI)


@pytest.fixture
def engine(store, gateway, reachability, bus):
    return SyncEngine(store, gateway, reachability, bus)


@pytest.fixture
def board(store, bus):
    return PhraseBoard(store, bus, Session(id="session-1"))


@pytest.fixture
def settings_service(store, board):
    return SettingsService(store, board)
