"""
credentials.py - Secure storage for the bearer token and account email.

Provides:
- MemoryCredentialStore for tests and ephemeral sessions
- EncryptedFileCredentialStore: AES-256-GCM at rest, PBKDF2-derived key
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from aac_sync.errors import CredentialStoreError

logger = logging.getLogger(__name__)

AUTH_TOKEN = "auth_token"
USER_EMAIL = "user_email"
DEVICE_TOKEN = "device_token"
GEMINI_API_KEY = "gemini_api_key"


class CredentialStore(ABC):
    """
    Key/value secret storage.

    Access is serialized through an asyncio.Lock so at most one
    read-modify-write is in flight per store.
    """

    def __init__(self):
        self._lock = asyncio.Lock()

    @abstractmethod
    def _load(self) -> dict[str, str]:
        pass

    @abstractmethod
    def _save(self, values: dict[str, str]) -> None:
        pass

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            values = self._load()
            values[key] = value
            self._save(values)

    async def delete(self, key: str) -> None:
        async with self._lock:
            values = self._load()
            if values.pop(key, None) is not None:
                self._save(values)

    async def get_auth_token(self) -> str | None:
        return await self.get(AUTH_TOKEN)

    async def save_auth_token(self, token: str) -> None:
        await self.set(AUTH_TOKEN, token)

    async def get_user_email(self) -> str | None:
        return await self.get(USER_EMAIL)

    async def save_user_email(self, email: str) -> None:
        await self.set(USER_EMAIL, email)

    async def get_device_token(self) -> str | None:
        return await self.get(DEVICE_TOKEN)

    async def save_device_token(self, token: str) -> None:
        await self.set(DEVICE_TOKEN, token)

    async def clear(self) -> None:
        """Remove account credentials (token, email, device token); other keys survive."""
        async with self._lock:
            values = self._load()
            for key in (AUTH_TOKEN, USER_EMAIL, DEVICE_TOKEN):
                values.pop(key, None)
            self._save(values)


class MemoryCredentialStore(CredentialStore):
    """Credentials held in process memory only."""

    def __init__(self, initial: dict[str, str] | None = None):
        super().__init__()
        self._values = dict(initial or {})

    def _load(self) -> dict[str, str]:
        return dict(self._values)

    def _save(self, values: dict[str, str]) -> None:
        self._values = dict(values)


class EncryptedFileCredentialStore(CredentialStore):
    """
    Credentials encrypted at rest in a single file.

    File layout: salt (16) || nonce (12) || AES-GCM ciphertext of a JSON map.
    The key is derived from the device secret with PBKDF2-SHA256.
    """

    SALT_SIZE = 16
    NONCE_SIZE = 12
    KDF_ITERATIONS = 100_000

    def __init__(self, path: str, secret: str):
        super().__init__()
        if not secret:
            raise CredentialStoreError("A device secret is required for the credential store")
        self._path = path
        self._secret = secret

    def _load(self) -> dict[str, str]:
        if not os.path.exists(self._path):
            return {}
        try:
            with open(self._path, "rb") as f:
                blob = f.read()
        except OSError as e:
            raise CredentialStoreError(f"Cannot read credential store: {e}") from e

        header = self.SALT_SIZE + self.NONCE_SIZE
        if len(blob) <= header:
            raise CredentialStoreError("Credential store is truncated")
        salt, nonce, ciphertext = blob[:self.SALT_SIZE], blob[self.SALT_SIZE:header], blob[header:]
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise CredentialStoreError("Credential store cannot be decrypted with this secret") from e
        return json.loads(plaintext.decode("utf-8"))

    def _save(self, values: dict[str, str]) -> None:
        salt = os.urandom(self.SALT_SIZE)
        nonce = os.urandom(self.NONCE_SIZE)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(
            nonce, json.dumps(values).encode("utf-8"), None
        )
        tmp_path = f"{self._path}.tmp"
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(salt + nonce + ciphertext)
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise CredentialStoreError(f"Cannot write credential store: {e}") from e
        logger.debug(f"Credential store written to {self._path}")

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.KDF_ITERATIONS,
        )
        return kdf.derive(self._secret.encode())
