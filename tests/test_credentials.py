"""
test_credentials.py - Tests for credential storage.
"""

import asyncio
import os
import stat

import pytest

from aac_sync.api.credentials import (
    GEMINI_API_KEY,
    EncryptedFileCredentialStore,
    MemoryCredentialStore,
)
from aac_sync.errors import CredentialStoreError


class TestMemoryCredentialStore:

    def test_clear_keeps_unrelated_keys(self):
        store = MemoryCredentialStore({GEMINI_API_KEY: "key"})

        async def scenario():
            await store.save_auth_token("tok")
            await store.save_user_email("user@example.com")
            await store.clear()
            return (
                await store.get_auth_token(),
                await store.get_user_email(),
                await store.get(GEMINI_API_KEY),
            )

        assert asyncio.run(scenario()) == (None, None, "key")


class TestEncryptedFileCredentialStore:

    def test_values_survive_a_new_instance(self, temp_dir):
        path = os.path.join(temp_dir, "creds.bin")
        asyncio.run(EncryptedFileCredentialStore(path, "device-secret").save_auth_token("tok"))

        reopened = EncryptedFileCredentialStore(path, "device-secret")

        assert asyncio.run(reopened.get_auth_token()) == "tok"

    def test_file_is_not_plaintext(self, temp_dir):
        path = os.path.join(temp_dir, "creds.bin")
        asyncio.run(EncryptedFileCredentialStore(path, "device-secret").save_auth_token("tok-plain"))

        with open(path, "rb") as f:
            assert b"tok-plain" not in f.read()
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_wrong_secret_is_rejected(self, temp_dir):
        path = os.path.join(temp_dir, "creds.bin")
        asyncio.run(EncryptedFileCredentialStore(path, "right").save_auth_token("tok"))

        with pytest.raises(CredentialStoreError):
            asyncio.run(EncryptedFileCredentialStore(path, "wrong").get_auth_token())

    def test_truncated_file_is_rejected(self, temp_dir):
        path = os.path.join(temp_dir, "creds.bin")
        with open(path, "wb") as f:
            f.write(b"short")

        with pytest.raises(CredentialStoreError):
            asyncio.run(EncryptedFileCredentialStore(path, "secret").get_auth_token())

    def test_empty_secret_is_rejected(self, temp_dir):
        with pytest.raises(CredentialStoreError):
            EncryptedFileCredentialStore(os.path.join(temp_dir, "creds.bin"), "")

    def test_missing_file_reads_empty(self, temp_dir):
        store = EncryptedFileCredentialStore(os.path.join(temp_dir, "absent.bin"), "secret")

        assert asyncio.run(store.get_auth_token()) is None
