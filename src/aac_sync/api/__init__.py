"""
api/__init__.py - Remote API gateway, wire DTOs and credential storage.
"""

from aac_sync.api.client import APIGateway
from aac_sync.api.credentials import (
    CredentialStore,
    EncryptedFileCredentialStore,
    MemoryCredentialStore,
)

__all__ = [
    "APIGateway",
    "CredentialStore",
    "EncryptedFileCredentialStore",
    "MemoryCredentialStore",
]
