"""
server/__init__.py - Development backend.
"""

from aac_sync.server.dev_server import InMemoryBackend, create_app

__all__ = ["InMemoryBackend", "create_app"]
