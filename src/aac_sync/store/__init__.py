"""
store/__init__.py - Local entity persistence.
"""

from aac_sync.store.entity_store import EntityStore, ORDER_CREATED, ORDER_USAGE

__all__ = [
    "EntityStore",
    "ORDER_CREATED",
    "ORDER_USAGE",
]
