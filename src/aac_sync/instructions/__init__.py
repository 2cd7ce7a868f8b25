"""
instructions/__init__.py - Remote instruction parsing and dispatch.
"""

from aac_sync.instructions.dispatcher import (
    DISCARDED,
    DUPLICATE,
    PROCESSED,
    InstructionDispatcher,
)
from aac_sync.instructions.models import (
    Emergency,
    Instruction,
    LoadContextPack,
    SpeakMessage,
    SyncPhrases,
    UpdatePhrases,
    UpdateSettings,
    parse_instruction,
)

__all__ = [
    "DISCARDED",
    "DUPLICATE",
    "PROCESSED",
    "Emergency",
    "Instruction",
    "InstructionDispatcher",
    "LoadContextPack",
    "SpeakMessage",
    "SyncPhrases",
    "UpdatePhrases",
    "UpdateSettings",
    "parse_instruction",
]
