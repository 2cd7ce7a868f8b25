"""
speech.py - Speech output collaborators.
"""

import logging
from typing import Protocol

from rich.console import Console

logger = logging.getLogger(__name__)


class SpeechOutput(Protocol):
    async def speak(self, text: str, language: str = "en-US", rate: float = 1.0) -> None:
        ...

    def stop(self) -> None:
        ...


class ConsoleSpeechOutput:
    """Renders utterances to the terminal in place of a synthesizer."""

    def __init__(self, console: Console | None = None):
        self._console = console or Console()
        self.spoken: list[str] = []

    async def speak(self, text: str, language: str = "en-US", rate: float = 1.0) -> None:
        self.spoken.append(text)
        logger.debug(f"Speaking {text!r} ({language}, rate={rate})")
        self._console.print(f"[bold magenta]🔊 {text}[/bold magenta] [dim]({language}, x{rate:g})[/dim]")

    def stop(self) -> None:
        pass
