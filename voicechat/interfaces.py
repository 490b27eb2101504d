"""Collaborators the turn-taking engine drives.

The engine holds no microphone, speaker or network handles of its own. It only
talks to these three protocols, so tests and alternative platforms can supply
their own implementations.
"""

from __future__ import annotations

from typing import AsyncIterator, List, Protocol

from .schemas import ConversationTurn, TranscriptUpdate


class TranscriptSource(Protocol):
    """Microphone capture plus speech recognition for one utterance at a time."""

    async def begin(self) -> AsyncIterator[TranscriptUpdate]:
        """Acquire the microphone and return the stream of transcript updates.

        Raises ``RecognitionUnavailableError`` when no recognizer or input
        device can be used.
        """
        ...

    async def end(self) -> None:
        """Release the microphone. Safe to call when nothing is active."""
        ...


class ChatCompletionClient(Protocol):
    async def complete(self, turns: List[ConversationTurn]) -> ConversationTurn:
        ...


class SpeechOutputSink(Protocol):
    async def speak(self, text: str) -> None:
        """Play ``text``; returns when playback finished or was interrupted."""
        ...

    def interrupt(self) -> None:
        """Stop playback now without waiting for audio to drain."""
        ...
