"""Failures that abort the turn in flight.

Every error carries a short ``message`` meant for the person talking to the
assistant. None of them is retried; the engine drops back to ``Idle`` and
listening has to be started again.
"""

from __future__ import annotations


class VoiceChatError(Exception):
    message = "Something went wrong."

    def __init__(self, message: str | None = None, *, detail: str | None = None):
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message if not detail else f"{self.message} ({detail})")


class ConfigurationError(VoiceChatError):
    message = "Please enter your OpenAI API key."


class ConnectivityError(VoiceChatError):
    message = "Error connecting to OpenAI API."


class ResponseFormatError(VoiceChatError):
    message = "Error parsing OpenAI API response."


class RecognitionUnavailableError(VoiceChatError):
    message = "Speech recognition is not available on this device."
