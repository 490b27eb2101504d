from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional

import httpx
from loguru import logger

from .errors import ConfigurationError, ConnectivityError, ResponseFormatError
from .schemas import ConversationTurn


@dataclass
class ChatConfig:
    """Chat completion endpoint settings."""

    endpoint: str = "https://api.openai.com/v1"
    model: str = "gpt-3.5-turbo"
    api_key: str = ""
    timeout: float = 30.0


class OpenAIChatClient:
    """POSTs the whole conversation to ``{endpoint}/chat/completions``.

    One request per call; failures are mapped onto the engine's error types and
    never retried here.
    """

    def __init__(self, config: ChatConfig | None = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cfg = config or ChatConfig()
        self.transport = transport

    @property
    def api_key(self) -> str:
        return (self.cfg.api_key or os.environ.get("OPENAI_API_KEY", "")).strip()

    async def complete(self, turns: List[ConversationTurn]) -> ConversationTurn:
        api_key = self.api_key
        if not api_key:
            raise ConfigurationError()

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        payload = {
            "model": self.cfg.model,
            "messages": [t.model_dump() for t in turns],
        }
        url = f"{self.cfg.endpoint.rstrip('/')}/chat/completions"

        timeout = httpx.Timeout(self.cfg.timeout, connect=min(10.0, self.cfg.timeout))
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                r = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"[chat] request timed out after {self.cfg.timeout}s: {e}")
            raise ConnectivityError(detail="timeout") from e
        except httpx.HTTPError as e:
            logger.warning(f"[chat] transport error: {e}")
            raise ConnectivityError(detail=str(e)) from e

        if not (200 <= r.status_code < 300):
            logger.warning(f"[chat] HTTP {r.status_code}: {r.text[:200]}")
            raise ConnectivityError("Error: Invalid API key or server error.", detail=f"HTTP {r.status_code}")

        try:
            data = r.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"[chat] unexpected response body: {r.text[:200]}")
            raise ResponseFormatError(detail=repr(e)) from e
        if not isinstance(content, str):
            raise ResponseFormatError(detail="content is not a string")

        logger.debug(f"[chat] {self.cfg.model} replied with {len(content)} chars")
        return ConversationTurn(role="assistant", content=content.strip())
