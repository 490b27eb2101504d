"""Secondary-device side of the command relay.

Sends ``startRecognition`` / ``stopRecognition`` to the phone running
``voicechat.main --serve`` and prints the recognized text.

Example:
    python -m voicechat.remote start --url http://192.168.1.20:8765
"""
from __future__ import annotations

import argparse
import os
from typing import Optional

import httpx
from loguru import logger

_RELAY_URL = os.environ.get("RELAY_URL") or "http://127.0.0.1:8765"
_RELAY_KEY = os.environ.get("RELAY_KEY")


class RelayClient:
    def __init__(
        self,
        base_url: str = _RELAY_URL,
        api_key: Optional[str] = _RELAY_KEY,
        timeout: float = 90.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _send(self, command: str) -> Optional[dict]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Agent-Key"] = self.api_key
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.post(f"{self.base_url}/relay", json={"command": command}, headers=headers)
                r.raise_for_status()
                return r.json()
        except Exception as e:
            # unreachable peer is expected; the device just shows nothing
            logger.error(f"[remote] error sending {command} command: {e}")
            return None

    def start_recognition(self) -> Optional[str]:
        data = self._send("startRecognition")
        if data is None:
            return None
        text = data.get("recognizedText")
        return text if isinstance(text, str) else None

    def stop_recognition(self) -> bool:
        return self._send("stopRecognition") is not None


def main() -> int:
    parser = argparse.ArgumentParser(description="Start/stop recognition on the paired phone")
    parser.add_argument("command", choices=["start", "stop"])
    parser.add_argument("--url", default=_RELAY_URL, help="Relay base URL")
    parser.add_argument("--key", default=_RELAY_KEY, help="Relay X-Agent-Key")
    args = parser.parse_args()

    client = RelayClient(args.url, args.key)
    if args.command == "start":
        text = client.start_recognition()
        if text is None:
            return 1
        print(f"Recognized Text: {text}")
        return 0
    return 0 if client.stop_recognition() else 1


if __name__ == "__main__":  # pragma: no cover - manual execution
    raise SystemExit(main())
