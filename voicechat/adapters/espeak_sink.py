"""eSpeak NG speech output with segmentation and pronunciation dictionary."""

from __future__ import annotations

import asyncio
import re
import shutil
from dataclasses import dataclass
from typing import Callable, List, Optional

from loguru import logger


@dataclass
class SpeechConfig:
    """Configuration for eSpeak NG playback."""

    voice: str = "en-us"
    rate: int = 0  # offset from espeak's ~175 wpm
    pitch: int = 50
    volume: int = 100
    word_gap_ms: int = 10
    buffer_ms: int = 150
    command: str = "espeak-ng"


# Pronunciation dictionary rules
_REPLACEMENTS: List[tuple[re.Pattern[str], Callable[[re.Match[str]], str]]] = [
    (re.compile(r"(\d+)\s*GB\b"), lambda m: f"{m.group(1)} gigabytes"),
    (re.compile(r"(\d+)\s*MB\b"), lambda m: f"{m.group(1)} megabytes"),
    (re.compile(r"(\d+)%"), lambda m: f"{m.group(1)} percent"),
    (re.compile(r"°C"), lambda m: " degrees Celsius"),
    (re.compile(r"°F"), lambda m: " degrees Fahrenheit"),
    (re.compile(r"\be\.g\.", re.IGNORECASE), lambda m: "for example"),
    (re.compile(r"\bi\.e\.", re.IGNORECASE), lambda m: "that is"),
    (re.compile(r"\bURL\b"), lambda m: "U R L"),
    (re.compile(r"\bAPI\b"), lambda m: "A P I"),
    (re.compile(r"\bAI\b"), lambda m: "A I"),
    (re.compile(r"\bLLM\b"), lambda m: "L L M"),
]

# markdown the model sometimes emits; read aloud it is noise
_MARKUP = re.compile(r"[*_`#>]+")


def _apply_dict(text: str) -> str:
    out = _MARKUP.sub("", text)
    for pat, repl in _REPLACEMENTS:
        out = pat.sub(repl, out)
    return out


def _segment(text: str) -> List[str]:
    # split by sentence-ending punctuation and, for long lists, by commas
    parts: List[str] = []
    for sent in re.split(r"(?<=[.!?])\s+|\n+", text):
        sent = sent.strip()
        if not sent:
            continue
        if sent.count(",") >= 2:
            parts.extend(p.strip() for p in sent.split(",") if p.strip())
        else:
            parts.append(sent)
    return parts


class EspeakSpeechSink:
    """Speak one segment per ``espeak-ng`` process; ``interrupt`` kills it."""

    def __init__(self, config: SpeechConfig | None = None) -> None:
        self.cfg = config or SpeechConfig()
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._interrupted = False

    def available(self) -> bool:
        return shutil.which(self.cfg.command) is not None

    def _command(self, segment: str) -> List[str]:
        speed = 175 + int(self.cfg.rate)  # espeak default ~175 wpm
        return [
            self.cfg.command,
            "-v",
            self.cfg.voice,
            "-s",
            str(speed),
            "-p",
            str(self.cfg.pitch),
            "-a",
            str(self.cfg.volume),
            "-g",
            str(self.cfg.word_gap_ms),
            segment,
        ]

    async def speak(self, text: str) -> None:
        if not self.available():
            logger.warning(f"[tts] {self.cfg.command} not found; reply not spoken")
            return
        self._interrupted = False
        for seg in _segment(_apply_dict(text)):
            if self._interrupted:
                break
            self._proc = await asyncio.create_subprocess_exec(
                *self._command(seg),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            try:
                await self._proc.wait()
            except asyncio.CancelledError:
                self.interrupt()
                raise
            finally:
                self._proc = None
            if not self._interrupted:
                await asyncio.sleep(self.cfg.buffer_ms / 1000.0)

    def interrupt(self) -> None:
        self._interrupted = True
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            logger.debug("[tts] playback interrupted")
