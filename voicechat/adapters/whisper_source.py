"""Microphone transcript source using faster-whisper.

Audio is captured with a ``sounddevice.RawInputStream``. A worker thread keeps
the utterance heard so far in one buffer and re-transcribes the whole buffer
every ``block_ms``, so each update carries the full partial text for the
utterance. An update is posted only when the text changes; silence therefore
produces no updates, which is what lets the engine's debounce timer expire.

With ``continuous=False`` the source decides utterance ends itself: the first
silent block after speech is reported as ``is_final=True``.

``UtteranceTranscriber`` accepts a pre-instantiated model, so unit tests can
inject stubs without requiring the Whisper weights.
"""
from __future__ import annotations

import asyncio
import queue
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import numpy as np
from loguru import logger

try:
    import sounddevice as sd
except Exception:
    sd = None

try:  # faster-whisper is optional for import-time
    from faster_whisper import WhisperModel
except Exception:  # pragma: no cover - handled gracefully
    WhisperModel = None

from ..errors import RecognitionUnavailableError
from ..schemas import TranscriptUpdate


@dataclass
class WhisperConfig:
    """Configuration for microphone STT."""

    model: str = "small.en"
    device: str = "cpu"
    compute_type: str = "int8"
    language: str = "en"
    beam_size: int = 3
    sample_rate: int = 16_000
    block_ms: int = 1_000  # re-transcribe every N milliseconds
    device_index: Optional[int] = None
    continuous: bool = True
    silence_rms: float = 0.01
    max_utterance_sec: float = 30.0


class UtteranceTranscriber:
    """Turn PCM16 blocks into transcript updates for one utterance."""

    def __init__(self, model, config: WhisperConfig | None = None) -> None:
        self.model = model
        self.cfg = config or WhisperConfig()
        self.buf = bytearray()
        self.last_text = ""

    def reset(self) -> None:
        self.buf.clear()
        self.last_text = ""

    def feed(self, pcm16: bytes) -> Optional[TranscriptUpdate]:
        block = np.frombuffer(pcm16, dtype=np.int16).astype(np.float32) / 32768.0
        rms = float(np.sqrt(np.mean(block * block))) if block.size else 0.0
        if rms < self.cfg.silence_rms:
            if not self.last_text:
                self.buf.clear()  # leading silence
                return None
            if not self.cfg.continuous:
                return TranscriptUpdate(text=self.last_text, is_final=True)
            return None

        self.buf.extend(pcm16)
        text = self.transcribe(bytes(self.buf))
        too_long = len(self.buf) >= self.cfg.max_utterance_sec * self.cfg.sample_rate * 2
        if too_long:
            if text or self.last_text:
                logger.info("[stt] utterance reached max length; finalizing")
                return TranscriptUpdate(text=text or self.last_text, is_final=True)
            logger.debug("[stt] max length reached without speech; dropping audio")
            self.reset()
            return None
        if text and text != self.last_text:
            self.last_text = text
            return TranscriptUpdate(text=text)
        return None

    def transcribe(self, pcm16: bytes) -> str:
        """Transcribe a chunk of PCM16 mono audio."""
        audio = np.frombuffer(pcm16, dtype=np.int16).astype(np.float32) / 32768.0
        language = None if self.cfg.language == "auto" else self.cfg.language
        segments, _ = self.model.transcribe(
            audio,
            language=language,
            beam_size=self.cfg.beam_size,
            condition_on_previous_text=False,
        )
        return "".join(seg.text for seg in segments).strip()


def _select_input_device(device_index: Optional[int]) -> Optional[int]:
    """Return a microphone device index, auto-detecting when unspecified."""
    if device_index is not None:
        return device_index
    if sd is None:
        return None
    try:
        default = sd.default.device  # type: ignore[attr-defined]
        if isinstance(default, (tuple, list)):
            default_in = default[0]
        else:
            default_in = default
        if default_in is not None and default_in >= 0:
            return int(default_in)
    except Exception:
        pass
    try:
        devices = sd.query_devices()  # pragma: no cover - environment dependent
        for i, dev in enumerate(devices):
            if dev.get("max_input_channels", 0) > 0:
                return i
    except Exception:  # pragma: no cover - environment dependent
        pass
    return None


class WhisperTranscriptSource:
    """One exclusive microphone capture at a time."""

    def __init__(self, config: WhisperConfig | None = None, model=None) -> None:
        self.cfg = config or WhisperConfig()
        self._model = model
        self._stream = None
        self._worker: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def _load_model(self):
        if self._model is None:
            if WhisperModel is None:
                raise RecognitionUnavailableError(detail="faster-whisper is not installed")
            logger.info(f"[stt] loading Whisper model: {self.cfg.model}")
            self._model = WhisperModel(self.cfg.model, device=self.cfg.device, compute_type=self.cfg.compute_type)
        return self._model

    async def begin(self) -> AsyncIterator[TranscriptUpdate]:
        await self.end()
        if sd is None:
            raise RecognitionUnavailableError(detail="sounddevice is not installed")
        model = await asyncio.to_thread(self._load_model)
        device = _select_input_device(self.cfg.device_index)
        if device is None:
            raise RecognitionUnavailableError(detail="no input device found")

        loop = asyncio.get_running_loop()
        updates: asyncio.Queue = asyncio.Queue()
        blocks: "queue.Queue[bytes]" = queue.Queue()
        transcriber = UtteranceTranscriber(model, self.cfg)
        stop = threading.Event()

        def callback(indata, frames, time, status):  # pragma: no cover - realtime
            blocks.put(bytes(indata))

        def worker():  # pragma: no cover - realtime loop
            while not stop.is_set():
                try:
                    chunk = blocks.get(timeout=0.1)
                except queue.Empty:
                    continue
                try:
                    update = transcriber.feed(chunk)
                except Exception as ex:
                    loop.call_soon_threadsafe(updates.put_nowait, ex)
                    return
                if update is not None and not stop.is_set():
                    loop.call_soon_threadsafe(updates.put_nowait, update)

        blocksize = int(self.cfg.sample_rate * (self.cfg.block_ms / 1000))
        try:
            stream = sd.RawInputStream(
                samplerate=self.cfg.sample_rate,
                blocksize=blocksize,
                dtype="int16",
                channels=1,
                callback=callback,
                device=device,
            )
            stream.start()
        except Exception as ex:
            raise RecognitionUnavailableError(detail=str(ex)) from ex

        self._stream = stream
        self._stop = stop
        self._worker = threading.Thread(target=worker, daemon=True)
        self._worker.start()
        logger.info(f"[stt] listening on input device {device}")
        return self._updates(updates)

    async def _updates(self, updates: asyncio.Queue) -> AsyncIterator[TranscriptUpdate]:
        while True:
            item = await updates.get()
            if isinstance(item, Exception):
                raise RecognitionUnavailableError(detail=str(item)) from item
            yield item

    async def end(self) -> None:
        self._stop.set()
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as ex:
                logger.debug(f"[stt] stream close error: {ex}")
        worker, self._worker = self._worker, None
        if worker is not None:
            await asyncio.to_thread(worker.join, 1.0)
            logger.debug("[stt] capture released")
