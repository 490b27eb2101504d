import sys
import yaml
from dataclasses import fields
from loguru import logger
from typing import Any, Dict
from .adapters import EspeakSpeechSink, SpeechConfig, WhisperConfig, WhisperTranscriptSource
from .chat_client import ChatConfig, OpenAIChatClient
from .engine import EngineConfig, TurnTakingEngine
from .event_bus import EventBus


def _section(cls, data: Dict[str, Any] | None):
    """Build a config dataclass from a yaml section, ignoring unknown keys."""
    data = data or {}
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"[config] ignoring unknown {cls.__name__} keys: {unknown}")
    return cls(**{k: v for k, v in data.items() if k in known})


def setup_logging(config: Dict[str, Any]):
    log_cfg = config.get("logging") or {}
    logger.remove()
    logger.add(sys.stderr, level=str(log_cfg.get("level", "INFO")).upper())
    if log_cfg.get("file"):
        logger.add(log_cfg["file"], level="DEBUG", rotation=log_cfg.get("rotation", "5 MB"))


class Ctx:
    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.engine_cfg = _section(EngineConfig, config.get("engine"))
        self.chat_cfg = _section(ChatConfig, config.get("chat"))
        self.stt_cfg = _section(WhisperConfig, config.get("stt"))
        self.tts_cfg = _section(SpeechConfig, config.get("tts"))
        self.bus = EventBus(
            max_queue_size=int((config.get("limits") or {}).get("max_queue_size", 1000)),
        )
        self.engine = TurnTakingEngine(
            source=WhisperTranscriptSource(self.stt_cfg),
            client=OpenAIChatClient(self.chat_cfg),
            sink=EspeakSpeechSink(self.tts_cfg),
            config=self.engine_cfg,
            bus=self.bus,
        )


def load_config(path: str = "config.yaml") -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}
