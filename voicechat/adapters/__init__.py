from .espeak_sink import EspeakSpeechSink, SpeechConfig
from .whisper_source import WhisperConfig, WhisperTranscriptSource

__all__ = ["EspeakSpeechSink", "SpeechConfig", "WhisperConfig", "WhisperTranscriptSource"]
