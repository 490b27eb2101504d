from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional
from enum import Enum
import time

Role = Literal["system", "user", "assistant"]


class EngineState(str, Enum):
    IDLE = "Idle"
    LISTENING = "Listening"
    AWAITING_COMPLETION = "AwaitingCompletion"
    SPEAKING = "Speaking"


class ConversationTurn(BaseModel):
    role: Role
    content: str

    model_config = {"frozen": True}


class TranscriptUpdate(BaseModel):
    text: str = ""
    is_final: bool = False


class Event(BaseModel):
    type: str = Field(..., description="e.g., 'control.start', 'transcript.update', 'chat.reply'")
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=5)  # 1(high) .. 10(low)
    timestamp: float = Field(default_factory=lambda: time.time())
    source: Optional[str] = None


class EngineSnapshot(BaseModel):
    state: EngineState = EngineState.IDLE
    single_turn: bool = False
    partial_text: str = ""
    last_reply: str = ""
    last_error: Optional[str] = None
    turns: List[ConversationTurn] = Field(default_factory=list)


class RelayCommand(BaseModel):
    command: Literal["startRecognition", "stopRecognition"]


class RelayReply(BaseModel):
    recognizedText: Optional[str] = None
