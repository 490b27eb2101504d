from __future__ import annotations

from typing import List

from .schemas import ConversationTurn, Role

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant accessed via a voice interface. Your responses "
    "will be read aloud to the user. Please keep your responses brief. If you have "
    "a long response, ask the user if they want you to continue. If the user's input "
    "doesn't quite make sense, it might have been dictated incorrectly: feel free to "
    "guess what they really said."
)


class Conversation:
    """Append-only dialogue log, seeded with one system turn.

    The full log is replayed to the chat endpoint on every request, so order is
    part of the contract. Turns are frozen models and ``turns`` hands out a copy.
    """

    def __init__(self, system_prompt: str = DEFAULT_SYSTEM_PROMPT):
        self._turns: List[ConversationTurn] = [
            ConversationTurn(role="system", content=system_prompt)
        ]

    def append(self, role: Role, content: str) -> ConversationTurn:
        if role == "system":
            raise ValueError("system turn is fixed at session start")
        turn = ConversationTurn(role=role, content=content)
        self._turns.append(turn)
        return turn

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)
