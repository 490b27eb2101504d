"""Conversation turn-taking engine.

Listens until the speaker pauses, sends the running conversation to the chat
endpoint, speaks the reply and listens again. Four states: Idle, Listening,
AwaitingCompletion and Speaking.

Every mutation happens inside an ``EventBus`` handler. Transcript streams,
the debounce timer, the chat request and playback all run as separate tasks
and only report back by publishing events, each tagged with the id of the
session/request/playback that produced it. Events from anything the engine
has already moved past are dropped.

Re-listening
------------
``relisten="before_playback"`` re-acquires the microphone as soon as the reply
arrives, so the speaker can talk over the reply (barge-in).
``relisten="after_playback"`` waits for playback to finish first. Open speakers
without echo cancellation need it: the microphone would otherwise hear the
reply and barge in on it.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Literal, Optional, Set

from loguru import logger

from . import sinks
from .conversation import DEFAULT_SYSTEM_PROMPT, Conversation
from .debounce import DebounceTimer
from .errors import ConnectivityError, RecognitionUnavailableError, VoiceChatError
from .event_bus import EventBus
from .interfaces import ChatCompletionClient, SpeechOutputSink, TranscriptSource
from .schemas import EngineSnapshot, EngineState, Event, TranscriptUpdate

Relisten = Literal["before_playback", "after_playback"]


@dataclass
class EngineConfig:
    """Configuration for the turn-taking loop."""

    debounce_seconds: float = 2.0
    relisten: Relisten = "before_playback"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    single_turn_timeout: float = 60.0
    alert_log: Optional[str] = None


@dataclass
class ListeningSession:
    id: int
    raw_partial_text: str = ""
    is_final: bool = False
    pump: Optional[asyncio.Task] = field(default=None, repr=False)


class TurnTakingEngine:
    def __init__(
        self,
        source: TranscriptSource,
        client: ChatCompletionClient,
        sink: SpeechOutputSink,
        config: EngineConfig | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.source = source
        self.client = client
        self.sink = sink
        self.cfg = config or EngineConfig()
        if self.cfg.relisten not in ("before_playback", "after_playback"):
            raise ValueError(f"unknown relisten mode: {self.cfg.relisten}")
        self.bus = bus or EventBus()
        self.conversation = Conversation(self.cfg.system_prompt)

        self.state = EngineState.IDLE
        self.session: Optional[ListeningSession] = None
        self.single_turn = False
        self.last_reply = ""
        self.last_error: Optional[str] = None

        self._debounce = DebounceTimer(self.cfg.debounce_seconds, self._on_debounce_timer)
        self._ids = itertools.count(1)
        self._request_id = 0
        self._playback_id = 0
        self._completion_task: Optional[asyncio.Task] = None
        self._playback_task: Optional[asyncio.Task] = None
        self._bus_task: Optional[asyncio.Task] = None
        self._waiters: List[asyncio.Future] = []
        self._deferred: Set[asyncio.Task] = set()
        self._listeners: List[Callable[[EngineSnapshot], None]] = []

        self.bus.subscribe("control.", self._on_control)
        self.bus.subscribe("transcript.", self._on_transcript)
        self.bus.subscribe("debounce.", self._on_debounce)
        self.bus.subscribe("chat.", self._on_chat)
        self.bus.subscribe("speech.", self._on_speech)

    # ----- public control surface -----------------------------------------

    def launch(self) -> asyncio.Task:
        """Start the control loop on the running event loop."""
        if self._bus_task is None or self._bus_task.done():
            self._bus_task = asyncio.create_task(self.bus.run())
        return self._bus_task

    async def start(self, single_turn: bool = False) -> None:
        await self.bus.publish(
            Event(type="control.start", payload={"single_turn": single_turn}, priority=1, source="control")
        )

    async def stop(self) -> None:
        await self.bus.publish(Event(type="control.stop", priority=1, source="control"))

    def utterance_future(self) -> asyncio.Future:
        """Future resolved with the text of the next finalized utterance.

        Resolves with an empty string when listening stops or fails first.
        """
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        return fut

    async def shutdown(self) -> None:
        task = self._bus_task
        self._bus_task = None
        for pending in list(self._deferred):
            pending.cancel()
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._halt()

    def add_listener(self, listener: Callable[[EngineSnapshot], None]) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            state=self.state,
            single_turn=self.single_turn,
            partial_text=self.session.raw_partial_text if self.session else "",
            last_reply=self.last_reply,
            last_error=self.last_error,
            turns=self.conversation.turns,
        )

    # ----- event handlers (control loop only) -----------------------------

    async def _on_control(self, e: Event) -> None:
        if e.type == "control.start":
            if self.state != EngineState.IDLE:
                logger.info(f"[engine] start ignored; already {self.state.value}")
                return
            self.single_turn = bool(e.payload.get("single_turn", False))
            self.last_error = None
            if await self._acquire_source():
                self._set_state(EngineState.LISTENING)
        elif e.type == "control.stop":
            await self._halt()

    async def _on_transcript(self, e: Event) -> None:
        sid = e.payload.get("session")
        if self.session is None or sid != self.session.id:
            logger.debug(f"[engine] dropped {e.type} from stale session {sid}")
            return

        if e.type == "transcript.error":
            await self._fail(e.payload["error"])
            return
        if e.type == "transcript.closed":
            await self._on_stream_closed()
            return

        if self.state == EngineState.SPEAKING:
            # barge-in: silence the reply before looking at what was said
            self.sink.interrupt()
            self._cancel_playback()
            logger.info("[engine] barge-in; playback interrupted")
            self._set_state(EngineState.LISTENING)

        text = e.payload.get("text", "")
        is_final = bool(e.payload.get("is_final", False))
        self.session.raw_partial_text = text
        self.session.is_final = is_final
        logger.debug(f"[engine] partial (final={is_final}): {text!r}")
        self._notify()

        if is_final:
            self._debounce.cancel()
            if text.strip():
                await self._finalize()
            return
        if text.strip():
            self._debounce.arm(sid)

    async def _on_debounce(self, e: Event) -> None:
        sid = e.payload.get("session")
        if self.session is None or sid != self.session.id or self.state != EngineState.LISTENING:
            logger.debug(f"[engine] dropped debounce for session {sid}")
            return
        if self.session.raw_partial_text.strip():
            await self._finalize()

    async def _on_chat(self, e: Event) -> None:
        if e.payload.get("request") != self._request_id or self.state != EngineState.AWAITING_COMPLETION:
            logger.debug(f"[engine] dropped stale {e.type}")
            return
        self._completion_task = None
        if e.type == "chat.error":
            await self._fail(e.payload["error"])
            return

        content = e.payload.get("content", "")
        self.conversation.append("assistant", content)
        self.last_reply = content
        logger.info(f"[engine] assistant: {content[:180]}")
        self._set_state(EngineState.SPEAKING)
        if self.cfg.relisten == "before_playback":
            if not await self._acquire_source():
                return
        self._playback_id += 1
        self._playback_task = asyncio.create_task(self._play(self._playback_id, content))

    async def _on_speech(self, e: Event) -> None:
        if e.payload.get("playback") != self._playback_id or self.state != EngineState.SPEAKING:
            logger.debug(f"[engine] dropped stale {e.type}")
            return
        self._playback_task = None
        if self.cfg.relisten == "after_playback":
            if not await self._acquire_source():
                return
        self._set_state(EngineState.LISTENING)

    async def _on_stream_closed(self) -> None:
        if self.session.raw_partial_text.strip() and self._debounce.armed:
            return  # pending text still finalizes when the timer fires
        logger.info("[engine] transcript stream ended")
        await self._halt()

    # ----- transitions ------------------------------------------------------

    async def _finalize(self) -> None:
        text = self.session.raw_partial_text.strip()
        await self._release_session()
        self._resolve_waiters(text)
        logger.info(f"[engine] user: {text}")

        if self.single_turn:
            self.single_turn = False
            self._set_state(EngineState.IDLE)
            return

        self.conversation.append("user", text)
        self._set_state(EngineState.AWAITING_COMPLETION)
        self._request_id += 1
        self._completion_task = asyncio.create_task(
            self._complete(self._request_id, self.conversation.turns)
        )

    async def _fail(self, err: VoiceChatError) -> None:
        self.last_error = err.message
        logger.warning(f"[engine] turn aborted: {err}")
        await self._halt()
        sinks.alert("Error", err.message, self.cfg.alert_log)
        self._notify()

    async def _halt(self) -> None:
        """Tear down everything in flight and return to Idle."""
        await self._release_session()
        if self._completion_task is not None:
            self._completion_task.cancel()
            self._completion_task = None
        self._request_id += 1
        if self.state == EngineState.SPEAKING:
            self.sink.interrupt()
        self._cancel_playback()
        self._resolve_waiters("")
        self.single_turn = False
        self._set_state(EngineState.IDLE)

    async def _acquire_source(self) -> bool:
        await self._release_session()
        sid = next(self._ids)
        try:
            stream = await self.source.begin()
        except VoiceChatError as err:
            await self._fail(err)
            return False
        except Exception as ex:
            logger.exception(f"[engine] transcript source failed to start: {ex}")
            await self._fail(RecognitionUnavailableError(detail=str(ex)))
            return False
        self.session = ListeningSession(id=sid)
        self.session.pump = asyncio.create_task(self._pump(sid, stream))
        logger.debug(f"[engine] listening session {sid} acquired")
        return True

    async def _release_session(self) -> None:
        self._debounce.cancel()
        session, self.session = self.session, None
        if session is None:
            return
        if session.pump is not None and not session.pump.done():
            session.pump.cancel()
            try:
                await session.pump
            except asyncio.CancelledError:
                pass
        try:
            await self.source.end()
        except Exception as ex:
            logger.warning(f"[engine] transcript source release error: {ex}")
        logger.debug(f"[engine] listening session {session.id} released")

    def _cancel_playback(self) -> None:
        self._playback_id += 1
        if self._playback_task is not None:
            self._playback_task.cancel()
            self._playback_task = None

    def _set_state(self, state: EngineState) -> None:
        if state != self.state:
            logger.debug(f"[engine] {self.state.value} -> {state.value}")
        self.state = state
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as ex:
                logger.exception(f"[engine] listener error: {ex}")

    def _resolve_waiters(self, text: str) -> None:
        waiters, self._waiters = self._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(text)

    # ----- background tasks (publish only) ----------------------------------

    def _on_debounce_timer(self, sid: object) -> None:
        e = Event(type="debounce.fired", payload={"session": sid}, source="timer")
        try:
            self.bus.publish_nowait(e)
        except asyncio.QueueFull:
            # call_later callbacks cannot await; hand the event to a task that can
            logger.warning("[engine] event queue full; deferring debounce event")
            task = asyncio.get_running_loop().create_task(self.bus.publish(e))
            self._deferred.add(task)
            task.add_done_callback(self._deferred.discard)

    async def _pump(self, sid: int, stream: AsyncIterator[TranscriptUpdate]) -> None:
        try:
            async for update in stream:
                await self.bus.publish(
                    Event(
                        type="transcript.update",
                        payload={"session": sid, "text": update.text, "is_final": update.is_final},
                        source="stt",
                    )
                )
        except asyncio.CancelledError:
            raise
        except VoiceChatError as err:
            await self.bus.publish(Event(type="transcript.error", payload={"session": sid, "error": err}))
            return
        except Exception as ex:
            logger.exception(f"[engine] transcript stream error: {ex}")
            err = RecognitionUnavailableError(detail=str(ex))
            await self.bus.publish(Event(type="transcript.error", payload={"session": sid, "error": err}))
            return
        await self.bus.publish(Event(type="transcript.closed", payload={"session": sid}))

    async def _complete(self, rid: int, turns) -> None:
        try:
            reply = await self.client.complete(turns)
        except asyncio.CancelledError:
            raise
        except VoiceChatError as err:
            await self.bus.publish(Event(type="chat.error", payload={"request": rid, "error": err}, source="chat"))
        except Exception as ex:
            logger.exception(f"[engine] chat request crashed: {ex}")
            err = ConnectivityError(detail=str(ex))
            await self.bus.publish(Event(type="chat.error", payload={"request": rid, "error": err}, source="chat"))
        else:
            await self.bus.publish(
                Event(type="chat.reply", payload={"request": rid, "content": reply.content}, source="chat")
            )

    async def _play(self, pid: int, text: str) -> None:
        try:
            await self.sink.speak(text)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logger.warning(f"[engine] playback error: {ex}")
        await self.bus.publish(Event(type="speech.done", payload={"playback": pid}, source="tts"))
