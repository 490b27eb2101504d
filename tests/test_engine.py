import asyncio

import httpx

from voicechat.chat_client import ChatConfig, OpenAIChatClient
from voicechat.engine import EngineConfig, TurnTakingEngine
from voicechat.errors import (
    ConfigurationError,
    ConnectivityError,
    RecognitionUnavailableError,
)
from voicechat.event_bus import EventBus
from voicechat.schemas import ConversationTurn, EngineState, Event, TranscriptUpdate

DEBOUNCE = 0.1


class FakeSource:
    def __init__(self, calls=None, fail=False):
        self.calls = calls if calls is not None else []
        self.fail = fail
        self.active = False
        self.begins = 0
        self.ends = 0
        self.queue = None

    async def begin(self):
        if self.fail:
            raise RecognitionUnavailableError()
        assert not self.active, "microphone acquired twice"
        self.active = True
        self.begins += 1
        self.queue = asyncio.Queue()
        self.calls.append(("begin",))
        return self._stream(self.queue)

    async def _stream(self, q):
        while True:
            item = await q.get()
            if item is None:
                return
            yield item

    async def end(self):
        if self.active:
            self.ends += 1
            self.calls.append(("end",))
        self.active = False

    def say(self, text, is_final=False):
        self.queue.put_nowait(TranscriptUpdate(text=text, is_final=is_final))


class FakeClient:
    def __init__(self, replies=None, error=None):
        self.replies = list(replies or [])
        self.error = error
        self.requests = []

    async def complete(self, turns):
        self.requests.append(list(turns))
        if self.error:
            raise self.error
        return ConversationTurn(role="assistant", content=self.replies.pop(0))


class FakeSink:
    def __init__(self, calls=None, hold=False):
        self.calls = calls if calls is not None else []
        self.hold = hold
        self._done = None

    async def speak(self, text):
        self.calls.append(("speak", text))
        if self.hold:
            self._done = asyncio.Event()
            await self._done.wait()

    def interrupt(self):
        self.calls.append(("interrupt",))
        if self._done is not None:
            self._done.set()

    def finish(self):
        self._done.set()


def make_engine(source=None, client=None, sink=None, **cfg):
    cfg.setdefault("debounce_seconds", DEBOUNCE)
    engine = TurnTakingEngine(
        source or FakeSource(),
        client or FakeClient(),
        sink or FakeSink(),
        EngineConfig(**cfg),
    )
    engine.launch()
    return engine


async def settle(seconds=0.02):
    await asyncio.sleep(seconds)


def test_partials_within_interval_do_not_finalize():
    async def runner():
        source = FakeSource()
        client = FakeClient(replies=["ok"])
        engine = make_engine(source, client)
        await engine.start()
        await settle()
        assert engine.state == EngineState.LISTENING

        for text in ["what", "what time", "what time is", "what time is it"]:
            source.say(text)
            await settle(DEBOUNCE / 3)
            assert engine.state == EngineState.LISTENING
            assert client.requests == []

        await settle(DEBOUNCE * 3)
        assert client.requests
        assert client.requests[0][-1] == ConversationTurn(role="user", content="what time is it")
        await engine.shutdown()

    asyncio.run(runner())


def test_reply_is_appended_and_spoken():
    async def runner():
        source = FakeSource()
        sink = FakeSink()
        client = FakeClient(replies=["I don't have real-time access."])
        engine = make_engine(source, client, sink)
        await engine.start()
        await settle()
        before = engine.conversation.turns

        source.say("what time is it")
        await settle(DEBOUNCE * 3)

        turns = engine.conversation.turns
        assert turns[: len(before)] == before
        assert turns[len(before):] == [
            ConversationTurn(role="user", content="what time is it"),
            ConversationTurn(role="assistant", content="I don't have real-time access."),
        ]
        assert ("speak", "I don't have real-time access.") in sink.calls
        assert engine.last_reply == "I don't have real-time access."
        assert engine.state == EngineState.LISTENING
        assert source.active
        await engine.shutdown()
        assert not source.active

    asyncio.run(runner())


def test_history_is_replayed_in_order():
    async def runner():
        source = FakeSource()
        client = FakeClient(replies=["first reply", "second reply"])
        engine = make_engine(source, client)
        await engine.start()
        await settle()

        source.say("hello")
        await settle(DEBOUNCE * 3)
        source.say("and again")
        await settle(DEBOUNCE * 3)

        roles = [t.role for t in engine.conversation.turns]
        assert roles == ["system", "user", "assistant", "user", "assistant"]
        for i, t in enumerate(engine.conversation.turns):
            if t.role == "assistant":
                assert engine.conversation.turns[i - 1].role == "user"
        second = client.requests[1]
        assert [t.content for t in second[1:]] == ["hello", "first reply", "and again"]
        await engine.shutdown()

    asyncio.run(runner())


def test_empty_credential_reports_configuration_error(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    async def runner():
        source = FakeSource()
        sink = FakeSink()
        engine = make_engine(source, OpenAIChatClient(ChatConfig(api_key="")), sink)
        await engine.start()
        await settle()
        source.say("hello")
        await settle(DEBOUNCE * 3)

        assert engine.state == EngineState.IDLE
        assert engine.last_error == ConfigurationError.message
        assert [t.role for t in engine.conversation.turns] == ["system", "user"]
        assert engine.conversation.turns[-1].content == "hello"
        assert not source.active
        assert sink.calls == []
        await engine.shutdown()

    asyncio.run(runner())


def test_server_error_reports_connectivity_error():
    def handler(request):
        return httpx.Response(500, json={"error": "boom"})

    async def runner():
        source = FakeSource()
        client = OpenAIChatClient(ChatConfig(api_key="sk-test"), transport=httpx.MockTransport(handler))
        engine = make_engine(source, client)
        await engine.start()
        await settle()
        source.say("hello")
        await settle(DEBOUNCE * 5)

        assert engine.state == EngineState.IDLE
        assert engine.last_error == "Error: Invalid API key or server error."
        assert "assistant" not in [t.role for t in engine.conversation.turns]
        await engine.shutdown()

    asyncio.run(runner())


def test_unexpected_client_exception_becomes_connectivity_error():
    async def runner():
        source = FakeSource()
        engine = make_engine(source, FakeClient(error=RuntimeError("socket closed")))
        await engine.start()
        await settle()
        source.say("hello")
        await settle(DEBOUNCE * 3)
        assert engine.state == EngineState.IDLE
        assert engine.last_error == ConnectivityError.message
        await engine.shutdown()

    asyncio.run(runner())


def test_barge_in_interrupts_before_transcript_is_processed():
    async def runner():
        calls = []
        source = FakeSource(calls)
        sink = FakeSink(calls, hold=True)
        engine = make_engine(source, FakeClient(replies=["a long answer"]), sink)
        engine.add_listener(lambda snap: calls.append(("partial", snap.partial_text)) if snap.partial_text else None)
        await engine.start()
        await settle()

        source.say("tell me a story")
        await settle(DEBOUNCE * 3)
        assert engine.state == EngineState.SPEAKING
        assert source.active

        mark = len(calls)
        source.say("stop")
        await settle()
        after = calls[mark:]
        assert after[0] == ("interrupt",)
        assert after.index(("interrupt",)) < after.index(("partial", "stop"))
        assert engine.state == EngineState.LISTENING
        assert engine.session.raw_partial_text == "stop"
        await engine.shutdown()

    asyncio.run(runner())


def test_playback_completion_returns_to_listening():
    async def runner():
        source = FakeSource()
        sink = FakeSink(hold=True)
        engine = make_engine(source, FakeClient(replies=["sure"]), sink)
        await engine.start()
        await settle()
        source.say("hi")
        await settle(DEBOUNCE * 3)
        assert engine.state == EngineState.SPEAKING

        sink.finish()
        await settle()
        assert engine.state == EngineState.LISTENING
        assert ("interrupt",) not in sink.calls
        assert source.begins == 2
        await engine.shutdown()

    asyncio.run(runner())


def test_after_playback_relisten_waits_for_reply_to_finish():
    async def runner():
        source = FakeSource()
        sink = FakeSink(hold=True)
        engine = make_engine(source, FakeClient(replies=["sure"]), sink, relisten="after_playback")
        await engine.start()
        await settle()
        source.say("hi")
        await settle(DEBOUNCE * 3)

        assert engine.state == EngineState.SPEAKING
        assert not source.active
        assert source.begins == 1

        sink.finish()
        await settle()
        assert engine.state == EngineState.LISTENING
        assert source.active
        assert source.begins == 2
        await engine.shutdown()

    asyncio.run(runner())


def test_final_flag_finalizes_without_waiting():
    async def runner():
        source = FakeSource()
        client = FakeClient(replies=["done"])
        engine = make_engine(source, client, debounce_seconds=10.0)
        await engine.start()
        await settle()
        source.say("turn on the lights", is_final=True)
        await settle()
        assert client.requests
        assert engine.conversation.turns[1].content == "turn on the lights"
        await engine.shutdown()

    asyncio.run(runner())


def test_stop_releases_microphone_and_cancels_debounce():
    async def runner():
        source = FakeSource()
        client = FakeClient(replies=["never"])
        engine = make_engine(source, client)
        await engine.start()
        await settle()
        source.say("half a sent")
        await settle()
        await engine.stop()
        await settle(DEBOUNCE * 3)

        assert engine.state == EngineState.IDLE
        assert not source.active
        assert source.ends == 1
        assert client.requests == []
        assert len(engine.conversation) == 1
        assert engine.snapshot().partial_text == ""
        await engine.shutdown()

    asyncio.run(runner())


def test_stop_while_awaiting_drops_late_reply():
    async def runner():
        gate = asyncio.Event()

        class SlowClient(FakeClient):
            async def complete(self, turns):
                await gate.wait()
                return await super().complete(turns)

        source = FakeSource()
        sink = FakeSink()
        engine = make_engine(source, SlowClient(replies=["late"]), sink)
        await engine.start()
        await settle()
        source.say("hello")
        await settle(DEBOUNCE * 3)
        assert engine.state == EngineState.AWAITING_COMPLETION
        assert not source.active

        await engine.stop()
        await settle()
        gate.set()
        await settle()
        assert engine.state == EngineState.IDLE
        assert [t.role for t in engine.conversation.turns] == ["system", "user"]
        assert sink.calls == []
        await engine.shutdown()

    asyncio.run(runner())


def test_recognition_unavailable_returns_to_idle():
    async def runner():
        engine = make_engine(FakeSource(fail=True))
        await engine.start()
        await settle()
        assert engine.state == EngineState.IDLE
        assert engine.last_error == RecognitionUnavailableError.message
        await engine.shutdown()

    asyncio.run(runner())


def test_single_turn_mode_returns_text_without_chat():
    async def runner():
        source = FakeSource()
        client = FakeClient()
        engine = make_engine(source, client)
        fut = engine.utterance_future()
        await engine.start(single_turn=True)
        await settle()
        source.say("remind me later")
        text = await asyncio.wait_for(fut, 1.0)

        assert text == "remind me later"
        await settle()
        assert engine.state == EngineState.IDLE
        assert client.requests == []
        assert len(engine.conversation) == 1
        assert not source.active
        await engine.shutdown()

    asyncio.run(runner())


def test_listeners_see_state_changes():
    async def runner():
        seen = []
        source = FakeSource()
        engine = make_engine(source, FakeClient(replies=["yo"]))
        engine.add_listener(lambda snap: seen.append(snap.state))
        await engine.start()
        await settle()
        source.say("hey")
        await settle(DEBOUNCE * 3)
        await engine.shutdown()

        order = []
        for s in seen:
            if not order or order[-1] != s:
                order.append(s)
        assert order[:5] == [
            EngineState.LISTENING,
            EngineState.AWAITING_COMPLETION,
            EngineState.SPEAKING,
            EngineState.LISTENING,
            EngineState.IDLE,
        ]

    asyncio.run(runner())


def test_debounce_fired_survives_full_queue():
    async def runner():
        bus = EventBus(max_queue_size=1)
        engine = TurnTakingEngine(FakeSource(), FakeClient(), FakeSink(), EngineConfig(), bus=bus)
        bus.publish_nowait(Event(type="transcript.update", payload={"session": 7}))

        engine._on_debounce_timer(7)

        first = bus.queue.get_nowait()[2]
        assert first.type == "transcript.update"
        deferred = (await asyncio.wait_for(bus.queue.get(), 1.0))[2]
        assert deferred.type == "debounce.fired"
        assert deferred.payload == {"session": 7}
        await settle()
        assert not engine._deferred
        await engine.shutdown()

    asyncio.run(runner())
