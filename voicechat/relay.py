import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from .schemas import EngineState, RelayCommand, RelayReply


class CommandRelay:
    """Maps secondary-device commands onto the engine's start/stop surface.

    ``startRecognition`` is single-turn: it listens for one utterance and
    replies with its text instead of running the conversation loop.
    """

    def __init__(self, engine, timeout: float | None = None):
        self.engine = engine
        self.timeout = timeout if timeout is not None else engine.cfg.single_turn_timeout

    async def handle(self, cmd: RelayCommand) -> RelayReply:
        if cmd.command == "startRecognition":
            return RelayReply(recognizedText=await self._recognize_once())
        await self.engine.stop()
        return RelayReply()

    async def _recognize_once(self) -> str:
        waiter = self.engine.utterance_future()
        started = self.engine.state == EngineState.IDLE
        if started:
            await self.engine.start(single_turn=True)
        else:
            logger.info(f"[relay] engine busy ({self.engine.state.value}); waiting for its next utterance")
        try:
            text = await asyncio.wait_for(waiter, self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[relay] no utterance within {self.timeout}s")
            if started:
                await self.engine.stop()
            text = ""
        logger.info(f"[relay] recognizedText={text!r}")
        return text


def create_app(ctx, relay: CommandRelay | None = None, autostart: bool = False):
    engine = ctx.engine
    relay = relay or CommandRelay(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.bus_task = engine.launch()
        if autostart:
            logger.info("[relay] starting conversation loop")
            await engine.start()
        try:
            yield
        finally:
            try:
                await engine.shutdown()
            except Exception as e:
                logger.debug(f"[lifespan] engine shutdown error: {e}")
            app.state.bus_task = None

    app = FastAPI(title="Voice Chat Relay", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Simple header auth (optional)
    def _auth(x_key: str | None = Header(default=None, alias="X-Agent-Key")):
        want = (getattr(ctx, "config", {}).get("relay") or {}).get("api_key")
        if want and x_key != want:
            raise HTTPException(status_code=401, detail="invalid api key")

    @app.get("/health")
    async def health():
        return {"ok": True, "state": engine.state.value}

    @app.get("/state")
    async def state(_=Depends(_auth)):
        return engine.snapshot().model_dump(mode="json")

    @app.post("/conversation/start")
    async def conversation_start(_=Depends(_auth)):
        await engine.start()
        return {"ok": True}

    @app.post("/conversation/stop")
    async def conversation_stop(_=Depends(_auth)):
        await engine.stop()
        return {"ok": True}

    @app.post("/relay", response_model=RelayReply, response_model_exclude_none=True)
    async def relay_command(body: dict, _=Depends(_auth)):
        try:
            cmd = RelayCommand(**(body or {}))
        except Exception:
            raise HTTPException(status_code=400, detail=f"unknown command: {(body or {}).get('command')}")
        logger.info(f"[relay] {cmd.command}")
        return await relay.handle(cmd)

    return app
