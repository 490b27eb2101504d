import argparse
import asyncio
import sys
import uvicorn
from loguru import logger
from .context import load_config, setup_logging, Ctx
from .relay import create_app
from .schemas import EngineSnapshot, EngineState


def _console_listener():
    last = {"state": None, "partial": ""}

    def _show(snap: EngineSnapshot):
        if snap.state != last["state"]:
            logger.info(f"[ui] {snap.state.value}")
            last["state"] = snap.state
        if snap.partial_text and snap.partial_text != last["partial"]:
            logger.info(f"[ui] Recognized Text: {snap.partial_text}")
        last["partial"] = snap.partial_text

    return _show


async def _stdin_line() -> str:
    return await asyncio.to_thread(sys.stdin.readline)


async def run_console(ctx: Ctx, read_line=None):
    """Hands-free conversation loop. Enter toggles listening, q or EOF quits.

    Toggling is also how a failed turn is restarted: the engine drops back to
    Idle on any error and the next Enter starts it again.
    """
    engine = ctx.engine
    read_line = read_line or _stdin_line
    engine.add_listener(_console_listener())
    engine.launch()
    logger.info("[ui] press Enter to start or stop listening, q to quit")
    await engine.start()
    try:
        while True:
            line = await read_line()
            if not line or line.strip().lower() == "q":
                break
            if engine.state == EngineState.IDLE:
                await engine.start()
            else:
                await engine.stop()
    finally:
        await engine.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Voice chat with a remote language model")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--serve", action="store_true", help="Run the command relay server")
    args = parser.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg)
    ctx = Ctx(cfg)

    if args.serve:
        relay_cfg = cfg.get("relay") or {}
        app = create_app(ctx, autostart=bool(relay_cfg.get("autostart", False)))
        host = relay_cfg.get("host", "127.0.0.1")
        port = int(relay_cfg.get("port", 8765))
        logger.info(f"[server] starting on http://{host}:{port}")
        uvicorn.run(app, host=host, port=port, log_level="info")
        return

    try:
        asyncio.run(run_console(ctx))
    except KeyboardInterrupt:
        logger.info("[main] bye")


if __name__ == "__main__":
    main()
