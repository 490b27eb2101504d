import asyncio, itertools
from typing import Awaitable, Callable, Dict, List
from loguru import logger
from .schemas import Event

Handler = Callable[[Event], Awaitable[None]]


class EventBus:
    """Single-consumer queue that serializes every engine mutation.

    Callbacks from the microphone thread, timers and network tasks never touch
    engine state directly; they publish an event and the ``run`` loop hands
    events to subscribers one at a time. Equal priorities keep publish order.
    """

    def __init__(self, max_queue_size: int = 1000):
        self.queue: asyncio.PriorityQueue = asyncio.PriorityQueue(maxsize=max_queue_size)
        self.subscribers: Dict[str, List[Handler]] = {}
        self._seq = itertools.count()

    async def publish(self, e: Event):
        await self.queue.put((e.priority, next(self._seq), e))

    def publish_nowait(self, e: Event):
        self.queue.put_nowait((e.priority, next(self._seq), e))

    def subscribe(self, event_prefix: str, handler: Handler):
        self.subscribers.setdefault(event_prefix, []).append(handler)

    def unsubscribe(self, event_prefix: str, handler: Handler):
        handlers = self.subscribers.get(event_prefix, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self.subscribers.pop(event_prefix, None)

    async def dispatch(self, e: Event) -> bool:
        handled = False
        for prefix, handlers in list(self.subscribers.items()):
            if e.type.startswith(prefix):
                for h in list(handlers):
                    handled = True
                    try:
                        await h(e)
                    except Exception as ex:
                        logger.exception(f"[bus] handler error for {e.type}: {ex}")
        if not handled:
            logger.warning(f"[bus] no subscriber for event: {e.type}")
        return handled

    async def run(self):
        logger.info("[bus] loop started.")
        while True:
            _, _, e = await self.queue.get()
            try:
                await self.dispatch(e)
            finally:
                self.queue.task_done()
