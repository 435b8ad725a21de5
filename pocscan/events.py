"""
pocscan - Event Bus
Per-task bounded queue with one consumer delivering ScanEvents to one handler.

Non-terminal events are dropped when the queue is full so a slow subscriber
never stalls a scan. The terminal `completed` event is always delivered: the
publisher waits for room, and the consumer bounds every handler call with a
timeout so that wait is finite.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from loguru import logger

from pocscan.models import ScanEvent


EventHandler = Callable[[ScanEvent], Union[None, Awaitable[None]]]


class _Channel:
    def __init__(self, task_id: int, maxsize: int):
        self.task_id = task_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.consumer: Optional[asyncio.Task] = None
        self.dropped = 0
        self.delivered = 0
        self.terminal_delivered = False
        self.draining = False


class EventBus:
    """Publish/subscribe for scan events, one handler per task."""

    def __init__(self, maxsize: int = 100, handler_timeout: float = 5.0):
        self.maxsize = maxsize
        self.handler_timeout = handler_timeout
        self._handlers: Dict[int, EventHandler] = {}
        self._channels: Dict[int, _Channel] = {}

    # ── Subscription ────────────────────────────────────────────

    def register_handler(self, task_id: int, handler: EventHandler):
        """Replace any previous handler for task_id."""
        if task_id in self._handlers:
            logger.debug(f"[EventBus] Replacing handler for task {task_id}")
        self._handlers[task_id] = handler

    def unregister_handler(self, task_id: int):
        self._handlers.pop(task_id, None)

    # ── Channels ────────────────────────────────────────────────

    def open(self, task_id: int) -> _Channel:
        """Create the queue and consumer for a run. Must be called from the event loop."""
        channel = self._channels.get(task_id)
        if channel and channel.consumer and not channel.consumer.done():
            return channel
        channel = _Channel(task_id, self.maxsize)
        channel.consumer = asyncio.create_task(self._consume(channel))
        self._channels[task_id] = channel
        return channel

    async def close(self, task_id: int, timeout: Optional[float] = None):
        """
        Wait for the consumer to deliver the terminal event.

        If it is still working through a backlog after `timeout`, the remaining
        non-terminal events are skipped so the terminal one goes out next. Each
        handler call is bounded by handler_timeout, so that takes at most two
        handler timeouts.
        """
        channel = self._channels.get(task_id)
        if not channel or not channel.consumer:
            return
        try:
            try:
                await asyncio.wait_for(asyncio.shield(channel.consumer), timeout)
            except asyncio.TimeoutError:
                channel.draining = True
                logger.warning(
                    f"[EventBus] Consumer for task {task_id} still draining, "
                    f"skipping {channel.queue.qsize()} queued events"
                )
                try:
                    await asyncio.wait_for(asyncio.shield(channel.consumer), self.handler_timeout * 2 + 1)
                except asyncio.TimeoutError:
                    logger.error(f"[EventBus] Consumer for task {task_id} is stuck, terminal event not delivered")
                    channel.consumer.cancel()
        finally:
            if self._channels.get(task_id) is channel:
                self._channels.pop(task_id, None)

    async def shutdown(self):
        """Cancel every consumer. Undelivered events are discarded."""
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            if channel.consumer and not channel.consumer.done():
                channel.consumer.cancel()
        for channel in channels:
            if channel.consumer:
                try:
                    await channel.consumer
                except asyncio.CancelledError:
                    pass

    def stats(self, task_id: int) -> Dict[str, Any]:
        channel = self._channels.get(task_id)
        if not channel:
            return {"queued": 0, "dropped": 0, "delivered": 0, "terminal_delivered": False}
        return {
            "queued": channel.queue.qsize(),
            "dropped": channel.dropped,
            "delivered": channel.delivered,
            "terminal_delivered": channel.terminal_delivered,
        }

    # ── Publishing ──────────────────────────────────────────────

    def publish(self, task_id: int, event_type: str, data: Dict[str, Any]) -> bool:
        """Non-blocking send. Returns False if the event was dropped."""
        channel = self.open(task_id)
        try:
            channel.queue.put_nowait(ScanEvent(task_id=task_id, event_type=event_type, data=data))
        except asyncio.QueueFull:
            channel.dropped += 1
            logger.debug(f"[EventBus] Queue full for task {task_id}, dropped {event_type} event")
            return False
        return True

    async def publish_terminal(self, task_id: int, event_type: str, data: Dict[str, Any]):
        """Blocking send for the final event of a run."""
        channel = self.open(task_id)
        await channel.queue.put(ScanEvent(task_id=task_id, event_type=event_type, data=data))

    # ── Consumer ────────────────────────────────────────────────

    async def _deliver(self, event: ScanEvent):
        handler = self._handlers.get(event.task_id)
        if handler is None:
            return
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, self.handler_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"[EventBus] Handler for task {event.task_id} timed out on {event.event_type} event"
            )
        except Exception as e:
            logger.warning(f"[EventBus] Handler for task {event.task_id} failed: {e}")

    async def _consume(self, channel: _Channel):
        while True:
            event = await channel.queue.get()
            try:
                if channel.draining and not event.is_terminal:
                    channel.dropped += 1
                    continue
                await self._deliver(event)
                channel.delivered += 1
            finally:
                channel.queue.task_done()
            if event.is_terminal:
                channel.terminal_delivered = True
                break
