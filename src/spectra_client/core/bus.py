"""
Asyncio-based event bus used for module communication.

Subscribers are awaited one after another in publish order, so feed batches
reach the dispatcher in the order the provider delivered them and two
deliveries never interleave.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from asyncio import QueueEmpty
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .contracts import BasePayload, BusStatus, EventHandler

logger = logging.getLogger(__name__)


Handler = Callable[[str, BasePayload], Awaitable[None] | None]


@dataclass(frozen=True)
class Subscription:
    """Handle for a topic subscription."""

    topic: str
    handler: EventHandler


class EventBus:
    """
    Ordered asynchronous publish/subscribe bus.

    Topics are matched exactly. A handler that raises is logged and counted;
    the remaining handlers for the same payload still run.
    """

    def __init__(
        self,
        *,
        queue_size: int = 256,
        telemetry_topic: str = "status.bus",
        telemetry_interval: float = 5.0,
        telemetry_enabled: bool = True,
    ) -> None:
        self._queue: asyncio.Queue[tuple[str, BasePayload]] = asyncio.Queue(maxsize=queue_size)
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._telemetry_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._telemetry_topic = telemetry_topic
        self._telemetry_interval = telemetry_interval
        self._telemetry_enabled = telemetry_enabled
        self._published_total = 0
        self._processed_total = 0
        self._failed_total = 0
        self._dropped_total = 0
        now = time.monotonic()
        self._last_publish_ts = now
        self._last_dispatch_ts = now

    @property
    def running(self) -> bool:
        return self._dispatcher_task is not None

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        """Register a handler for a topic."""
        self._subscribers[topic].append(handler)
        logger.debug("Subscribed handler %s to topic %s", handler, topic)
        return Subscription(topic=topic, handler=handler)  # type: ignore[arg-type]

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a previously registered handler."""
        handlers = self._subscribers.get(subscription.topic, [])
        if subscription.handler in handlers:
            handlers.remove(subscription.handler)
            logger.debug(
                "Unsubscribed handler %s from topic %s", subscription.handler, subscription.topic
            )

    async def publish(self, topic: str, payload: BasePayload) -> None:
        """Queue a payload for a specific topic."""
        self._published_total += 1
        self._last_publish_ts = time.monotonic()
        if self._queue.full():
            logger.warning("Event bus queue is full; publisher will wait for free space.")
        await self._queue.put((topic, payload))
        logger.debug("Queued payload for topic %s", topic)

    async def join(self) -> None:
        """Wait until every payload queued so far has been handled."""
        await self._queue.join()

    async def start(self) -> None:
        """Start the dispatcher loop."""
        if self._dispatcher_task is None:
            self._stopping.clear()
            self._dispatcher_task = asyncio.create_task(self._dispatcher(), name="spectra-bus")
            logger.info("Event bus dispatcher started.")
        if self._telemetry_enabled and self._telemetry_task is None:
            self._telemetry_task = asyncio.create_task(
                self._telemetry_loop(), name="spectra-bus-telemetry"
            )

    async def stop(self) -> None:
        """Stop the dispatcher loop; payloads still queued are dropped."""
        if self._dispatcher_task is None:
            return
        self._stopping.set()
        await self._queue.put(("", _StopPayload()))
        await self._dispatcher_task
        self._dispatcher_task = None
        if self._telemetry_task:
            self._telemetry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._telemetry_task
            self._telemetry_task = None
        logger.info("Event bus dispatcher stopped.")

    async def _dispatcher(self) -> None:
        while not self._stopping.is_set():
            topic, payload = await self._queue.get()
            try:
                if isinstance(payload, _StopPayload):
                    break
                handlers = list(self._subscribers.get(topic, []))
                logger.debug("Dispatching payload on topic %s to %d handlers", topic, len(handlers))
                for handler in handlers:
                    await self._call_handler(handler, topic, payload)
                self._processed_total += 1
                self._last_dispatch_ts = time.monotonic()
            finally:
                self._queue.task_done()
        while not self._queue.empty():
            try:
                _topic, leftover = self._queue.get_nowait()
            except QueueEmpty:
                break
            else:
                if not isinstance(leftover, _StopPayload):
                    self._dropped_total += 1
                self._queue.task_done()
        if self._dropped_total:
            logger.info("Event bus dropped %d queued events on shutdown.", self._dropped_total)

    async def _call_handler(self, handler: Handler, topic: str, payload: BasePayload) -> None:
        try:
            result = handler(topic, payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._failed_total += 1
            logger.exception("Subscriber %s failed on topic %s", handler, topic)

    async def _telemetry_loop(self) -> None:
        """Emit periodic BusStatus payloads on the telemetry topic."""
        try:
            while not self._stopping.is_set():
                await asyncio.sleep(self._telemetry_interval)
                await self.publish(self._telemetry_topic, self.status())
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            return

    def status(self) -> BusStatus:
        """Build a telemetry snapshot of the queue and counters."""
        return BusStatus(
            queue_depth=self._queue.qsize(),
            queue_capacity=self._queue.maxsize,
            subscriber_count=sum(len(handlers) for handlers in self._subscribers.values()),
            topic_count=sum(1 for handlers in self._subscribers.values() if handlers),
            published_total=self._published_total,
            processed_total=self._processed_total,
            failed_total=self._failed_total,
            dropped_total=self._dropped_total,
            lag_seconds=max(0.0, self._last_publish_ts - self._last_dispatch_ts),
        )


class _StopPayload(BasePayload):
    """Sentinel payload to signal dispatcher shutdown."""


__all__ = ["EventBus", "Handler", "Subscription"]
