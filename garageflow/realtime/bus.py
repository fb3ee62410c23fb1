"""Event bus — async pub/sub for DomainEvents.

The transition executor publishes here after a successful commit; the event
log and the notification dispatcher subscribe. One instance is created at
application startup and passed to whoever needs it.

Usage:
    bus = EventBus()
    bus.subscribe(dispatcher.on_event)              # all events
    bus.subscribe(handler, [EventType.PAYMENT_RECEIVED])
    await bus.start()
    await bus.publish(event)
    ...
    await bus.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from garageflow.schemas.events import DomainEvent, EventType

logger = logging.getLogger(__name__)

# Type alias for event handler functions
EventHandler = Callable[[DomainEvent], Coroutine[Any, Any, None]]


class EventBus:
    """Queue-backed dispatcher with per-handler failure isolation."""

    def __init__(self) -> None:
        self._subscribers: list[EventHandler] = []
        self._type_subscribers: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[DomainEvent] | None = None
        self._worker_task: asyncio.Task[None] | None = None

    # ── Subscription ─────────────────────────────────────────────────

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Register an event handler.

        Args:
            handler: Async function that accepts a DomainEvent.
            event_types: If provided, handler only receives these event types.
                         If None, handler receives ALL events.
        """
        if event_types is None:
            self._subscribers.append(handler)
            logger.info("Registered global event subscriber: %s", _name(handler))
        else:
            for et in event_types:
                self._type_subscribers.setdefault(et, []).append(handler)
            logger.info(
                "Registered event subscriber %s for types: %s",
                _name(handler),
                [t.value for t in event_types],
            )

    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        if handler in self._subscribers:
            self._subscribers.remove(handler)
        for handlers in self._type_subscribers.values():
            if handler in handlers:
                handlers.remove(handler)

    # ── Publishing ───────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers.

        When the bus is running, events are queued and handled by the
        background worker so the publisher is never blocked by slow
        subscribers. Before start() they are dispatched inline.
        """
        if self._queue is None or not self.running:
            await self.dispatch(event)
            return
        await self._queue.put(event)
        logger.debug("Event queued: %s (appointment=%s)", event.event_type.value, event.appointment_id)

    async def dispatch(self, event: DomainEvent) -> None:
        """Dispatch a single event to all matching subscribers."""
        handlers: list[EventHandler] = list(self._subscribers)
        handlers.extend(self._type_subscribers.get(event.event_type, []))
        if not handlers:
            return

        # Run all handlers concurrently; isolate failures
        results = await asyncio.gather(
            *[self._safe_call(handler, event) for handler in handlers],
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("Event handler failed for %s: %s", event.event_type.value, result)

    async def _safe_call(self, handler: EventHandler, event: DomainEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception("Handler %s failed for event %s", _name(handler), event.event_type.value)
            raise

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Create the queue and start the background worker."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker_task = asyncio.create_task(self._worker())
        logger.info(
            "Event bus started with %d global + %d typed subscribers",
            len(self._subscribers),
            sum(len(v) for v in self._type_subscribers.values()),
        )

    async def stop(self) -> None:
        """Drain queued events, then stop the worker."""
        if self._queue is not None and self.running:
            await self._queue.join()

        if self._worker_task is not None and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass

        self._worker_task = None
        self._queue = None
        logger.info("Event bus stopped")

    async def _worker(self) -> None:
        """Drain the queue and dispatch to subscribers."""
        queue = self._queue
        if queue is None:
            return

        while True:
            try:
                event = await queue.get()
            except asyncio.CancelledError:
                logger.info("Event worker shutting down")
                break
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception("Error in event worker")
            finally:
                queue.task_done()


def _name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or getattr(handler, "__name__", repr(handler))
