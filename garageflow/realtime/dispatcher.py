"""Notification dispatcher — bus subscriber that fans events out to live connections.

For every event:
  1. broadcast a state-sync payload to the appointment's room (always)
  2. ask the router which online identities get a toast
  3. unicast each toast; hand high/urgent ones to the push channel

Events for the same appointment are delivered strictly in order through one
queue per appointment, so no client sees a later status before an earlier
one. Different appointments, and different recipients of one event, proceed
concurrently. Delivery failures are logged per recipient and never reach the
executor.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Coroutine
from datetime import datetime, timezone
from typing import Any

from garageflow.realtime.registry import ConnectionRegistry
from garageflow.realtime.router import EventRouter
from garageflow.schemas.events import DomainEvent
from garageflow.schemas.notifications import Notification
from garageflow.workflow.errors import TransportUnavailable

logger = logging.getLogger(__name__)

PushFn = Callable[[Notification], Coroutine[Any, Any, None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    """Routes bus events to the connection registry."""

    def __init__(
        self,
        router: EventRouter,
        registry: ConnectionRegistry,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._router = router
        self._registry = registry
        self._clock = clock
        self._push_fn: PushFn | None = None
        self._queues: dict[uuid.UUID, asyncio.Queue[DomainEvent]] = {}
        self._workers: dict[uuid.UUID, asyncio.Task[None]] = {}

    def set_push_fn(self, fn: PushFn) -> None:
        """Inject the out-of-band push sender (mobile push, SMS, ...)."""
        self._push_fn = fn

    async def on_event(self, event: DomainEvent) -> None:
        """Bus entry point. Queues appointment events, delivers the rest directly."""
        key = event.appointment_id
        if key is None:
            await self.deliver(event)
            return

        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            queue.put_nowait(event)
            self._workers[key] = asyncio.create_task(self._drain(key))
        else:
            queue.put_nowait(event)

    async def deliver(self, event: DomainEvent) -> list[Notification]:
        """Deliver one event now. Returns the toasts that were sent out."""
        room = event.room
        if room is not None:
            reached = await self._registry.broadcast(room, _sync_payload(event))
            logger.debug("State sync for %s reached %d sessions", room, reached)

        recipients = self._registry.online_identities()
        notifications = await self._router.route(event, recipients, now=self._clock())
        if notifications:
            await asyncio.gather(*[self._deliver_one(n) for n in notifications])
        logger.info(
            "Routed %s to %d of %d online identities",
            event.event_type.value,
            len(notifications),
            len(recipients),
        )
        return notifications

    async def flush(self) -> None:
        """Wait until every queued event has been delivered."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel outstanding per-appointment workers."""
        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

    async def _drain(self, key: uuid.UUID) -> None:
        queue = self._queues[key]
        try:
            while not queue.empty():
                event = queue.get_nowait()
                try:
                    await self.deliver(event)
                except Exception:
                    logger.exception("Delivery failed for event %s", event.id)
                finally:
                    queue.task_done()
        finally:
            # No await between the empty check and removal: a new event either
            # landed in this queue or will create a fresh one.
            self._queues.pop(key, None)
            self._workers.pop(key, None)

    async def _deliver_one(self, notification: Notification) -> None:
        try:
            await self._registry.unicast(notification.recipient_id, notification.to_payload())
        except TransportUnavailable as exc:
            logger.warning("Notification %s dropped: %s", notification.type.value, exc)

        if notification.push and self._push_fn is not None:
            try:
                await self._push_fn(notification)
            except Exception:
                logger.exception("Push hand-off failed for %s", notification.recipient_id)


def _sync_payload(event: DomainEvent) -> dict[str, Any]:
    return {
        "kind": "appointment_event",
        "event_id": str(event.id),
        "event_type": event.event_type.value,
        "appointment_id": str(event.appointment_id) if event.appointment_id else None,
        "timestamp": event.timestamp.isoformat(),
        "data": event.data,
    }
