"""Event log subscriber — persists every DomainEvent to the event_log table.

Registered as a global subscriber (receives ALL events). Replayed events are
recognized by their unique event id and skipped.

Never raises — failures are logged but never propagate to the event bus.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from garageflow.models.audit import EventLog
from garageflow.realtime.bus import EventHandler
from garageflow.schemas.events import DomainEvent

logger = logging.getLogger(__name__)


def event_log_subscriber(session_factory: async_sessionmaker[AsyncSession]) -> EventHandler:
    """Build the bus handler that writes events through ``session_factory``."""

    async def log_event(event: DomainEvent) -> None:
        try:
            async with session_factory() as db:
                db.add(EventLog(
                    event_id=event.id,
                    event_type=event.event_type.value,
                    appointment_id=event.appointment_id,
                    actor_id=event.actor_id,
                    actor_role=event.actor_role.value if event.actor_role else None,
                    data=event.data,
                ))
                await db.commit()
        except IntegrityError:
            logger.debug("Event %s already logged", event.id)
        except Exception:
            logger.exception(
                "Failed to persist event: %s (appointment=%s)",
                event.event_type.value,
                event.appointment_id,
            )

    return log_event
