"""EventLog model — append-only record of every domain event.

Complements the per-appointment workflow history: this table also captures
events that are not status changes (payments, messages, part requests).
This table is append-only — no updates or deletes.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from garageflow.models.base import Base, TimestampMixin


class EventLog(TimestampMixin, Base):
    """Immutable event log entry."""

    __tablename__ = "event_log"

    event_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    appointment_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    actor_id: Mapped[str | None] = mapped_column(String(100))
    actor_role: Mapped[str | None] = mapped_column(String(50), comment="customer, staff, technician, admin")

    data: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    def __repr__(self) -> str:
        return f"<EventLog event={self.event_type} appointment={self.appointment_id}>"
