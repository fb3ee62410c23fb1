"""Notification schema — what the event router decides to deliver to one recipient."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from garageflow.models.enums import AppointmentPriority
from garageflow.schemas.events import EventType

PUSH_PRIORITIES: frozenset[AppointmentPriority] = frozenset(
    {AppointmentPriority.HIGH, AppointmentPriority.URGENT}
)


class Notification(BaseModel):
    """A per-recipient toast produced by the event router."""

    recipient_id: str
    type: EventType
    title: str
    message: str
    priority: AppointmentPriority
    created_at: datetime

    event_id: uuid.UUID
    appointment_id: uuid.UUID | None = None

    model_config = {"frozen": True}

    @property
    def push(self) -> bool:
        """High and urgent notifications also go to the out-of-band push channel."""
        return self.priority in PUSH_PRIORITIES

    def to_payload(self) -> dict[str, Any]:
        """Wire form sent over the connection registry."""
        payload = self.model_dump(mode="json")
        payload["kind"] = "notification"
        payload["push"] = self.push
        return payload
