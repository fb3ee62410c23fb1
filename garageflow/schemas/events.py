"""DomainEvent schema — the event type that flows from the workflow engine to subscribers.

Every committed transition emits a DomainEvent. Subscribers (event log,
notification dispatcher) consume these events asynchronously. Collaborators
outside the engine (booking, parts, billing, chat) publish the other types.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from garageflow.models.enums import ActorRole, AppointmentPriority, AppointmentStatus


class EventType(str, Enum):
    """All event types routed by the system."""

    # Appointment lifecycle
    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_STATUS_CHANGED = "appointment.status_changed"
    TECHNICIAN_ASSIGNED = "technician.assigned"

    # Reception
    RECEPTION_CREATED = "reception.created"
    RECEPTION_APPROVED = "reception.approved"

    # Parts
    PARTS_REQUESTED = "parts.requested"
    PARTS_APPROVED = "parts.approved"

    # Billing
    INVOICE_GENERATED = "invoice.generated"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_SUCCEEDED = "payment.succeeded"

    # Chat
    MESSAGE_SENT = "message.sent"


class DomainEvent(BaseModel):
    """Event describing something that already happened.

    Immutable once created. Consumed by:
    - event log subscriber → writes to event_log table
    - NotificationDispatcher → routes per recipient and pushes over the registry
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Subject (appointment-scoped events carry appointment_id; others a resource_id)
    appointment_id: uuid.UUID | None = None
    resource_id: str | None = None
    appointment_number: str | None = None

    # Who caused it
    actor_id: str | None = None
    actor_role: ActorRole | None = None

    # Who is involved
    customer_id: str | None = None
    technician_id: str | None = None
    priority: AppointmentPriority = AppointmentPriority.NORMAL

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}

    @property
    def room(self) -> str | None:
        """Registry room for appointment-scoped events."""
        if self.appointment_id is None:
            return None
        return appointment_room(self.appointment_id)


def appointment_room(appointment_id: uuid.UUID | str) -> str:
    return f"appointment:{appointment_id}"


def status_changed(
    *,
    appointment_id: uuid.UUID,
    from_status: AppointmentStatus,
    to_status: AppointmentStatus,
    actor_id: str,
    actor_role: ActorRole,
    timestamp: datetime,
    customer_id: str,
    technician_id: str | None = None,
    priority: AppointmentPriority = AppointmentPriority.NORMAL,
    appointment_number: str | None = None,
    event_id: uuid.UUID | None = None,
) -> DomainEvent:
    """Build the StatusChanged event for a committed transition."""
    return DomainEvent(
        id=event_id or uuid.uuid4(),
        event_type=EventType.APPOINTMENT_STATUS_CHANGED,
        timestamp=timestamp,
        appointment_id=appointment_id,
        appointment_number=appointment_number,
        actor_id=actor_id,
        actor_role=actor_role,
        customer_id=customer_id,
        technician_id=technician_id,
        priority=priority,
        data={
            "from_status": from_status.value,
            "to_status": to_status.value,
        },
        source_module="workflow.executor",
    )
