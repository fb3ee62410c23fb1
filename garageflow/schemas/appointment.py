"""Appointment aggregate — the domain view the workflow engine operates on.

Instances are immutable; the transition executor produces a new copy for each
committed transition. ``core_status`` and ``reason_code`` are computed, never
stored independently of ``detailed_status``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from garageflow.models.enums import (
    ActorRole,
    AppointmentPriority,
    AppointmentStatus,
    CoreStatus,
    ReasonCode,
)
from garageflow.workflow.statuses import INITIAL_STATUS, coarse_status, reason_code


class Actor(BaseModel):
    """Authenticated identity as resolved by the auth provider."""

    id: str
    role: ActorRole

    model_config = {"frozen": True}


class WorkflowEntry(BaseModel):
    """One step of the audit trail. Records the status that was entered."""

    status: AppointmentStatus
    timestamp: datetime
    actor_id: str
    actor_role: ActorRole
    notes: str | None = None
    reason: str | None = None
    idempotency_key: str | None = Field(default=None, description="Set for executor-recorded transitions")

    model_config = {"frozen": True}


class RescheduleInfo(BaseModel):
    """Dates and author of the latest reschedule."""

    original_scheduled_at: datetime = Field(description="Date booked before the first reschedule")
    previous_scheduled_at: datetime
    new_scheduled_at: datetime
    rescheduled_by: str
    rescheduled_at: datetime
    reason: str | None = None

    model_config = {"frozen": True}


class Appointment(BaseModel):
    """Aggregate root for a vehicle-service appointment."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    appointment_number: str | None = None

    customer_id: str
    technician_id: str | None = None
    created_by: str

    scheduled_at: datetime
    priority: AppointmentPriority = AppointmentPriority.NORMAL

    detailed_status: AppointmentStatus = INITIAL_STATUS
    reschedule_count: int = Field(default=0, ge=0)
    no_show_count: int = Field(default=0, ge=0)
    workflow_history: tuple[WorkflowEntry, ...]
    rescheduling: RescheduleInfo | None = None

    version: int = Field(default=1, ge=1)

    model_config = {"frozen": True}

    @field_validator("scheduled_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        """Naive datetimes are taken to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_history(self) -> Appointment:
        """History starts at the initial status and ends at the current one."""
        if not self.workflow_history:
            msg = "workflow_history must contain at least the booking entry"
            raise ValueError(msg)
        first = self.workflow_history[0].status
        if first != INITIAL_STATUS:
            msg = f"workflow_history must start at {INITIAL_STATUS.value}, not {first.value}"
            raise ValueError(msg)
        last = self.workflow_history[-1].status
        if last != self.detailed_status:
            msg = f"detailed_status {self.detailed_status.value} does not match last history entry {last.value}"
            raise ValueError(msg)
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def core_status(self) -> CoreStatus:
        return coarse_status(self.detailed_status)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def reason_code(self) -> ReasonCode | None:
        return reason_code(self.detailed_status)

    @property
    def last_entry(self) -> WorkflowEntry | None:
        return self.workflow_history[-1] if self.workflow_history else None

    def is_participant(self, actor_id: str) -> bool:
        """Customer or assigned technician on this appointment."""
        return actor_id == self.customer_id or (
            self.technician_id is not None and actor_id == self.technician_id
        )

    def last_recorded_by(self, status: AppointmentStatus) -> WorkflowEntry | None:
        """Most recent history entry that entered ``status``."""
        for entry in reversed(self.workflow_history):
            if entry.status == status:
                return entry
        return None


def new_appointment(
    *,
    customer_id: str,
    scheduled_at: datetime,
    created_by: Actor,
    technician_id: str | None = None,
    priority: AppointmentPriority = AppointmentPriority.NORMAL,
    appointment_number: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Build a freshly booked appointment with its initial ``pending`` history entry.

    Booking itself happens outside the workflow engine; this is the shape the
    booking collaborator hands over.
    """
    booked_at = now or datetime.now(timezone.utc)
    return Appointment(
        appointment_number=appointment_number,
        customer_id=customer_id,
        technician_id=technician_id,
        created_by=created_by.id,
        scheduled_at=scheduled_at,
        priority=priority,
        detailed_status=INITIAL_STATUS,
        workflow_history=(
            WorkflowEntry(
                status=INITIAL_STATUS,
                timestamp=booked_at,
                actor_id=created_by.id,
                actor_role=created_by.role,
                notes=notes,
            ),
        ),
    )
