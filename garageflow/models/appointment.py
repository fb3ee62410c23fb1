"""AppointmentRecord model — persisted form of the appointment aggregate."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from garageflow.models.base import Base, TimestampMixin, VersionMixin
from garageflow.models.enums import AppointmentPriority, AppointmentStatus


class AppointmentRecord(TimestampMixin, VersionMixin, Base):
    """A vehicle-service appointment and its embedded workflow history.

    Status and history live in the same row so a single conditional UPDATE
    commits both.
    """

    __tablename__ = "appointments"

    appointment_number: Mapped[str | None] = mapped_column(String(20), unique=True)

    # Participants
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    technician_id: Mapped[str | None] = mapped_column(String(100), index=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)

    # Scheduling
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    priority: Mapped[str] = mapped_column(
        String(10), default=AppointmentPriority.NORMAL.value, nullable=False
    )

    # Workflow
    status: Mapped[str] = mapped_column(
        String(30), default=AppointmentStatus.PENDING.value, nullable=False, index=True
    )
    core_status: Mapped[str] = mapped_column(String(20), nullable=False, comment="Cached projection of status")
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    no_show_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    workflow_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list, comment="Append-only transition log"
    )
    rescheduling_info: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB, comment="Original, previous and new dates of the latest reschedule"
    )

    def __repr__(self) -> str:
        return f"<AppointmentRecord id={self.id} status={self.status} v={self.version}>"
