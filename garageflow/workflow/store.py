"""Appointment persistence — load-by-id and version-conditional write.

``save`` is the only write path the executor uses. It succeeds only if the
stored version still equals ``expected_version``; otherwise it raises
StaleVersionError and nothing is written. Status, counters, and history are
written together in that one call.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from garageflow.models.appointment import AppointmentRecord
from garageflow.models.enums import AppointmentPriority, AppointmentStatus
from garageflow.schemas.appointment import Appointment, RescheduleInfo, WorkflowEntry
from garageflow.workflow.errors import StaleVersionError

logger = logging.getLogger(__name__)


class AppointmentStore(Protocol):
    """Persistence collaborator consumed by the transition executor."""

    async def get(self, appointment_id: uuid.UUID) -> Appointment | None: ...

    async def add(self, appointment: Appointment) -> Appointment: ...

    async def save(self, appointment: Appointment, expected_version: int) -> Appointment: ...


class InMemoryAppointmentStore:
    """Process-local store for tests and single-process runs."""

    def __init__(self) -> None:
        self._items: dict[uuid.UUID, Appointment] = {}
        self._lock = asyncio.Lock()

    async def get(self, appointment_id: uuid.UUID) -> Appointment | None:
        return self._items.get(appointment_id)

    async def add(self, appointment: Appointment) -> Appointment:
        async with self._lock:
            if appointment.id in self._items:
                msg = f"Appointment {appointment.id} already exists"
                raise ValueError(msg)
            self._items[appointment.id] = appointment
        return appointment

    async def save(self, appointment: Appointment, expected_version: int) -> Appointment:
        async with self._lock:
            current = self._items.get(appointment.id)
            actual = current.version if current is not None else None
            if actual != expected_version:
                raise StaleVersionError(appointment.id, expected_version, actual)
            stored = appointment.model_copy(update={"version": expected_version + 1})
            self._items[appointment.id] = stored
        return stored


class SqlAppointmentStore:
    """PostgreSQL-backed store using a conditional UPDATE on ``version``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, appointment_id: uuid.UUID) -> Appointment | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AppointmentRecord).where(AppointmentRecord.id == appointment_id)
            )
            record = result.scalar_one_or_none()
        if record is None:
            return None
        return record_to_appointment(record)

    async def add(self, appointment: Appointment) -> Appointment:
        async with self._session_factory() as db:
            db.add(AppointmentRecord(
                id=appointment.id,
                version=appointment.version,
                **appointment_to_values(appointment),
            ))
            await db.commit()
        logger.info("Appointment stored: id=%s", appointment.id)
        return appointment

    async def save(self, appointment: Appointment, expected_version: int) -> Appointment:
        async with self._session_factory() as db:
            result = await db.execute(
                update(AppointmentRecord)
                .where(
                    AppointmentRecord.id == appointment.id,
                    AppointmentRecord.version == expected_version,
                )
                .values(version=expected_version + 1, **appointment_to_values(appointment))
            )
            if result.rowcount == 0:
                await db.rollback()
                actual = await db.scalar(
                    select(AppointmentRecord.version).where(AppointmentRecord.id == appointment.id)
                )
                raise StaleVersionError(appointment.id, expected_version, actual)
            await db.commit()
        return appointment.model_copy(update={"version": expected_version + 1})


# ── Row mapping ──────────────────────────────────────────────────────


def appointment_to_values(appointment: Appointment) -> dict[str, Any]:
    """Column values for an insert or update, excluding id and version."""
    return {
        "appointment_number": appointment.appointment_number,
        "customer_id": appointment.customer_id,
        "technician_id": appointment.technician_id,
        "created_by": appointment.created_by,
        "scheduled_at": appointment.scheduled_at,
        "priority": appointment.priority.value,
        "status": appointment.detailed_status.value,
        "core_status": appointment.core_status.value,
        "reschedule_count": appointment.reschedule_count,
        "no_show_count": appointment.no_show_count,
        "workflow_history": [entry.model_dump(mode="json") for entry in appointment.workflow_history],
        "rescheduling_info": (
            appointment.rescheduling.model_dump(mode="json") if appointment.rescheduling is not None else None
        ),
    }


def record_to_appointment(record: AppointmentRecord) -> Appointment:
    return Appointment(
        id=record.id,
        appointment_number=record.appointment_number,
        customer_id=record.customer_id,
        technician_id=record.technician_id,
        created_by=record.created_by,
        scheduled_at=record.scheduled_at,
        priority=AppointmentPriority(record.priority),
        detailed_status=AppointmentStatus(record.status),
        reschedule_count=record.reschedule_count,
        no_show_count=record.no_show_count,
        workflow_history=tuple(WorkflowEntry.model_validate(e) for e in record.workflow_history or []),
        rescheduling=(
            RescheduleInfo.model_validate(record.rescheduling_info) if record.rescheduling_info else None
        ),
        version=record.version,
    )
