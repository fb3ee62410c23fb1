"""Transition executor — the only code path that changes an appointment's status.

Each request runs read → validate → conditional write → publish:

1. load the aggregate
2. check the edge against the status graph for the actor's role
3. check participant rules (own appointment, assigned technician,
   segregation of duties on reception approval)
4. for customer reschedule/cancel, check the permission policy
5. write status, counters, the new history entry and, for a reschedule, the
   new date in one versioned save
6. publish StatusChanged, only after the save succeeded

A stale version means another request won the race. The executor re-reads
and re-applies only if the appointment is still in the status this request
was validated against; otherwise it raises TransitionConflict.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from garageflow.config import WorkflowSettings, settings
from garageflow.models.enums import ActorRole, AppointmentStatus, CustomerAction
from garageflow.realtime.bus import EventBus
from garageflow.schemas.appointment import Actor, Appointment, RescheduleInfo, WorkflowEntry
from garageflow.schemas.events import DomainEvent, status_changed
from garageflow.workflow.errors import (
    AppointmentNotFound,
    Forbidden,
    InvalidRequest,
    PersistenceUnavailable,
    StaleVersionError,
    TransitionConflict,
    TransitionError,
    WindowExpired,
)
from garageflow.workflow.permissions import check_permission
from garageflow.workflow.statuses import is_legal_transition, next_legal_statuses
from garageflow.workflow.store import AppointmentStore

logger = logging.getLogger(__name__)

# Transitions a technician may only take on appointments assigned to them.
ASSIGNED_TECHNICIAN_ONLY: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.RECEPTION_CREATED,
    AppointmentStatus.IN_PROGRESS,
    AppointmentStatus.PARTS_REQUESTED,
})

CUSTOMER_ACTIONS: dict[AppointmentStatus, CustomerAction] = {
    AppointmentStatus.RESCHEDULED: CustomerAction.RESCHEDULE,
    AppointmentStatus.CANCELLED: CustomerAction.CANCEL,
}

EVENT_NAMESPACE = uuid.UUID("5b0e3c1e-4a47-4f7e-9d0c-2f8a61c3d9aa")


def idempotency_key(
    appointment_id: uuid.UUID,
    from_status: AppointmentStatus,
    to_status: AppointmentStatus,
    actor_id: str,
    nonce: str,
) -> str:
    raw = f"{appointment_id}:{from_status.value}:{to_status.value}:{actor_id}:{nonce}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionExecutor:
    """Validates and commits status transitions for appointments."""

    def __init__(
        self,
        store: AppointmentStore,
        bus: EventBus | None = None,
        *,
        config: WorkflowSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or settings.workflow
        self._clock = clock

    async def request_transition(
        self,
        appointment_id: uuid.UUID,
        to_status: AppointmentStatus,
        actor: Actor,
        notes: str | None = None,
        *,
        reason: str | None = None,
        request_nonce: str | None = None,
        new_scheduled_at: datetime | None = None,
    ) -> Appointment:
        """Move an appointment to ``to_status`` on behalf of ``actor``.

        Args:
            appointment_id: Appointment to transition.
            to_status: Target detailed status.
            actor: Authenticated identity making the request.
            notes: Free text stored on the history entry.
            reason: Short reason stored on the history entry.
            request_nonce: Client-chosen token. Retrying with the same nonce
                after a lost response returns the already-committed
                appointment instead of appending a second entry.
            new_scheduled_at: Required for ``rescheduled`` and rejected for
                every other target. Must lie in the future.

        Returns:
            The committed appointment.

        Raises:
            AppointmentNotFound, Forbidden, WindowExpired, InvalidRequest: never retried.
            TransitionConflict: concurrent change not resolved within the retry bound.
            PersistenceUnavailable: the store kept timing out.
        """
        nonce = request_nonce or uuid.uuid4().hex
        if new_scheduled_at is not None and new_scheduled_at.tzinfo is None:
            new_scheduled_at = new_scheduled_at.replace(tzinfo=timezone.utc)
        attempts = max(self._config.conflict_retries, 1)
        validated_from: AppointmentStatus | None = None
        timed_out = False

        for attempt in range(1, attempts + 1):
            try:
                current = await self._load(appointment_id)
            except TimeoutError:
                logger.warning("Load timed out: appointment=%s attempt=%d", appointment_id, attempt)
                timed_out = True
                continue

            applied = self._find_applied(current, to_status, actor, nonce)
            if applied is not None:
                from_status, entry = applied
                logger.info(
                    "Transition already applied: %s --> %s (appointment=%s)",
                    from_status.value,
                    to_status.value,
                    appointment_id,
                )
                await self._emit(self._event_for(current, from_status, entry))
                return current

            if validated_from is None:
                validated_from = current.detailed_status
            elif current.detailed_status != validated_from:
                msg = (
                    f"Appointment {appointment_id} moved from {validated_from.value} to "
                    f"{current.detailed_status.value} while the request was in flight"
                )
                raise TransitionConflict(appointment_id, msg)

            now = self._clock()
            try:
                self.validate(current, to_status, actor, now)
                self._check_schedule(to_status, new_scheduled_at, now)
            except TransitionError as exc:
                logger.info(
                    "Transition denied: %s --> %s by %s/%s (appointment=%s): %s",
                    current.detailed_status.value,
                    to_status.value,
                    actor.role.value,
                    actor.id,
                    appointment_id,
                    exc,
                )
                raise

            key = idempotency_key(appointment_id, current.detailed_status, to_status, actor.id, nonce)
            entry = WorkflowEntry(
                status=to_status,
                timestamp=now,
                actor_id=actor.id,
                actor_role=actor.role,
                notes=notes,
                reason=reason,
                idempotency_key=key,
            )
            updated = self._apply(current, entry, new_scheduled_at)
            event = self._event_for(updated, current.detailed_status, entry)

            try:
                saved = await self._persist(updated, current.version, event)
            except StaleVersionError as exc:
                logger.warning("Version conflict on attempt %d: %s", attempt, exc)
                continue
            except TimeoutError:
                logger.warning("Save timed out: appointment=%s attempt=%d", appointment_id, attempt)
                timed_out = True
                continue

            logger.info(
                "State transition: %s --> %s by %s/%s (appointment=%s, v%d)",
                current.detailed_status.value,
                to_status.value,
                actor.role.value,
                actor.id,
                appointment_id,
                saved.version,
            )
            await self._emit(event)
            return saved

        if timed_out:
            msg = f"Appointment store did not respond for {appointment_id}; retry with the same request nonce"
            raise PersistenceUnavailable(msg)
        raise TransitionConflict(appointment_id)

    def validate(
        self,
        appointment: Appointment,
        to_status: AppointmentStatus,
        actor: Actor,
        now: datetime,
    ) -> None:
        """Raise Forbidden or WindowExpired if ``actor`` may not take this edge now."""
        from_status = appointment.detailed_status

        if not is_legal_transition(from_status, to_status, actor.role):
            raise Forbidden(from_status, to_status, actor.role)

        if actor.role == ActorRole.CUSTOMER and actor.id != appointment.customer_id:
            raise Forbidden(
                from_status, to_status, actor.role,
                "Customers may only change their own appointments",
            )

        if to_status == AppointmentStatus.RECEPTION_CREATED and appointment.technician_id is None:
            raise Forbidden(
                from_status, to_status, actor.role,
                "A technician must be assigned before a reception can be created",
            )

        if (
            actor.role == ActorRole.TECHNICIAN
            and to_status in ASSIGNED_TECHNICIAN_ONLY
            and actor.id != appointment.technician_id
        ):
            raise Forbidden(
                from_status, to_status, actor.role,
                "Only the assigned technician can perform this step",
            )

        if (
            self._config.enforce_reception_segregation
            and to_status == AppointmentStatus.RECEPTION_APPROVED
            and from_status == AppointmentStatus.RECEPTION_CREATED
        ):
            creator = appointment.last_recorded_by(AppointmentStatus.RECEPTION_CREATED)
            if creator is not None and creator.actor_id == actor.id:
                raise Forbidden(
                    from_status, to_status, actor.role,
                    "The creator of a reception cannot also approve it",
                )

        if actor.role == ActorRole.CUSTOMER and to_status in CUSTOMER_ACTIONS:
            decision = check_permission(appointment, CUSTOMER_ACTIONS[to_status], now, self._config)
            if not decision.allowed:
                raise WindowExpired(decision.reason or "Action no longer allowed")

    def available_transitions(
        self,
        appointment: Appointment,
        actor: Actor,
        now: datetime | None = None,
    ) -> list[AppointmentStatus]:
        """Targets that would pass validation right now, in declaration order."""
        moment = now or self._clock()
        candidates = next_legal_statuses(appointment.detailed_status, actor.role)
        available: list[AppointmentStatus] = []
        for status in AppointmentStatus:
            if status not in candidates:
                continue
            try:
                self.validate(appointment, status, actor, moment)
            except TransitionError:
                continue
            available.append(status)
        return available

    # ── Internals ────────────────────────────────────────────────────

    async def _load(self, appointment_id: uuid.UUID) -> Appointment:
        appointment = await asyncio.wait_for(
            self._store.get(appointment_id),
            timeout=self._config.persistence_timeout,
        )
        if appointment is None:
            raise AppointmentNotFound(appointment_id)
        return appointment

    async def _persist(
        self,
        updated: Appointment,
        expected_version: int,
        event: DomainEvent,
    ) -> Appointment:
        # The write is shielded: if the caller goes away or the timeout fires,
        # the save keeps running and its event is published once it commits.
        save_task = asyncio.ensure_future(self._store.save(updated, expected_version))
        try:
            return await asyncio.wait_for(
                asyncio.shield(save_task),
                timeout=self._config.persistence_timeout,
            )
        except (asyncio.CancelledError, TimeoutError):
            save_task.add_done_callback(lambda task: self._emit_if_committed(task, event))
            raise

    def _emit_if_committed(self, task: asyncio.Future[Appointment], event: DomainEvent) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        logger.info("Transition committed after its request gave up (appointment=%s)", event.appointment_id)
        asyncio.ensure_future(self._emit(event))

    @staticmethod
    def _check_schedule(
        to_status: AppointmentStatus,
        new_scheduled_at: datetime | None,
        now: datetime,
    ) -> None:
        if to_status != AppointmentStatus.RESCHEDULED:
            if new_scheduled_at is not None:
                msg = f"A new date can only be given when rescheduling, not for {to_status.value}"
                raise InvalidRequest(msg)
            return
        if new_scheduled_at is None:
            msg = "Rescheduling requires a new date"
            raise InvalidRequest(msg)
        if new_scheduled_at <= now:
            msg = f"New date {new_scheduled_at.isoformat()} is not in the future"
            raise InvalidRequest(msg)

    @staticmethod
    def _apply(
        current: Appointment,
        entry: WorkflowEntry,
        new_scheduled_at: datetime | None = None,
    ) -> Appointment:
        updates: dict[str, object] = {
            "detailed_status": entry.status,
            "workflow_history": (*current.workflow_history, entry),
        }
        if entry.status == AppointmentStatus.RESCHEDULED:
            updates["reschedule_count"] = current.reschedule_count + 1
            if new_scheduled_at is not None:
                original = current.rescheduling.original_scheduled_at if current.rescheduling else current.scheduled_at
                updates["scheduled_at"] = new_scheduled_at
                updates["rescheduling"] = RescheduleInfo(
                    original_scheduled_at=original,
                    previous_scheduled_at=current.scheduled_at,
                    new_scheduled_at=new_scheduled_at,
                    rescheduled_by=entry.actor_id,
                    rescheduled_at=entry.timestamp,
                    reason=entry.reason,
                )
        elif entry.status == AppointmentStatus.NO_SHOW:
            updates["no_show_count"] = current.no_show_count + 1
        return current.model_copy(update=updates)

    @staticmethod
    def _find_applied(
        appointment: Appointment,
        to_status: AppointmentStatus,
        actor: Actor,
        nonce: str,
    ) -> tuple[AppointmentStatus, WorkflowEntry] | None:
        """Locate a history entry already recorded for this exact request."""
        history = appointment.workflow_history
        for prev, entry in zip(history, history[1:]):
            if entry.idempotency_key is None or entry.status != to_status:
                continue
            if entry.idempotency_key == idempotency_key(appointment.id, prev.status, to_status, actor.id, nonce):
                return prev.status, entry
        return None

    @staticmethod
    def _event_for(
        appointment: Appointment,
        from_status: AppointmentStatus,
        entry: WorkflowEntry,
    ) -> DomainEvent:
        # Deterministic id so a replayed request produces the same event.
        event_id = uuid.uuid5(EVENT_NAMESPACE, entry.idempotency_key) if entry.idempotency_key else None
        return status_changed(
            appointment_id=appointment.id,
            from_status=from_status,
            to_status=entry.status,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            timestamp=entry.timestamp,
            customer_id=appointment.customer_id,
            technician_id=appointment.technician_id,
            priority=appointment.priority,
            appointment_number=appointment.appointment_number,
            event_id=event_id,
        )

    async def _emit(self, event: DomainEvent) -> None:
        """Hand the event to the bus. A delivery failure never undoes a commit."""
        if self._bus is None:
            return
        try:
            await self._bus.publish(event)
        except Exception:
            logger.exception(
                "Failed to publish %s for appointment %s",
                event.event_type.value,
                event.appointment_id,
            )
