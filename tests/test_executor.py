"""Tests for the transition executor.

Covers:
- Role gate and permission window (Forbidden / WindowExpired)
- Participant checks: own appointment, assigned technician, segregation of duties
- History append, counters, event publishing after commit
- Concurrent requests (exactly one winner) and stale-version retry
- Idempotent replay with a request nonce
- Store timeouts and bus failures
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from garageflow.config import WorkflowSettings
from garageflow.models.enums import ActorRole, AppointmentStatus, CoreStatus
from garageflow.realtime.bus import EventBus
from garageflow.schemas.appointment import Actor, Appointment, new_appointment
from garageflow.schemas.events import DomainEvent, EventType
from garageflow.workflow.errors import (
    AppointmentNotFound,
    Forbidden,
    InvalidRequest,
    PersistenceUnavailable,
    StaleVersionError,
    TransitionConflict,
    WindowExpired,
)
from garageflow.workflow.executor import EVENT_NAMESPACE, TransitionExecutor
from garageflow.workflow.statuses import is_valid_history
from garageflow.workflow.store import InMemoryAppointmentStore

S = AppointmentStatus
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
CONFIG = WorkflowSettings(conflict_retries=3, persistence_timeout=1.0)

CUSTOMER = Actor(id="cust-a", role=ActorRole.CUSTOMER)
OTHER_CUSTOMER = Actor(id="cust-b", role=ActorRole.CUSTOMER)
STAFF = Actor(id="staff-1", role=ActorRole.STAFF)
STAFF_2 = Actor(id="staff-2", role=ActorRole.STAFF)
TECH = Actor(id="tech-1", role=ActorRole.TECHNICIAN)
OTHER_TECH = Actor(id="tech-2", role=ActorRole.TECHNICIAN)


# ── Helpers ──────────────────────────────────────────────────────────


def _make_appointment(
    lead: timedelta = timedelta(days=3),
    technician_id: str | None = "tech-1",
) -> Appointment:
    return new_appointment(
        customer_id=CUSTOMER.id,
        scheduled_at=NOW + lead,
        created_by=CUSTOMER,
        technician_id=technician_id,
        appointment_number="APT-0001",
        now=NOW - timedelta(days=7),
    )


async def _setup(
    appointment: Appointment | None = None,
    store: InMemoryAppointmentStore | None = None,
    config: WorkflowSettings = CONFIG,
) -> tuple[TransitionExecutor, InMemoryAppointmentStore, Appointment, list[DomainEvent]]:
    store = store or InMemoryAppointmentStore()
    appointment = appointment or _make_appointment()
    await store.add(appointment)

    events: list[DomainEvent] = []

    async def collect(event: DomainEvent) -> None:
        events.append(event)

    bus = EventBus()
    bus.subscribe(collect)
    executor = TransitionExecutor(store, bus, config=config, clock=lambda: NOW)
    return executor, store, appointment, events


class _RacyStore(InMemoryAppointmentStore):
    """Yields after each read so concurrent requests see the same version."""

    async def get(self, appointment_id):
        snapshot = await super().get(appointment_id)
        await asyncio.sleep(0)
        return snapshot


class _StaleOnceStore(InMemoryAppointmentStore):
    """First save loses to a concurrent non-status write."""

    def __init__(self):
        super().__init__()
        self.saves = 0

    async def save(self, appointment, expected_version):
        self.saves += 1
        if self.saves == 1:
            current = self._items[appointment.id]
            self._items[appointment.id] = current.model_copy(update={"version": current.version + 1})
            raise StaleVersionError(appointment.id, expected_version, current.version + 1)
        return await super().save(appointment, expected_version)


class _SlowSaveStore(InMemoryAppointmentStore):
    """Commits each save only after the executor's timeout has fired."""

    async def save(self, appointment, expected_version):
        await asyncio.sleep(0.1)
        return await super().save(appointment, expected_version)


class _HangingStore(InMemoryAppointmentStore):
    async def get(self, appointment_id):
        await asyncio.sleep(10)
        return None


# ── Scenarios ────────────────────────────────────────────────────────


class TestRoleGate:
    @pytest.mark.asyncio()
    async def test_customer_cannot_confirm(self):
        executor, store, appointment, events = await _setup()

        with pytest.raises(Forbidden) as exc_info:
            await executor.request_transition(appointment.id, S.CONFIRMED, CUSTOMER)

        assert exc_info.value.from_status == S.PENDING
        assert exc_info.value.to_status == S.CONFIRMED
        stored = await store.get(appointment.id)
        assert stored.detailed_status == S.PENDING
        assert len(stored.workflow_history) == 1
        assert events == []

    @pytest.mark.asyncio()
    async def test_undeclared_edge_forbidden_for_admin(self):
        executor, _, appointment, _ = await _setup()
        with pytest.raises(Forbidden):
            await executor.request_transition(appointment.id, S.COMPLETED, Actor(id="adm", role=ActorRole.ADMIN))

    @pytest.mark.asyncio()
    async def test_not_found(self):
        executor, _, _, _ = await _setup()
        with pytest.raises(AppointmentNotFound):
            await executor.request_transition(uuid.uuid4(), S.CONFIRMED, STAFF)


class TestHappyPath:
    @pytest.mark.asyncio()
    async def test_arrival_then_reception(self):
        executor, store, appointment, events = await _setup()
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)

        arrived = await executor.request_transition(appointment.id, S.CUSTOMER_ARRIVED, STAFF, "Walk-in at 08:55")
        received = await executor.request_transition(appointment.id, S.RECEPTION_CREATED, TECH)

        assert arrived.detailed_status == S.CUSTOMER_ARRIVED
        assert received.detailed_status == S.RECEPTION_CREATED
        assert [e.status for e in received.workflow_history] == [
            S.PENDING,
            S.CONFIRMED,
            S.CUSTOMER_ARRIVED,
            S.RECEPTION_CREATED,
        ]
        assert received.workflow_history[2].notes == "Walk-in at 08:55"
        assert received.workflow_history[3].actor_id == TECH.id
        assert received.workflow_history[3].actor_role == ActorRole.TECHNICIAN
        assert received.core_status == CoreStatus.CHECKED_IN
        assert await store.get(appointment.id) == received
        assert len(events) == 3

    @pytest.mark.asyncio()
    async def test_full_lifecycle_history_is_legal_walk(self):
        executor, _, appointment, events = await _setup()
        steps = [
            (S.CONFIRMED, STAFF),
            (S.CUSTOMER_ARRIVED, STAFF),
            (S.RECEPTION_CREATED, TECH),
            (S.RECEPTION_APPROVED, STAFF),
            (S.IN_PROGRESS, TECH),
            (S.PARTS_REQUESTED, TECH),
            (S.IN_PROGRESS, TECH),
            (S.WAITING_FOR_PARTS, TECH),
            (S.IN_PROGRESS, TECH),
            (S.COMPLETED, TECH),
            (S.INVOICED, STAFF),
        ]
        current = appointment
        for to_status, actor in steps:
            previous_len = len(current.workflow_history)
            current = await executor.request_transition(appointment.id, to_status, actor)
            assert len(current.workflow_history) == previous_len + 1

        history = current.workflow_history
        assert is_valid_history([e.status for e in history], [e.actor_role for e in history])
        assert current.core_status == CoreStatus.READY_FOR_PICKUP
        assert current.version == len(steps) + 1
        assert len(events) == len(steps)

    @pytest.mark.asyncio()
    async def test_status_changed_event(self):
        executor, _, appointment, events = await _setup()
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)

        (event,) = events
        assert event.event_type == EventType.APPOINTMENT_STATUS_CHANGED
        assert event.appointment_id == appointment.id
        assert event.data == {"from_status": "pending", "to_status": "confirmed"}
        assert event.actor_id == STAFF.id
        assert event.customer_id == CUSTOMER.id
        assert event.technician_id == TECH.id
        assert event.appointment_number == "APT-0001"
        assert event.timestamp == NOW

    @pytest.mark.asyncio()
    async def test_event_published_after_commit(self):
        store = InMemoryAppointmentStore()
        appointment = _make_appointment()
        await store.add(appointment)
        seen: list[S] = []

        async def check_committed(event: DomainEvent) -> None:
            stored = await store.get(event.appointment_id)
            seen.append(stored.detailed_status)

        bus = EventBus()
        bus.subscribe(check_committed)
        executor = TransitionExecutor(store, bus, config=CONFIG, clock=lambda: NOW)
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)

        assert seen == [S.CONFIRMED]


class TestCustomerRules:
    @pytest.mark.asyncio()
    async def test_cancel_own_appointment(self):
        executor, _, appointment, _ = await _setup()
        result = await executor.request_transition(appointment.id, S.CANCELLED, CUSTOMER, reason="Car sold")
        assert result.detailed_status == S.CANCELLED
        assert result.workflow_history[-1].reason == "Car sold"
        assert result.core_status == CoreStatus.CLOSED

    @pytest.mark.asyncio()
    async def test_cannot_touch_other_customers_appointment(self):
        executor, _, appointment, _ = await _setup()
        with pytest.raises(Forbidden, match="own appointments"):
            await executor.request_transition(appointment.id, S.CANCELLED, OTHER_CUSTOMER)

    @pytest.mark.asyncio()
    async def test_cancel_inside_window(self):
        executor, store, appointment, _ = await _setup(_make_appointment(lead=timedelta(hours=1, minutes=59)))
        with pytest.raises(WindowExpired) as exc_info:
            await executor.request_transition(appointment.id, S.CANCELLED, CUSTOMER)
        assert "2 hours" in exc_info.value.reason
        assert (await store.get(appointment.id)).detailed_status == S.PENDING

    @pytest.mark.asyncio()
    async def test_staff_cancel_ignores_window(self):
        executor, _, appointment, _ = await _setup(_make_appointment(lead=timedelta(minutes=30)))
        result = await executor.request_transition(appointment.id, S.CANCELLED, STAFF)
        assert result.detailed_status == S.CANCELLED

    @pytest.mark.asyncio()
    async def test_reschedule_counts(self):
        executor, _, appointment, _ = await _setup()
        result = await executor.request_transition(
            appointment.id, S.RESCHEDULED, CUSTOMER, new_scheduled_at=NOW + timedelta(days=10)
        )
        assert result.reschedule_count == 1
        assert result.core_status == CoreStatus.CLOSED

    @pytest.mark.asyncio()
    async def test_reschedule_cap(self):
        appointment = _make_appointment().model_copy(update={"reschedule_count": 2})
        executor, _, appointment, _ = await _setup(appointment)
        with pytest.raises(WindowExpired, match="Maximum reschedule limit"):
            await executor.request_transition(
                appointment.id, S.RESCHEDULED, CUSTOMER, new_scheduled_at=NOW + timedelta(days=10)
            )

    @pytest.mark.asyncio()
    async def test_no_show_counts(self):
        executor, _, appointment, _ = await _setup()
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)
        result = await executor.request_transition(appointment.id, S.NO_SHOW, STAFF)
        assert result.no_show_count == 1
        assert result.reschedule_count == 0


class TestReschedule:
    @pytest.mark.asyncio()
    async def test_new_date_recorded(self):
        executor, store, appointment, _ = await _setup()
        new_date = NOW + timedelta(days=10)

        result = await executor.request_transition(
            appointment.id, S.RESCHEDULED, CUSTOMER, reason="Away on business", new_scheduled_at=new_date
        )

        assert result.scheduled_at == new_date
        info = result.rescheduling
        assert info.original_scheduled_at == appointment.scheduled_at
        assert info.previous_scheduled_at == appointment.scheduled_at
        assert info.new_scheduled_at == new_date
        assert info.rescheduled_by == CUSTOMER.id
        assert info.rescheduled_at == NOW
        assert info.reason == "Away on business"
        assert await store.get(appointment.id) == result

    @pytest.mark.asyncio()
    async def test_second_reschedule_keeps_original_date(self):
        executor, _, appointment, _ = await _setup()
        first_date = NOW + timedelta(days=10)
        second_date = NOW + timedelta(days=20)

        await executor.request_transition(appointment.id, S.RESCHEDULED, CUSTOMER, new_scheduled_at=first_date)
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)
        result = await executor.request_transition(
            appointment.id, S.RESCHEDULED, CUSTOMER, new_scheduled_at=second_date
        )

        assert result.scheduled_at == second_date
        assert result.rescheduling.original_scheduled_at == appointment.scheduled_at
        assert result.rescheduling.previous_scheduled_at == first_date
        assert result.reschedule_count == 2

    @pytest.mark.asyncio()
    async def test_later_windows_use_new_date(self):
        # Booked 3 days out, moved 10 days out; a cancel once the old date has
        # passed is judged against the new one.
        store = InMemoryAppointmentStore()
        appointment = _make_appointment()
        await store.add(appointment)
        moment = {"now": NOW}
        executor = TransitionExecutor(store, config=CONFIG, clock=lambda: moment["now"])

        await executor.request_transition(
            appointment.id, S.RESCHEDULED, CUSTOMER, new_scheduled_at=NOW + timedelta(days=10)
        )
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)
        moment["now"] = NOW + timedelta(days=5)

        result = await executor.request_transition(appointment.id, S.CANCELLED, CUSTOMER)

        assert result.detailed_status == S.CANCELLED

    @pytest.mark.asyncio()
    async def test_missing_date_rejected(self):
        executor, store, appointment, events = await _setup()
        with pytest.raises(InvalidRequest, match="requires a new date"):
            await executor.request_transition(appointment.id, S.RESCHEDULED, STAFF)
        assert (await store.get(appointment.id)).detailed_status == S.PENDING
        assert events == []

    @pytest.mark.asyncio()
    async def test_past_date_rejected(self):
        executor, _, appointment, _ = await _setup()
        with pytest.raises(InvalidRequest, match="not in the future"):
            await executor.request_transition(
                appointment.id, S.RESCHEDULED, CUSTOMER, new_scheduled_at=NOW - timedelta(hours=1)
            )

    @pytest.mark.asyncio()
    async def test_date_on_other_target_rejected(self):
        executor, _, appointment, _ = await _setup()
        with pytest.raises(InvalidRequest, match="only be given when rescheduling"):
            await executor.request_transition(
                appointment.id, S.CONFIRMED, STAFF, new_scheduled_at=NOW + timedelta(days=1)
            )

    @pytest.mark.asyncio()
    async def test_naive_date_is_utc(self):
        executor, _, appointment, _ = await _setup()
        result = await executor.request_transition(
            appointment.id, S.RESCHEDULED, STAFF, new_scheduled_at=datetime(2026, 3, 20, 9, 0)
        )
        assert result.scheduled_at == datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc)


class TestWorkshopRules:
    async def _arrived(self, technician_id: str | None = "tech-1"):
        executor, store, appointment, events = await _setup(_make_appointment(technician_id=technician_id))
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)
        await executor.request_transition(appointment.id, S.CUSTOMER_ARRIVED, STAFF)
        return executor, store, appointment

    @pytest.mark.asyncio()
    async def test_reception_requires_assigned_technician(self):
        executor, _, appointment = await self._arrived(technician_id=None)
        with pytest.raises(Forbidden, match="technician must be assigned"):
            await executor.request_transition(appointment.id, S.RECEPTION_CREATED, STAFF)

    @pytest.mark.asyncio()
    async def test_other_technician_rejected(self):
        executor, _, appointment = await self._arrived()
        with pytest.raises(Forbidden, match="assigned technician"):
            await executor.request_transition(appointment.id, S.RECEPTION_CREATED, OTHER_TECH)

    @pytest.mark.asyncio()
    async def test_creator_cannot_approve(self):
        executor, _, appointment = await self._arrived()
        await executor.request_transition(appointment.id, S.RECEPTION_CREATED, STAFF)

        with pytest.raises(Forbidden, match="cannot also approve"):
            await executor.request_transition(appointment.id, S.RECEPTION_APPROVED, STAFF)

        approved = await executor.request_transition(appointment.id, S.RECEPTION_APPROVED, STAFF_2)
        assert approved.detailed_status == S.RECEPTION_APPROVED

    @pytest.mark.asyncio()
    async def test_segregation_can_be_disabled(self):
        config = CONFIG.model_copy(update={"enforce_reception_segregation": False})
        executor, _, appointment, _ = await _setup(config=config)
        for to_status in (S.CONFIRMED, S.CUSTOMER_ARRIVED, S.RECEPTION_CREATED, S.RECEPTION_APPROVED):
            result = await executor.request_transition(appointment.id, to_status, STAFF)
        assert result.detailed_status == S.RECEPTION_APPROVED


class TestAvailableTransitions:
    def test_customer_far_from_appointment(self):
        executor = TransitionExecutor(InMemoryAppointmentStore(), config=CONFIG, clock=lambda: NOW)
        available = executor.available_transitions(_make_appointment(), CUSTOMER)
        assert available == [S.RESCHEDULED, S.CANCELLED]

    def test_customer_inside_reschedule_window(self):
        executor = TransitionExecutor(InMemoryAppointmentStore(), config=CONFIG, clock=lambda: NOW)
        available = executor.available_transitions(_make_appointment(lead=timedelta(hours=5)), CUSTOMER)
        assert available == [S.CANCELLED]

    def test_other_customer_has_nothing(self):
        executor = TransitionExecutor(InMemoryAppointmentStore(), config=CONFIG, clock=lambda: NOW)
        assert executor.available_transitions(_make_appointment(), OTHER_CUSTOMER) == []

    def test_staff_on_pending(self):
        executor = TransitionExecutor(InMemoryAppointmentStore(), config=CONFIG, clock=lambda: NOW)
        available = executor.available_transitions(_make_appointment(), STAFF)
        assert set(available) == {S.CONFIRMED, S.RESCHEDULED, S.CANCELLED, S.NO_SHOW}


# ── Concurrency ──────────────────────────────────────────────────────


class TestConcurrency:
    @pytest.mark.asyncio()
    async def test_exactly_one_winner(self):
        executor, store, appointment, events = await _setup(store=_RacyStore())
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)
        events.clear()

        results = await asyncio.gather(
            executor.request_transition(appointment.id, S.CUSTOMER_ARRIVED, STAFF),
            executor.request_transition(appointment.id, S.CANCELLED, STAFF_2),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, Appointment)]
        losers = [r for r in results if isinstance(r, TransitionConflict)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].retryable

        stored = await store.get(appointment.id)
        assert stored.detailed_status == winners[0].detailed_status
        assert len(stored.workflow_history) == 3
        assert len(events) == 1

    @pytest.mark.asyncio()
    async def test_stale_version_retried_when_status_unchanged(self):
        store = _StaleOnceStore()
        executor, _, appointment, events = await _setup(store=store)

        result = await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)

        assert result.detailed_status == S.CONFIRMED
        assert store.saves == 2
        assert result.version == 3
        assert len(result.workflow_history) == 2
        assert len(events) == 1

    @pytest.mark.asyncio()
    async def test_store_timeout_surfaces_persistence_unavailable(self):
        config = CONFIG.model_copy(update={"persistence_timeout": 0.01, "conflict_retries": 2})
        executor = TransitionExecutor(_HangingStore(), config=config, clock=lambda: NOW)
        with pytest.raises(PersistenceUnavailable) as exc_info:
            await executor.request_transition(uuid.uuid4(), S.CONFIRMED, STAFF)
        assert exc_info.value.retryable

    @pytest.mark.asyncio()
    async def test_save_committing_after_timeout_still_publishes(self):
        config = CONFIG.model_copy(update={"persistence_timeout": 0.02, "conflict_retries": 1})
        executor, store, appointment, events = await _setup(store=_SlowSaveStore(), config=config)

        with pytest.raises(PersistenceUnavailable):
            await executor.request_transition(appointment.id, S.CONFIRMED, STAFF, request_nonce="n1")
        await asyncio.sleep(0.3)

        stored = await store.get(appointment.id)
        assert stored.detailed_status == S.CONFIRMED
        assert len(events) == 1
        assert events[0].data == {"from_status": "pending", "to_status": "confirmed"}
        assert events[0].id == uuid.uuid5(EVENT_NAMESPACE, stored.workflow_history[-1].idempotency_key)

        replay = await executor.request_transition(appointment.id, S.CONFIRMED, STAFF, request_nonce="n1")

        assert replay == stored
        assert len(events) == 2
        assert events[1].id == events[0].id

    @pytest.mark.asyncio()
    async def test_timed_out_save_that_loses_publishes_nothing(self):
        config = CONFIG.model_copy(update={"persistence_timeout": 0.02, "conflict_retries": 1})
        store = _SlowSaveStore()
        executor, _, appointment, events = await _setup(store=store, config=config)

        with pytest.raises(PersistenceUnavailable):
            await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)
        # A concurrent writer bumps the version before the slow save lands
        current = store._items[appointment.id]
        store._items[appointment.id] = current.model_copy(update={"version": current.version + 1})
        await asyncio.sleep(0.3)

        assert (await store.get(appointment.id)).detailed_status == S.PENDING
        assert events == []


# ── Idempotency ──────────────────────────────────────────────────────


class TestIdempotency:
    @pytest.mark.asyncio()
    async def test_replay_with_same_nonce(self):
        executor, store, appointment, events = await _setup()

        first = await executor.request_transition(appointment.id, S.CONFIRMED, STAFF, request_nonce="abc")
        second = await executor.request_transition(appointment.id, S.CONFIRMED, STAFF, request_nonce="abc")

        assert second == first
        assert len((await store.get(appointment.id)).workflow_history) == 2
        assert len(events) == 2
        assert events[0].id == events[1].id
        assert events[0].id == uuid.uuid5(EVENT_NAMESPACE, first.workflow_history[-1].idempotency_key)

    @pytest.mark.asyncio()
    async def test_replay_after_later_transitions(self):
        executor, _, appointment, _ = await _setup()
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF, request_nonce="n1")
        later = await executor.request_transition(appointment.id, S.CUSTOMER_ARRIVED, STAFF)

        replay = await executor.request_transition(appointment.id, S.CONFIRMED, STAFF, request_nonce="n1")

        assert replay.detailed_status == S.CUSTOMER_ARRIVED
        assert len(replay.workflow_history) == len(later.workflow_history)

    @pytest.mark.asyncio()
    async def test_different_nonce_is_a_new_request(self):
        executor, _, appointment, _ = await _setup()
        await executor.request_transition(appointment.id, S.CONFIRMED, STAFF, request_nonce="n1")
        with pytest.raises(Forbidden):
            await executor.request_transition(appointment.id, S.CONFIRMED, STAFF, request_nonce="n2")


# ── Bus failures ─────────────────────────────────────────────────────


class TestBusFailure:
    @pytest.mark.asyncio()
    async def test_publish_failure_does_not_undo_commit(self):
        store = InMemoryAppointmentStore()
        appointment = _make_appointment()
        await store.add(appointment)
        bus = MagicMock()
        bus.publish = AsyncMock(side_effect=RuntimeError("bus down"))
        executor = TransitionExecutor(store, bus, config=CONFIG, clock=lambda: NOW)

        result = await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)

        assert result.detailed_status == S.CONFIRMED
        assert (await store.get(appointment.id)).detailed_status == S.CONFIRMED
        bus.publish.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_failing_subscriber_isolated(self):
        executor, _, appointment, events = await _setup()

        async def broken(event: DomainEvent) -> None:
            raise ValueError("boom")

        executor._bus.subscribe(broken)
        result = await executor.request_transition(appointment.id, S.CONFIRMED, STAFF)

        assert result.detailed_status == S.CONFIRMED
        assert len(events) == 1
