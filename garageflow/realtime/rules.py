"""Delivery rules — which recipients get a toast for each event type, and what it says.

Each rule names its audience (role and involvement filter), optional
business-hours and amount-threshold gates, and a message template. The event
router applies the rule set. Nothing outside this table decides who hears
about what.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from garageflow.models.enums import ActorRole, AppointmentPriority, AppointmentStatus
from garageflow.schemas.appointment import Actor
from garageflow.schemas.events import DomainEvent, EventType

STAFF_ROLES: frozenset[ActorRole] = frozenset({ActorRole.STAFF, ActorRole.ADMIN})

Audience = Callable[[DomainEvent, Actor], bool]


# ── Audiences ────────────────────────────────────────────────────────


def staff(event: DomainEvent, recipient: Actor) -> bool:
    return recipient.role in STAFF_ROLES


def involved_or_staff(event: DomainEvent, recipient: Actor) -> bool:
    """Customer on the appointment, its assigned technician, or any staff/admin."""
    if recipient.role in STAFF_ROLES:
        return True
    return recipient.id in {event.customer_id, event.technician_id} - {None}


def assigned_technician(event: DomainEvent, recipient: Actor) -> bool:
    return event.technician_id is not None and recipient.id == event.technician_id


def appointment_customer(event: DomainEvent, recipient: Actor) -> bool:
    return event.customer_id is not None and recipient.id == event.customer_id


def customer_or_admin(event: DomainEvent, recipient: Actor) -> bool:
    return appointment_customer(event, recipient) or recipient.role == ActorRole.ADMIN


def requester(event: DomainEvent, recipient: Actor) -> bool:
    requested_by = event.data.get("requested_by")
    return requested_by is not None and recipient.id == str(requested_by)


# ── Rules ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DeliveryRule:
    """Maps one event type to its audience and message."""

    event_type: EventType
    audience: Audience
    title: str
    template: str  # format string using event.data keys plus "ref"
    business_hours_only: bool = False  # high-frequency events: no toast after hours
    amount_threshold: bool = False  # only toast when data["amount"] exceeds the configured threshold
    priority: AppointmentPriority | None = None  # overrides the event's priority


STATUS_LABELS: dict[AppointmentStatus, str] = {
    AppointmentStatus.PENDING: "awaiting confirmation",
    AppointmentStatus.CONFIRMED: "confirmed",
    AppointmentStatus.CUSTOMER_ARRIVED: "vehicle checked in",
    AppointmentStatus.RECEPTION_CREATED: "reception created",
    AppointmentStatus.RECEPTION_APPROVED: "reception approved",
    AppointmentStatus.PARTS_INSUFFICIENT: "waiting on parts availability",
    AppointmentStatus.WAITING_FOR_PARTS: "waiting for parts",
    AppointmentStatus.RESCHEDULED: "rescheduled",
    AppointmentStatus.IN_PROGRESS: "service in progress",
    AppointmentStatus.PARTS_REQUESTED: "parts requested",
    AppointmentStatus.COMPLETED: "service completed",
    AppointmentStatus.INVOICED: "invoiced",
    AppointmentStatus.CANCELLED: "cancelled",
    AppointmentStatus.NO_SHOW: "marked as no-show",
}


DELIVERY_RULES: dict[EventType, DeliveryRule] = {
    rule.event_type: rule
    for rule in [
        DeliveryRule(
            event_type=EventType.APPOINTMENT_STATUS_CHANGED,
            audience=involved_or_staff,
            title="Appointment updated",
            template="Appointment {ref} is now {to_label}",
        ),
        DeliveryRule(
            event_type=EventType.APPOINTMENT_CREATED,
            audience=staff,
            title="New appointment",
            template="New appointment {ref}",
        ),
        DeliveryRule(
            event_type=EventType.TECHNICIAN_ASSIGNED,
            audience=assigned_technician,
            title="New assignment",
            template="You have been assigned appointment {ref}",
            priority=AppointmentPriority.HIGH,
        ),
        DeliveryRule(
            event_type=EventType.RECEPTION_CREATED,
            audience=staff,
            title="Reception awaiting approval",
            template="Service reception for {ref} is ready for review",
        ),
        DeliveryRule(
            event_type=EventType.RECEPTION_APPROVED,
            audience=assigned_technician,
            title="Reception approved",
            template="Service reception for {ref} was approved",
        ),
        DeliveryRule(
            event_type=EventType.PARTS_REQUESTED,
            audience=staff,
            title="Parts requested",
            template="Parts requested for {ref}",
            business_hours_only=True,
        ),
        DeliveryRule(
            event_type=EventType.PARTS_APPROVED,
            audience=requester,
            title="Parts approved",
            template="Parts request {request_number} was approved",
        ),
        DeliveryRule(
            event_type=EventType.INVOICE_GENERATED,
            audience=appointment_customer,
            title="New invoice",
            template="Invoice {invoice_number} is ready",
        ),
        DeliveryRule(
            event_type=EventType.PAYMENT_RECEIVED,
            audience=staff,
            title="Large payment received",
            template="Payment of {amount:,} received for invoice {invoice_number}",
            amount_threshold=True,
        ),
        DeliveryRule(
            event_type=EventType.PAYMENT_SUCCEEDED,
            audience=customer_or_admin,
            title="Payment successful",
            template="Payment of {amount:,} completed",
        ),
        DeliveryRule(
            event_type=EventType.MESSAGE_SENT,
            audience=involved_or_staff,
            title="New message",
            template="Message from {sender_name}",
        ),
    ]
}
