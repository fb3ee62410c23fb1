"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization.
"""

from __future__ import annotations

from enum import Enum


class AppointmentStatus(str, Enum):
    """Detailed workflow position of an appointment."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CUSTOMER_ARRIVED = "customer_arrived"
    RECEPTION_CREATED = "reception_created"
    RECEPTION_APPROVED = "reception_approved"
    PARTS_INSUFFICIENT = "parts_insufficient"
    WAITING_FOR_PARTS = "waiting_for_parts"
    RESCHEDULED = "rescheduled"
    IN_PROGRESS = "in_progress"
    PARTS_REQUESTED = "parts_requested"
    COMPLETED = "completed"
    INVOICED = "invoiced"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class CoreStatus(str, Enum):
    """Coarse roll-up of AppointmentStatus for reporting."""

    SCHEDULED = "Scheduled"
    CHECKED_IN = "CheckedIn"
    IN_SERVICE = "InService"
    ON_HOLD = "OnHold"
    READY_FOR_PICKUP = "ReadyForPickup"
    CLOSED = "Closed"


class ReasonCode(str, Enum):
    """Why an appointment is on hold or closed."""

    INSUFFICIENT_PARTS = "insufficient_parts"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


class ActorRole(str, Enum):
    """Role resolved by the identity provider."""

    CUSTOMER = "customer"
    STAFF = "staff"
    TECHNICIAN = "technician"
    ADMIN = "admin"


class AppointmentPriority(str, Enum):
    """Queueing / visual emphasis only — never affects the transition graph."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class CustomerAction(str, Enum):
    """Customer self-service actions gated by the permission windows."""

    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
