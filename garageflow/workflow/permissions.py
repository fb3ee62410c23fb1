"""Customer self-service permission policy.

A second gate on top of the role check in ``statuses``: even when the graph
allows a customer to reschedule or cancel, the policy can still deny it based
on how close the appointment is, its status, and how often it has already been
rescheduled.

Pure functions only. The same call drives both the transition executor and
the enable/disable state of the customer's buttons, so both always agree.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from garageflow.config import WorkflowSettings, settings
from garageflow.models.enums import AppointmentStatus, CustomerAction
from garageflow.schemas.appointment import Appointment

# Past the point of no return for customer self-service.
CLOSED_FOR_CUSTOMER: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.CANCELLED,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.INVOICED,
    AppointmentStatus.NO_SHOW,
})


class PermissionDecision(BaseModel):
    """Outcome of a permission check."""

    allowed: bool
    reason: str | None = None
    hours_left: float | None = None

    model_config = {"frozen": True}


class CustomerPermissions(BaseModel):
    """Both decisions at once, for the customer's appointment screen."""

    can_reschedule: bool
    can_cancel: bool
    reschedule_reason: str | None = None
    cancel_reason: str | None = None
    hours_left: float
    reschedule_count: int
    remaining_reschedules: int


def time_until(appointment: Appointment, now: datetime) -> timedelta:
    """Signed time left before the appointment (negative once it has passed)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return appointment.scheduled_at - now


def check_permission(
    appointment: Appointment,
    action: CustomerAction,
    now: datetime,
    config: WorkflowSettings | None = None,
) -> PermissionDecision:
    """Decide whether a customer may still ``action`` this appointment.

    Never raises for a well-formed appointment; denials carry a readable reason.
    """
    cfg = config or settings.workflow
    remaining = time_until(appointment, now)
    hours_left = round(remaining.total_seconds() / 3600, 1)
    status = appointment.detailed_status

    if status in CLOSED_FOR_CUSTOMER:
        verb = "reschedule" if action == CustomerAction.RESCHEDULE else "cancel"
        return PermissionDecision(
            allowed=False,
            reason=f"Cannot {verb} an appointment with status {status.value}",
            hours_left=hours_left,
        )

    if action == CustomerAction.RESCHEDULE:
        if remaining < timedelta(hours=cfg.reschedule_window_hours):
            return PermissionDecision(
                allowed=False,
                reason=(
                    f"Cannot reschedule within {cfg.reschedule_window_hours} hours of the "
                    "appointment. Please contact the service center."
                ),
                hours_left=hours_left,
            )
        if cfg.enforce_reschedule_cap and appointment.reschedule_count >= cfg.max_reschedule_count:
            return PermissionDecision(
                allowed=False,
                reason=(
                    f"Maximum reschedule limit reached ({cfg.max_reschedule_count} times). "
                    "Please contact the service center."
                ),
                hours_left=hours_left,
            )
        return PermissionDecision(allowed=True, hours_left=hours_left)

    if remaining < timedelta(hours=cfg.cancel_window_hours):
        return PermissionDecision(
            allowed=False,
            reason=(
                f"Cannot cancel within {cfg.cancel_window_hours} hours of the appointment. "
                "Please contact the service center."
            ),
            hours_left=hours_left,
        )
    return PermissionDecision(allowed=True, hours_left=hours_left)


def customer_permissions(
    appointment: Appointment,
    now: datetime,
    config: WorkflowSettings | None = None,
) -> CustomerPermissions:
    """Summarize reschedule and cancel availability for one appointment."""
    cfg = config or settings.workflow
    reschedule = check_permission(appointment, CustomerAction.RESCHEDULE, now, cfg)
    cancel = check_permission(appointment, CustomerAction.CANCEL, now, cfg)
    return CustomerPermissions(
        can_reschedule=reschedule.allowed,
        can_cancel=cancel.allowed,
        reschedule_reason=reschedule.reason,
        cancel_reason=cancel.reason,
        hours_left=cancel.hours_left if cancel.hours_left is not None else 0.0,
        reschedule_count=appointment.reschedule_count,
        remaining_reschedules=max(cfg.max_reschedule_count - appointment.reschedule_count, 0),
    )
