"""Workflow error taxonomy.

Client errors (Forbidden, WindowExpired, InvalidRequest, AppointmentNotFound) are surfaced to
the actor and never retried. TransitionConflict and PersistenceUnavailable are
retryable; the executor already retries them a bounded number of times before
raising.
"""

from __future__ import annotations

import uuid

from garageflow.models.enums import ActorRole, AppointmentStatus


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine."""

    code: str = "workflow_error"
    retryable: bool = False


class TransitionError(WorkflowError):
    """A requested transition was not applied."""

    code = "transition_error"


class Forbidden(TransitionError):
    """Edge not declared, or the acting role/identity may not take it."""

    code = "forbidden"

    def __init__(
        self,
        from_status: AppointmentStatus,
        to_status: AppointmentStatus,
        role: ActorRole,
        detail: str | None = None,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.role = role
        msg = detail or (
            f"Cannot transition from {from_status.value} to {to_status.value} as {role.value}"
        )
        super().__init__(msg)


class WindowExpired(TransitionError):
    """Customer self-service action denied by the permission policy."""

    code = "window_expired"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class InvalidRequest(TransitionError):
    """Request data missing or inconsistent with the target status (e.g. no new date on a reschedule)."""

    code = "invalid_request"


class TransitionConflict(TransitionError):
    """Concurrent modification detected and not resolved within the retry bound."""

    code = "conflict"
    retryable = True

    def __init__(self, appointment_id: uuid.UUID, detail: str | None = None) -> None:
        self.appointment_id = appointment_id
        super().__init__(detail or f"Appointment {appointment_id} was modified concurrently")


class AppointmentNotFound(TransitionError):
    code = "not_found"

    def __init__(self, appointment_id: uuid.UUID) -> None:
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found")


class PersistenceUnavailable(TransitionError):
    """The store did not answer within its timeout. Retry with the same request nonce."""

    code = "persistence_unavailable"
    retryable = True


class StaleVersionError(WorkflowError):
    """Raised by a store when a conditional write finds a newer version."""

    code = "stale_version"
    retryable = True

    def __init__(self, appointment_id: uuid.UUID, expected: int, actual: int | None) -> None:
        self.appointment_id = appointment_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Appointment {appointment_id}: expected version {expected}, found {actual}"
        )


class TransportUnavailable(WorkflowError):
    """No live session accepted a payload for this identity."""

    code = "transport_unavailable"

    def __init__(self, identity_id: str, detail: str | None = None) -> None:
        self.identity_id = identity_id
        super().__init__(detail or f"No reachable session for {identity_id}")
