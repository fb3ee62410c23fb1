"""Appointment status graph — states, coarse projection, and role-gated edges.

The transition table below is the single source of truth. Legality checks,
the "available actions" query, and terminal-state detection are all derived
from it; nothing else in the codebase lists edges by hand.
"""

from __future__ import annotations

from garageflow.models.enums import ActorRole, AppointmentStatus, CoreStatus, ReasonCode

S = AppointmentStatus

STAFF: frozenset[ActorRole] = frozenset({ActorRole.STAFF, ActorRole.ADMIN})
WORKSHOP: frozenset[ActorRole] = frozenset({ActorRole.TECHNICIAN, ActorRole.STAFF, ActorRole.ADMIN})
SELF_SERVICE: frozenset[ActorRole] = frozenset({ActorRole.CUSTOMER, ActorRole.STAFF, ActorRole.ADMIN})

INITIAL_STATUS = S.PENDING

# Transition map: {from_status: {to_status: roles allowed to take the edge}}
TRANSITIONS: dict[AppointmentStatus, dict[AppointmentStatus, frozenset[ActorRole]]] = {
    S.PENDING: {
        S.CONFIRMED: STAFF,
        S.RESCHEDULED: SELF_SERVICE,
        S.CANCELLED: SELF_SERVICE,
        S.NO_SHOW: STAFF,
    },
    S.CONFIRMED: {
        S.CUSTOMER_ARRIVED: STAFF,  # customers cannot self-report arrival
        S.RESCHEDULED: SELF_SERVICE,
        S.CANCELLED: SELF_SERVICE,
        S.NO_SHOW: STAFF,
    },
    S.CUSTOMER_ARRIVED: {
        S.RECEPTION_CREATED: WORKSHOP,
        S.CANCELLED: STAFF,
    },
    S.RECEPTION_CREATED: {
        S.RECEPTION_APPROVED: STAFF,
        S.PARTS_INSUFFICIENT: WORKSHOP,
        S.CANCELLED: STAFF,
    },
    S.RECEPTION_APPROVED: {
        S.IN_PROGRESS: WORKSHOP,
        S.INVOICED: STAFF,  # pre-payment flow
        S.CANCELLED: STAFF,
    },
    S.PARTS_INSUFFICIENT: {
        S.WAITING_FOR_PARTS: STAFF,
        S.IN_PROGRESS: WORKSHOP,
        S.RESCHEDULED: STAFF,
        S.CANCELLED: STAFF,
    },
    S.WAITING_FOR_PARTS: {
        S.RECEPTION_APPROVED: STAFF,
        S.IN_PROGRESS: WORKSHOP,
        S.PARTS_INSUFFICIENT: WORKSHOP,
        S.RESCHEDULED: STAFF,
        S.CANCELLED: STAFF,
    },
    S.RESCHEDULED: {
        S.CONFIRMED: STAFF,  # new appointment cycle
        S.CANCELLED: SELF_SERVICE,
    },
    S.IN_PROGRESS: {
        S.PARTS_REQUESTED: WORKSHOP,
        S.WAITING_FOR_PARTS: WORKSHOP,
        S.PARTS_INSUFFICIENT: WORKSHOP,
        S.COMPLETED: WORKSHOP,
        S.CANCELLED: STAFF,
    },
    S.PARTS_REQUESTED: {
        S.IN_PROGRESS: WORKSHOP,
        S.PARTS_INSUFFICIENT: WORKSHOP,
        S.WAITING_FOR_PARTS: STAFF,
        S.CANCELLED: STAFF,
    },
    S.COMPLETED: {
        S.INVOICED: STAFF,
    },
    S.INVOICED: {},
    S.CANCELLED: {},
    S.NO_SHOW: {},
}

TERMINAL_STATUSES: frozenset[AppointmentStatus] = frozenset(
    status for status, edges in TRANSITIONS.items() if not edges
)

CORE_STATUS: dict[AppointmentStatus, CoreStatus] = {
    S.PENDING: CoreStatus.SCHEDULED,
    S.CONFIRMED: CoreStatus.SCHEDULED,
    S.CUSTOMER_ARRIVED: CoreStatus.CHECKED_IN,
    S.RECEPTION_CREATED: CoreStatus.CHECKED_IN,
    S.RECEPTION_APPROVED: CoreStatus.IN_SERVICE,
    S.IN_PROGRESS: CoreStatus.IN_SERVICE,
    S.PARTS_INSUFFICIENT: CoreStatus.ON_HOLD,
    S.WAITING_FOR_PARTS: CoreStatus.ON_HOLD,
    S.PARTS_REQUESTED: CoreStatus.ON_HOLD,
    S.COMPLETED: CoreStatus.READY_FOR_PICKUP,
    S.INVOICED: CoreStatus.READY_FOR_PICKUP,
    S.CANCELLED: CoreStatus.CLOSED,
    S.NO_SHOW: CoreStatus.CLOSED,
    S.RESCHEDULED: CoreStatus.CLOSED,
}

REASON_CODES: dict[AppointmentStatus, ReasonCode] = {
    S.PARTS_INSUFFICIENT: ReasonCode.INSUFFICIENT_PARTS,
    S.WAITING_FOR_PARTS: ReasonCode.INSUFFICIENT_PARTS,
    S.PARTS_REQUESTED: ReasonCode.INSUFFICIENT_PARTS,
    S.COMPLETED: ReasonCode.COMPLETED,
    S.INVOICED: ReasonCode.COMPLETED,
    S.CANCELLED: ReasonCode.CANCELLED,
    S.NO_SHOW: ReasonCode.NO_SHOW,
    S.RESCHEDULED: ReasonCode.RESCHEDULED,
}


def is_legal_transition(
    from_status: AppointmentStatus,
    to_status: AppointmentStatus,
    role: ActorRole,
) -> bool:
    """Return True only if (from, to) is declared and ``role`` may take it."""
    allowed = TRANSITIONS.get(from_status, {}).get(to_status)
    return allowed is not None and role in allowed


def next_legal_statuses(from_status: AppointmentStatus, role: ActorRole) -> set[AppointmentStatus]:
    """All statuses ``role`` may move an appointment to from ``from_status``."""
    return {to for to, roles in TRANSITIONS.get(from_status, {}).items() if role in roles}


def coarse_status(detailed: AppointmentStatus) -> CoreStatus:
    """Project a detailed status onto its coarse reporting status."""
    return CORE_STATUS[detailed]


def reason_code(detailed: AppointmentStatus) -> ReasonCode | None:
    """Reason attached to hold/closed statuses, None for active ones."""
    return REASON_CODES.get(detailed)


def is_terminal(status: AppointmentStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_valid_history(statuses: list[AppointmentStatus], roles: list[ActorRole]) -> bool:
    """Check that a recorded sequence is a legal walk of the graph from pending.

    ``roles[i]`` is the role that recorded ``statuses[i]``; the first entry is
    the booking and is not itself a transition.
    """
    if not statuses or statuses[0] != INITIAL_STATUS or len(statuses) != len(roles):
        return False
    return all(
        is_legal_transition(prev, nxt, role)
        for prev, nxt, role in zip(statuses, statuses[1:], roles[1:])
    )
