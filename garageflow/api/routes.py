"""Appointment workflow HTTP API.

Thin glue over the workflow engine: request a transition, list the actions
the caller can take, and show the customer's reschedule/cancel availability.
"""
# ruff: noqa: B008  — Depends() in function defaults is standard FastAPI

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from garageflow.api.deps import current_actor, get_executor, get_store
from garageflow.models.enums import ActorRole, AppointmentStatus
from garageflow.schemas.appointment import Actor, Appointment
from garageflow.workflow.errors import (
    AppointmentNotFound,
    Forbidden,
    InvalidRequest,
    PersistenceUnavailable,
    TransitionConflict,
    WindowExpired,
    WorkflowError,
)
from garageflow.workflow.executor import TransitionExecutor
from garageflow.workflow.permissions import customer_permissions
from garageflow.workflow.statuses import next_legal_statuses
from garageflow.workflow.store import AppointmentStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["appointments"])

ERROR_STATUS: dict[type[WorkflowError], int] = {
    Forbidden: 403,
    WindowExpired: 422,
    InvalidRequest: 422,
    AppointmentNotFound: 404,
    TransitionConflict: 409,
    PersistenceUnavailable: 503,
}


class TransitionRequest(BaseModel):
    to_status: AppointmentStatus
    notes: str | None = Field(default=None, max_length=1000)
    reason: str | None = Field(default=None, max_length=255)
    request_nonce: str | None = Field(default=None, max_length=64)
    new_scheduled_at: datetime | None = Field(default=None, description="Required when to_status is rescheduled")


async def _load_visible(store: AppointmentStore, appointment_id: uuid.UUID, actor: Actor) -> Appointment:
    """Load an appointment the actor is allowed to look at."""
    appointment = await store.get(appointment_id)
    if appointment is None:
        raise AppointmentNotFound(appointment_id)
    if actor.role == ActorRole.CUSTOMER and actor.id != appointment.customer_id:
        # Other customers' appointments do not exist as far as this caller knows
        raise AppointmentNotFound(appointment_id)
    return appointment


@router.post("/{appointment_id}/transitions")
async def request_transition(
    appointment_id: uuid.UUID,
    body: TransitionRequest,
    actor: Actor = Depends(current_actor),
    store: AppointmentStore = Depends(get_store),
    executor: TransitionExecutor = Depends(get_executor),
) -> dict[str, Any]:
    """Move the appointment to ``to_status``."""
    if actor.role == ActorRole.CUSTOMER:
        await _load_visible(store, appointment_id, actor)
    appointment = await executor.request_transition(
        appointment_id,
        body.to_status,
        actor,
        body.notes,
        reason=body.reason,
        request_nonce=body.request_nonce,
        new_scheduled_at=body.new_scheduled_at,
    )
    return appointment.model_dump(mode="json")


@router.get("/{appointment_id}/actions")
async def available_actions(
    appointment_id: uuid.UUID,
    actor: Actor = Depends(current_actor),
    store: AppointmentStore = Depends(get_store),
    executor: TransitionExecutor = Depends(get_executor),
) -> dict[str, Any]:
    """Statuses the caller's role may move to, and which of those pass every check now."""
    appointment = await _load_visible(store, appointment_id, actor)
    legal = next_legal_statuses(appointment.detailed_status, actor.role)
    return {
        "status": appointment.detailed_status.value,
        "core_status": appointment.core_status.value,
        "next_statuses": sorted(s.value for s in legal),
        "available": [s.value for s in executor.available_transitions(appointment, actor)],
    }


@router.get("/{appointment_id}/permissions")
async def permissions(
    appointment_id: uuid.UUID,
    actor: Actor = Depends(current_actor),
    store: AppointmentStore = Depends(get_store),
) -> dict[str, Any]:
    """Customer reschedule/cancel availability (drives the enable state of both buttons)."""
    appointment = await _load_visible(store, appointment_id, actor)
    summary = customer_permissions(appointment, datetime.now(timezone.utc))
    return summary.model_dump()


# ── Error mapping ────────────────────────────────────────────────────


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        400,
    )
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": str(exc), "retryable": exc.retryable},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WorkflowError, workflow_error_handler)
