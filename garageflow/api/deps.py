"""FastAPI dependencies — caller identity and the services wired at startup.

Authentication happens upstream; the gateway forwards the resolved identity
as ``X-Actor-Id`` / ``X-Actor-Role`` headers and the engine trusts them.
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from garageflow.models.enums import ActorRole
from garageflow.realtime.registry import ConnectionRegistry
from garageflow.schemas.appointment import Actor
from garageflow.workflow.executor import TransitionExecutor
from garageflow.workflow.store import AppointmentStore


def parse_actor(actor_id: str | None, role: str | None) -> Actor | None:
    """Build an Actor from raw identity fields, or None if they are unusable."""
    if not actor_id or not role:
        return None
    try:
        return Actor(id=actor_id, role=ActorRole(role.lower()))
    except ValueError:
        return None


async def current_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """FastAPI dependency — resolve the caller, 401 if identity is missing or invalid."""
    actor = parse_actor(x_actor_id, x_actor_role)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid actor identity",
        )
    return actor


def get_executor(request: Request) -> TransitionExecutor:
    return request.app.state.executor


def get_store(request: Request) -> AppointmentStore:
    return request.app.state.store


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry
