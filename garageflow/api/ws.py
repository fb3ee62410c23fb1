"""WebSocket transport adapter for the connection registry.

Clients connect to ``/ws?actor_id=...&role=...`` and then send JSON messages:

    {"type": "join", "appointment_id": "..."}
    {"type": "leave", "appointment_id": "..."}
    {"type": "ping"}

Every inbound message counts as a heartbeat; a session the registry has already
expired is closed with 1001 and the client reconnects. Notifications and room state
syncs arrive as JSON with a ``kind`` field.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from garageflow.api.deps import parse_actor
from garageflow.models.enums import ActorRole
from garageflow.realtime.registry import ConnectionRegistry
from garageflow.schemas.appointment import Actor
from garageflow.schemas.events import appointment_room
from garageflow.workflow.store import AppointmentStore

logger = logging.getLogger(__name__)

ws_router = APIRouter()


class WebSocketTransport:
    """Registry Transport that writes JSON frames to one WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send(self, payload: dict[str, Any]) -> None:
        await self._websocket.send_json(payload)


async def _may_join(store: AppointmentStore, actor: Actor, raw_id: Any) -> uuid.UUID | None:
    """Appointment id if ``actor`` may watch that appointment's room."""
    try:
        appointment_id = uuid.UUID(str(raw_id))
    except ValueError:
        return None
    if actor.role in {ActorRole.STAFF, ActorRole.ADMIN}:
        return appointment_id
    appointment = await store.get(appointment_id)
    if appointment is None or not appointment.is_participant(actor.id):
        return None
    return appointment_id


@ws_router.websocket("/ws")
async def realtime(websocket: WebSocket, actor_id: str | None = None, role: str | None = None) -> None:
    actor = parse_actor(actor_id, role)
    if actor is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry: ConnectionRegistry = websocket.app.state.registry
    store: AppointmentStore = websocket.app.state.store

    await websocket.accept()
    session_id = registry.connect(actor, WebSocketTransport(websocket))
    await websocket.send_json({"kind": "connected", "session_id": session_id})

    try:
        while True:
            message = await websocket.receive_json()
            if not registry.heartbeat(session_id):
                # Reaped: the registry no longer routes anything to this socket
                logger.info("Closing expired WebSocket session %s", session_id)
                await websocket.close(code=status.WS_1001_GOING_AWAY, reason="Session expired")
                return
            kind = message.get("type") if isinstance(message, dict) else None

            if kind == "ping":
                await websocket.send_json({"kind": "pong"})
            elif kind in {"join", "leave"}:
                appointment_id = await _may_join(store, actor, message.get("appointment_id"))
                if appointment_id is None:
                    await websocket.send_json({"kind": "error", "detail": "Unknown or inaccessible appointment"})
                    continue
                room = appointment_room(appointment_id)
                if kind == "join":
                    if not registry.join(actor.id, room):
                        await websocket.send_json({"kind": "error", "detail": "Session is not online"})
                        continue
                    await websocket.send_json({"kind": "joined", "room": room})
                else:
                    registry.leave(actor.id, room)
                    await websocket.send_json({"kind": "left", "room": room})
            else:
                await websocket.send_json({"kind": "error", "detail": f"Unsupported message type: {kind}"})
    except WebSocketDisconnect as exc:
        logger.debug("WebSocket closed by client: %s (code=%s)", session_id, exc.code)
    finally:
        registry.disconnect(session_id)
