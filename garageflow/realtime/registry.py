"""Connection registry — which identities are reachable, and through which sessions.

One identity may hold several sessions (tabs, devices). Rooms group
identities for targeted broadcast, typically one room per appointment.
Membership belongs to the identity and is dropped when its last session goes
away, so no stale membership survives a disconnect.

Sessions must heartbeat. A session silent for longer than one heartbeat
interval stops counting as online immediately. The reaper task removes it on
its next pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from garageflow.config import RealtimeSettings, settings
from garageflow.schemas.appointment import Actor
from garageflow.workflow.errors import TransportUnavailable

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Wire-level sender supplied by the transport adapter (e.g. a WebSocket)."""

    async def send(self, payload: dict[str, Any]) -> None: ...


@dataclass
class Session:
    id: str
    identity: Actor
    transport: Transport
    last_seen: float
    connected_at: float = field(default=0.0)


class ConnectionRegistry:
    """Tracks live sessions and room membership for the notification dispatcher."""

    def __init__(
        self,
        *,
        config: RealtimeSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or settings.realtime
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._by_identity: dict[str, set[str]] = {}
        self._rooms: dict[str, set[str]] = {}
        self._reaper_task: asyncio.Task[None] | None = None

    # ── Sessions ─────────────────────────────────────────────────────

    def connect(self, identity: Actor, transport: Transport) -> str:
        """Register a new session and return its id."""
        now = self._clock()
        session_id = uuid.uuid4().hex
        self._sessions[session_id] = Session(
            id=session_id, identity=identity, transport=transport, last_seen=now, connected_at=now
        )
        self._by_identity.setdefault(identity.id, set()).add(session_id)
        logger.info("Session connected: %s (%s/%s)", session_id, identity.role.value, identity.id)
        return session_id

    def disconnect(self, session_id: str) -> None:
        """Drop a session. If it was the identity's last, drop its room memberships too."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        identity_id = session.identity.id
        remaining = self._by_identity.get(identity_id, set())
        remaining.discard(session_id)
        if not remaining:
            self._by_identity.pop(identity_id, None)
            self._leave_all(identity_id)
        logger.info("Session disconnected: %s (%s)", session_id, identity_id)

    def heartbeat(self, session_id: str) -> bool:
        """Refresh a session. Returns False if the session is unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.last_seen = self._clock()
        return True

    def reap_stale(self) -> list[str]:
        """Disconnect every session that missed its heartbeat window."""
        stale = [s.id for s in self._sessions.values() if not self._is_fresh(s)]
        for session_id in stale:
            logger.info("Reaping stale session %s", session_id)
            self.disconnect(session_id)
        return stale

    def is_online(self, identity_id: str) -> bool:
        return any(self._is_fresh(self._sessions[sid]) for sid in self._by_identity.get(identity_id, ()))

    def online_identities(self) -> list[Actor]:
        """One entry per identity with at least one fresh session."""
        identities: dict[str, Actor] = {}
        for session in self._sessions.values():
            if self._is_fresh(session):
                identities.setdefault(session.identity.id, session.identity)
        return list(identities.values())

    def _is_fresh(self, session: Session) -> bool:
        return self._clock() - session.last_seen <= self._config.heartbeat_interval

    # ── Rooms ────────────────────────────────────────────────────────

    def join(self, identity_id: str, room: str) -> bool:
        """Add an online identity to a room. Offline identities are not added."""
        if not self.is_online(identity_id):
            logger.debug("Join ignored, %s is offline (room=%s)", identity_id, room)
            return False
        self._rooms.setdefault(room, set()).add(identity_id)
        logger.debug("%s joined %s", identity_id, room)
        return True

    def leave(self, identity_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(identity_id)
        if not members:
            del self._rooms[room]
        logger.debug("%s left %s", identity_id, room)

    def members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    def _leave_all(self, identity_id: str) -> None:
        for room in [r for r, members in self._rooms.items() if identity_id in members]:
            self.leave(identity_id, room)

    # ── Delivery ─────────────────────────────────────────────────────

    async def unicast(self, identity_id: str, payload: dict[str, Any]) -> int:
        """Send to every live session of one identity.

        Returns the number of sessions reached.

        Raises:
            TransportUnavailable: If no session accepted the payload.
        """
        session_ids = [
            sid for sid in self._by_identity.get(identity_id, ()) if self._is_fresh(self._sessions[sid])
        ]
        if not session_ids:
            raise TransportUnavailable(identity_id)
        delivered = await self._send_many(session_ids, payload)
        if delivered == 0:
            raise TransportUnavailable(identity_id, f"All sessions for {identity_id} failed")
        return delivered

    async def broadcast(self, room: str, payload: dict[str, Any]) -> int:
        """Send to every live session of every room member. Returns sessions reached."""
        session_ids = [
            sid
            for identity_id in self._rooms.get(room, ())
            for sid in self._by_identity.get(identity_id, ())
            if self._is_fresh(self._sessions[sid])
        ]
        if not session_ids:
            return 0
        return await self._send_many(session_ids, payload)

    async def _send_many(self, session_ids: list[str], payload: dict[str, Any]) -> int:
        results = await asyncio.gather(*[self._send(sid, payload) for sid in session_ids])
        return sum(1 for ok in results if ok)

    async def _send(self, session_id: str, payload: dict[str, Any]) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        try:
            await asyncio.wait_for(session.transport.send(payload), timeout=self._config.send_timeout)
        except Exception as exc:
            # A session that cannot be written to is gone
            logger.warning("Send to session %s failed, dropping it: %r", session_id, exc)
            self.disconnect(session_id)
            return False
        return True

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the heartbeat reaper."""
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reaper())
            logger.info("Connection registry started (heartbeat=%ss)", self._config.heartbeat_interval)

    async def stop(self) -> None:
        """Stop the reaper and forget every session and room."""
        if self._reaper_task is not None and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
        self._reaper_task = None
        self._sessions.clear()
        self._by_identity.clear()
        self._rooms.clear()
        logger.info("Connection registry stopped")

    async def _reaper(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.heartbeat_interval)
                self.reap_stale()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in session reaper")
