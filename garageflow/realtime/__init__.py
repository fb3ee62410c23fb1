"""Realtime delivery — event bus, notification routing, connection registry."""

from garageflow.realtime.bus import EventBus
from garageflow.realtime.dispatcher import NotificationDispatcher
from garageflow.realtime.registry import ConnectionRegistry
from garageflow.realtime.router import EventRouter

__all__ = ["EventBus", "EventRouter", "ConnectionRegistry", "NotificationDispatcher"]
