"""SQLAlchemy ORM models for garageflow.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from garageflow.models.appointment import AppointmentRecord
from garageflow.models.audit import EventLog
from garageflow.models.base import Base
from garageflow.models.enums import (
    ActorRole,
    AppointmentPriority,
    AppointmentStatus,
    CoreStatus,
    CustomerAction,
    ReasonCode,
)

__all__ = [
    # Base
    "Base",
    # Models
    "AppointmentRecord",
    "EventLog",
    # Enums
    "ActorRole",
    "AppointmentPriority",
    "AppointmentStatus",
    "CoreStatus",
    "CustomerAction",
    "ReasonCode",
]
