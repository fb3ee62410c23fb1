"""Event router — decides, per event and per connected identity, who gets a toast.

``plan`` is a pure function of (event, recipients, time): it applies the
delivery rule for the event type, the self-exclusion filter, the
business-hours gate and the amount threshold. ``route`` additionally claims a
dedup key per recipient, so an event delivered twice (at-least-once from the
executor) produces each notification once.

Filtering only affects the per-recipient toast. Room state sync is broadcast
by the dispatcher regardless.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from garageflow.config import NotificationSettings, settings
from garageflow.models.enums import AppointmentPriority, AppointmentStatus
from garageflow.realtime.dedup import DedupStore, InMemoryDedupStore
from garageflow.realtime.rules import DELIVERY_RULES, STATUS_LABELS, DeliveryRule
from garageflow.schemas.appointment import Actor
from garageflow.schemas.events import DomainEvent, EventType
from garageflow.schemas.notifications import Notification

logger = logging.getLogger(__name__)


class EventRouter:
    """Turns a domain event into per-recipient notifications."""

    def __init__(
        self,
        dedup: DedupStore | None = None,
        *,
        config: NotificationSettings | None = None,
        rules: dict[EventType, DeliveryRule] | None = None,
    ) -> None:
        self._dedup = dedup if dedup is not None else InMemoryDedupStore()
        self._config = config or settings.notifications
        self._rules = rules if rules is not None else DELIVERY_RULES
        self._tz = ZoneInfo(self._config.timezone)

    def plan(
        self,
        event: DomainEvent,
        recipients: Iterable[Actor],
        now: datetime | None = None,
    ) -> list[Notification]:
        """Notifications this event warrants, before dedup. No side effects."""
        rule = self._rules.get(event.event_type)
        if rule is None:
            return []

        moment = now or datetime.now(timezone.utc)
        priority = rule.priority or event.priority

        if rule.amount_threshold and not self._above_threshold(event):
            logger.debug("Below push threshold, recorded silently: %s", event.id)
            return []
        if (
            rule.business_hours_only
            and priority != AppointmentPriority.URGENT
            and not self.in_business_hours(moment)
        ):
            logger.debug("Outside business hours, toast suppressed: %s", event.id)
            return []

        title, message = self._render(rule, event)
        notifications: list[Notification] = []
        seen: set[str] = set()
        for recipient in recipients:
            if recipient.id in seen:
                continue
            seen.add(recipient.id)
            if event.actor_id is not None and recipient.id == event.actor_id:
                continue
            if not rule.audience(event, recipient):
                continue
            notifications.append(Notification(
                recipient_id=recipient.id,
                type=event.event_type,
                title=title,
                message=message,
                priority=priority,
                created_at=event.timestamp,
                event_id=event.id,
                appointment_id=event.appointment_id,
            ))
        return notifications

    async def route(
        self,
        event: DomainEvent,
        recipients: Iterable[Actor],
        now: datetime | None = None,
    ) -> list[Notification]:
        """Plan notifications and drop any already delivered for this event."""
        delivered: list[Notification] = []
        for notification in self.plan(event, recipients, now):
            key = self.dedup_key(event, notification.recipient_id)
            if await self._dedup.claim(key, self._config.dedup_ttl_seconds):
                delivered.append(notification)
            else:
                logger.debug("Duplicate notification dropped: %s", key)
        return delivered

    def dedup_key(self, event: DomainEvent, recipient_id: str) -> str:
        """Key = subject, event type, recipient, timestamp bucket.

        For status changes the subject includes the target status so two
        different transitions within one bucket are not collapsed.
        """
        if event.event_type == EventType.APPOINTMENT_STATUS_CHANGED:
            subject = f"{event.appointment_id}:{event.data.get('to_status')}"
        else:
            subject = event.resource_id or str(event.appointment_id)
        bucket = int(event.timestamp.timestamp()) // self._config.dedup_bucket_seconds
        return f"notif:{subject}:{event.event_type.value}:{recipient_id}:{bucket}"

    def in_business_hours(self, moment: datetime) -> bool:
        """Whole local hours from start through end inclusive (08:00–18:59 by default)."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        hour = moment.astimezone(self._tz).hour
        return self._config.business_hours_start <= hour <= self._config.business_hours_end

    def _above_threshold(self, event: DomainEvent) -> bool:
        try:
            amount = float(event.data.get("amount", 0))
        except (TypeError, ValueError):
            logger.warning("Non-numeric amount on %s: %r", event.id, event.data.get("amount"))
            return False
        return amount > self._config.payment_push_threshold

    @staticmethod
    def _render(rule: DeliveryRule, event: DomainEvent) -> tuple[str, str]:
        ctx: dict[str, Any] = {**event.data}
        ctx.setdefault(
            "ref",
            event.appointment_number
            or (str(event.appointment_id)[:8] if event.appointment_id else event.resource_id or ""),
        )
        to_status = event.data.get("to_status")
        if to_status is not None:
            ctx.setdefault("to_label", STATUS_LABELS.get(AppointmentStatus(to_status), to_status))

        try:
            message = rule.template.format(**ctx)
        except (KeyError, ValueError):
            # Missing or malformed keys: bare title
            logger.warning("Template for %s missing data: %s", event.event_type.value, sorted(ctx))
            message = rule.title
        return rule.title, message
