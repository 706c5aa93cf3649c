"""
services/notifications.py: events the engine emits after a successful commit.

Delivery (push notifications, group chat system messages) belongs to the
messaging collaborator. The engine only hands over an EngineEvent through the
Notifier interface it was constructed with.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    SETTLEMENT_COMPLETED    = "settlement_completed"
    NO_SHOW_PENALTY_APPLIED = "no_show_penalty_applied"


@dataclass(frozen=True)
class EngineEvent:
    kind: EventKind
    group_id: int
    order_id: int
    user_ids: tuple[int, ...]
    amount: Decimal
    details: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier:
    """Interface for the messaging/notification collaborator."""

    def publish(self, event: EngineEvent) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default notifier: writes events to the log. Used when no transport is wired."""

    def publish(self, event: EngineEvent) -> None:
        logger.info(
            "event=%s group_id=%s order_id=%s users=%s amount=%s",
            event.kind.value,
            event.group_id,
            event.order_id,
            ",".join(str(uid) for uid in event.user_ids),
            event.amount,
        )


def publish_safely(notifier: Notifier, event: EngineEvent) -> None:
    """
    Publishes after commit. The money has already moved at this point, so a
    delivery failure is logged with its traceback and does not fail the caller.
    """
    try:
        notifier.publish(event)
    except Exception:
        logger.exception(
            "Failed to publish %s for order %s", event.kind.value, event.order_id
        )
