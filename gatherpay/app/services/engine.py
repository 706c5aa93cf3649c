"""
services/engine.py: the settlement engine as one explicitly constructed object.

create_app() builds a SettlementEngine from the app config and stores it on
app.extensions["settlement_engine"]; routes fetch it through get_engine().
There is no module-level engine: tests build their own with a fake notifier
or a RetryPolicy whose sleep is a no-op.

Produced surface:
    engine.calculate_split(items, total_tax, total_discount)  → list[OrderSplit]
    engine.process_order_completion(group_id, order_id, leader_id, splits) → True
    engine.process_no_show(group_id, order_id, user_id, leader_id)         → True

complete_order() / apply_no_show() are the same operations returning the
full result object instead of a bare True. complete_persisted_order() settles
with the splits stored on the order, read inside the locked attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from flask import current_app
from sqlalchemy.orm import Session

from gatherpay.app.services.no_show_service import NoShowResult, apply_no_show_once
from gatherpay.app.services.notifications import (
    EngineEvent,
    EventKind,
    LoggingNotifier,
    Notifier,
    publish_safely,
)
from gatherpay.app.services.retry import RetryPolicy
from gatherpay.app.services.settlement_service import (
    SettlementResult,
    settle_order_once,
    settle_persisted_order_once,
)
from gatherpay.app.services.split_calculator import OrderSplit, calculate_split
from gatherpay.app.services.unit_of_work import LedgerUnitOfWork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSettings:
    fee_percentage: Decimal = Decimal("2")
    penalty_percentage: Decimal = Decimal("20")
    reward_percentage: Decimal = Decimal("5")
    no_show_window_minutes: int = 10
    archive_groups: bool = False
    reconcile_remainder: bool = False

    @classmethod
    def from_config(cls, config) -> "EngineSettings":
        return cls(
            fee_percentage=Decimal(config["PLATFORM_FEE_PERCENTAGE"]),
            penalty_percentage=Decimal(config["NO_SHOW_PENALTY_PERCENTAGE"]),
            reward_percentage=Decimal(config["LEADER_REWARD_PERCENTAGE"]),
            no_show_window_minutes=int(config["NO_SHOW_WINDOW_MINUTES"]),
            archive_groups=bool(config["SETTLEMENT_ARCHIVE_GROUPS"]),
            reconcile_remainder=bool(config["SPLIT_RECONCILE_REMAINDER"]),
        )


class SettlementEngine:

    def __init__(
            self,
            session: Session,
            settings: EngineSettings | None = None,
            retry_policy: RetryPolicy | None = None,
            notifier: Notifier | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or EngineSettings()
        self.retry_policy = retry_policy or RetryPolicy()
        self.notifier = notifier or LoggingNotifier()

    @classmethod
    def from_config(
            cls,
            config,
            session: Session,
            notifier: Notifier | None = None,
    ) -> "SettlementEngine":
        return cls(
            session=session,
            settings=EngineSettings.from_config(config),
            retry_policy=RetryPolicy(
                max_attempts=int(config["SETTLEMENT_MAX_RETRIES"]),
                base_delay=float(config["SETTLEMENT_RETRY_BASE_DELAY"]),
            ),
            notifier=notifier,
        )

    # ── Split calculation ──────────────────────────────────────────────────

    def calculate_split(self, items, total_tax, total_discount) -> list[OrderSplit]:
        return calculate_split(
            items,
            total_tax,
            total_discount,
            reconcile_remainder=self.settings.reconcile_remainder,
        )

    # ── Transaction attempts ───────────────────────────────────────────────

    def _in_unit_of_work(self, body: Callable, **kwargs):
        """Runs `body(uow, **kwargs)` as one committed-or-rolled-back attempt."""
        with LedgerUnitOfWork(self.session) as uow:
            return body(uow, **kwargs)

    def complete_order(
            self,
            group_id: int,
            order_id: int,
            leader_id: int,
            splits: list[OrderSplit],
    ) -> SettlementResult:
        return self._settle(
            settle_order_once,
            group_id=group_id,
            order_id=order_id,
            leader_id=leader_id,
            splits=splits,
        )

    def complete_persisted_order(self, order_id: int, leader_id: int) -> SettlementResult:
        """Settles the order with the splits currently stored on its items."""
        return self._settle(
            settle_persisted_order_once,
            order_id=order_id,
            leader_id=leader_id,
        )

    def _settle(self, body: Callable, **kwargs) -> SettlementResult:
        result: SettlementResult = self.retry_policy.run(
            self._in_unit_of_work,
            body,
            fee_percentage=self.settings.fee_percentage,
            reward_percentage=self.settings.reward_percentage,
            archive_group=self.settings.archive_groups,
            **kwargs,
        )

        logger.info(
            "Settled order %s for group %s: total=%s fee=%s leader_credit=%s payers=%d",
            result.order_id,
            result.group_id,
            result.total_amount,
            result.platform_fee,
            result.leader_credit,
            len(result.debits),
        )
        publish_safely(self.notifier, EngineEvent(
            kind=EventKind.SETTLEMENT_COMPLETED,
            group_id=result.group_id,
            order_id=result.order_id,
            user_ids=result.split_user_ids,
            amount=result.total_amount,
            details={
                "leader_id": result.leader_id,
                "platform_fee": str(result.platform_fee),
                "leader_credit": str(result.leader_credit),
                "reward_coins": result.reward_coins,
            },
        ))
        return result

    def process_order_completion(
            self,
            group_id: int,
            order_id: int,
            leader_id: int,
            splits: list[OrderSplit],
    ) -> bool:
        self.complete_order(group_id, order_id, leader_id, splits)
        return True

    def apply_no_show(
            self,
            group_id: int,
            order_id: int,
            user_id: int,
            leader_id: int,
    ) -> NoShowResult:
        result: NoShowResult = self.retry_policy.run(
            self._in_unit_of_work,
            apply_no_show_once,
            group_id=group_id,
            order_id=order_id,
            user_id=user_id,
            leader_id=leader_id,
            penalty_percentage=self.settings.penalty_percentage,
        )

        logger.info(
            "No-show penalty of %s applied to user %s on order %s (leader %s)",
            result.penalty,
            user_id,
            order_id,
            leader_id,
        )
        publish_safely(self.notifier, EngineEvent(
            kind=EventKind.NO_SHOW_PENALTY_APPLIED,
            group_id=group_id,
            order_id=order_id,
            user_ids=(user_id,),
            amount=result.penalty,
            details={"leader_id": leader_id},
        ))
        return result

    def process_no_show(
            self,
            group_id: int,
            order_id: int,
            user_id: int,
            leader_id: int,
    ) -> bool:
        self.apply_no_show(group_id, order_id, user_id, leader_id)
        return True


def get_engine() -> SettlementEngine:
    """The engine of the current Flask application."""
    return current_app.extensions["settlement_engine"]
