"""Recurring payment rules and their schedule."""

from __future__ import annotations

import calendar
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Optional

from .commands import RecurringPay, short_id
from .money import plain_decimal

if TYPE_CHECKING:
    from .store import Store

logger = logging.getLogger(__name__)

FREQUENCIES = ("daily", "weekly", "monthly")


@dataclass
class RecurringRule:
    rule_id: str
    scope: str
    source_command_id: str
    vendor: str
    amount: Decimal
    to: str
    frequency: str
    next_run_at: int
    run_count: int = 0
    enabled: bool = True
    created_at: int = 0
    last_run_at: Optional[int] = None

    def command_text(self) -> str:
        """Structured PAY_VENDOR line for the next run; REF keeps each run distinct."""
        return (
            f"DW PAY_VENDOR {self.vendor} {plain_decimal(self.amount)} USDC TO {self.to} "
            f"REF {self.rule_id}-{self.run_count + 1}"
        )

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "scope": self.scope,
            "source_command_id": self.source_command_id,
            "vendor": self.vendor,
            "amount": plain_decimal(self.amount),
            "to": self.to,
            "frequency": self.frequency,
            "next_run_at": self.next_run_at,
            "run_count": self.run_count,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "last_run_at": self.last_run_at,
        }


def rule_from_command(scope: str, command_id: str, command: RecurringPay, now: float) -> RecurringRule:
    """Rule for a RECURRING_PAY command; the first run is due immediately."""
    return RecurringRule(
        rule_id=short_id("rule", command_id),
        scope=scope,
        source_command_id=command_id,
        vendor=command.vendor,
        amount=command.amount,
        to=command.to,
        frequency=command.frequency,
        next_run_at=int(now),
        created_at=int(now),
    )


def next_run(from_ts: float, frequency: str) -> int:
    """Next run time: +1 day, +7 days, or +1 calendar month clamped to month length."""
    if frequency == "daily":
        return int(from_ts) + 86400
    if frequency == "weekly":
        return int(from_ts) + 7 * 86400
    if frequency == "monthly":
        dt = datetime.fromtimestamp(int(from_ts), tz=timezone.utc)
        year, month = (dt.year + 1, 1) if dt.month == 12 else (dt.year, dt.month + 1)
        day = min(dt.day, calendar.monthrange(year, month)[1])
        return int(dt.replace(year=year, month=month, day=day).timestamp())
    raise ValueError(f"Unsupported frequency: {frequency}")


class RecurringScheduler:
    """Keeps recurring rules in the store and reports which ones are due."""

    def __init__(self, store: "Store", now: Callable[[], float] = time.time):
        self._store = store
        self._now = now

    def add_rule(self, scope: str, rule: RecurringRule) -> RecurringRule:
        if rule.frequency not in FREQUENCIES:
            raise ValueError(f"Unsupported frequency: {rule.frequency}")
        rule = replace(rule, scope=scope)
        if self._store.save_rule(rule):
            logger.info(
                "Recurring rule added: %s %s USDC %s",
                rule.vendor,
                plain_decimal(rule.amount),
                rule.frequency,
            )
            return rule
        return self._store.get_rule(rule.rule_id) or rule

    def due(self, scope: str) -> list[RecurringRule]:
        return self._store.list_rules(scope, due_before=int(self._now()))

    def list_rules(self, scope: str) -> list[RecurringRule]:
        return self._store.list_rules(scope)

    def disable(self, rule_id: str) -> bool:
        return self._store.set_rule_enabled(rule_id, False)

    def mark_ran(self, rule: RecurringRule) -> RecurringRule:
        """Advance the schedule from now, so a long pause does not trigger catch-up runs."""
        current = int(self._now())
        updated = replace(
            rule,
            run_count=rule.run_count + 1,
            last_run_at=current,
            next_run_at=next_run(current, rule.frequency),
        )
        self._store.advance_rule(updated.rule_id, updated.next_run_at, updated.run_count, current)
        return updated

    next_run = staticmethod(next_run)
