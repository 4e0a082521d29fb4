"""
Outcome memory for the advisor.

Every command that reaches a terminal state leaves an OUTCOME receipt
(outcome, tools used, cost, duration). Vendor history is derived from the
command table so planning can see how earlier payouts to a vendor went.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from .commands import CommandStatus, PayVendor
from .money import plain_decimal, units_to_usdc_float
from .store import Receipt, ReceiptKind, Store

logger = logging.getLogger(__name__)

OUTCOME_LABELS = {
    CommandStatus.DONE: "SUCCESS",
    CommandStatus.FAILED: "FAILED",
    CommandStatus.ABORTED: "ABORTED",
}


@dataclass
class VendorHistory:
    vendor: str
    total_transactions: int = 0
    finished: int = 0
    succeeded: int = 0
    avg_amount: Decimal = Decimal("0")
    last_interaction: Optional[int] = None

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.finished if self.finished else 0.0

    def summary(self) -> str:
        if not self.total_transactions:
            return f"{self.vendor}: new vendor (no prior transactions)"
        return (
            f"{self.vendor}: {self.total_transactions} past txns, "
            f"{self.success_rate:.0%} success, avg {plain_decimal(self.avg_amount)} USDC"
        )

    def to_dict(self) -> dict:
        return {
            "vendor": self.vendor,
            "totalTransactions": self.total_transactions,
            "successRate": round(self.success_rate, 4),
            "avgAmountUsdc": plain_decimal(self.avg_amount),
            "lastInteraction": self.last_interaction,
        }


class AgentMemory:
    """Records terminal outcomes and answers per-vendor history questions."""

    def __init__(self, store: Store, now: Callable[[], float] = time.time):
        self._store = store
        self._now = now

    def record_outcome(
        self,
        scope: str,
        command_id: str,
        status: CommandStatus | str,
        started_at: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> Optional[Receipt]:
        """Write an OUTCOME receipt if the command is stored with the terminal ``status``."""
        status = CommandStatus(status)
        outcome = OUTCOME_LABELS.get(status)
        record = self._store.get_command(scope, command_id)
        if outcome is None or record is None or record.status != status:
            return None

        now = self._now()
        cmd = record.parsed
        payload = {
            "memoryType": "OUTCOME",
            "kind": cmd.kind.value,
            "vendor": cmd.vendor if isinstance(cmd, PayVendor) else None,
            "amountUsdc": plain_decimal(cmd.amount),
            "outcome": outcome,
            "toolsUsed": [r.tool_name for r in self._store.list_tool_receipts(scope, command_id)],
            "totalCostUsdc": units_to_usdc_float(self._store.command_spend(scope, command_id)),
            "durationMs": int((now - started_at) * 1000) if started_at is not None else None,
            "notes": notes,
        }
        receipt = self._store.add_receipt(
            scope, command_id, ReceiptKind.AGENT_REFLECTION, payload,
            reason_code=f"OUTCOME_{outcome}", now=now,
        )
        logger.info(
            "Memory: %s %s %s (cost %s USDC)",
            payload["kind"], outcome, payload["vendor"] or "n/a", payload["totalCostUsdc"],
        )
        return receipt

    def vendor_history(self, scope: str, vendor: str, exclude: Optional[str] = None) -> VendorHistory:
        """Earlier PAY_VENDOR commands for ``vendor``; success rate counts finished ones only."""
        wanted = vendor.upper()
        past = [
            r for r in self._store.list_commands(scope)
            if isinstance(r.parsed, PayVendor)
            and r.parsed.vendor.upper() == wanted
            and r.command_id != exclude
        ]
        if not past:
            return VendorHistory(vendor)

        finished = [r for r in past if r.status in OUTCOME_LABELS]
        total = sum((r.parsed.amount for r in past), Decimal("0"))
        return VendorHistory(
            vendor=vendor,
            total_transactions=len(past),
            finished=len(finished),
            succeeded=sum(1 for r in finished if r.status == CommandStatus.DONE),
            avg_amount=(total / len(past)).quantize(Decimal("0.01")),
            last_interaction=past[-1].created_at,
        )
