"""
Rule-based execution advisor.

Picks which paid tools to call for a command (within budget) and reviews
the tool results before settlement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Sequence

import httpx

from .commands import ParsedCommand, PayVendor, TreasurySwap
from .money import format_usdc, plain_decimal
from .policy import TOOL_CATALOG, ToolPlanItem
from .x402_client import ToolReceipt

if TYPE_CHECKING:
    from .memory import VendorHistory

logger = logging.getLogger(__name__)

HIGH_RISK_SCORE = 0.75


class ReflectionAction(str, Enum):
    PROCEED = "PROCEED"
    ABORT = "ABORT"
    CALL_MORE_TOOLS = "CALL_MORE_TOOLS"


@dataclass
class AdvisorPlan:
    reasoning: str
    tool_plan: list[ToolPlanItem]
    risk: str
    recommendation: str = "PROCEED"
    skipped_tools: list[str] = field(default_factory=list)
    vendor_history: Optional[VendorHistory] = None

    def to_dict(self) -> dict:
        return {
            "reasoning": self.reasoning,
            "tool_plan": [t.to_dict() for t in self.tool_plan],
            "risk": self.risk,
            "recommendation": self.recommendation,
            "skipped_tools": list(self.skipped_tools),
            "vendor_history": self.vendor_history.to_dict() if self.vendor_history else None,
        }


@dataclass
class Reflection:
    action: ReflectionAction
    reasoning: str
    additional_tools: list[ToolPlanItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "reasoning": self.reasoning,
            "additional_tools": [t.to_dict() for t in self.additional_tools],
        }


class Advisor:
    """Plans tool calls and reviews their results."""

    def __init__(self, http: Optional[httpx.Client] = None, timeout: float = 10.0):
        self._http = http or httpx.Client(timeout=timeout)

    def discover_tools(self, base_url: str) -> list[ToolPlanItem]:
        """Fetch ``/.well-known/tools``; fall back to the built-in catalog."""
        url = base_url.rstrip("/") + "/.well-known/tools"
        try:
            response = self._http.get(url)
            response.raise_for_status()
            tools = [
                ToolPlanItem(
                    tool_name=t["name"],
                    endpoint=t["endpoint"],
                    price=Decimal(str(t["priceUsdc"])),
                    reason=t.get("description", ""),
                )
                for t in response.json()["tools"]
            ]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("Tool discovery failed, using fallback catalog: %s", e)
            return list(TOOL_CATALOG)
        logger.info("Discovered %d tools from %s", len(tools), url)
        return tools

    def plan(
        self,
        command: ParsedCommand,
        tools: Sequence[ToolPlanItem],
        budget: int,
        daily_spend: int = 0,
        past_done: int = 0,
        vendor_history: Optional[VendorHistory] = None,
    ) -> AdvisorPlan:
        by_name = {t.tool_name: t for t in tools}
        plan: list[ToolPlanItem] = []
        skipped: list[str] = []

        def add(name: str, reason: str) -> None:
            tool = by_name.get(name)
            if tool is None:
                return
            spent = sum(t.price_units for t in plan)
            if spent + tool.price_units > budget:
                logger.warning(
                    "Dropping %s from plan: %s would exceed %s budget",
                    name,
                    format_usdc(spent + tool.price_units),
                    format_usdc(budget),
                )
                skipped.append(name)
                return
            plan.append(ToolPlanItem(tool.tool_name, tool.endpoint, tool.price, reason))

        if isinstance(command, PayVendor):
            add(
                "vendor-risk",
                "Deep risk check for high-value payout (>=250)"
                if command.amount >= 250
                else "Standard risk screening before payout",
            )
            add(
                "compliance-check",
                "Compliance required for payouts >=50"
                if command.amount >= 50
                else "Standard compliance screening",
            )
        elif isinstance(command, TreasurySwap):
            add("price-check", "Pre-swap market research to verify entry timing")

        risk = "LOW"
        if isinstance(command, PayVendor):
            if command.amount > 500:
                risk = "HIGH"
            elif command.amount > 100:
                risk = "MEDIUM"
            if (
                risk == "LOW"
                and vendor_history is not None
                and vendor_history.finished >= 2
                and vendor_history.success_rate < 0.5
            ):
                risk = "MEDIUM"

        total = sum(t.price_units for t in plan)
        logger.info(
            "Plan for %s: risk %s, tools %s (%s)",
            command.kind.value,
            risk,
            " -> ".join(t.tool_name for t in plan) or "none",
            format_usdc(total),
        )
        reasoning = (
            f"Rule-based: {command.kind.value} for {plain_decimal(command.amount)} USDC. "
            f"Selected {len(plan)} tools within {format_usdc(budget)} budget "
            f"(daily spend {format_usdc(daily_spend)}, {past_done} prior payouts)."
        )
        if skipped:
            reasoning += f" Skipped over budget: {', '.join(skipped)}."
        if vendor_history is not None:
            reasoning += f" History: {vendor_history.summary()}."
        return AdvisorPlan(
            reasoning=reasoning,
            tool_plan=plan,
            risk=risk,
            skipped_tools=skipped,
            vendor_history=vendor_history,
        )

    def reflect(
        self,
        command: ParsedCommand,
        results: Sequence[ToolReceipt],
        remaining: int,
    ) -> Reflection:
        for r in results:
            data = _result_data(r.body)
            if r.tool_name == "compliance-check" and data.get("approved") is False:
                return Reflection(
                    ReflectionAction.ABORT,
                    f"Compliance check failed, vendor flagged for review (score: {data.get('score')})",
                )

        for r in results:
            data = _result_data(r.body)
            score = data.get("riskScore")
            if r.tool_name == "vendor-risk" and isinstance(score, (int, float)) and score > HIGH_RISK_SCORE:
                return Reflection(
                    ReflectionAction.PROCEED,
                    f"Vendor risk is HIGH ({score}), proceeding with warning since a human already approved.",
                )

        return Reflection(
            ReflectionAction.PROCEED,
            f"All {len(results)} tool checks passed. Safe to proceed with settlement.",
        )

    def close(self):
        self._http.close()


def _result_data(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        return {}
    inner = body.get("result")
    return inner if isinstance(inner, dict) else body
