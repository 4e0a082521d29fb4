"""
Spend and risk policy.

``evaluate`` is a pure decision over a command and the current spend state.
Rules are checked in a fixed order and the first failing rule wins:

1. every selected tool is allowlisted
2. estimated tool cost fits the per-command ceiling
3. spend so far + estimate fits the per-command ceiling
4. daily spend + estimate fits the daily ceiling
5. variant checks (swap slippage, swap max spend, payout unlock time)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from .commands import (
    ParsedCommand,
    PayVendor,
    PrivatePayout,
    TreasurySwap,
    parse_utc_timestamp,
)
from .config import OrchestratorConfig
from .money import amount_usdc_to_units, format_usdc, limit_usdc_to_units, plain_decimal


@dataclass(frozen=True)
class ToolPlanItem:
    """One paid tool the command intends to call, at its agreed price."""

    tool_name: str
    endpoint: str
    price: Decimal
    reason: str = ""

    @property
    def price_units(self) -> int:
        return amount_usdc_to_units(self.price)

    def to_dict(self) -> dict:
        return {
            "tool_name": self.tool_name,
            "endpoint": self.endpoint,
            "price": plain_decimal(self.price),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ToolPlanItem":
        return cls(
            tool_name=d["tool_name"],
            endpoint=d["endpoint"],
            price=Decimal(str(d["price"])),
            reason=d.get("reason", ""),
        )


TOOL_CATALOG: tuple[ToolPlanItem, ...] = (
    ToolPlanItem("vendor-risk", "/tools/vendor-risk", Decimal("0.25"), "Vendor risk scoring"),
    ToolPlanItem("compliance-check", "/tools/compliance-check", Decimal("0.50"), "Compliance verdict"),
    ToolPlanItem("price-check", "/tools/price-check", Decimal("0.10"), "Token price feed"),
)


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason_code: str
    message: str

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason_code": self.reason_code, "message": self.message}


_OK = PolicyDecision(True, "OK", "Policy checks passed")


def effective_ceiling(config: OrchestratorConfig, command: ParsedCommand) -> int:
    """Per-command spend ceiling in base units."""
    if isinstance(command, PayVendor) and command.max_total is not None:
        return limit_usdc_to_units(command.max_total)
    return config.max_per_command_units


def estimate_cost(tools: Iterable[ToolPlanItem]) -> int:
    return sum(tool.price_units for tool in tools)


def evaluate(
    config: OrchestratorConfig,
    command: ParsedCommand,
    command_spend: int,
    daily_spend: int,
    estimated_cost: int,
    selected_tools: Sequence[ToolPlanItem],
    now: Optional[float] = None,
) -> PolicyDecision:
    """Decide whether a command may spend ``estimated_cost`` more base units."""
    ceiling = effective_ceiling(config, command)

    if any(tool.tool_name not in config.tool_allowlist for tool in selected_tools):
        return PolicyDecision(
            False, "TOOL_NOT_ALLOWLISTED", "One or more tools are not in the allowlist"
        )

    if estimated_cost > ceiling:
        return PolicyDecision(
            False,
            "OVER_CMD_BUDGET",
            f"Estimated tool cost {format_usdc(estimated_cost)} exceeds per-command limit "
            f"{format_usdc(ceiling)}",
        )

    if command_spend + estimated_cost > ceiling:
        return PolicyDecision(False, "SPEND_LIMIT_REACHED", "Command spend cap reached")

    if daily_spend + estimated_cost > config.daily_limit_units:
        return PolicyDecision(False, "DAILY_LIMIT_REACHED", "Daily spend limit reached")

    return validate_command(config, command, now=now)


def validate_command(
    config: OrchestratorConfig,
    command: ParsedCommand,
    now: Optional[float] = None,
) -> PolicyDecision:
    """Variant-specific checks only. These need no spend state or network."""
    if isinstance(command, TreasurySwap):
        if command.slippage_bps > config.max_slippage_bps:
            return PolicyDecision(
                False,
                "SLIPPAGE_TOO_HIGH",
                f"Slippage {command.slippage_bps}bps above maximum {config.max_slippage_bps}bps",
            )
        if command.amount > command.max_spend:
            return PolicyDecision(
                False, "MAX_SPEND_EXCEEDED", "Requested swap amount exceeds MAX_SPEND"
            )

    if isinstance(command, PrivatePayout):
        unlock = parse_utc_timestamp(command.unlock_at)
        current = time.time() if now is None else now
        if unlock is None or unlock <= current:
            return PolicyDecision(
                False,
                "INVALID_UNLOCK_TIME",
                "Unlock time must be a valid future UTC timestamp",
            )

    return _OK


def requires_approval(config: OrchestratorConfig, command: ParsedCommand) -> bool:
    """Principal above max(auto-run ceiling, approval threshold) needs a signature."""
    return amount_usdc_to_units(command.amount) > config.approval_threshold_units


def choose_tool_plan(
    command: ParsedCommand,
    catalog: Sequence[ToolPlanItem] = TOOL_CATALOG,
) -> list[ToolPlanItem]:
    """Static plan used when no advisor is configured."""
    by_name = {tool.tool_name: tool for tool in catalog}
    if isinstance(command, PayVendor):
        plan = []
        risk = by_name.get("vendor-risk")
        if risk is not None:
            reason = (
                "Deep risk check for >=250 payout"
                if command.amount >= 250
                else "Standard risk check for sub-250 payout"
            )
            plan.append(ToolPlanItem(risk.tool_name, risk.endpoint, risk.price, reason))
        compliance = by_name.get("compliance-check")
        if compliance is not None:
            plan.append(ToolPlanItem(
                compliance.tool_name,
                compliance.endpoint,
                compliance.price,
                "Compliance screening required for payouts",
            ))
        return plan
    if isinstance(command, TreasurySwap):
        price = by_name.get("price-check")
        if price is not None:
            return [ToolPlanItem(price.tool_name, price.endpoint, price.price, "Pre-swap market research")]
    return []
