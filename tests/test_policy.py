"""Tests for spend policy, tool planning and USDC unit conversions."""

from decimal import Decimal

import pytest

from quartermaster.commands import PayVendor, PrivatePayout, RecurringPay, TreasurySwap
from quartermaster.config import OrchestratorConfig
from quartermaster.money import (
    amount_usdc_to_units,
    format_usdc,
    limit_usdc_to_units,
    plain_decimal,
    units_to_usdc,
)
from quartermaster.policy import (
    TOOL_CATALOG,
    ToolPlanItem,
    choose_tool_plan,
    effective_ceiling,
    estimate_cost,
    evaluate,
    requires_approval,
    validate_command,
)

ADDR = "0x1111111111111111111111111111111111111111"
NOW = 1772366400
RISK = ToolPlanItem("vendor-risk", "/tools/vendor-risk", Decimal("0.25"))
COMPLIANCE = ToolPlanItem("compliance-check", "/tools/compliance-check", Decimal("0.50"))


def pay(amount="3", max_total=None):
    return PayVendor(
        vendor="ACME",
        amount=Decimal(amount),
        to=ADDR,
        max_total=Decimal(max_total) if max_total is not None else None,
    )


@pytest.fixture
def config():
    return OrchestratorConfig()


class TestUnits:
    def test_spend_rounds_up(self):
        assert amount_usdc_to_units("0.0000001") == 1
        assert amount_usdc_to_units(Decimal("0.25")) == 250_000

    def test_limit_rounds_down(self):
        assert limit_usdc_to_units("1.9999999") == 1_999_999
        assert limit_usdc_to_units(2) == 2_000_000

    def test_units_to_usdc(self):
        assert units_to_usdc(750_000) == Decimal("0.750000")

    def test_format(self):
        assert format_usdc(750_000) == "0.75USDC"

    @pytest.mark.parametrize("value,expected", [
        ("200", "200"),
        ("200.00", "200"),
        ("0.50", "0.5"),
        (Decimal("1E+1"), "10"),
    ])
    def test_plain_decimal(self, value, expected):
        assert plain_decimal(value) == expected


class TestCeiling:
    def test_default_ceiling(self, config):
        assert effective_ceiling(config, pay()) == 2_000_000

    def test_max_total_overrides(self, config):
        assert effective_ceiling(config, pay(max_total="0.5")) == 500_000

    def test_estimate(self):
        assert estimate_cost([RISK, COMPLIANCE]) == 750_000
        assert estimate_cost([]) == 0


class TestEvaluate:
    def test_ok(self, config):
        decision = evaluate(config, pay(), 0, 0, 750_000, [RISK, COMPLIANCE], now=NOW)
        assert decision.allowed
        assert decision.reason_code == "OK"

    def test_allowlist_checked_first(self, config):
        rogue = ToolPlanItem("scraper", "/tools/scraper", Decimal("99"))
        decision = evaluate(config, pay(), 0, 0, 99_000_000, [rogue], now=NOW)
        assert decision.reason_code == "TOOL_NOT_ALLOWLISTED"

    def test_estimate_over_ceiling(self, config):
        decision = evaluate(config, pay(max_total="0.5"), 0, 0, 750_000, [RISK, COMPLIANCE], now=NOW)
        assert decision.reason_code == "OVER_CMD_BUDGET"
        assert "0.75USDC" in decision.message
        assert "0.50USDC" in decision.message

    def test_spend_so_far_counts(self, config):
        decision = evaluate(config, pay(), 1_500_000, 0, 750_000, [RISK, COMPLIANCE], now=NOW)
        assert decision.reason_code == "SPEND_LIMIT_REACHED"

    def test_exactly_at_ceiling_is_allowed(self, config):
        decision = evaluate(config, pay(), 1_250_000, 0, 750_000, [RISK, COMPLIANCE], now=NOW)
        assert decision.allowed

    def test_daily_limit(self, config):
        decision = evaluate(config, pay(), 0, 19_500_000, 750_000, [RISK, COMPLIANCE], now=NOW)
        assert decision.reason_code == "DAILY_LIMIT_REACHED"

    def test_variant_checks_run_last(self, config):
        swap = TreasurySwap(amount=Decimal("25"), slippage_bps=500, max_spend=Decimal("30"))
        assert evaluate(config, swap, 0, 0, 0, [], now=NOW).reason_code == "SLIPPAGE_TOO_HIGH"


class TestValidateCommand:
    def test_slippage(self, config):
        swap = TreasurySwap(amount=Decimal("25"), slippage_bps=201, max_spend=Decimal("30"))
        assert validate_command(config, swap).reason_code == "SLIPPAGE_TOO_HIGH"

    def test_slippage_at_max(self, config):
        swap = TreasurySwap(amount=Decimal("25"), slippage_bps=200, max_spend=Decimal("30"))
        assert validate_command(config, swap).allowed

    def test_max_spend(self, config):
        swap = TreasurySwap(amount=Decimal("40"), slippage_bps=50, max_spend=Decimal("30"))
        assert validate_command(config, swap).reason_code == "MAX_SPEND_EXCEEDED"

    def test_unlock_in_past(self, config):
        payout = PrivatePayout(amount=Decimal("5"), to=ADDR, unlock_at="2026-02-13T12:00:00Z")
        assert validate_command(config, payout, now=NOW).reason_code == "INVALID_UNLOCK_TIME"

    def test_unlock_now_is_rejected(self, config):
        payout = PrivatePayout(amount=Decimal("5"), to=ADDR, unlock_at="2026-03-01T12:00:00Z")
        assert validate_command(config, payout, now=NOW).reason_code == "INVALID_UNLOCK_TIME"

    def test_unlock_in_future(self, config):
        payout = PrivatePayout(amount=Decimal("5"), to=ADDR, unlock_at="2026-03-01T12:01:00Z")
        assert validate_command(config, payout, now=NOW).allowed

    def test_pay_and_recurring_pass(self, config):
        assert validate_command(config, pay()).allowed
        rule = RecurringPay(vendor="ACME", amount=Decimal("50"), to=ADDR, frequency="monthly")
        assert validate_command(config, rule).allowed


class TestApprovalThreshold:
    def test_threshold_is_larger_of_the_two(self, config):
        assert config.approval_threshold_units == 5_000_000
        assert not requires_approval(config, pay("5"))
        assert requires_approval(config, pay("5.01"))

    def test_approval_above_wins_when_larger(self):
        config = OrchestratorConfig(require_approval_above_usdc=Decimal("10"))
        assert not requires_approval(config, pay("8"))


class TestToolPlan:
    def test_pay_vendor_plan(self):
        plan = choose_tool_plan(pay("200"))
        assert [t.tool_name for t in plan] == ["vendor-risk", "compliance-check"]
        assert plan[0].reason == "Standard risk check for sub-250 payout"

    def test_large_payout_gets_deep_check(self):
        plan = choose_tool_plan(pay("250"))
        assert plan[0].reason == "Deep risk check for >=250 payout"

    def test_swap_plan(self):
        swap = TreasurySwap(amount=Decimal("25"), slippage_bps=50, max_spend=Decimal("30"))
        assert [t.tool_name for t in choose_tool_plan(swap)] == ["price-check"]

    def test_no_plan_for_payout_or_recurring(self):
        payout = PrivatePayout(amount=Decimal("5"), to=ADDR, unlock_at="2026-03-02T00:00:00Z")
        rule = RecurringPay(vendor="ACME", amount=Decimal("50"), to=ADDR, frequency="daily")
        assert choose_tool_plan(payout) == []
        assert choose_tool_plan(rule) == []

    def test_catalog_prices(self):
        assert estimate_cost(TOOL_CATALOG) == 850_000

    def test_plan_item_dict(self):
        assert ToolPlanItem.from_dict(RISK.to_dict()) == RISK
        assert RISK.to_dict()["price"] == "0.25"
