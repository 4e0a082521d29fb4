"""Tests for the rule-based execution advisor."""

from decimal import Decimal

import httpx
import pytest

from quartermaster.advisor import Advisor, ReflectionAction
from quartermaster.commands import PayVendor, RecurringPay, TreasurySwap
from quartermaster.memory import VendorHistory
from quartermaster.policy import TOOL_CATALOG
from quartermaster.sandbox import SANDBOX_BASE_URL, SandboxToolServer
from quartermaster.x402_client import ToolReceipt

ADDR = "0x1111111111111111111111111111111111111111"


def pay(amount):
    return PayVendor(vendor="ACME", amount=Decimal(amount), to=ADDR)


def receipt(tool_name, result):
    return ToolReceipt(
        tool_name=tool_name,
        trace_id=f"trace_cmd_1_{tool_name}",
        initial_status=402,
        payment_attempted=True,
        final_status=200,
        body={"ok": True, "result": result},
        cost=0,
        created_at=0,
    )


@pytest.fixture
def advisor():
    return Advisor(http=SandboxToolServer().client())


class TestDiscovery:
    def test_discovers_sandbox_tools(self, advisor):
        tools = advisor.discover_tools(SANDBOX_BASE_URL + "/")
        assert [t.tool_name for t in tools] == [t.tool_name for t in TOOL_CATALOG]
        assert tools[1].price == Decimal("0.5")

    def test_falls_back_to_catalog(self):
        advisor = Advisor(http=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500))))
        assert advisor.discover_tools("http://tools.down") == list(TOOL_CATALOG)

    def test_malformed_listing_falls_back(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"nope": []})))
        assert Advisor(http=client).discover_tools("http://tools.odd") == list(TOOL_CATALOG)


class TestPlan:
    def test_pay_vendor_selects_both_checks(self, advisor):
        plan = advisor.plan(pay("200"), TOOL_CATALOG, 2_000_000)
        assert [t.tool_name for t in plan.tool_plan] == ["vendor-risk", "compliance-check"]
        assert plan.tool_plan[1].reason == "Compliance required for payouts >=50"
        assert plan.risk == "MEDIUM"

    def test_plan_fits_budget(self, advisor):
        plan = advisor.plan(pay("1000"), TOOL_CATALOG, 500_000)
        assert [t.tool_name for t in plan.tool_plan] == ["vendor-risk"]
        assert plan.risk == "HIGH"
        assert plan.tool_plan[0].reason == "Deep risk check for high-value payout (>=250)"
        assert plan.skipped_tools == ["compliance-check"]
        assert "Skipped over budget: compliance-check" in plan.reasoning

    def test_zero_budget(self, advisor):
        assert advisor.plan(pay("10"), TOOL_CATALOG, 0).tool_plan == []

    def test_swap(self, advisor):
        swap = TreasurySwap(amount=Decimal("25"), slippage_bps=50, max_spend=Decimal("30"))
        plan = advisor.plan(swap, TOOL_CATALOG, 2_000_000)
        assert [t.tool_name for t in plan.tool_plan] == ["price-check"]
        assert plan.risk == "LOW"

    def test_recurring_needs_no_tools(self, advisor):
        rule = RecurringPay(vendor="ACME", amount=Decimal("50"), to=ADDR, frequency="daily")
        assert advisor.plan(rule, TOOL_CATALOG, 2_000_000).tool_plan == []

    def test_unreliable_vendor_raises_risk(self, advisor):
        history = VendorHistory("ACME", total_transactions=3, finished=3, succeeded=1, avg_amount=Decimal("20"))
        plan = advisor.plan(pay("10"), TOOL_CATALOG, 2_000_000, vendor_history=history)
        assert plan.risk == "MEDIUM"
        assert "ACME: 3 past txns, 33% success, avg 20 USDC" in plan.reasoning
        assert plan.to_dict()["vendor_history"]["totalTransactions"] == 3

    def test_new_vendor_stays_low_risk(self, advisor):
        plan = advisor.plan(pay("10"), TOOL_CATALOG, 2_000_000, vendor_history=VendorHistory("ACME"))
        assert plan.risk == "LOW"
        assert "new vendor" in plan.reasoning

    def test_plan_dict(self, advisor):
        d = advisor.plan(pay("10"), TOOL_CATALOG, 2_000_000, daily_spend=250_000, past_done=3).to_dict()
        assert d["recommendation"] == "PROCEED"
        assert "3 prior payouts" in d["reasoning"]


class TestReflect:
    def test_all_clear(self, advisor):
        results = [receipt("vendor-risk", {"riskScore": 0.2}), receipt("compliance-check", {"approved": True})]
        reflection = advisor.reflect(pay("10"), results, 1_000_000)
        assert reflection.action == ReflectionAction.PROCEED
        assert "All 2 tool checks passed" in reflection.reasoning

    def test_compliance_flag_aborts(self, advisor):
        results = [
            receipt("vendor-risk", {"riskScore": 0.9}),
            receipt("compliance-check", {"approved": False, "score": 0.9}),
        ]
        reflection = advisor.reflect(pay("10"), results, 1_000_000)
        assert reflection.action == ReflectionAction.ABORT
        assert "0.9" in reflection.reasoning

    def test_high_risk_proceeds_with_warning(self, advisor):
        reflection = advisor.reflect(pay("10"), [receipt("vendor-risk", {"riskScore": 0.8})], 0)
        assert reflection.action == ReflectionAction.PROCEED
        assert "HIGH" in reflection.reasoning

    def test_unwrapped_body(self, advisor):
        flat = receipt("compliance-check", {})
        flat.body = {"approved": False, "score": 0.7}
        assert advisor.reflect(pay("10"), [flat], 0).action == ReflectionAction.ABORT

    def test_reflection_dict(self, advisor):
        d = advisor.reflect(pay("10"), [], 0).to_dict()
        assert d["action"] == "PROCEED"
        assert d["additional_tools"] == []
