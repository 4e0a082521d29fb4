"""End-to-end orchestrator behaviour against the sandbox tool server."""

from decimal import Decimal

import pytest
from eth_account import Account

from quartermaster.advisor import Advisor, Reflection, ReflectionAction
from quartermaster.commands import CommandStatus
from quartermaster.errors import InvalidTransitionError, TickInProgressError
from quartermaster.mandate import LocalApprovalSigner
from quartermaster.policy import ToolPlanItem
from quartermaster.settlement import ConditionalSettlementQueue, DryRunDecryptionAuthority, JobStatus
from quartermaster.store import ReceiptKind

SCOPE = "doc-1"
PAYEE = "0x" + "a" * 40
OTHER = "0x" + "b" * 40

PAY_A = f"PAY_VENDOR ACME 200 USDC TO {PAYEE} MAX_TOTAL 2"
PAY_B = f"PAY_VENDOR ACME 200 USDC TO {PAYEE} MAX_TOTAL 0.5"
SWAP_C = "TREASURY_SWAP 25 USDC TO WETH SLIPPAGE 250 MAX_SPEND 30"


def _submit(orch, text):
    ref = orch.source.append(SCOPE, text)
    orch.tick(SCOPE)
    return ref


def _only(orch, status=None):
    records = orch.list_commands(SCOPE, status)
    assert len(records) == 1
    return records[0]


def _audit_texts(orch):
    return [e.text for e in orch.audit.read_lines(scope=SCOPE)]


def _outcomes(orch, command_id):
    receipts = orch.store.list_receipts(SCOPE, command_id, ReceiptKind.AGENT_REFLECTION)
    return [r.payload for r in receipts if r.payload.get("memoryType") == "OUTCOME"]


class _MismatchedSigner:
    """Claims one address but signs with another key."""

    def __init__(self):
        self._claimed = LocalApprovalSigner("0x" + bytes(Account.create().key).hex())
        self._actual = LocalApprovalSigner("0x" + bytes(Account.create().key).hex())

    @property
    def address(self):
        return self._claimed.address

    def sign_typed_data(self, domain, types, primary_type, message):
        return self._actual.sign_typed_data(domain, types, primary_type, message)


class _BrokenSource:
    def list_pending(self, scope):
        raise OSError("inbox unavailable")

    def mark_consumed(self, ref, status_label):
        raise AssertionError("not reached")

    def append(self, scope, text):
        raise OSError("inbox unavailable")


class TestScenarios:
    def test_vendor_payout_within_budget(self, orch, server):
        ref = _submit(orch, PAY_A)
        record = _only(orch)
        assert record.status == CommandStatus.AWAITING_APPROVAL
        assert orch.source.status_of(ref) == "AWAITING_APPROVAL"
        assert server.requests == []

        result = orch.request_approval(SCOPE, record.command_id)
        assert result.approved
        orch.tick(SCOPE)

        record = _only(orch)
        assert record.status == CommandStatus.DONE
        assert orch.store.command_spend(SCOPE, record.command_id) == 750_000
        assert len(orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.SETTLEMENT)) == 1
        # each tool answers 402 first, then succeeds once paid
        assert [r["paid"] for r in server.requests] == [False, True, False, True]
        assert len(orch.wallet.transfers) == 1
        assert orch.wallet.transfers[0]["amount"] == 200_000_000

    def test_vendor_payout_over_tool_budget(self, orch, server):
        _submit(orch, PAY_B)
        record = _only(orch)
        assert orch.request_approval(SCOPE, record.command_id).approved
        orch.tick(SCOPE)

        record = _only(orch)
        assert record.status == CommandStatus.ABORTED
        aborts = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.ABORT)
        assert [a.reason_code for a in aborts] == ["OVER_CMD_BUDGET"]
        assert server.requests == []
        assert orch.store.command_spend(SCOPE, record.command_id) == 0
        assert orch.wallet.transfers == []

    def test_swap_above_slippage_ceiling(self, orch, server):
        _submit(orch, SWAP_C)
        record = _only(orch)
        assert record.status == CommandStatus.ABORTED
        aborts = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.ABORT)
        assert aborts[0].reason_code == "SLIPPAGE_TOO_HIGH"
        assert server.requests == []

    def test_private_payout_in_the_past(self, orch, clock):
        _submit(orch, f"PRIVATE_PAYOUT 50 USDC TO {OTHER} AT {clock.iso(-3600)}")
        record = _only(orch)
        assert record.status == CommandStatus.ABORTED
        aborts = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.ABORT)
        assert aborts[0].reason_code == "INVALID_UNLOCK_TIME"
        assert orch.store.get_job_for_command(SCOPE, record.command_id) is None

    def test_private_payout_unlocks_then_settles(self, make_orchestrator, clock):
        authority = DryRunDecryptionAuthority()
        orch = make_orchestrator(settlement_queue=ConditionalSettlementQueue(authority, now=clock))
        _submit(orch, f"PRIVATE_PAYOUT 3 USDC TO {OTHER} AT {clock.iso(60)}")

        record = _only(orch)
        assert record.status == CommandStatus.EXECUTING
        job = orch.store.get_job_for_command(SCOPE, record.command_id)
        assert job.status == JobStatus.PENDING

        orch.tick(SCOPE)
        assert authority.submissions == []

        clock.advance(61)
        orch.tick(SCOPE)
        job = orch.store.get_job_for_command(SCOPE, record.command_id)
        assert job.status == JobStatus.SUBMITTED
        assert len(authority.submissions) == 1
        assert _only(orch).status == CommandStatus.EXECUTING

        orch.tick(SCOPE)
        job = orch.store.get_job_for_command(SCOPE, record.command_id)
        assert job.status == JobStatus.DECRYPTED
        assert len(authority.submissions) == 1
        assert _only(orch).status == CommandStatus.DONE
        assert [o["outcome"] for o in _outcomes(orch, record.command_id)] == ["SUCCESS"]

        texts = _audit_texts(orch)
        assert any("ENCRYPTED_PENDING" in t for t in texts)
        assert any("ENCRYPTED_SUBMITTED" in t for t in texts)
        assert any("ENCRYPTED_DECRYPTED" in t for t in texts)


class TestIngestion:
    def test_duplicate_text_is_ingested_once(self, orch):
        first = _submit(orch, PAY_A)
        second = _submit(orch, PAY_A)
        assert orch.source.status_of(first) == "AWAITING_APPROVAL"
        assert orch.source.status_of(second) == "DUPLICATE"
        assert len(orch.list_commands(SCOPE)) == 1

    def test_optional_dw_keyword_maps_to_same_command(self, orch):
        _submit(orch, PAY_A)
        ref = _submit(orch, "DW " + PAY_A)
        assert orch.source.status_of(ref) == "DUPLICATE"

    def test_needs_info_reported_once(self, orch):
        first = _submit(orch, "pay ACME soon")
        second = _submit(orch, "pay ACME soon")
        assert orch.source.status_of(first) == "NEEDS_INFO"
        assert orch.source.status_of(second) == "NEEDS_INFO"
        needs_info = [t for t in _audit_texts(orch) if "NEEDS_INFO" in t]
        assert len(needs_info) == 1
        assert "missing=[amount_usdc,to_address]" in needs_info[0]
        assert orch.list_commands(SCOPE) == []

    def test_small_command_is_auto_approved(self, orch):
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")
        record = _only(orch)
        assert record.status == CommandStatus.DONE
        assert any("AUTO_APPROVED" in t for t in _audit_texts(orch))

    def test_intent_is_recorded_with_ceiling(self, orch):
        _submit(orch, PAY_A)
        record = _only(orch)
        intent = orch.store.get_intent(SCOPE, record.command_id)
        assert intent.max_total == 2_000_000
        assert [t.tool_name for t in intent.tool_plan] == ["vendor-risk", "compliance-check"]


class TestApproval:
    def test_approval_records_signed_cart(self, orch, approver):
        _submit(orch, PAY_A)
        record = _only(orch)
        result = orch.request_approval(SCOPE, record.command_id)
        assert result.approved
        assert result.signer_address == approver.address

        cart = orch.store.get_cart(SCOPE, record.command_id)
        assert cart.is_signed
        assert cart.signer_address == approver.address
        assert _only(orch).status == CommandStatus.APPROVED
        assert any(f"APPROVED signer={approver.address}" in t for t in _audit_texts(orch))

    def test_mismatched_signature_fails_command(self, orch):
        _submit(orch, PAY_A)
        record = _only(orch)
        result = orch.request_approval(SCOPE, record.command_id, _MismatchedSigner())
        assert not result.approved
        assert "mismatch" in result.error.lower()
        assert _only(orch).status == CommandStatus.FAILED
        assert orch.store.get_cart(SCOPE, record.command_id) is None

    def test_approval_after_expiry_aborts(self, orch, clock):
        _submit(orch, PAY_A)
        record = _only(orch)
        clock.advance(301)
        result = orch.request_approval(SCOPE, record.command_id)
        assert not result.approved
        assert result.error == "EXPIRED_MANDATE"
        assert _only(orch).status == CommandStatus.ABORTED

    def test_cart_expiring_before_execution_aborts(self, orch, clock, server):
        _submit(orch, PAY_A)
        record = _only(orch)
        assert orch.request_approval(SCOPE, record.command_id).approved
        clock.advance(301)
        orch.tick(SCOPE)
        record = _only(orch)
        assert record.status == CommandStatus.ABORTED
        aborts = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.ABORT)
        assert aborts[0].reason_code == "EXPIRED_MANDATE"
        assert server.requests == []

    def test_no_signer_configured(self, make_orchestrator):
        orch = make_orchestrator(approver=None)
        _submit(orch, PAY_A)
        result = orch.request_approval(SCOPE, _only(orch).command_id)
        assert not result.approved
        assert "signer" in result.error

    def test_done_command_cannot_be_approved(self, orch):
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")
        result = orch.request_approval(SCOPE, _only(orch).command_id)
        assert not result.approved


class TestBudgets:
    def test_ledger_never_exceeds_ceiling(self, orch):
        _submit(orch, PAY_A)
        record = _only(orch)
        orch.request_approval(SCOPE, record.command_id)
        orch.tick(SCOPE)
        spent = sum(e.amount for e in orch.store.list_spend(SCOPE, record.command_id))
        assert spent == 750_000
        assert spent <= 2_000_000

        summary = orch.spend_summary(SCOPE, record.command_id)
        assert summary["total"] == 750_000
        assert summary["remaining"] == 1_250_000
        assert [r["tool_name"] for r in summary["tool_receipts"]] == ["vendor-risk", "compliance-check"]

    def test_daily_limit_stops_second_command(self, make_orchestrator, config):
        config.daily_limit_usdc = Decimal("1")
        orch = make_orchestrator(config=config)
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE} REF one")
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE} REF two")

        first, second = orch.list_commands(SCOPE)
        assert first.status == CommandStatus.DONE
        assert second.status == CommandStatus.ABORTED
        aborts = orch.store.list_receipts(SCOPE, second.command_id, ReceiptKind.ABORT)
        assert aborts[0].reason_code == "DAILY_LIMIT_REACHED"

    def test_challenge_above_agreed_price_is_not_paid(self, orch, server):
        server.prices["vendor-risk"] = Decimal("0.30")
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")
        record = _only(orch)
        assert record.status == CommandStatus.FAILED
        assert not server.paid_requests("vendor-risk")
        assert orch.store.command_spend(SCOPE, record.command_id) == 0
        aborts = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.ABORT)
        assert aborts[0].reason_code == "TOOL_CALL_FAILED"

    def test_transient_tool_error_is_retried(self, orch, server, sleeps):
        server.unavailable["vendor-risk"] = 1
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")
        assert _only(orch).status == CommandStatus.DONE
        assert len(sleeps) == 1

    def test_retries_exhausted_fails_command(self, orch, server):
        server.unavailable["vendor-risk"] = 10
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")
        record = _only(orch)
        assert record.status == CommandStatus.FAILED
        assert "Retries exhausted" in record.last_error
        assert orch.wallet.transfers == []


class TestAdvisor:
    def test_compliance_rejection_aborts_before_settlement(self, make_orchestrator, server):
        server.flagged_vendors.add("ACME")
        orch = make_orchestrator(advisor=Advisor(http=server.client()))
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")

        record = _only(orch)
        assert record.status == CommandStatus.ABORTED
        reflections = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.AGENT_REFLECTION)
        assert reflections[0].payload["action"] == "ABORT"
        assert orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.AGENT_PLAN)
        assert orch.wallet.transfers == []

    def test_high_risk_vendor_proceeds(self, make_orchestrator, server):
        server.risk_scores["ACME"] = 0.9
        orch = make_orchestrator(advisor=Advisor(http=server.client()))
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")
        record = _only(orch)
        assert record.status == CommandStatus.DONE
        reflection = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.AGENT_REFLECTION)[0]
        assert reflection.payload["action"] == "PROCEED"
        assert "HIGH" in reflection.payload["reasoning"]

    def test_additional_tools_are_budgeted_and_allowlisted(self, make_orchestrator, server):
        class CuriousAdvisor(Advisor):
            def reflect(self, command, results, remaining):
                return Reflection(
                    ReflectionAction.CALL_MORE_TOOLS,
                    "Want a market check too",
                    [
                        ToolPlanItem("price-check", "/tools/price-check", Decimal("0.10")),
                        ToolPlanItem("scraper", "/tools/scraper", Decimal("0.01")),
                    ],
                )

        orch = make_orchestrator(advisor=CuriousAdvisor(http=server.client()))
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")

        record = _only(orch)
        assert record.status == CommandStatus.DONE
        assert orch.spend_summary(SCOPE, record.command_id)["total"] == 850_000
        settlement = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.SETTLEMENT)[0]
        assert settlement.payload["toolsCalled"] == ["vendor-risk", "compliance-check", "price-check"]
        assert not [r for r in server.requests if r["tool"] == "scraper"]

    def test_plan_trimmed_to_budget_names_skipped_tools(self, make_orchestrator, server):
        orch = make_orchestrator(advisor=Advisor(http=server.client()))
        _submit(orch, PAY_B)
        record = _only(orch)
        assert orch.request_approval(SCOPE, record.command_id).approved
        orch.tick(SCOPE)

        record = _only(orch)
        assert record.status == CommandStatus.DONE
        plan = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.AGENT_PLAN)[0]
        assert plan.payload["skipped_tools"] == ["compliance-check"]
        assert "Skipped over budget: compliance-check" in plan.payload["reasoning"]
        assert {r["tool"] for r in server.requests} == {"vendor-risk"}


class TestMemory:
    def test_successful_payout_is_remembered(self, orch):
        _submit(orch, PAY_A)
        record = _only(orch)
        orch.request_approval(SCOPE, record.command_id)
        orch.tick(SCOPE)

        [outcome] = _outcomes(orch, record.command_id)
        assert outcome["outcome"] == "SUCCESS"
        assert outcome["vendor"] == "ACME"
        assert outcome["toolsUsed"] == ["vendor-risk", "compliance-check"]
        assert outcome["totalCostUsdc"] == 0.75

    def test_abort_is_remembered_with_message(self, orch):
        _submit(orch, SWAP_C)
        record = _only(orch)
        [outcome] = _outcomes(orch, record.command_id)
        assert outcome["outcome"] == "ABORTED"
        assert "Slippage 250bps" in outcome["notes"]

    def test_vendor_history_reaches_the_plan(self, make_orchestrator, server):
        orch = make_orchestrator(advisor=Advisor(http=server.client()))
        _submit(orch, f"PAY_VENDOR ACME 1 USDC TO {PAYEE}")
        _submit(orch, f"PAY_VENDOR ACME 3 USDC TO {PAYEE}")

        second = orch.list_commands(SCOPE)[1]
        assert second.status == CommandStatus.DONE
        plan = orch.store.list_receipts(SCOPE, second.command_id, ReceiptKind.AGENT_PLAN)[0]
        assert plan.payload["vendor_history"]["totalTransactions"] == 1
        assert plan.payload["vendor_history"]["successRate"] == 1.0
        assert "ACME: 1 past txns, 100% success, avg 1 USDC" in plan.payload["reasoning"]


class TestSwap:
    def test_swap_with_price_research(self, orch, server):
        _submit(orch, "TREASURY_SWAP 1 USDC TO WETH SLIPPAGE 50 MAX_SPEND 2")
        record = _only(orch)
        assert record.status == CommandStatus.DONE
        assert len(server.paid_requests("price-check")) == 1
        assert server.paid_requests("price-check")[0]["body"]["token"] == "WETH"

        defi = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.DEFI)[0].payload
        assert defi["quote"]["source"] == "price-check"
        assert defi["riskControls"]["policyMaxSlippage"] == 200
        assert defi["venue"] == "cdp-swap-simulated"
        assert len(orch.store.list_swap_trades(SCOPE, record.command_id)) == 1
        assert orch.store.command_spend(SCOPE, record.command_id) == 100_000
        assert any("RESEARCH price_check" in t for t in _audit_texts(orch))

    def test_swap_proceeds_when_research_fails(self, orch, server):
        server.unavailable["price-check"] = 10
        _submit(orch, "TREASURY_SWAP 1 USDC TO WETH SLIPPAGE 50 MAX_SPEND 2")
        record = _only(orch)
        assert record.status == CommandStatus.DONE
        defi = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.DEFI)[0].payload
        assert defi["quote"]["source"] == "none"
        assert orch.store.command_spend(SCOPE, record.command_id) == 0


class TestRecurring:
    def test_rule_emits_pay_vendor_once_per_period(self, orch, clock):
        _submit(orch, f"RECURRING_PAY ACME 1 USDC TO {PAYEE} EVERY DAILY")
        source_cmd = _only(orch)
        assert source_cmd.status == CommandStatus.DONE
        rules = orch.recurring.list_rules(SCOPE)
        assert len(rules) == 1
        assert rules[0].run_count == 1
        assert rules[0].next_run_at == int(clock()) + 86400

        orch.tick(SCOPE)
        orch.tick(SCOPE)
        payouts = [r for r in orch.list_commands(SCOPE) if r.parsed.kind.value == "PAY_VENDOR"]
        assert len(payouts) == 1
        assert payouts[0].parsed.ref == f"{rules[0].rule_id}-1"
        assert payouts[0].status == CommandStatus.DONE

        clock.advance(86400)
        orch.tick(SCOPE)
        orch.tick(SCOPE)
        payouts = [r for r in orch.list_commands(SCOPE) if r.parsed.kind.value == "PAY_VENDOR"]
        assert len(payouts) == 2


class TestOperatorTools:
    def test_simulate_abort(self, orch):
        _submit(orch, PAY_A)
        record = _only(orch)
        aborted = orch.simulate_abort(SCOPE, record.command_id)
        assert aborted.status == CommandStatus.ABORTED
        aborts = orch.store.list_receipts(SCOPE, record.command_id, ReceiptKind.ABORT)
        assert aborts[0].reason_code == "MANUAL_FAILURE_SIMULATION"
        with pytest.raises(InvalidTransitionError):
            orch.simulate_abort(SCOPE, record.command_id)

    def test_trace_collects_everything(self, orch):
        _submit(orch, PAY_A)
        record = _only(orch)
        orch.request_approval(SCOPE, record.command_id)
        orch.tick(SCOPE)
        trace = orch.get_trace(SCOPE, record.command_id)
        assert trace["command"]["status"] == "DONE"
        assert trace["intent"]["command_id"] == record.command_id
        assert trace["cart"]["signature"]
        assert len(trace["payment_mandates"]) == 2
        assert len(trace["tool_receipts"]) == 2
        kinds = [r["kind"] for r in trace["receipts"]]
        assert kinds.count("TOOL") == 2
        assert "SETTLEMENT" in kinds

    def test_every_audit_line_is_prefixed(self, orch):
        _submit(orch, PAY_A)
        _submit(orch, SWAP_C)
        texts = _audit_texts(orch)
        assert texts
        assert all(t.startswith("QM ") for t in texts)


class TestTick:
    def test_overlapping_tick_is_refused(self, orch):
        with orch._scope_lock(SCOPE):
            with pytest.raises(TickInProgressError):
                orch.tick(SCOPE)

    def test_failing_step_does_not_escape(self, make_orchestrator):
        orch = make_orchestrator(source=_BrokenSource())
        report = orch.tick(SCOPE)
        assert report.ingested == 0
