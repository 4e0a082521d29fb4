"""
Tick-driven command orchestrator.

One tick for a scope:

1. ingest pending command lines (compile, dedupe, intent, approval gate)
2. execute APPROVED commands (policy, paid tools, reflection, settlement)
3. advance encrypted settlement jobs one phase each
4. emit command lines for due recurring rules

Ticks for the same scope never overlap: each holds a non-blocking file
lock for its scope. Per-command failures are caught here and turned into
ABORTED/FAILED outcomes so one bad command never stops the tick.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional

from .advisor import Advisor, Reflection, ReflectionAction
from .audit import AuditTrail
from .commands import (
    CommandRecord,
    CommandStatus,
    ParsedCommand,
    PayVendor,
    PrivatePayout,
    RecurringPay,
    TreasurySwap,
    command_id,
    compile_command,
    utc_day_start,
)
from .config import APPROVER_KEY_ENV, EXECUTOR_KEY_ENV, OrchestratorConfig
from .errors import (
    BudgetExceededError,
    CommandNotFoundError,
    ConfigError,
    ExpiredMandateError,
    InvalidTransitionError,
    MandateVerificationError,
    MissingFieldsError,
    ParseError,
    PolicyRejection,
    TickInProgressError,
    ToolCallFailure,
    ToolError,
)
from .mandate import (
    ApprovalSigner,
    IntentStatus,
    LocalApprovalSigner,
    build_cart_mandate,
    build_intent_mandate,
    build_payment_mandate,
    sign_cart,
)
from .memory import AgentMemory
from .money import amount_usdc_to_units, format_usdc, plain_decimal, units_to_usdc_float
from .policy import (
    ToolPlanItem,
    choose_tool_plan,
    effective_ceiling,
    estimate_cost,
    evaluate,
    requires_approval,
    validate_command,
)
from .recurring import RecurringScheduler, rule_from_command
from .settlement import (
    AdvancePhase,
    ConditionalSettlementQueue,
    DryRunDecryptionAuthority,
    JobStatus,
    RpcDecryptionAuthority,
)
from .sources import CommandSource, FileCommandSource
from .storage import ensure_private_dir, ensure_private_file, scope_path
from .store import ReceiptKind, SpendEntry, Store, SwapTrade
from .wallet import (
    Confirmation,
    DryRunSwapVenue,
    DryRunWallet,
    RpcSettlementWallet,
    SettlementWallet,
    SwapVenue,
    swap_quote,
)
from .x402_client import BudgetedToolClient, HttpxToolTransport, ToolReceipt, X402Payer

logger = logging.getLogger(__name__)

AUDIT_PREFIX = "QM"


@dataclass
class ApprovalResult:
    approved: bool
    signer_address: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"approved": self.approved, "signer_address": self.signer_address, "error": self.error}


@dataclass
class TickReport:
    scope: str
    ingested: int = 0
    executed: int = 0
    jobs_advanced: int = 0
    recurring_emitted: int = 0

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "ingested": self.ingested,
            "executed": self.executed,
            "jobs_advanced": self.jobs_advanced,
            "recurring_emitted": self.recurring_emitted,
        }


class Orchestrator:
    """Drives commands from raw text to a terminal outcome, one tick at a time."""

    def __init__(
        self,
        config: OrchestratorConfig,
        store: Store,
        source: CommandSource,
        audit: AuditTrail,
        tool_client: BudgetedToolClient,
        wallet: SettlementWallet,
        settlement_queue: ConditionalSettlementQueue,
        advisor: Optional[Advisor] = None,
        swap_venue: Optional[SwapVenue] = None,
        recurring: Optional[RecurringScheduler] = None,
        approver: Optional[ApprovalSigner] = None,
        memory: Optional[AgentMemory] = None,
        now: Callable[[], float] = time.time,
        lock_dir: Optional[Path] = None,
    ):
        self.config = config
        self.store = store
        self.source = source
        self.audit = audit
        self.tool_client = tool_client
        self.wallet = wallet
        self.settlement_queue = settlement_queue
        self.advisor = advisor
        self.swap_venue = swap_venue or DryRunSwapVenue(
            chain=config.network.value,
            max_slippage_bps=config.max_slippage_bps,
            now=now,
        )
        self.recurring = recurring or RecurringScheduler(store, now=now)
        self.approver = approver
        self.memory = memory or AgentMemory(store, now=now)
        self._now = now
        self.lock_dir = Path(lock_dir) if lock_dir is not None else config.lock_dir

    def _ts(self) -> int:
        return int(self._now())

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    @contextmanager
    def _scope_lock(self, scope: str) -> Iterator[None]:
        ensure_private_dir(self.lock_dir)
        path = scope_path(self.lock_dir, scope, ".lock")
        ensure_private_file(path)
        with open(path, "r+") as lockf:
            try:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                logger.warning("Tick for scope %s already running, skipping", scope)
                raise TickInProgressError(f"Tick already in progress for scope {scope}") from e
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def tick(self, scope: str) -> TickReport:
        """Run one full tick for ``scope``. Only TickInProgressError escapes."""
        report = TickReport(scope=scope)
        with self._scope_lock(scope):
            report.ingested = self._step("ingest", scope, self.ingest)
            report.executed = self._step("execute", scope, self.execute_approved)
            report.jobs_advanced = self._step("encrypted jobs", scope, self.process_encrypted_jobs)
            report.recurring_emitted = self._step("recurring", scope, self.run_recurring)
        logger.info("Tick %s: %s", scope, report.to_dict())
        return report

    def _step(self, name: str, scope: str, fn: Callable[[str], int]) -> int:
        try:
            return fn(scope)
        except Exception:
            logger.exception("Tick step %s failed for scope %s", name, scope)
            return 0

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, scope: str) -> int:
        count = 0
        for line in self.source.list_pending(scope):
            try:
                label = self._ingest_line(scope, line.text)
            except Exception:
                logger.exception("Ingestion failed for line %s", line.ref)
                label = "ERROR"
            self.source.mark_consumed(line.ref, label)
            count += 1
        return count

    def _ingest_line(self, scope: str, text: str) -> str:
        try:
            parsed = compile_command(text)
        except ParseError as e:
            self._report_needs_info(scope, text, e)
            return "NEEDS_INFO"

        cid = command_id(parsed)
        if self.store.get_command(scope, cid) is not None:
            logger.info("Duplicate command %s ignored", cid)
            return "DUPLICATE"

        now = self._ts()
        record = CommandRecord(scope, cid, text.strip(), parsed, CommandStatus.NEW, now, now)
        if not self.store.insert_command(record):
            return "DUPLICATE"

        ceiling = effective_ceiling(self.config, parsed)
        intent = build_intent_mandate(scope, cid, parsed, choose_tool_plan(parsed), ceiling, now=now)
        self.store.save_intent(intent)
        self.store.update_command_status(scope, cid, CommandStatus.INTENT_CREATED, now=now)

        decision = validate_command(self.config, parsed, now=now)
        if not decision.allowed:
            self._terminate(scope, cid, CommandStatus.ABORTED, decision.reason_code, decision.message)
            return CommandStatus.ABORTED.value

        if requires_approval(self.config, parsed):
            self.store.update_command_status(scope, cid, CommandStatus.AWAITING_APPROVAL, now=now)
            self._audit(scope, f"{cid} AWAITING_APPROVAL action={parsed.kind.value} max_total={format_usdc(ceiling)}")
            return CommandStatus.AWAITING_APPROVAL.value

        self.store.update_command_status(scope, cid, CommandStatus.APPROVED, now=now)
        self._audit(
            scope,
            f"{cid} AUTO_APPROVED action={parsed.kind.value} "
            f"auto_run_under={self.config.auto_run_under_usdc:.2f}USDC",
        )
        return CommandStatus.APPROVED.value

    def _report_needs_info(self, scope: str, text: str, error: ParseError) -> None:
        fingerprint = hashlib.sha256(f"{text.strip()}|{error}".encode()).hexdigest()
        if not self.store.mark_issue_reported(scope, fingerprint, now=self._ts()):
            return
        if isinstance(error, MissingFieldsError):
            self._audit(scope, f"NEEDS_INFO {error}")
        else:
            self._audit(scope, f'NEEDS_INFO missing=[required_fields] error="{error}"')

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_approved(self, scope: str) -> int:
        count = 0
        for record in self.store.list_commands(scope, CommandStatus.APPROVED):
            self._execute_one(record)
            count += 1
        return count

    def _execute_one(self, record: CommandRecord) -> None:
        scope, cid = record.scope, record.command_id
        cart = self.store.get_cart(scope, cid)
        if cart is not None and cart.is_expired(self._now()):
            expired = ExpiredMandateError(cart.expires_at)
            self._terminate(scope, cid, CommandStatus.ABORTED, expired.reason_code, str(expired))
            return

        started_at = self._now()
        self.store.update_command_status(scope, cid, CommandStatus.EXECUTING, now=self._ts())
        handlers = {
            PayVendor: self._execute_pay_vendor,
            TreasurySwap: self._execute_treasury_swap,
            PrivatePayout: self._execute_private_payout,
            RecurringPay: self._execute_recurring_pay,
        }
        try:
            handlers[type(record.parsed)](record)
        except PolicyRejection as e:
            logger.info("Command %s aborted: %s", cid, e)
            self._terminate(scope, cid, CommandStatus.ABORTED, e.reason_code, str(e), started_at)
        except ToolError as e:
            logger.error("Tool call failed for %s: %s", cid, e)
            self._terminate(scope, cid, CommandStatus.FAILED, "TOOL_CALL_FAILED", str(e), started_at)
        except MandateVerificationError as e:
            logger.error("Mandate verification failed for %s: %s", cid, e)
            self._terminate(
                scope, cid, CommandStatus.FAILED, "MANDATE_VERIFICATION_FAILED", str(e), started_at
            )
        except Exception as e:
            logger.exception("Command %s failed", cid)
            self._terminate(scope, cid, CommandStatus.FAILED, "EXECUTION_ERROR", str(e), started_at)
        else:
            self.memory.record_outcome(scope, cid, CommandStatus.DONE, started_at)

    def _execute_pay_vendor(self, record: CommandRecord) -> None:
        scope, cid = record.scope, record.command_id
        cmd: PayVendor = record.parsed
        ceiling = effective_ceiling(self.config, cmd)
        command_spend = self.store.command_spend(scope, cid)
        daily_spend = self._daily_spend(scope)

        if self.advisor is not None:
            tools = self.advisor.discover_tools(self.config.tools_base_url)
            plan = self.advisor.plan(
                cmd,
                tools,
                self._remaining(scope, cid, ceiling),
                daily_spend,
                len(self.store.list_commands(scope, CommandStatus.DONE)),
                vendor_history=self.memory.vendor_history(scope, cmd.vendor, exclude=cid),
            )
            self.store.add_receipt(scope, cid, ReceiptKind.AGENT_PLAN, plan.to_dict(), now=self._ts())
            tool_plan = plan.tool_plan
        else:
            intent = self.store.get_intent(scope, cid)
            tool_plan = intent.tool_plan if intent is not None else choose_tool_plan(cmd)

        estimate = estimate_cost(tool_plan)
        decision = evaluate(
            self.config, cmd, command_spend, daily_spend, estimate, tool_plan, now=self._now()
        )
        if not decision.allowed:
            raise PolicyRejection(decision.reason_code, decision.message)

        results = [self._run_tool(record, tool, ceiling) for tool in tool_plan]

        if self.advisor is not None:
            reflection = self.advisor.reflect(cmd, results, self._remaining(scope, cid, ceiling))
            self._record_reflection(record, reflection)
            if reflection.action == ReflectionAction.CALL_MORE_TOOLS:
                results.extend(self._run_additional_tools(record, reflection.additional_tools, ceiling))

        amount = amount_usdc_to_units(cmd.amount)
        tx_reference = self.wallet.transfer(cmd.to, amount)
        try:
            confirmation = self.wallet.wait_for_confirmation(tx_reference)
        except Exception as e:
            logger.warning("Confirmation lookup failed for %s: %s", tx_reference, e)
            confirmation = Confirmation("unknown")

        spend_total = self.store.command_spend(scope, cid)
        self.store.add_receipt(
            scope,
            cid,
            ReceiptKind.SETTLEMENT,
            {
                "txHash": tx_reference,
                "settlementStatus": confirmation.status,
                "blockRef": confirmation.block_ref,
                "confirmations": confirmation.confirmations,
                "outcome": "PAYOUT_EXECUTED",
                "vendor": cmd.vendor,
                "to": cmd.to,
                "amountUsdc": plain_decimal(cmd.amount),
                "ref": cmd.ref,
                "spendTotalUsdc": units_to_usdc_float(spend_total),
                "toolsCalled": [r.tool_name for r in results],
            },
            reason_code="PAYOUT_EXECUTED",
            now=self._ts(),
        )
        self.store.update_command_status(scope, cid, CommandStatus.DONE, now=self._ts())
        block = f" block={confirmation.block_ref}" if confirmation.block_ref else ""
        self._audit(scope, f"{cid} DONE payout_tx={tx_reference}{block} spend={format_usdc(spend_total)}")

    def _run_additional_tools(
        self,
        record: CommandRecord,
        tools: list[ToolPlanItem],
        ceiling: int,
    ) -> list[ToolReceipt]:
        results = []
        for tool in tools:
            if tool.tool_name not in self.config.tool_allowlist:
                logger.warning("Skipping additional tool %s: not allowlisted", tool.tool_name)
                continue
            if tool.price_units > self._remaining(record.scope, record.command_id, ceiling):
                logger.warning("Skipping additional tool %s: over remaining budget", tool.tool_name)
                continue
            try:
                results.append(self._run_tool(record, tool, ceiling))
            except (ToolError, BudgetExceededError) as e:
                logger.warning("Additional tool %s failed, skipping: %s", tool.tool_name, e)
        return results

    def _record_reflection(self, record: CommandRecord, reflection: Reflection, **extra: Any) -> None:
        self.store.add_receipt(
            record.scope,
            record.command_id,
            ReceiptKind.AGENT_REFLECTION,
            {**reflection.to_dict(), **extra},
            now=self._ts(),
        )
        if reflection.action == ReflectionAction.ABORT:
            raise PolicyRejection("AGENT_REFLECTION_ABORT", reflection.reasoning)

    def _execute_treasury_swap(self, record: CommandRecord) -> None:
        scope, cid = record.scope, record.command_id
        cmd: TreasurySwap = record.parsed
        ceiling = effective_ceiling(self.config, cmd)
        command_spend = self.store.command_spend(scope, cid)
        daily_spend = self._daily_spend(scope)

        decision = evaluate(self.config, cmd, command_spend, daily_spend, 0, [], now=self._now())
        if not decision.allowed:
            raise PolicyRejection(decision.reason_code, decision.message)

        if self.advisor is not None:
            plan = self.advisor.plan(
                cmd,
                self.advisor.discover_tools(self.config.tools_base_url),
                self._remaining(scope, cid, ceiling),
                daily_spend,
            )
            self.store.add_receipt(scope, cid, ReceiptKind.AGENT_PLAN, plan.to_dict(), now=self._ts())
            research = [t for t in plan.tool_plan if t.tool_name == "price-check"]
        else:
            research = choose_tool_plan(cmd)

        price_data: dict[str, Any] = {}
        price_receipt: Optional[ToolReceipt] = None
        for tool in research:
            research_decision = evaluate(
                self.config, cmd, command_spend, daily_spend, tool.price_units, [tool], now=self._now()
            )
            if not research_decision.allowed:
                raise PolicyRejection(research_decision.reason_code, research_decision.message)
            try:
                price_receipt = self._run_tool(record, tool, ceiling)
            except (ToolError, BudgetExceededError) as e:
                logger.warning("Price research failed, proceeding anyway: %s", e)
                continue
            body = price_receipt.body if isinstance(price_receipt.body, dict) else {}
            price_data = body.get("result") if isinstance(body.get("result"), dict) else body
            self._audit(
                scope,
                f"{cid} RESEARCH price_check: {cmd.to_token} at {price_data.get('price', '?')} "
                f"({price_data.get('change24h', '?')}%) {price_data.get('recommendation', 'PROCEEDING')}",
            )

        if self.advisor is not None and price_receipt is not None and price_data.get("price"):
            reflection = self.advisor.reflect(cmd, [price_receipt], self._remaining(scope, cid, ceiling))
            self._record_reflection(record, reflection, priceData=price_data)

        swap = self.swap_venue.swap(cmd.amount, cmd.max_spend, cmd.slippage_bps)

        quote: dict[str, Any] = {"estimatedOut": None, "minOut": None, "source": "none"}
        price = price_data.get("price")
        if isinstance(price, (int, float, str)) and str(price) not in {"", "0"}:
            try:
                quote = {**swap_quote(cmd.amount, Decimal(str(price)), cmd.slippage_bps), "source": "price-check"}
            except (ValueError, InvalidOperation) as e:
                logger.warning("Could not quote swap from price %r: %s", price, e)

        now = self._ts()
        self.store.add_swap_trade(SwapTrade(scope, cid, swap.tx_reference, swap.venue, swap.chain, swap.details, now))
        self.store.add_receipt(
            scope,
            cid,
            ReceiptKind.DEFI,
            {
                "txHash": swap.tx_reference,
                "chain": swap.chain,
                "venue": swap.venue,
                "reasonCodes": swap.reason_codes,
                "priceResearch": price_data,
                "riskControls": {
                    "slippageBps": cmd.slippage_bps,
                    "maxSpendUsdc": plain_decimal(cmd.max_spend),
                    "policyMaxSlippage": self.config.max_slippage_bps,
                },
                "quote": quote,
                "details": swap.details,
            },
            reason_code="SWAP_EXECUTED",
            now=now,
        )
        self.store.update_command_status(scope, cid, CommandStatus.DONE, now=now)
        self._audit(scope, f"{cid} DONE defi_tx={swap.tx_reference}")

    def _execute_private_payout(self, record: CommandRecord) -> None:
        scope, cid = record.scope, record.command_id
        cmd: PrivatePayout = record.parsed
        decision = evaluate(
            self.config, cmd, self.store.command_spend(scope, cid), self._daily_spend(scope), 0, [],
            now=self._now(),
        )
        if not decision.allowed:
            raise PolicyRejection(decision.reason_code, decision.message)

        job = self.store.get_job_for_command(scope, cid)
        if job is None:
            job = self.settlement_queue.create_job(
                scope, cid, cmd.to, amount_usdc_to_units(cmd.amount), cmd.unlock_at
            )
            job = self.store.insert_job(job)

        self.store.add_receipt(
            scope,
            cid,
            ReceiptKind.ENCRYPTED,
            {
                "jobId": job.job_id,
                "status": JobStatus(job.status).value,
                "unlockAt": cmd.unlock_at,
                "to": cmd.to,
                "amountUsdc": plain_decimal(cmd.amount),
            },
            reason_code="ENCRYPTED_PENDING",
            now=self._ts(),
        )
        self._audit(scope, f"{cid} ENCRYPTED_PENDING job={job.job_id} unlockAt={cmd.unlock_at}")

    def _execute_recurring_pay(self, record: CommandRecord) -> None:
        scope, cid = record.scope, record.command_id
        cmd: RecurringPay = record.parsed
        now = self._ts()
        rule = self.recurring.add_rule(scope, rule_from_command(scope, cid, cmd, now))
        self.store.add_receipt(
            scope, cid, ReceiptKind.RECURRING, rule.to_dict(), reason_code="RULE_REGISTERED", now=now
        )
        self.store.update_command_status(scope, cid, CommandStatus.DONE, now=now)
        self._audit(scope, f"{cid} DONE recurring_rule={rule.rule_id} every={rule.frequency}")

    def _run_tool(self, record: CommandRecord, tool: ToolPlanItem, ceiling: int) -> ToolReceipt:
        scope, cid = record.scope, record.command_id
        self.store.save_payment_mandate(build_payment_mandate(scope, cid, tool, now=self._now()))

        trace_id = f"trace_{cid}_{tool.tool_name}"
        result = self.tool_client.call(
            self.config.tools_base_url.rstrip("/") + tool.endpoint,
            _tool_body(record, tool),
            tool_name=tool.tool_name,
            trace_id=trace_id,
            remaining_budget=self._remaining(scope, cid, ceiling),
            expected_price=tool.price_units,
        )
        receipt = result.receipt
        self.store.add_tool_receipt(scope, cid, receipt)
        if receipt.payment_attempted and receipt.succeeded and receipt.cost > 0:
            self.store.add_spend(SpendEntry(scope, cid, "tool", receipt.cost, "x402", trace_id, self._ts()))
        self.store.add_receipt(
            scope,
            cid,
            ReceiptKind.TOOL,
            {
                "toolName": tool.tool_name,
                "traceId": trace_id,
                "initialStatus": receipt.initial_status,
                "finalStatus": receipt.final_status,
                "paymentAttempted": receipt.payment_attempted,
                "costUsdc": units_to_usdc_float(receipt.cost),
            },
            now=self._ts(),
        )
        if not receipt.succeeded:
            raise ToolCallFailure(tool.tool_name, receipt.final_status, "non-success response after payment")

        spent = self.store.command_spend(scope, cid)
        if spent > ceiling:
            raise BudgetExceededError(spent, ceiling)
        return receipt

    # ------------------------------------------------------------------
    # Encrypted jobs and recurring rules
    # ------------------------------------------------------------------

    def process_encrypted_jobs(self, scope: str) -> int:
        advanced = 0
        for job in self.store.list_jobs(scope, [JobStatus.PENDING, JobStatus.SUBMITTED]):
            record = self.store.get_command(scope, job.command_id)
            if record is None or record.is_terminal:
                logger.info("Skipping job %s: command is no longer executing", job.job_id)
                continue
            try:
                result = self.settlement_queue.advance(job)
            except Exception:
                logger.exception("Advancing job %s failed", job.job_id)
                continue
            if result.job != job:
                self.store.update_job(result.job)

            if result.phase == AdvancePhase.SUBMITTED:
                advanced += 1
                self.store.add_receipt(
                    scope, job.command_id, ReceiptKind.ENCRYPTED,
                    {"jobId": job.job_id, "status": "SUBMITTED", "txHash": result.tx_reference},
                    reason_code="ENCRYPTED_SUBMITTED", now=self._ts(),
                )
                self._audit(scope, f"{job.command_id} ENCRYPTED_SUBMITTED tx={result.tx_reference}")
            elif result.phase == AdvancePhase.DECRYPTED:
                advanced += 1
                self.store.add_receipt(
                    scope, job.command_id, ReceiptKind.ENCRYPTED,
                    {
                        "jobId": job.job_id,
                        "status": "DECRYPTED",
                        "txHash": result.tx_reference,
                        "decrypted": result.decrypted_payload,
                    },
                    reason_code="ENCRYPTED_DECRYPTED", now=self._ts(),
                )
                self._set_status(scope, job.command_id, CommandStatus.DONE)
                self.memory.record_outcome(scope, job.command_id, CommandStatus.DONE)
                self._audit(scope, f"{job.command_id} ENCRYPTED_DECRYPTED tx={result.tx_reference}")
            elif result.phase == AdvancePhase.FAILED:
                advanced += 1
                try:
                    self._terminate(
                        scope, job.command_id, CommandStatus.FAILED, "ENCRYPTED_JOB_FAILED",
                        result.error or "Encrypted job failed",
                    )
                except InvalidTransitionError as e:
                    logger.warning("Could not fail command %s: %s", job.command_id, e)
        return advanced

    def run_recurring(self, scope: str) -> int:
        emitted = 0
        for rule in self.recurring.due(scope):
            try:
                self.source.append(scope, rule.command_text())
                self.recurring.mark_ran(rule)
            except Exception:
                logger.exception("Recurring rule %s could not be emitted", rule.rule_id)
                continue
            emitted += 1
            self._audit(
                scope,
                f"SCHEDULER RECURRING_TRIGGERED rule={rule.rule_id} vendor={rule.vendor} "
                f"amount={plain_decimal(rule.amount)}",
            )
        return emitted

    # ------------------------------------------------------------------
    # Operator entry points
    # ------------------------------------------------------------------

    def request_approval(
        self,
        scope: str,
        command_id: str,
        signer: Optional[ApprovalSigner] = None,
    ) -> ApprovalResult:
        """Build the cart, have it signed, verify the signature and approve."""
        signer = signer or self.approver
        if signer is None:
            return ApprovalResult(False, error="No approval signer configured")

        record = self._require_command(scope, command_id)
        has_cart = self.store.get_cart(scope, command_id) is not None
        if record.status != CommandStatus.AWAITING_APPROVAL and not (
            record.status == CommandStatus.APPROVED and not has_cart
        ):
            return ApprovalResult(False, error=f"Command is {record.status.value}, not awaiting approval")

        intent = self.store.get_intent(scope, command_id)
        if intent is None:
            return ApprovalResult(False, error="Intent mandate missing")

        now = self._now()
        cart = build_cart_mandate(
            intent,
            ttl_seconds=self.config.cart_ttl_seconds,
            chain_id=self.config.ap2_chain_id,
            now=now,
        )
        if cart.is_expired(now):
            expired = ExpiredMandateError(cart.expires_at)
            self._terminate(scope, command_id, CommandStatus.ABORTED, expired.reason_code, str(expired))
            return ApprovalResult(False, error=expired.reason_code)

        try:
            signed = sign_cart(cart, signer)
        except MandateVerificationError as e:
            logger.error("Cart signature rejected for %s: %s", command_id, e)
            if record.status == CommandStatus.AWAITING_APPROVAL:
                self._terminate(
                    scope, command_id, CommandStatus.FAILED, "MANDATE_VERIFICATION_FAILED", str(e)
                )
            return ApprovalResult(False, error=str(e))

        self.store.save_cart(signed)
        self.store.update_intent_status(intent.id, IntentStatus.APPROVED.value)
        if record.status == CommandStatus.AWAITING_APPROVAL:
            self.store.update_command_status(scope, command_id, CommandStatus.APPROVED, now=self._ts())
        self.store.add_receipt(
            scope,
            command_id,
            ReceiptKind.APPROVAL,
            {"cartId": signed.id, "signer": signed.signer_address, "expiresAt": signed.expires_at},
            reason_code="APPROVED",
            now=self._ts(),
        )
        self._audit(scope, f"{command_id} APPROVED signer={signed.signer_address}")
        return ApprovalResult(True, signed.signer_address)

    def simulate_abort(
        self,
        scope: str,
        command_id: str,
        reason: str = "MANUAL_FAILURE_SIMULATION",
    ) -> CommandRecord:
        self._require_command(scope, command_id)
        return self._terminate(scope, command_id, CommandStatus.ABORTED, reason, "Aborted by operator")

    def get_trace(self, scope: str, command_id: str) -> dict[str, Any]:
        record = self._require_command(scope, command_id)
        intent = self.store.get_intent(scope, command_id)
        cart = self.store.get_cart(scope, command_id)
        job = self.store.get_job_for_command(scope, command_id)
        return {
            "command": record.to_dict(),
            "intent": intent.to_dict() if intent else None,
            "cart": cart.to_dict() if cart else None,
            "payment_mandates": [m.to_dict() for m in self.store.list_payment_mandates(scope, command_id)],
            "receipts": [r.to_dict() for r in self.store.list_receipts(scope, command_id)],
            "tool_receipts": [r.to_dict() for r in self.store.list_tool_receipts(scope, command_id)],
            "spend": [e.to_dict() for e in self.store.list_spend(scope, command_id)],
            "encrypted_job": job.to_dict() if job else None,
            "swap_trades": [t.to_dict() for t in self.store.list_swap_trades(scope, command_id)],
        }

    def spend_summary(self, scope: str, command_id: str) -> dict[str, Any]:
        record = self._require_command(scope, command_id)
        ceiling = effective_ceiling(self.config, record.parsed)
        total = self.store.command_spend(scope, command_id)
        daily = self._daily_spend(scope)
        return {
            "command_id": command_id,
            "total": total,
            "total_usdc": units_to_usdc_float(total),
            "ceiling": ceiling,
            "remaining": self._remaining(scope, command_id, ceiling),
            "daily_spend": daily,
            "daily_limit": self.config.daily_limit_units,
            "tool_receipts": [
                {
                    "tool_name": r.tool_name,
                    "trace_id": r.trace_id,
                    "cost": r.cost,
                    "final_status": r.final_status,
                    "payment_attempted": r.payment_attempted,
                }
                for r in self.store.list_tool_receipts(scope, command_id)
            ],
        }

    def list_commands(self, scope: str, status: Optional[CommandStatus | str] = None) -> list[CommandRecord]:
        return self.store.list_commands(scope, status)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_command(self, scope: str, command_id: str) -> CommandRecord:
        record = self.store.get_command(scope, command_id)
        if record is None:
            raise CommandNotFoundError(f"Command not found: {scope}/{command_id}")
        return record

    def _daily_spend(self, scope: str) -> int:
        return self.store.scope_spend_since(scope, utc_day_start(self._now()))

    def _remaining(self, scope: str, command_id: str, ceiling: int) -> int:
        command_left = ceiling - self.store.command_spend(scope, command_id)
        daily_left = self.config.daily_limit_units - self._daily_spend(scope)
        return max(0, min(command_left, daily_left))

    def _set_status(self, scope: str, command_id: str, status: CommandStatus) -> None:
        try:
            self.store.update_command_status(scope, command_id, status, now=self._ts())
        except InvalidTransitionError as e:
            logger.warning("Status change for %s skipped: %s", command_id, e)

    def _terminate(
        self,
        scope: str,
        command_id: str,
        status: CommandStatus,
        reason_code: str,
        message: str,
        started_at: Optional[float] = None,
    ) -> CommandRecord:
        """Move to ABORTED/FAILED with one ABORT receipt, one audit line and an outcome memory."""
        record = self.store.update_command_status(
            scope, command_id, status, last_error=message, now=self._ts()
        )
        self.store.add_receipt(
            scope,
            command_id,
            ReceiptKind.ABORT,
            {"reasonCode": reason_code, "message": message, "status": status.value},
            reason_code=reason_code,
            now=self._ts(),
        )
        self._audit(scope, f"{command_id} {status.value} reason={reason_code}")
        self.memory.record_outcome(scope, command_id, status, started_at, notes=message)
        return record

    def _audit(self, scope: str, text: str) -> None:
        self.audit.append_line(scope, f"{AUDIT_PREFIX} {text}")


def _tool_body(record: CommandRecord, tool: ToolPlanItem) -> dict[str, Any]:
    cmd: ParsedCommand = record.parsed
    body: dict[str, Any] = {"commandId": record.command_id, "tool": tool.tool_name}
    if isinstance(cmd, PayVendor):
        body.update({"vendor": cmd.vendor, "amountUsdc": plain_decimal(cmd.amount), "to": cmd.to})
    elif isinstance(cmd, TreasurySwap):
        body.update({"token": cmd.to_token, "base": "USDC"})
    return body


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_orchestrator(
    config: OrchestratorConfig,
    env: Optional[Mapping[str, str]] = None,
    source: Optional[CommandSource] = None,
    approver: Optional[ApprovalSigner] = None,
    now: Callable[[], float] = time.time,
) -> Orchestrator:
    """Assemble an orchestrator from config; live mode needs RPC and keys."""
    env = os.environ if env is None else env
    executor_key = env.get(EXECUTOR_KEY_ENV)

    if config.live:
        missing = config.validate_live(env)
        if missing:
            raise ConfigError(f"Live mode requires: {', '.join(missing)}")
        wallet: SettlementWallet = RpcSettlementWallet(
            config.rpc_url, executor_key, config.usdc_address, config.chain_id
        )
        authority = RpcDecryptionAuthority(config.rpc_url, executor_key, config.chain_id)
    else:
        wallet = DryRunWallet()
        authority = DryRunDecryptionAuthority(config.usdc_address)

    payer = X402Payer.from_private_key(executor_key, config.network) if executor_key else None
    tool_client = BudgetedToolClient(
        HttpxToolTransport(timeout=config.timeout_seconds),
        payer,
        max_attempts=config.retry_attempts,
        base_delay=config.retry_base_delay,
        now=now,
    )
    if approver is None and env.get(APPROVER_KEY_ENV):
        approver = LocalApprovalSigner(env[APPROVER_KEY_ENV])

    store = Store(config.db_path)
    return Orchestrator(
        config=config,
        store=store,
        source=source or FileCommandSource(config.inbox_dir),
        audit=AuditTrail(config.audit_path, config.audit_key_path, now=now),
        tool_client=tool_client,
        wallet=wallet,
        settlement_queue=ConditionalSettlementQueue(authority, now=now, token_address=config.usdc_address),
        advisor=Advisor(timeout=config.timeout_seconds),
        recurring=RecurringScheduler(store, now=now),
        approver=approver,
        now=now,
    )
