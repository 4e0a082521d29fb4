"""
Quartermaster CLI — Budgeted payment orchestration for agent commands.

Commands:
    quartermaster submit    Queue a raw command line for a scope
    quartermaster tick      Run one tick (or loop)
    quartermaster approve   Sign a command's cart mandate
    quartermaster abort     Abort a command
    quartermaster trace     Show everything recorded for a command
    quartermaster spend     Show a command's spend against its ceilings
    quartermaster list      List commands for a scope
    quartermaster rules     List recurring rules for a scope
    quartermaster audit     View the audit trail
    quartermaster demo      Run the end-to-end demo scenarios
"""

from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
from eth_account import Account

from .audit import AuditTrail
from .commands import CommandStatus, format_utc_timestamp
from .config import APPROVER_KEY_ENV, OrchestratorConfig
from .errors import QuartermasterError, TickInProgressError
from .mandate import LocalApprovalSigner
from .money import format_usdc
from .orchestrator import Orchestrator, build_orchestrator
from .recurring import RecurringScheduler
from .sandbox import SANDBOX_BASE_URL, SandboxPayer, SandboxToolServer
from .settlement import ConditionalSettlementQueue, DryRunDecryptionAuthority
from .sources import FileCommandSource, InMemoryCommandSource
from .store import ReceiptKind, Store
from .wallet import DryRunWallet
from .x402_client import BudgetedToolClient, HttpxToolTransport


def _config(ctx: click.Context) -> OrchestratorConfig:
    return ctx.obj["config"]


def _orchestrator(ctx: click.Context) -> Orchestrator:
    if "orchestrator" not in ctx.obj:
        try:
            ctx.obj["orchestrator"] = build_orchestrator(_config(ctx))
        except QuartermasterError as e:
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)
    return ctx.obj["orchestrator"]


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string")
    int(candidate, 16)
    return "0x" + candidate


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="State directory (default: QM_DATA_DIR or ~/.quartermaster)")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log at debug level")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[Path], verbose: bool):
    """Quartermaster — Budgeted payment orchestration for agent commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        try:
            config = OrchestratorConfig.from_env()
        except QuartermasterError as e:
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)
        if data_dir is not None:
            config.data_dir = data_dir
        ctx.obj["config"] = config


@main.command()
@click.argument("scope")
@click.argument("text")
@click.pass_context
def submit(ctx: click.Context, scope: str, text: str):
    """Queue a raw command line for SCOPE."""
    source = FileCommandSource(_config(ctx).inbox_dir)
    try:
        ref = source.append(scope, text)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Queued {ref}")


@main.command()
@click.argument("scope")
@click.option("--loop", is_flag=True, default=False, help="Keep ticking until interrupted")
@click.option("--interval", type=float, default=None, help="Seconds between ticks (with --loop)")
@click.pass_context
def tick(ctx: click.Context, scope: str, loop: bool, interval: Optional[float]):
    """Run one tick for SCOPE."""
    orch = _orchestrator(ctx)
    interval = interval if interval is not None else _config(ctx).tick_interval_seconds
    while True:
        try:
            report = orch.tick(scope)
        except TickInProgressError as e:
            click.echo(f"⏭️  Skipped: {e}")
        else:
            click.echo(
                f"✅ Tick {scope}: ingested {report.ingested}, executed {report.executed}, "
                f"jobs {report.jobs_advanced}, recurring {report.recurring_emitted}"
            )
        if not loop:
            return
        try:
            time.sleep(interval)
        except KeyboardInterrupt:
            click.echo("Stopped.")
            return


@main.command()
@click.argument("scope")
@click.argument("command_id")
@click.pass_context
def approve(ctx: click.Context, scope: str, command_id: str):
    """Sign COMMAND_ID's cart mandate and approve it.

    The approver key is read from QM_APPROVER_PRIVATE_KEY or a hidden prompt, never from argv.
    """
    orch = _orchestrator(ctx)
    approver_key = os.getenv(APPROVER_KEY_ENV) or click.prompt("Approver private key", hide_input=True)
    try:
        signer = LocalApprovalSigner(_resolve_private_key(approver_key))
        result = orch.request_approval(scope, command_id, signer)
    except (ValueError, QuartermasterError) as e:
        click.echo(f"❌ Approval failed: {e}", err=True)
        sys.exit(1)
    if not result.approved:
        click.echo(f"❌ Not approved: {result.error}", err=True)
        sys.exit(1)
    click.echo(f"✅ Approved {command_id}")
    click.echo(f"   Signer: {result.signer_address}")


@main.command()
@click.argument("scope")
@click.argument("command_id")
@click.option("--reason", default="MANUAL_FAILURE_SIMULATION", help="Reason code to record")
@click.pass_context
def abort(ctx: click.Context, scope: str, command_id: str, reason: str):
    """Abort COMMAND_ID."""
    try:
        record = _orchestrator(ctx).simulate_abort(scope, command_id, reason)
    except QuartermasterError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ {record.command_id} is {record.status.value} ({reason})")


@main.command()
@click.argument("scope")
@click.argument("command_id")
@click.pass_context
def trace(ctx: click.Context, scope: str, command_id: str):
    """Print everything recorded for COMMAND_ID as JSON."""
    try:
        data = _orchestrator(ctx).get_trace(scope, command_id)
    except QuartermasterError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(data, indent=2, default=str))


@main.command()
@click.argument("scope")
@click.argument("command_id")
@click.pass_context
def spend(ctx: click.Context, scope: str, command_id: str):
    """Show COMMAND_ID's tool spend against its ceilings."""
    try:
        summary = _orchestrator(ctx).spend_summary(scope, command_id)
    except QuartermasterError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"💰 Spend for {command_id}")
    click.echo(f"   Spent:     {format_usdc(summary['total'])} of {format_usdc(summary['ceiling'])}")
    click.echo(f"   Remaining: {format_usdc(summary['remaining'])}")
    click.echo(f"   Today:     {format_usdc(summary['daily_spend'])} of {format_usdc(summary['daily_limit'])}")
    for r in summary["tool_receipts"]:
        paid = "paid" if r["payment_attempted"] else "free"
        click.echo(f"   {r['tool_name']:<18} {r['final_status']} {paid} {format_usdc(r['cost'])}")


@main.command("list")
@click.argument("scope")
@click.option("--status", type=click.Choice([s.value for s in CommandStatus]), default=None)
@click.pass_context
def list_cmd(ctx: click.Context, scope: str, status: Optional[str]):
    """List commands for SCOPE."""
    records = _orchestrator(ctx).list_commands(scope, status)
    if not records:
        click.echo("No commands found.")
        return
    for r in records:
        err = f"  ({r.last_error})" if r.last_error else ""
        click.echo(f"  {r.command_id}  {r.status.value:<17} {r.parsed.kind.value:<14} "
                   f"{format_utc_timestamp(r.created_at)}{err}")


@main.command()
@click.argument("scope")
@click.pass_context
def rules(ctx: click.Context, scope: str):
    """List recurring rules for SCOPE."""
    items = _orchestrator(ctx).recurring.list_rules(scope)
    if not items:
        click.echo("No recurring rules.")
        return
    for rule in items:
        state = "✅" if rule.enabled else "⏸️ "
        click.echo(f"  {state} {rule.rule_id}  {rule.vendor} {rule.amount} USDC {rule.frequency} "
                   f"next {format_utc_timestamp(rule.next_run_at)} runs {rule.run_count}")


@main.command()
@click.option("--scope", default=None, help="Only lines for this scope")
@click.option("--limit", type=int, default=20, help="Number of lines")
@click.pass_context
def audit(ctx: click.Context, scope: Optional[str], limit: int):
    """View the audit trail."""
    config = _config(ctx)
    trail = AuditTrail(config.audit_path, config.audit_key_path)
    try:
        events = trail.read_lines(scope=scope, limit=limit)
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if not events:
        click.echo("No audit lines found.")
        return
    for event in events:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(event.timestamp))
        click.echo(f"  {ts} [{event.scope}] {event.text}")


# ── Demo ──────────────────────────────────────────────────────────

class _DemoClock:
    def __init__(self, start: float):
        self.value = start

    def __call__(self) -> float:
        return self.value


def _demo_orchestrator(data_dir: Path, clock: _DemoClock) -> tuple[Orchestrator, SandboxToolServer]:
    config = OrchestratorConfig(data_dir=data_dir, tools_base_url=SANDBOX_BASE_URL, retry_base_delay=0.0)
    server = SandboxToolServer()
    store = Store(config.db_path)
    orch = Orchestrator(
        config=config,
        store=store,
        source=InMemoryCommandSource(),
        audit=AuditTrail(config.audit_path, config.audit_key_path, now=clock),
        tool_client=BudgetedToolClient(
            HttpxToolTransport(client=server.client()),
            SandboxPayer(config.network),
            base_delay=0.0,
            sleep=lambda _: None,
            now=clock,
        ),
        wallet=DryRunWallet(),
        settlement_queue=ConditionalSettlementQueue(DryRunDecryptionAuthority(), now=clock),
        recurring=RecurringScheduler(store, now=clock),
        approver=LocalApprovalSigner("0x" + bytes(Account.create().key).hex()),
        now=clock,
    )
    return orch, server


@main.command()
def demo():
    """Run scenarios A–E against an in-process tool server."""
    click.echo("🎬 Quartermaster Demo — Budgeted Command Flow")
    click.echo("=" * 50)

    clock = _DemoClock(time.time())
    with tempfile.TemporaryDirectory(prefix="quartermaster-demo-") as tmp:
        orch, server = _demo_orchestrator(Path(tmp), clock)
        scope = "demo"
        payee = "0x" + "a" * 40
        past = format_utc_timestamp(clock() - 3600)
        unlock = format_utc_timestamp(clock() + 60)

        other = "0x" + "b" * 40
        scenarios = [
            ("A", "Vendor payout within budget",
             f"PAY_VENDOR ACME 200 USDC TO {payee} MAX_TOTAL 2", CommandStatus.DONE),
            ("B", "Vendor payout over tool budget",
             f"PAY_VENDOR ACME 200 USDC TO {payee} MAX_TOTAL 0.5", CommandStatus.ABORTED),
            ("C", "Swap above slippage ceiling",
             "TREASURY_SWAP 25 USDC TO WETH SLIPPAGE 250 MAX_SPEND 30", CommandStatus.ABORTED),
            ("D", "Private payout unlocking in the past",
             f"PRIVATE_PAYOUT 50 USDC TO {other} AT {past}", CommandStatus.ABORTED),
            ("E", "Private payout unlocking in 60s",
             f"PRIVATE_PAYOUT 3 USDC TO {other} AT {unlock}", CommandStatus.DONE),
        ]

        click.echo("\n1️⃣  Ingesting commands...")
        for _, _, text, _ in scenarios:
            orch.source.append(scope, text)
        orch.ingest(scope)

        click.echo("\n2️⃣  Approving commands that need a signature...")
        for record in orch.list_commands(scope, CommandStatus.AWAITING_APPROVAL):
            result = orch.request_approval(scope, record.command_id)
            click.echo(f"   {'✅' if result.approved else '❌'} {record.command_id} {result.error or ''}")

        click.echo("\n3️⃣  Ticking...")
        orch.tick(scope)
        clock.value += 61
        orch.tick(scope)
        orch.tick(scope)

        click.echo("\n4️⃣  Outcomes...")
        records = orch.list_commands(scope)
        for (label, desc, _, expected), record in zip(scenarios, records):
            ok = record.status == expected
            reason = f" ({record.last_error})" if record.last_error else ""
            click.echo(f"   {'✅' if ok else '❌'} {label}: {desc} → {record.status.value}{reason}")
            spent = orch.store.command_spend(scope, record.command_id)
            if spent:
                settled = orch.store.list_receipts(scope, record.command_id, ReceiptKind.SETTLEMENT)
                click.echo(f"      tools {format_usdc(spent)}, settlement receipts {len(settled)}")

        click.echo(f"\n   Paid tool calls: {sum(1 for r in server.requests if r['paid'])}")

        click.echo("\n5️⃣  Audit trail...")
        for event in orch.audit.read_lines(scope=scope, limit=20):
            click.echo(f"   {event.text}")

    click.echo("\n✅ Demo complete!")


if __name__ == "__main__":
    main()
