"""Shared fixtures: a fixed clock, a sandbox tool server and a wired orchestrator."""

import pytest
from eth_account import Account

from quartermaster.audit import AuditTrail
from quartermaster.commands import format_utc_timestamp
from quartermaster.config import OrchestratorConfig
from quartermaster.mandate import LocalApprovalSigner
from quartermaster.orchestrator import Orchestrator
from quartermaster.recurring import RecurringScheduler
from quartermaster.sandbox import SANDBOX_BASE_URL, SandboxPayer, SandboxToolServer
from quartermaster.settlement import ConditionalSettlementQueue, DryRunDecryptionAuthority
from quartermaster.sources import InMemoryCommandSource
from quartermaster.store import Store
from quartermaster.wallet import DryRunWallet
from quartermaster.x402_client import BudgetedToolClient, HttpxToolTransport

# 2026-03-01T12:00:00Z
START = 1772366400


class Clock:
    def __init__(self, start: float = START):
        self.value = float(start)

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds

    def iso(self, offset: float = 0) -> str:
        return format_utc_timestamp(self.value + offset)


@pytest.fixture(autouse=True)
def audit_key(monkeypatch):
    monkeypatch.setenv("QM_AUDIT_HMAC_KEY", "test-audit-key")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def config(tmp_path):
    return OrchestratorConfig(
        data_dir=tmp_path / "qm",
        tools_base_url=SANDBOX_BASE_URL,
        retry_base_delay=0.0,
    )


@pytest.fixture
def store(config):
    return Store(config.db_path)


@pytest.fixture
def server():
    return SandboxToolServer()


@pytest.fixture
def approver():
    return LocalApprovalSigner("0x" + bytes(Account.create().key).hex())


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_orchestrator(config, store, server, clock, approver, sleeps):
    """Build an orchestrator; keyword arguments replace any component."""

    def build(**overrides):
        components = dict(
            config=config,
            store=store,
            source=InMemoryCommandSource(),
            audit=AuditTrail(config.audit_path, config.audit_key_path, now=clock),
            tool_client=BudgetedToolClient(
                HttpxToolTransport(client=server.client()),
                SandboxPayer(config.network),
                base_delay=0.0,
                sleep=sleeps.append,
                now=clock,
            ),
            wallet=DryRunWallet(),
            settlement_queue=ConditionalSettlementQueue(DryRunDecryptionAuthority(), now=clock),
            recurring=RecurringScheduler(store, now=clock),
            approver=approver,
            now=clock,
        )
        components.update(overrides)
        return Orchestrator(**components)

    return build


@pytest.fixture
def orch(make_orchestrator):
    return make_orchestrator()

