"""
Quartermaster — Budgeted payment orchestration for agent commands.

Operator text becomes a typed command, every paid call is checked against
hard ceilings, and every outcome leaves a receipt:
Command → Policy → Signed mandate → Paid tools → Settlement → Audit trail.
"""

__version__ = "0.1.0"

from .commands import (
    CommandKind,
    CommandRecord,
    CommandStatus,
    PayVendor,
    PrivatePayout,
    RecurringPay,
    TreasurySwap,
    command_id,
    compile_command,
)
from .config import Network, OrchestratorConfig
from .policy import PolicyDecision, ToolPlanItem, evaluate, validate_command
from .mandate import (
    CartMandate,
    IntentMandate,
    LocalApprovalSigner,
    PaymentMandate,
    build_cart_mandate,
    build_intent_mandate,
    verify_cart_signature,
)
from .x402_client import BudgetedToolClient, HttpxToolTransport, ToolReceipt, X402Payer
from .settlement import ConditionalSettlementQueue, EncryptedJob, JobStatus
from .store import Store
from .audit import AuditTrail
from .orchestrator import Orchestrator, build_orchestrator

__all__ = [
    "CommandKind", "CommandRecord", "CommandStatus",
    "PayVendor", "PrivatePayout", "RecurringPay", "TreasurySwap",
    "command_id", "compile_command",
    "Network", "OrchestratorConfig",
    "PolicyDecision", "ToolPlanItem", "evaluate", "validate_command",
    "CartMandate", "IntentMandate", "PaymentMandate", "LocalApprovalSigner",
    "build_cart_mandate", "build_intent_mandate", "verify_cart_signature",
    "BudgetedToolClient", "HttpxToolTransport", "ToolReceipt", "X402Payer",
    "ConditionalSettlementQueue", "EncryptedJob", "JobStatus",
    "Store", "AuditTrail",
    "Orchestrator", "build_orchestrator",
]
