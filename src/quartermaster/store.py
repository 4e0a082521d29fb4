"""
Durable record store.

Single SQLite file, WAL mode. Every write runs in its own
``BEGIN IMMEDIATE`` transaction; receipts and ledger rows are insert-only.
The only in-place mutations are command status, intent status, encrypted
job progress and recurring rule schedule.
"""

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from .commands import (
    CommandRecord,
    CommandStatus,
    can_transition,
    command_from_dict,
    command_to_dict,
)
from .errors import CommandNotFoundError, InvalidTransitionError
from .mandate import CartMandate, IntentMandate, PaymentMandate
from .recurring import RecurringRule
from .settlement import EncryptedJob, JobStatus
from .storage import ensure_private_dir, ensure_private_file
from .x402_client import ToolReceipt


class ReceiptKind(str, Enum):
    TOOL = "TOOL"
    SETTLEMENT = "SETTLEMENT"
    ABORT = "ABORT"
    ENCRYPTED = "ENCRYPTED"
    DEFI = "DEFI"
    AGENT_PLAN = "AGENT_PLAN"
    AGENT_REFLECTION = "AGENT_REFLECTION"
    RECURRING = "RECURRING"
    APPROVAL = "APPROVAL"


@dataclass
class Receipt:
    id: int
    scope: str
    command_id: str
    kind: str
    reason_code: Optional[str]
    payload: dict[str, Any]
    created_at: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "command_id": self.command_id,
            "kind": self.kind,
            "reason_code": self.reason_code,
            "payload": self.payload,
            "created_at": self.created_at,
        }


@dataclass
class SpendEntry:
    scope: str
    command_id: str
    category: str
    amount: int
    reference_kind: str
    reference_id: str
    created_at: int

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "command_id": self.command_id,
            "category": self.category,
            "amount": self.amount,
            "reference_kind": self.reference_kind,
            "reference_id": self.reference_id,
            "created_at": self.created_at,
        }


@dataclass
class SwapTrade:
    scope: str
    command_id: str
    tx_reference: str
    venue: str
    chain: str
    details: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "command_id": self.command_id,
            "tx_reference": self.tx_reference,
            "venue": self.venue,
            "chain": self.chain,
            "details": self.details,
            "created_at": self.created_at,
        }


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS commands (
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        raw_text TEXT NOT NULL,
        parsed TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        last_error TEXT,
        PRIMARY KEY (scope, command_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS intent_mandates (
        id TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        UNIQUE (scope, command_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_mandates (
        id TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_mandates (
        id TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        tool_name TEXT NOT NULL,
        line_item INTEGER NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS receipts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        reason_code TEXT,
        payload TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tool_receipts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        tool_name TEXT NOT NULL,
        trace_id TEXT NOT NULL,
        initial_status INTEGER NOT NULL,
        payment_attempted INTEGER NOT NULL,
        final_status INTEGER NOT NULL,
        body TEXT NOT NULL,
        cost INTEGER NOT NULL,
        payment_details TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS spend_ledger (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        category TEXT NOT NULL,
        amount INTEGER NOT NULL,
        reference_kind TEXT NOT NULL,
        reference_id TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS swap_trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        tx_reference TEXT NOT NULL,
        venue TEXT NOT NULL,
        chain TEXT NOT NULL,
        details TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS encrypted_jobs (
        job_id TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        command_id TEXT NOT NULL,
        unlock_at INTEGER NOT NULL,
        encrypted_payload TEXT NOT NULL,
        status TEXT NOT NULL,
        tx_reference TEXT,
        decrypted_payload TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        last_error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recurring_rules (
        rule_id TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        source_command_id TEXT NOT NULL,
        vendor TEXT NOT NULL,
        amount TEXT NOT NULL,
        to_address TEXT NOT NULL,
        frequency TEXT NOT NULL,
        next_run_at INTEGER NOT NULL,
        run_count INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL,
        last_run_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reported_issues (
        scope TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (scope, fingerprint)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_command ON spend_ledger (scope, command_id)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_time ON spend_ledger (scope, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_receipts_command ON receipts (scope, command_id)",
)


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _now(value: Optional[float]) -> int:
    return int(time.time() if value is None else value)


class Store:
    """SQLite-backed store for commands, mandates, receipts, ledger and jobs."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        ensure_private_file(self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            for statement in _SCHEMA:
                conn.execute(statement)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def insert_command(self, record: CommandRecord) -> bool:
        """Insert a new command. Returns False when the id already exists."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO commands (
                    scope, command_id, raw_text, parsed, status,
                    created_at, updated_at, last_error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.scope,
                    record.command_id,
                    record.raw_text,
                    _dumps(command_to_dict(record.parsed)),
                    CommandStatus(record.status).value,
                    record.created_at,
                    record.updated_at,
                    record.last_error,
                ),
            )
            return cur.rowcount == 1

    def get_command(self, scope: str, command_id: str) -> Optional[CommandRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM commands WHERE scope = ? AND command_id = ?",
                (scope, command_id),
            ).fetchone()
        return self._row_to_command(row) if row else None

    def list_commands(
        self,
        scope: str,
        status: Optional[CommandStatus | str] = None,
    ) -> list[CommandRecord]:
        """Commands in creation order, optionally filtered by status."""
        query = "SELECT * FROM commands WHERE scope = ?"
        params: list[Any] = [scope]
        if status is not None:
            query += " AND status = ?"
            params.append(CommandStatus(status).value)
        query += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_command(r) for r in rows]

    def update_command_status(
        self,
        scope: str,
        command_id: str,
        target: CommandStatus | str,
        last_error: Optional[str] = None,
        now: Optional[float] = None,
    ) -> CommandRecord:
        """Move a command to ``target``; the check and write share one transaction."""
        target = CommandStatus(target)
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM commands WHERE scope = ? AND command_id = ?",
                (scope, command_id),
            ).fetchone()
            if row is None:
                raise CommandNotFoundError(f"Command not found: {scope}/{command_id}")
            current = CommandStatus(row["status"])
            if not can_transition(current, target):
                raise InvalidTransitionError(current.value, target.value)
            conn.execute(
                """
                UPDATE commands
                SET status = ?, updated_at = ?, last_error = COALESCE(?, last_error)
                WHERE scope = ? AND command_id = ?
                """,
                (target.value, _now(now), last_error, scope, command_id),
            )
            updated = conn.execute(
                "SELECT * FROM commands WHERE scope = ? AND command_id = ?",
                (scope, command_id),
            ).fetchone()
        return self._row_to_command(updated)

    def _row_to_command(self, row: sqlite3.Row) -> CommandRecord:
        return CommandRecord(
            scope=row["scope"],
            command_id=row["command_id"],
            raw_text=row["raw_text"],
            parsed=command_from_dict(json.loads(row["parsed"])),
            status=CommandStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_error=row["last_error"],
        )

    # ------------------------------------------------------------------
    # Mandates
    # ------------------------------------------------------------------

    def save_intent(self, intent: IntentMandate) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO intent_mandates (id, scope, command_id, payload, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    intent.id,
                    intent.scope,
                    intent.command_id,
                    _dumps(intent.to_dict()),
                    intent.status,
                    intent.created_at,
                ),
            )

    def get_intent(self, scope: str, command_id: str) -> Optional[IntentMandate]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload, status FROM intent_mandates WHERE scope = ? AND command_id = ?",
                (scope, command_id),
            ).fetchone()
        if row is None:
            return None
        intent = IntentMandate.from_dict(json.loads(row["payload"]))
        intent.status = row["status"]
        return intent

    def update_intent_status(self, intent_id: str, status: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE intent_mandates SET status = ? WHERE id = ?",
                (status, intent_id),
            )

    def save_cart(self, cart: CartMandate) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cart_mandates (id, scope, command_id, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (cart.id, cart.scope, cart.command_id, _dumps(cart.to_dict()), cart.created_at),
            )

    def get_cart(self, scope: str, command_id: str) -> Optional[CartMandate]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT payload FROM cart_mandates
                WHERE scope = ? AND command_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (scope, command_id),
            ).fetchone()
        return CartMandate.from_dict(json.loads(row["payload"])) if row else None

    def save_payment_mandate(self, mandate: PaymentMandate) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO payment_mandates (id, scope, command_id, tool_name, line_item, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    mandate.id,
                    mandate.scope,
                    mandate.command_id,
                    mandate.tool_name,
                    mandate.line_item,
                    mandate.created_at,
                ),
            )

    def list_payment_mandates(self, scope: str, command_id: str) -> list[PaymentMandate]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM payment_mandates WHERE scope = ? AND command_id = ?
                ORDER BY created_at, rowid
                """,
                (scope, command_id),
            ).fetchall()
        return [
            PaymentMandate(
                id=r["id"],
                scope=r["scope"],
                command_id=r["command_id"],
                tool_name=r["tool_name"],
                line_item=r["line_item"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def add_receipt(
        self,
        scope: str,
        command_id: str,
        kind: ReceiptKind | str,
        payload: dict[str, Any],
        reason_code: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Receipt:
        kind = ReceiptKind(kind).value
        created_at = _now(now)
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO receipts (scope, command_id, kind, reason_code, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (scope, command_id, kind, reason_code, _dumps(payload), created_at),
            )
            receipt_id = cur.lastrowid
        return Receipt(receipt_id, scope, command_id, kind, reason_code, dict(payload), created_at)

    def list_receipts(
        self,
        scope: str,
        command_id: str,
        kind: Optional[ReceiptKind | str] = None,
    ) -> list[Receipt]:
        query = "SELECT * FROM receipts WHERE scope = ? AND command_id = ?"
        params: list[Any] = [scope, command_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(ReceiptKind(kind).value)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            Receipt(
                id=r["id"],
                scope=r["scope"],
                command_id=r["command_id"],
                kind=r["kind"],
                reason_code=r["reason_code"],
                payload=json.loads(r["payload"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def add_tool_receipt(self, scope: str, command_id: str, receipt: ToolReceipt) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO tool_receipts (
                    scope, command_id, tool_name, trace_id, initial_status, payment_attempted,
                    final_status, body, cost, payment_details, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    scope,
                    command_id,
                    receipt.tool_name,
                    receipt.trace_id,
                    receipt.initial_status,
                    1 if receipt.payment_attempted else 0,
                    receipt.final_status,
                    _dumps(receipt.body),
                    receipt.cost,
                    _dumps(receipt.payment_details),
                    receipt.created_at,
                ),
            )
            return cur.lastrowid

    def list_tool_receipts(self, scope: str, command_id: str) -> list[ToolReceipt]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tool_receipts WHERE scope = ? AND command_id = ? ORDER BY id",
                (scope, command_id),
            ).fetchall()
        return [
            ToolReceipt(
                tool_name=r["tool_name"],
                trace_id=r["trace_id"],
                initial_status=r["initial_status"],
                payment_attempted=bool(r["payment_attempted"]),
                final_status=r["final_status"],
                body=json.loads(r["body"]),
                cost=r["cost"],
                created_at=r["created_at"],
                payment_details=json.loads(r["payment_details"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Spend ledger
    # ------------------------------------------------------------------

    def add_spend(self, entry: SpendEntry) -> None:
        if entry.amount < 0:
            raise ValueError("Spend amount must be >= 0")
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO spend_ledger (
                    scope, command_id, category, amount, reference_kind, reference_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.scope,
                    entry.command_id,
                    entry.category,
                    entry.amount,
                    entry.reference_kind,
                    entry.reference_id,
                    entry.created_at,
                ),
            )

    def list_spend(self, scope: str, command_id: str) -> list[SpendEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM spend_ledger WHERE scope = ? AND command_id = ? ORDER BY id",
                (scope, command_id),
            ).fetchall()
        return [
            SpendEntry(
                scope=r["scope"],
                command_id=r["command_id"],
                category=r["category"],
                amount=r["amount"],
                reference_kind=r["reference_kind"],
                reference_id=r["reference_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def command_spend(self, scope: str, command_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) AS total FROM spend_ledger WHERE scope = ? AND command_id = ?",
                (scope, command_id),
            ).fetchone()
        return int(row["total"])

    def scope_spend_since(self, scope: str, since: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) AS total FROM spend_ledger WHERE scope = ? AND created_at >= ?",
                (scope, int(since)),
            ).fetchone()
        return int(row["total"])

    # ------------------------------------------------------------------
    # Swap trades
    # ------------------------------------------------------------------

    def add_swap_trade(self, trade: SwapTrade) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO swap_trades (scope, command_id, tx_reference, venue, chain, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.scope,
                    trade.command_id,
                    trade.tx_reference,
                    trade.venue,
                    trade.chain,
                    _dumps(trade.details),
                    trade.created_at,
                ),
            )

    def list_swap_trades(self, scope: str, command_id: str) -> list[SwapTrade]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM swap_trades WHERE scope = ? AND command_id = ? ORDER BY id",
                (scope, command_id),
            ).fetchall()
        return [
            SwapTrade(
                scope=r["scope"],
                command_id=r["command_id"],
                tx_reference=r["tx_reference"],
                venue=r["venue"],
                chain=r["chain"],
                details=json.loads(r["details"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Encrypted jobs
    # ------------------------------------------------------------------

    def insert_job(self, job: EncryptedJob) -> EncryptedJob:
        """Insert a job unless its id exists; returns the stored job either way."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO encrypted_jobs (
                    job_id, scope, command_id, unlock_at, encrypted_payload, status,
                    tx_reference, decrypted_payload, created_at, updated_at, last_error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.scope,
                    job.command_id,
                    job.unlock_at,
                    _dumps(job.encrypted_payload),
                    JobStatus(job.status).value,
                    job.tx_reference,
                    _dumps(job.decrypted_payload) if job.decrypted_payload is not None else None,
                    job.created_at,
                    job.updated_at,
                    job.last_error,
                ),
            )
            row = conn.execute("SELECT * FROM encrypted_jobs WHERE job_id = ?", (job.job_id,)).fetchone()
        return self._row_to_job(row)

    def update_job(self, job: EncryptedJob) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE encrypted_jobs
                SET status = ?, tx_reference = ?, decrypted_payload = ?, updated_at = ?, last_error = ?
                WHERE job_id = ?
                """,
                (
                    JobStatus(job.status).value,
                    job.tx_reference,
                    _dumps(job.decrypted_payload) if job.decrypted_payload is not None else None,
                    job.updated_at,
                    job.last_error,
                    job.job_id,
                ),
            )

    def get_job(self, job_id: str) -> Optional[EncryptedJob]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM encrypted_jobs WHERE job_id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def get_job_for_command(self, scope: str, command_id: str) -> Optional[EncryptedJob]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM encrypted_jobs WHERE scope = ? AND command_id = ? ORDER BY created_at LIMIT 1",
                (scope, command_id),
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, scope: str, statuses: Optional[Sequence[JobStatus | str]] = None) -> list[EncryptedJob]:
        query = "SELECT * FROM encrypted_jobs WHERE scope = ?"
        params: list[Any] = [scope]
        if statuses:
            values = [JobStatus(s).value for s in statuses]
            query += f" AND status IN ({','.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_job(r) for r in rows]

    def _row_to_job(self, row: sqlite3.Row) -> EncryptedJob:
        return EncryptedJob(
            job_id=row["job_id"],
            scope=row["scope"],
            command_id=row["command_id"],
            unlock_at=row["unlock_at"],
            encrypted_payload=json.loads(row["encrypted_payload"]),
            status=JobStatus(row["status"]),
            tx_reference=row["tx_reference"],
            decrypted_payload=json.loads(row["decrypted_payload"]) if row["decrypted_payload"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_error=row["last_error"],
        )

    # ------------------------------------------------------------------
    # Recurring rules
    # ------------------------------------------------------------------

    def save_rule(self, rule: RecurringRule) -> bool:
        """Insert a rule. Returns False when the rule id already exists."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO recurring_rules (
                    rule_id, scope, source_command_id, vendor, amount, to_address, frequency,
                    next_run_at, run_count, enabled, created_at, last_run_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.rule_id,
                    rule.scope,
                    rule.source_command_id,
                    rule.vendor,
                    str(rule.amount),
                    rule.to,
                    rule.frequency,
                    rule.next_run_at,
                    rule.run_count,
                    1 if rule.enabled else 0,
                    rule.created_at,
                    rule.last_run_at,
                ),
            )
            return cur.rowcount == 1

    def advance_rule(self, rule_id: str, next_run_at: int, run_count: int, last_run_at: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE recurring_rules SET next_run_at = ?, run_count = ?, last_run_at = ?
                WHERE rule_id = ?
                """,
                (int(next_run_at), int(run_count), int(last_run_at), rule_id),
            )

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE recurring_rules SET enabled = ? WHERE rule_id = ?",
                (1 if enabled else 0, rule_id),
            )
            return cur.rowcount == 1

    def get_rule(self, rule_id: str) -> Optional[RecurringRule]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM recurring_rules WHERE rule_id = ?", (rule_id,)).fetchone()
        return self._row_to_rule(row) if row else None

    def list_rules(self, scope: str, due_before: Optional[int] = None) -> list[RecurringRule]:
        query = "SELECT * FROM recurring_rules WHERE scope = ?"
        params: list[Any] = [scope]
        if due_before is not None:
            query += " AND enabled = 1 AND next_run_at <= ?"
            params.append(int(due_before))
        query += " ORDER BY next_run_at, rule_id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def _row_to_rule(self, row: sqlite3.Row) -> RecurringRule:
        return RecurringRule(
            rule_id=row["rule_id"],
            scope=row["scope"],
            source_command_id=row["source_command_id"],
            vendor=row["vendor"],
            amount=Decimal(row["amount"]),
            to=row["to_address"],
            frequency=row["frequency"],
            next_run_at=row["next_run_at"],
            run_count=row["run_count"],
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            last_run_at=row["last_run_at"],
        )

    # ------------------------------------------------------------------
    # Reported issues
    # ------------------------------------------------------------------

    def mark_issue_reported(self, scope: str, fingerprint: str, now: Optional[float] = None) -> bool:
        """Record a reported issue. Returns False if it was reported before."""
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO reported_issues (scope, fingerprint, created_at) VALUES (?, ?, ?)",
                (scope, fingerprint, _now(now)),
            )
            return cur.rowcount == 1
