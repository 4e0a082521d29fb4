"""
Command compiler and lifecycle.

Raw operator text is compiled into one of a closed set of command
variants. Two grammars are accepted:

- a strict keyword form (``DW PAY_VENDOR ACME 200 USDC TO 0x... MAX_TOTAL 2``)
- a best-effort natural form (``Pay ACME 200 USDC to 0x... total cap 2``)

Either way the command id is derived from the canonical form, so the same
instruction always maps onto the same record.
"""

from __future__ import annotations

import hashlib
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Union

from .errors import MissingFieldsError, ParseError
from .money import plain_decimal


_NUM = r"([0-9]+(?:\.[0-9]+)?)"
_ADDR = r"(0x[a-fA-F0-9]{40})"
_UTC = r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z)"

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
RFC3339_UTC_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

_PAY_VENDOR_RE = re.compile(
    rf"^(?:DW\s+)?PAY_VENDOR\s+(\S+)\s+{_NUM}\s+USDC\s+TO\s+{_ADDR}"
    rf"(?:\s+DATA_BUDGET\s+{_NUM})?(?:\s+MAX_TOTAL\s+{_NUM})?(?:\s+REF\s+(\S+))?$",
    re.IGNORECASE,
)
_PRIVATE_PAYOUT_RE = re.compile(
    rf"^(?:DW\s+)?PRIVATE_PAYOUT\s+{_NUM}\s+USDC\s+TO\s+{_ADDR}\s+AT\s+{_UTC}$",
    re.IGNORECASE,
)
_TREASURY_SWAP_RE = re.compile(
    rf"^(?:DW\s+)?TREASURY_SWAP\s+{_NUM}\s+USDC\s+TO\s+WETH\s+SLIPPAGE\s+([0-9]+)\s+MAX_SPEND\s+{_NUM}$",
    re.IGNORECASE,
)
_RECURRING_PAY_RE = re.compile(
    rf"^(?:DW\s+)?RECURRING_PAY\s+(\S+)\s+{_NUM}\s+USDC\s+TO\s+{_ADDR}\s+EVERY\s+(DAILY|WEEKLY|MONTHLY)$",
    re.IGNORECASE,
)
_STRUCTURED_KEYWORD_RE = re.compile(
    r"^(?:DW\s+)?(PAY_VENDOR|PRIVATE_PAYOUT|TREASURY_SWAP|RECURRING_PAY)\b",
    re.IGNORECASE,
)

PAY_EXAMPLE = "Pay ACME 200 USDC to 0x1111111111111111111111111111111111111111 tool budget 1 total cap 2"
SWAP_EXAMPLE = "Swap 25 USDC to WETH slippage 0.5% max spend 30"
PRIVATE_PAYOUT_EXAMPLE = (
    "Private payout 50 USDC to 0x2222222222222222222222222222222222222222 unlock at 2026-02-13T12:00:00Z"
)
RECURRING_EXAMPLE = "Recurring pay ACME 50 USDC to 0x1111111111111111111111111111111111111111 every month"


class CommandKind(str, Enum):
    PAY_VENDOR = "PAY_VENDOR"
    TREASURY_SWAP = "TREASURY_SWAP"
    PRIVATE_PAYOUT = "PRIVATE_PAYOUT"
    RECURRING_PAY = "RECURRING_PAY"


class CommandStatus(str, Enum):
    NEW = "NEW"
    INTENT_CREATED = "INTENT_CREATED"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    APPROVED = "APPROVED"
    EXECUTING = "EXECUTING"
    DONE = "DONE"
    ABORTED = "ABORTED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({CommandStatus.DONE, CommandStatus.ABORTED, CommandStatus.FAILED})

# Fail-closed: anything not listed is rejected.
_TRANSITIONS = {
    (CommandStatus.NEW, CommandStatus.INTENT_CREATED),
    (CommandStatus.INTENT_CREATED, CommandStatus.AWAITING_APPROVAL),
    (CommandStatus.INTENT_CREATED, CommandStatus.APPROVED),
    (CommandStatus.INTENT_CREATED, CommandStatus.ABORTED),
    (CommandStatus.AWAITING_APPROVAL, CommandStatus.APPROVED),
    (CommandStatus.AWAITING_APPROVAL, CommandStatus.ABORTED),
    (CommandStatus.AWAITING_APPROVAL, CommandStatus.FAILED),
    (CommandStatus.APPROVED, CommandStatus.EXECUTING),
    (CommandStatus.APPROVED, CommandStatus.ABORTED),
    (CommandStatus.EXECUTING, CommandStatus.DONE),
    (CommandStatus.EXECUTING, CommandStatus.ABORTED),
    (CommandStatus.EXECUTING, CommandStatus.FAILED),
}


def can_transition(current: CommandStatus | str, target: CommandStatus | str) -> bool:
    """Whether the lifecycle allows moving from ``current`` to ``target``."""
    try:
        return (CommandStatus(current), CommandStatus(target)) in _TRANSITIONS
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Command variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PayVendor:
    vendor: str
    amount: Decimal
    to: str
    data_budget: Optional[Decimal] = None
    max_total: Optional[Decimal] = None
    ref: Optional[str] = None

    kind = CommandKind.PAY_VENDOR


@dataclass(frozen=True)
class TreasurySwap:
    amount: Decimal
    slippage_bps: int
    max_spend: Decimal
    to_token: str = "WETH"

    kind = CommandKind.TREASURY_SWAP


@dataclass(frozen=True)
class PrivatePayout:
    amount: Decimal
    to: str
    unlock_at: str

    kind = CommandKind.PRIVATE_PAYOUT

    @property
    def unlock_epoch(self) -> Optional[int]:
        return parse_utc_timestamp(self.unlock_at)


@dataclass(frozen=True)
class RecurringPay:
    vendor: str
    amount: Decimal
    to: str
    frequency: str

    kind = CommandKind.RECURRING_PAY


ParsedCommand = Union[PayVendor, TreasurySwap, PrivatePayout, RecurringPay]

_VARIANTS: dict[str, type] = {
    CommandKind.PAY_VENDOR.value: PayVendor,
    CommandKind.TREASURY_SWAP.value: TreasurySwap,
    CommandKind.PRIVATE_PAYOUT.value: PrivatePayout,
    CommandKind.RECURRING_PAY.value: RecurringPay,
}
_DECIMAL_FIELDS = {"amount", "data_budget", "max_total", "max_spend"}


def command_to_dict(command: ParsedCommand) -> dict[str, Any]:
    """JSON-safe dict with ``kind`` first; decimals become plain strings."""
    out: dict[str, Any] = {"kind": command.kind.value}
    for name in command.__dataclass_fields__:
        value = getattr(command, name)
        if value is None:
            continue
        out[name] = plain_decimal(value) if name in _DECIMAL_FIELDS else value
    return out


def command_from_dict(payload: Mapping[str, Any]) -> ParsedCommand:
    data = dict(payload)
    kind = data.pop("kind", None)
    cls = _VARIANTS.get(str(kind))
    if cls is None:
        raise ParseError(f"Unknown command kind: {kind}")
    for name in _DECIMAL_FIELDS & data.keys():
        data[name] = Decimal(str(data[name]))
    if "slippage_bps" in data:
        data["slippage_bps"] = int(data["slippage_bps"])
    return cls(**data)


@dataclass
class CommandRecord:
    """One ingested instruction and where it is in its lifecycle."""

    scope: str
    command_id: str
    raw_text: str
    parsed: ParsedCommand
    status: CommandStatus
    created_at: int
    updated_at: int
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "command_id": self.command_id,
            "raw_text": self.raw_text,
            "parsed": command_to_dict(self.parsed),
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_error": self.last_error,
        }


# ---------------------------------------------------------------------------
# Canonical form and ids
# ---------------------------------------------------------------------------


def short_id(prefix: str, value: str) -> str:
    """``<prefix>_<first 16 hex of sha256(value)>``."""
    return f"{prefix}_{hashlib.sha256(value.encode('utf-8')).hexdigest()[:16]}"


def canonical_form(command: ParsedCommand) -> str:
    """Deterministic keyword rendering used as the pre-image of the command id."""
    if isinstance(command, PayVendor):
        parts = [
            "DW", "PAY_VENDOR", command.vendor, plain_decimal(command.amount),
            "USDC", "TO", command.to,
        ]
        if command.data_budget is not None:
            parts += ["DATA_BUDGET", plain_decimal(command.data_budget)]
        if command.max_total is not None:
            parts += ["MAX_TOTAL", plain_decimal(command.max_total)]
        if command.ref:
            parts += ["REF", command.ref]
        return " ".join(parts)
    if isinstance(command, TreasurySwap):
        return " ".join([
            "DW", "TREASURY_SWAP", plain_decimal(command.amount), "USDC", "TO", command.to_token,
            "SLIPPAGE", str(command.slippage_bps), "MAX_SPEND", plain_decimal(command.max_spend),
        ])
    if isinstance(command, PrivatePayout):
        return " ".join([
            "DW", "PRIVATE_PAYOUT", plain_decimal(command.amount), "USDC", "TO", command.to,
            "AT", command.unlock_at,
        ])
    if isinstance(command, RecurringPay):
        return " ".join([
            "DW", "RECURRING_PAY", command.vendor, plain_decimal(command.amount), "USDC", "TO",
            command.to, "EVERY", command.frequency.upper(),
        ])
    raise ParseError(f"Unsupported command type: {type(command).__name__}")


def command_id(command: ParsedCommand) -> str:
    return short_id("cmd", canonical_form(command).lower())


def parse_utc_timestamp(value: str) -> Optional[int]:
    """Epoch seconds for an RFC 3339 ``...Z`` timestamp, or None if invalid."""
    if not RFC3339_UTC_RE.match(value or ""):
        return None
    try:
        dt = datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return int(dt.timestamp())


def format_utc_timestamp(epoch: float) -> str:
    return datetime.fromtimestamp(int(epoch), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_day_start(now: Optional[float] = None) -> int:
    """Epoch seconds of 00:00 UTC for the day containing ``now``."""
    ts = int(time.time() if now is None else now)
    return ts - ts % 86400


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------


def compile_command(text: str) -> ParsedCommand:
    """Compile raw text into a command, or raise ParseError/MissingFieldsError."""
    trimmed = (text or "").strip()
    if not trimmed:
        raise ParseError("Empty command")

    structured = _parse_structured(trimmed)
    if structured is not None:
        return structured
    if re.match(r"^dw\s", trimmed, re.IGNORECASE):
        raise ParseError("Unsupported DW command format")
    keyword = _STRUCTURED_KEYWORD_RE.match(trimmed)
    if keyword:
        raise ParseError(f"Unsupported {keyword.group(1).upper()} command format")
    return _parse_natural(trimmed)


def _parse_structured(text: str) -> Optional[ParsedCommand]:
    m = _PAY_VENDOR_RE.match(text)
    if m:
        vendor, amount, to, data_budget, max_total, ref = m.groups()
        return PayVendor(
            vendor=vendor,
            amount=Decimal(amount),
            to=to,
            data_budget=Decimal(data_budget) if data_budget else None,
            max_total=Decimal(max_total) if max_total else None,
            ref=ref,
        )

    m = _PRIVATE_PAYOUT_RE.match(text)
    if m:
        amount, to, unlock_at = m.groups()
        return PrivatePayout(amount=Decimal(amount), to=to, unlock_at=unlock_at.upper())

    m = _TREASURY_SWAP_RE.match(text)
    if m:
        amount, slippage, max_spend = m.groups()
        return TreasurySwap(
            amount=Decimal(amount),
            slippage_bps=int(slippage),
            max_spend=Decimal(max_spend),
        )

    m = _RECURRING_PAY_RE.match(text)
    if m:
        vendor, amount, to, frequency = m.groups()
        return RecurringPay(
            vendor=vendor.upper(),
            amount=Decimal(amount),
            to=to,
            frequency=frequency.lower(),
        )
    return None


def _parse_natural(text: str) -> ParsedCommand:
    lowered = text.lower()

    if lowered.startswith("pay "):
        return _parse_pay(text)
    if lowered.startswith("swap "):
        return _parse_swap(text)
    if lowered.startswith("private payout "):
        return _parse_private_payout(text)
    if lowered.startswith("recurring "):
        return _parse_recurring(text)

    if re.search(r"\bpay\b", lowered) and re.search(r"\busdc\b", lowered) and re.search(_ADDR, text):
        return _parse_pay(text)
    if re.search(r"\b(swap|convert|exchange|trade)\b", lowered) and re.search(r"\busdc\b", lowered):
        return _parse_swap(text)
    if re.search(r"\bprivate\b", lowered) and re.search(r"\bpayout\b", lowered):
        return _parse_private_payout(text)

    raise MissingFieldsError("UNKNOWN", ["action"], {"raw": text}, PAY_EXAMPLE)


def _parse_pay(text: str) -> PayVendor:
    vendor_token = _search(text, r"\bpay\s+([a-zA-Z][a-zA-Z0-9_-]*)")
    amount = _read_number(text, rf"\b{_NUM}\s*usdc\b")
    to_candidate = _search(text, rf"\bto\s+{_ADDR}") or _search(text, _ADDR)
    data_budget = _read_number(text, rf"\btool\s+budget\s+{_NUM}\b")
    total_cap = _read_number(text, rf"\btotal\s+cap\s+{_NUM}\b")

    to = to_candidate if to_candidate and ADDRESS_RE.match(to_candidate) else None
    vendor = vendor_token if vendor_token and not ADDRESS_RE.match(vendor_token) else None

    missing = []
    if amount is None:
        missing.append("amount_usdc")
    if to is None:
        missing.append("to_address")
    if missing:
        raise MissingFieldsError(
            "PAY_VENDOR",
            missing,
            _compact(vendor=vendor_token, amount_usdc=amount, to=to_candidate),
            PAY_EXAMPLE,
        )

    return PayVendor(
        vendor=vendor or "0x" + to[2:8].upper(),
        amount=amount,
        to=to,
        data_budget=data_budget,
        max_total=total_cap,
    )


def _parse_swap(text: str) -> TreasurySwap:
    amount = _read_number(text, rf"\b{_NUM}\s*usdc\b")
    token_candidate = _search(text, r"\bto\s+([a-zA-Z0-9]+)")
    max_spend = _read_number(text, rf"\bmax\s+spend\s+{_NUM}\b")

    slippage_bps: Optional[int] = None
    percent = _read_number(text, rf"\bslippage\s+{_NUM}\s*%")
    if percent is not None:
        slippage_bps = int((percent * 100).to_integral_value())
    else:
        bps = _read_number(text, rf"\bslippage\s+{_NUM}\s*bps?\b")
        if bps is None:
            bps = _read_number(text, rf"\bslippage\s+{_NUM}\b")
        if bps is not None:
            slippage_bps = int(bps.to_integral_value())

    missing = []
    if amount is None:
        missing.append("amount_usdc")
    if not token_candidate:
        missing.append("to_token")
    if slippage_bps is None:
        missing.append("slippage")
    if max_spend is None:
        missing.append("max_spend")
    if missing:
        raise MissingFieldsError(
            "TREASURY_SWAP",
            missing,
            _compact(amount_usdc=amount, to_token=token_candidate, slippage=slippage_bps, max_spend=max_spend),
            SWAP_EXAMPLE,
        )

    if token_candidate.upper() != "WETH":
        raise ParseError(f'Unsupported token "{token_candidate.upper()}". Example: {SWAP_EXAMPLE}')

    return TreasurySwap(amount=amount, slippage_bps=slippage_bps, max_spend=max_spend)


def _parse_private_payout(text: str) -> PrivatePayout:
    amount = _read_number(text, rf"\bpayout\s+{_NUM}\s*usdc\b")
    to_candidate = _search(text, r"\bto\s+(\S+)")
    unlock_candidate = _search(text, r"\bunlock\s+at\s+(\S+)")

    to = to_candidate if to_candidate and ADDRESS_RE.match(to_candidate) else None
    unlock_at = unlock_candidate.upper() if unlock_candidate and RFC3339_UTC_RE.match(unlock_candidate.upper()) else None

    missing = []
    if amount is None:
        missing.append("amount_usdc")
    if to is None:
        missing.append("to_address")
    if unlock_at is None:
        missing.append("unlock_at")
    if missing:
        raise MissingFieldsError(
            "PRIVATE_PAYOUT",
            missing,
            _compact(amount_usdc=amount, to=to_candidate, unlock_at=unlock_candidate),
            PRIVATE_PAYOUT_EXAMPLE,
        )
    return PrivatePayout(amount=amount, to=to, unlock_at=unlock_at)


def _parse_recurring(text: str) -> RecurringPay:
    vendor_token = _search(text, r"^recurring\s+(?:pay\s+)?(\S+)")
    amount = _read_number(text, rf"\b{_NUM}\s*usdc\b")
    to_candidate = _search(text, r"\bto\s+(\S+)")
    frequency_token = _search(text, r"\bevery\s+(daily|weekly|monthly|day|week|month)\b")

    vendor = vendor_token.upper() if vendor_token and not _is_numeric(vendor_token) else None
    to = to_candidate if to_candidate and ADDRESS_RE.match(to_candidate) else None
    frequency = _normalize_frequency(frequency_token)

    missing = []
    if vendor is None:
        missing.append("vendor")
    if amount is None:
        missing.append("amount_usdc")
    if to is None:
        missing.append("to_address")
    if frequency is None:
        missing.append("frequency")
    if missing:
        raise MissingFieldsError(
            "RECURRING_PAY",
            missing,
            _compact(vendor=vendor_token, amount_usdc=amount, to=to_candidate, frequency=frequency_token),
            RECURRING_EXAMPLE,
        )
    return RecurringPay(vendor=vendor, amount=amount, to=to, frequency=frequency)


def _search(text: str, pattern: str) -> Optional[str]:
    m = re.search(pattern, text, re.IGNORECASE)
    return m.group(1) if m else None


def _read_number(text: str, pattern: str) -> Optional[Decimal]:
    value = _search(text, pattern)
    return Decimal(value) if value else None


def _is_numeric(value: str) -> bool:
    return re.fullmatch(r"[0-9]+(?:\.[0-9]+)?", value) is not None


def _normalize_frequency(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return {
        "day": "daily", "daily": "daily",
        "week": "weekly", "weekly": "weekly",
        "month": "monthly", "monthly": "monthly",
    }.get(value.lower())


def _compact(**values: Any) -> dict[str, Any]:
    return {
        k: (plain_decimal(v) if isinstance(v, Decimal) else v)
        for k, v in values.items()
        if v is not None
    }
