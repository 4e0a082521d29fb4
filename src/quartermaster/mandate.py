"""
Authorization mandate chain.

intent  -> what the command wants to do, its tool plan and spend ceiling
cart    -> EIP-712 authorization over the intent, signed by an approver
payment -> one line item per paid tool call

Cart expiry is derived from the intent's creation time, never from the
clock at build time, so rebuilding a cart from the same intent yields the
same typed data and the same signature target.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Sequence

from eth_account import Account
from eth_account.messages import encode_typed_data

from .commands import ParsedCommand, command_to_dict, format_utc_timestamp, short_id
from .errors import MandateVerificationError
from .money import plain_decimal, units_to_usdc
from .policy import ToolPlanItem


DOMAIN_NAME = "Quartermaster AP2"
DOMAIN_VERSION = "1"
DEFAULT_CHAIN_ID = 84532
DEFAULT_CART_TTL_SECONDS = 300
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

CART_PRIMARY_TYPE = "CartMandate"
CART_TYPES = {
    CART_PRIMARY_TYPE: [
        {"name": "intentId", "type": "string"},
        {"name": "docId", "type": "string"},
        {"name": "cmdId", "type": "string"},
        {"name": "maxTotalUsdc", "type": "string"},
        {"name": "toolDigest", "type": "string"},
        {"name": "expiresAt", "type": "string"},
    ],
}


class IntentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"


@dataclass
class IntentMandate:
    """Declared intention, tool plan and ceiling for one command."""

    id: str
    scope: str
    command_id: str
    action: str
    max_total: int
    tool_plan: list[ToolPlanItem]
    created_at: int
    status: str = IntentStatus.PENDING.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "command_id": self.command_id,
            "action": self.action,
            "max_total": self.max_total,
            "tool_plan": [tool.to_dict() for tool in self.tool_plan],
            "created_at": self.created_at,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "IntentMandate":
        data = dict(d)
        data["tool_plan"] = [ToolPlanItem.from_dict(t) for t in data.get("tool_plan", [])]
        return cls(**data)


@dataclass
class CartMandate:
    """Signed, time-bounded spend authorization derived from an intent."""

    id: str
    intent_id: str
    scope: str
    command_id: str
    typed_data: dict[str, Any]
    expires_at: int
    created_at: int
    signer_address: Optional[str] = None
    signature: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) > self.expires_at

    @property
    def is_signed(self) -> bool:
        return self.signature is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "intent_id": self.intent_id,
            "scope": self.scope,
            "command_id": self.command_id,
            "typed_data": self.typed_data,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "signer_address": self.signer_address,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "CartMandate":
        return cls(**dict(d))


@dataclass
class PaymentMandate:
    """Agreed line-item price for a single paid tool call."""

    id: str
    scope: str
    command_id: str
    tool_name: str
    line_item: int
    created_at: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "command_id": self.command_id,
            "tool_name": self.tool_name,
            "line_item": self.line_item,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    signer_address: Optional[str]
    reason: str


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_intent_mandate(
    scope: str,
    command_id: str,
    command: ParsedCommand,
    tool_plan: Sequence[ToolPlanItem],
    max_total: int,
    now: Optional[float] = None,
) -> IntentMandate:
    """Create the intent. The id is a function of scope, command id and command."""
    serialized = canonical_json_bytes(command_to_dict(command)).decode("utf-8")
    return IntentMandate(
        id=short_id("intent", f"{scope}:{command_id}:{serialized}"),
        scope=scope,
        command_id=command_id,
        action=command.kind.value,
        max_total=int(max_total),
        tool_plan=list(tool_plan),
        created_at=int(time.time() if now is None else now),
    )


def tool_digest(tool_plan: Sequence[ToolPlanItem]) -> str:
    return "|".join(f"{tool.tool_name}:{plain_decimal(tool.price)}" for tool in tool_plan)


def cart_domain(chain_id: int = DEFAULT_CHAIN_ID, name: str = DOMAIN_NAME) -> dict[str, Any]:
    return {
        "name": name,
        "version": DOMAIN_VERSION,
        "chainId": int(chain_id),
        "verifyingContract": ZERO_ADDRESS,
    }


def build_cart_mandate(
    intent: IntentMandate,
    ttl_seconds: int = DEFAULT_CART_TTL_SECONDS,
    chain_id: int = DEFAULT_CHAIN_ID,
    domain_name: str = DOMAIN_NAME,
    now: Optional[float] = None,
) -> CartMandate:
    """Build the unsigned cart for an intent."""
    digest = tool_digest(intent.tool_plan)
    expires_at = intent.created_at + int(ttl_seconds)
    message = {
        "intentId": intent.id,
        "docId": intent.scope,
        "cmdId": intent.command_id,
        "maxTotalUsdc": f"{units_to_usdc(intent.max_total):.2f}",
        "toolDigest": digest,
        "expiresAt": format_utc_timestamp(expires_at),
    }
    return CartMandate(
        id=short_id("cart", f"{intent.id}:{digest}"),
        intent_id=intent.id,
        scope=intent.scope,
        command_id=intent.command_id,
        typed_data={
            "domain": cart_domain(chain_id, domain_name),
            "types": CART_TYPES,
            "primaryType": CART_PRIMARY_TYPE,
            "message": message,
        },
        expires_at=expires_at,
        created_at=int(time.time() if now is None else now),
    )


def build_payment_mandate(
    scope: str,
    command_id: str,
    tool: ToolPlanItem,
    now: Optional[float] = None,
) -> PaymentMandate:
    return PaymentMandate(
        id=short_id("pay", f"{scope}:{command_id}:{tool.tool_name}:{plain_decimal(tool.price)}"),
        scope=scope,
        command_id=command_id,
        tool_name=tool.tool_name,
        line_item=tool.price_units,
        created_at=int(time.time() if now is None else now),
    )


# ---------------------------------------------------------------------------
# Signing and verification
# ---------------------------------------------------------------------------


class ApprovalSigner(Protocol):
    """Whoever approves carts. Only needs to sign EIP-712 typed data."""

    @property
    def address(self) -> str: ...

    def sign_typed_data(
        self,
        domain: dict[str, Any],
        types: dict[str, list],
        primary_type: str,
        message: dict[str, Any],
    ) -> str: ...


class LocalApprovalSigner:
    """Approval signer backed by a local eth-account key."""

    __slots__ = ("_account",)

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(
        self,
        domain: dict[str, Any],
        types: dict[str, list],
        primary_type: str,
        message: dict[str, Any],
    ) -> str:
        message_types = {k: v for k, v in types.items() if k != "EIP712Domain"}
        signed = Account.sign_typed_data(self._account.key, domain, message_types, message)
        return "0x" + bytes(signed.signature).hex()

    def __repr__(self) -> str:
        return f"LocalApprovalSigner({self.address})"


def cart_typed_data(cart: CartMandate) -> dict[str, Any]:
    return {
        "domain": dict(cart.typed_data["domain"]),
        "types": {k: list(v) for k, v in cart.typed_data["types"].items()},
        "primaryType": cart.typed_data["primaryType"],
        "message": dict(cart.typed_data["message"]),
    }


def request_signature(signer: ApprovalSigner, cart: CartMandate) -> tuple[str, str]:
    """Ask the signer to sign the cart. Returns (signer_address, signature)."""
    typed = cart_typed_data(cart)
    signature = signer.sign_typed_data(
        typed["domain"], typed["types"], typed["primaryType"], typed["message"]
    )
    return signer.address, signature


def verify_cart_signature(
    cart: CartMandate,
    signature: str,
    expected_signer: Optional[str] = None,
) -> VerificationResult:
    """Recover the cart signer and compare it with the expected address."""
    try:
        typed = cart_typed_data(cart)
        signable = encode_typed_data(typed["domain"], typed["types"], typed["message"])
        recovered = Account.recover_message(
            signable,
            signature=bytes.fromhex(_strip_0x(signature)),
        )
    except Exception as e:
        return VerificationResult(False, None, f"Signature verification failed: {e}")

    if expected_signer and recovered.lower() != expected_signer.lower():
        return VerificationResult(
            False,
            recovered,
            f"Signer mismatch: expected {expected_signer}, got {recovered}",
        )
    return VerificationResult(True, recovered, "Valid cart signature")


def sign_cart(cart: CartMandate, signer: ApprovalSigner) -> CartMandate:
    """Request and verify a signature; return the signed cart or raise."""
    signer_address, signature = request_signature(signer, cart)
    result = verify_cart_signature(cart, signature, expected_signer=signer_address)
    if not result.valid:
        raise MandateVerificationError(result.reason)
    return replace(cart, signer_address=result.signer_address, signature=signature)


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def _strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value
