"""
Budget-aware paid tool client.

Calls HTTP tools that may answer with an x402 payment challenge (402).
The challenge price is checked against the caller's remaining budget
before any payment payload is built; only then is the request resubmitted
with payment headers.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Protocol

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from x402 import x402ClientSync
from x402.http.x402_http_client import x402HTTPClientSync
from x402.mechanisms.evm.exact import ExactEvmScheme
from x402.mechanisms.evm.utils import get_asset_info

from .config import Network
from .errors import BudgetExceededError, ToolCallFailure, TransientToolError
from .money import amount_usdc_to_units, format_usdc
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


@dataclass
class ToolResponse:
    status: int
    headers: dict[str, str]
    body: Any
    content: bytes = field(default=b"", repr=False)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class ToolTransport(Protocol):
    def post(self, url: str, body: Any, headers: Mapping[str, str]) -> ToolResponse: ...


class HttpxToolTransport:
    """Tool transport over httpx. Network failures surface as transient errors."""

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self._http = client or httpx.Client(timeout=timeout)

    def post(self, url: str, body: Any, headers: Mapping[str, str]) -> ToolResponse:
        try:
            response = self._http.post(url, json=body, headers=dict(headers))
        except httpx.TransportError as e:
            raise TransientToolError(f"Transport error: {type(e).__name__}: {e}") from e
        return ToolResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=parse_body(response.text),
            content=response.content,
        )

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def parse_body(text: str) -> Any:
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


class PaymentPayer(Protocol):
    def required_cost(self, response: ToolResponse) -> Optional[int]: ...

    def build_payment_headers(self, response: ToolResponse) -> dict[str, str]: ...


class EthAccountSigner:
    """Adapter that wraps eth-account LocalAccount for x402 signer protocol."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(
        self,
        domain: Any,
        types: dict[str, list],
        primary_type: str,
        message: dict[str, Any],
    ) -> bytes:
        plain_types = {
            type_name: [
                {"name": _field_attr(f, "name"), "type": _field_attr(f, "type")}
                for f in fields
            ]
            for type_name, fields in types.items()
            if type_name != "EIP712Domain"
        }
        domain_dict = domain if isinstance(domain, dict) else _domain_to_dict(domain)

        msg = dict(message)
        if isinstance(msg.get("nonce"), bytes):
            msg["nonce"] = "0x" + msg["nonce"].hex()

        signed = self._account.sign_typed_data(full_message={
            "types": {**plain_types, "EIP712Domain": _build_domain_type(domain_dict)},
            "primaryType": primary_type,
            "domain": domain_dict,
            "message": msg,
        })
        return bytes(signed.signature)


def _field_attr(f: Any, name: str) -> str:
    return f[name] if isinstance(f, dict) else getattr(f, name)


def _domain_to_dict(domain: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, attrs in (
        ("name", ("name",)),
        ("version", ("version",)),
        ("chainId", ("chain_id", "chainId")),
        ("verifyingContract", ("verifying_contract", "verifyingContract")),
        ("salt", ("salt",)),
    ):
        for attr in attrs:
            value = getattr(domain, attr, None)
            if value is not None:
                out[key] = value
                break
    return out


def _build_domain_type(domain: dict) -> list[dict]:
    order = (
        ("name", "string"),
        ("version", "string"),
        ("chainId", "uint256"),
        ("verifyingContract", "address"),
        ("salt", "bytes32"),
    )
    return [{"name": name, "type": kind} for name, kind in order if name in domain]


class X402Payer:
    """Pays x402 challenges with the official SDK (exact EVM scheme)."""

    def __init__(self, signer: Any, network: Network = Network.BASE_SEPOLIA):
        self.network = network
        self._signer = signer
        self._x402_client = x402ClientSync()
        self._x402_client.register(network.value, ExactEvmScheme(signer=signer))
        self._http_handler = x402HTTPClientSync(client=self._x402_client)

    @classmethod
    def from_private_key(cls, private_key: str, network: Network = Network.BASE_SEPOLIA) -> "X402Payer":
        return cls(EthAccountSigner(Account.from_key(private_key)), network=network)

    @property
    def address(self) -> str:
        return self._signer.address

    def required_cost(self, response: ToolResponse) -> Optional[int]:
        if response.status != 402:
            return None
        requirement = self._first_requirement(self._payment_required(response))
        return _requirement_units(requirement)

    def build_payment_headers(self, response: ToolResponse) -> dict[str, str]:
        payment_required = self._payment_required(response)
        requirement = self._first_requirement(payment_required)
        if hasattr(payment_required, "model_copy"):
            payment_required = payment_required.model_copy(update={"accepts": [requirement]})
        try:
            payload = self._http_handler.create_payment_payload(payment_required)
            headers = self._http_handler.encode_payment_signature_header(payload)
        except Exception as e:
            raise ToolCallFailure("x402", 402, f"Failed to create payment: {type(e).__name__}: {e}") from e
        return dict(headers)

    def _payment_required(self, response: ToolResponse) -> Any:
        try:
            return self._http_handler.get_payment_required_response(
                lambda h: _header_lookup(response.headers, h),
                response.content,
            )
        except Exception as e:
            raise ToolCallFailure(
                "x402", 402, f"Failed to parse 402 requirements: {type(e).__name__}: {e}"
            ) from e

    def _first_requirement(self, payment_required: Any) -> Any:
        accepts = getattr(payment_required, "accepts", None)
        if not accepts:
            raise ToolCallFailure("x402", 402, "No payment requirements in 402 response")
        requirement = accepts[0]
        network = str(getattr(requirement, "network", ""))
        if network != self.network.value:
            raise ToolCallFailure("x402", 402, f"402 requirement network {network} not allowed")
        return requirement


def _requirement_units(requirement: Any) -> int:
    """Challenge amount converted to USDC base units (6 decimals), rounded up."""
    amount = int(getattr(requirement, "amount", "0"))
    decimals = 6
    try:
        asset_info = get_asset_info(str(getattr(requirement, "network", "")), str(getattr(requirement, "asset", "")))
        decimals = int(asset_info.get("decimals", 6))
    except Exception:
        logger.debug("No asset info for %s, assuming 6 decimals", getattr(requirement, "asset", None))
    return amount_usdc_to_units(Decimal(amount) / (Decimal(10) ** decimals))


def _header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    target = name.lower()
    for k, v in headers.items():
        if k.lower() == target:
            return v
    return None


# ---------------------------------------------------------------------------
# Budgeted client
# ---------------------------------------------------------------------------


@dataclass
class ToolReceipt:
    tool_name: str
    trace_id: str
    initial_status: int
    payment_attempted: bool
    final_status: int
    body: Any
    cost: int
    created_at: int
    payment_details: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return 200 <= self.final_status < 300

    def to_dict(self) -> dict:
        return {
            "tool_name": self.tool_name,
            "trace_id": self.trace_id,
            "initial_status": self.initial_status,
            "payment_attempted": self.payment_attempted,
            "final_status": self.final_status,
            "body": self.body,
            "cost": self.cost,
            "created_at": self.created_at,
            "payment_details": self.payment_details,
        }


@dataclass
class ToolCallResult:
    response: ToolResponse
    receipt: ToolReceipt


class BudgetedToolClient:
    """Calls paid tools without ever paying more than the remaining budget."""

    def __init__(
        self,
        transport: ToolTransport,
        payer: Optional[PaymentPayer] = None,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.time,
    ):
        self._transport = transport
        self._payer = payer
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._now = now

    def call(
        self,
        url: str,
        body: Any,
        *,
        tool_name: str,
        trace_id: str,
        remaining_budget: int,
        expected_price: Optional[int] = None,
    ) -> ToolCallResult:
        """
        POST to a tool, paying a 402 challenge if it fits the budget.

        Raises:
            BudgetExceededError: challenge price above ``remaining_budget``
            ToolCallFailure: retries exhausted or the challenge is unusable
        """
        try:
            return retry_with_backoff(
                lambda: self._call_once(url, body, tool_name, trace_id, remaining_budget, expected_price),
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                is_retryable=lambda e: isinstance(e, TransientToolError),
                sleep=self._sleep,
            )
        except TransientToolError as e:
            raise ToolCallFailure(tool_name, e.status_code, f"Retries exhausted: {e}") from e

    def _call_once(
        self,
        url: str,
        body: Any,
        tool_name: str,
        trace_id: str,
        remaining_budget: int,
        expected_price: Optional[int],
    ) -> ToolCallResult:
        headers = {"Content-Type": "application/json", "X-Trace-Id": trace_id}
        first = self._transport.post(url, body, headers)
        response = first
        payment_attempted = False
        cost = 0
        details: dict[str, Any] = {}

        if first.status == 402:
            if self._payer is None:
                raise ToolCallFailure(tool_name, 402, "Payment required but no payer configured")
            challenge = self._payer.required_cost(first)
            required = expected_price if expected_price is not None else challenge
            if required is None:
                raise ToolCallFailure(tool_name, 402, "Payment challenge carries no price")
            if required > remaining_budget:
                logger.info(
                    "%s: challenge %s exceeds remaining %s, not paying",
                    tool_name,
                    format_usdc(required),
                    format_usdc(remaining_budget),
                )
                raise BudgetExceededError(required, remaining_budget)
            if challenge is not None and challenge > required:
                raise ToolCallFailure(
                    tool_name,
                    402,
                    f"402 amount {format_usdc(challenge)} exceeds agreed price {format_usdc(required)}",
                )

            logger.info("%s: paying challenge of %s", tool_name, format_usdc(required))
            payment_headers = self._payer.build_payment_headers(first)
            payment_attempted = True
            cost = required
            details = {
                "required": required,
                "challenge": challenge,
                "headers": sorted(payment_headers),
            }
            response = self._transport.post(url, body, {**headers, **payment_headers})

        if response.status in RETRYABLE_STATUSES:
            raise TransientToolError(
                f"{tool_name} returned {response.status}",
                status_code=response.status,
            )

        receipt = ToolReceipt(
            tool_name=tool_name,
            trace_id=trace_id,
            initial_status=first.status,
            payment_attempted=payment_attempted,
            final_status=response.status,
            body=response.body,
            cost=cost,
            created_at=int(self._now()),
            payment_details=details,
        )
        return ToolCallResult(response=response, receipt=receipt)
