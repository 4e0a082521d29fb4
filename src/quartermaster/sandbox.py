"""
In-process paid tool server for the demo and for tests.

Serves the three catalog tools over ``httpx.MockTransport``. Unpaid
requests get a 402 with an x402-style ``accepts`` list; requests that
carry a payment header get the tool result.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx

from .config import Network
from .errors import ToolCallFailure
from .money import amount_usdc_to_units, plain_decimal
from .policy import TOOL_CATALOG
from .x402_client import ToolResponse

logger = logging.getLogger(__name__)

PAYMENT_HEADER = "PAYMENT-SIGNATURE"
SANDBOX_BASE_URL = "http://tools.sandbox"
SANDBOX_PAY_TO = "0x273326453960864FbA4D2F6Cf09D65fA13E45297"


@dataclass
class SandboxToolServer:
    """Scripted tool behaviour; every request is recorded in ``requests``."""

    network: Network = Network.BASE_SEPOLIA
    prices: dict[str, Decimal] = field(
        default_factory=lambda: {t.tool_name: t.price for t in TOOL_CATALOG}
    )
    flagged_vendors: set[str] = field(default_factory=set)
    risk_scores: dict[str, float] = field(default_factory=dict)
    unavailable: dict[str, int] = field(default_factory=dict)
    price: str = "3000.00"
    change_24h: float = -1.2
    recommendation: str = "FAVORABLE_ENTRY"
    requests: list[dict[str, Any]] = field(default_factory=list)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=self.transport(), base_url=SANDBOX_BASE_URL)

    def paid_requests(self, tool_name: str) -> list[dict[str, Any]]:
        return [r for r in self.requests if r["tool"] == tool_name and r["paid"]]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path == "/.well-known/tools":
            return httpx.Response(200, json={"tools": [
                {
                    "name": t.tool_name,
                    "endpoint": t.endpoint,
                    "priceUsdc": plain_decimal(self.prices.get(t.tool_name, t.price)),
                    "description": t.reason,
                }
                for t in TOOL_CATALOG
            ]})

        tool_name = path.rsplit("/", 1)[-1]
        if request.method != "POST" or tool_name not in self.prices:
            return httpx.Response(404, json={"error": "not found"})

        body = json.loads(request.content or b"{}")
        paid = request.headers.get(PAYMENT_HEADER) is not None
        self.requests.append({
            "tool": tool_name,
            "paid": paid,
            "trace_id": request.headers.get("X-Trace-Id"),
            "body": body,
        })

        # Each call to an unavailable tool uses up one scripted failure.
        if self.unavailable.get(tool_name, 0) > 0:
            self.unavailable[tool_name] -= 1
            return httpx.Response(503, json={"error": "temporarily unavailable"})

        if not paid:
            return httpx.Response(402, json=self._challenge(tool_name))
        return httpx.Response(200, json={"ok": True, "result": self._result(tool_name, body)})

    def _challenge(self, tool_name: str) -> dict[str, Any]:
        return {
            "x402Version": 2,
            "error": "Payment required",
            "accepts": [{
                "scheme": "exact",
                "network": self.network.value,
                "amount": str(amount_usdc_to_units(self.prices[tool_name])),
                "asset": "USDC",
                "payTo": SANDBOX_PAY_TO,
            }],
        }

    def _result(self, tool_name: str, body: dict[str, Any]) -> dict[str, Any]:
        vendor = str(body.get("vendor", ""))
        if tool_name == "vendor-risk":
            score = self.risk_scores.get(vendor, 0.2)
            return {"vendor": vendor, "riskScore": score, "level": "HIGH" if score > 0.75 else "LOW"}
        if tool_name == "compliance-check":
            flagged = vendor in self.flagged_vendors
            return {"vendor": vendor, "approved": not flagged, "score": 0.9 if flagged else 0.1}
        return {
            "token": body.get("token", "WETH"),
            "base": body.get("base", "USDC"),
            "price": self.price,
            "change24h": self.change_24h,
            "recommendation": self.recommendation,
        }


class SandboxPayer:
    """Pays sandbox challenges: reads the price from the 402 body, no signing."""

    def __init__(self, network: Network = Network.BASE_SEPOLIA):
        self.network = network
        self.payments: list[int] = []

    def required_cost(self, response: ToolResponse) -> Optional[int]:
        if response.status != 402:
            return None
        return int(self._requirement(response)["amount"])

    def build_payment_headers(self, response: ToolResponse) -> dict[str, str]:
        amount = int(self._requirement(response)["amount"])
        self.payments.append(amount)
        return {PAYMENT_HEADER: f"sandbox:{amount}"}

    def _requirement(self, response: ToolResponse) -> dict[str, Any]:
        body = response.body if isinstance(response.body, dict) else {}
        accepts = body.get("accepts") or []
        if not accepts:
            raise ToolCallFailure("x402", 402, "No payment requirements in 402 response")
        requirement = accepts[0]
        if requirement.get("network") != self.network.value:
            raise ToolCallFailure("x402", 402, f"402 requirement network {requirement.get('network')} not allowed")
        return requirement
