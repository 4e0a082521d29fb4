"""
Settlement wallet and swap venue capabilities.

The orchestrator only talks to the protocols here. Live implementations
sign locally with eth-account and broadcast over JSON-RPC; dry-run ones
return deterministic references so the full flow can run offline.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Callable, Optional, Protocol

from eth_account import Account

from .errors import PolicyRejection, RpcError
from .money import amount_usdc_to_units, plain_decimal
from .rpc import JsonRpcClient, erc20_transfer_calldata

logger = logging.getLogger(__name__)

DEFAULT_TRANSFER_GAS = 100_000


@dataclass
class Confirmation:
    status: str
    block_ref: Optional[str] = None
    confirmations: int = 0

    def to_dict(self) -> dict:
        return {"status": self.status, "block_ref": self.block_ref, "confirmations": self.confirmations}


class SettlementWallet(Protocol):
    @property
    def address(self) -> str: ...

    def transfer(self, to: str, amount: int) -> str: ...

    def wait_for_confirmation(self, tx_reference: str) -> Confirmation: ...


class RpcSettlementWallet:
    """USDC transfers signed with a local key and sent over JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        usdc_address: str,
        chain_id: int,
        rpc: Optional[JsonRpcClient] = None,
        poll_interval: float = 2.0,
        max_polls: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._rpc = rpc or JsonRpcClient(rpc_url)
        self._private_key = private_key
        self._account = Account.from_key(private_key)
        self.usdc_address = usdc_address
        self.chain_id = int(chain_id)
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._sleep = sleep

    @property
    def address(self) -> str:
        return self._account.address

    def transfer(self, to: str, amount: int) -> str:
        data = erc20_transfer_calldata(to, amount)
        try:
            gas = int(self._rpc.call(
                "eth_estimateGas",
                [{"from": self.address, "to": self.usdc_address, "data": data}],
            ), 16)
        except (RpcError, TypeError, ValueError) as e:
            logger.warning("Gas estimate failed, using default: %s", e)
            gas = DEFAULT_TRANSFER_GAS
        tx_hash = self._rpc.send_transaction(self._private_key, {
            "to": self.usdc_address,
            "data": data,
            "gas": gas,
            "chainId": self.chain_id,
        })
        logger.info("USDC transfer of %d units to %s: %s", amount, to, tx_hash)
        return tx_hash

    def wait_for_confirmation(self, tx_reference: str) -> Confirmation:
        for _ in range(self._max_polls):
            receipt = self._rpc.call("eth_getTransactionReceipt", [tx_reference])
            if receipt:
                block = int(receipt.get("blockNumber") or "0x0", 16)
                latest = int(self._rpc.call("eth_blockNumber"), 16)
                status = "success" if receipt.get("status") == "0x1" else "reverted"
                return Confirmation(status, str(block), max(latest - block + 1, 1))
            self._sleep(self._poll_interval)
        return Confirmation("pending", None, 0)


class DryRunWallet:
    """Records transfers and returns deterministic tx references."""

    def __init__(self, address: str = "0x000000000000000000000000000000000000dEaD"):
        self._address = address
        self.transfers: list[dict[str, Any]] = []

    @property
    def address(self) -> str:
        return self._address

    def transfer(self, to: str, amount: int) -> str:
        seed = f"{self._address}:{to.lower()}:{amount}:{len(self.transfers)}"
        tx_reference = "0x" + hashlib.sha256(seed.encode()).hexdigest()
        self.transfers.append({"to": to, "amount": amount, "tx_reference": tx_reference})
        logger.info("[dry-run] transfer %d units to %s: %s", amount, to, tx_reference)
        return tx_reference

    def wait_for_confirmation(self, tx_reference: str) -> Confirmation:
        return Confirmation("success", "dry-run", 1)


# ---------------------------------------------------------------------------
# Swaps
# ---------------------------------------------------------------------------


@dataclass
class SwapResult:
    tx_reference: str
    chain: str
    venue: str
    reason_codes: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "tx_reference": self.tx_reference,
            "chain": self.chain,
            "venue": self.venue,
            "reason_codes": list(self.reason_codes),
            "details": self.details,
        }


class SwapVenue(Protocol):
    def swap(self, amount: Decimal, max_spend: Decimal, slippage_bps: int) -> SwapResult: ...


class DryRunSwapVenue:
    """Simulated USDC -> WETH swap that still enforces its own guards."""

    def __init__(
        self,
        chain: str = "eip155:84532",
        max_slippage_bps: int = 200,
        now: Callable[[], float] = time.time,
    ):
        self.chain = chain
        self.max_slippage_bps = max_slippage_bps
        self._now = now

    def swap(self, amount: Decimal, max_spend: Decimal, slippage_bps: int) -> SwapResult:
        if amount > max_spend:
            raise PolicyRejection("MAX_SPEND_EXCEEDED", "Swap amount exceeds max spend")
        if slippage_bps > self.max_slippage_bps:
            raise PolicyRejection("SLIPPAGE_TOO_HIGH", "Slippage too high")
        return SwapResult(
            tx_reference=f"simulated_{int(self._now() * 1000)}",
            chain=self.chain,
            venue="cdp-swap-simulated",
            reason_codes=["SIMULATED_TX", "SLIPPAGE_GUARDED"],
            details={
                "amountIn": str(amount_usdc_to_units(amount)),
                "slippageBps": slippage_bps,
            },
        )


def swap_quote(amount: Decimal, price: Decimal, slippage_bps: int) -> dict[str, str]:
    """Expected WETH out at ``price`` USDC/WETH and the slippage-bounded minimum."""
    if price <= 0:
        raise ValueError("Price must be positive")
    estimated_out = (amount / price).quantize(Decimal("0.000000000001"), rounding=ROUND_FLOOR)
    min_out = (estimated_out * (Decimal(10000) - slippage_bps) / Decimal(10000)).quantize(
        Decimal("0.000000000001"), rounding=ROUND_FLOOR
    )
    return {
        "price": plain_decimal(price),
        "estimatedOut": plain_decimal(estimated_out),
        "minOut": plain_decimal(min_out),
    }
