"""Minimal Ethereum JSON-RPC client over httpx."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Optional

import httpx
from eth_account import Account
from eth_utils import keccak

from .errors import RpcError

logger = logging.getLogger(__name__)

TRANSFER_SELECTOR = keccak(text="transfer(address,uint256)")[:4].hex()


def erc20_transfer_calldata(to: str, amount_units: int) -> str:
    """ABI-encoded `transfer(address,uint256)` call."""
    if amount_units < 0:
        raise ValueError("Transfer amount must be >= 0")
    address = to[2:] if to.lower().startswith("0x") else to
    if len(address) != 40:
        raise ValueError(f"Invalid Ethereum address: {to}")
    return "0x" + TRANSFER_SELECTOR + address.lower().rjust(64, "0") + format(amount_units, "x").rjust(64, "0")


class JsonRpcClient:
    def __init__(self, url: str, timeout: float = 30.0, http: Optional[httpx.Client] = None):
        self.url = url
        self._http = http or httpx.Client(timeout=timeout)
        self._ids = itertools.count(1)

    def call(self, method: str, params: Optional[list] = None) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            response = self._http.post(self.url, json=body, headers={"content-type": "application/json"})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RpcError(method, f"{type(e).__name__}: {e}") from e

        error = data.get("error")
        if error:
            raise RpcError(method, error.get("message", "RPC request failed"), error.get("code"))
        return data.get("result")

    def send_transaction(self, private_key: str, tx: dict[str, Any]) -> str:
        """Fill nonce and gas price, sign locally and broadcast. Returns the tx hash."""
        account = Account.from_key(private_key)
        filled = dict(tx)
        filled.setdefault("value", 0)
        if "nonce" not in filled:
            filled["nonce"] = int(self.call("eth_getTransactionCount", [account.address, "pending"]), 16)
        if "gasPrice" not in filled:
            filled["gasPrice"] = int(self.call("eth_gasPrice"), 16)
        signed = Account.sign_transaction(filled, private_key)
        raw = "0x" + bytes(signed.raw_transaction).hex()
        tx_hash = self.call("eth_sendRawTransaction", [raw])
        logger.info("Broadcast tx %s from %s", tx_hash, account.address)
        return tx_hash

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
