"""
Orchestrator settings.

Defaults are safe for local use (dry-run wallet and decryption authority);
every field can be overridden from ``QM_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigError
from .money import limit_usdc_to_units


DEFAULT_DATA_DIR = Path.home() / ".quartermaster"
DEFAULT_TOOL_ALLOWLIST = frozenset({"vendor-risk", "compliance-check", "price-check"})
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

EXECUTOR_KEY_ENV = "QM_EXECUTOR_PRIVATE_KEY"
APPROVER_KEY_ENV = "QM_APPROVER_PRIVATE_KEY"


class Network(str, Enum):
    BASE_MAINNET = "eip155:8453"
    BASE_SEPOLIA = "eip155:84532"


@dataclass
class OrchestratorConfig:
    max_per_command_usdc: Decimal = Decimal("2")
    daily_limit_usdc: Decimal = Decimal("20")
    require_approval_above_usdc: Decimal = Decimal("0.1")
    auto_run_under_usdc: Decimal = Decimal("5")
    tool_allowlist: frozenset[str] = field(default_factory=lambda: DEFAULT_TOOL_ALLOWLIST)
    max_slippage_bps: int = 200
    cart_ttl_seconds: int = 300
    tools_base_url: str = "http://localhost:8788"
    network: Network = Network.BASE_SEPOLIA
    ap2_chain_id: int = 84532
    rpc_url: Optional[str] = None
    usdc_address: str = ZERO_ADDRESS
    live: bool = False
    data_dir: Path = DEFAULT_DATA_DIR
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    tick_interval_seconds: float = 5.0

    @property
    def max_per_command_units(self) -> int:
        return limit_usdc_to_units(self.max_per_command_usdc)

    @property
    def daily_limit_units(self) -> int:
        return limit_usdc_to_units(self.daily_limit_usdc)

    @property
    def approval_threshold_units(self) -> int:
        return limit_usdc_to_units(max(self.auto_run_under_usdc, self.require_approval_above_usdc))

    @property
    def chain_id(self) -> int:
        return int(self.network.value.split(":", 1)[1])

    @property
    def db_path(self) -> Path:
        return self.data_dir / "quartermaster.sqlite3"

    @property
    def audit_path(self) -> Path:
        return self.data_dir / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.data_dir / "secrets" / "audit_hmac.key"

    @property
    def inbox_dir(self) -> Path:
        return self.data_dir / "inbox"

    @property
    def lock_dir(self) -> Path:
        return self.data_dir / "locks"

    def validate_live(self, env: Optional[Mapping[str, str]] = None) -> list[str]:
        """Return the settings live mode still needs (empty when ready)."""
        env = os.environ if env is None else env
        missing: list[str] = []
        if not self.rpc_url:
            missing.append("QM_RPC_URL")
        if self.usdc_address.lower() == ZERO_ADDRESS:
            missing.append("QM_USDC_ADDRESS")
        if not env.get(EXECUTOR_KEY_ENV):
            missing.append(EXECUTOR_KEY_ENV)
        return missing

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "OrchestratorConfig":
        env = os.environ if env is None else env
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            var = _ENV_NAMES.get(f.name, f"QM_{f.name.upper()}")
            raw = env.get(var)
            if raw is None or raw.strip() == "":
                continue
            overrides[f.name] = _coerce(f.name, var, raw.strip())
        return cls(**overrides)


_ENV_NAMES = {
    "max_per_command_usdc": "QM_MAX_PER_CMD_USDC",
}


def _coerce(name: str, var: str, raw: str) -> Any:
    try:
        if name.endswith("_usdc"):
            value = Decimal(raw)
            if value < 0:
                raise ConfigError(f"{var} must be >= 0")
            return value
        if name == "tool_allowlist":
            return frozenset(item.strip() for item in raw.split(",") if item.strip())
        if name == "network":
            return Network(raw)
        if name == "live":
            if raw.lower() not in {"0", "1", "true", "false", "yes", "no"}:
                raise ConfigError(f"{var} must be a boolean flag")
            return raw.lower() in {"1", "true", "yes"}
        if name == "data_dir":
            return Path(raw).expanduser()
        if name in {"max_slippage_bps", "cart_ttl_seconds", "ap2_chain_id", "retry_attempts"}:
            value = int(raw)
            if value < 0:
                raise ConfigError(f"{var} must be >= 0")
            return value
        if name in {"timeout_seconds", "retry_base_delay", "tick_interval_seconds"}:
            return float(raw)
        return raw
    except (InvalidOperation, ValueError) as e:
        raise ConfigError(f"Invalid value for {var}: {raw!r}") from e
