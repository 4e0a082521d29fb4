"""
Quartermaster error types.

Specific exceptions for each failure mode, so the orchestrator can map
them onto command outcomes (abort, fail, retry next tick, etc.).
"""

from __future__ import annotations

import json
from typing import Any, Optional


class QuartermasterError(Exception):
    """Base error for all Quartermaster operations."""
    pass


class ConfigError(QuartermasterError):
    """An environment setting could not be parsed."""
    pass


# Parse errors
class ParseError(QuartermasterError):
    """Input text is not a supported command."""
    pass


class MissingFieldsError(ParseError):
    """Command type was recognised but required fields are absent."""
    def __init__(
        self,
        command_type: str,
        missing: list[str],
        got: dict[str, Any],
        example: str,
    ):
        self.command_type = command_type
        self.missing = list(missing)
        self.got = dict(got)
        self.example = example
        super().__init__(
            f"missing=[{','.join(self.missing)}] "
            f"got={json.dumps(self.got, separators=(',', ':'), default=str)} "
            f'example="{example}"'
        )


# Policy errors
class PolicyRejection(QuartermasterError):
    """Deterministic denial. The command is aborted and never retried."""
    def __init__(self, reason_code: str, message: str):
        self.reason_code = reason_code
        super().__init__(message)


class BudgetExceededError(PolicyRejection):
    """A payment challenge asked for more than the remaining budget."""
    def __init__(self, required_units: int, remaining_units: int):
        self.required_units = required_units
        self.remaining_units = remaining_units
        super().__init__(
            "BUDGET_EXCEEDED",
            f"Budget exceeded: required {required_units / 1_000_000:.6f} USDC, "
            f"remaining {remaining_units / 1_000_000:.6f} USDC",
        )


class ExpiredMandateError(PolicyRejection):
    """Cart mandate expired before it could be used."""
    def __init__(self, expires_at: int):
        self.expires_at = expires_at
        super().__init__("EXPIRED_MANDATE", f"Cart mandate expired at {expires_at}")


# Mandate errors
class MandateError(QuartermasterError):
    """Base error for mandate issues."""
    pass


class MandateVerificationError(MandateError):
    """Cart signature did not recover to the expected signer."""
    pass


# Tool call errors
class ToolError(QuartermasterError):
    """Base error for paid tool calls."""
    pass


class TransientToolError(ToolError):
    """Transport or upstream failure that may succeed if retried."""
    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: float = 1.0):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class ToolCallFailure(ToolError):
    """Tool call failed for good (non-retryable or retries exhausted)."""
    def __init__(self, tool_name: str, status_code: Optional[int], message: str):
        self.tool_name = tool_name
        self.status_code = status_code
        status = status_code if status_code is not None else "n/a"
        super().__init__(f"{tool_name} failed ({status}): {message}")


# Settlement errors
class SettlementError(QuartermasterError):
    """Base error for settlement and encrypted jobs."""
    pass


class EncryptedSubmissionError(SettlementError):
    """Submission did not go through. The job is retried next tick."""
    pass


class EncryptedJobError(SettlementError):
    """Unrecoverable job error. The job moves to FAILED."""
    pass


# Lifecycle errors
class InvalidTransitionError(QuartermasterError):
    """Status change not allowed by the lifecycle table."""
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition {current} -> {target}")


class CommandNotFoundError(QuartermasterError):
    """No command with this id in the scope."""
    pass


class TickInProgressError(QuartermasterError):
    """Another tick holds the scope lock."""
    pass


# Chain errors
class RpcError(QuartermasterError):
    """JSON-RPC call failed or returned an error object."""
    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed: {message}")
