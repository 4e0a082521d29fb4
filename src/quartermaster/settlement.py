"""
Conditional (time-locked) settlement.

A private payout is turned into an encrypted ERC-20 transfer that is only
submitted once its unlock time has passed, and only read back in clear
after the decryption authority releases it. Jobs move strictly forward:

    PENDING -> SUBMITTED -> DECRYPTED
    PENDING | SUBMITTED -> FAILED
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from .commands import parse_utc_timestamp, short_id
from .errors import (
    EncryptedJobError,
    EncryptedSubmissionError,
    InvalidTransitionError,
    RpcError,
)
from .rpc import JsonRpcClient, erc20_transfer_calldata

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_GAS_LIMIT = "0x493e0"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    DECRYPTED = "DECRYPTED"
    FAILED = "FAILED"


_JOB_TRANSITIONS = {
    (JobStatus.PENDING, JobStatus.SUBMITTED),
    (JobStatus.SUBMITTED, JobStatus.DECRYPTED),
    (JobStatus.PENDING, JobStatus.FAILED),
    (JobStatus.SUBMITTED, JobStatus.FAILED),
}


class AdvancePhase(str, Enum):
    WAITING = "WAITING"
    RETRY = "RETRY"
    SUBMITTED = "SUBMITTED"
    DECRYPTED = "DECRYPTED"
    FAILED = "FAILED"


@dataclass
class EncryptedJob:
    job_id: str
    scope: str
    command_id: str
    unlock_at: int
    encrypted_payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    tx_reference: Optional[str] = None
    decrypted_payload: Optional[dict[str, Any]] = None
    created_at: int = 0
    updated_at: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "scope": self.scope,
            "command_id": self.command_id,
            "unlock_at": self.unlock_at,
            "encrypted_payload": self.encrypted_payload,
            "status": JobStatus(self.status).value,
            "tx_reference": self.tx_reference,
            "decrypted_payload": self.decrypted_payload,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_error": self.last_error,
        }


@dataclass
class AdvanceResult:
    phase: AdvancePhase
    job: EncryptedJob
    tx_reference: Optional[str] = None
    decrypted_payload: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class DecryptionAuthority(Protocol):
    def encrypt(self, raw: dict[str, Any]) -> dict[str, Any]: ...

    def submit(self, opaque: dict[str, Any]) -> str: ...

    def fetch_decrypted(self, tx_reference: str) -> Optional[dict[str, Any]]: ...


# ---------------------------------------------------------------------------
# Authorities
# ---------------------------------------------------------------------------


class DryRunDecryptionAuthority:
    """Offline authority: opaque payloads and tx references are content hashes."""

    def __init__(self, token_address: str = ZERO_ADDRESS):
        self.token_address = token_address
        self.submissions: list[str] = []

    def encrypt(self, raw: dict[str, Any]) -> dict[str, Any]:
        digest = hashlib.sha256(str(raw.get("data", "")).encode()).hexdigest()[:32]
        return {"to": raw["to"], "data": f"0xenc{digest}", "gasLimit": DEFAULT_GAS_LIMIT}

    def submit(self, opaque: dict[str, Any]) -> str:
        canonical = json.dumps(opaque, sort_keys=True, separators=(",", ":"))
        tx_reference = "0x" + hashlib.sha256(canonical.encode()).hexdigest()
        self.submissions.append(tx_reference)
        return tx_reference

    def fetch_decrypted(self, tx_reference: str) -> Optional[dict[str, Any]]:
        return {
            "txHash": tx_reference,
            "decryptedTo": self.token_address,
            "decryptedDataSummary": "ERC20 transfer(to, amount)",
            "by": "bite_getDecryptedTransactionData",
        }


class RpcDecryptionAuthority:
    """
    Live authority over JSON-RPC.

    Encryption of the calldata happens outside this process; pass the
    component that produces opaque payloads as ``encryptor``.
    """

    def __init__(
        self,
        rpc_url: str,
        signer_key: str,
        chain_id: int,
        encryptor: Optional[Callable[[dict[str, Any]], dict[str, Any]]] = None,
        rpc: Optional[JsonRpcClient] = None,
    ):
        self._rpc = rpc or JsonRpcClient(rpc_url)
        self._signer_key = signer_key
        self._chain_id = int(chain_id)
        self._encryptor = encryptor

    def encrypt(self, raw: dict[str, Any]) -> dict[str, Any]:
        if self._encryptor is None:
            raise EncryptedJobError("No encryptor configured for live encrypted payloads")
        return self._encryptor(raw)

    def submit(self, opaque: dict[str, Any]) -> str:
        to = str(opaque.get("to") or "")
        data = str(opaque.get("data") or "")
        if not to or not data:
            raise EncryptedJobError("Encrypted transaction payload is missing to/data")
        tx = {
            "to": to,
            "data": data,
            "gas": int(str(opaque.get("gasLimit") or DEFAULT_GAS_LIMIT), 16),
            "chainId": self._chain_id,
        }
        try:
            return self._rpc.send_transaction(self._signer_key, tx)
        except RpcError as e:
            raise EncryptedSubmissionError(str(e)) from e

    def fetch_decrypted(self, tx_reference: str) -> Optional[dict[str, Any]]:
        try:
            result = self._rpc.call("bite_getDecryptedTransactionData", [tx_reference])
        except RpcError as e:
            raise EncryptedSubmissionError(str(e)) from e
        if not result:
            return None
        return result if isinstance(result, dict) else {"txHash": tx_reference, "data": result}


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class ConditionalSettlementQueue:
    """Creates encrypted jobs and moves each one at most one phase per call."""

    def __init__(
        self,
        authority: DecryptionAuthority,
        now: Callable[[], float] = time.time,
        token_address: str = ZERO_ADDRESS,
    ):
        self._authority = authority
        self._now = now
        self._token_address = token_address

    def create_job(
        self,
        scope: str,
        command_id: str,
        to: str,
        amount: int,
        unlock_at: str,
    ) -> EncryptedJob:
        unlock_epoch = parse_utc_timestamp(unlock_at)
        if unlock_epoch is None:
            raise EncryptedJobError(f"Invalid unlock timestamp: {unlock_at}")

        calldata = erc20_transfer_calldata(to, amount)
        opaque = self._authority.encrypt({"to": self._token_address, "data": calldata})
        now = int(self._now())
        logger.info("Encrypted transfer for %s/%s, unlocks at %s", scope, command_id, unlock_at)
        return EncryptedJob(
            job_id=short_id("job", f"{scope}:{command_id}:{to}:{unlock_at}"),
            scope=scope,
            command_id=command_id,
            unlock_at=unlock_epoch,
            encrypted_payload=opaque,
            created_at=now,
            updated_at=now,
        )

    def advance(self, job: EncryptedJob) -> AdvanceResult:
        status = JobStatus(job.status)
        if status in (JobStatus.DECRYPTED, JobStatus.FAILED):
            return AdvanceResult(AdvancePhase(status.value), job, job.tx_reference, job.decrypted_payload)

        now = int(self._now())
        if now < job.unlock_at:
            return AdvanceResult(AdvancePhase.WAITING, job, job.tx_reference)

        try:
            if status == JobStatus.PENDING:
                tx_reference = self._authority.submit(job.encrypted_payload)
                updated = _move(job, JobStatus.SUBMITTED, now, tx_reference=tx_reference, last_error=None)
                logger.info("Job %s submitted: %s", job.job_id, tx_reference)
                return AdvanceResult(AdvancePhase.SUBMITTED, updated, tx_reference)

            decrypted = self._authority.fetch_decrypted(job.tx_reference or "")
            if decrypted is None:
                return AdvanceResult(AdvancePhase.WAITING, job, job.tx_reference)
            updated = _move(job, JobStatus.DECRYPTED, now, decrypted_payload=decrypted, last_error=None)
            logger.info("Job %s decrypted", job.job_id)
            return AdvanceResult(AdvancePhase.DECRYPTED, updated, job.tx_reference, decrypted)

        except EncryptedSubmissionError as e:
            logger.warning("Job %s not advanced, retrying next tick: %s", job.job_id, e)
            return AdvanceResult(
                AdvancePhase.RETRY,
                replace(job, last_error=str(e), updated_at=now),
                job.tx_reference,
                error=str(e),
            )
        except EncryptedJobError as e:
            logger.error("Job %s failed: %s", job.job_id, e)
            updated = _move(job, JobStatus.FAILED, now, last_error=str(e))
            return AdvanceResult(AdvancePhase.FAILED, updated, job.tx_reference, error=str(e))


def _move(job: EncryptedJob, target: JobStatus, now: int, **changes: Any) -> EncryptedJob:
    current = JobStatus(job.status)
    if (current, target) not in _JOB_TRANSITIONS:
        raise InvalidTransitionError(current.value, target.value)
    return replace(job, status=target, updated_at=now, **changes)
