"""
Human-readable audit trail.

One line per notable outcome, appended to a JSONL file with an HMAC hash
chain so tampering is detected during reads. Writing is fire-and-forget:
a failed append is logged and never interrupts command execution.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional, TextIO

from .storage import ensure_private_dir, ensure_private_file

logger = logging.getLogger(__name__)

AUDIT_KEY_ENV = "QM_AUDIT_HMAC_KEY"


@dataclass
class AuditEvent:
    scope: str
    text: str
    timestamp: float
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"), ensure_ascii=False)


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Path,
        key_path: Path,
        now: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.key_path = Path(key_path)
        self._now = now

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)

        self._hmac_key = self._load_or_create_key()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    @staticmethod
    def _scan_last_hash(f: TextIO) -> str:
        last = ""
        f.seek(0)
        for line in f:
            if line.strip():
                last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def append_line(self, scope: str, text: str) -> Optional[AuditEvent]:
        """Append one line. Returns the event, or None if the write failed.

        Other processes may append to the same file, so the chain tail is
        re-read under an exclusive lock before every write.
        """
        try:
            payload = {"scope": scope, "text": text, "timestamp": self._now()}
            with open(self.path, "a+", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    prev_hash = self._scan_last_hash(f)
                    current_hash = self._event_hash(payload, prev_hash)
                    event = AuditEvent(**payload, prev_hash=prev_hash or None, event_hash=current_hash)
                    f.write(event.to_json() + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            ensure_private_file(self.path)
        except Exception:
            logger.warning("Audit append failed for scope %s: %s", scope, text, exc_info=True)
            return None

        logger.info("[audit] %s: %s", scope, text)
        return event

    def read_lines(self, scope: Optional[str] = None, limit: int = 100) -> list[AuditEvent]:
        """Verify the whole chain and return the last ``limit`` matching events."""
        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if scope and raw.get("scope") != scope:
                    continue
                events.append(
                    AuditEvent(**{k: v for k, v in raw.items() if k in AuditEvent.__dataclass_fields__})
                )

        return events[-limit:] if limit else events
