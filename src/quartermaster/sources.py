"""
Command sources.

A source hands the orchestrator raw command lines for a scope and is told
how each one was consumed. The file source keeps one JSONL inbox per
scope; consumed lines stay in the file with their status label.
"""

from __future__ import annotations

import fcntl
import json
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from .storage import ensure_private_dir, ensure_private_file, scope_path

PENDING = "PENDING"


@dataclass(frozen=True)
class PendingLine:
    text: str
    ref: str


class CommandSource(Protocol):
    def list_pending(self, scope: str) -> list[PendingLine]: ...

    def mark_consumed(self, ref: str, status_label: str) -> None: ...

    def append(self, scope: str, text: str) -> str: ...


def _make_ref(scope: str, index: int) -> str:
    return f"{scope}#{index}"


def _split_ref(ref: str) -> tuple[str, int]:
    scope, sep, index = ref.rpartition("#")
    if not sep or not index.isdigit():
        raise ValueError(f"Invalid line reference: {ref}")
    return scope, int(index)


class InMemoryCommandSource:
    """Process-local source, mostly for tests and the demo."""

    def __init__(self):
        self._lines: dict[str, list[dict]] = {}

    def append(self, scope: str, text: str) -> str:
        lines = self._lines.setdefault(scope, [])
        lines.append({"text": text, "status": PENDING})
        return _make_ref(scope, len(lines) - 1)

    def list_pending(self, scope: str) -> list[PendingLine]:
        return [
            PendingLine(line["text"], _make_ref(scope, i))
            for i, line in enumerate(self._lines.get(scope, []))
            if line["status"] == PENDING
        ]

    def mark_consumed(self, ref: str, status_label: str) -> None:
        scope, index = _split_ref(ref)
        self._lines[scope][index]["status"] = status_label

    def status_of(self, ref: str) -> Optional[str]:
        scope, index = _split_ref(ref)
        lines = self._lines.get(scope, [])
        return lines[index]["status"] if index < len(lines) else None


class FileCommandSource:
    """One JSONL inbox per scope under ``base_dir``, guarded by an flock."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        ensure_private_dir(self.base_dir)
        self._lock_path = self.base_dir / ".lock"
        ensure_private_file(self._lock_path)

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _inbox(self, scope: str) -> Path:
        return scope_path(self.base_dir, scope, ".jsonl")

    def _read(self, path: Path) -> list[dict]:
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def _atomic_write(self, path: Path, entries: list[dict]) -> None:
        tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry, separators=(",", ":"), ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        ensure_private_file(path)

    def append(self, scope: str, text: str) -> str:
        text = text.strip()
        if not text:
            raise ValueError("Command text must not be empty")
        with self._lock():
            path = self._inbox(scope)
            entries = self._read(path)
            entries.append({"text": text, "status": PENDING, "created_at": int(time.time())})
            self._atomic_write(path, entries)
            return _make_ref(scope, len(entries) - 1)

    def list_pending(self, scope: str) -> list[PendingLine]:
        with self._lock():
            entries = self._read(self._inbox(scope))
        return [
            PendingLine(entry["text"], _make_ref(scope, i))
            for i, entry in enumerate(entries)
            if entry.get("status") == PENDING
        ]

    def mark_consumed(self, ref: str, status_label: str) -> None:
        scope, index = _split_ref(ref)
        with self._lock():
            path = self._inbox(scope)
            entries = self._read(path)
            if index >= len(entries):
                raise KeyError(f"Line not found: {ref}")
            entries[index]["status"] = status_label
            entries[index]["consumed_at"] = int(time.time())
            self._atomic_write(path, entries)
