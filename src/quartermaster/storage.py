"""Private on-disk locations for stores, inboxes, locks and audit files."""

from __future__ import annotations

import os
import re
from pathlib import Path


_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def scope_filename(scope: str) -> str:
    """Map a scope name onto a filesystem-safe stem."""
    if not scope or not scope.strip():
        raise ValueError("Scope must be a non-empty string")
    return _UNSAFE_CHARS_RE.sub("_", scope.strip())


def scope_path(base_dir: Path, scope: str, suffix: str) -> Path:
    """Return ``base_dir/<scope><suffix>``, rejecting anything that escapes base_dir."""
    path = (base_dir / f"{scope_filename(scope)}{suffix}").resolve()
    if path.parent != base_dir.resolve():
        raise ValueError(f"Unsafe path for scope: {scope}")
    return path
