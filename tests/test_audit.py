"""Tests for the tamper-evident audit trail."""

import json
import os
import stat

import pytest

from quartermaster.audit import AUDIT_KEY_ENV, AuditTrail


@pytest.fixture
def trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
        now=lambda: 1772366400.0,
    )


def test_lines_are_chained(trail):
    first = trail.append_line("doc-1", "QM cmd_1 DONE")
    second = trail.append_line("doc-1", "QM cmd_2 ABORTED reason=OVER_CMD_BUDGET")
    assert first.prev_hash is None
    assert second.prev_hash == first.event_hash
    assert [e.text for e in trail.read_lines()] == [first.text, second.text]


def test_read_filters_scope_and_limit(trail):
    for i in range(3):
        trail.append_line("doc-1", f"line {i}")
    trail.append_line("doc-2", "other")
    assert [e.text for e in trail.read_lines("doc-1", limit=2)] == ["line 1", "line 2"]
    assert [e.text for e in trail.read_lines("doc-2")] == ["other"]


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.append_line("doc-1", "QM cmd_1 TOOL vendor-risk paid=0.25USDC")
    trail.append_line("doc-1", "QM cmd_1 DONE")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["text"] = "QM cmd_1 TOOL vendor-risk paid=0.00USDC"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_lines()


def test_deleted_line_breaks_chain(trail, tmp_path):
    for i in range(3):
        trail.append_line("doc-1", f"line {i}")
    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_lines()


def test_chain_continues_after_reopen(trail, tmp_path):
    trail.append_line("doc-1", "before")
    reopened = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secret" / "audit_hmac.key")
    reopened.append_line("doc-1", "after")
    assert [e.text for e in reopened.read_lines()] == ["before", "after"]


def test_interleaved_writers_keep_one_chain(trail, tmp_path):
    other = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secret" / "audit_hmac.key")
    trail.append_line("doc-1", "tick")
    other.append_line("doc-1", "approve")
    third = trail.append_line("doc-1", "tick again")

    reader = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secret" / "audit_hmac.key")
    events = reader.read_lines()
    assert [e.text for e in events] == ["tick", "approve", "tick again"]
    assert third.prev_hash == events[1].event_hash


def test_append_failure_is_not_raised(trail, tmp_path):
    os.remove(tmp_path / "audit.jsonl")
    os.mkdir(tmp_path / "audit.jsonl")
    assert trail.append_line("doc-1", "lost") is None


def test_key_file_created_without_env(tmp_path, monkeypatch):
    monkeypatch.delenv(AUDIT_KEY_ENV, raising=False)
    key_path = tmp_path / "secret" / "audit_hmac.key"
    trail = AuditTrail(tmp_path / "audit.jsonl", key_path)
    trail.append_line("doc-1", "hello")

    assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600
    assert stat.S_IMODE(os.stat(tmp_path / "audit.jsonl").st_mode) == 0o600
    assert AuditTrail(tmp_path / "audit.jsonl", key_path).read_lines()[0].text == "hello"


def test_wrong_key_fails_verification(trail, tmp_path, monkeypatch):
    trail.append_line("doc-1", "hello")
    monkeypatch.setenv(AUDIT_KEY_ENV, "another-key")
    with pytest.raises(RuntimeError, match="event hash mismatch"):
        AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secret" / "audit_hmac.key").read_lines()
