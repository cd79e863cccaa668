"""
Tests for the shared building blocks in macbroom.core.

Validates:
- Target invariants (non-negative size, non-empty category)
- Risk ordering and display names
- CancelToken explicit cancel, deadline and parent propagation
- CommandRunner success, failure, timeout and cancellation
- dir_size recursion, symlink handling and cancellation
"""

import json
import os
import sys
import threading

import pytest

from macbroom.core import (
    Cancelled,
    CancelToken,
    CommandError,
    CommandRunner,
    DeadlineExceeded,
    RiskLevel,
    Target,
    dir_size,
    dir_usage,
    entry_size,
    entry_usage,
    human_bytes,
    parse_size_to_bytes,
    write_json_atomic,
)


class TestTarget:
    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            Target(path="/tmp/x", size=-1, category="Test", description="", risk=RiskLevel.SAFE)

    def test_empty_category_rejected(self):
        with pytest.raises(ValueError):
            Target(path="/tmp/x", size=1, category="", description="", risk=RiskLevel.SAFE)

    def test_zero_size_allowed(self):
        t = Target(path="docker image abc", size=0, category="Docker", description="", risk=RiskLevel.MODERATE)
        assert t.size == 0

    def test_to_dict_renders_risk_name(self):
        t = Target(path="/tmp/x", size=2048, category="Test", description="d", risk=RiskLevel.DANGEROUS)
        data = t.to_dict()
        assert data["risk"] == "Dangerous"
        assert data["size_human"] == "2.00 KB"
        assert data["mod_time"] is None


class TestRiskLevel:
    def test_ordering(self):
        assert RiskLevel.SAFE < RiskLevel.MODERATE < RiskLevel.DANGEROUS

    def test_str(self):
        assert [str(r) for r in RiskLevel] == ["Safe", "Moderate", "Dangerous"]


class TestFormatting:
    def test_human_bytes(self):
        assert human_bytes(0) == "0 B"
        assert human_bytes(1023) == "1023 B"
        assert human_bytes(1024**3) == "1.00 GB"

    def test_parse_size_to_bytes(self):
        assert parse_size_to_bytes("500MB") == 500 * 1024**2
        assert parse_size_to_bytes("1.5 GB") == int(1.5 * 1024**3)
        assert parse_size_to_bytes("42") == 42


class TestCancelToken:
    def test_fresh_token_not_cancelled(self):
        token = CancelToken()
        assert not token.cancelled
        token.check()

    def test_cancel_raises_cancelled(self):
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            token.check()

    def test_deadline_raises_deadline_exceeded(self):
        token = CancelToken(timeout=0)
        with pytest.raises(DeadlineExceeded):
            token.check()

    def test_deadline_is_a_cancellation(self):
        assert issubclass(DeadlineExceeded, Cancelled)

    def test_parent_cancel_reaches_child(self):
        parent = CancelToken()
        child = parent.child()
        parent.cancel()
        assert child.cancelled

    def test_child_cancel_does_not_reach_parent(self):
        parent = CancelToken()
        child = parent.child()
        child.cancel()
        assert not parent.cancelled


class TestCommandRunner:
    def test_returns_stdout(self):
        out = CommandRunner().run(CancelToken(), sys.executable, "-c", "print('hello')")
        assert out.strip() == "hello"

    def test_nonzero_exit_raises_command_error(self):
        with pytest.raises(CommandError) as info:
            CommandRunner().run(CancelToken(), sys.executable, "-c", "import sys; sys.exit(3)")
        assert info.value.returncode == 3

    def test_missing_binary_raises_command_error(self):
        with pytest.raises(CommandError) as info:
            CommandRunner().run(CancelToken(), "macbroom-definitely-not-a-binary")
        assert info.value.returncode is None

    def test_already_cancelled_token_never_spawns(self):
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            CommandRunner().run(token, sys.executable, "-c", "print('x')")

    def test_timeout_kills_process(self):
        with pytest.raises(CommandError, match="timed out"):
            CommandRunner().run(CancelToken(), sys.executable, "-c", "import time; time.sleep(10)", timeout=0.3)

    def test_cancel_during_run_propagates(self):
        token = CancelToken()
        timer = threading.Timer(0.2, token.cancel)
        timer.start()
        try:
            with pytest.raises(Cancelled):
                CommandRunner().run(token, sys.executable, "-c", "import time; time.sleep(10)")
        finally:
            timer.cancel()

    def test_look_path(self):
        runner = CommandRunner()
        assert runner.look_path("macbroom-definitely-not-a-binary") is None


class TestSizing:
    def test_dir_size_is_recursive(self, tmp_path, write_file):
        write_file(tmp_path / "a.bin", 10)
        write_file(tmp_path / "sub" / "b.bin", 20)
        write_file(tmp_path / "sub" / "deeper" / "c.bin", 30)
        assert dir_size(str(tmp_path)) == 60

    def test_dir_size_does_not_follow_symlinks(self, tmp_path, write_file):
        outside = tmp_path / "outside"
        write_file(outside / "big.bin", 1000)
        inside = tmp_path / "inside"
        write_file(inside / "small.bin", 5)
        os.symlink(outside, inside / "link")
        assert dir_size(str(inside)) == 5

    def test_dir_size_honors_cancellation(self, tmp_path, write_file):
        write_file(tmp_path / "a.bin", 10)
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            dir_size(str(tmp_path), token)

    def test_dir_size_skip_callback(self, tmp_path, write_file):
        write_file(tmp_path / "keep" / "a.bin", 10)
        write_file(tmp_path / "drop" / "b.bin", 20)
        assert dir_size(str(tmp_path), skip=lambda p: p.endswith("drop")) == 10

    def test_dir_usage_counts_skipped_entries(self, tmp_path, write_file):
        write_file(tmp_path / "keep" / "a.bin", 10)
        write_file(tmp_path / "keep" / "drop.db", 20)
        write_file(tmp_path / "drop" / "b.bin", 30)
        assert dir_usage(str(tmp_path), skip=lambda p: os.path.basename(p).startswith("drop")) == (10, 2)

    def test_entry_usage_file_never_skips(self, tmp_path, write_file):
        path = write_file(tmp_path / "f.bin", 4)
        size, is_dir, _, skipped = entry_usage(path, skip=lambda p: True)
        assert (size, is_dir, skipped) == (4, False, 0)

    def test_entry_size_missing_path(self, tmp_path):
        assert entry_size(str(tmp_path / "nope")) == (0, False, None)

    def test_entry_size_directory(self, tmp_path, write_file):
        write_file(tmp_path / "d" / "x", 7)
        size, is_dir, mtime = entry_size(str(tmp_path / "d"))
        assert (size, is_dir) == (7, True)
        assert mtime is not None


class TestWriteJsonAtomic:
    def test_creates_parents_and_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "nested" / "dir" / "data.json"
        write_json_atomic(target, {"a": 1})
        assert json.loads(target.read_text()) == {"a": 1}
        assert os.listdir(target.parent) == ["data.json"]

    def test_overwrites_existing(self, tmp_path):
        target = tmp_path / "data.json"
        write_json_atomic(target, {"a": 1})
        write_json_atomic(target, {"a": 2})
        assert json.loads(target.read_text()) == {"a": 2}
