"""Shared fixtures: isolated data directory, canned command runner, file helpers."""

import os

import pytest

from macbroom.core import CommandError, CommandRunner, RiskLevel, Target
from macbroom.scanners import Scanner


class FakeRunner(CommandRunner):
    """CommandRunner with canned outputs keyed by the full argument tuple.

    A value may be a string (stdout), an exception instance (raised), or a
    callable taking the token (for simulating cancellation mid-call).
    """

    def __init__(self, outputs=None, available=("docker", "xcrun", "brew")):
        self.outputs = dict(outputs or {})
        self.available = set(available)
        self.calls = []

    def look_path(self, name):
        return f"/usr/local/bin/{name}" if name in self.available else None

    def run(self, token, name, *args, timeout=30.0):
        token.check()
        key = (name, *args)
        self.calls.append(key)
        value = self.outputs.get(key)
        if value is None:
            raise CommandError(list(key), 1, "no canned output")
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value(token)
        return value


class StaticScanner(Scanner):
    """Scanner returning a fixed list, or raising a fixed error."""

    def __init__(self, name, targets=(), error=None, on_scan=None):
        self.name = name
        self.description = f"{name} test scanner"
        self.targets = list(targets)
        self.error = error
        self.on_scan = on_scan
        self.calls = 0

    def scan(self, token):
        self.calls += 1
        if self.on_scan is not None:
            self.on_scan(token)
        if self.error is not None:
            raise self.error
        return list(self.targets)


def make_target(path, size=100, category="Test", risk=RiskLevel.SAFE, description="test item"):
    return Target(path=path, size=size, category=category, description=description, risk=risk)


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Keep snapshots and history out of the real home directory."""
    data = tmp_path / "macbroom-data"
    monkeypatch.setenv("MACBROOM_DATA_DIR", str(data))
    return data


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture
def static_scanner():
    return StaticScanner


@pytest.fixture
def target_factory():
    return make_target


@pytest.fixture
def write_file():
    """Create a file of ``size`` bytes (parents included) and return its path."""

    def _write(path, size=0, mtime=None):
        os.makedirs(os.path.dirname(str(path)), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(b"x" * size)
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return str(path)

    return _write
