#!/usr/bin/env python3
"""Shared building blocks for the macbroom cleanup pipeline.

Everything here is used by more than one stage of the pipeline:
- Target value type and the three-level risk taxonomy
- Cooperative cancellation token threaded through every blocking call
- Replaceable external command runner (subprocess with cancellation polling)
- Recursive directory sizing, byte formatting, per-user data paths
- Logger setup and JSON file helpers
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import enum
import json
import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "macbroom"
DATA_DIR_ENV = "MACBROOM_DATA_DIR"
LOG_FILE_ENV = "MACBROOM_LOG"

COMMAND_TIMEOUT = 30.0
COMMAND_POLL_INTERVAL = 0.05

CRITICAL_DELETE_PATHS = {
    "/",
    "/Applications",
    "/Library",
    "/System",
    "/Users",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/lib",
    "/private",
    "/proc",
    "/sbin",
    "/usr",
    "/var",
}


def data_dir() -> Path:
    override = os.getenv(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".local" / "share" / APP_NAME


def default_log_file() -> Path:
    override = os.getenv(LOG_FILE_ENV)
    if override:
        return Path(override).expanduser()
    return data_dir() / "actions.log"


# ------------------------------- Utilities ---------------------------------- #


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def parse_size_to_bytes(value: str) -> int:
    text = value.strip().lower().replace(" ", "")
    units: list[tuple[str, int]] = [
        ("tb", 1024**4),
        ("gb", 1024**3),
        ("mb", 1024**2),
        ("kb", 1024),
        ("b", 1),
    ]
    for u, factor in units:
        if text.endswith(u):
            number = float(text[: -len(u)] or "0")
            return int(number * factor)
    return int(float(text))


def days_since(epoch: float, now_ts: float | None = None) -> int:
    ref = now_ts if now_ts is not None else time.time()
    return max(0, int((ref - epoch) // 86400))


def resolve_writable_path(preferred: Path, fallback_name: str) -> Path:
    """Return preferred path when writable, otherwise fallback in the temp dir."""
    try:
        preferred.parent.mkdir(parents=True, exist_ok=True)
        probe = preferred.parent / ".write_probe"
        probe.touch(exist_ok=True)
        probe.unlink(missing_ok=True)
        return preferred
    except OSError:
        fallback = Path(tempfile.gettempdir()) / APP_NAME / fallback_name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        return fallback


def setup_logger(log_file: Path | None = None, verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = resolve_writable_path(log_file or default_log_file(), "actions.log")

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    if verbose:
        sh = logging.StreamHandler()
        sh.setLevel(logging.DEBUG)
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    return logger


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON through a sibling temp file, then rename it into place."""
    ensure_parent(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=True)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        _unlink_quietly(tmp_name)
        raise


def _unlink_quietly(name: str) -> None:
    try:
        os.unlink(name)
    except FileNotFoundError:
        pass


# ---------------------------- Risk & Targets -------------------------------- #


class RiskLevel(enum.IntEnum):
    """Deletion risk, ordered for display emphasis."""

    SAFE = 0
    MODERATE = 1
    DANGEROUS = 2

    def __str__(self) -> str:
        return self.name.capitalize()


@dataclasses.dataclass(frozen=True, slots=True)
class Target:
    """One reclaimable unit: a file, a directory, or a tool-managed resource.

    ``path`` is usually a filesystem path. Resources that only an external tool
    can remove use a synthetic identifier (``"docker image <id>"``,
    ``"simulator <udid>"``) that the trash collaborator understands.
    """

    path: str
    size: int
    category: str
    description: str
    risk: RiskLevel
    mod_time: dt.datetime | None = None
    is_dir: bool = False

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError(f"Target size must be >= 0: {self.path} size={self.size}")
        if not self.category:
            raise ValueError(f"Target category must be non-empty: {self.path}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "size_human": human_bytes(self.size),
            "category": self.category,
            "description": self.description,
            "risk": str(self.risk),
            "mod_time": self.mod_time.isoformat() if self.mod_time else None,
            "is_dir": self.is_dir,
        }


def total_size(targets: list[Target]) -> int:
    return sum(t.size for t in targets)


# ------------------------------ Cancellation -------------------------------- #


class Cancelled(Exception):
    """The shared cancellation signal fired."""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


class DeadlineExceeded(Cancelled):
    """The shared operation ran past its deadline."""

    def __init__(self, message: str = "deadline exceeded"):
        super().__init__(message)


class CancelToken:
    """Cooperative cancellation signal shared by one top-level operation.

    A token is cancelled explicitly with :meth:`cancel`, implicitly once its
    optional deadline passes, or when its parent token is cancelled.
    """

    def __init__(self, timeout: float | None = None, parent: CancelToken | None = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    def child(self, timeout: float | None = None) -> CancelToken:
        return CancelToken(timeout=timeout, parent=self)

    def error(self) -> Cancelled | None:
        if self._event.is_set():
            return Cancelled()
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return DeadlineExceeded()
        if self._parent is not None:
            return self._parent.error()
        return None

    @property
    def cancelled(self) -> bool:
        return self.error() is not None

    def check(self) -> None:
        err = self.error()
        if err is not None:
            raise err


# ---------------------------- Command Execution ----------------------------- #


class CommandError(Exception):
    """An external command could not be started or exited non-zero."""

    def __init__(self, command: list[str], returncode: int | None, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f"exit={returncode}" if returncode is not None else "not started"
        super().__init__(f"{' '.join(command)} failed ({detail}): {self.stderr}")


class CommandRunner:
    """Runs external tools and looks up executables.

    Scanners and the trash collaborator receive an instance instead of calling
    subprocess directly.
    """

    poll_interval = COMMAND_POLL_INTERVAL

    def look_path(self, name: str) -> str | None:
        return shutil.which(name)

    def run(self, token: CancelToken, name: str, *args: str, timeout: float = COMMAND_TIMEOUT) -> str:
        token.check()
        command = [name, *args]
        step = token.child(timeout=timeout)
        try:
            proc = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            raise CommandError(command, None, str(exc)) from exc

        while True:
            try:
                out, err = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if step.cancelled:
                    proc.kill()
                    proc.communicate()
                    token.check()
                    raise CommandError(command, None, f"timed out after {timeout:g}s")

        if proc.returncode != 0:
            raise CommandError(command, proc.returncode, err)
        return out


# ------------------------------ Sizing -------------------------------------- #


def dir_usage(
    path: str,
    token: CancelToken | None = None,
    skip: Callable[[str], bool] | None = None,
) -> tuple[int, int]:
    """Return ``(bytes, skipped)`` for the subtree below ``path``.

    Only regular files count and symlinks are not followed. ``skipped`` is the
    number of entries ``skip`` rejected; their bytes are not included.
    Unreadable entries are ignored. The token is checked once per directory.
    """
    total = 0
    skipped = 0
    stack = [path]
    while stack:
        current = stack.pop()
        if token is not None:
            token.check()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    if skip is not None and skip(entry.path):
                        skipped += 1
                        continue
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(entry.path)
                        elif entry.is_file(follow_symlinks=False):
                            total += entry.stat(follow_symlinks=False).st_size
                    except OSError:
                        continue
        except OSError:
            continue
    return total, skipped


def dir_size(
    path: str,
    token: CancelToken | None = None,
    skip: Callable[[str], bool] | None = None,
) -> int:
    """Sum of all regular-file bytes below ``path`` (symlinks not followed)."""
    return dir_usage(path, token, skip)[0]


def entry_usage(
    path: str,
    token: CancelToken | None = None,
    skip: Callable[[str], bool] | None = None,
) -> tuple[int, bool, dt.datetime | None, int]:
    """Return ``(size, is_dir, mtime, skipped)``; ``(0, False, None, 0)`` if gone."""
    try:
        st = os.lstat(path)
    except OSError:
        return 0, False, None, 0
    mtime = dt.datetime.fromtimestamp(st.st_mtime, tz=dt.timezone.utc)
    if os.path.isdir(path) and not os.path.islink(path):
        size, skipped = dir_usage(path, token, skip)
        return size, True, mtime, skipped
    return int(st.st_size), False, mtime, 0


def entry_size(path: str, token: CancelToken | None = None) -> tuple[int, bool, dt.datetime | None]:
    """Return ``(size, is_dir, mtime)`` for a file or directory, ``(0, False, None)`` if gone."""
    size, is_dir, mtime, _ = entry_usage(path, token)
    return size, is_dir, mtime


__all__ = [
    "APP_NAME",
    "COMMAND_TIMEOUT",
    "CRITICAL_DELETE_PATHS",
    "CancelToken",
    "Cancelled",
    "CommandError",
    "CommandRunner",
    "DeadlineExceeded",
    "RiskLevel",
    "Target",
    "data_dir",
    "default_log_file",
    "dir_size",
    "dir_usage",
    "entry_size",
    "entry_usage",
    "human_bytes",
    "now_utc",
    "now_utc_iso",
    "parse_size_to_bytes",
    "setup_logger",
    "total_size",
    "write_json_atomic",
]
