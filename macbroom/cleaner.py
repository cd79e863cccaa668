#!/usr/bin/env python3
"""Cleanup execution: move approved targets to the Trash or delete them.

- Trash: per-item removal, real paths and tool-managed resources
- CleanupExecutor: runs a batch, counts per-item failures without stopping,
  and records one history entry per category for the run
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Sequence

from send2trash import send2trash

from macbroom.core import (
    APP_NAME,
    CRITICAL_DELETE_PATHS,
    Cancelled,
    CancelToken,
    CommandRunner,
    Target,
    human_bytes,
    now_utc,
)
from macbroom.history import History, HistoryEntry

DOCKER_IMAGE_PREFIX = "docker image "
DOCKER_BUILD_CACHE = "docker build cache"
SIMULATOR_PREFIX = "simulator "


class ProtectedPathError(Exception):
    """Refused to remove a system-critical path."""


# ------------------------------- Trash -------------------------------------- #


class Trash:
    """Removes one target at a time.

    Synthetic identifiers produced by the Docker and simulator scanners are
    handed to the owning tool; anything else is treated as a filesystem path.
    """

    def __init__(self, runner: CommandRunner | None = None, token: CancelToken | None = None):
        self.runner = runner or CommandRunner()
        self.token = token or CancelToken()

    def move_to_trash(self, path: str) -> None:
        if self._dispatch_tool(path):
            return
        real = self._checked(path)
        send2trash(real)

    def permanent_delete(self, path: str) -> None:
        if self._dispatch_tool(path):
            return
        real = Path(self._checked(path))
        if real.is_dir() and not real.is_symlink():
            shutil.rmtree(real)
        else:
            real.unlink()

    def _dispatch_tool(self, path: str) -> bool:
        if path.startswith(DOCKER_IMAGE_PREFIX):
            self.runner.run(self.token, "docker", "rmi", path[len(DOCKER_IMAGE_PREFIX) :].strip())
            return True
        if path == DOCKER_BUILD_CACHE:
            self.runner.run(self.token, "docker", "builder", "prune", "-f")
            return True
        if path.startswith(SIMULATOR_PREFIX):
            self.runner.run(self.token, "xcrun", "simctl", "delete", path[len(SIMULATOR_PREFIX) :].strip())
            return True
        return False

    @staticmethod
    def _checked(path: str) -> str:
        expanded = os.path.abspath(os.path.expanduser(path))
        normalized = expanded.rstrip(os.sep) or os.sep
        if normalized in CRITICAL_DELETE_PATHS or normalized == str(Path.home()):
            raise ProtectedPathError(f"Refusing to remove protected path: {normalized}")
        if not os.path.lexists(normalized):
            raise FileNotFoundError(f"Path does not exist: {normalized}")
        return normalized


# ------------------------------ Execution ----------------------------------- #


@dataclasses.dataclass(slots=True)
class CategoryOutcome:
    items: int = 0
    bytes: int = 0


@dataclasses.dataclass(slots=True)
class CleanupResult:
    cleaned: int = 0
    failed: int = 0
    bytes_freed: int = 0
    method: str = "trash"
    dry_run: bool = False
    failures: list[dict[str, str]] = dataclasses.field(default_factory=list)
    by_category: dict[str, CategoryOutcome] = dataclasses.field(default_factory=dict)
    history_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cleaned": self.cleaned,
            "failed": self.failed,
            "bytes_freed": self.bytes_freed,
            "bytes_freed_human": human_bytes(self.bytes_freed),
            "method": self.method,
            "dry_run": self.dry_run,
            "failures": list(self.failures),
            "by_category": {k: dataclasses.asdict(v) for k, v in self.by_category.items()},
            "history_error": self.history_error,
        }


class CleanupExecutor:
    """Apply exactly one removal per approved target and log the run."""

    def __init__(
        self,
        trash: Trash | None = None,
        history: History | None = None,
        logger: logging.Logger | None = None,
    ):
        self.trash = trash or Trash()
        self.history = history
        self.logger = logger or logging.getLogger(APP_NAME)

    def execute(
        self,
        targets: Sequence[Target],
        token: CancelToken,
        permanent: bool = False,
        dry_run: bool = False,
    ) -> CleanupResult:
        method = "permanent" if permanent else "trash"
        result = CleanupResult(method=method, dry_run=dry_run)

        try:
            for target in targets:
                token.check()
                if dry_run:
                    self._count(result, target)
                    continue
                try:
                    if permanent:
                        self.trash.permanent_delete(target.path)
                    else:
                        self.trash.move_to_trash(target.path)
                except Cancelled:
                    raise
                except Exception as exc:  # pylint: disable=broad-except
                    result.failed += 1
                    result.failures.append({"path": target.path, "error": str(exc)})
                    self.logger.warning("clean_failed path=%s method=%s err=%s", target.path, method, exc)
                    continue
                self._count(result, target)
                self.logger.info(
                    "clean_ok path=%s method=%s bytes=%s category=%s", target.path, method, target.size, target.category
                )
        finally:
            if not dry_run:
                self._record(result)

        self.logger.info(
            "clean_complete cleaned=%s failed=%s bytes=%s method=%s dry_run=%s",
            result.cleaned,
            result.failed,
            result.bytes_freed,
            method,
            dry_run,
        )
        return result

    @staticmethod
    def _count(result: CleanupResult, target: Target) -> None:
        result.cleaned += 1
        result.bytes_freed += target.size
        outcome = result.by_category.setdefault(target.category, CategoryOutcome())
        outcome.items += 1
        outcome.bytes += target.size

    def _record(self, result: CleanupResult) -> None:
        if self.history is None or not result.by_category:
            return
        stamp = now_utc()
        try:
            for category, outcome in result.by_category.items():
                self.history.record(
                    HistoryEntry(
                        timestamp=stamp,
                        category=category,
                        items=outcome.items,
                        bytes_freed=outcome.bytes,
                        method=result.method,
                    )
                )
        except OSError as exc:
            result.history_error = str(exc)
            self.logger.error("history_write_failed path=%s err=%s", self.history.path, exc)


__all__ = [
    "CategoryOutcome",
    "CleanupExecutor",
    "CleanupResult",
    "ProtectedPathError",
    "Trash",
]
