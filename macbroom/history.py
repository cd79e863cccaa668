#!/usr/bin/env python3
"""Append-only cleanup history ledger.

One JSON object per line. Entries are only ever appended; ``load`` refuses to
return a partial list when any line is unreadable.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import os
from pathlib import Path
from typing import Any

from macbroom.core import data_dir, ensure_parent, human_bytes

HISTORY_FILE = "history.jsonl"
RECENT_LIMIT = 5
METHODS = ("trash", "permanent")


class HistoryCorrupted(Exception):
    """The ledger file contains a line that cannot be parsed."""


def default_path() -> Path:
    return data_dir() / HISTORY_FILE


@dataclasses.dataclass(frozen=True, slots=True)
class HistoryEntry:
    timestamp: dt.datetime
    category: str
    items: int
    bytes_freed: int
    method: str

    def __post_init__(self) -> None:
        if self.method not in METHODS:
            raise ValueError(f"Unknown cleanup method: {self.method}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "items": self.items,
            "bytes_freed": self.bytes_freed,
            "method": self.method,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            timestamp=dt.datetime.fromisoformat(data["timestamp"]),
            category=str(data["category"]),
            items=int(data["items"]),
            bytes_freed=int(data["bytes_freed"]),
            method=str(data["method"]),
        )


@dataclasses.dataclass(slots=True)
class CategoryStats:
    cleanups: int = 0
    bytes_freed: int = 0


@dataclasses.dataclass(slots=True)
class Stats:
    total_freed: int = 0
    total_cleanups: int = 0
    by_category: dict[str, CategoryStats] = dataclasses.field(default_factory=dict)
    recent: list[HistoryEntry] = dataclasses.field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_freed": self.total_freed,
            "total_freed_human": human_bytes(self.total_freed),
            "total_cleanups": self.total_cleanups,
            "by_category": {k: dataclasses.asdict(v) for k, v in self.by_category.items()},
            "recent": [e.to_dict() for e in self.recent],
        }


class History:
    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else default_path()

    def record(self, entry: HistoryEntry) -> None:
        """Append one entry on its own line.

        A last line left without its newline (torn write) is terminated first,
        so the new entry never merges into it.
        """
        ensure_parent(self.path)
        line = json.dumps(entry.to_dict(), ensure_ascii=True) + "\n"
        with self.path.open("a+b") as fh:
            if fh.seek(0, os.SEEK_END) > 0:
                fh.seek(-1, os.SEEK_END)
                if fh.read(1) != b"\n":
                    line = "\n" + line
            fh.write(line.encode("utf-8"))

    def load(self) -> list[HistoryEntry]:
        try:
            blob = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise HistoryCorrupted(f"Cannot read history {self.path}: {exc}") from exc
        try:
            raw = blob.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise HistoryCorrupted(f"Corrupt history {self.path}: {exc}") from exc

        entries: list[HistoryEntry] = []
        for lineno, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise ValueError("entry must be an object")
                entries.append(HistoryEntry.from_dict(data))
            except (ValueError, KeyError, TypeError) as exc:
                raise HistoryCorrupted(f"Corrupt history {self.path} line {lineno}: {exc}") from exc
        return entries

    def stats(self) -> Stats:
        entries = self.load()
        out = Stats(total_cleanups=len(entries))
        for e in entries:
            out.total_freed += e.bytes_freed
            cat = out.by_category.setdefault(e.category, CategoryStats())
            cat.cleanups += 1
            cat.bytes_freed += e.bytes_freed
        out.recent = list(reversed(entries[-RECENT_LIMIT:]))
        return out


__all__ = [
    "METHODS",
    "RECENT_LIMIT",
    "CategoryStats",
    "History",
    "HistoryCorrupted",
    "HistoryEntry",
    "Stats",
    "default_path",
]
