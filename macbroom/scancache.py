#!/usr/bin/env python3
"""Single-slot scan snapshot store and scan-to-scan diff.

- build_snapshot(): group targets by category (size + item count)
- diff(): signed per-category delta over the union of both snapshots
- load()/save(): JSON file, overwritten atomically after every scan
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
from pathlib import Path
from typing import Any, Iterable

from macbroom.core import Target, data_dir, now_utc, write_json_atomic

SNAPSHOT_FILE = "last_scan.json"


class SnapshotNotFound(Exception):
    """No snapshot has been saved yet."""


class SnapshotCorrupted(Exception):
    """The snapshot file exists but cannot be parsed."""


def default_path() -> Path:
    return data_dir() / SNAPSHOT_FILE


@dataclasses.dataclass(slots=True)
class CategorySnapshot:
    name: str
    size: int = 0
    items: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "size": self.size, "items": self.items}


@dataclasses.dataclass(slots=True)
class Snapshot:
    timestamp: dt.datetime
    categories: list[CategorySnapshot] = dataclasses.field(default_factory=list)
    total_size: int = 0

    def category(self, name: str) -> CategorySnapshot | None:
        for cat in self.categories:
            if cat.name == name:
                return cat
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "categories": [c.to_dict() for c in self.categories],
            "total_size": self.total_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        categories = [
            CategorySnapshot(name=str(c["name"]), size=int(c["size"]), items=int(c["items"]))
            for c in data.get("categories") or []
        ]
        return cls(
            timestamp=dt.datetime.fromisoformat(data["timestamp"]),
            categories=categories,
            total_size=int(data.get("total_size", sum(c.size for c in categories))),
        )


@dataclasses.dataclass(frozen=True, slots=True)
class CategoryDiff:
    size_delta: int
    items_delta: int

    def to_dict(self) -> dict[str, int]:
        return {"size_delta": self.size_delta, "items_delta": self.items_delta}


@dataclasses.dataclass(slots=True)
class DiffResult:
    categories: dict[str, CategoryDiff] = dataclasses.field(default_factory=dict)
    total_size_delta: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "categories": {k: v.to_dict() for k, v in self.categories.items()},
            "total_size_delta": self.total_size_delta,
        }


# ------------------------------- Building ----------------------------------- #


def build_snapshot(targets: Iterable[Target], now: dt.datetime | None = None) -> Snapshot:
    """Aggregate targets per category, keeping first-seen category order."""
    grouped: dict[str, CategorySnapshot] = {}
    for t in targets:
        cat = grouped.get(t.category)
        if cat is None:
            cat = grouped[t.category] = CategorySnapshot(name=t.category)
        cat.size += t.size
        cat.items += 1
    categories = list(grouped.values())
    return Snapshot(
        timestamp=now or now_utc(),
        categories=categories,
        total_size=sum(c.size for c in categories),
    )


def diff(prev: Snapshot, curr: Snapshot) -> DiffResult:
    """Delta of ``curr`` against ``prev``; a category missing on one side counts as zero."""
    before = {c.name: c for c in prev.categories}
    after = {c.name: c for c in curr.categories}
    names = list(after) + [n for n in before if n not in after]

    result = DiffResult(total_size_delta=curr.total_size - prev.total_size)
    for name in names:
        old = before.get(name) or CategorySnapshot(name=name)
        new = after.get(name) or CategorySnapshot(name=name)
        result.categories[name] = CategoryDiff(
            size_delta=new.size - old.size,
            items_delta=new.items - old.items,
        )
    return result


# ------------------------------ Persistence --------------------------------- #


def load(path: Path | None = None) -> Snapshot:
    target = Path(path) if path is not None else default_path()
    try:
        raw = target.read_bytes()
    except FileNotFoundError as exc:
        raise SnapshotNotFound(f"No snapshot at {target}") from exc
    except OSError as exc:
        raise SnapshotCorrupted(f"Cannot read snapshot {target}: {exc}") from exc

    try:
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("snapshot root must be an object")
        return Snapshot.from_dict(data)
    except (ValueError, KeyError, TypeError) as exc:
        raise SnapshotCorrupted(f"Corrupt snapshot {target}: {exc}") from exc


def save(path: Path | None, snapshot: Snapshot) -> Path:
    target = Path(path) if path is not None else default_path()
    write_json_atomic(target, snapshot.to_dict())
    return target


__all__ = [
    "CategoryDiff",
    "CategorySnapshot",
    "DiffResult",
    "Snapshot",
    "SnapshotCorrupted",
    "SnapshotNotFound",
    "build_snapshot",
    "default_path",
    "diff",
    "load",
    "save",
]
