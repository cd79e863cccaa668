#!/usr/bin/env python3
"""Scan engine: category selection, path exclusion, and scanner orchestration.

The scanner set is closed. ``build_registry`` returns it in a fixed order and
``select_scanners`` resolves a per-invocation ``CategoryFilter`` against it, so
the same filter always produces the same scanner sequence and target order.
"""

from __future__ import annotations

import dataclasses
import fnmatch
import logging
import os
import time
from typing import Any, Iterable, Mapping, Sequence

from macbroom.core import (
    APP_NAME,
    Cancelled,
    CancelToken,
    CommandRunner,
    Target,
    human_bytes,
    total_size,
)
from macbroom.scanners import (
    LARGE_FILE_MIN_AGE_DAYS,
    LARGE_FILE_MIN_BYTES,
    BrowserCacheScanner,
    DockerScanner,
    GoCacheScanner,
    GradleCacheScanner,
    HomebrewScanner,
    JetBrainsCacheScanner,
    LargeOldFilesScanner,
    MavenCacheScanner,
    NodeScanner,
    PythonCacheScanner,
    RubyCacheScanner,
    RustCacheScanner,
    Scanner,
    SimulatorScanner,
    SystemJunkScanner,
    XcodeScanner,
)

# ------------------------------ Categories ---------------------------------- #

# Registration order. Changing it reorders every scan's output.
CATEGORY_KEYS = (
    "system",
    "browser",
    "xcode",
    "large",
    "docker",
    "node",
    "homebrew",
    "simulator",
    "python",
    "rust",
    "go",
    "ruby",
    "jetbrains",
    "maven",
    "gradle",
)

DEV_KEYS = frozenset(
    {"xcode", "docker", "node", "simulator", "python", "rust", "go", "ruby", "jetbrains", "maven", "gradle"}
)
CACHE_KEYS = frozenset({"system", "browser", "homebrew"})
UMBRELLA_KEYS = ("dev", "caches", "all")


@dataclasses.dataclass(frozen=True, slots=True)
class CategoryFilter:
    """Which categories one invocation scans, plus paths it must ignore.

    No selector set means everything.
    """

    system: bool = False
    browser: bool = False
    xcode: bool = False
    large: bool = False
    docker: bool = False
    node: bool = False
    homebrew: bool = False
    simulator: bool = False
    python: bool = False
    rust: bool = False
    go: bool = False
    ruby: bool = False
    jetbrains: bool = False
    maven: bool = False
    gradle: bool = False
    dev: bool = False
    caches: bool = False
    all: bool = False
    exclude: tuple[str, ...] = ()

    @classmethod
    def from_names(cls, names: Iterable[str], exclude: Iterable[str] = ()) -> CategoryFilter:
        flags: dict[str, Any] = {}
        for raw in names:
            key = raw.strip().lower()
            if key not in CATEGORY_KEYS and key not in UMBRELLA_KEYS:
                raise ValueError(f"Unknown category selector: {raw}")
            flags[key] = True
        return cls(exclude=tuple(exclude), **flags)

    @classmethod
    def from_namespace(cls, ns: Any) -> CategoryFilter:
        flags = {k: bool(getattr(ns, k, False)) for k in (*CATEGORY_KEYS, *UMBRELLA_KEYS)}
        return cls(exclude=tuple(getattr(ns, "exclude", None) or ()), **flags)

    def selected_keys(self) -> list[str]:
        if self.all:
            return list(CATEGORY_KEYS)
        chosen = {k for k in CATEGORY_KEYS if getattr(self, k)}
        if self.dev:
            chosen |= DEV_KEYS
        if self.caches:
            chosen |= CACHE_KEYS
        if not chosen:
            return list(CATEGORY_KEYS)
        return [k for k in CATEGORY_KEYS if k in chosen]


# ------------------------------- Exclusion ---------------------------------- #


class PathExcluder:
    """Match paths against user exclusion patterns.

    ``dir/**`` excludes the directory and everything below it; any other
    pattern is an fnmatch glob tried against the full path and the base name.
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self.prefixes: list[str] = []
        self.globs: list[str] = []
        for raw in patterns:
            pattern = os.path.expanduser(raw.strip())
            if not pattern:
                continue
            if pattern.endswith("/**"):
                self.prefixes.append(pattern[: -len("/**")].rstrip("/") or "/")
            else:
                self.globs.append(pattern)

    def __bool__(self) -> bool:
        return bool(self.prefixes or self.globs)

    def __call__(self, path: str) -> bool:
        return self.matches(path)

    def matches(self, path: str) -> bool:
        for prefix in self.prefixes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return True
        name = os.path.basename(path.rstrip("/"))
        for pattern in self.globs:
            if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(name, pattern):
                return True
        return False


# ------------------------------- Registry ----------------------------------- #


def build_registry(
    home: str | None = None,
    runner: CommandRunner | None = None,
    excluder: PathExcluder | None = None,
    large_min_size: int = LARGE_FILE_MIN_BYTES,
    large_min_age_days: int = LARGE_FILE_MIN_AGE_DAYS,
) -> dict[str, Scanner]:
    """The fixed, ordered mapping from category selector to scanner.

    Every filesystem scanner receives ``excluder`` and skips matching entries
    while it walks, so excluded data is neither sized nor inside any Target.
    """
    runner = runner or CommandRunner()
    library = os.path.join(home, "Library") if home else None
    skip = excluder if excluder else None
    registry: dict[str, Scanner] = {
        "system": SystemJunkScanner(home, skip=skip),
        "browser": BrowserCacheScanner(home, skip=skip),
        "xcode": XcodeScanner(home, skip=skip),
        "large": LargeOldFilesScanner(home, min_size=large_min_size, min_age_days=large_min_age_days, skip=skip),
        "docker": DockerScanner(runner),
        "node": NodeScanner(home, skip=skip),
        "homebrew": HomebrewScanner(home, runner, skip=skip),
        "simulator": SimulatorScanner(library, runner, skip=skip),
        "python": PythonCacheScanner(home, skip=skip),
        "rust": RustCacheScanner(home, skip=skip),
        "go": GoCacheScanner(home, skip=skip),
        "ruby": RubyCacheScanner(home, skip=skip),
        "jetbrains": JetBrainsCacheScanner(home, skip=skip),
        "maven": MavenCacheScanner(home, skip=skip),
        "gradle": GradleCacheScanner(home, skip=skip),
    }
    if tuple(registry) != CATEGORY_KEYS:
        raise RuntimeError(f"Scanner registry out of sync with categories: {tuple(registry)}")
    return registry


def select_scanners(category_filter: CategoryFilter, registry: Mapping[str, Scanner]) -> list[Scanner]:
    return [registry[k] for k in category_filter.selected_keys() if k in registry]


# -------------------------------- Engine ------------------------------------ #


@dataclasses.dataclass(slots=True)
class ScannerFailure:
    scanner: str
    error: str


class ScanFailed(Exception):
    """One or more scanners failed for a reason other than cancellation."""

    def __init__(self, failures: list[ScannerFailure], partial: list[Target]):
        self.failures = failures
        self.partial = partial
        names = ", ".join(f"{f.scanner}: {f.error}" for f in failures)
        super().__init__(f"{len(failures)} scanner(s) failed: {names}")


class ScanEngine:
    """Run an ordered scanner list under one cancellation token."""

    def __init__(
        self,
        scanners: Sequence[Scanner],
        excluder: PathExcluder | None = None,
        logger: logging.Logger | None = None,
    ):
        self.scanners = list(scanners)
        self.excluder = excluder or PathExcluder()
        self.logger = logger or logging.getLogger(APP_NAME)

    @classmethod
    def for_filter(
        cls,
        category_filter: CategoryFilter,
        home: str | None = None,
        runner: CommandRunner | None = None,
        logger: logging.Logger | None = None,
        **registry_opts: Any,
    ) -> ScanEngine:
        excluder = PathExcluder(category_filter.exclude)
        registry = build_registry(home=home, runner=runner, excluder=excluder, **registry_opts)
        return cls(select_scanners(category_filter, registry), excluder=excluder, logger=logger)

    def scan(self, token: CancelToken) -> list[Target]:
        """Merged targets from every scanner, in registration order.

        Cancellation aborts at once. Other scanner errors do not stop the
        remaining scanners, but the call still fails with ``ScanFailed``.
        """
        started = time.perf_counter()
        targets: list[Target] = []
        failures: list[ScannerFailure] = []

        for scanner in self.scanners:
            token.check()
            try:
                found = scanner.scan(token)
            except Cancelled:
                self.logger.info("scan_cancelled scanner=%s", scanner.name)
                raise
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.error("scanner_failed scanner=%s err=%s", scanner.name, exc)
                failures.append(ScannerFailure(scanner=scanner.name, error=str(exc)))
                continue

            kept = [t for t in found if not self.excluder.matches(t.path)] if self.excluder else found
            self.logger.debug(
                "scanner_done scanner=%s targets=%s excluded=%s", scanner.name, len(kept), len(found) - len(kept)
            )
            targets.extend(kept)

        self.logger.info(
            "scan_complete scanners=%s targets=%s bytes=%s duration=%.2fs",
            len(self.scanners),
            len(targets),
            total_size(targets),
            time.perf_counter() - started,
        )
        if failures:
            raise ScanFailed(failures, targets)
        return targets


def summarize(targets: Sequence[Target]) -> dict[str, Any]:
    total = total_size(list(targets))
    return {
        "items": len(targets),
        "total_bytes": total,
        "total_human": human_bytes(total),
    }


__all__ = [
    "CACHE_KEYS",
    "CATEGORY_KEYS",
    "DEV_KEYS",
    "CategoryFilter",
    "PathExcluder",
    "ScanEngine",
    "ScanFailed",
    "ScannerFailure",
    "build_registry",
    "select_scanners",
    "summarize",
]
