#!/usr/bin/env python3
"""Scanners: one class per junk category, all producing uniform Targets.

Each scanner discovers its own category from whatever source fits:
- fixed cache locations sized by a recursive walk
- a bounded walk of user folders for large, stale files
- external tool output (docker, xcrun simctl, brew)

A scanner whose tool or service is absent reports nothing instead of failing.
Cancellation of the shared token always propagates as ``Cancelled``.
"""

from __future__ import annotations

import abc
import dataclasses
import datetime as dt
import json
import logging
import os
import plistlib
import re
from pathlib import Path
from typing import Callable, Sequence
from xml.parsers.expat import ExpatError

from macbroom.core import (
    APP_NAME,
    COMMAND_TIMEOUT,
    CancelToken,
    CommandError,
    CommandRunner,
    RiskLevel,
    Target,
    days_since,
    entry_size,
    entry_usage,
)

LOGGER = logging.getLogger(APP_NAME)

LARGE_FILE_MIN_BYTES = 500 * 1024**2
LARGE_FILE_MIN_AGE_DAYS = 90


# ------------------------------ Contract ------------------------------------ #


class Scanner(abc.ABC):
    """Capability shared by every scanner: name, description, risk and scan."""

    name: str = ""
    description: str = ""
    risk: RiskLevel = RiskLevel.SAFE

    @property
    def category(self) -> str:
        return self.name

    @abc.abstractmethod
    def scan(self, token: CancelToken) -> list[Target]:
        """Return every currently discoverable Target, or raise."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


# --------------------------- Target collection ----------------------------- #


def collect_targets(
    path: str,
    category: str,
    description: str,
    risk: RiskLevel,
    token: CancelToken,
    skip: Callable[[str], bool] | None = None,
) -> list[Target]:
    """Targets for ``path`` that never cover an excluded entry.

    A directory holding an excluded entry is not reported whole. Its remaining
    children are reported one by one instead, so removing any returned Target
    leaves the excluded data in place. Empty entries are dropped.
    """
    if skip is not None and skip(path):
        return []
    size, is_dir, mtime, skipped = entry_usage(path, token, skip)
    if skipped:
        LOGGER.debug("target_split path=%s skipped=%s", path, skipped)
        return _collect_children(path, category, description, risk, token, skip)
    if size == 0:
        return []
    return [
        Target(
            path=path,
            size=size,
            category=category,
            description=description,
            risk=risk,
            mod_time=mtime,
            is_dir=is_dir,
        )
    ]


def _collect_children(
    root: str,
    category: str,
    description: str,
    risk: RiskLevel,
    token: CancelToken,
    skip: Callable[[str], bool] | None,
) -> list[Target]:
    try:
        names = sorted(os.listdir(root))
    except OSError:
        return []
    out: list[Target] = []
    for name in names:
        token.check()
        out.extend(collect_targets(os.path.join(root, name), category, description, risk, token, skip))
    return out


# --------------------------- Path-based caches ------------------------------ #


@dataclasses.dataclass(frozen=True, slots=True)
class CacheLocation:
    """A known location, relative to the home directory.

    With ``expand`` set, every child of the location becomes its own Target;
    otherwise the whole location is one Target.
    """

    relative: str
    description: str
    risk: RiskLevel | None = None
    expand: bool = False


class CacheDirScanner(Scanner):
    """Report fixed cache locations under the user's home directory."""

    locations: Sequence[CacheLocation] = ()

    def __init__(self, home: str | None = None, skip: Callable[[str], bool] | None = None):
        self.home = home or str(Path.home())
        self.skip = skip

    def scan(self, token: CancelToken) -> list[Target]:
        targets: list[Target] = []
        for loc in self.locations:
            token.check()
            root = os.path.join(self.home, loc.relative)
            if not os.path.exists(root):
                continue
            if self.skip is not None and self.skip(root):
                continue
            risk = loc.risk if loc.risk is not None else self.risk
            if loc.expand:
                targets.extend(_collect_children(root, self.category, loc.description, risk, token, self.skip))
            else:
                targets.extend(collect_targets(root, self.category, loc.description, risk, token, self.skip))
        return targets


class SystemJunkScanner(CacheDirScanner):
    name = "System Junk"
    description = "User caches and logs"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation("Library/Caches", "User cache", expand=True),
        CacheLocation("Library/Logs", "User log", expand=True),
    )


class BrowserCacheScanner(CacheDirScanner):
    name = "Browser Cache"
    description = "Safari, Chrome, Firefox, Edge, Brave, and Arc caches"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation("Library/Caches/com.apple.Safari", "Safari cache"),
        CacheLocation("Library/Caches/Google/Chrome", "Chrome cache"),
        CacheLocation("Library/Caches/Firefox/Profiles", "Firefox cache", expand=True),
        CacheLocation("Library/Caches/Microsoft Edge", "Edge cache"),
        CacheLocation("Library/Caches/BraveSoftware/Brave-Browser", "Brave cache"),
        CacheLocation("Library/Caches/company.thebrowser.Browser", "Arc cache"),
    )


class XcodeScanner(CacheDirScanner):
    name = "Xcode"
    description = "Xcode derived data, archives, and device support"
    risk = RiskLevel.MODERATE
    locations = (
        CacheLocation("Library/Developer/Xcode/DerivedData", "Derived data", RiskLevel.SAFE, expand=True),
        CacheLocation("Library/Developer/Xcode/Archives", "Archive", RiskLevel.MODERATE, expand=True),
        CacheLocation("Library/Developer/Xcode/iOS DeviceSupport", "iOS device support", RiskLevel.SAFE, expand=True),
        CacheLocation("Library/Developer/Xcode/watchOS DeviceSupport", "watchOS device support", RiskLevel.SAFE, expand=True),
        CacheLocation("Library/Caches/com.apple.dt.Xcode", "Xcode cache", RiskLevel.SAFE),
    )


class NodeScanner(CacheDirScanner):
    name = "Node.js"
    description = "npm, yarn, and pnpm caches"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation(".npm/_cacache", "npm cache"),
        CacheLocation(".npm/_logs", "npm logs"),
        CacheLocation("Library/Caches/Yarn", "Yarn cache"),
        CacheLocation(".cache/yarn", "Yarn cache"),
        CacheLocation("Library/pnpm/store", "pnpm store"),
        CacheLocation(".pnpm-store", "pnpm store"),
    )


class PythonCacheScanner(CacheDirScanner):
    name = "Python"
    description = "pip, Poetry, and uv caches"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation("Library/Caches/pip", "pip cache"),
        CacheLocation(".cache/pip", "pip cache"),
        CacheLocation("Library/Caches/pypoetry", "Poetry cache"),
        CacheLocation(".cache/uv", "uv cache"),
    )


class RustCacheScanner(CacheDirScanner):
    name = "Rust"
    description = "Cargo registry and git caches"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation(".cargo/registry/cache", "Cargo registry cache"),
        CacheLocation(".cargo/registry/src", "Cargo registry sources"),
        CacheLocation(".cargo/git/db", "Cargo git checkouts"),
    )


class GoCacheScanner(CacheDirScanner):
    name = "Go"
    description = "Go build and module caches"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation("Library/Caches/go-build", "Go build cache"),
        CacheLocation("go/pkg/mod/cache", "Go module download cache"),
    )


class RubyCacheScanner(CacheDirScanner):
    name = "Ruby"
    description = "RubyGems and Bundler caches"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation(".gem/cache", "RubyGems cache"),
        CacheLocation(".bundle/cache", "Bundler cache"),
    )


class JetBrainsCacheScanner(CacheDirScanner):
    name = "JetBrains"
    description = "JetBrains IDE caches and logs"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation("Library/Caches/JetBrains", "IDE cache", expand=True),
        CacheLocation("Library/Logs/JetBrains", "IDE logs", expand=True),
    )


class MavenCacheScanner(CacheDirScanner):
    name = "Maven"
    description = "Maven local repository"
    risk = RiskLevel.MODERATE
    locations = (CacheLocation(".m2/repository", "Maven local repository"),)


class GradleCacheScanner(CacheDirScanner):
    name = "Gradle"
    description = "Gradle caches and wrapper distributions"
    risk = RiskLevel.SAFE
    locations = (
        CacheLocation(".gradle/caches", "Gradle cache"),
        CacheLocation(".gradle/wrapper/dists", "Gradle wrapper distributions"),
    )


# ----------------------------- Large & Old ---------------------------------- #


class LargeOldFilesScanner(Scanner):
    """Find big files in user folders that have not been touched in a while."""

    name = "Large & Old Files"
    description = "Large files not modified recently"
    risk = RiskLevel.DANGEROUS

    SEARCH_DIRS = ("Downloads", "Desktop", "Documents")

    def __init__(
        self,
        home: str | None = None,
        min_size: int = LARGE_FILE_MIN_BYTES,
        min_age_days: int = LARGE_FILE_MIN_AGE_DAYS,
        skip: Callable[[str], bool] | None = None,
        now_ts: float | None = None,
    ):
        self.home = home or str(Path.home())
        self.min_size = min_size
        self.min_age_days = min_age_days
        self.skip = skip
        self.now_ts = now_ts

    def scan(self, token: CancelToken) -> list[Target]:
        targets: list[Target] = []
        for folder in self.SEARCH_DIRS:
            root = os.path.join(self.home, folder)
            if os.path.isdir(root):
                targets.extend(self._walk(root, token))
        targets.sort(key=lambda t: (-t.size, t.path))
        return targets

    def _walk(self, root: str, token: CancelToken) -> list[Target]:
        found: list[Target] = []
        stack = [root]
        while stack:
            current = stack.pop()
            token.check()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError:
                continue

            for entry in entries:
                if entry.name.startswith("."):
                    continue
                if self.skip is not None and self.skip(entry.path):
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        stack.append(entry.path)
                        continue
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    st = entry.stat(follow_symlinks=False)
                except OSError:
                    continue

                if st.st_size < self.min_size:
                    continue
                age = days_since(st.st_mtime, self.now_ts)
                if age < self.min_age_days:
                    continue

                found.append(
                    Target(
                        path=entry.path,
                        size=int(st.st_size),
                        category=self.category,
                        description=f"Not modified in {age} days",
                        risk=self.risk,
                        mod_time=dt.datetime.fromtimestamp(st.st_mtime, tz=dt.timezone.utc),
                        is_dir=False,
                    )
                )
        return found


# ------------------------------ Tool-backed --------------------------------- #


class DockerScanner(Scanner):
    """Dangling images and build cache reported by the docker CLI."""

    name = "Docker"
    description = "Docker images, containers, and build cache"
    risk = RiskLevel.MODERATE

    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    def scan(self, token: CancelToken) -> list[Target]:
        if self.runner.look_path("docker") is None:
            return []

        try:
            out = self.runner.run(
                token, "docker", "images", "-f", "dangling=true", "--format", "{{.ID}}\t{{.Size}}",
                timeout=COMMAND_TIMEOUT,
            )
        except CommandError as exc:
            token.check()
            LOGGER.debug("docker_unavailable err=%s", exc)
            return []

        targets = self._parse_images(out)

        try:
            out = self.runner.run(token, "docker", "system", "df", "--format", "{{json .}}", timeout=COMMAND_TIMEOUT)
        except CommandError as exc:
            token.check()
            LOGGER.debug("docker_df_failed err=%s", exc)
            return targets

        targets.extend(self._parse_df(out))
        return targets

    def _parse_images(self, out: str) -> list[Target]:
        targets: list[Target] = []
        for line in out.strip().splitlines():
            parts = line.split("\t", 1)
            image_id = parts[0].strip()
            if not image_id:
                continue
            desc = "Dangling image"
            if len(parts) > 1:
                desc += f" ({parts[1].strip()})"
            targets.append(
                Target(
                    path=f"docker image {image_id}",
                    size=0,
                    category=self.category,
                    description=desc,
                    risk=RiskLevel.MODERATE,
                )
            )
        return targets

    def _parse_df(self, out: str) -> list[Target]:
        targets: list[Target] = []
        for line in out.strip().splitlines():
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                LOGGER.debug("docker_df_malformed line=%r", line)
                continue
            if not isinstance(row, dict) or row.get("Type") != "Build Cache":
                continue
            targets.append(
                Target(
                    path="docker build cache",
                    size=0,
                    category=self.category,
                    description=f"Build cache ({row.get('Size', '')}, {row.get('Reclaimable', '')} reclaimable)",
                    risk=RiskLevel.SAFE,
                )
            )
        return targets


class SimulatorScanner(Scanner):
    """iOS Simulator device data, caches, and unavailable devices."""

    name = "iOS Simulators"
    description = "iOS Simulator devices and caches"
    risk = RiskLevel.MODERATE

    def __init__(
        self,
        library_path: str | None = None,
        runner: CommandRunner | None = None,
        skip: Callable[[str], bool] | None = None,
    ):
        self.library_base = library_path or str(Path.home() / "Library")
        self.runner = runner or CommandRunner()
        self.skip = skip

    def scan(self, token: CancelToken) -> list[Target]:
        if self.runner.look_path("xcrun") is None:
            return []

        root = os.path.join(self.library_base, "Developer", "CoreSimulator")
        targets: list[Target] = []

        token.check()
        targets.extend(self._scan_dir(os.path.join(root, "Devices"), "Simulator device data", RiskLevel.MODERATE, token))

        token.check()
        targets.extend(self._scan_dir(os.path.join(root, "Caches"), "Simulator cache", RiskLevel.SAFE, token))

        token.check()
        try:
            targets.extend(self._unavailable_devices(token))
        except (CommandError, ValueError) as exc:
            token.check()
            # simctl fails for many benign reasons; the on-disk results still count.
            LOGGER.debug("simctl_list_failed err=%s", exc)

        return targets

    def _scan_dir(self, directory: str, description: str, risk: RiskLevel, token: CancelToken) -> list[Target]:
        if not os.path.isdir(directory):
            return []
        if self.skip is not None and self.skip(directory):
            return []
        return _collect_children(directory, self.category, description, risk, token, self.skip)

    def _unavailable_devices(self, token: CancelToken) -> list[Target]:
        out = self.runner.run(token, "xcrun", "simctl", "list", "devices", "unavailable", "-j", timeout=COMMAND_TIMEOUT)
        data = json.loads(out)
        devices = data.get("devices") if isinstance(data, dict) else None
        if not isinstance(devices, dict):
            raise ValueError("simctl output has no devices map")

        targets: list[Target] = []
        for runtime in sorted(devices):
            for dev in devices[runtime] or []:
                udid = dev.get("udid") if isinstance(dev, dict) else None
                if not udid:
                    continue
                targets.append(
                    Target(
                        path=f"simulator {udid}",
                        size=0,
                        category=self.category,
                        description=f"Unavailable simulator: {dev.get('name', udid)} ({runtime})",
                        risk=RiskLevel.MODERATE,
                    )
                )
        return targets


class HomebrewScanner(Scanner):
    """Downloaded bottles and source archives in the Homebrew cache."""

    name = "Homebrew"
    description = "Homebrew download cache"
    risk = RiskLevel.SAFE

    def __init__(
        self,
        home: str | None = None,
        runner: CommandRunner | None = None,
        skip: Callable[[str], bool] | None = None,
    ):
        self.home = home or str(Path.home())
        self.runner = runner or CommandRunner()
        self.skip = skip

    def cache_dir(self, token: CancelToken) -> str:
        try:
            out = self.runner.run(token, "brew", "--cache", timeout=COMMAND_TIMEOUT).strip()
        except CommandError as exc:
            token.check()
            LOGGER.debug("brew_cache_lookup_failed err=%s", exc)
            out = ""
        return out or os.path.join(self.home, "Library", "Caches", "Homebrew")

    def scan(self, token: CancelToken) -> list[Target]:
        if self.runner.look_path("brew") is None:
            return []

        root = self.cache_dir(token)
        if not os.path.isdir(root):
            return []
        if self.skip is not None and self.skip(root):
            return []
        try:
            names = sorted(os.listdir(root))
        except OSError:
            return []

        targets: list[Target] = []
        for name in names:
            token.check()
            path = os.path.join(root, name)
            description = "Homebrew cache" if os.path.isdir(path) else "Homebrew download"
            targets.extend(collect_targets(path, self.category, description, self.risk, token, self.skip))
        return targets


# ---------------------------- Applications ---------------------------------- #


APP_DATA_LOCATIONS = (
    "Application Support",
    "Preferences",
    "Caches",
    "Containers",
    "Group Containers",
    "Saved Application State",
    "Logs",
    "HTTPStorages",
    "WebKit",
    "LaunchAgents",
)

ORPHAN_LOCATIONS = (
    "Application Support",
    "Caches",
    "Containers",
    "Preferences",
    "Saved Application State",
)

_NAME_SUFFIXES = (".plist", ".savedstate", ".app", ".binarycookies")
_COMPONENT_SPLIT = re.compile(r"[.\-_]")


def _normalize_app_name(value: str) -> str:
    text = value.lower().replace(" ", "")
    for suffix in _NAME_SUFFIXES:
        if text.endswith(suffix):
            return text[: -len(suffix)]
    return text


class AppScanner(Scanner):
    """Locate files an application leaves behind in the user's Library."""

    name = "App Leftovers"
    description = "Data left behind by removed applications"
    risk = RiskLevel.DANGEROUS

    def __init__(self, apps_dir: str = "", library_dir: str = ""):
        self.apps_dir = apps_dir or "/Applications"
        self.library_dir = library_dir or str(Path.home() / "Library")

    def list_apps(self) -> list[str]:
        try:
            names = os.listdir(self.apps_dir)
        except OSError:
            return []
        return sorted(n[: -len(".app")] for n in names if n.endswith(".app"))

    @staticmethod
    def matches(entry_name: str, app_name: str) -> bool:
        key = _normalize_app_name(app_name)
        if not key:
            return False
        stem = _normalize_app_name(entry_name)
        if stem == key:
            return True
        return key in _COMPONENT_SPLIT.split(stem)

    def find_related_files(self, token: CancelToken, app_name: str) -> list[Target]:
        targets: list[Target] = []

        bundle = os.path.join(self.apps_dir, f"{app_name}.app")
        if os.path.isdir(bundle):
            targets.append(self._target(bundle, "Application bundle", token))

        for location in APP_DATA_LOCATIONS:
            token.check()
            base = os.path.join(self.library_dir, location)
            try:
                names = sorted(os.listdir(base))
            except OSError:
                continue
            for name in names:
                if self.matches(name, app_name):
                    targets.append(self._target(os.path.join(base, name), location, token))
        return targets

    def scan(self, token: CancelToken) -> list[Target]:
        installed = {_normalize_app_name(a) for a in self.list_apps()}
        bundle_ids = self.installed_bundle_ids()
        targets: list[Target] = []
        for location in ORPHAN_LOCATIONS:
            token.check()
            base = os.path.join(self.library_dir, location)
            try:
                names = sorted(os.listdir(base))
            except OSError:
                continue
            for name in names:
                if self._is_orphan(name, installed, bundle_ids):
                    target = self._target(os.path.join(base, name), f"Orphaned {location} entry", token)
                    if target.size > 0:
                        targets.append(target)
        return targets

    def installed_bundle_ids(self) -> set[str]:
        """Lower-cased ``CFBundleIdentifier`` of every installed app that declares one."""
        ids: set[str] = set()
        for app in self.list_apps():
            info = os.path.join(self.apps_dir, f"{app}.app", "Contents", "Info.plist")
            try:
                with open(info, "rb") as fh:
                    data = plistlib.load(fh)
            except (OSError, ValueError, ExpatError) as exc:
                LOGGER.debug("app_info_unreadable app=%s err=%s", app, exc)
                continue
            bundle_id = data.get("CFBundleIdentifier") if isinstance(data, dict) else None
            if isinstance(bundle_id, str) and bundle_id:
                ids.add(bundle_id.lower())
        return ids

    @staticmethod
    def _is_orphan(
        entry_name: str,
        installed: set[str],
        bundle_ids: frozenset[str] | set[str] = frozenset(),
    ) -> bool:
        """Reverse-DNS entry owned by no installed app.

        An entry is owned when it is an installed bundle id or nested under one
        (``com.vendor.App.Helper``), when a component after the vendor names an
        installed app, or when those components joined together contain one.
        """
        stem = _normalize_app_name(entry_name)
        parts = stem.split(".")
        if len(parts) < 3 or stem.startswith("com.apple."):
            return False
        for bundle_id in bundle_ids:
            if stem == bundle_id or stem.startswith(bundle_id + "."):
                return False
        owned = [p for p in parts[2:] if p]
        if not owned:
            return False
        joined = "".join(owned)
        last = owned[-1]
        for app in installed:
            if not app:
                continue
            if app in joined or last in app:
                return False
            if any(p == app or app in p for p in owned):
                return False
        return True

    def _target(self, path: str, description: str, token: CancelToken) -> Target:
        size, is_dir, mtime = entry_size(path, token)
        return Target(
            path=path,
            size=size,
            category=self.category,
            description=description,
            risk=self.risk,
            mod_time=mtime,
            is_dir=is_dir,
        )


__all__ = [
    "AppScanner",
    "BrowserCacheScanner",
    "CacheDirScanner",
    "CacheLocation",
    "DockerScanner",
    "GoCacheScanner",
    "GradleCacheScanner",
    "HomebrewScanner",
    "JetBrainsCacheScanner",
    "LargeOldFilesScanner",
    "MavenCacheScanner",
    "NodeScanner",
    "PythonCacheScanner",
    "RubyCacheScanner",
    "RustCacheScanner",
    "Scanner",
    "SimulatorScanner",
    "SystemJunkScanner",
    "XcodeScanner",
    "collect_targets",
]
