"""
Tests for the per-category scanners.

Validates:
- Docker: two dangling images plus build cache yield three ordered targets
- Docker/simulator/homebrew: missing tool is an empty result, not an error
- Tool failures degrade to empty (or disk-only) results; cancellation propagates
- Simulator: device dirs, cache dirs and unavailable devices
- App finder: name matching, bundle detection, orphan detection
- Path caches and large/old files walk real directories
"""

import json
import os
import plistlib
import time

import pytest

from macbroom.core import Cancelled, CancelToken, CommandError, RiskLevel
from macbroom.scanners import (
    AppScanner,
    DockerScanner,
    HomebrewScanner,
    LargeOldFilesScanner,
    MavenCacheScanner,
    NodeScanner,
    SimulatorScanner,
    SystemJunkScanner,
    XcodeScanner,
)

IMAGES = ("docker", "images", "-f", "dangling=true", "--format", "{{.ID}}\t{{.Size}}")
DF = ("docker", "system", "df", "--format", "{{json .}}")
SIMCTL = ("xcrun", "simctl", "list", "devices", "unavailable", "-j")
DF_OUTPUT = "\n".join(
    [
        json.dumps({"Type": "Images", "Size": "5GB", "Reclaimable": "1GB (20%)"}),
        json.dumps({"Type": "Build Cache", "Size": "2.1GB", "Reclaimable": "1.8GB"}),
    ]
)


def cancel_then_fail(token):
    token.cancel()
    raise CommandError(["docker"], None, "killed")


class TestDockerScanner:
    def test_images_then_build_cache(self, fake_runner):
        runner = fake_runner({IMAGES: "abc123\t1.2GB\ndef456\t800MB\n", DF: DF_OUTPUT})
        targets = DockerScanner(runner).scan(CancelToken())

        assert [t.path for t in targets] == ["docker image abc123", "docker image def456", "docker build cache"]
        assert targets[0].description == "Dangling image (1.2GB)"
        assert [t.risk for t in targets] == [RiskLevel.MODERATE, RiskLevel.MODERATE, RiskLevel.SAFE]
        assert targets[2].description == "Build cache (2.1GB, 1.8GB reclaimable)"
        assert all(t.category == "Docker" for t in targets)

    def test_docker_not_installed(self, fake_runner):
        runner = fake_runner(available=())
        assert DockerScanner(runner).scan(CancelToken()) == []
        assert runner.calls == []

    def test_daemon_down_is_empty(self, fake_runner):
        runner = fake_runner({IMAGES: CommandError(list(IMAGES), 1, "Cannot connect to the Docker daemon")})
        assert DockerScanner(runner).scan(CancelToken()) == []

    def test_df_failure_keeps_images(self, fake_runner):
        runner = fake_runner({IMAGES: "abc123\t1GB\n"})
        targets = DockerScanner(runner).scan(CancelToken())
        assert [t.path for t in targets] == ["docker image abc123"]

    def test_malformed_df_lines_are_skipped(self, fake_runner):
        df = "not json\n" + json.dumps({"Type": "Build Cache", "Size": "1GB", "Reclaimable": "0B"})
        runner = fake_runner({IMAGES: "", DF: df})
        targets = DockerScanner(runner).scan(CancelToken())
        assert [t.path for t in targets] == ["docker build cache"]

    def test_cancellation_during_images_query_propagates(self, fake_runner):
        runner = fake_runner({IMAGES: cancel_then_fail})
        with pytest.raises(Cancelled):
            DockerScanner(runner).scan(CancelToken())

    def test_cancellation_during_df_query_propagates(self, fake_runner):
        runner = fake_runner({IMAGES: "abc123\t1GB\n", DF: cancel_then_fail})
        with pytest.raises(Cancelled):
            DockerScanner(runner).scan(CancelToken())


class TestSimulatorScanner:
    def _library(self, tmp_path, write_file):
        root = tmp_path / "Library" / "Developer" / "CoreSimulator"
        write_file(root / "Devices" / "B-DEVICE" / "data.img", 300)
        write_file(root / "Devices" / "A-DEVICE" / "data.img", 100)
        os.makedirs(root / "Devices" / "EMPTY-DEVICE")
        write_file(root / "Caches" / "dyld" / "cache.bin", 50)
        return str(tmp_path / "Library")

    def test_disk_entries_and_unavailable_devices(self, tmp_path, write_file, fake_runner):
        library = self._library(tmp_path, write_file)
        listing = json.dumps(
            {
                "devices": {
                    "com.apple.CoreSimulator.SimRuntime.iOS-17-0": [{"udid": "UDID-2", "name": "iPhone 15"}],
                    "com.apple.CoreSimulator.SimRuntime.iOS-16-4": [{"udid": "UDID-1", "name": "iPhone 14"}],
                }
            }
        )
        targets = SimulatorScanner(library, fake_runner({SIMCTL: listing})).scan(CancelToken())

        paths = [os.path.basename(t.path) if t.path.startswith("/") else t.path for t in targets]
        assert paths == ["A-DEVICE", "B-DEVICE", "dyld", "simulator UDID-1", "simulator UDID-2"]
        assert targets[0].risk == RiskLevel.MODERATE
        assert targets[2].risk == RiskLevel.SAFE
        assert targets[3].description == "Unavailable simulator: iPhone 14 (com.apple.CoreSimulator.SimRuntime.iOS-16-4)"

    def test_xcrun_missing(self, tmp_path, write_file, fake_runner):
        library = self._library(tmp_path, write_file)
        assert SimulatorScanner(library, fake_runner(available=())).scan(CancelToken()) == []

    def test_listing_failure_keeps_disk_results(self, tmp_path, write_file, fake_runner):
        library = self._library(tmp_path, write_file)
        targets = SimulatorScanner(library, fake_runner({})).scan(CancelToken())
        assert len(targets) == 3

    def test_bad_json_keeps_disk_results(self, tmp_path, write_file, fake_runner):
        library = self._library(tmp_path, write_file)
        targets = SimulatorScanner(library, fake_runner({SIMCTL: "{not json"})).scan(CancelToken())
        assert len(targets) == 3

    def test_cancellation_is_not_swallowed(self, tmp_path, write_file, fake_runner):
        library = self._library(tmp_path, write_file)
        with pytest.raises(Cancelled):
            SimulatorScanner(library, fake_runner({SIMCTL: cancel_then_fail})).scan(CancelToken())


class TestHomebrewScanner:
    def test_children_of_brew_cache(self, tmp_path, write_file, fake_runner):
        cache = tmp_path / "brew-cache"
        write_file(cache / "wget--1.21.bottle.tar.gz", 40)
        write_file(cache / "downloads" / "x.tar.gz", 60)
        runner = fake_runner({("brew", "--cache"): f"{cache}\n"})
        targets = HomebrewScanner(str(tmp_path), runner).scan(CancelToken())
        assert [os.path.basename(t.path) for t in targets] == ["downloads", "wget--1.21.bottle.tar.gz"]
        assert all(t.risk == RiskLevel.SAFE for t in targets)

    def test_falls_back_to_library_caches(self, tmp_path, write_file, fake_runner):
        write_file(tmp_path / "Library" / "Caches" / "Homebrew" / "pkg.tar.gz", 10)
        targets = HomebrewScanner(str(tmp_path), fake_runner({})).scan(CancelToken())
        assert [os.path.basename(t.path) for t in targets] == ["pkg.tar.gz"]

    def test_brew_missing(self, tmp_path, fake_runner):
        assert HomebrewScanner(str(tmp_path), fake_runner(available=())).scan(CancelToken()) == []


class TestAppScanner:
    def _layout(self, tmp_path, write_file):
        apps = tmp_path / "Applications"
        os.makedirs(apps / "Slack.app" / "Contents")
        write_file(apps / "Slack.app" / "Contents" / "Info.plist", 10)
        os.makedirs(apps / "Visual Studio Code.app")
        library = tmp_path / "Library"
        write_file(library / "Application Support" / "Slack" / "storage.db", 500)
        write_file(library / "Preferences" / "com.tinyspeck.slack.plist", 0)
        write_file(library / "Caches" / "com.slack.Slack" / "cache.db", 20)
        write_file(library / "Caches" / "Slacker" / "cache.db", 20)
        write_file(library / "Application Support" / "com.example.GoneApp" / "data", 70)
        write_file(library / "Application Support" / "com.apple.Safari" / "data", 70)
        return AppScanner(apps_dir=str(apps), library_dir=str(library))

    def test_list_apps(self, tmp_path, write_file):
        scanner = self._layout(tmp_path, write_file)
        assert scanner.list_apps() == ["Slack", "Visual Studio Code"]

    @pytest.mark.parametrize(
        "entry,app,expected",
        [
            ("Slack", "Slack", True),
            ("com.tinyspeck.slack.plist", "Slack", True),
            ("slack-helper", "slack", True),
            ("Slacker", "Slack", False),
            ("VisualStudioCode", "Visual Studio Code", True),
            ("anything", "", False),
        ],
    )
    def test_matches(self, entry, app, expected):
        assert AppScanner.matches(entry, app) is expected

    def test_find_related_files_includes_bundle_and_zero_size_matches(self, tmp_path, write_file):
        scanner = self._layout(tmp_path, write_file)
        targets = scanner.find_related_files(CancelToken(), "Slack")
        names = [os.path.basename(t.path) for t in targets]
        assert names[0] == "Slack.app"
        assert "com.tinyspeck.slack.plist" in names
        assert "com.slack.Slack" in names
        assert "Slack" in names
        assert "Slacker" not in names
        assert all(t.risk == RiskLevel.DANGEROUS for t in targets)

    def test_scan_reports_orphans_only(self, tmp_path, write_file):
        scanner = self._layout(tmp_path, write_file)
        targets = scanner.scan(CancelToken())
        assert [os.path.basename(t.path) for t in targets] == ["com.example.GoneApp"]
        assert targets[0].category == "App Leftovers"

    def test_helper_bundles_of_installed_apps_are_not_orphans(self, tmp_path, write_file):
        scanner = self._layout(tmp_path, write_file)
        info = tmp_path / "Applications" / "Visual Studio Code.app" / "Contents" / "Info.plist"
        os.makedirs(info.parent)
        with open(info, "wb") as fh:
            plistlib.dump({"CFBundleIdentifier": "com.microsoft.VSCode"}, fh)
        library = tmp_path / "Library"
        write_file(library / "Caches" / "com.microsoft.VSCode.ShipIt" / "update.zip", 40)
        write_file(library / "Caches" / "com.microsoft.VSCode" / "blob", 40)
        write_file(library / "Application Support" / "com.tinyspeck.slackmacgap.helper" / "x", 40)

        assert scanner.installed_bundle_ids() == {"com.microsoft.vscode"}
        targets = scanner.scan(CancelToken())
        assert [os.path.basename(t.path) for t in targets] == ["com.example.GoneApp"]

    def test_cancelled_token(self, tmp_path, write_file):
        scanner = self._layout(tmp_path, write_file)
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            scanner.find_related_files(token, "Slack")


class TestCacheDirScanners:
    def test_system_junk_expands_children_and_skips_empty(self, tmp_path, write_file):
        write_file(tmp_path / "Library" / "Caches" / "com.b.app" / "blob", 20)
        write_file(tmp_path / "Library" / "Caches" / "com.a.app" / "blob", 10)
        os.makedirs(tmp_path / "Library" / "Caches" / "com.empty.app")
        write_file(tmp_path / "Library" / "Logs" / "old.log", 5)

        targets = SystemJunkScanner(str(tmp_path)).scan(CancelToken())
        assert [os.path.basename(t.path) for t in targets] == ["com.a.app", "com.b.app", "old.log"]
        assert [t.size for t in targets] == [10, 20, 5]
        assert all(t.category == "System Junk" for t in targets)

    def test_whole_location_target(self, tmp_path, write_file):
        write_file(tmp_path / ".m2" / "repository" / "org" / "lib.jar", 30)
        targets = MavenCacheScanner(str(tmp_path)).scan(CancelToken())
        assert len(targets) == 1
        assert targets[0].size == 30
        assert targets[0].risk == RiskLevel.MODERATE

    def test_location_risk_override(self, tmp_path, write_file):
        write_file(tmp_path / "Library" / "Developer" / "Xcode" / "DerivedData" / "App-abc" / "x", 10)
        write_file(tmp_path / "Library" / "Developer" / "Xcode" / "Archives" / "2024-01-01" / "a", 10)
        targets = XcodeScanner(str(tmp_path)).scan(CancelToken())
        risks = {os.path.basename(t.path): t.risk for t in targets}
        assert risks == {"App-abc": RiskLevel.SAFE, "2024-01-01": RiskLevel.MODERATE}

    def test_missing_locations(self, tmp_path):
        assert NodeScanner(str(tmp_path)).scan(CancelToken()) == []

    def test_cancelled(self, tmp_path, write_file):
        write_file(tmp_path / "Library" / "Caches" / "x" / "y", 1)
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            SystemJunkScanner(str(tmp_path)).scan(token)


    def test_excluded_subtree_splits_parent_target(self, tmp_path, write_file):
        foo = tmp_path / "Library" / "Caches" / "com.foo"
        write_file(foo / "junk.bin", 100)
        write_file(foo / "keep" / "important.db", 5000)
        write_file(foo / "tmp" / "a.bin", 7)
        keep = str(foo / "keep")

        def skip(path):
            return path == keep or path.startswith(keep + "/")

        targets = SystemJunkScanner(str(tmp_path), skip=skip).scan(CancelToken())
        assert [(os.path.basename(t.path), t.size) for t in targets] == [("junk.bin", 100), ("tmp", 7)]
        assert not any(keep.startswith(t.path) for t in targets)

    def test_excluded_location_root_is_skipped(self, tmp_path, write_file):
        write_file(tmp_path / ".m2" / "repository" / "org" / "lib.jar", 30)
        root = str(tmp_path / ".m2" / "repository")
        assert MavenCacheScanner(str(tmp_path), skip=lambda p: p == root).scan(CancelToken()) == []

    def test_excluded_file_inside_whole_location(self, tmp_path, write_file):
        write_file(tmp_path / ".m2" / "repository" / "org" / "lib.jar", 30)
        write_file(tmp_path / ".m2" / "repository" / "org" / "keep.pom", 3)
        write_file(tmp_path / ".m2" / "repository" / "com" / "x.jar", 9)

        targets = MavenCacheScanner(str(tmp_path), skip=lambda p: p.endswith(".pom")).scan(CancelToken())
        assert [(os.path.basename(t.path), t.size) for t in targets] == [("com", 9), ("lib.jar", 30)]


class TestLargeOldFilesScanner:
    def test_finds_large_stale_files(self, tmp_path, write_file):
        old = time.time() - 200 * 86400
        write_file(tmp_path / "Downloads" / "big-old.dmg", 2000, mtime=old)
        write_file(tmp_path / "Documents" / "nested" / "bigger-old.iso", 3000, mtime=old)
        write_file(tmp_path / "Downloads" / "big-new.dmg", 2000)
        write_file(tmp_path / "Downloads" / "small-old.txt", 10, mtime=old)
        write_file(tmp_path / "Desktop" / ".hidden-old.bin", 5000, mtime=old)

        scanner = LargeOldFilesScanner(str(tmp_path), min_size=1000, min_age_days=90)
        targets = scanner.scan(CancelToken())

        assert [os.path.basename(t.path) for t in targets] == ["bigger-old.iso", "big-old.dmg"]
        assert all(t.risk == RiskLevel.DANGEROUS for t in targets)
        assert targets[0].description.startswith("Not modified in ")

    def test_skip_callback(self, tmp_path, write_file):
        old = time.time() - 200 * 86400
        write_file(tmp_path / "Downloads" / "keep" / "a.bin", 2000, mtime=old)
        write_file(tmp_path / "Downloads" / "skip" / "b.bin", 2000, mtime=old)
        scanner = LargeOldFilesScanner(
            str(tmp_path), min_size=1000, min_age_days=90, skip=lambda p: os.path.basename(p) == "skip"
        )
        assert [os.path.basename(t.path) for t in scanner.scan(CancelToken())] == ["a.bin"]


class TestScannerOutputInvariants:
    def test_sizes_non_negative_and_category_set(self, tmp_path, write_file, fake_runner):
        write_file(tmp_path / "Library" / "Caches" / "x" / "y", 3)
        runner = fake_runner({IMAGES: "abc\t1GB\n", DF: DF_OUTPUT})
        targets = SystemJunkScanner(str(tmp_path)).scan(CancelToken()) + DockerScanner(runner).scan(CancelToken())
        assert targets
        for t in targets:
            assert t.size >= 0
            assert t.category
