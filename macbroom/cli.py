#!/usr/bin/env python3
"""macbroom command line.

Commands:
- scan       find reclaimable space, compare with the previous scan
- clean      scan, confirm, then move to Trash (or delete permanently)
- uninstall  remove an application and its Library leftovers
- history    cleanup totals and the most recent runs
- spacelens  per-directory size breakdown, optionally interactive
- serve      start the local HTTP API

Exit codes: 0 success, 1 error, 130 cancelled.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Any, Callable, Sequence

from macbroom import scancache
from macbroom.cleaner import CleanupExecutor, CleanupResult, Trash
from macbroom.core import (
    APP_NAME,
    Cancelled,
    CancelToken,
    CommandRunner,
    RiskLevel,
    Target,
    default_log_file,
    human_bytes,
    now_utc_iso,
    parse_size_to_bytes,
    setup_logger,
)
from macbroom.engine import CategoryFilter, ScanEngine
from macbroom.history import History
from macbroom.scanners import LARGE_FILE_MIN_AGE_DAYS, AppScanner
from macbroom.spacelens import SpaceLens, render_bar_list

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130

CATEGORY_FLAGS = (
    ("system", "System junk (user caches and logs)"),
    ("browser", "Browser caches"),
    ("xcode", "Xcode derived data and archives"),
    ("large", "Large files untouched for a long time"),
    ("docker", "Dangling Docker images and build cache"),
    ("node", "Node.js package manager caches"),
    ("homebrew", "Homebrew download cache"),
    ("simulator", "iOS Simulator data"),
    ("python", "Python package caches"),
    ("rust", "Rust/Cargo caches"),
    ("go", "Go module and build caches"),
    ("ruby", "Ruby gem caches"),
    ("jetbrains", "JetBrains IDE caches"),
    ("maven", "Maven repository"),
    ("gradle", "Gradle caches"),
    ("dev", "All developer-tool caches"),
    ("caches", "All general caches"),
    ("all", "Everything"),
)


# -------------------------------- Prompts ----------------------------------- #


def _ask(prompt: str) -> str:
    # stdout carries the command output (JSON with --json)
    print(prompt, end="", file=sys.stderr, flush=True)
    return input().strip().lower()


def require_confirm(args: argparse.Namespace, message: str) -> bool:
    if getattr(args, "yes", False):
        return True
    return _ask(f"{message} [y/N]: ") in {"y", "yes"}


def require_typed_confirm(args: argparse.Namespace, message: str) -> bool:
    """Permanent deletion needs the full word, not just ``y``."""
    if getattr(args, "yes", False):
        return True
    return _ask(f"{message}\nThis cannot be undone. Type 'yes' to continue: ") == "yes"


# ------------------------------- Formatting --------------------------------- #


def _signed_bytes(delta: int) -> str:
    sign = "+" if delta >= 0 else "-"
    return f"{sign}{human_bytes(abs(delta))}"


def format_targets(targets: Sequence[Target]) -> list[str]:
    lines: list[str] = []
    grouped: dict[str, list[Target]] = {}
    for t in targets:
        grouped.setdefault(t.category, []).append(t)
    for category, items in grouped.items():
        size = sum(t.size for t in items)
        lines.append(f"{category} ({len(items)} items, {human_bytes(size)})")
        for t in items:
            marker = "!" if t.risk >= RiskLevel.DANGEROUS else ("~" if t.risk == RiskLevel.MODERATE else " ")
            lines.append(f"  {marker} {human_bytes(t.size):>10}  {t.path}  [{t.risk}] {t.description}")
    total = sum(t.size for t in targets)
    lines.append("")
    lines.append(f"Total: {len(targets)} items, {human_bytes(total)}")
    return lines


def format_scan(result: dict[str, Any]) -> list[str]:
    targets = result["_targets"]
    if not targets:
        lines = ["Nothing found."]
    else:
        lines = format_targets(targets)
    diff = result.get("diff")
    if diff:
        lines.append("")
        lines.append(f"Since last scan: {_signed_bytes(diff['total_size_delta'])}")
        for name, delta in diff["categories"].items():
            if delta["size_delta"] or delta["items_delta"]:
                lines.append(f"  {name}: {_signed_bytes(delta['size_delta'])} ({delta['items_delta']:+d} items)")
    for w in result.get("warnings", []):
        lines.append(f"warning: {w}")
    return lines


def format_cleanup(result: dict[str, Any]) -> list[str]:
    if result.get("status") == "empty":
        return ["Nothing to clean!"]
    if result.get("status") == "declined":
        return ["Cancelled."]
    cleanup = result["cleanup"]
    verb = "Permanently deleted" if cleanup["method"] == "permanent" else "Moved to Trash"
    if cleanup["dry_run"]:
        verb = "[DRY RUN] Would delete" if cleanup["method"] == "permanent" else "[DRY RUN] Would move to Trash"
    lines = [f"{verb}: {cleanup['cleaned']} items ({cleanup['bytes_freed_human']})"]
    if cleanup["failed"]:
        lines.append(f"Failed: {cleanup['failed']} items")
        for f in cleanup["failures"]:
            lines.append(f"  {f['path']}: {f['error']}")
    if cleanup["history_error"]:
        lines.append(f"warning: history not recorded: {cleanup['history_error']}")
    return lines


def format_history(result: dict[str, Any]) -> list[str]:
    stats = result["stats"]
    lines = [
        f"Total freed: {stats['total_freed_human']} in {stats['total_cleanups']} cleanups",
    ]
    if stats["by_category"]:
        lines.append("")
        lines.append("By category:")
        for name, cat in sorted(stats["by_category"].items(), key=lambda kv: -kv[1]["bytes_freed"]):
            lines.append(f"  {name}: {human_bytes(cat['bytes_freed'])} ({cat['cleanups']} cleanups)")
    if stats["recent"]:
        lines.append("")
        lines.append("Recent:")
        for e in stats["recent"]:
            lines.append(
                f"  {e['timestamp']}  {e['category']}  {e['items']} items  "
                f"{human_bytes(e['bytes_freed'])}  ({e['method']})"
            )
    for e in result.get("entries", []):
        lines.append(f"{e['timestamp']}\t{e['category']}\t{e['items']}\t{e['bytes_freed']}\t{e['method']}")
    return lines


def format_spacelens(result: dict[str, Any]) -> list[str]:
    if result.get("interactive"):
        return []
    return [f"{result['path']} ({human_bytes(result['total_size'])})", "", result["_rendered"].rstrip("\n")]


# ------------------------------- Commands ----------------------------------- #


def _scan_engine(args: argparse.Namespace, logger: logging.Logger) -> ScanEngine:
    opts: dict[str, Any] = {}
    if getattr(args, "min_size", None):
        opts["large_min_size"] = parse_size_to_bytes(args.min_size)
    if getattr(args, "min_age_days", None) is not None:
        opts["large_min_age_days"] = int(args.min_age_days)
    return ScanEngine.for_filter(CategoryFilter.from_namespace(args), logger=logger, **opts)


def command_scan(args: argparse.Namespace, token: CancelToken, logger: logging.Logger) -> dict[str, Any]:
    targets = _scan_engine(args, logger).scan(token)
    snapshot_path = scancache.default_path()
    warnings: list[str] = []

    previous = None
    try:
        previous = scancache.load(snapshot_path)
    except scancache.SnapshotNotFound:
        pass
    except scancache.SnapshotCorrupted as exc:
        warnings.append(f"previous snapshot unreadable, diff skipped: {exc}")
        logger.warning("snapshot_corrupt path=%s err=%s", snapshot_path, exc)

    current = scancache.build_snapshot(targets)
    delta = scancache.diff(previous, current) if previous is not None else None
    scancache.save(snapshot_path, current)
    logger.info("snapshot_saved path=%s total=%s", snapshot_path, current.total_size)

    return {
        "targets": [t.to_dict() for t in targets],
        "snapshot": current.to_dict(),
        "diff": delta.to_dict() if delta else None,
        "warnings": warnings,
        "_targets": targets,
    }


def _run_cleanup(
    args: argparse.Namespace,
    targets: list[Target],
    token: CancelToken,
    logger: logging.Logger,
    subject: str = "",
) -> dict[str, Any]:
    if not targets:
        return {"status": "empty", "targets": []}

    total = human_bytes(sum(t.size for t in targets))
    if not args.json:
        print("\n".join(format_targets(targets)))

    dry_run = getattr(args, "dry_run", False)
    if not dry_run:
        if args.permanent:
            ok = require_typed_confirm(args, f"Permanently delete {len(targets)} items ({total}){subject}?")
        else:
            ok = require_confirm(args, f"Move {len(targets)} items ({total}){subject} to Trash?")
        if not ok:
            return {"status": "declined", "targets": [t.to_dict() for t in targets]}

    executor = CleanupExecutor(
        trash=Trash(CommandRunner(), token),
        history=History(),
        logger=logger,
    )
    result: CleanupResult = executor.execute(targets, token, permanent=args.permanent, dry_run=dry_run)
    return {
        "status": "dry_run" if dry_run else "done",
        "targets": [t.to_dict() for t in targets],
        "cleanup": result.to_dict(),
    }


def command_clean(args: argparse.Namespace, token: CancelToken, logger: logging.Logger) -> dict[str, Any]:
    targets = _scan_engine(args, logger).scan(token)
    return _run_cleanup(args, targets, token, logger)


def command_uninstall(args: argparse.Namespace, token: CancelToken, logger: logging.Logger) -> dict[str, Any]:
    scanner = AppScanner(apps_dir=args.apps_dir or "", library_dir=args.library_dir or "")
    if args.orphans:
        targets = scanner.scan(token)
        subject = " of orphaned app data"
    else:
        if not args.app:
            raise ValueError("An application name is required unless --orphans is given")
        targets = scanner.find_related_files(token, args.app)
        subject = f" for {args.app!r}"
    logger.info("uninstall_candidates app=%s orphans=%s items=%s", args.app, args.orphans, len(targets))
    return _run_cleanup(args, targets, token, logger, subject=subject)


def command_history(args: argparse.Namespace, token: CancelToken, logger: logging.Logger) -> dict[str, Any]:
    ledger = History()
    result: dict[str, Any] = {"path": str(ledger.path), "stats": ledger.stats().to_dict()}
    if args.entries:
        result["entries"] = [e.to_dict() for e in ledger.load()]
    return result


def command_spacelens(args: argparse.Namespace, token: CancelToken, logger: logging.Logger) -> dict[str, Any]:
    path = os.path.abspath(os.path.expanduser(args.path))
    if args.interactive:
        from macbroom import spacelens_app  # pylint: disable=import-outside-toplevel

        spacelens_app.run(path)
        return {"path": path, "interactive": True}

    nodes = SpaceLens(path).analyze(token)
    if args.top:
        nodes = nodes[: args.top]
    width = shutil.get_terminal_size((80, 24)).columns
    return {
        "path": path,
        "total_size": sum(n.size for n in nodes),
        "nodes": [n.to_dict() for n in nodes],
        "_rendered": render_bar_list(nodes, width, max(len(nodes), 1), -1, 0),
    }


def command_serve(args: argparse.Namespace, token: CancelToken, logger: logging.Logger) -> dict[str, Any]:
    from macbroom import server  # pylint: disable=import-outside-toplevel

    server.serve(host=args.host, port=args.port)
    return {"host": args.host, "port": args.port}


COMMANDS: dict[str, Callable[[argparse.Namespace, CancelToken, logging.Logger], dict[str, Any]]] = {
    "scan": command_scan,
    "clean": command_clean,
    "uninstall": command_uninstall,
    "history": command_history,
    "spacelens": command_spacelens,
    "serve": command_serve,
}

FORMATTERS: dict[str, Callable[[dict[str, Any]], list[str]]] = {
    "scan": format_scan,
    "clean": format_cleanup,
    "uninstall": format_cleanup,
    "history": format_history,
    "spacelens": format_spacelens,
}


# -------------------------------- Parser ------------------------------------ #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Scan and clean macOS junk: caches, logs, developer artifacts and app leftovers",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--log-file", default=str(default_log_file()), help="Action log file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Also log to stderr at debug level")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON instead of text")

    sub = parser.add_subparsers(dest="command", required=True)

    def add_category_opts(p: argparse.ArgumentParser) -> None:
        for flag, help_text in CATEGORY_FLAGS:
            p.add_argument(f"--{flag}", action="store_true", help=help_text)
        p.add_argument(
            "--exclude",
            action="append",
            default=[],
            metavar="PATTERN",
            help="Skip paths matching a glob or dir/** pattern (repeatable)",
        )
        p.add_argument("--min-size", default=None, help="Large-file threshold, e.g. 500MB")
        p.add_argument("--min-age-days", type=int, default=None, help=f"Large-file age (default {LARGE_FILE_MIN_AGE_DAYS})")

    def add_delete_opts(p: argparse.ArgumentParser) -> None:
        p.add_argument("--permanent", action="store_true", help="Delete permanently instead of moving to Trash")
        p.add_argument("--yes", "-y", action="store_true", help="Skip confirmation prompt")

    p = sub.add_parser("scan", help="Scan for junk files and reclaimable space")
    add_category_opts(p)

    p = sub.add_parser("clean", help="Clean selected junk files")
    add_category_opts(p)
    add_delete_opts(p)
    p.add_argument("--dry-run", action="store_true", help="Show what would be removed without removing it")

    p = sub.add_parser("uninstall", help="Remove an application and its leftovers")
    p.add_argument("app", nargs="?", default=None, help="Application name, e.g. 'Slack'")
    p.add_argument("--orphans", action="store_true", help="Remove data left by apps that are no longer installed")
    p.add_argument("--apps-dir", default=None, help="Applications directory")
    p.add_argument("--library-dir", default=None, help="User Library directory")
    add_delete_opts(p)
    p.add_argument("--dry-run", action="store_true", help="Show what would be removed without removing it")

    p = sub.add_parser("history", help="Show cleanup history")
    p.add_argument("--entries", action="store_true", help="Also list every recorded entry")

    p = sub.add_parser("spacelens", help="Show what is using space in a directory")
    p.add_argument("path", nargs="?", default=".", help="Directory to analyze")
    p.add_argument("--interactive", "-i", action="store_true", help="Browse interactively")
    p.add_argument("--top", type=int, default=0, help="Only show the N largest entries")

    p = sub.add_parser("serve", help="Start the local HTTP API")
    p.add_argument("--host", default=os.getenv("MACBROOM_HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.getenv("MACBROOM_PORT", "8765")))

    return parser


def dispatch(args: argparse.Namespace, token: CancelToken, logger: logging.Logger) -> dict[str, Any]:
    handler = COMMANDS.get(args.command)
    if handler is None:
        raise ValueError(f"Unknown command: {args.command}")
    return handler(args, token, logger)


def _public(result: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in result.items() if not k.startswith("_")}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logger(Path(args.log_file), verbose=args.verbose)
    token = CancelToken()

    try:
        result = dispatch(args, token, logger)
    except (Cancelled, KeyboardInterrupt):
        token.cancel()
        logger.info("command_cancelled command=%s", args.command)
        print(json.dumps({
            "status": "cancelled",
            "command": args.command,
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return EXIT_CANCELLED
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("command_failed command=%s err=%s", args.command, exc)
        print(json.dumps({
            "status": "error",
            "command": args.command,
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return EXIT_ERROR

    if args.json:
        print(json.dumps({
            "status": "ok",
            "command": args.command,
            "data": _public(result),
            "timestamp": now_utc_iso(),
        }, indent=2))
    elif args.command in FORMATTERS:
        lines = FORMATTERS[args.command](result)
        if lines:
            print("\n".join(lines))
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
