#!/usr/bin/env python3
"""Local macbroom server (FastAPI).

- Background scan and cleanup jobs with WebSocket progress
- Cancellable jobs (one CancelToken per job)
- Snapshot, history and SpaceLens read endpoints
- Cleanup is dry-run unless execute=true and confirm=true

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import threading
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from macbroom import scancache
from macbroom.cleaner import CleanupExecutor, Trash
from macbroom.core import (
    APP_NAME,
    Cancelled,
    CancelToken,
    CommandRunner,
    DeadlineExceeded,
    data_dir,
    now_utc_iso,
    resolve_writable_path,
    total_size,
)
from macbroom.engine import CATEGORY_KEYS, CategoryFilter, ScanEngine, ScanFailed, summarize
from macbroom.history import History, HistoryCorrupted
from macbroom.spacelens import SpaceLens

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
SPACELENS_TIMEOUT = 120.0
TERMINAL_STATUSES = {"completed", "failed", "cancelled"}


# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path) -> logging.Logger:
    log_file = resolve_writable_path(log_file, "server.log")
    logger = logging.getLogger(f"{APP_NAME}_server")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


LOGGER = configure_logging(data_dir() / "server.log")
APP_LOOP: asyncio.AbstractEventLoop | None = None


# ---------------------------- API Models ------------------------------------ #


class ScanRequest(BaseModel):
    categories: list[str] = Field(default_factory=list, description="Category selectors; empty means all")
    exclude: list[str] = Field(default_factory=list, description="Glob or dir/** patterns to skip")


class CleanupRequest(BaseModel):
    categories: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    paths: list[str] = Field(default_factory=list, description="Only clean targets with these paths")
    permanent: bool = False
    execute: bool = False
    confirm: bool = False


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None, warnings: list[str] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": warnings or [],
        "data": data,
    }
    return JSONResponse(body)


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code)


# ------------------------------- Job Manager -------------------------------- #


@dataclass
class JobState:
    job_id: str
    job_type: str
    status: str = "queued"
    created_at: str = field(default_factory=now_utc_iso)
    updated_at: str = field(default_factory=now_utc_iso)
    progress: dict[str, Any] = field(default_factory=lambda: {"phase": "queued", "pct": 0.0})
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class JobManager:
    def __init__(self, max_workers: int = 2):
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self._jobs: dict[str, JobState] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._subs: dict[str, set[asyncio.Queue]] = {}
        self._lock = threading.Lock()

    def create_job(self, job_type: str) -> JobState:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type)
        with self._lock:
            self._jobs[job.job_id] = job
            self._tokens[job.job_id] = CancelToken()
            self._subs[job.job_id] = set()
        return job

    def get(self, job_id: str) -> JobState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def snapshot(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return asdict(job) if job else None

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            token = self._tokens.get(job_id)
            if job is None or token is None or job.status in TERMINAL_STATUSES:
                return False
        token.cancel()
        return True

    def subscribe(self, job_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        with self._lock:
            self._subs.setdefault(job_id, set()).add(q)
        return q

    def unsubscribe(self, job_id: str, q: asyncio.Queue) -> None:
        with self._lock:
            if job_id in self._subs:
                self._subs[job_id].discard(q)

    def _notify(self, job_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            queues = list(self._subs.get(job_id, set()))

        for q in queues:
            if APP_LOOP and APP_LOOP.is_running():
                APP_LOOP.call_soon_threadsafe(_queue_put_nowait_safe, q, payload)
            else:
                _queue_put_nowait_safe(q, payload)

    def _update(self, job_id: str, event: str, payload: dict[str, Any], **changes: Any) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            for key, value in changes.items():
                setattr(job, key, value)
            job.updated_at = now_utc_iso()
        self._notify(job_id, {"event": event, "job_id": job_id, **payload})

    def update_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        self._update(job_id, "progress", {"progress": progress}, progress=progress)

    def submit(self, job: JobState, func: Callable[[CancelToken, Callable[[dict[str, Any]], None]], dict[str, Any]]) -> None:
        token = self._tokens[job.job_id]
        self._update(job.job_id, "status", {"status": "running"}, status="running")

        def runner() -> None:
            try:
                result = func(token, lambda p: self.update_progress(job.job_id, p))
                self._update(job.job_id, "completed", {"result": result}, result=result, status="completed")
            except Cancelled as exc:
                LOGGER.info("job_cancelled job=%s type=%s", job.job_id, job.job_type)
                error = {"code": "JOB_CANCELLED", "message": str(exc)}
                self._update(job.job_id, "cancelled", {"error": error}, error=error, status="cancelled")
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.error("job_failed job=%s type=%s err=%s", job.job_id, job.job_type, exc)
                error = {"code": "JOB_EXECUTION_ERROR", "message": str(exc), "traceback": traceback.format_exc()}
                if isinstance(exc, ScanFailed):
                    error["details"] = {
                        "failures": [asdict(f) for f in exc.failures],
                        "partial_items": len(exc.partial),
                    }
                self._update(job.job_id, "failed", {"error": {"code": error["code"], "message": str(exc)}}, error=error, status="failed")

        self.executor.submit(runner)


def _queue_put_nowait_safe(q: asyncio.Queue, payload: dict[str, Any]) -> None:
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        with contextlib.suppress(asyncio.QueueEmpty):
            _ = q.get_nowait()
        with contextlib.suppress(asyncio.QueueFull):
            q.put_nowait(payload)


JOBS = JobManager(max_workers=2)


# ------------------------------ Job Bodies ---------------------------------- #


def make_engine(category_filter: CategoryFilter) -> ScanEngine:
    return ScanEngine.for_filter(category_filter, logger=LOGGER)


def make_filter(categories: list[str], exclude: list[str]) -> CategoryFilter:
    return CategoryFilter.from_names(categories, exclude=exclude)


def run_scan_job(req: ScanRequest, token: CancelToken, progress_cb: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
    progress_cb({"phase": "scanning", "pct": 10.0})
    targets = make_engine(make_filter(req.categories, req.exclude)).scan(token)

    progress_cb({"phase": "snapshot", "pct": 90.0})
    warnings: list[str] = []
    previous = None
    try:
        previous = scancache.load()
    except scancache.SnapshotNotFound:
        pass
    except scancache.SnapshotCorrupted as exc:
        warnings.append(f"previous snapshot unreadable, diff skipped: {exc}")
    current = scancache.build_snapshot(targets)
    delta = scancache.diff(previous, current) if previous is not None else None
    scancache.save(None, current)

    LOGGER.info("scan_job_complete targets=%s bytes=%s", len(targets), total_size(targets))
    progress_cb({"phase": "completed", "pct": 100.0})
    return {
        "summary": summarize(targets),
        "targets": [t.to_dict() for t in targets],
        "snapshot": current.to_dict(),
        "diff": delta.to_dict() if delta else None,
        "warnings": warnings,
    }


def run_cleanup_job(req: CleanupRequest, token: CancelToken, progress_cb: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
    progress_cb({"phase": "scanning", "pct": 10.0})
    targets = make_engine(make_filter(req.categories, req.exclude)).scan(token)
    if req.paths:
        wanted = set(req.paths)
        targets = [t for t in targets if t.path in wanted]

    dry_run = not req.execute
    progress_cb({"phase": "cleanup_execution", "pct": 50.0, "candidate_count": len(targets)})
    executor = CleanupExecutor(trash=Trash(CommandRunner(), token), history=History(), logger=LOGGER)
    result = executor.execute(targets, token, permanent=req.permanent, dry_run=dry_run)
    progress_cb({"phase": "completed", "pct": 100.0})
    return {
        "candidate_count": len(targets),
        "dry_run_default": True,
        "cleanup": result.to_dict(),
    }


# ------------------------------- App Setup ---------------------------------- #


@contextlib.asynccontextmanager
async def lifespan(_: FastAPI):
    global APP_LOOP
    APP_LOOP = asyncio.get_running_loop()
    yield
    APP_LOOP = None


app = FastAPI(
    title="macbroom",
    version="1.0.0",
    description="Local macOS junk scan and cleanup API (dry-run by default).",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://127.0.0.1"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    LOGGER.exception("Unhandled server error: %s", exc)
    return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)


def job_not_found(job_id: str) -> JSONResponse:
    return api_error("JOB_NOT_FOUND", f"Job not found: {job_id}", status_code=404)


# ---------------------------- Job Endpoints --------------------------------- #


@app.get("/api/v1/jobs/{job_id}", summary="Get job status/progress")
async def get_job(job_id: str):
    job = JOBS.snapshot(job_id)
    if job is None:
        return job_not_found(job_id)
    return api_ok(job)


@app.get("/api/v1/jobs/{job_id}/result", summary="Get job result")
async def get_job_result(job_id: str):
    job = JOBS.snapshot(job_id)
    if job is None:
        return job_not_found(job_id)
    if job["status"] not in TERMINAL_STATUSES:
        return api_ok({"job_id": job_id, "status": job["status"], "progress": job["progress"]})
    return api_ok({"job_id": job_id, "status": job["status"], "result": job["result"], "error": job["error"]})


@app.post("/api/v1/jobs/{job_id}/cancel", summary="Cancel a running job")
async def cancel_job(job_id: str):
    if JOBS.get(job_id) is None:
        return job_not_found(job_id)
    requested = JOBS.cancel(job_id)
    return api_ok({"job_id": job_id, "cancel_requested": requested})


@app.websocket("/api/v1/ws/jobs/{job_id}")
async def ws_job_progress(websocket: WebSocket, job_id: str):
    await websocket.accept()
    job = JOBS.snapshot(job_id)
    if job is None:
        await websocket.send_json({"status": "error", "message": "job not found"})
        await websocket.close()
        return

    q = JOBS.subscribe(job_id)
    try:
        await websocket.send_json({"event": "connected", "job_id": job_id})
        job = JOBS.snapshot(job_id) or job
        await websocket.send_json({"event": "snapshot", "job": job})

        while job["status"] not in TERMINAL_STATUSES:
            payload = await q.get()
            await websocket.send_json(payload)
            job = JOBS.snapshot(job_id) or job
    except WebSocketDisconnect:
        pass
    finally:
        JOBS.unsubscribe(job_id, q)
        with contextlib.suppress(RuntimeError):
            await websocket.close()


# ------------------------------- Scan APIs ---------------------------------- #


@app.post("/api/v1/scans/start", summary="Start a category scan", response_description="Job ID for tracking")
async def start_scan(req: ScanRequest):
    try:
        make_filter(req.categories, req.exclude)
    except ValueError as exc:
        return api_error("INVALID_CATEGORY", str(exc), details={"known": list(CATEGORY_KEYS)})

    job = JOBS.create_job("scan")
    JOBS.submit(job, lambda token, cb: run_scan_job(req, token, cb))
    return api_ok({"job_id": job.job_id, "status": "running"}, meta={"type": "scan"})


@app.get("/api/v1/snapshots/latest", summary="Get the most recent scan snapshot")
async def latest_snapshot():
    try:
        snap = scancache.load()
    except scancache.SnapshotNotFound:
        return api_ok({"has_snapshot": False})
    except scancache.SnapshotCorrupted as exc:
        return api_error("SNAPSHOT_CORRUPTED", str(exc), status_code=500)
    return api_ok({"has_snapshot": True, "snapshot": snap.to_dict()})


# ------------------------------ Cleanup APIs -------------------------------- #


@app.post("/api/v1/cleanup/run", summary="Run cleanup (dry-run default)")
async def run_cleanup(req: CleanupRequest):
    if req.execute and not req.confirm:
        return api_error(
            "CONFIRMATION_REQUIRED",
            "Destructive cleanup requires confirm=true.",
            status_code=400,
        )
    try:
        make_filter(req.categories, req.exclude)
    except ValueError as exc:
        return api_error("INVALID_CATEGORY", str(exc), details={"known": list(CATEGORY_KEYS)})

    job = JOBS.create_job("cleanup")
    JOBS.submit(job, lambda token, cb: run_cleanup_job(req, token, cb))
    return api_ok({"job_id": job.job_id, "status": "running"}, meta={"type": "cleanup", "dry_run": not req.execute})


# ------------------------------ History APIs -------------------------------- #


@app.get("/api/v1/history", summary="List cleanup history entries")
async def list_history():
    try:
        entries = History().load()
    except HistoryCorrupted as exc:
        return api_error("HISTORY_CORRUPTED", str(exc), status_code=500)
    return api_ok({"entries": [e.to_dict() for e in entries]}, meta={"count": len(entries)})


@app.get("/api/v1/history/stats", summary="Cleanup totals and recent runs")
async def history_stats():
    try:
        stats = History().stats()
    except HistoryCorrupted as exc:
        return api_error("HISTORY_CORRUPTED", str(exc), status_code=500)
    return api_ok(stats.to_dict())


# ----------------------------- SpaceLens API -------------------------------- #


@app.get("/api/v1/spacelens", summary="Size of every immediate child of a directory")
async def spacelens(path: str = Query(default="~", description="Directory to analyze")):
    lens = SpaceLens(path)
    if not os.path.isdir(lens.path):
        return api_error("INVALID_PATH", f"Not a directory: {lens.path}")
    try:
        nodes = await asyncio.to_thread(lens.analyze, CancelToken(timeout=SPACELENS_TIMEOUT))
    except DeadlineExceeded:
        return api_error("TIMEOUT", f"Analysis of {lens.path} took too long", status_code=504)
    except OSError as exc:
        return api_error("INVALID_PATH", str(exc))
    return api_ok(
        {
            "path": lens.path,
            "total_size": sum(n.size for n in nodes),
            "nodes": [n.to_dict() for n in nodes],
        },
        meta={"count": len(nodes)},
    )


@app.get("/healthz", summary="Liveness endpoint")
async def healthz():
    return api_ok({"service": "macbroom", "healthy": True})


# --------------------------------- Main ------------------------------------- #


def serve(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    import uvicorn  # pylint: disable=import-outside-toplevel

    LOGGER.info("Starting macbroom server host=%s port=%s", host, port)
    uvicorn.run(app, host=host, port=port, log_level="info")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="macbroom local API server")
    parser.add_argument("--host", default=os.getenv("MACBROOM_HOST", DEFAULT_HOST))
    parser.add_argument("--port", type=int, default=int(os.getenv("MACBROOM_PORT", str(DEFAULT_PORT))))
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    serve(args.host, args.port)


if __name__ == "__main__":
    main()
