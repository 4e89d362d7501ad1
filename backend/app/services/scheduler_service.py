from __future__ import annotations

import errno
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.repositories.sync_run_repository import SyncAlreadyRunningError
from backend.app.services.sync_service import SyncOptions, SyncService
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mangan.scheduler")

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


class SchedulerService:
    def __init__(
        self,
        sync_service: SyncService,
        interval_seconds: int,
        *,
        sync_options: SyncOptions | None = None,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self._sync_service = sync_service
        self._interval_seconds = max(1, interval_seconds)
        self._sync_options = sync_options or SyncOptions()
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: Any | None = None
        self._lock_acquired = False

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        if not self._try_acquire_process_lock():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="mangan-scheduler")
        self._thread.daemon = True
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning(
                "scheduler single-instance lock unavailable on this platform; starting scheduler"
            )
            return True

        lock_path = self._lock_path
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if "lock_file" in locals():
                try:
                    lock_file.close()
                except OSError:
                    pass
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info(
                    "scheduler start skipped; lock held by another process path=%s",
                    lock_path,
                )
                return False
            LOGGER.warning(
                "scheduler lock acquisition failed path=%s; starting scheduler anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug(
                "scheduler lock file metadata write failed path=%s",
                lock_path,
                exc_info=True,
            )

        self._lock_file = lock_file
        self._lock_acquired = True
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            self._lock_acquired = False
            return

        try:
            if self._lock_acquired and fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("scheduler lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            try:
                lock_file.close()
            except OSError:
                pass
            self._lock_file = None
            self._lock_acquired = False

    def _run_loop(self) -> None:
        next_sync_tick = time.monotonic() + self._interval_seconds
        while not self._stop_event.is_set():
            now = time.monotonic()
            if now >= next_sync_tick:
                self.run_sync_tick()
                next_sync_tick = now + self._interval_seconds
            self._stop_event.wait(max(0.0, next_sync_tick - now))

    def run_sync_tick(self) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_tick_type="sync")
        tick_telemetry = self._telemetry.bind(tick_id=tick_id, tick_type="sync")
        started_at = time.perf_counter()
        tick_telemetry.emit("scheduler.tick.start")
        try:
            outcome = self._sync_service.run(self._sync_options)
        except SyncAlreadyRunningError as exc:
            LOGGER.info("scheduled sync skipped; run in progress run_id=%s", exc.run_id)
            tick_telemetry.emit(
                "scheduler.tick.finish",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="skipped",
            )
        except Exception as exc:
            tick_telemetry.emit(
                "scheduler.tick.error",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.warning("scheduled sync failed", exc_info=True)
        else:
            tick_telemetry.emit(
                "scheduler.tick.finish",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="noop" if outcome.no_op else str(outcome.status),
            )
        finally:
            reset_contextvars(**tick_tokens)
