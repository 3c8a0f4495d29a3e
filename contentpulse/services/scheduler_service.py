from __future__ import annotations

import errno
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from contentpulse.repositories.common import utc_now
from contentpulse.repositories.link_repository import LinkAssignment, LinkRepository
from contentpulse.services.sync_service import SyncRunError, SyncService, SyncState
from contentpulse.telemetry import TelemetryClient

LOGGER = logging.getLogger("content_pulse.scheduler")

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


@dataclass(frozen=True)
class RefreshTickResult:
    due: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    skipped_running: int = 0


class SchedulerService:
    """Daily refresh loop: re-syncs assignments whose last refresh is stale."""

    def __init__(
        self,
        *,
        link_repository: LinkRepository,
        sync_service: SyncService,
        poll_interval_seconds: int,
        refresh_interval_seconds: int,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._links = link_repository
        self._sync_service = sync_service
        self._poll_interval_seconds = max(1, poll_interval_seconds)
        self._refresh_interval = timedelta(seconds=max(1, refresh_interval_seconds))
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock
        self._stop_event = threading.Event()
        self._current_cancel: threading.Event | None = None
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
        self._thread = threading.Thread(target=self._run_loop, name="content-pulse-scheduler")
        self._thread.daemon = True
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        current_cancel = self._current_cancel
        if current_cancel is not None:
            current_cancel.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def due_assignments(self) -> list[LinkAssignment]:
        cutoff = self._clock() - self._refresh_interval
        return [
            assignment
            for assignment in self._links.list_assignments()
            if assignment.last_refreshed_at is None or assignment.last_refreshed_at <= cutoff
        ]

    def run_due_refreshes(self) -> RefreshTickResult:
        due = self.due_assignments()
        completed = cancelled = failed = skipped_running = 0
        for assignment in due:
            if self._stop_event.is_set():
                break
            if self._sync_service.is_running(
                owner_id=assignment.owner_id, platform=assignment.platform
            ):
                skipped_running += 1
                continue
            cancel_event = threading.Event()
            self._current_cancel = cancel_event
            try:
                summary = self._sync_service.run(
                    owner_id=assignment.owner_id,
                    platform=assignment.platform,
                    cancel_event=cancel_event,
                )
            except SyncRunError:
                failed += 1
                LOGGER.warning(
                    "scheduled refresh failed owner_id=%s platform=%s",
                    assignment.owner_id,
                    assignment.platform,
                    exc_info=True,
                )
                continue
            finally:
                self._current_cancel = None
            if summary.state is SyncState.CANCELLED:
                cancelled += 1
            else:
                completed += 1

        return RefreshTickResult(
            due=len(due),
            completed=completed,
            cancelled=cancelled,
            failed=failed,
            skipped_running=skipped_running,
        )

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning(
                "scheduler single-instance lock unavailable on this platform; starting scheduler"
            )
            return True

        lock_path = self._lock_path
        lock_file: Any | None = None
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if lock_file is not None:
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
            LOGGER.debug("scheduler lock file metadata write failed path=%s", lock_path, exc_info=True)

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
        while not self._stop_event.is_set():
            try:
                self._run_refresh_tick()
            except Exception:
                LOGGER.warning("scheduler refresh tick failed", exc_info=True)
            self._stop_event.wait(self._poll_interval_seconds)

    def _run_refresh_tick(self) -> RefreshTickResult:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_tick_type="refresh")
        started_at = time.perf_counter()
        self._telemetry.emit(
            "scheduler.tick.start",
            tick_id=tick_id,
            tick_type="refresh",
        )
        try:
            result = self.run_due_refreshes()
        except Exception as exc:
            self._telemetry.emit(
                "scheduler.tick.error",
                tick_id=tick_id,
                tick_type="refresh",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            self._telemetry.emit(
                "scheduler.tick.finish",
                tick_id=tick_id,
                tick_type="refresh",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="ok",
                due=result.due,
                completed=result.completed,
                cancelled=result.cancelled,
                failed=result.failed,
                skipped_running=result.skipped_running,
            )
            if result.due:
                LOGGER.info(
                    "scheduler refresh tick due=%s completed=%s cancelled=%s failed=%s skipped=%s",
                    result.due,
                    result.completed,
                    result.cancelled,
                    result.failed,
                    result.skipped_running,
                )
            return result
        finally:
            reset_contextvars(**tick_tokens)
