from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from concurrent.futures import wait as wait_for_futures
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, TypeVar

from structlog.contextvars import bind_contextvars, reset_contextvars

from contentpulse.models.platforms import Platform
from contentpulse.repositories.common import utc_now
from contentpulse.repositories.link_repository import LinkRepository
from contentpulse.repositories.metrics_repository import (
    ContentCounts,
    ContentMetricsUpdate,
    MetricsRepository,
)
from contentpulse.services.identifier_resolver import Resolved, resolve
from contentpulse.services.metrics_providers import (
    BulkItemMetrics,
    BulkMetricsFetcher,
    SingleItemMetricsFetcher,
)
from contentpulse.telemetry import TelemetryClient

LOGGER = logging.getLogger("content_pulse.sync")

_T = TypeVar("_T")
_MISSING_FROM_BULK_RESPONSE = "Not returned by the YouTube API (removed, private, or invalid ID)."
_DEFAULT_ITEM_ERROR = "Failed to fetch details."


class SyncState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncServiceError(Exception):
    pass


class SyncRunError(SyncServiceError):
    """Registry or store failure that ended a run; item failures never raise."""


class SyncAlreadyRunningError(SyncServiceError):
    pass


@dataclass(frozen=True)
class SyncProgress:
    owner_id: str
    platform: Platform
    state: SyncState
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    unresolved: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0 if self.state is SyncState.COMPLETED else 0.0
        clamped = max(0, min(self.processed, self.total))
        return round(clamped / self.total * 100, 2)


@dataclass(frozen=True)
class SyncSummary:
    owner_id: str
    platform: Platform
    state: SyncState
    total: int
    succeeded: int
    failed: int
    unresolved: int
    orphans_deleted: int


@dataclass(frozen=True)
class _WorkItem:
    canonical_id: str
    raw_url: str


class SyncProgressTracker:
    """Latest run snapshot per owner and platform, for polling clients."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[tuple[str, Platform], SyncProgress] = {}

    def publish(self, progress: SyncProgress) -> None:
        with self._lock:
            self._snapshots[(progress.owner_id, progress.platform)] = progress

    def get(self, *, owner_id: str, platform: Platform) -> SyncProgress | None:
        with self._lock:
            return self._snapshots.get((owner_id, platform))


class _OwnerLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def for_owner(self, owner_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[owner_id] = lock
            return lock


class SyncService:
    """Re-fetches metrics for every link an owner tracks and reconciles the cache.

    Items are fetched one call at a time with a fixed pause between calls.
    A failing item is stored as an error-tagged record and never ends the run.
    Runs for the same owner serialize on a per-owner lock.
    """

    def __init__(
        self,
        *,
        link_repository: LinkRepository,
        metrics_repository: MetricsRepository,
        youtube_fetcher: BulkMetricsFetcher,
        instagram_fetcher: SingleItemMetricsFetcher,
        inter_request_delay_seconds: float = 2.0,
        fetch_timeout_seconds: float = 30.0,
        youtube_batch_size: int = 50,
        telemetry: TelemetryClient | None = None,
        progress_tracker: SyncProgressTracker | None = None,
        max_fetch_workers: int = 4,
    ) -> None:
        self._links = link_repository
        self._metrics = metrics_repository
        self._youtube = youtube_fetcher
        self._instagram = instagram_fetcher
        self._inter_request_delay_seconds = max(0.0, inter_request_delay_seconds)
        self._fetch_timeout_seconds = max(0.01, fetch_timeout_seconds)
        self._youtube_batch_size = max(1, min(youtube_batch_size, youtube_fetcher.max_batch_size))
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._tracker = progress_tracker if progress_tracker is not None else SyncProgressTracker()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_fetch_workers),
            thread_name_prefix="content-pulse-fetch",
        )
        self._owner_locks = _OwnerLocks()
        self._active_lock = threading.Lock()
        self._active_runs: dict[tuple[str, Platform], list[threading.Event]] = {}

    @property
    def progress_tracker(self) -> SyncProgressTracker:
        return self._tracker

    def get_progress(self, *, owner_id: str, platform: Platform) -> SyncProgress | None:
        return self._tracker.get(owner_id=owner_id, platform=platform)

    def is_running(self, *, owner_id: str, platform: Platform) -> bool:
        with self._active_lock:
            return bool(self._active_runs.get((owner_id, platform)))

    def cancel(self, *, owner_id: str, platform: Platform) -> bool:
        """Signal every active or queued run for the pair; False when none exists."""
        with self._active_lock:
            events = list(self._active_runs.get((owner_id, platform), ()))
        if not events:
            return False
        for event in events:
            event.set()
        LOGGER.info(
            "sync cancel requested owner_id=%s platform=%s runs=%s",
            owner_id,
            platform,
            len(events),
        )
        return True

    def start_background(self, *, owner_id: str, platform: Platform) -> SyncProgress:
        key = (owner_id, platform)
        cancel_event = threading.Event()
        with self._active_lock:
            if self._active_runs.get(key):
                raise SyncAlreadyRunningError(
                    f"A {platform} sync is already running for owner {owner_id}."
                )
            self._active_runs.setdefault(key, []).append(cancel_event)

        queued = SyncProgress(owner_id=owner_id, platform=platform, state=SyncState.IDLE)
        self._tracker.publish(queued)
        thread = threading.Thread(
            target=self._run_background,
            args=(owner_id, platform, cancel_event),
            name=f"content-pulse-sync-{platform}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError:
            self._unregister(key, cancel_event)
            raise
        return queued

    def run(
        self,
        *,
        owner_id: str,
        platform: Platform,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
    ) -> SyncSummary:
        key = (owner_id, platform)
        cancel = cancel_event if cancel_event is not None else threading.Event()
        registered = self._register(key, cancel)

        try:
            with self._owner_locks.for_owner(owner_id):
                return self._run_locked(
                    owner_id=owner_id,
                    platform=platform,
                    cancel=cancel,
                    on_progress=on_progress,
                )
        finally:
            if registered:
                self._unregister(key, cancel)

    @contextmanager
    def owner_exclusive(self, *, owner_id: str) -> Iterator[None]:
        """Hold the owner's sync lock around a block; fails fast while a run is active."""
        with self._active_lock:
            busy = sorted(
                platform
                for (active_owner, platform), events in self._active_runs.items()
                if active_owner == owner_id and events
            )
        if busy:
            raise SyncAlreadyRunningError(
                f"A {busy[0]} sync is running for owner {owner_id}; cancel it first."
            )

        lock = self._owner_locks.for_owner(owner_id)
        if not lock.acquire(blocking=False):
            raise SyncAlreadyRunningError(
                f"A sync is running for owner {owner_id}; cancel it first."
            )
        try:
            yield
        finally:
            lock.release()

    def shutdown(self) -> None:
        with self._active_lock:
            events = [event for run_events in self._active_runs.values() for event in run_events]
        for event in events:
            event.set()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _register(self, key: tuple[str, Platform], event: threading.Event) -> bool:
        with self._active_lock:
            events = self._active_runs.setdefault(key, [])
            if any(existing is event for existing in events):
                return False
            events.append(event)
            return True

    def _unregister(self, key: tuple[str, Platform], event: threading.Event) -> None:
        with self._active_lock:
            remaining = [
                existing for existing in self._active_runs.get(key, ()) if existing is not event
            ]
            if remaining:
                self._active_runs[key] = remaining
            else:
                self._active_runs.pop(key, None)

    def _run_background(
        self,
        owner_id: str,
        platform: Platform,
        cancel_event: threading.Event,
    ) -> None:
        try:
            self.run(owner_id=owner_id, platform=platform, cancel_event=cancel_event)
        except SyncRunError:
            LOGGER.warning(
                "background sync failed owner_id=%s platform=%s",
                owner_id,
                platform,
                exc_info=True,
            )
        finally:
            self._unregister((owner_id, platform), cancel_event)

    def _run_locked(
        self,
        *,
        owner_id: str,
        platform: Platform,
        cancel: threading.Event,
        on_progress: Callable[[SyncProgress], None] | None,
    ) -> SyncSummary:
        context_tokens = bind_contextvars(sync_owner_id=owner_id, sync_platform=platform)
        progress = SyncProgress(
            owner_id=owner_id,
            platform=platform,
            state=SyncState.RUNNING,
            started_at=utc_now(),
        )
        reporter = _ProgressReporter(self._tracker, progress, on_progress)
        caller = _SequentialCaller(self._executor, self._fetch_timeout_seconds)
        try:
            with self._telemetry.span("sync.run", owner_id=owner_id, platform=platform) as finish:
                try:
                    assignment = self._links.get(owner_id=owner_id, platform=platform)
                except sqlite3.Error as exc:
                    raise self._fail(reporter, "Link registry could not be read.", exc) from exc

                work_items, unresolved = _build_work_items(platform, assignment.links)
                for raw_link, reason in unresolved:
                    LOGGER.info(
                        "sync skipping unresolvable link owner_id=%s platform=%s reason=%s link=%s",
                        owner_id,
                        platform,
                        reason,
                        raw_link,
                    )
                reporter.update(total=len(work_items), unresolved=len(unresolved))
                LOGGER.info(
                    "sync run start owner_id=%s platform=%s links=%s work_items=%s unresolved=%s",
                    owner_id,
                    platform,
                    len(assignment.links),
                    len(work_items),
                    len(unresolved),
                )

                try:
                    if platform == "youtube":
                        self._process_bulk(owner_id, work_items, cancel, reporter, caller)
                    else:
                        self._process_single(
                            owner_id, platform, work_items, cancel, reporter, caller
                        )
                except sqlite3.Error as exc:
                    raise self._fail(reporter, "Metrics store write failed.", exc) from exc

                reconcile_result = self._metrics.reconcile(
                    owner_id=owner_id,
                    platform=platform,
                    valid_canonical_ids=[item.canonical_id for item in work_items],
                )

                if cancel.is_set():
                    final_state = SyncState.CANCELLED
                else:
                    try:
                        self._links.touch_refresh_timestamp(owner_id=owner_id, platform=platform)
                    except sqlite3.Error as exc:
                        raise self._fail(
                            reporter, "Refresh timestamp could not be written.", exc
                        ) from exc
                    final_state = SyncState.COMPLETED

                final = reporter.update(state=final_state, finished_at=utc_now())
                finish.update(
                    state=final.state.value,
                    total=final.total,
                    succeeded=final.succeeded,
                    failed=final.failed,
                    unresolved=final.unresolved,
                    orphans_deleted=len(reconcile_result.deleted),
                )
        finally:
            reset_contextvars(**context_tokens)

        LOGGER.info(
            (
                "sync run done owner_id=%s platform=%s state=%s total=%s processed=%s "
                "succeeded=%s failed=%s unresolved=%s orphans_deleted=%s"
            ),
            owner_id,
            platform,
            final.state.value,
            final.total,
            final.processed,
            final.succeeded,
            final.failed,
            final.unresolved,
            len(reconcile_result.deleted),
        )
        return SyncSummary(
            owner_id=owner_id,
            platform=platform,
            state=final.state,
            total=final.total,
            succeeded=final.succeeded,
            failed=final.failed,
            unresolved=final.unresolved,
            orphans_deleted=len(reconcile_result.deleted),
        )

    def _process_bulk(
        self,
        owner_id: str,
        work_items: Sequence[_WorkItem],
        cancel: threading.Event,
        reporter: _ProgressReporter,
        caller: _SequentialCaller,
    ) -> None:
        size = self._youtube_batch_size
        batches = [work_items[start : start + size] for start in range(0, len(work_items), size)]
        for batch_index, batch in enumerate(batches):
            if self._should_stop(cancel, pause=batch_index > 0):
                return

            fetched: dict[str, BulkItemMetrics] = {}
            batch_error: str | None = None
            try:
                results = caller.call(
                    self._youtube.fetch,
                    [item.canonical_id for item in batch],
                )
            except FuturesTimeoutError:
                batch_error = f"Timed out after {self._fetch_timeout_seconds:g}s."
            except Exception as exc:
                batch_error = _summarize_exception_message(exc)
                LOGGER.warning(
                    "youtube bulk fetch failed owner_id=%s batch=%s size=%s",
                    owner_id,
                    batch_index + 1,
                    len(batch),
                    exc_info=True,
                )
            else:
                fetched = {metrics.canonical_id: metrics for metrics in results}

            for item in batch:
                metrics = fetched.get(item.canonical_id)
                if metrics is None:
                    self._record_failure(
                        owner_id,
                        "youtube",
                        item,
                        batch_error or _MISSING_FROM_BULK_RESPONSE,
                        reporter,
                    )
                    continue
                self._record_success(
                    owner_id,
                    ContentMetricsUpdate(
                        canonical_id=item.canonical_id,
                        platform="youtube",
                        counts=metrics.counts,
                        posted_at=metrics.posted_at,
                        source_url=item.raw_url,
                        title=metrics.title,
                        thumbnail_url=metrics.thumbnail_url,
                    ),
                    reporter,
                )

    def _process_single(
        self,
        owner_id: str,
        platform: Platform,
        work_items: Sequence[_WorkItem],
        cancel: threading.Event,
        reporter: _ProgressReporter,
        caller: _SequentialCaller,
    ) -> None:
        for index, item in enumerate(work_items):
            if self._should_stop(cancel, pause=index > 0):
                return

            try:
                result = caller.call(self._instagram.fetch, item.raw_url)
            except FuturesTimeoutError:
                self._record_failure(
                    owner_id,
                    platform,
                    item,
                    f"Timed out after {self._fetch_timeout_seconds:g}s.",
                    reporter,
                )
                continue
            except Exception as exc:
                LOGGER.warning(
                    "single item fetch raised owner_id=%s canonical_id=%s",
                    owner_id,
                    item.canonical_id,
                    exc_info=True,
                )
                self._record_failure(
                    owner_id, platform, item, _summarize_exception_message(exc), reporter
                )
                continue

            if not result.success or result.counts is None:
                self._record_failure(
                    owner_id,
                    platform,
                    item,
                    result.error_message or _DEFAULT_ITEM_ERROR,
                    reporter,
                )
                continue

            self._record_success(
                owner_id,
                ContentMetricsUpdate(
                    canonical_id=item.canonical_id,
                    platform=platform,
                    counts=result.counts,
                    posted_at=result.posted_at,
                    source_url=item.raw_url,
                    thumbnail_url=result.thumbnail_url,
                    caption=result.caption,
                    username=result.username,
                ),
                reporter,
            )

    def _should_stop(self, cancel: threading.Event, *, pause: bool) -> bool:
        if pause and self._inter_request_delay_seconds > 0:
            return cancel.wait(self._inter_request_delay_seconds)
        return cancel.is_set()

    def _record_success(
        self,
        owner_id: str,
        update: ContentMetricsUpdate,
        reporter: _ProgressReporter,
    ) -> None:
        self._metrics.upsert(owner_id=owner_id, update=update)
        reporter.item_done(succeeded=True)

    def _record_failure(
        self,
        owner_id: str,
        platform: Platform,
        item: _WorkItem,
        error_message: str,
        reporter: _ProgressReporter,
    ) -> None:
        LOGGER.warning(
            "sync item failed owner_id=%s platform=%s canonical_id=%s error=%s",
            owner_id,
            platform,
            item.canonical_id,
            error_message,
        )
        self._metrics.upsert(
            owner_id=owner_id,
            update=ContentMetricsUpdate(
                canonical_id=item.canonical_id,
                platform=platform,
                counts=ContentCounts(),
                source_url=item.raw_url,
                error_message=error_message,
            ),
        )
        self._telemetry.emit(
            "sync.item.failed",
            owner_id=owner_id,
            platform=platform,
            canonical_id=item.canonical_id,
        )
        reporter.item_done(succeeded=False)

    def _fail(self, reporter: _ProgressReporter, message: str, exc: Exception) -> SyncRunError:
        failed = reporter.update(
            state=SyncState.FAILED,
            finished_at=utc_now(),
            error=message,
        )
        LOGGER.error(
            "sync run failed owner_id=%s platform=%s processed=%s total=%s error=%s",
            failed.owner_id,
            failed.platform,
            failed.processed,
            failed.total,
            message,
            exc_info=exc,
        )
        return SyncRunError(message)


class _ProgressReporter:
    def __init__(
        self,
        tracker: SyncProgressTracker,
        initial: SyncProgress,
        callback: Callable[[SyncProgress], None] | None,
    ) -> None:
        self._tracker = tracker
        self._callback = callback
        self.current = initial
        self._publish()

    def update(self, **changes: Any) -> SyncProgress:
        self.current = replace(self.current, **changes)
        self._publish()
        return self.current

    def item_done(self, *, succeeded: bool) -> SyncProgress:
        return self.update(
            processed=self.current.processed + 1,
            succeeded=self.current.succeeded + (1 if succeeded else 0),
            failed=self.current.failed + (0 if succeeded else 1),
        )

    def _publish(self) -> None:
        self._tracker.publish(self.current)
        if self._callback is not None:
            self._callback(self.current)


class _SequentialCaller:
    """Runs one provider call at a time for a single sync run.

    A call that outlives its timeout cannot be interrupted, only abandoned.
    Before the next call starts, the abandoned one gets one more timeout period
    to finish; if it is still in flight after that, the next call goes ahead
    and a warning is logged. Several calls that hang past twice the timeout can
    still occupy every worker of the shared pool.
    """

    def __init__(self, executor: ThreadPoolExecutor, timeout_seconds: float) -> None:
        self._executor = executor
        self._timeout_seconds = timeout_seconds
        self._abandoned: Future[Any] | None = None

    def call(self, fn: Callable[[Any], _T], argument: Any) -> _T:
        self._drain_abandoned()
        future = self._executor.submit(fn, argument)
        try:
            return future.result(timeout=self._timeout_seconds)
        except FuturesTimeoutError:
            if not future.cancel():
                self._abandoned = future
            raise

    def _drain_abandoned(self) -> None:
        if self._abandoned is None:
            return
        _, still_running = wait_for_futures([self._abandoned], timeout=self._timeout_seconds)
        if still_running:
            LOGGER.warning(
                "abandoned provider call still in flight after %.3gs; continuing",
                self._timeout_seconds * 2,
            )
        self._abandoned = None


def _build_work_items(
    platform: Platform,
    links: Sequence[str],
) -> tuple[list[_WorkItem], list[tuple[str, str]]]:
    work_items: list[_WorkItem] = []
    unresolved: list[tuple[str, str]] = []
    seen: set[str] = set()
    for raw_link in links:
        resolution = resolve(platform, raw_link)
        if not isinstance(resolution, Resolved):
            unresolved.append((raw_link, resolution.reason))
            continue
        if resolution.canonical_id in seen:
            continue
        seen.add(resolution.canonical_id)
        work_items.append(_WorkItem(canonical_id=resolution.canonical_id, raw_url=raw_link))
    return work_items, unresolved


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."
