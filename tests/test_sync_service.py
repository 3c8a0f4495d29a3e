from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import pytest

from contentpulse.repositories.database import Database
from contentpulse.repositories.link_repository import LinkRepository
from contentpulse.repositories.metrics_repository import (
    ContentCounts,
    ContentMetricsUpdate,
    MetricsRepository,
)
from contentpulse.services.metrics_providers import (
    BulkItemMetrics,
    MetricsProviderError,
    SingleItemResult,
)
from contentpulse.services.sync_service import (
    SyncAlreadyRunningError,
    SyncProgress,
    SyncRunError,
    SyncService,
    SyncState,
)
from contentpulse.telemetry import TelemetryClient


class _FakeBulkFetcher:
    max_batch_size = 50

    def __init__(
        self,
        counts_by_id: Mapping[str, ContentCounts] | None = None,
        *,
        error: Exception | None = None,
        on_call: Callable[[Sequence[str]], None] | None = None,
    ) -> None:
        self._counts_by_id = dict(counts_by_id or {})
        self._error = error
        self._on_call = on_call
        self.calls: list[list[str]] = []

    def fetch(self, canonical_ids: Sequence[str]) -> list[BulkItemMetrics]:
        self.calls.append(list(canonical_ids))
        if self._on_call is not None:
            self._on_call(canonical_ids)
        if self._error is not None:
            raise self._error
        return [
            BulkItemMetrics(
                canonical_id=canonical_id,
                counts=self._counts_by_id[canonical_id],
                title=f"title {canonical_id}",
            )
            for canonical_id in canonical_ids
            if canonical_id in self._counts_by_id
        ]


class _FakeSingleFetcher:
    def __init__(
        self,
        outcomes: Mapping[str, SingleItemResult | Exception] | None = None,
        *,
        on_call: Callable[[str], None] | None = None,
    ) -> None:
        self._outcomes = dict(outcomes or {})
        self._on_call = on_call
        self.calls: list[str] = []
        self.call_times: list[float] = []

    def fetch(self, raw_url: str) -> SingleItemResult:
        self.calls.append(raw_url)
        self.call_times.append(time.monotonic())
        if self._on_call is not None:
            self._on_call(raw_url)
        outcome = self._outcomes.get(raw_url)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return SingleItemResult(
                success=True,
                counts=ContentCounts(likes=1, comments=1, plays_or_views=10, reshares=1),
            )
        return outcome


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def _build(
    database: Database,
    *,
    youtube: _FakeBulkFetcher | None = None,
    instagram: _FakeSingleFetcher | None = None,
    delay: float = 0.0,
    timeout: float = 5.0,
    batch_size: int = 50,
    telemetry: TelemetryClient | None = None,
) -> tuple[SyncService, LinkRepository, MetricsRepository]:
    links = LinkRepository(database)
    metrics = MetricsRepository(database)
    service = SyncService(
        link_repository=links,
        metrics_repository=metrics,
        youtube_fetcher=youtube or _FakeBulkFetcher(),
        instagram_fetcher=instagram or _FakeSingleFetcher(),
        inter_request_delay_seconds=delay,
        fetch_timeout_seconds=timeout,
        youtube_batch_size=batch_size,
        telemetry=telemetry,
    )
    return service, links, metrics


def _wait_for(predicate: Callable[[], bool], *, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met before timeout")


def test_sync_dedups_raw_forms_and_tags_missing_items(database: Database) -> None:
    youtube = _FakeBulkFetcher({"abc": ContentCounts(likes=5, comments=2, plays_or_views=100)})
    service, links, metrics = _build(database, youtube=youtube)
    links.assign(
        owner_id="owner-1",
        platform="youtube",
        links=[
            "https://www.youtube.com/watch?v=abc",
            "https://youtu.be/abc",
            "https://www.youtube.com/watch?v=def",
        ],
    )

    summary = service.run(owner_id="owner-1", platform="youtube")

    assert summary.state is SyncState.COMPLETED
    assert summary.total == 2
    assert summary.succeeded == 1
    assert summary.failed == 1
    assert summary.unresolved == 0
    assert youtube.calls == [["abc", "def"]]

    found = metrics.get(owner_id="owner-1", platform="youtube", canonical_id="abc")
    assert found is not None
    assert found.counts == ContentCounts(likes=5, comments=2, plays_or_views=100)
    assert found.error_message is None
    assert found.source_url == "https://www.youtube.com/watch?v=abc"
    assert found.title == "title abc"

    missing = metrics.get(owner_id="owner-1", platform="youtube", canonical_id="def")
    assert missing is not None
    assert missing.counts == ContentCounts()
    assert missing.error_message is not None
    assert "Not returned" in missing.error_message

    assert links.get(owner_id="owner-1", platform="youtube").last_refreshed_at is not None


def test_sync_isolates_single_item_failures(database: Database) -> None:
    instagram = _FakeSingleFetcher(
        {
            "https://www.instagram.com/reel/BOOM/": RuntimeError("scraper exploded"),
            "https://www.instagram.com/reel/GONE/": SingleItemResult(
                success=False,
                error_message="API request failed with status 404.",
            ),
        }
    )
    service, links, metrics = _build(database, instagram=instagram)
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=[
            "https://www.instagram.com/reel/OK1/",
            "https://www.instagram.com/reel/BOOM/",
            "https://www.instagram.com/reel/GONE/",
            "https://www.instagram.com/p/OK2/",
        ],
    )

    summary = service.run(owner_id="owner-1", platform="instagram")

    assert summary.state is SyncState.COMPLETED
    assert summary.total == 4
    assert summary.succeeded == 2
    assert summary.failed == 2
    assert len(instagram.calls) == 4

    records = {record.canonical_id: record for record in metrics.list_all(owner_id="owner-1")}
    assert set(records) == {"OK1", "BOOM", "GONE", "OK2"}
    assert records["BOOM"].error_message == "scraper exploded"
    assert records["GONE"].error_message == "API request failed with status 404."
    assert records["OK1"].error_message is None
    assert records["OK1"].counts.reshares == 1


def test_sync_single_item_dedup_keeps_first_raw_link(database: Database) -> None:
    instagram = _FakeSingleFetcher()
    service, links, _ = _build(database, instagram=instagram)
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=[
            "https://www.instagram.com/reel/R1/",
            "https://instagram.com/reels/R1?igsh=x",
        ],
    )

    summary = service.run(owner_id="owner-1", platform="instagram")

    assert summary.total == 1
    assert instagram.calls == ["https://www.instagram.com/reel/R1/"]


def test_sync_failure_after_success_keeps_metadata_and_sets_error(database: Database) -> None:
    youtube = _FakeBulkFetcher({"abc": ContentCounts(likes=9)})
    service, links, metrics = _build(database, youtube=youtube)
    links.assign(owner_id="owner-1", platform="youtube", links=["https://youtu.be/abc"])
    service.run(owner_id="owner-1", platform="youtube")

    failing_service, _, _ = _build(
        database,
        youtube=_FakeBulkFetcher(error=MetricsProviderError("quota exceeded")),
    )
    summary = failing_service.run(owner_id="owner-1", platform="youtube")

    assert summary.failed == 1
    record = metrics.get(owner_id="owner-1", platform="youtube", canonical_id="abc")
    assert record is not None
    assert record.error_message == "quota exceeded"
    assert record.title == "title abc"
    assert record.counts == ContentCounts()


def test_sync_bulk_error_fails_every_item_in_batch(database: Database) -> None:
    youtube = _FakeBulkFetcher(error=MetricsProviderError("YouTube API key is not configured."))
    service, links, metrics = _build(database, youtube=youtube)
    links.assign(
        owner_id="owner-1",
        platform="youtube",
        links=["https://youtu.be/a", "https://youtu.be/b"],
    )

    summary = service.run(owner_id="owner-1", platform="youtube")

    assert summary.state is SyncState.COMPLETED
    assert summary.succeeded == 0
    assert summary.failed == 2
    assert all(
        record.error_message == "YouTube API key is not configured."
        for record in metrics.list_all(owner_id="owner-1")
    )


def test_sync_batches_bulk_requests(database: Database) -> None:
    ids = [f"vid{index}" for index in range(5)]
    youtube = _FakeBulkFetcher({video_id: ContentCounts(likes=1) for video_id in ids})
    service, links, _ = _build(database, youtube=youtube, batch_size=2)
    links.assign(
        owner_id="owner-1",
        platform="youtube",
        links=[f"https://youtu.be/{video_id}" for video_id in ids],
    )

    summary = service.run(owner_id="owner-1", platform="youtube")

    assert summary.succeeded == 5
    assert [len(call) for call in youtube.calls] == [2, 2, 1]


def test_sync_counts_unresolved_links(database: Database) -> None:
    youtube = _FakeBulkFetcher({"abc": ContentCounts()})
    service, links, metrics = _build(database, youtube=youtube)
    links.assign(
        owner_id="owner-1",
        platform="youtube",
        links=[
            "https://youtu.be/abc",
            "https://vimeo.com/12345",
            "https://www.youtube.com/channel/UC1",
        ],
    )

    summary = service.run(owner_id="owner-1", platform="youtube")

    assert summary.total == 1
    assert summary.unresolved == 2
    assert summary.succeeded == 1
    assert [record.canonical_id for record in metrics.list_all(owner_id="owner-1")] == ["abc"]


def test_sync_reconciles_removed_links_per_platform(database: Database) -> None:
    youtube = _FakeBulkFetcher({"keep": ContentCounts(likes=1)})
    service, links, metrics = _build(database, youtube=youtube)
    for platform, canonical_id in (("youtube", "stale"), ("instagram", "stale")):
        metrics.upsert(
            owner_id="owner-1",
            update=ContentMetricsUpdate(canonical_id=canonical_id, platform=platform),
        )
    links.assign(owner_id="owner-1", platform="youtube", links=["https://youtu.be/keep"])

    summary = service.run(owner_id="owner-1", platform="youtube")

    assert summary.orphans_deleted == 1
    assert metrics.get(owner_id="owner-1", platform="youtube", canonical_id="stale") is None
    assert metrics.get(owner_id="owner-1", platform="instagram", canonical_id="stale") is not None
    assert metrics.get(owner_id="owner-1", platform="youtube", canonical_id="keep") is not None


def test_sync_with_no_links_completes_and_clears_cache(database: Database) -> None:
    youtube = _FakeBulkFetcher()
    service, links, metrics = _build(database, youtube=youtube)
    metrics.upsert(
        owner_id="owner-1",
        update=ContentMetricsUpdate(canonical_id="left-over", platform="youtube"),
    )

    summary = service.run(owner_id="owner-1", platform="youtube")

    assert summary.state is SyncState.COMPLETED
    assert summary.total == 0
    assert summary.orphans_deleted == 1
    assert youtube.calls == []
    assert metrics.list_all(owner_id="owner-1") == []
    progress = service.get_progress(owner_id="owner-1", platform="youtube")
    assert progress is not None
    assert progress.percent == 100.0


def test_sync_for_unassigned_owner_leaves_registry_empty(database: Database) -> None:
    service, links, _ = _build(database)

    summary = service.run(owner_id="never-assigned", platform="youtube")

    assert summary.state is SyncState.COMPLETED
    assert links.list_assignments() == []
    assert links.get(owner_id="never-assigned", platform="youtube").last_refreshed_at is None


def test_sync_after_owner_deletion_does_not_recreate_owner(database: Database) -> None:
    service, links, metrics = _build(database)
    links.assign(owner_id="owner-1", platform="youtube", links=["https://youtu.be/a"])
    links.assign(owner_id="owner-1", platform="instagram", links=["https://instagr.am/p/A"])
    links.delete_owner(owner_id="owner-1")

    service.run(owner_id="owner-1", platform="youtube")
    service.run(owner_id="owner-1", platform="instagram")

    assert links.list_assignments() == []
    assert metrics.list_all(owner_id="owner-1") == []


def test_sync_stamps_assignment_whose_links_were_all_removed(database: Database) -> None:
    service, links, _ = _build(database)
    links.assign(owner_id="owner-1", platform="youtube", links=["https://youtu.be/a"])
    links.remove(owner_id="owner-1", platform="youtube", link="https://youtu.be/a")

    service.run(owner_id="owner-1", platform="youtube")

    assert links.get(owner_id="owner-1", platform="youtube").last_refreshed_at is not None


def test_sync_waits_between_calls_but_not_after_last(database: Database) -> None:
    instagram = _FakeSingleFetcher()
    service, links, _ = _build(database, instagram=instagram, delay=0.2)
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=["https://www.instagram.com/reel/A/", "https://www.instagram.com/reel/B/"],
    )

    started = time.monotonic()
    service.run(owner_id="owner-1", platform="instagram")
    elapsed = time.monotonic() - started

    gap = instagram.call_times[1] - instagram.call_times[0]
    assert gap >= 0.18
    assert elapsed < 0.2 + 0.35


def test_sync_cancellation_stops_between_items(database: Database) -> None:
    cancel_event = threading.Event()

    def _cancel_on_second(raw_url: str) -> None:
        if raw_url.endswith("/B/"):
            cancel_event.set()

    instagram = _FakeSingleFetcher(on_call=_cancel_on_second)
    service, links, metrics = _build(database, instagram=instagram)
    metrics.upsert(
        owner_id="owner-1",
        update=ContentMetricsUpdate(canonical_id="orphan", platform="instagram"),
    )
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=[
            "https://www.instagram.com/reel/A/",
            "https://www.instagram.com/reel/B/",
            "https://www.instagram.com/reel/C/",
        ],
    )

    summary = service.run(owner_id="owner-1", platform="instagram", cancel_event=cancel_event)

    assert summary.state is SyncState.CANCELLED
    assert summary.total == 3
    assert summary.succeeded == 2
    assert len(instagram.calls) == 2
    assert metrics.get(owner_id="owner-1", platform="instagram", canonical_id="orphan") is None
    assert links.get(owner_id="owner-1", platform="instagram").last_refreshed_at is None


def test_sync_cancel_interrupts_inter_request_delay(database: Database) -> None:
    instagram = _FakeSingleFetcher()
    service, links, _ = _build(database, instagram=instagram, delay=30.0)
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=["https://www.instagram.com/reel/A/", "https://www.instagram.com/reel/B/"],
    )

    results: list[SyncState] = []
    worker = threading.Thread(
        target=lambda: results.append(
            service.run(owner_id="owner-1", platform="instagram").state
        )
    )
    started = time.monotonic()
    worker.start()
    _wait_for(lambda: len(instagram.calls) == 1)
    assert service.cancel(owner_id="owner-1", platform="instagram") is True
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert time.monotonic() - started < 5
    assert results == [SyncState.CANCELLED]
    assert len(instagram.calls) == 1
    assert service.cancel(owner_id="owner-1", platform="instagram") is False


def test_sync_timeout_becomes_item_failure(database: Database) -> None:
    def _hang_on_slow(raw_url: str) -> None:
        if "SLOW" in raw_url:
            time.sleep(1.0)

    instagram = _FakeSingleFetcher(on_call=_hang_on_slow)
    service, links, metrics = _build(database, instagram=instagram, timeout=0.1)
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=["https://www.instagram.com/reel/SLOW/", "https://www.instagram.com/reel/FAST/"],
    )

    summary = service.run(owner_id="owner-1", platform="instagram")

    assert summary.state is SyncState.COMPLETED
    assert summary.failed == 1
    assert summary.succeeded == 1
    slow = metrics.get(owner_id="owner-1", platform="instagram", canonical_id="SLOW")
    assert slow is not None
    assert slow.error_message is not None
    assert slow.error_message.startswith("Timed out")


def test_sync_reports_progress_after_each_item(database: Database) -> None:
    service, links, _ = _build(database)
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=[f"https://www.instagram.com/reel/R{index}/" for index in range(3)],
    )
    snapshots: list[SyncProgress] = []

    service.run(owner_id="owner-1", platform="instagram", on_progress=snapshots.append)

    processed = [snapshot.processed for snapshot in snapshots]
    assert processed == sorted(processed)
    assert 1 in processed and 2 in processed
    assert snapshots[0].state is SyncState.RUNNING
    assert snapshots[-1].state is SyncState.COMPLETED
    assert snapshots[-1].processed == 3
    assert snapshots[-1].percent == 100.0
    tracked = service.get_progress(owner_id="owner-1", platform="instagram")
    assert tracked == snapshots[-1]


def test_sync_registry_failure_fails_run(
    database: Database, monkeypatch: pytest.MonkeyPatch
) -> None:
    sink = _CaptureSink()
    service, links, _ = _build(database, telemetry=TelemetryClient(enabled=True, sink=sink))

    def _broken_get(**_: object) -> None:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(links, "get", _broken_get)

    with pytest.raises(SyncRunError):
        service.run(owner_id="owner-1", platform="youtube")

    progress = service.get_progress(owner_id="owner-1", platform="youtube")
    assert progress is not None
    assert progress.state is SyncState.FAILED
    assert progress.error == "Link registry could not be read."
    assert [name for name, _ in sink.events] == ["sync.run.start", "sync.run.error"]


def test_sync_store_failure_fails_run(
    database: Database, monkeypatch: pytest.MonkeyPatch
) -> None:
    service, links, metrics = _build(database)
    links.assign(owner_id="owner-1", platform="instagram", links=["https://instagr.am/p/A"])

    def _broken_upsert(**_: object) -> None:
        raise sqlite3.OperationalError("database or disk is full")

    monkeypatch.setattr(metrics, "upsert", _broken_upsert)

    with pytest.raises(SyncRunError):
        service.run(owner_id="owner-1", platform="instagram")

    assert links.get(owner_id="owner-1", platform="instagram").last_refreshed_at is None


def test_sync_runs_for_same_owner_serialize(database: Database) -> None:
    active = 0
    max_active = 0
    guard = threading.Lock()

    def _track(_: object) -> None:
        nonlocal active, max_active
        with guard:
            active += 1
            max_active = max(max_active, active)
        time.sleep(0.05)
        with guard:
            active -= 1

    youtube = _FakeBulkFetcher({"a": ContentCounts()}, on_call=_track)
    instagram = _FakeSingleFetcher(on_call=_track)
    service, links, _ = _build(database, youtube=youtube, instagram=instagram)
    links.assign(owner_id="owner-1", platform="youtube", links=["https://youtu.be/a"])
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=["https://instagr.am/p/A", "https://instagr.am/p/B"],
    )

    workers = [
        threading.Thread(target=service.run, kwargs={"owner_id": "owner-1", "platform": platform})
        for platform in ("youtube", "instagram", "youtube")
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5)

    assert max_active == 1
    assert len(youtube.calls) == 2
    assert len(instagram.calls) == 2


def test_start_background_rejects_second_run(database: Database) -> None:
    release = threading.Event()
    instagram = _FakeSingleFetcher(on_call=lambda _: release.wait(5))
    service, links, metrics = _build(database, instagram=instagram)
    links.assign(owner_id="owner-1", platform="instagram", links=["https://instagr.am/p/A"])

    queued = service.start_background(owner_id="owner-1", platform="instagram")
    assert queued.state is SyncState.IDLE
    assert service.is_running(owner_id="owner-1", platform="instagram") is True

    with pytest.raises(SyncAlreadyRunningError):
        service.start_background(owner_id="owner-1", platform="instagram")

    release.set()
    _wait_for(lambda: not service.is_running(owner_id="owner-1", platform="instagram"))

    progress = service.get_progress(owner_id="owner-1", platform="instagram")
    assert progress is not None
    assert progress.state is SyncState.COMPLETED
    assert metrics.get(owner_id="owner-1", platform="instagram", canonical_id="A") is not None

    again = service.start_background(owner_id="owner-1", platform="instagram")
    assert again.state is SyncState.IDLE
    _wait_for(lambda: not service.is_running(owner_id="owner-1", platform="instagram"))


def test_queued_foreground_run_stays_cancellable(database: Database) -> None:
    first_gate = threading.Event()
    second_gate = threading.Event()
    call_count = 0

    def _block(_: str) -> None:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            first_gate.wait(5)
        elif call_count == 3:
            second_gate.wait(5)

    instagram = _FakeSingleFetcher(on_call=_block)
    service, links, _ = _build(database, instagram=instagram)
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=["https://instagr.am/p/A", "https://instagr.am/p/B"],
    )

    results: dict[str, SyncState] = {}

    def _run(name: str) -> None:
        results[name] = service.run(owner_id="owner-1", platform="instagram").state

    first = threading.Thread(target=_run, args=("first",))
    second = threading.Thread(target=_run, args=("second",))
    first.start()
    _wait_for(lambda: len(instagram.calls) == 1)
    second.start()

    first_gate.set()
    first.join(timeout=5)
    _wait_for(lambda: len(instagram.calls) == 3)

    assert service.is_running(owner_id="owner-1", platform="instagram") is True
    assert service.cancel(owner_id="owner-1", platform="instagram") is True
    second_gate.set()
    second.join(timeout=5)

    assert results == {"first": SyncState.COMPLETED, "second": SyncState.CANCELLED}
    assert len(instagram.calls) == 3
    assert service.is_running(owner_id="owner-1", platform="instagram") is False


def test_timed_out_call_finishes_before_next_call_starts(database: Database) -> None:
    slow_finished: list[float] = []

    def _slow(raw_url: str) -> None:
        if "SLOW" in raw_url:
            time.sleep(0.3)
            slow_finished.append(time.monotonic())

    instagram = _FakeSingleFetcher(on_call=_slow)
    service, links, _ = _build(database, instagram=instagram, timeout=0.2)
    links.assign(
        owner_id="owner-1",
        platform="instagram",
        links=["https://www.instagram.com/reel/SLOW/", "https://www.instagram.com/reel/FAST/"],
    )

    summary = service.run(owner_id="owner-1", platform="instagram")

    assert summary.failed == 1
    assert summary.succeeded == 1
    assert len(slow_finished) == 1
    assert instagram.call_times[1] >= slow_finished[0]


def test_owner_exclusive_fails_while_run_is_active(database: Database) -> None:
    release = threading.Event()
    instagram = _FakeSingleFetcher(on_call=lambda _: release.wait(5))
    service, links, _ = _build(database, instagram=instagram)
    links.assign(owner_id="owner-1", platform="instagram", links=["https://instagr.am/p/A"])

    worker = threading.Thread(
        target=service.run, kwargs={"owner_id": "owner-1", "platform": "instagram"}
    )
    worker.start()
    _wait_for(lambda: len(instagram.calls) == 1)

    with pytest.raises(SyncAlreadyRunningError):
        with service.owner_exclusive(owner_id="owner-1"):
            pass
    with service.owner_exclusive(owner_id="owner-2"):
        pass

    release.set()
    worker.join(timeout=5)

    with service.owner_exclusive(owner_id="owner-1"):
        assert service.is_running(owner_id="owner-1", platform="instagram") is False


def test_sync_emits_run_and_item_telemetry(database: Database) -> None:
    sink = _CaptureSink()
    youtube = _FakeBulkFetcher({"ok": ContentCounts()})
    service, links, _ = _build(
        database,
        youtube=youtube,
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )
    links.assign(
        owner_id="owner-1",
        platform="youtube",
        links=["https://youtu.be/ok", "https://youtu.be/missing"],
    )

    service.run(owner_id="owner-1", platform="youtube")

    names = [name for name, _ in sink.events]
    assert names == ["sync.run.start", "sync.item.failed", "sync.run.finish"]
    finish = sink.events[-1][1]
    assert finish["state"] == "completed"
    assert finish["succeeded"] == 1
    assert finish["failed"] == 1
    assert isinstance(finish["duration_ms"], int)
