from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, cast

import pytest

from feed_monitor.activity_store import ActivityStore
from feed_monitor.config_store import FeedSettings
from feed_monitor.cursor_ledger import ScrollCursorLedger
from feed_monitor.errors import FeedFetchError, UnauthorizedError
from feed_monitor.models import Activity, ActivityContent, FeedChunk, RuleSpec, UserActor
from feed_monitor.rules import RuleEngine
from feed_monitor.sync import (
    ActivityDeleted,
    ActivityInserted,
    EndOfFeedReached,
    FeedCleared,
    FeedEvent,
    FeedSource,
    ProgressUpdated,
    ResetInsertionPoint,
    SyncOrchestrator,
    UpdatingAllowed,
    catch_up_progress,
    standard_expiration_date,
)

NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)
LONG_AGO = datetime(2024, 2, 10, 12, 0, tzinfo=timezone.utc)
CATCH_UP_DONE = UpdatingAllowed(True)


def _activity(
    activity_id: str,
    minutes_ago: int = 0,
    *,
    kind: str = "upload",
    at: datetime | None = None,
) -> Activity:
    return Activity(
        id=activity_id,
        kind=kind,  # type: ignore[arg-type]
        message=f"message {activity_id}",
        thumbnail_url="",
        timestamp=at or NOW - timedelta(minutes=minutes_ago),
        actor=UserActor(id="42", name="Someone", icon_url="", url=""),
        content=ActivityContent(type="video", title=activity_id, url=""),
    )


def _chunk(*activities: Activity, cursor: str | None = None) -> FeedChunk:
    return FeedChunk(activities=tuple(activities), next_cursor=cursor)


class Gate:
    """Response that is only delivered once released."""

    def __init__(self, chunk: FeedChunk) -> None:
        self.chunk = chunk
        self.released = asyncio.Event()


class ScriptedFeed:
    def __init__(self, *responses: object) -> None:
        self.responses = list(responses)
        self.cursors: list[str | None] = []

    async def fetch_chunk(self, cursor: str | None = None) -> FeedChunk:
        self.cursors.append(cursor)
        if not self.responses:
            await asyncio.Event().wait()
        response = self.responses.pop(0)
        if isinstance(response, Gate):
            await response.released.wait()
            return response.chunk
        if isinstance(response, BaseException):
            raise response
        return cast(FeedChunk, response)


class Harness:
    def __init__(self, path: Path, source: ScriptedFeed) -> None:
        self.path = path
        self.source = source
        self.activities = ActivityStore(path)
        self.ledger = ScrollCursorLedger(path)
        self.rules = RuleEngine(path)
        self.settings = FeedSettings.open(path)
        self.settings.set_fetch_delay(0)
        self.settings.set_polling_interval(None)
        self.sign_ins = 0

    async def authenticate(self) -> None:
        self.sign_ins += 1

    def build(self) -> SyncOrchestrator:
        return SyncOrchestrator(
            source=cast(FeedSource, self.source),
            activities=self.activities,
            ledger=self.ledger,
            rules=self.rules,
            settings=self.settings,
            authenticate=self.authenticate,
            clock=lambda: NOW,
        )


async def _collect_until(
    orchestrator: SyncOrchestrator,
    predicate: Callable[[FeedEvent], bool],
    timeout: float = 3.0,
) -> list[FeedEvent]:
    events: list[FeedEvent] = []
    while True:
        event = await asyncio.wait_for(orchestrator.events.get(), timeout)
        events.append(event)
        if predicate(event):
            return events


def _drain(orchestrator: SyncOrchestrator) -> list[FeedEvent]:
    events: list[FeedEvent] = []
    while not orchestrator.events.empty():
        events.append(orchestrator.events.get_nowait())
    return events


def _without_progress(events: list[FeedEvent]) -> list[FeedEvent]:
    return [event for event in events if not isinstance(event, ProgressUpdated)]


def _inserted_ids(events: list[FeedEvent]) -> list[str]:
    return [event.activity.id for event in events if isinstance(event, ActivityInserted)]


def test_first_run_downloads_every_page(tmp_path: Path) -> None:
    a3, a2, a1 = _activity("a3", 1), _activity("a2", 2), _activity("a1", 3)
    harness = Harness(tmp_path / "feed.sqlite", ScriptedFeed(_chunk(a3, a2, cursor="p2"), _chunk(a1)))

    async def runner() -> None:
        orchestrator = harness.build()
        assert orchestrator.state == "idle"
        orchestrator.start()
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        assert orchestrator.state == "polling"
        await orchestrator.stop()

        assert _without_progress(events) == [
            UpdatingAllowed(False),
            ResetInsertionPoint(),
            UpdatingAllowed(False),
            ActivityInserted(a3),
            ActivityInserted(a2),
            ActivityInserted(a1),
            EndOfFeedReached(),
            ResetInsertionPoint(),
            UpdatingAllowed(True),
        ]
        progress = [event.progress for event in events if isinstance(event, ProgressUpdated)]
        assert all(0.0 <= value <= 1.0 for value in progress)
        assert progress[-1] == 1.0

    asyncio.run(runner())

    assert harness.source.cursors == [None, "p2"]
    assert [a.id for a in harness.activities.iter_newest_first()] == ["a3", "a2", "a1"]


def test_replay_shows_stored_activities_newest_first(tmp_path: Path) -> None:
    harness = Harness(tmp_path / "feed.sqlite", ScriptedFeed())
    older, newer = _activity("older", 30), _activity("newer", 10)
    harness.activities.upsert_many([older, newer])

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        events = await _collect_until(orchestrator, lambda event: event == ResetInsertionPoint())
        await orchestrator.stop()

        assert events == [
            UpdatingAllowed(False),
            ProgressUpdated(0.0),
            ActivityInserted(newer),
            ProgressUpdated(0.5),
            ActivityInserted(older),
            ProgressUpdated(1.0),
            EndOfFeedReached(),
            ResetInsertionPoint(),
        ]

    asyncio.run(runner())


def test_catch_up_stops_at_first_known_activity(tmp_path: Path) -> None:
    known = _activity("a1", 60)
    fresh = [_activity("a3", 1), _activity("a2", 2)]
    harness = Harness(
        tmp_path / "feed.sqlite",
        ScriptedFeed(_chunk(*fresh, known, _activity("a0", 90), cursor="more")),
    )
    harness.activities.upsert_many([known])

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await orchestrator.stop()

        assert _inserted_ids(events) == ["a1", "a3", "a2"]
        # Only the replayed part reaches the end of the feed.
        assert events.count(EndOfFeedReached()) == 1

    asyncio.run(runner())

    assert harness.source.cursors == [None]
    assert {a.id for a in harness.activities.iter_newest_first()} == {"a1", "a2", "a3"}


def test_hidden_activities_are_stored_but_not_shown(tmp_path: Path) -> None:
    like, upload = _activity("like", 1, kind="like"), _activity("upload", 2)
    harness = Harness(tmp_path / "feed.sqlite", ScriptedFeed(_chunk(like, upload)))
    rule = harness.rules.add(RuleSpec(action="hide", kind="like"))

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await orchestrator.stop()
        assert _inserted_ids(events) == ["upload"]

    asyncio.run(runner())

    assert harness.activities.exists("like")
    assert harness.rules.get(rule.id).fired_count == 1


def test_unauthorized_fetch_signs_in_and_retries(tmp_path: Path) -> None:
    harness = Harness(
        tmp_path / "feed.sqlite",
        ScriptedFeed(
            UnauthorizedError(),
            UnauthorizedError(),
            _chunk(_activity("a1"), cursor="p2"),
            UnauthorizedError(),
            _chunk(),
        ),
    )

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await orchestrator.stop()
        assert _inserted_ids(events) == ["a1"]
        assert orchestrator.errors.empty()

    asyncio.run(runner())

    assert harness.sign_ins == 3
    assert harness.source.cursors == [None, None, None, "p2", "p2"]


def test_fetch_failure_ends_generation(tmp_path: Path) -> None:
    failure = FeedFetchError("Failed to fetch a feed chunk: 500", status=500)
    harness = Harness(
        tmp_path / "feed.sqlite",
        ScriptedFeed(_chunk(_activity("a2"), cursor="p2"), failure),
    )

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        error = await asyncio.wait_for(orchestrator.errors.get(), 3.0)
        assert error is failure
        assert orchestrator.state == "aborted"
        assert not orchestrator.running

        events = _drain(orchestrator)
        assert events[-3:] == [ResetInsertionPoint(), ProgressUpdated(1.0), UpdatingAllowed(True)]
        await orchestrator.stop()

    asyncio.run(runner())

    # Activities of an interrupted catch-up are not stored.
    assert harness.activities.count() == 0
    assert harness.source.cursors == [None, "p2"]


def test_refresh_discards_results_of_the_cancelled_generation(tmp_path: Path) -> None:
    gate = Gate(_chunk(_activity("stale", 5)))
    harness = Harness(
        tmp_path / "feed.sqlite",
        ScriptedFeed(_chunk(_activity("first", 1), cursor="p2"), gate, _chunk(_activity("fresh", 0))),
    )

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        while len(harness.source.cursors) < 2:
            await asyncio.sleep(0.01)

        orchestrator.refresh(clear_store=False)
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        after_refresh = events[events.index(FeedCleared()) :]
        assert _inserted_ids(after_refresh) == ["fresh"]

        gate.released.set()
        await asyncio.sleep(0.05)
        assert _drain(orchestrator) == []
        assert orchestrator.errors.empty()
        assert orchestrator.state == "polling"
        await orchestrator.stop()

    asyncio.run(runner())

    assert [a.id for a in harness.activities.iter_newest_first()] == ["fresh"]


def test_refresh_during_replay_restarts_it_from_the_top(tmp_path: Path) -> None:
    harness = Harness(tmp_path / "feed.sqlite", ScriptedFeed())
    stored = [_activity(f"a{index:03d}", index) for index in range(200)]
    harness.activities.upsert_many(stored)
    ids = [activity.id for activity in stored]

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        before = await _collect_until(
            orchestrator,
            lambda event: isinstance(event, ActivityInserted) and event.activity.id == ids[4],
        )
        assert orchestrator.state == "local_replay"

        orchestrator.refresh(clear_store=False)
        events = before + await _collect_until(
            orchestrator, lambda event: event == ResetInsertionPoint()
        )
        await orchestrator.stop()

        cleared_at = events.index(FeedCleared())
        assert len(_inserted_ids(events[:cleared_at])) < len(ids)
        after_refresh = events[cleared_at + 1 :]
        assert after_refresh[:2] == [UpdatingAllowed(False), ProgressUpdated(0.0)]
        assert _inserted_ids(after_refresh) == ids
        assert _without_progress(after_refresh)[-2:] == [EndOfFeedReached(), ResetInsertionPoint()]

    asyncio.run(runner())


def test_refresh_clears_the_store(tmp_path: Path) -> None:
    source = ScriptedFeed(_chunk(_activity("a1", 1)), _chunk(_activity("a1", 1)))
    harness = Harness(tmp_path / "feed.sqlite", source)

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        assert harness.activities.count() == 1

        orchestrator.refresh()
        assert harness.activities.count() == 0
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await orchestrator.stop()

        assert events[0] == FeedCleared()
        # Nothing to replay, so the activity comes back from the server.
        assert _inserted_ids(events) == ["a1"]
        assert EndOfFeedReached() in events

    asyncio.run(runner())

    assert harness.source.cursors == [None, None]


def test_check_for_updates_starts_another_catch_up(tmp_path: Path) -> None:
    a1, a2 = _activity("a1", 10), _activity("a2", 1)
    harness = Harness(tmp_path / "feed.sqlite", ScriptedFeed(_chunk(a1), _chunk(a2, a1, cursor="more")))

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await asyncio.sleep(0.05)
        assert harness.source.cursors == [None]

        orchestrator.check_for_updates()
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await orchestrator.stop()

        assert _without_progress(events) == [
            UpdatingAllowed(False),
            ActivityInserted(a2),
            ResetInsertionPoint(),
            UpdatingAllowed(True),
        ]

    asyncio.run(runner())

    assert harness.source.cursors == [None, None]


def test_shorter_fetch_delay_applies_to_a_running_wait(tmp_path: Path) -> None:
    harness = Harness(
        tmp_path / "feed.sqlite",
        ScriptedFeed(_chunk(_activity("a2", 1), cursor="p2"), _chunk(_activity("a1", 2))),
    )
    harness.settings.set_fetch_delay(60)

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        while len(harness.source.cursors) < 1:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        assert harness.source.cursors == [None]

        harness.settings.set_fetch_delay(0)
        await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await orchestrator.stop()

    asyncio.run(runner())

    assert harness.source.cursors == [None, "p2"]


def test_polling_interval_changed_by_another_process(tmp_path: Path) -> None:
    source = ScriptedFeed(_chunk(_activity("a1", 5)), _chunk(_activity("a1", 5)))
    harness = Harness(tmp_path / "feed.sqlite", source)
    harness.settings.set_polling_interval(3600)

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        assert orchestrator.state == "polling"

        other = FeedSettings.open(harness.path)
        other.set_polling_interval(0)
        other.close()
        await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE, timeout=5.0)
        harness.settings.set_polling_interval(None)
        await orchestrator.stop()

    asyncio.run(runner())

    assert harness.source.cursors[:2] == [None, None]


def test_catch_up_purges_expired_activities(tmp_path: Path) -> None:
    expired = _activity("expired", at=LONG_AGO)
    source = ScriptedFeed(_chunk(expired), _chunk(_activity("new", 1), expired))
    harness = Harness(tmp_path / "feed.sqlite", source)

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        assert harness.activities.exists("expired")

        # Scrolled past a day-old activity five days ago.
        harness.ledger.put(NOW - timedelta(days=1), NOW - timedelta(days=5))
        orchestrator.check_for_updates()
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await orchestrator.stop()

        assert events[:3] == [UpdatingAllowed(False), ProgressUpdated(0.0), ActivityDeleted("expired")]
        assert _inserted_ids(events) == ["new", "expired"]

    asyncio.run(runner())


def test_catch_up_downloads_everything_after_purge_emptied_the_store(tmp_path: Path) -> None:
    # Replay purges every stored activity, so the server side has no known
    # activity left to stop at and the whole history is fetched again.
    old = [_activity("old2", at=LONG_AGO), _activity("old1", at=LONG_AGO - timedelta(hours=1))]
    harness = Harness(
        tmp_path / "feed.sqlite",
        ScriptedFeed(
            _chunk(_activity("new", 1), *old, cursor="older"),
            _chunk(_activity("old0", at=LONG_AGO - timedelta(days=1))),
        ),
    )
    harness.activities.upsert_many(old)
    harness.ledger.put(NOW - timedelta(days=1), NOW - timedelta(days=5))

    async def runner() -> None:
        orchestrator = harness.build()
        orchestrator.start()
        events = await _collect_until(orchestrator, lambda event: event == CATCH_UP_DONE)
        await orchestrator.stop()

        assert _inserted_ids(events) == ["new", "old2", "old1", "old0"]
        assert EndOfFeedReached() in events

    asyncio.run(runner())

    assert harness.source.cursors == [None, "older"]
    assert harness.activities.count() == 4


def test_last_visible_timestamp_records_a_checkpoint(tmp_path: Path) -> None:
    harness = Harness(tmp_path / "feed.sqlite", ScriptedFeed())
    moment = NOW - timedelta(hours=2)

    async def runner() -> None:
        orchestrator = harness.build()
        assert orchestrator.last_visible_timestamp() is None
        orchestrator.set_last_visible_timestamp(moment)
        assert orchestrator.last_visible_timestamp() == moment

    asyncio.run(runner())

    points = harness.ledger.points()
    assert [(p.observed_at, p.content_time) for p in points] == [(NOW, moment)]


def test_catch_up_progress() -> None:
    assert catch_up_progress(NOW, NOW - timedelta(hours=5), NOW - timedelta(hours=10)) == 0.5
    assert catch_up_progress(NOW, NOW - timedelta(hours=20), NOW - timedelta(hours=10)) == 1.0
    assert catch_up_progress(NOW, NOW + timedelta(hours=1), NOW - timedelta(hours=10)) == 0.0
    assert catch_up_progress(NOW, NOW, NOW) == 1.0


def test_standard_expiration_date_is_a_calendar_month_back() -> None:
    end_of_march = datetime(2024, 3, 31, 15, 30).astimezone()
    expires = standard_expiration_date(end_of_march)
    assert (expires.year, expires.month, expires.day, expires.hour, expires.minute) == (2024, 2, 29, 0, 0)

    january = datetime(2024, 1, 15, 8, 0).astimezone()
    expires = standard_expiration_date(january)
    assert (expires.year, expires.month, expires.day) == (2023, 12, 15)


def test_standard_expiration_date_uses_the_offset_of_that_day(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    if not hasattr(time, "tzset"):
        pytest.skip("time zones cannot be switched on this platform")
    monkeypatch.setenv("TZ", "Europe/Berlin")
    time.tzset()
    try:
        # Summer time has started by mid April but not by mid March.
        expires = standard_expiration_date(datetime(2024, 4, 15, 12, 0, tzinfo=timezone.utc))
        assert expires == datetime(2024, 3, 15, 0, 0, tzinfo=timezone(timedelta(hours=1)))
        assert expires.utcoffset() == timedelta(hours=1)
    finally:
        monkeypatch.undo()
        time.tzset()
