"""Keep the local activity store in sync with the remote feed.

A *generation* is one run of the following cycle, publishing
:class:`FeedEvent` objects to :attr:`SyncOrchestrator.events` in order:

0. Replay every activity already stored locally.
1. Fetch the remote feed page by page, newest first, until an activity
   that is already stored shows up or the feed ends.
2. Wait for the polling interval or an explicit update request, then go
   back to 1.

:meth:`SyncOrchestrator.refresh` cancels the running generation and starts
a new one.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal, Protocol

from .activity_store import ActivityStore
from .config_store import FeedSettings
from .cursor_ledger import ScrollCursorLedger
from .errors import FeedFetchError, GenerationCancelled, UnauthorizedError
from .models import Activity, FeedChunk
from .rules import RuleEngine
from .utils import CancellationToken, wait_adjustable

logger = logging.getLogger(__name__)

SyncState = Literal["idle", "local_replay", "remote_catchup", "polling", "aborted"]
Authenticator = Callable[[], Awaitable[None]]


class FeedSource(Protocol):
    async def fetch_chunk(self, cursor: str | None = None) -> FeedChunk: ...


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class FeedEvent:
    """Base class of everything published on the event queue."""


@dataclass(frozen=True, slots=True)
class ResetInsertionPoint(FeedEvent):
    """Following insertions go to the top of the feed again."""


@dataclass(frozen=True, slots=True)
class ActivityInserted(FeedEvent):
    """Insert an activity at the current insertion point."""

    activity: Activity


@dataclass(frozen=True, slots=True)
class ActivityDeleted(FeedEvent):
    activity_id: str


@dataclass(frozen=True, slots=True)
class EndOfFeedReached(FeedEvent):
    """Nothing older than the displayed activities is available."""


@dataclass(frozen=True, slots=True)
class FeedCleared(FeedEvent):
    """Drop everything displayed, including the end of feed marker."""


@dataclass(frozen=True, slots=True)
class ProgressUpdated(FeedEvent):
    """Progress of the current phase in ``[0, 1]``; 1 means done."""

    progress: float


@dataclass(frozen=True, slots=True)
class UpdatingAllowed(FeedEvent):
    """Whether a manual update request makes sense right now."""

    allowed: bool


def standard_expiration_date(now: datetime | None = None) -> datetime:
    """One calendar month before ``now``, at the start of the local day."""

    local = (now or datetime.now(timezone.utc)).astimezone()
    if local.month > 1:
        year, month = local.year, local.month - 1
    else:
        year, month = local.year - 1, 12
    day = min(local.day, calendar.monthrange(year, month)[1])
    # The UTC offset of that midnight may differ from today's.
    return datetime(year, month, day).astimezone()


class SyncOrchestrator:
    """Drive replay, catch-up and polling for one feed view."""

    def __init__(
        self,
        *,
        source: FeedSource,
        activities: ActivityStore,
        ledger: ScrollCursorLedger,
        rules: RuleEngine,
        settings: FeedSettings,
        authenticate: Authenticator,
        clock: Callable[[], datetime] | None = None,
    ):
        self._source = source
        self._activities = activities
        self._ledger = ledger
        self._rules = rules
        self._settings = settings
        self._authenticate = authenticate
        self._now = clock or (lambda: datetime.now(timezone.utc))

        self.events: asyncio.Queue[FeedEvent] = asyncio.Queue()
        self.errors: asyncio.Queue[BaseException] = asyncio.Queue()

        self._state: SyncState = "idle"
        self._token: CancellationToken | None = None
        self._task: asyncio.Task[None] | None = None
        self._retired: set[asyncio.Task[None]] = set()
        self._update_requested = asyncio.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start a new generation, cancelling the current one if any."""

        self._cancel_current()
        token = CancellationToken()
        self._token = token
        self._task = asyncio.create_task(self._run_generation(token), name="feed-sync-generation")

    def refresh(self, clear_store: bool = True) -> None:
        """Restart from local replay.

        ``clear_store=False`` keeps downloaded activities so they are only
        filtered again, which is what a rule set edit needs.
        """

        self._cancel_current()
        if clear_store:
            removed = self._activities.clear()
            logger.info("Cleared %d stored activities", removed)
        self.events.put_nowait(FeedCleared())
        self.start()

    def check_for_updates(self) -> None:
        """Stop waiting for the polling interval and check the remote feed now."""

        self._update_requested.set()

    async def stop(self) -> None:
        """Cancel every generation, including requests still in flight, and wait for them."""

        self._cancel_current()
        tasks = list(self._retired)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def set_last_visible_timestamp(self, moment: datetime | None) -> None:
        """Remember the newest fully visible activity and record a checkpoint."""

        self._settings.set_last_visible_timestamp(moment)
        if moment is not None:
            self._ledger.put(moment, self._now())

    def last_visible_timestamp(self) -> datetime | None:
        return self._settings.last_visible_timestamp

    def _cancel_current(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None
        if self._task is not None:
            if not self._task.done():
                self._retired.add(self._task)
                self._task.add_done_callback(self._retired.discard)
            self._task = None

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    async def _run_generation(self, token: CancellationToken) -> None:
        try:
            await self._replay_local(token)
            while True:
                await self._catch_up(token)
                await self._poll(token)
        except GenerationCancelled:
            logger.debug("Feed generation cancelled")
        except FeedFetchError as exc:
            logger.error("Stopped checking for updates: %s", exc)
            self._fail(token, exc)
        except Exception as exc:
            logger.exception("Feed synchronisation failed")
            self._fail(token, exc)
        finally:
            if self._token is token or self._token is None:
                self._state = "aborted"

    def _fail(self, token: CancellationToken, exc: BaseException) -> None:
        if token.cancelled:
            return
        self.errors.put_nowait(exc)
        self.events.put_nowait(UpdatingAllowed(True))

    def _emit(self, token: CancellationToken, event: FeedEvent) -> None:
        token.raise_if_cancelled()
        self.events.put_nowait(event)

    def _finish_phase(self, token: CancellationToken) -> None:
        if token.cancelled:
            return
        self.events.put_nowait(ResetInsertionPoint())
        self.events.put_nowait(ProgressUpdated(1.0))

    def _expiration_date(self) -> datetime | None:
        """Purge cutoff: the earlier of the standard date and the ledger cutoff.

        None while the ledger has no checkpoint old enough.
        """

        now = self._now()
        ledger_cutoff = self._ledger.cut_off(self._settings.ttl, now=now)
        if ledger_cutoff is None:
            return None
        return min(standard_expiration_date(now), ledger_cutoff)

    async def _replay_local(self, token: CancellationToken) -> None:
        self._state = "local_replay"
        self._emit(token, UpdatingAllowed(False))
        self._emit(token, ProgressUpdated(0.0))
        try:
            # Nothing is displayed yet, so no deletion events are needed.
            expire_at = self._expiration_date()
            if expire_at is not None:
                self._activities.purge(expire_at)

            activities = self._activities.list_newest_first()
            total = len(activities)
            hidden = 0
            logger.info("Loading %d activities from the database", total)
            for count, activity in enumerate(activities, start=1):
                token.raise_if_cancelled()
                if self._rules.apply(activity) == "show":
                    self._emit(token, ActivityInserted(activity))
                else:
                    hidden += 1
                self._emit(token, ProgressUpdated(count / total))
                await asyncio.sleep(0)
            if hidden:
                logger.info("Filtered out %d activities in the database", hidden)
            if total:
                # Nothing older than the stored activities will come from
                # the server in this generation.
                self._emit(token, EndOfFeedReached())
        finally:
            self._finish_phase(token)

    async def _catch_up(self, token: CancellationToken) -> None:
        self._state = "remote_catchup"
        self._update_requested.clear()
        self._emit(token, UpdatingAllowed(False))
        self._emit(token, ProgressUpdated(0.0))
        try:
            await self._fetch_new_activities(token)
        finally:
            self._finish_phase(token)
        self._emit(token, UpdatingAllowed(True))

    async def _fetch_new_activities(self, token: CancellationToken) -> None:
        expire_at = self._expiration_date()
        if expire_at is not None:
            self._activities.purge(
                expire_at, lambda activity: self._emit(token, ActivityDeleted(activity.id))
            )

        started = self._now()
        newest = self._activities.newest()
        if newest is not None:
            logger.debug("Newest stored activity is from %s", newest.timestamp.isoformat())
            expected_end = newest.timestamp
        else:
            expected_end = standard_expiration_date(started)

        # The whole batch is stored at once at the end; storing pages one
        # by one would leave a gap behind the boundary if interrupted.
        buffered: list[Activity] = []
        seen: set[str] = set()
        hidden = 0
        cursor: str | None = None
        while True:
            token.raise_if_cancelled()
            logger.debug(
                "Requesting a feed chunk %s",
                f"starting from {cursor}" if cursor else "from the beginning",
            )
            chunk = await self._fetch_chunk(token, cursor)
            token.raise_if_cancelled()
            logger.debug("Got a chunk containing %d activities", len(chunk.activities))

            boundary = False
            for activity in chunk.activities:
                if self._activities.exists(activity.id):
                    logger.debug("Found an activity already in the database: %s", activity.id)
                    boundary = True
                    break
                if activity.id in seen:
                    continue
                seen.add(activity.id)
                if self._rules.apply(activity) == "show":
                    self._emit(token, ActivityInserted(activity))
                else:
                    hidden += 1
                progress = catch_up_progress(started, activity.timestamp, expected_end)
                self._emit(token, ProgressUpdated(progress))
                buffered.append(activity)
            if boundary:
                break

            if chunk.next_cursor is None:
                logger.debug("It was the last feed chunk available")
                self._emit(token, EndOfFeedReached())
                break
            cursor = chunk.next_cursor
            await wait_adjustable(
                lambda: self._settings.fetch_delay,
                token=token,
                changed=self._settings.wait_for_change,
                label="next feed chunk",
            )

        token.raise_if_cancelled()
        if hidden:
            logger.info("Filtered out %d activities from the server", hidden)
        with self._activities.transaction():
            self._activities.upsert_many(buffered)
        logger.info("Got %d new activities from the server", len(buffered))

    async def _fetch_chunk(self, token: CancellationToken, cursor: str | None) -> FeedChunk:
        while True:
            try:
                return await self._source.fetch_chunk(cursor)
            except UnauthorizedError:
                token.raise_if_cancelled()
                logger.info("The feed requires signing in")
                await self._authenticate()
                token.raise_if_cancelled()

    async def _poll(self, token: CancellationToken) -> None:
        self._state = "polling"
        outcome = await wait_adjustable(
            lambda: self._settings.polling_interval,
            token=token,
            changed=self._settings.wait_for_change,
            trigger=self._update_requested,
            label="next update check",
        )
        logger.debug("Checking for updates (%s)", outcome)


def catch_up_progress(started: datetime, reached: datetime, expected_end: datetime) -> float:
    """How far back in time the catch-up has got, relative to where it should stop."""

    span = (started - expected_end).total_seconds()
    if span <= 0:
        return 1.0
    progress = (started - reached).total_seconds() / span
    return min(1.0, max(0.0, progress))
