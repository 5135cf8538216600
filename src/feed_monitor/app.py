"""Application bootstrap for Feed Monitor."""

from __future__ import annotations

import asyncio
import functools
import getpass
import logging
import os
import sys
import threading
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import TextIO, TypeVar

import aiohttp

from .activity_store import ActivityStore
from .auth import Credentials, sign_in, sign_out
from .config_store import FeedSettings
from .cursor_ledger import ScrollCursorLedger
from .errors import UnauthorizedError
from .feed import FeedClient
from .formatting import format_activity, format_progress
from .rules import RuleEngine
from .sync import (
    ActivityDeleted,
    ActivityInserted,
    EndOfFeedReached,
    FeedCleared,
    FeedEvent,
    ProgressUpdated,
    SyncOrchestrator,
    UpdatingAllowed,
)

logger = logging.getLogger(__name__)

ENV_USER = "FEED_MONITOR_USER"
ENV_PASSWORD = "FEED_MONITOR_PASSWORD"
RULES_CHECK_INTERVAL = 1.0

CredentialsPrompt = Callable[[], Credentials]
T = TypeVar("T")


def prompt_credentials() -> Credentials:
    user = input("E-mail or phone: ").strip()
    password = getpass.getpass("Password: ")
    return Credentials(user=user, password=password)


def run_in_daemon_thread(func: Callable[[], T], *, name: str) -> asyncio.Future[T]:
    """Run a blocking call in a daemon thread and return a future for its result.

    Unlike ``asyncio.to_thread`` the event loop does not wait for the call on
    shutdown, so a pending terminal prompt never blocks exit.
    """

    loop = asyncio.get_running_loop()
    future: asyncio.Future[T] = loop.create_future()

    def settle(result: T | None, error: Exception | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)  # type: ignore[arg-type]

    def target() -> None:
        try:
            callback = functools.partial(settle, func(), None)
        except Exception as exc:
            callback = functools.partial(settle, None, exc)
        try:
            loop.call_soon_threadsafe(callback)
        except RuntimeError:
            logger.debug("Event loop closed before %s finished", name)

    threading.Thread(target=target, name=name, daemon=True).start()
    return future


class ConsoleInput:
    """Hand lines typed on an interactive stdin to a handler.

    Reading pauses while a credentials prompt owns the terminal.
    """

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream or sys.stdin
        self._handler: Callable[[str], None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._paused = 0
        self._reading = False

    @property
    def reading(self) -> bool:
        return self._reading

    def start(self, handler: Callable[[str], None]) -> bool:
        """Start delivering lines. False if stdin is not an interactive terminal."""

        if not self._stream.isatty():
            logger.debug("Standard input is not a terminal, commands are disabled")
            return False
        self._handler = handler
        self._loop = asyncio.get_running_loop()
        self._add_reader()
        return self._handler is not None

    def stop(self) -> None:
        self._remove_reader()
        self._handler = None

    def pause(self) -> None:
        self._paused += 1
        self._remove_reader()

    def resume(self) -> None:
        self._paused = max(0, self._paused - 1)
        if not self._paused:
            self._add_reader()

    def _add_reader(self) -> None:
        if self._reading or self._paused or self._handler is None or self._loop is None:
            return
        try:
            self._loop.add_reader(self._stream.fileno(), self._on_readable)
        except (NotImplementedError, OSError, ValueError) as exc:
            logger.warning("Commands are not available on this terminal: %s", exc)
            self._handler = None
            return
        self._reading = True

    def _remove_reader(self) -> None:
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self._stream.fileno())
        self._reading = False

    def _on_readable(self) -> None:
        line = self._stream.readline()
        if not line:
            logger.debug("End of standard input, commands are disabled")
            self.stop()
            return
        if self._handler is not None:
            self._handler(line)


class TerminalAuthenticator:
    """Sign in on demand, first from the environment, then interactively.

    Environment credentials are tried once; after they are rejected the user
    is asked until a sign-in succeeds. A prompt left open by a cancelled
    generation is answered into the next sign-in instead of asking twice.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        prompt: CredentialsPrompt = prompt_credentials,
        environ: Mapping[str, str] | None = None,
        console: ConsoleInput | None = None,
    ):
        self._session = session
        self._prompt = prompt
        self._console = console
        env = os.environ if environ is None else environ
        user = env.get(ENV_USER)
        password = env.get(ENV_PASSWORD)
        self._pending = Credentials(user, password) if user and password else None
        self._prompting: asyncio.Future[Credentials] | None = None
        self._lock = asyncio.Lock()

    async def __call__(self) -> None:
        async with self._lock:
            while True:
                credentials = self._pending
                self._pending = None
                if credentials is None:
                    credentials = await self._ask()
                try:
                    await sign_in(self._session, credentials)
                except UnauthorizedError:
                    logger.warning("Sign-in rejected for %s", credentials.user)
                    continue
                return

    async def _ask(self) -> Credentials:
        if self._prompting is None:
            console = self._console
            if console is not None:
                console.pause()
            self._prompting = run_in_daemon_thread(self._prompt, name="credentials-prompt")
            if console is not None:
                self._prompting.add_done_callback(lambda _: console.resume())
        prompting = self._prompting
        try:
            return await asyncio.shield(prompting)
        finally:
            if prompting.done() and self._prompting is prompting:
                self._prompting = None


class WatchCommands:
    """Single-letter commands typed while the feed is being watched."""

    HELP = "Commands: u = check for updates, r = refresh, f = reload filter rules, s = sign out"

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        rules: RuleEngine,
        *,
        sign_out: Callable[[], Awaitable[None]],
        write: Callable[[str], None],
    ):
        self._orchestrator = orchestrator
        self._rules = rules
        self._sign_out = sign_out
        self._write = write
        self._pending: set[asyncio.Task[None]] = set()

    def handle(self, line: str) -> None:
        command = line.strip().lower()
        if not command:
            return
        if command == "u":
            self._orchestrator.check_for_updates()
        elif command == "r":
            self._orchestrator.refresh()
        elif command == "f":
            self.reload_rules()
        elif command == "s":
            task = asyncio.create_task(self._run_sign_out())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            self._write(self.HELP)

    def reload_rules(self) -> None:
        """Filter the stored activities again with the current rules."""

        self._rules.poll_changes()
        self._orchestrator.refresh(clear_store=False)

    async def watch_rules(self, interval: float = RULES_CHECK_INTERVAL) -> None:
        """Refilter the feed whenever another process edits the rules."""

        self._rules.poll_changes()
        while True:
            await asyncio.sleep(interval)
            if self._rules.poll_changes():
                logger.info("Filter rules changed, filtering the feed again")
                self._orchestrator.refresh(clear_store=False)

    async def _run_sign_out(self) -> None:
        await self._sign_out()
        self._write("── signed out ──")


class FeedMonitorApp:
    """Runs the sync loop, prints its events and reads terminal commands."""

    def __init__(
        self,
        *,
        db_path: Path,
        output: TextIO | None = None,
        prompt: CredentialsPrompt = prompt_credentials,
        console: ConsoleInput | None = None,
        rules_check_interval: float = RULES_CHECK_INTERVAL,
    ):
        self._db_path = db_path
        self._output = output or sys.stdout
        self._prompt = prompt
        self._console = console or ConsoleInput()
        self._rules_check_interval = rules_check_interval
        self._progress: float | None = None

    async def run(self) -> None:
        activities = ActivityStore(self._db_path)
        ledger = ScrollCursorLedger(self._db_path)
        rules = RuleEngine(self._db_path)
        settings = FeedSettings.open(self._db_path)
        try:
            async with aiohttp.ClientSession() as session:
                orchestrator = SyncOrchestrator(
                    source=FeedClient(session),
                    activities=activities,
                    ledger=ledger,
                    rules=rules,
                    settings=settings,
                    authenticate=TerminalAuthenticator(
                        session, prompt=self._prompt, console=self._console
                    ),
                )
                commands = WatchCommands(
                    orchestrator,
                    rules,
                    sign_out=lambda: sign_out(session),
                    write=self._write,
                )
                orchestrator.start()
                if self._console.start(commands.handle):
                    self._write(WatchCommands.HELP)
                try:
                    await asyncio.gather(
                        self._supervise("feed-events", lambda: self._print_events(orchestrator)),
                        self._supervise("feed-errors", lambda: self._report_errors(orchestrator)),
                        self._supervise(
                            "rules-watch",
                            lambda: commands.watch_rules(self._rules_check_interval),
                        ),
                    )
                finally:
                    self._console.stop()
                    await orchestrator.stop()
        finally:
            for store in (activities, ledger, rules, settings):
                store.close()

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 1.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Task %s stopped", name)
                raise
            except Exception:
                logger.exception("Task %s failed", name)
            else:
                logger.warning("Task %s exited unexpectedly, restarting", name)
            await asyncio.sleep(retry_delay)

    async def _print_events(self, orchestrator: SyncOrchestrator) -> None:
        while True:
            event = await orchestrator.events.get()
            self.render_event(event, orchestrator)

    async def _report_errors(self, orchestrator: SyncOrchestrator) -> None:
        while True:
            error = await orchestrator.errors.get()
            self._write(f"!! Updating stopped: {error}")

    def render_event(self, event: FeedEvent, orchestrator: SyncOrchestrator) -> None:
        if isinstance(event, ActivityInserted):
            self._write(format_activity(event.activity))
            # Everything printed is visible in a terminal.
            latest = orchestrator.last_visible_timestamp()
            if latest is None or event.activity.timestamp > latest:
                orchestrator.set_last_visible_timestamp(event.activity.timestamp)
        elif isinstance(event, ActivityDeleted):
            logger.debug("Activity %s expired", event.activity_id)
        elif isinstance(event, EndOfFeedReached):
            self._write("── end of feed ──")
        elif isinstance(event, FeedCleared):
            self._write("── feed cleared ──")
        elif isinstance(event, ProgressUpdated):
            if event.progress >= 1.0 and self._progress != 1.0:
                self._write(format_progress(event.progress))
            self._progress = event.progress
        elif isinstance(event, UpdatingAllowed):
            logger.debug("Updating allowed: %s", event.allowed)

    def _write(self, text: str) -> None:
        print(text, file=self._output, flush=True)
