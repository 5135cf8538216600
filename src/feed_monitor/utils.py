"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal

from .errors import GenerationCancelled

logger = logging.getLogger(__name__)

_SECONDS_SETTING_RECHECK = 1.0
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60, "w": 7 * 24 * 60 * 60}


class CancellationToken:
    """Cooperative cancellation flag shared by everything in one sync generation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled()

    async def wait(self) -> None:
        await self._event.wait()


async def wait_adjustable(
    read_delay: Callable[[], float | None],
    *,
    token: CancellationToken,
    changed: Callable[[float | None], Awaitable[object]],
    trigger: asyncio.Event | None = None,
    recheck: float = _SECONDS_SETTING_RECHECK,
    label: str = "wait",
) -> Literal["elapsed", "triggered"]:
    """Sleep for a configurable delay measured from the moment of the call.

    ``read_delay`` is consulted again whenever ``changed`` completes and at
    least every ``recheck`` seconds, so a new value shortens or extends the
    remaining time instead of restarting the whole delay. A delay of
    ``None`` waits until ``trigger`` is set. Raises
    :class:`GenerationCancelled` once ``token`` fires.
    """

    loop = asyncio.get_running_loop()
    started = loop.time()
    announced: float | None = -1.0
    while True:
        token.raise_if_cancelled()
        if trigger is not None and trigger.is_set():
            return "triggered"

        delay = read_delay()
        remaining: float | None = None
        if delay is not None:
            remaining = max(0.0, delay - (loop.time() - started))
            if remaining <= 0:
                return "elapsed"
        if delay != announced:
            announced = delay
            if remaining is None:
                logger.debug("%s: waiting until explicitly triggered", label)
            else:
                logger.debug("%s: continuing in %s", label, format_duration(remaining))

        timeout = recheck if remaining is None else min(remaining, recheck)
        waiters = {
            asyncio.ensure_future(token.wait()),
            asyncio.ensure_future(changed(timeout)),
        }
        if trigger is not None:
            waiters.add(asyncio.ensure_future(trigger.wait()))
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)


def parse_seconds_setting(value: str | None, default: float = 0.0) -> float:
    """Parse a duration such as ``"90"``, ``"1.5"``, ``"5m"`` or ``"3d"`` into seconds."""

    if value is None:
        return default
    stripped = value.strip().lower()
    if not stripped:
        return default
    multiplier = 1
    if stripped[-1] in _UNIT_SECONDS:
        multiplier = _UNIT_SECONDS[stripped[-1]]
        stripped = stripped[:-1].strip()
    try:
        parsed = float(stripped) * multiplier
    except ValueError:
        return default
    return max(0.0, parsed)


def format_seconds_setting(seconds: float) -> str:
    value = max(0.0, float(seconds))
    if value.is_integer():
        return str(int(value))
    return repr(value)


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        try:
            moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def format_duration(seconds: float, *, show_milliseconds: bool = False) -> str:
    """Render a duration compactly: ``302.5`` becomes ``"5min 2s"``."""

    remaining = max(0.0, float(seconds))
    parts: list[str] = []
    for unit, size in (("w", 7 * 24 * 3600), ("d", 24 * 3600), ("h", 3600), ("min", 60)):
        if remaining >= size:
            count = int(remaining // size)
            remaining -= count * size
            parts.append(f"{count}{unit}")
    if show_milliseconds:
        if remaining >= 1:
            whole = int(remaining)
            remaining -= whole
            parts.append(f"{whole}s")
        millis = int(remaining * 1000)
        if not parts or millis > 0:
            parts.append(f"{millis}ms")
    else:
        parts.append(f"{int(remaining)}s")
    return " ".join(parts)
