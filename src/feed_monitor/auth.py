"""Signing in and out of the account that owns the feed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import aiohttp

from .errors import FeedMonitorError, UnauthorizedError

SIGN_IN_URL = "https://account.nicovideo.jp/login/redirector"
SIGN_OUT_URL = "https://account.nicovideo.jp/logout"
_SIGN_IN_PARAMS = {"site": "niconico", "sec": "header_pc", "next_url": "/"}
_REQUEST_TIMEOUT = 30.0

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Credentials:
    """E-mail address or phone number, and password."""

    user: str
    password: str


async def sign_in(
    session: aiohttp.ClientSession,
    credentials: Credentials,
    *,
    url: str = SIGN_IN_URL,
) -> None:
    """Sign in, storing the session cookies in ``session``.

    The server redirects to the site on success and back to a login form
    on failure, in which case :class:`UnauthorizedError` is raised.
    """

    form = {"mail_tel": credentials.user, "password": credentials.password}
    try:
        timeout_cfg = aiohttp.ClientTimeout(total=_REQUEST_TIMEOUT)
        async with session.post(
            url,
            params=_SIGN_IN_PARAMS,
            data=form,
            allow_redirects=True,
            timeout=timeout_cfg,
        ) as resp:
            await resp.read()
            final_url = str(resp.url)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise FeedMonitorError(f"Could not reach the sign-in endpoint: {exc}") from exc

    if "/login?" in final_url:
        raise UnauthorizedError("Authentication failed")
    logger.info("Signed in as %s", credentials.user)


async def sign_out(session: aiohttp.ClientSession, *, url: str = SIGN_OUT_URL) -> None:
    try:
        timeout_cfg = aiohttp.ClientTimeout(total=_REQUEST_TIMEOUT)
        async with session.get(
            url,
            params={"site": "niconico"},
            allow_redirects=True,
            timeout=timeout_cfg,
        ) as resp:
            await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.warning("Sign-out request failed: %s", exc)
