"""Client for the paginated remote activity feed."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import aiohttp

from .errors import FeedFetchError, MalformedFeedError, UnauthorizedError
from .models import (
    Activity,
    ActivityContent,
    ActivityKind,
    Actor,
    ChannelActor,
    ContentType,
    FeedChunk,
    UnknownActor,
    UserActor,
)
from .utils import parse_timestamp

FEED_URL = "https://api.feed.nicovideo.jp/v1/activities/followings/all"
_FEED_CONTEXT = "my_timeline"
_FRONTEND_ID = "6"
_REQUEST_TIMEOUT = 30.0

logger = logging.getLogger(__name__)

_ACTIVITY_KINDS: dict[str, ActivityKind] = {
    "nicoad.user.advertise.nicolive.program": "advertise",
    "nicoad.user.advertise.nicoseiga.illust": "advertise",
    "nicoad.user.advertise.niconisolid.work": "advertise",
    "nicoad.user.advertise.nicovideo.video": "advertise",
    "nicolive.channel.program.reserve": "schedule",
    "nicolive.user.program.reserve": "schedule",
    "nicolive.channel.program.onairs": "start",
    "nicolive.user.program.onairs": "start",
    "nicovideo.user.video.kiriban.play": "get-magic-number",
    "niconisolid.user.work.favorite": "like",
    "nicoseiga.user.comic.favorite": "like",
    "nicovideo.user.video.first_like": "like",
    "nicoseiga.user.illust.clip": "list",
    "nicovideo.user.mylist.add.video": "list",
    "nicochannel.channel.blomaga.article.publish": "upload",
    "nicoseiga.user.episode.upload": "upload",
    "nicoseiga.user.illust.upload": "upload",
    "niconisolid.user.work.update": "upload",
    "niconisolid.user.work.upload": "upload",
    "nicovideo.user.video.upload": "upload",
}

_CONTENT_TYPES: dict[str, ContentType] = {
    "video": "video",
    "program": "stream",
    "illust": "image",
    "comic": "comic",
    "comicEpisode": "comic",
    "article": "article",
    "solidWork": "model",
}


class FeedClient:
    """Thin asynchronous wrapper around the feed endpoint.

    Authentication relies on the cookies held by ``session``; share it with
    :func:`feed_monitor.auth.sign_in`.
    """

    def __init__(self, session: aiohttp.ClientSession, *, url: str = FEED_URL):
        self._session = session
        self._url = url

    async def fetch_chunk(self, cursor: str | None = None) -> FeedChunk:
        """Fetch one page, starting from the newest one when ``cursor`` is None.

        Raises :class:`UnauthorizedError` on HTTP 401 and
        :class:`FeedFetchError` on any other failure.
        """

        params = {"context": _FEED_CONTEXT}
        if cursor:
            params["cursor"] = cursor
        headers = {"X-Frontend-Id": _FRONTEND_ID, "Accept": "application/json"}

        try:
            timeout_cfg = aiohttp.ClientTimeout(total=_REQUEST_TIMEOUT)
            async with self._session.get(
                self._url,
                headers=headers,
                params=params,
                timeout=timeout_cfg,
            ) as resp:
                if resp.status == 401:
                    await resp.read()
                    raise UnauthorizedError()
                if not 200 <= resp.status < 300:
                    await resp.read()
                    raise FeedFetchError(
                        f"Failed to fetch a feed chunk: {resp.status}", status=resp.status
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise MalformedFeedError(
                        "Feed response is not valid JSON", status=resp.status
                    ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FeedFetchError(f"Failed to fetch a feed chunk: {exc}") from exc

        return parse_feed_chunk(data)


def parse_feed_chunk(data: Any) -> FeedChunk:
    if not isinstance(data, Mapping):
        raise MalformedFeedError("Feed response is not an object")
    code = data.get("code")
    if code is not None and code != "ok":
        logger.warning("Feed response carries an unexpected code: %r", code)
    activities_raw = data.get("activities")
    if not isinstance(activities_raw, list):
        raise MalformedFeedError("Feed response has no activity list")

    activities = tuple(parse_activity(item) for item in activities_raw)
    next_cursor = data.get("nextCursor")
    if next_cursor is not None and not isinstance(next_cursor, str):
        raise MalformedFeedError(f"Unexpected continuation cursor: {next_cursor!r}")
    return FeedChunk(activities=activities, next_cursor=next_cursor or None)


def parse_activity(payload: Any) -> Activity:
    if not isinstance(payload, Mapping):
        raise MalformedFeedError(f"Activity is not an object: {payload!r}")
    activity_id = payload.get("id")
    if not isinstance(activity_id, str) or not activity_id:
        raise MalformedFeedError(f"Activity without an id: {payload!r}")
    timestamp = parse_timestamp(payload.get("createdAt"))
    if timestamp is None:
        raise MalformedFeedError(f"Activity {activity_id} has no valid createdAt")

    message = payload.get("message") or {}
    content_raw = payload.get("content")
    actor_raw = payload.get("actor")
    return Activity(
        id=activity_id,
        kind=parse_activity_kind(str(payload.get("kind") or "")),
        message=str(message.get("text") or "") if isinstance(message, Mapping) else "",
        thumbnail_url=str(payload.get("thumbnailUrl") or ""),
        timestamp=timestamp,
        actor=parse_actor(actor_raw) if isinstance(actor_raw, Mapping) else UnknownActor(),
        content=parse_activity_content(content_raw) if isinstance(content_raw, Mapping) else None,
    )


def parse_activity_kind(kind: str) -> ActivityKind:
    mapped = _ACTIVITY_KINDS.get(kind)
    if mapped is None:
        logger.warning("Unknown activity kind: %s", kind)
        return "unknown"
    return mapped


def parse_content_type(content_type: str) -> ContentType:
    mapped = _CONTENT_TYPES.get(content_type)
    if mapped is None:
        logger.warning("Unknown activity content type: %s", content_type)
        return "unknown"
    return mapped


def parse_activity_content(payload: Mapping[str, Any]) -> ActivityContent:
    return ActivityContent(
        type=parse_content_type(str(payload.get("type") or "")),
        title=str(payload.get("title") or ""),
        url=str(payload.get("url") or ""),
    )


def parse_actor(payload: Mapping[str, Any]) -> Actor:
    actor_type = payload.get("type")
    if actor_type in {"channel", "user"}:
        values = {
            "id": str(payload.get("id") or ""),
            "name": str(payload.get("name") or ""),
            "icon_url": str(payload.get("iconUrl") or ""),
            "url": str(payload.get("url") or ""),
        }
        if actor_type == "channel":
            return ChannelActor(**values)
        return UserActor(**values)
    logger.warning("Unknown actor type: %r", actor_type)
    return UnknownActor()
