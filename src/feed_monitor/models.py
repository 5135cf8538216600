"""Data models used across the feed monitor."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Union

logger = logging.getLogger(__name__)

ActivityKind = Literal[
    "advertise",
    "schedule",
    "start",
    "get-magic-number",
    "like",
    "list",
    "upload",
    "unknown",
]
ContentType = Literal[
    "video", "stream", "image", "comic", "article", "model", "game", "unknown"
]
FilterAction = Literal["show", "hide"]

ACTIVITY_KINDS: frozenset[str] = frozenset(
    {"advertise", "schedule", "start", "get-magic-number", "like", "list", "upload", "unknown"}
)
CONTENT_TYPES: frozenset[str] = frozenset(
    {"video", "stream", "image", "comic", "article", "model", "game", "unknown"}
)
FILTER_ACTIONS: frozenset[str] = frozenset({"show", "hide"})
ACTOR_TYPES: frozenset[str] = frozenset({"channel", "user", "unknown"})


@dataclass(frozen=True, slots=True)
class ChannelActor:
    """Activity published by a channel."""

    id: str
    name: str
    icon_url: str
    url: str
    type: Literal["channel"] = "channel"


@dataclass(frozen=True, slots=True)
class UserActor:
    """Activity published by an individual user."""

    id: str
    name: str
    icon_url: str
    url: str
    type: Literal["user"] = "user"


@dataclass(frozen=True, slots=True)
class UnknownActor:
    type: Literal["unknown"] = "unknown"


Actor = Union[ChannelActor, UserActor, UnknownActor]


@dataclass(frozen=True, slots=True)
class ActivityContent:
    """The work an activity refers to."""

    type: ContentType
    title: str
    url: str


@dataclass(frozen=True, slots=True)
class Activity:
    """Single entry of the activity feed."""

    id: str
    kind: ActivityKind
    message: str
    thumbnail_url: str
    timestamp: datetime
    actor: Actor
    content: ActivityContent | None = None


@dataclass(frozen=True, slots=True)
class FeedChunk:
    """One page of the remote feed."""

    activities: tuple[Activity, ...]
    next_cursor: str | None = None


@dataclass(frozen=True, slots=True)
class RuleSpec:
    """User supplied part of a filter rule. ``None`` matchers mean "any"."""

    action: FilterAction
    actor: Actor | None = None
    kind: ActivityKind | None = None
    content_type: ContentType | None = None


@dataclass(frozen=True, slots=True)
class FilterRule:
    """Persisted filter rule together with its firing statistics."""

    id: str
    priority: int
    action: FilterAction
    actor: Actor | None = None
    kind: ActivityKind | None = None
    content_type: ContentType | None = None
    fired_count: int = 0
    last_fired: datetime | None = None


@dataclass(frozen=True, slots=True)
class CursorDataPoint:
    """Scroll position checkpoint: what was visible at a given moment."""

    observed_at: datetime
    content_time: datetime


@dataclass(slots=True)
class FeedOptions:
    """Tunable behaviour of the sync loop, in seconds."""

    polling_interval: float | None = 300.0
    fetch_delay: float = 1.0
    ttl: float = 3 * 24 * 60 * 60


# ----------------------------------------------------------------------
# Conversions between models and their stored form
# ----------------------------------------------------------------------
def to_timestamp(moment: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def actor_to_record(actor: Actor) -> dict[str, str]:
    if isinstance(actor, (ChannelActor, UserActor)):
        return {
            "type": actor.type,
            "id": actor.id,
            "name": actor.name,
            "icon_url": actor.icon_url,
            "url": actor.url,
        }
    return {"type": "unknown"}


def actor_from_record(record: Mapping[str, Any]) -> Actor:
    actor_type = record.get("type")
    if actor_type in {"channel", "user"}:
        values = {
            "id": str(record.get("id") or ""),
            "name": str(record.get("name") or ""),
            "icon_url": str(record.get("icon_url") or ""),
            "url": str(record.get("url") or ""),
        }
        if actor_type == "channel":
            return ChannelActor(**values)
        return UserActor(**values)
    if actor_type != "unknown":
        logger.warning("Stored actor has an unexpected type: %r", actor_type)
    return UnknownActor()


def activity_to_record(activity: Activity) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": activity.id,
        "kind": activity.kind,
        "message": activity.message,
        "thumbnail_url": activity.thumbnail_url,
        "timestamp": to_timestamp(activity.timestamp),
        "actor": actor_to_record(activity.actor),
    }
    if activity.content is not None:
        record["content"] = {
            "type": activity.content.type,
            "title": activity.content.title,
            "url": activity.content.url,
        }
    return record


def activity_from_record(record: Mapping[str, Any]) -> Activity:
    """Rebuild an :class:`Activity` from its stored form.

    Raises ``ValueError`` when mandatory fields are missing. Unknown enum
    values are coerced to ``"unknown"`` like the remote parser does.
    """

    activity_id = record.get("id")
    if not isinstance(activity_id, str) or not activity_id:
        raise ValueError("stored activity has no id")
    try:
        timestamp = from_timestamp(record["timestamp"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"stored activity {activity_id} has no valid timestamp") from exc

    kind = record.get("kind")
    if kind not in ACTIVITY_KINDS:
        logger.warning("Stored activity %s has an unexpected kind: %r", activity_id, kind)
        kind = "unknown"

    content = None
    content_raw = record.get("content")
    if isinstance(content_raw, Mapping):
        content_type = content_raw.get("type")
        if content_type not in CONTENT_TYPES:
            content_type = "unknown"
        content = ActivityContent(
            type=content_type,
            title=str(content_raw.get("title") or ""),
            url=str(content_raw.get("url") or ""),
        )

    actor_raw = record.get("actor")
    actor = actor_from_record(actor_raw) if isinstance(actor_raw, Mapping) else UnknownActor()

    return Activity(
        id=activity_id,
        kind=kind,
        message=str(record.get("message") or ""),
        thumbnail_url=str(record.get("thumbnail_url") or ""),
        timestamp=timestamp,
        actor=actor,
        content=content,
    )


def dump_activity(activity: Activity) -> str:
    return json.dumps(activity_to_record(activity), ensure_ascii=False, separators=(",", ":"))


def load_activity(payload: str) -> Activity:
    data = json.loads(payload)
    if not isinstance(data, Mapping):
        raise ValueError("stored activity payload is not an object")
    return activity_from_record(data)
