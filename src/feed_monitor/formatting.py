"""Plain text rendering of activities and rules for the terminal."""

from __future__ import annotations

from datetime import datetime, timezone

from .models import Activity, Actor, ChannelActor, FilterRule, UserActor
from .utils import format_duration

_KIND_ICONS = {
    "advertise": "📣",
    "schedule": "📅",
    "start": "🔴",
    "get-magic-number": "🎯",
    "like": "👍",
    "list": "📋",
    "upload": "⬆",
    "unknown": "❔",
}
_KIND_LABELS = {
    "advertise": "Advertised",
    "schedule": "Scheduled a stream",
    "start": "Started streaming",
    "get-magic-number": "Reached a milestone",
    "like": "Liked",
    "list": "Added to a list",
    "upload": "Uploaded",
    "unknown": "Activity",
}
_CONTENT_LABELS = {
    "video": "Video",
    "stream": "Stream",
    "image": "Image",
    "comic": "Comic",
    "article": "Article",
    "model": "3D model",
    "game": "Game",
    "unknown": "Content",
}
_SEPARATOR = "────── ✦ ──────"
_PROGRESS_WIDTH = 20


def format_activity(activity: Activity, *, now: datetime | None = None) -> str:
    """Render one activity as a block of lines."""

    lines = [_SEPARATOR, _build_header(activity)]
    if activity.message:
        lines.append(activity.message.strip())
    if activity.content is not None:
        label = _CONTENT_LABELS.get(activity.content.type, "Content")
        title = activity.content.title or "(untitled)"
        lines.append(f"[{label}] {title}")
        if activity.content.url:
            lines.append(activity.content.url)
    lines.append(_format_timestamp_line(activity.timestamp, now))
    return "\n".join(lines)


def _build_header(activity: Activity) -> str:
    icon = _KIND_ICONS.get(activity.kind, "❔")
    label = _KIND_LABELS.get(activity.kind, "Activity")
    author = describe_actor(activity.actor)
    if author:
        return f"{icon} {author}: {label}"
    return f"{icon} {label}"


def describe_actor(actor: Actor | None) -> str:
    if isinstance(actor, ChannelActor):
        return f"{actor.name or actor.id} (channel)"
    if isinstance(actor, UserActor):
        return f"{actor.name or actor.id} (user {actor.id})"
    if actor is None:
        return ""
    return "unknown actor"


def _format_timestamp_line(moment: datetime, now: datetime | None) -> str:
    formatted = moment.astimezone().strftime("%d.%m.%Y %H:%M %Z")
    return f"🕒 {formatted} ({format_relative_time(moment, now)})"


def format_relative_time(target: datetime, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    seconds = (target - current).total_seconds()
    if abs(seconds) < 1:
        return "just now"
    # Seconds are noise once the distance is over an hour.
    rendered = format_duration(abs(seconds) // 60 * 60 if abs(seconds) >= 3600 else abs(seconds))
    if rendered.endswith(" 0s"):
        rendered = rendered[: -len(" 0s")]
    if seconds < 0:
        return f"{rendered} ago"
    return f"in {rendered}"


def format_rule(rule: FilterRule) -> str:
    matchers: list[str] = []
    if rule.actor is not None:
        matchers.append(f"actor={describe_actor(rule.actor)}")
    if rule.kind is not None:
        matchers.append(f"kind={rule.kind}")
    if rule.content_type is not None:
        matchers.append(f"content={rule.content_type}")
    condition = ", ".join(matchers) if matchers else "everything"
    fired = "never fired"
    if rule.last_fired is not None:
        fired = f"fired {rule.fired_count}x, last {format_relative_time(rule.last_fired)}"
    return f"[{rule.priority}] {rule.id} {rule.action.upper()} {condition} ({fired})"


def format_progress(progress: float) -> str:
    clamped = min(1.0, max(0.0, progress))
    filled = round(clamped * _PROGRESS_WIDTH)
    bar = "#" * filled + "-" * (_PROGRESS_WIDTH - filled)
    return f"[{bar}] {clamped * 100:3.0f}%"
