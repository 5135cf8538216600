from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

import pytest

from feed_monitor.errors import RuleNotFoundError
from feed_monitor.models import (
    Activity,
    ActivityContent,
    ChannelActor,
    FilterRule,
    RuleSpec,
    UnknownActor,
    UserActor,
)
from feed_monitor.rules import RuleEngine, record_fired, rule_matches

MOMENT = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
USER_X = UserActor(id="x", name="User X", icon_url="", url="")


def _activity(
    *,
    kind: str = "upload",
    actor: object = USER_X,
    content: ActivityContent | None = None,
) -> Activity:
    return Activity(
        id="a1",
        kind=kind,  # type: ignore[arg-type]
        message="",
        thumbnail_url="",
        timestamp=MOMENT,
        actor=actor,  # type: ignore[arg-type]
        content=content,
    )


def _rule(**values: object) -> FilterRule:
    values.setdefault("id", "r")
    values.setdefault("priority", 0)
    values.setdefault("action", "hide")
    return FilterRule(**values)  # type: ignore[arg-type]


def test_higher_priority_rule_wins(tmp_path: Path) -> None:
    engine = RuleEngine(tmp_path / "feed.sqlite")
    hide_uploads = engine.add(RuleSpec(action="hide", kind="upload"))
    show_user = engine.add(RuleSpec(action="show", actor=USER_X))
    assert (hide_uploads.priority, show_user.priority) == (0, 1)

    assert engine.apply(_activity()) == "show"

    assert engine.get(show_user.id).fired_count == 1
    assert engine.get(show_user.id).last_fired is not None
    assert engine.get(hide_uploads.id).fired_count == 0
    assert engine.get(hide_uploads.id).last_fired is None


def test_default_action_is_show(tmp_path: Path) -> None:
    engine = RuleEngine(tmp_path / "feed.sqlite")
    assert engine.apply(_activity()) == "show"

    engine.add(RuleSpec(action="hide", kind="like"))
    assert engine.apply(_activity(kind="upload")) == "show"
    assert engine.apply(_activity(kind="like")) == "hide"


def test_firing_statistics_are_persisted(tmp_path: Path) -> None:
    path = tmp_path / "feed.sqlite"
    engine = RuleEngine(path)
    rule = engine.add(RuleSpec(action="hide"))
    for _ in range(3):
        assert engine.apply(_activity()) == "hide"

    reopened = RuleEngine(path)
    stored = reopened.get(rule.id)
    assert stored.fired_count == 3
    assert stored.last_fired is not None


def test_apply_is_deterministic(tmp_path: Path) -> None:
    engine = RuleEngine(tmp_path / "feed.sqlite")
    engine.add(RuleSpec(action="show", content_type="video"))
    engine.add(RuleSpec(action="hide", kind="upload"))
    engine.add(RuleSpec(action="show", actor=ChannelActor(id="c", name="", icon_url="", url="")))

    activity = _activity(content=ActivityContent(type="video", title="", url=""))
    results = {engine.apply(activity) for _ in range(5)}
    assert results == {"hide"}


def test_swap_exchanges_priorities(tmp_path: Path) -> None:
    engine = RuleEngine(tmp_path / "feed.sqlite")
    first = engine.add(RuleSpec(action="hide", kind="upload"))
    second = engine.add(RuleSpec(action="show", actor=USER_X))
    third = engine.add(RuleSpec(action="hide", kind="like"))
    before = sorted(rule.priority for rule in engine.rules())

    engine.swap(first.id, second.id)

    assert engine.get(first.id).priority == 1
    assert engine.get(second.id).priority == 0
    assert engine.get(third.id).priority == 2
    assert sorted(rule.priority for rule in engine.rules()) == before
    assert engine.apply(_activity()) == "hide"


def test_swap_keeps_firing_statistics(tmp_path: Path) -> None:
    engine = RuleEngine(tmp_path / "feed.sqlite")
    first = engine.add(RuleSpec(action="hide", kind="upload"))
    second = engine.add(RuleSpec(action="hide", kind="like"))
    engine.apply(_activity(kind="upload"))

    engine.swap(first.id, second.id)

    assert engine.get(first.id).fired_count == 1
    assert engine.get(first.id).kind == "upload"


def test_swap_with_unknown_rule_changes_nothing(tmp_path: Path) -> None:
    engine = RuleEngine(tmp_path / "feed.sqlite")
    rule = engine.add(RuleSpec(action="hide"))

    with pytest.raises(RuleNotFoundError):
        engine.swap(rule.id, "missing")
    with pytest.raises(RuleNotFoundError):
        engine.swap("missing", "missing")

    assert engine.get(rule.id).priority == 0
    assert engine.count() == 1


def test_add_after_remove_uses_max_plus_one(tmp_path: Path) -> None:
    engine = RuleEngine(tmp_path / "feed.sqlite")
    first = engine.add(RuleSpec(action="hide"))
    second = engine.add(RuleSpec(action="show"))
    engine.remove(first.id)
    engine.remove("missing")

    third = engine.add(RuleSpec(action="hide"))

    assert third.priority == second.priority + 1
    assert [rule.id for rule in engine.rules()] == [third.id, second.id]
    with pytest.raises(RuleNotFoundError):
        engine.get(first.id)


def test_priority_column_is_unique(tmp_path: Path) -> None:
    path = tmp_path / "feed.sqlite"
    engine = RuleEngine(path)
    rule = engine.add(RuleSpec(action="hide"))

    with closing(sqlite3.connect(path)) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO rules(id, priority, action) VALUES(?, ?, ?)",
                ("other", rule.priority, "show"),
            )


def test_mutations_invalidate_the_cache(tmp_path: Path) -> None:
    engine = RuleEngine(tmp_path / "feed.sqlite")
    assert engine.rules() == []
    rule = engine.add(RuleSpec(action="hide"))
    assert [r.id for r in engine.rules()] == [rule.id]
    engine.remove(rule.id)
    assert engine.rules() == []
    assert engine.count() == 0


def test_invalid_stored_rule_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "feed.sqlite"
    engine = RuleEngine(path)
    with closing(sqlite3.connect(path)) as conn:
        conn.execute(
            "INSERT INTO rules(id, priority, action) VALUES(?, ?, ?)", ("bad", 0, "maybe")
        )
        conn.commit()

    with pytest.raises(ValueError):
        engine.rules()


def test_actor_matcher_compares_variant_and_user_id() -> None:
    user_rule = _rule(actor=USER_X)
    assert rule_matches(user_rule, _activity(actor=USER_X))
    assert not rule_matches(user_rule, _activity(actor=UserActor(id="y", name="", icon_url="", url="")))
    assert not rule_matches(user_rule, _activity(actor=ChannelActor(id="x", name="", icon_url="", url="")))

    channel_rule = _rule(actor=ChannelActor(id="c1", name="", icon_url="", url=""))
    assert rule_matches(channel_rule, _activity(actor=ChannelActor(id="c2", name="", icon_url="", url="")))
    assert not rule_matches(channel_rule, _activity(actor=UnknownActor()))


def test_content_type_matcher_ignores_activities_without_content() -> None:
    rule = _rule(content_type="video")
    assert rule_matches(rule, _activity(content=None))
    assert rule_matches(rule, _activity(content=ActivityContent(type="video", title="", url="")))
    assert not rule_matches(rule, _activity(content=ActivityContent(type="image", title="", url="")))


def test_record_fired_returns_updated_copy() -> None:
    rule = _rule(fired_count=2)
    fired = record_fired(rule, MOMENT)

    assert fired.fired_count == 3
    assert fired.last_fired == MOMENT
    assert rule.fired_count == 2


def test_rules_edited_through_another_connection_apply_immediately(tmp_path: Path) -> None:
    path = tmp_path / "feed.sqlite"
    watcher = RuleEngine(path)
    editor = RuleEngine(path)
    like = _activity(kind="like")

    assert watcher.apply(like) == "show"
    assert watcher.poll_changes() is False

    rule = editor.add(RuleSpec(action="hide", kind="like"))
    assert watcher.apply(like) == "hide"
    assert watcher.poll_changes() is True
    assert watcher.poll_changes() is False

    editor.remove(rule.id)
    assert watcher.apply(like) == "show"
    assert watcher.poll_changes() is True


def test_firing_statistics_are_not_reported_as_rule_changes(tmp_path: Path) -> None:
    path = tmp_path / "feed.sqlite"
    watcher = RuleEngine(path)
    other_watcher = RuleEngine(path)
    watcher.add(RuleSpec(action="hide", kind="like"))
    assert watcher.poll_changes() is False

    assert other_watcher.apply(_activity(kind="like")) == "hide"

    assert watcher.poll_changes() is False
    assert watcher.rules()[0].fired_count == 1
