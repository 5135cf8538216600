"""Priority ordered filter rules applied to every activity."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import closing
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from .errors import RuleNotFoundError
from .models import (
    ACTIVITY_KINDS,
    CONTENT_TYPES,
    FILTER_ACTIONS,
    Activity,
    FilterAction,
    FilterRule,
    RuleSpec,
    UserActor,
    actor_from_record,
    actor_to_record,
    from_timestamp,
    to_timestamp,
)
from .storage import SQLiteStore

logger = logging.getLogger(__name__)

DEFAULT_ACTION: FilterAction = "show"


def rule_matches(rule: FilterRule, activity: Activity) -> bool:
    """Return True if every matcher present on ``rule`` accepts ``activity``."""

    if rule.actor is not None:
        if rule.actor.type != activity.actor.type:
            return False
        if isinstance(rule.actor, UserActor):
            if not isinstance(activity.actor, UserActor) or activity.actor.id != rule.actor.id:
                return False
    if rule.kind is not None and rule.kind != activity.kind:
        return False
    if rule.content_type is not None and activity.content is not None:
        if rule.content_type != activity.content.type:
            return False
    return True


def record_fired(rule: FilterRule, moment: datetime | None = None) -> FilterRule:
    return replace(
        rule,
        fired_count=rule.fired_count + 1,
        last_fired=moment or datetime.now(timezone.utc),
    )


class RuleEngine(SQLiteStore):
    """Persisted rule set. Rules with a higher priority are evaluated first."""

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS rules (
            id TEXT PRIMARY KEY,
            priority INTEGER NOT NULL UNIQUE,
            action TEXT NOT NULL,
            actor TEXT,
            kind TEXT,
            content_type TEXT,
            fired_count INTEGER NOT NULL DEFAULT 0,
            last_fired REAL
        );
    """

    def __init__(self, path: Path):
        super().__init__(path)
        self._cached_rules: list[FilterRule] | None = None
        self._cached_version: int | None = None
        self._reported: list[tuple[object, ...]] | None = None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def apply(self, activity: Activity) -> FilterAction:
        """Classify ``activity``. The first matching rule wins; default is show."""

        with self.transaction() as cur:
            rules = self._load_rules()
            for index, rule in enumerate(rules):
                if not rule_matches(rule, activity):
                    continue
                fired = record_fired(rule)
                cur.execute(
                    "UPDATE rules SET fired_count=?, last_fired=? WHERE id=?",
                    (fired.fired_count, to_timestamp(fired.last_fired), fired.id),
                )
                rules[index] = fired
                return fired.action
        return DEFAULT_ACTION

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def rules(self) -> list[FilterRule]:
        """Return all rules sorted by priority in descending order."""

        return list(self._load_rules())

    def count(self) -> int:
        return len(self._load_rules())

    def get(self, rule_id: str) -> FilterRule:
        for rule in self._load_rules():
            if rule.id == rule_id:
                return rule
        raise RuleNotFoundError(rule_id)

    def poll_changes(self) -> bool:
        """Return True if the rule set differs from the one seen by the previous call.

        Firing statistics are not compared. The first call only records the
        current rule set.
        """

        current = [_definition(rule) for rule in self._load_rules()]
        previous, self._reported = self._reported, current
        return previous is not None and previous != current

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add(self, spec: RuleSpec) -> FilterRule:
        with self.transaction() as cur:
            cur.execute("SELECT MAX(priority) FROM rules")
            row = cur.fetchone()
            highest = row[0] if row else None
            rule = FilterRule(
                id=str(uuid.uuid1()),
                priority=0 if highest is None else int(highest) + 1,
                action=spec.action,
                actor=spec.actor,
                kind=spec.kind,
                content_type=spec.content_type,
            )
            _insert_rule(cur, rule)
            self._cached_rules = None
        logger.info("Added filter rule %s with priority %d", rule.id, rule.priority)
        return rule

    def remove(self, rule_id: str) -> None:
        """Delete a rule. Unknown identifiers are ignored."""

        with self.transaction() as cur:
            cur.execute("DELETE FROM rules WHERE id=?", (rule_id,))
            self._cached_rules = None

    def swap(self, id_a: str, id_b: str) -> None:
        """Exchange the priorities of two rules."""

        if id_a == id_b:
            self.get(id_a)
            return
        with self.transaction() as cur:
            rule_a = _select_rule(cur, id_a)
            rule_b = _select_rule(cur, id_b)
            # The priority column is unique, so one row has to leave the
            # table before the other takes over its priority.
            cur.execute("DELETE FROM rules WHERE id=?", (rule_a.id,))
            cur.execute("UPDATE rules SET priority=? WHERE id=?", (rule_a.priority, rule_b.id))
            _insert_rule(cur, replace(rule_a, priority=rule_b.priority))
            self._cached_rules = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _load_rules(self) -> list[FilterRule]:
        # data_version changes when another connection commits to the file.
        version = self._data_version()
        if self._cached_rules is None or version != self._cached_version:
            with closing(self._conn.cursor()) as cur:
                cur.execute("SELECT * FROM rules ORDER BY priority DESC")
                rows = cur.fetchall()
            self._cached_rules = [rule_from_row(row) for row in rows]
            self._cached_version = version
        return self._cached_rules

    def _data_version(self) -> int:
        with closing(self._conn.cursor()) as cur:
            cur.execute("PRAGMA data_version")
            row = cur.fetchone()
        return int(row[0])


def _definition(rule: FilterRule) -> tuple[object, ...]:
    return (rule.id, rule.priority, rule.action, rule.actor, rule.kind, rule.content_type)


def _select_rule(cur: sqlite3.Cursor, rule_id: str) -> FilterRule:
    cur.execute("SELECT * FROM rules WHERE id=?", (rule_id,))
    row = cur.fetchone()
    if row is None:
        raise RuleNotFoundError(rule_id)
    return rule_from_row(row)


def _insert_rule(cur: sqlite3.Cursor, rule: FilterRule) -> None:
    cur.execute(
        "INSERT INTO rules(id, priority, action, actor, kind, content_type, fired_count,"
        " last_fired) VALUES(?, ?, ?, ?, ?, ?, ?, ?)",
        (
            rule.id,
            rule.priority,
            rule.action,
            json.dumps(actor_to_record(rule.actor)) if rule.actor is not None else None,
            rule.kind,
            rule.content_type,
            rule.fired_count,
            to_timestamp(rule.last_fired) if rule.last_fired is not None else None,
        ),
    )


def rule_from_row(row: sqlite3.Row) -> FilterRule:
    """Validate a stored row and turn it into a :class:`FilterRule`."""

    rule_id = str(row["id"])
    action = row["action"]
    if action not in FILTER_ACTIONS:
        raise ValueError(f"rule {rule_id} has an invalid action: {action!r}")

    actor = None
    if row["actor"]:
        payload = json.loads(row["actor"])
        if not isinstance(payload, Mapping):
            raise ValueError(f"rule {rule_id} has an invalid actor matcher")
        actor = actor_from_record(payload)

    kind = row["kind"]
    if kind is not None and kind not in ACTIVITY_KINDS:
        raise ValueError(f"rule {rule_id} has an invalid kind matcher: {kind!r}")
    content_type = row["content_type"]
    if content_type is not None and content_type not in CONTENT_TYPES:
        raise ValueError(f"rule {rule_id} has an invalid content type matcher: {content_type!r}")

    last_fired = row["last_fired"]
    return FilterRule(
        id=rule_id,
        priority=int(row["priority"]),
        action=action,
        actor=actor,
        kind=kind,
        content_type=content_type,
        fired_count=int(row["fired_count"] or 0),
        last_fired=from_timestamp(last_fired) if last_fired is not None else None,
    )
