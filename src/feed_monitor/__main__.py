"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from .app import FeedMonitorApp
from .config_store import FeedSettings
from .errors import RuleNotFoundError
from .formatting import format_rule
from .models import (
    ACTIVITY_KINDS,
    CONTENT_TYPES,
    Actor,
    ChannelActor,
    RuleSpec,
    UnknownActor,
    UserActor,
)
from .rules import RuleEngine
from .utils import format_duration, parse_seconds_setting

_SETTING_NAMES = ("polling-interval", "fetch-delay", "ttl")
_DISABLED_VALUES = {"off", "none"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feed_monitor", description="Follow the activity feed from the terminal"
    )
    parser.add_argument("--db-path", default="feed.db", help="Path to the storage file")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser(
        "watch", help="Print the feed and keep checking for updates; type h for commands"
    )

    rules = commands.add_parser("rules", help="Manage filter rules").add_subparsers(
        dest="rules_command", required=True
    )
    rules.add_parser("list", help="List rules, highest priority first")
    add = rules.add_parser("add", help="Add a rule with the highest priority")
    add.add_argument("action", choices=("show", "hide"))
    add.add_argument("--actor-type", choices=("channel", "user", "unknown"))
    add.add_argument("--actor-id", help="Only used for user actors")
    add.add_argument("--kind", choices=sorted(ACTIVITY_KINDS))
    add.add_argument("--content-type", choices=sorted(CONTENT_TYPES))
    remove = rules.add_parser("remove", help="Delete a rule")
    remove.add_argument("rule_id")
    swap = rules.add_parser("swap", help="Exchange the priorities of two rules")
    swap.add_argument("first")
    swap.add_argument("second")

    config = commands.add_parser("config", help="Show or change feed settings").add_subparsers(
        dest="config_command", required=True
    )
    config.add_parser("show", help="Print current settings")
    set_cmd = config.add_parser("set", help="Change a setting, e.g. 'set polling-interval 10m'")
    set_cmd.add_argument("name", choices=_SETTING_NAMES)
    set_cmd.add_argument("value")
    config.add_parser("reset", help="Restore polling interval and fetch delay")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    db_path = Path(args.db_path)
    if args.command == "watch":
        app = FeedMonitorApp(db_path=db_path)
        try:
            asyncio.run(app.run())
        except KeyboardInterrupt:
            logging.getLogger(__name__).info("Stopped by user")
        return 0
    if args.command == "rules":
        return _run_rules(args, db_path, parser)
    return _run_config(args, db_path, parser)


def _actor_matcher(args: argparse.Namespace, parser: argparse.ArgumentParser) -> Actor | None:
    if args.actor_type is None:
        if args.actor_id:
            parser.error("--actor-id needs --actor-type user")
        return None
    if args.actor_type == "user":
        if not args.actor_id:
            parser.error("--actor-type user needs --actor-id")
        return UserActor(id=args.actor_id, name="", icon_url="", url="")
    if args.actor_type == "channel":
        return ChannelActor(id=args.actor_id or "", name="", icon_url="", url="")
    return UnknownActor()


def _run_rules(args: argparse.Namespace, db_path: Path, parser: argparse.ArgumentParser) -> int:
    engine = RuleEngine(db_path)
    try:
        if args.rules_command == "list":
            rules = engine.rules()
            if not rules:
                print("No rules, every activity is shown.")
            for rule in rules:
                print(format_rule(rule))
        elif args.rules_command == "add":
            spec = RuleSpec(
                action=args.action,
                actor=_actor_matcher(args, parser),
                kind=args.kind,
                content_type=args.content_type,
            )
            print(format_rule(engine.add(spec)))
        elif args.rules_command == "remove":
            engine.remove(args.rule_id)
        elif args.rules_command == "swap":
            engine.swap(args.first, args.second)
    except RuleNotFoundError as exc:
        print(exc, file=sys.stderr)
        return 1
    finally:
        engine.close()
    return 0


def _run_config(args: argparse.Namespace, db_path: Path, parser: argparse.ArgumentParser) -> int:
    settings = FeedSettings.open(db_path)
    try:
        if args.config_command == "set":
            _apply_setting(settings, args.name, args.value, parser)
        elif args.config_command == "reset":
            settings.reset_to_default()
        options = settings.load_options()
        polling = "off"
        if options.polling_interval is not None:
            polling = format_duration(options.polling_interval)
        print(f"polling-interval: {polling}")
        print(f"fetch-delay: {format_duration(options.fetch_delay, show_milliseconds=True)}")
        print(f"ttl: {format_duration(options.ttl)}")
        last_visible = settings.last_visible_timestamp
        if last_visible is not None:
            print(f"last-visible: {last_visible.isoformat()}")
    finally:
        settings.close()
    return 0


def _apply_setting(
    settings: FeedSettings, name: str, value: str, parser: argparse.ArgumentParser
) -> None:
    if name == "polling-interval" and value.strip().lower() in _DISABLED_VALUES:
        settings.set_polling_interval(None)
        return
    seconds = parse_seconds_setting(value, -1.0)
    if seconds < 0:
        parser.error(f"invalid duration: {value!r}")
    if name == "polling-interval":
        settings.set_polling_interval(seconds)
    elif name == "fetch-delay":
        settings.set_fetch_delay(seconds)
    else:
        settings.set_ttl(seconds)


if __name__ == "__main__":
    sys.exit(main())
