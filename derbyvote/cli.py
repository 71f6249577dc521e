"""Administrator command line.

Usage:
    derbyvote results
    derbyvote ties
    derbyvote override 3 12 "coin flip"
    derbyvote push --url http://derbynet.local/derbynet
"""

import argparse
import json
import sys
from dataclasses import asdict, is_dataclass
from typing import Any

from derbyvote.config import load_config
from derbyvote.derbynet import DerbyNetClient, DerbyNetSync
from derbyvote.errors import DerbyVoteError
from derbyvote.log import setup_logging
from derbyvote.overrides import OverrideManager
from derbyvote.results import ResultsService
from derbyvote.seed import generate_voter_codes, seed_mock_data
from derbyvote.settings import SettingsProvider
from derbyvote.store import open_store


def _to_json(value: Any) -> Any:
    if isinstance(value, list):
        return [_to_json(v) for v in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value):
        return asdict(value)
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="derbyvote", description=__doc__.splitlines()[0])
    parser.add_argument("--database", help="Store URL (overrides DERBYVOTE_DATABASE)")
    parser.add_argument("--log-level", help="Logging level (overrides DERBYVOTE_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("results", help="Vote counts per category")
    sub.add_parser("winners", help="Effective winner per category")
    sub.add_parser("ties", help="Categories tied for first place")
    sub.add_parser("multi-wins", help="Cars winning more than their group allows")
    sub.add_parser("settings", help="Show voting settings")

    p = sub.add_parser("override", help="Force the winner of a category")
    p.add_argument("category_id", type=int)
    p.add_argument("car_id", type=int)
    p.add_argument("reason")

    p = sub.add_parser("clear-override", help="Remove a forced winner")
    p.add_argument("category_id", type=int)

    sub.add_parser("open", help="Open voting")
    sub.add_parser("close", help="Close voting")
    p = sub.add_parser("timer", help="Open voting with a countdown")
    p.add_argument("minutes", type=int)

    for name, help_text in [
        ("push", "Push winners to DerbyNet"),
        ("sync-cars", "Pull racers from DerbyNet"),
        ("sync-categories", "Pull awards from DerbyNet"),
    ]:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--url", help="DerbyNet root URL")

    p = sub.add_parser("seed", help="Create mock cars and categories")
    p.add_argument("--cars", type=int, default=12)

    p = sub.add_parser("voter-codes", help="Pre-register voter codes")
    p.add_argument("count", type=int)

    return parser


def run(args: argparse.Namespace) -> Any:
    config = load_config()
    setup_logging(args.log_level or config.log_level)
    store = open_store(args.database or config.database)
    try:
        settings = SettingsProvider(store)
        results = ResultsService(store, settings)
        overrides = OverrideManager(store, settings=settings)
        command = args.command

        if command == "results":
            return results.get_results()
        if command == "winners":
            return results.get_winners()
        if command == "ties":
            return results.detect_ties()
        if command == "multi-wins":
            return results.detect_multi_wins()
        if command == "settings":
            return settings.all_settings()
        if command == "override":
            overrides.set_override(args.category_id, args.car_id, args.reason)
            return {"status": "ok"}
        if command == "clear-override":
            overrides.clear_override(args.category_id)
            return {"status": "ok"}
        if command == "open":
            settings.open_voting()
            return settings.all_settings()
        if command == "close":
            settings.close_voting()
            return settings.all_settings()
        if command == "timer":
            return {"close_time": settings.start_voting_timer(args.minutes)}
        if command == "seed":
            return seed_mock_data(store, args.cars)
        if command == "voter-codes":
            return {"codes": generate_voter_codes(store, args.count)}

        url = args.url or settings.get("derbynet_url") or config.derbynet_url
        with DerbyNetClient(url, timeout=config.derbynet_timeout) as client:
            sync = DerbyNetSync(store, settings, client, results)
            if command == "push":
                return sync.push_winners(url)
            if command == "sync-cars":
                return sync.sync_cars(url)
            return sync.sync_categories(url)
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        output = run(args)
    except (DerbyVoteError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(json.dumps(_to_json(output), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
