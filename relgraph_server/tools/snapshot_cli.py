"""
Snapshot CLI tool for relgraph.

This tool manages time-travel snapshots offline:
- backfill: Copy the raw event log from SQLite into page files
- replay: Rebuild graph snapshots from the page files
- bootstrap: backfill, then replay
- nearest: Show the snapshot closest to an instant
- leaderboard: Rank users between two instants

Usage:
    relgraph-snapshot bootstrap
    relgraph-snapshot nearest --at 2024-01-01T00:00:03.500Z
    relgraph-snapshot leaderboard --start 2024-01-01T00:00:00Z --end 2024-01-01T01:00:00Z --count 10

Results are printed to stdout as JSON; logs go to stderr.

Invariants:
    - Tools work offline (no running processor required)
    - backfill and replay are idempotent
    - Lookups that find nothing exit non-zero

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import datetime
from typing import Any

from ..config import ServerConfig
from ..main import setup_logging
from ..snapshot import (
    EventLogBackfill,
    SnapshotError,
    SnapshotStore,
    compute_leaderboard,
    parse_timestamp,
)
from ..storage import SqliteGateway

logger = logging.getLogger(__name__)

DEFAULT_LEADERBOARD_COUNT = 10


class SnapshotCLI:
    """CLI tool for snapshot management.

    Example:
        >>> cli = SnapshotCLI(ServerConfig())
        >>> cli.nearest(datetime(2024, 1, 1, tzinfo=timezone.utc))
        {'path': '...', 'taken_at': '...'}
    """

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.store = SnapshotStore(
            snapshot_dir=config.snapshot.snapshot_dir,
            interval_ms=config.snapshot.interval_ms,
            referral_point_depth=config.graph.referral_point_depth,
        )

    def _gateway(self) -> SqliteGateway:
        return SqliteGateway(
            data_dir=self.config.storage.data_dir,
            db_name=self.config.storage.db_name,
            wal_mode=self.config.storage.wal_mode,
            busy_timeout_ms=self.config.storage.busy_timeout_ms,
        )

    def _backfill(self, gateway: SqliteGateway) -> EventLogBackfill:
        return EventLogBackfill(
            gateway=gateway,
            pages_dir=self.store.pages_dir,
            page_size=self.config.snapshot.page_size,
        )

    async def backfill(self) -> dict[str, Any]:
        gateway = self._gateway()
        await gateway.connect()
        try:
            result = await self._backfill(gateway).sync()
        finally:
            await gateway.close()
        return result.to_dict()

    def replay(self) -> dict[str, Any]:
        return self.store.replay_pages().to_dict()

    async def bootstrap(self) -> dict[str, Any]:
        gateway = self._gateway()
        await gateway.connect()
        try:
            synced, replayed = await self.store.bootstrap(self._backfill(gateway))
        finally:
            await gateway.close()
        return {"backfill": synced.to_dict(), "replay": replayed.to_dict()}

    def nearest(self, at: datetime) -> dict[str, Any] | None:
        """Find the snapshot closest to an instant.

        Returns:
            Path and capture time, or None if there are no snapshots
        """
        path = self.store.nearest_snapshot(at)
        if path is None:
            return None
        snapshot = self.store.load_snapshot(path)
        return {
            "path": str(path),
            "taken_at": snapshot.taken_at.isoformat(),
            "users": len(snapshot),
        }

    def leaderboard(self, start: datetime, end: datetime, count: int) -> dict[str, Any] | None:
        """Rank users between the snapshots closest to start and end.

        Returns:
            Both rankings with the snapshots used, or None if either is missing
        """
        earlier = self.store.load_snapshot_by_date(start)
        later = self.store.load_snapshot_by_date(end)
        if earlier is None or later is None:
            return None

        board = compute_leaderboard(earlier.users, later.users, count)
        return {
            "start_snapshot": earlier.taken_at.isoformat(),
            "end_snapshot": later.taken_at.isoformat(),
            **board.to_dict(),
        }


def _instant(value: str) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 instant: {value!r}")
    return parsed


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid count: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError("count must be a positive number")
    return number


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def main() -> None:
    """CLI entry point for snapshot tool."""
    parser = argparse.ArgumentParser(description="relgraph snapshot and time-travel tool")
    parser.add_argument("--snapshot-dir", help="Snapshot directory (default: SNAPSHOT_DIR)")
    parser.add_argument("--data-dir", help="SQLite data directory (default: DATA_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("backfill", help="Copy the raw event log into page files")
    subparsers.add_parser("replay", help="Rebuild graph snapshots from page files")
    subparsers.add_parser("bootstrap", help="Backfill, then replay")

    nearest_parser = subparsers.add_parser("nearest", help="Show the snapshot closest to an instant")
    nearest_parser.add_argument("--at", required=True, type=_instant, help="ISO-8601 instant")

    leaderboard_parser = subparsers.add_parser("leaderboard", help="Rank users between two instants")
    leaderboard_parser.add_argument("--start", required=True, type=_instant, help="ISO-8601 start")
    leaderboard_parser.add_argument("--end", required=True, type=_instant, help="ISO-8601 end")
    leaderboard_parser.add_argument(
        "--count", type=_positive_int, default=DEFAULT_LEADERBOARD_COUNT, help="Entries per ranking"
    )

    args = parser.parse_args()

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.snapshot_dir:
        config.snapshot = replace(config.snapshot, snapshot_dir=args.snapshot_dir)
    if args.data_dir:
        config.storage = replace(config.storage, data_dir=args.data_dir)

    setup_logging(config)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    cli = SnapshotCLI(config)

    try:
        if args.command == "backfill":
            _print(asyncio.run(cli.backfill()))

        elif args.command == "replay":
            _print(cli.replay())

        elif args.command == "bootstrap":
            _print(asyncio.run(cli.bootstrap()))

        elif args.command == "nearest":
            found = cli.nearest(args.at)
            if found is None:
                print("No snapshots found", file=sys.stderr)
                sys.exit(1)
            _print(found)

        elif args.command == "leaderboard":
            board = cli.leaderboard(args.start, args.end, args.count)
            if board is None:
                print("One or both snapshots not found near given dates", file=sys.stderr)
                sys.exit(1)
            _print(board)

    except SnapshotError as e:
        print(f"Snapshot error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
