"""
Time-travel snapshot store for relgraph.

The SnapshotStore replays the raw event log into a fresh GraphEngine and
captures the whole graph at fixed event-time intervals. Captured graphs
are written to disk and looked up by the nearest capture time.

Snapshot format:
    <snapshot_dir>/graph_snapshot_<YYYY-MM-DDTHH-MM-SS-mmmZ>.json

Each file holds the sorted list of user dicts as of that instant.

Capture rules during replay:
    - after the first valid record, at its timestamp
    - before a record past the next interval boundary, at every boundary
      crossed (state up to and including that boundary)
    - after the last record, at its timestamp

first_snapshot_time and last_snapshot_time are the earliest and latest
capture instants of the last replay.

Invariants:
    - Records are deduplicated by (topic, partition, offset)
    - Records are replayed in (offset, partition) order with seq = offset
    - Snapshot files are written atomically
    - Unparseable records and timestamps are skipped with a warning

How to change safely:
    - Keep the file name format; lookups parse it back
    - Test lookups against snapshot directories written by older versions
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..graph.engine import DEFAULT_REFERRAL_POINT_DEPTH, GraphEngine
from ..graph.events import EventParseError, SequencedEvent, event_from_dict
from ..graph.types import PersistableUserNode
from ..storage.base import StoredEvent
from .backfill import PAGE_PATTERN, PAGES_SUBDIR, write_json_atomic

if TYPE_CHECKING:
    from .backfill import BackfillResult, EventLogBackfill

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 5000
SNAPSHOT_PREFIX = "graph_snapshot_"
SNAPSHOT_NAME_PATTERN = re.compile(
    r"^graph_snapshot_(\d{4}-\d{2}-\d{2})T(\d{2})-(\d{2})-(\d{2})-(\d{3})Z\.json$"
)


class SnapshotError(Exception):
    """A snapshot or page file could not be read."""

    pass


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 event timestamp into an aware UTC datetime.

    Returns:
        The timestamp, or None if missing or invalid
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_snapshot_name(at: datetime) -> str:
    """Build the filesystem-safe snapshot file name for an instant."""
    at = at.astimezone(timezone.utc)
    stamp = at.strftime("%Y-%m-%dT%H-%M-%S") + f"-{at.microsecond // 1000:03d}Z"
    return f"{SNAPSHOT_PREFIX}{stamp}.json"


def parse_snapshot_name(name: str) -> datetime | None:
    """Recover the capture instant from a snapshot file name."""
    match = SNAPSHOT_NAME_PATTERN.match(name)
    if not match:
        return None
    date, hh, mm, ss, ms = match.groups()
    return parse_timestamp(f"{date}T{hh}:{mm}:{ss}.{ms}+00:00")


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _to_ms(at: datetime) -> int:
    return (at - _EPOCH) // timedelta(milliseconds=1)


def _from_ms(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


@dataclass
class GraphSnapshot:
    """A captured graph loaded from disk."""

    taken_at: datetime
    path: Path
    users: list[PersistableUserNode] = field(default_factory=list)

    def by_name(self) -> dict[str, PersistableUserNode]:
        return {u.name: u for u in self.users}

    def __len__(self) -> int:
        return len(self.users)


@dataclass
class ReplayResult:
    """Result of a replay run.

    Attributes:
        records: Records handed to the replay
        duplicates: Records dropped as duplicates
        skipped: Records skipped for a bad payload or timestamp
        ingested: Records ingested into the engine
        applied: Records that changed graph state
        snapshots: Snapshot files written, in capture order
        first_record_time: Timestamp of the first ingested record
        last_record_time: Timestamp of the last ingested record
        elapsed_ms: Wall time of the replay
    """

    records: int = 0
    duplicates: int = 0
    skipped: int = 0
    ingested: int = 0
    applied: int = 0
    snapshots: list[Path] = field(default_factory=list)
    first_record_time: datetime | None = None
    last_record_time: datetime | None = None
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": self.records,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "ingested": self.ingested,
            "applied": self.applied,
            "snapshots": len(self.snapshots),
            "first_record_time": self.first_record_time.isoformat() if self.first_record_time else None,
            "last_record_time": self.last_record_time.isoformat() if self.last_record_time else None,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


def iter_page_records(pages_dir: str | Path) -> Iterator[StoredEvent]:
    """Yield stored events from every page file in name order.

    Raises:
        SnapshotError: If a page file is not valid JSON
    """
    pages_dir = Path(pages_dir)
    if not pages_dir.exists():
        return
    for path in sorted(p for p in pages_dir.iterdir() if PAGE_PATTERN.match(p.name)):
        try:
            items = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SnapshotError(f"Failed to read page {path}: {e}") from e
        for item in items:
            yield StoredEvent.from_dict(item)


class SnapshotStore:
    """Replays the event log into time-indexed graph snapshots.

    Example:
        >>> store = SnapshotStore("/var/lib/relgraph/snapshots")
        >>> store.replay_pages()
        >>> store.load_snapshot_by_date(datetime(2024, 1, 1, tzinfo=timezone.utc))
    """

    def __init__(
        self,
        snapshot_dir: str | Path,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        referral_point_depth: int = DEFAULT_REFERRAL_POINT_DEPTH,
    ) -> None:
        """Initialize the store.

        Args:
            snapshot_dir: Directory snapshots are written to and read from
            interval_ms: Event-time interval between boundary captures
            referral_point_depth: Depth used by the replay engine
        """
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.snapshot_dir = Path(snapshot_dir)
        self.interval_ms = interval_ms
        self.referral_point_depth = referral_point_depth
        self._first_snapshot_time: datetime | None = None
        self._last_snapshot_time: datetime | None = None

    @property
    def pages_dir(self) -> Path:
        return self.snapshot_dir / PAGES_SUBDIR

    @property
    def first_snapshot_time(self) -> datetime | None:
        return self._first_snapshot_time

    @property
    def last_snapshot_time(self) -> datetime | None:
        return self._last_snapshot_time

    def replay(self, records: Iterable[StoredEvent]) -> ReplayResult:
        """Replay raw events into a fresh engine, capturing snapshots.

        Args:
            records: Raw events in any order, possibly with duplicates

        Returns:
            ReplayResult describing the run
        """
        start = time.perf_counter()
        result = ReplayResult()
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)

        unique: dict[tuple[str, int, int], StoredEvent] = {}
        for record in records:
            result.records += 1
            key = (record.topic, record.partition, record.offset)
            if key in unique:
                result.duplicates += 1
                continue
            unique[key] = record
        ordered = sorted(unique.values(), key=lambda r: (r.offset, r.partition))

        engine = GraphEngine(referral_point_depth=self.referral_point_depth)
        next_boundary_ms: int | None = None

        for record in ordered:
            created_at = parse_timestamp(record.event_timestamp)
            if created_at is None:
                result.skipped += 1
                logger.warning(
                    "Skipping record with invalid timestamp",
                    extra={"offset": record.offset, "event_timestamp": record.event_timestamp},
                )
                continue
            try:
                event = event_from_dict(record.payload)
            except EventParseError as e:
                result.skipped += 1
                logger.warning(f"Skipping unparseable record: {e}", extra={"offset": record.offset})
                continue

            created_ms = _to_ms(created_at)
            if next_boundary_ms is not None:
                while created_ms > next_boundary_ms:
                    self._capture(engine, _from_ms(next_boundary_ms), result)
                    next_boundary_ms += self.interval_ms

            ingest = engine.ingest(SequencedEvent(event=event, seq=record.offset))
            result.ingested += 1
            if ingest.applied:
                result.applied += 1
            else:
                logger.debug("Event not applied", extra={"offset": record.offset, "type": event.type})

            if result.first_record_time is None:
                result.first_record_time = created_at
                self._capture(engine, created_at, result)
                next_boundary_ms = created_ms - (created_ms % self.interval_ms) + self.interval_ms
            result.last_record_time = created_at

        if result.last_record_time is not None:
            self._capture(engine, result.last_record_time, result)

        # Event times may run backwards in offset order
        taken = [parse_snapshot_name(path.name) for path in result.snapshots]
        self._first_snapshot_time = min(taken) if taken else None
        self._last_snapshot_time = max(taken) if taken else None

        result.elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info("Replay finished", extra=result.to_dict())
        return result

    def replay_pages(self, pages_dir: str | Path | None = None) -> ReplayResult:
        """Replay every backfill page.

        Args:
            pages_dir: Page directory, defaults to <snapshot_dir>/pages

        Raises:
            SnapshotError: If a page file cannot be read
        """
        read_start = time.perf_counter()
        records = list(iter_page_records(pages_dir or self.pages_dir))
        logger.info(
            "Read backfill pages",
            extra={"records": len(records), "read_ms": round((time.perf_counter() - read_start) * 1000, 2)},
        )
        return self.replay(records)

    async def bootstrap(self, backfill: EventLogBackfill) -> tuple[BackfillResult, ReplayResult]:
        """Sync pages from the event log, then replay them."""
        sync_start = time.perf_counter()
        synced = await backfill.sync()
        logger.info(
            "Sync finished",
            extra={"elapsed_ms": round((time.perf_counter() - sync_start) * 1000, 2)},
        )

        replayed = self.replay_pages(backfill.pages_dir)
        logger.info(
            "Bootstrap finished",
            extra={
                "first_snapshot_time": self._isoformat(self._first_snapshot_time),
                "last_snapshot_time": self._isoformat(self._last_snapshot_time),
            },
        )
        return synced, replayed

    def list_snapshots(self) -> list[tuple[datetime, Path]]:
        """List snapshots with parseable names, oldest first."""
        if not self.snapshot_dir.exists():
            return []

        snapshots = []
        for path in sorted(self.snapshot_dir.iterdir()):
            if not path.name.startswith(SNAPSHOT_PREFIX) or not path.name.endswith(".json"):
                continue
            taken_at = parse_snapshot_name(path.name)
            if taken_at is None:
                logger.warning("Skipping snapshot with invalid name", extra={"file": path.name})
                continue
            snapshots.append((taken_at, path))

        snapshots.sort(key=lambda s: s[0])
        return snapshots

    def nearest_snapshot(self, target: datetime) -> Path | None:
        """Find the snapshot captured closest to target.

        Ties go to the earlier snapshot.

        Returns:
            Path of the closest snapshot, or None if there are none
        """
        target = self._as_utc(target)
        snapshots = self.list_snapshots()
        if not snapshots:
            logger.warning("No snapshot files found", extra={"snapshot_dir": str(self.snapshot_dir)})
            return None

        closest: Path | None = None
        closest_diff: timedelta | None = None
        for taken_at, path in snapshots:
            diff = abs(taken_at - target)
            if closest_diff is None or diff < closest_diff:
                closest, closest_diff = path, diff
        return closest

    def load_snapshot(self, path: str | Path) -> GraphSnapshot:
        """Load one snapshot file.

        Raises:
            SnapshotError: If the file is missing, misnamed or corrupt
        """
        path = Path(path)
        taken_at = parse_snapshot_name(path.name)
        if taken_at is None:
            raise SnapshotError(f"Not a snapshot file name: {path.name}")
        try:
            items = json.loads(path.read_text(encoding="utf-8"))
            users = [PersistableUserNode.from_dict(item) for item in items]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise SnapshotError(f"Failed to read snapshot {path}: {e}") from e
        return GraphSnapshot(taken_at=taken_at, path=path, users=users)

    def load_snapshot_by_date(self, target: datetime) -> GraphSnapshot | None:
        """Load the snapshot closest to target, or None if there are none."""
        path = self.nearest_snapshot(target)
        if path is None or not path.exists():
            return None
        return self.load_snapshot(path)

    def _capture(self, engine: GraphEngine, at: datetime, result: ReplayResult) -> None:
        path = self.snapshot_dir / format_snapshot_name(at)
        users = engine.snapshot()
        write_json_atomic(path, [u.to_dict() for u in users])
        if path not in result.snapshots:
            result.snapshots.append(path)
        logger.debug("Snapshot saved", extra={"file": path.name, "users": len(users)})

    @staticmethod
    def _as_utc(at: datetime) -> datetime:
        if at.tzinfo is None:
            return at.replace(tzinfo=timezone.utc)
        return at.astimezone(timezone.utc)

    @staticmethod
    def _isoformat(at: datetime | None) -> str | None:
        return at.isoformat() if at else None
