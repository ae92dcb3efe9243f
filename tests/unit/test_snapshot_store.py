"""
Unit tests for the time-travel SnapshotStore.

Tests cover:
- Snapshot file naming and parsing
- Replay ordering, deduplication and skipping of bad records
- Capture rules (first record, interval boundaries, last record)
- Nearest-snapshot lookup and loading
- Coverage bounds
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from relgraph_server.graph.types import PersistableUserNode
from relgraph_server.snapshot import (
    SnapshotError,
    SnapshotStore,
    format_snapshot_name,
    parse_snapshot_name,
    parse_timestamp,
)
from relgraph_server.storage import StoredEvent

T0 = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def iso(at):
    return at.strftime("%Y-%m-%dT%H:%M:%S.") + f"{at.microsecond // 1000:03d}Z"


def record(offset, payload, at, partition=0, topic="events"):
    return StoredEvent(
        topic=topic,
        partition=partition,
        offset=offset,
        type=payload.get("type", ""),
        event_timestamp=iso(at) if isinstance(at, datetime) else at,
        ingested_at=iso(at) if isinstance(at, datetime) else "",
        payload=payload,
    )


def reg(offset, name, at, **kwargs):
    return record(offset, {"type": "register", "name": name, "created_at": iso(at)}, at, **kwargs)


def ref(offset, parent, child, at):
    return record(
        offset,
        {"type": "referral", "referredBy": parent, "user": child, "created_at": iso(at)},
        at,
    )


def write_snapshot(directory, at, users=()):
    path = Path(directory) / format_snapshot_name(at)
    path.write_text(json.dumps([u.to_dict() for u in users]))
    return path


class TestSnapshotNames:
    """Tests for snapshot file name helpers."""

    def test_format(self):
        at = datetime(2024, 3, 5, 7, 8, 9, 123000, tzinfo=timezone.utc)
        assert format_snapshot_name(at) == "graph_snapshot_2024-03-05T07-08-09-123Z.json"

    def test_parse_roundtrip(self):
        at = datetime(2024, 3, 5, 7, 8, 9, 123000, tzinfo=timezone.utc)
        assert parse_snapshot_name(format_snapshot_name(at)) == at

    @pytest.mark.parametrize(
        "name",
        [
            "graph_snapshot_garbage.json",
            "graph_snapshot_2024-13-40T99-00-00-000Z.json",
            "other_2024-01-01T00-00-00-000Z.json",
            "graph_snapshot_2024-01-01T00-00-00-000Z.txt",
        ],
    )
    def test_parse_invalid(self, name):
        assert parse_snapshot_name(name) is None

    def test_parse_timestamp(self):
        assert parse_timestamp("2024-01-01T00:00:05.000Z") == T0 + timedelta(seconds=5)
        assert parse_timestamp("2024-01-01T01:00:00+01:00") == T0
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None


class TestReplay:
    """Tests for SnapshotStore.replay()."""

    @pytest.fixture
    def snapshot_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, snapshot_dir):
        return SnapshotStore(snapshot_dir, interval_ms=5000)

    def snapshot_names(self, store):
        return [path.name for _, path in store.list_snapshots()]

    def test_empty_replay(self, store):
        """Replaying nothing captures nothing."""
        result = store.replay([])

        assert result.snapshots == []
        assert store.first_snapshot_time is None
        assert store.last_snapshot_time is None

    def test_captures_first_boundaries_and_last(self, store):
        """Snapshots are taken at the first record, each boundary and the last record."""
        records = [
            reg(0, "alice", T0 + timedelta(seconds=1)),
            reg(1, "bob", T0 + timedelta(seconds=3)),
            reg(2, "carol", T0 + timedelta(seconds=12)),
        ]

        result = store.replay(records)

        assert self.snapshot_names(store) == [
            "graph_snapshot_2024-01-01T00-00-01-000Z.json",
            "graph_snapshot_2024-01-01T00-00-05-000Z.json",
            "graph_snapshot_2024-01-01T00-00-10-000Z.json",
            "graph_snapshot_2024-01-01T00-00-12-000Z.json",
        ]
        assert len(result.snapshots) == 4
        assert result.applied == 3

    def test_boundary_snapshot_excludes_crossing_record(self, store):
        """A boundary capture holds the state before the crossing record."""
        store.replay(
            [
                reg(0, "alice", T0 + timedelta(seconds=1)),
                reg(1, "bob", T0 + timedelta(seconds=6)),
            ]
        )

        first = store.load_snapshot_by_date(T0 + timedelta(seconds=1))
        boundary = store.load_snapshot_by_date(T0 + timedelta(seconds=5))
        last = store.load_snapshot_by_date(T0 + timedelta(seconds=6))

        assert [u.name for u in first.users] == ["alice"]
        assert [u.name for u in boundary.users] == ["alice"]
        assert boundary.taken_at == T0 + timedelta(seconds=5)
        assert [u.name for u in last.users] == ["alice", "bob"]

    def test_boundary_snapshot_includes_record_on_boundary(self, store):
        """A record stamped exactly on a boundary belongs to that boundary's capture."""
        store.replay(
            [
                reg(0, "alice", T0 + timedelta(seconds=1)),
                reg(1, "bob", T0 + timedelta(seconds=5)),
                reg(2, "carol", T0 + timedelta(seconds=7)),
            ]
        )

        boundary = store.load_snapshot_by_date(T0 + timedelta(seconds=5))

        assert boundary.taken_at == T0 + timedelta(seconds=5)
        assert [u.name for u in boundary.users] == ["alice", "bob"]
        assert self.snapshot_names(store) == [
            "graph_snapshot_2024-01-01T00-00-01-000Z.json",
            "graph_snapshot_2024-01-01T00-00-05-000Z.json",
            "graph_snapshot_2024-01-01T00-00-07-000Z.json",
        ]

    def test_coverage_bounds_with_out_of_order_times(self, store):
        """Bounds span the earliest and latest capture even when event times run backwards."""
        store.replay(
            [
                reg(0, "alice", T0 + timedelta(seconds=7)),
                reg(1, "bob", T0 + timedelta(seconds=2)),
            ]
        )

        assert store.first_snapshot_time == T0 + timedelta(seconds=2)
        assert store.last_snapshot_time == T0 + timedelta(seconds=7)

    def test_sets_coverage_bounds(self, store):
        """Replay records the first and last record times."""
        store.replay(
            [
                reg(0, "alice", T0),
                reg(1, "bob", T0 + timedelta(seconds=7)),
            ]
        )

        assert store.first_snapshot_time == T0
        assert store.last_snapshot_time == T0 + timedelta(seconds=7)

    def test_orders_by_offset_and_deduplicates(self, store):
        """Records replay in offset order; duplicates are dropped."""
        at = T0 + timedelta(seconds=1)
        records = [
            ref(2, "alice", "bob", at),
            reg(1, "bob", at),
            reg(0, "alice", at),
            reg(0, "alice", at),
        ]

        result = store.replay(records)

        assert result.duplicates == 1
        assert result.applied == 3
        last = store.load_snapshot_by_date(at)
        users = last.by_name()
        assert users["bob"].referred_by == "alice"
        assert users["alice"].referral_points == 1

    def test_skips_invalid_timestamp_and_payload(self, store):
        """Records with a bad timestamp or payload are skipped."""
        records = [
            reg(0, "alice", T0),
            record(1, {"type": "register", "name": "bob"}, "yesterday"),
            record(2, {"type": "register"}, T0 + timedelta(seconds=1)),
            reg(3, "carol", T0 + timedelta(seconds=2)),
        ]

        result = store.replay(records)

        assert result.skipped == 2
        assert result.ingested == 2
        last = store.load_snapshot_by_date(T0 + timedelta(seconds=2))
        assert [u.name for u in last.users] == ["alice", "carol"]

    def test_snapshot_files_are_sorted_user_lists(self, store):
        """Snapshot files hold user dicts sorted by name."""
        store.replay([reg(0, "zed", T0), reg(1, "amy", T0)])

        path = store.nearest_snapshot(T0)
        data = json.loads(path.read_text())

        assert [u["name"] for u in data] == ["amy", "zed"]
        assert not list(Path(store.snapshot_dir).glob("*.tmp"))


class TestLookup:
    """Tests for nearest-snapshot lookup."""

    @pytest.fixture
    def snapshot_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, snapshot_dir):
        return SnapshotStore(snapshot_dir)

    def test_no_snapshots(self, store):
        assert store.nearest_snapshot(T0) is None
        assert store.load_snapshot_by_date(T0) is None

    def test_nearest(self, store, snapshot_dir):
        """Lookup picks the capture with the smallest distance."""
        early = write_snapshot(snapshot_dir, T0)
        late = write_snapshot(snapshot_dir, T0 + timedelta(seconds=5))

        assert store.nearest_snapshot(T0 + timedelta(seconds=2)) == early
        assert store.nearest_snapshot(T0 + timedelta(milliseconds=3500)) == late
        assert store.nearest_snapshot(T0 - timedelta(days=1)) == early
        assert store.nearest_snapshot(T0 + timedelta(days=1)) == late

    def test_tie_goes_to_earlier(self, store, snapshot_dir):
        early = write_snapshot(snapshot_dir, T0)
        write_snapshot(snapshot_dir, T0 + timedelta(seconds=5))

        assert store.nearest_snapshot(T0 + timedelta(milliseconds=2500)) == early

    def test_naive_target_is_utc(self, store, snapshot_dir):
        late = write_snapshot(snapshot_dir, T0 + timedelta(seconds=5))

        assert store.nearest_snapshot(datetime(2024, 1, 1, 0, 0, 4)) == late

    def test_invalid_names_skipped(self, store, snapshot_dir):
        """Files with unparseable names are ignored."""
        (Path(snapshot_dir) / "graph_snapshot_broken.json").write_text("[]")
        (Path(snapshot_dir) / "notes.txt").write_text("hello")
        valid = write_snapshot(snapshot_dir, T0)

        assert [p for _, p in store.list_snapshots()] == [valid]
        assert store.nearest_snapshot(T0 + timedelta(hours=1)) == valid

    def test_load_snapshot_by_date(self, store, snapshot_dir):
        user = PersistableUserNode(
            name="alice",
            created_at=iso(T0),
            referred_by=None,
            referrals=("bob",),
            friends=(),
            referral_points=1,
            last_seq=3,
            referrals_count=1,
            friends_count=0,
        )
        write_snapshot(snapshot_dir, T0, [user])

        snapshot = store.load_snapshot_by_date(T0 + timedelta(seconds=1))

        assert snapshot.taken_at == T0
        assert snapshot.users == [user]

    def test_corrupt_snapshot_raises(self, store, snapshot_dir):
        path = Path(snapshot_dir) / format_snapshot_name(T0)
        path.write_text("{not json")

        with pytest.raises(SnapshotError):
            store.load_snapshot(path)
