"""
Unit tests for EventLogBackfill.

Tests cover:
- Page naming and contents
- Progress meta file
- Resume after full pages
- Rewriting a trailing partial page
- Replaying pages through the SnapshotStore
"""

import json
import tempfile
from pathlib import Path

import pytest

from relgraph_server.snapshot import EventLogBackfill, SnapshotError, SnapshotStore
from relgraph_server.storage import InMemoryGateway, StoredEvent


def make_event(offset):
    second = offset % 60
    created_at = f"2024-01-01T00:00:{second:02d}.000Z"
    return StoredEvent(
        topic="events",
        partition=0,
        offset=offset,
        type="register",
        event_timestamp=created_at,
        ingested_at=created_at,
        payload={"type": "register", "name": f"user{offset:03d}", "created_at": created_at},
    )


class TestEventLogBackfill:
    """Tests for EventLogBackfill.sync()."""

    @pytest.fixture
    def snapshot_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    async def gateway(self):
        gw = InMemoryGateway()
        await gw.connect()
        return gw

    def page_names(self, backfill):
        return [p.name for p in backfill.page_files()]

    def test_rejects_bad_page_size(self, snapshot_dir):
        with pytest.raises(ValueError):
            EventLogBackfill(InMemoryGateway(), snapshot_dir / "pages", page_size=0)

    @pytest.mark.asyncio
    async def test_empty_log(self, gateway, snapshot_dir):
        """An empty log writes no pages."""
        backfill = EventLogBackfill(gateway, snapshot_dir / "pages", page_size=3)

        result = await backfill.sync()

        assert result.up_to_date
        assert result.total == 0
        assert self.page_names(backfill) == []

    @pytest.mark.asyncio
    async def test_writes_pages_and_meta(self, gateway, snapshot_dir):
        """Events are split into zero-padded pages; only full pages count."""
        await gateway.append_raw_events([make_event(i) for i in range(7)])
        backfill = EventLogBackfill(gateway, snapshot_dir / "pages", page_size=3)

        result = await backfill.sync()

        assert self.page_names(backfill) == [
            "page_000000000000_to_000000000002.json",
            "page_000000000003_to_000000000005.json",
            "page_000000000006_to_000000000006.json",
        ]
        assert result.events_written == 7
        assert result.pages_completed == 2
        assert backfill.load_meta() == {"total": 7, "pages": 2, "page_size": 3}

        page = json.loads(backfill.page_files()[0].read_text())
        assert [e["offset"] for e in page] == [0, 1, 2]
        assert page[0]["payload"]["name"] == "user000"

    @pytest.mark.asyncio
    async def test_nothing_to_do_when_in_sync(self, gateway, snapshot_dir):
        """A second run with no new full-page data writes nothing."""
        await gateway.append_raw_events([make_event(i) for i in range(6)])
        backfill = EventLogBackfill(gateway, snapshot_dir / "pages", page_size=3)
        await backfill.sync()

        result = await backfill.sync()

        assert result.up_to_date
        assert result.resumed_from == 6

    @pytest.mark.asyncio
    async def test_resume_rewrites_partial_page(self, gateway, snapshot_dir):
        """A trailing partial page is replaced once more events arrive."""
        await gateway.append_raw_events([make_event(i) for i in range(4)])
        backfill = EventLogBackfill(gateway, snapshot_dir / "pages", page_size=3)
        await backfill.sync()
        assert "page_000000000003_to_000000000003.json" in self.page_names(backfill)

        await gateway.append_raw_events([make_event(i) for i in range(4, 8)])
        result = await backfill.sync()

        assert result.resumed_from == 3
        assert self.page_names(backfill) == [
            "page_000000000000_to_000000000002.json",
            "page_000000000003_to_000000000005.json",
            "page_000000000006_to_000000000007.json",
        ]
        assert backfill.load_meta() == {"total": 8, "pages": 2, "page_size": 3}

    @pytest.mark.asyncio
    async def test_existing_page_size_wins(self, gateway, snapshot_dir):
        """Progress written with one page size is resumed with that size."""
        await gateway.append_raw_events([make_event(i) for i in range(4)])
        await EventLogBackfill(gateway, snapshot_dir / "pages", page_size=2).sync()

        await gateway.append_raw_events([make_event(i) for i in range(4, 6)])
        result = await EventLogBackfill(gateway, snapshot_dir / "pages", page_size=100).sync()

        assert result.page_size == 2
        assert result.resumed_from == 4
        assert result.pages_completed == 3

    @pytest.mark.asyncio
    async def test_unreadable_meta_restarts(self, gateway, snapshot_dir):
        """Corrupt progress is ignored and the backfill starts over."""
        pages_dir = snapshot_dir / "pages"
        pages_dir.mkdir()
        (pages_dir / "pages.meta.json").write_text("{oops")
        await gateway.append_raw_events([make_event(i) for i in range(2)])

        result = await EventLogBackfill(gateway, pages_dir, page_size=2).sync()

        assert result.resumed_from == 0
        assert result.pages_completed == 1

    @pytest.mark.asyncio
    async def test_bootstrap_replays_pages(self, gateway, snapshot_dir):
        """bootstrap() syncs pages and replays them into snapshots."""
        await gateway.append_raw_events([make_event(i) for i in range(12)])
        store = SnapshotStore(snapshot_dir, interval_ms=5000)
        backfill = EventLogBackfill(gateway, store.pages_dir, page_size=5)

        synced, replayed = await store.bootstrap(backfill)

        assert synced.events_written == 12
        assert replayed.records == 12
        assert replayed.applied == 12
        last = store.load_snapshot_by_date(store.last_snapshot_time)
        assert len(last) == 12

    def test_corrupt_page_raises(self, snapshot_dir):
        """A page that is not JSON stops the replay."""
        store = SnapshotStore(snapshot_dir)
        store.pages_dir.mkdir(parents=True)
        (store.pages_dir / "page_000000000000_to_000000000001.json").write_text("[{")

        with pytest.raises(SnapshotError):
            store.replay_pages()
