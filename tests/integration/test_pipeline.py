"""
End-to-end tests: processor -> SQLite -> backfill -> replay -> leaderboard.

Tests cover:
- The Server lifecycle with an injected in-memory broker
- Fatal broker errors surfacing from Server.start()
- Time-travel snapshots built from what the processor persisted
"""

import asyncio
import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from relgraph_server.config import ServerConfig, SnapshotConfig, StorageConfig
from relgraph_server.main import Server
from relgraph_server.snapshot import EventLogBackfill, SnapshotStore, compute_leaderboard
from relgraph_server.storage import SqliteGateway
from relgraph_server.stream import BrokerFatalError, InMemoryBrokerClient
from relgraph_server.tools.snapshot_cli import SnapshotCLI

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def iso(at):
    return at.strftime("%Y-%m-%dT%H:%M:%S.") + f"{at.microsecond // 1000:03d}Z"


def event(kind, seconds, **fields):
    return json.dumps({"type": kind, "created_at": iso(T0 + timedelta(seconds=seconds)), **fields})


# Two intervals of activity: alice's referral tree grows early, carol's late.
EVENTS = [
    event("register", 0, name="alice"),
    event("register", 1, name="bob"),
    event("referral", 2, referredBy="alice", user="bob"),
    event("register", 3, name="carol"),
    event("addfriend", 4, user1_name="bob", user2_name="carol"),
    event("register", 6, name="dave"),
    event("referral", 7, referredBy="carol", user="dave"),
    event("register", 8, name="erin"),
    event("referral", 9, referredBy="dave", user="erin"),
    event("addfriend", 11, user1_name="alice", user2_name="erin"),
]


async def wait_for_ack(broker, topic, offset, timeout=5.0):
    assert await broker.wait_until_acknowledged(topic, 0, offset, timeout=timeout)


class TestPipeline:
    """End-to-end tests through the Server."""

    @pytest.fixture
    def workdir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def config(self, workdir):
        config = ServerConfig(
            storage=StorageConfig(data_dir=str(workdir / "data")),
            snapshot=SnapshotConfig(snapshot_dir=str(workdir / "snapshots"), page_size=4),
        )
        config.validate()
        return config

    @pytest.fixture
    def broker(self, config):
        broker = InMemoryBrokerClient(num_partitions=1, max_batch_size=3)
        for payload in EVENTS:
            broker.produce(config.kafka.topic, 0, payload)
        return broker

    async def run_server(self, config, broker):
        server = Server(config, broker=broker)
        task = asyncio.create_task(server.start())
        try:
            await wait_for_ack(broker, config.kafka.topic, len(EVENTS) - 1)
        finally:
            server.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await server.stop()
        return server

    @pytest.mark.asyncio
    async def test_server_processes_log(self, config, broker):
        """The server hydrates, consumes and persists until shutdown."""
        await self.run_server(config, broker)

        gateway = SqliteGateway(config.storage.data_dir)
        await gateway.connect()
        carol = await gateway.get_user("carol")

        assert carol.referrals == ("dave",)
        assert carol.referral_points == 2
        assert carol.friends == ("bob",)
        assert await gateway.get_checkpoint(config.kafka.topic, 0) == len(EVENTS) - 1
        assert await gateway.count_raw_events() == len(EVENTS)

    @pytest.mark.asyncio
    async def test_stop_waits_for_batch_in_flight(self, config):
        """Shutdown lets the current batch flush and checkpoint before closing."""
        broker = InMemoryBrokerClient()
        server = Server(config, broker=broker)
        task = asyncio.create_task(server.start())

        async def started():
            while server.processor is None or not server.processor.is_running:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(started(), timeout=2.0)

        entered = asyncio.Event()
        release = asyncio.Event()
        flush = server.gateway.upsert_users

        async def held_flush(nodes):
            entered.set()
            await release.wait()
            await flush(nodes)

        server.gateway.upsert_users = held_flush
        broker.produce(config.kafka.topic, 0, EVENTS[0])
        await asyncio.wait_for(entered.wait(), timeout=2.0)

        server.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)
        stopping = asyncio.create_task(server.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        release.set()
        await asyncio.wait_for(stopping, timeout=2.0)

        gateway = SqliteGateway(config.storage.data_dir)
        await gateway.connect()
        assert (await gateway.get_user("alice")) is not None
        assert await gateway.get_checkpoint(config.kafka.topic, 0) == 0

    @pytest.mark.asyncio
    async def test_server_exits_on_fatal_error(self, config):
        """A fatal consumer error propagates out of Server.start()."""
        broker = InMemoryBrokerClient()
        server = Server(config, broker=broker)
        task = asyncio.create_task(server.start())

        await asyncio.sleep(0.1)
        broker.inject_fatal(RuntimeError("broker unreachable"))

        with pytest.raises(BrokerFatalError):
            await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_time_travel_leaderboard(self, config, broker):
        """Snapshots rebuilt from the persisted log rank growth per window."""
        await self.run_server(config, broker)

        gateway = SqliteGateway(config.storage.data_dir)
        await gateway.connect()
        store = SnapshotStore(config.snapshot.snapshot_dir, interval_ms=config.snapshot.interval_ms)
        backfill = EventLogBackfill(gateway, store.pages_dir, page_size=config.snapshot.page_size)

        synced, replayed = await store.bootstrap(backfill)

        assert synced.pages_completed == 2
        assert replayed.applied == len(EVENTS)
        assert store.first_snapshot_time == T0
        assert store.last_snapshot_time == T0 + timedelta(seconds=11)
        assert [t - T0 for t, _ in store.list_snapshots()] == [
            timedelta(0),
            timedelta(seconds=5),
            timedelta(seconds=10),
            timedelta(seconds=11),
        ]

        earlier = store.load_snapshot_by_date(T0 + timedelta(seconds=5))
        later = store.load_snapshot_by_date(T0 + timedelta(seconds=11))
        board = compute_leaderboard(earlier.users, later.users, count=3)

        # carol gains 2 (dave, then erin via dave); dave gains 1; alice gains nothing.
        assert [(r.name, r.value) for r in board.referral_points] == [
            ("carol", 2),
            ("dave", 1),
            ("alice", 0),
        ]
        assert [(r.name, r.value) for r in board.network_strength] == [
            ("alice", 2),
            ("bob", 2),
            ("carol", 2),
        ]

    @pytest.mark.asyncio
    async def test_snapshot_cli_queries(self, config, broker):
        """The CLI facade answers nearest and leaderboard queries."""
        await self.run_server(config, broker)
        cli = SnapshotCLI(config)

        summary = await cli.bootstrap()
        nearest = cli.nearest(T0 + timedelta(seconds=6))
        board = cli.leaderboard(T0, T0 + timedelta(seconds=11), count=1)

        assert summary["backfill"]["events_written"] == len(EVENTS)
        assert nearest["taken_at"] == (T0 + timedelta(seconds=5)).isoformat()
        assert board["referral_points"] == [{"name": "carol", "value": 2}]
        assert board["start_snapshot"] == T0.isoformat()
