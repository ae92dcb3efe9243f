"""
Unit tests for environment-driven configuration.
"""

import pytest

from relgraph_server.config import (
    KafkaConfig,
    ProcessorConfig,
    ServerConfig,
    SnapshotConfig,
)

ENV_VARS = [
    "KAFKA_BROKERS",
    "KAFKA_TOPIC",
    "KAFKA_GROUP_ID",
    "KAFKA_MAX_POLL_RECORDS",
    "RESUME",
    "PROCESSOR_STATS_INTERVAL_SECONDS",
    "REFERRAL_POINT_DEPTH",
    "SNAPSHOT_DIR",
    "SNAPSHOT_INTERVAL_MS",
    "BACKFILL_PAGE_SIZE",
    "LOG_FORMAT",
    "DATA_DIR",
]


class TestServerConfig:
    """Tests for ServerConfig.from_env()."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch, tmp_path):
        for name in ENV_VARS:
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("DATA_DIR", str(tmp_path))

    def test_defaults(self):
        config = ServerConfig.from_env()

        assert config.kafka.brokers == "localhost:19092"
        assert config.processor.resume is False
        assert config.processor.stats_interval_seconds == 5.0
        assert config.graph.referral_point_depth == 2
        assert config.snapshot.interval_ms == 5000
        assert config.snapshot.page_size == 100_000
        assert config.observability.log_format == "json"

    @pytest.mark.parametrize("value,expected", [("1", True), ("true", True), ("0", False), ("", False)])
    def test_resume_flag(self, monkeypatch, value, expected):
        monkeypatch.setenv("RESUME", value)

        assert ProcessorConfig.from_env().resume is expected

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("KAFKA_BROKERS", "redpanda:9092")
        monkeypatch.setenv("KAFKA_TOPIC", "relationships")
        monkeypatch.setenv("KAFKA_MAX_POLL_RECORDS", "50")
        monkeypatch.setenv("SNAPSHOT_DIR", "/tmp/snaps")
        monkeypatch.setenv("SNAPSHOT_INTERVAL_MS", "1000")

        kafka = KafkaConfig.from_env()
        snapshot = SnapshotConfig.from_env()

        assert kafka.brokers == "redpanda:9092"
        assert kafka.topic == "relationships"
        assert kafka.max_poll_records == 50
        assert snapshot.snapshot_dir == "/tmp/snaps"
        assert snapshot.interval_ms == 1000

    @pytest.mark.parametrize(
        "name,value",
        [
            ("KAFKA_BROKERS", ""),
            ("REFERRAL_POINT_DEPTH", "-1"),
            ("SNAPSHOT_INTERVAL_MS", "0"),
            ("BACKFILL_PAGE_SIZE", "0"),
            ("LOG_FORMAT", "xml"),
        ],
    )
    def test_invalid_values_rejected(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ValueError):
            ServerConfig.from_env()

    def test_configs_are_frozen(self):
        config = KafkaConfig()

        with pytest.raises(AttributeError):
            config.topic = "other"
