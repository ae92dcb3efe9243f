"""
Configuration management for relgraph.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda consumer configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic: Topic carrying relationship events
        group_id: Consumer group ID for the processor
        client_id: Client ID reported to the brokers
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        max_poll_records: Maximum records per fetch
        fetch_timeout_ms: How long one fetch waits for data
        session_timeout_ms: Group session timeout
        heartbeat_interval_ms: Group heartbeat interval
    """

    brokers: str = "localhost:19092"
    topic: str = "relationship-events"
    group_id: str = "relgraph-processor-v1"
    client_id: str = "relgraph-processor"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    max_poll_records: int = 500
    fetch_timeout_ms: int = 1000
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 3000

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:19092"),
            topic=os.getenv("KAFKA_TOPIC", "relationship-events"),
            group_id=os.getenv("KAFKA_GROUP_ID", "relgraph-processor-v1"),
            client_id=os.getenv("KAFKA_CLIENT_ID", "relgraph-processor"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            max_poll_records=int(os.getenv("KAFKA_MAX_POLL_RECORDS", "500")),
            fetch_timeout_ms=int(os.getenv("KAFKA_FETCH_TIMEOUT_MS", "1000")),
            session_timeout_ms=int(os.getenv("KAFKA_SESSION_TIMEOUT_MS", "30000")),
            heartbeat_interval_ms=int(os.getenv("KAFKA_HEARTBEAT_INTERVAL_MS", "3000")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_name: SQLite database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "./data"
    db_name: str = "relgraph.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "./data"),
            db_name=os.getenv("SQLITE_DB_NAME", "relgraph.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class GraphConfig:
    """Graph engine configuration.

    Attributes:
        referral_point_depth: Ancestors awarded a point for each new referral
    """

    referral_point_depth: int = 2

    @classmethod
    def from_env(cls) -> GraphConfig:
        return cls(referral_point_depth=int(os.getenv("REFERRAL_POINT_DEPTH", "2")))


@dataclass(frozen=True)
class ProcessorConfig:
    """Processor loop configuration.

    Attributes:
        resume: Start from stored checkpoints instead of the earliest offset
        stats_interval_seconds: Interval between throughput log lines
    """

    resume: bool = False
    stats_interval_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> ProcessorConfig:
        return cls(
            resume=_env_bool("RESUME", "false"),
            stats_interval_seconds=float(os.getenv("PROCESSOR_STATS_INTERVAL_SECONDS", "5")),
        )


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot backfill and replay configuration.

    Attributes:
        snapshot_dir: Directory for backfill pages and graph snapshots
        interval_ms: Event-time interval between captured snapshots
        page_size: Raw events per backfill page
    """

    snapshot_dir: str = "./snapshots"
    interval_ms: int = 5000
    page_size: int = 100_000

    @classmethod
    def from_env(cls) -> SnapshotConfig:
        return cls(
            snapshot_dir=os.getenv("SNAPSHOT_DIR", "./snapshots"),
            interval_ms=int(os.getenv("SNAPSHOT_INTERVAL_MS", "5000")),
            page_size=int(os.getenv("BACKFILL_PAGE_SIZE", "100000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete configuration.

    Attributes:
        kafka: Kafka configuration
        storage: Local storage configuration
        graph: Graph engine configuration
        processor: Processor configuration
        snapshot: Snapshot configuration
        observability: Logging configuration
    """

    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    processor: ProcessorConfig = field(default_factory=ProcessorConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            kafka=KafkaConfig.from_env(),
            storage=StorageConfig.from_env(),
            graph=GraphConfig.from_env(),
            processor=ProcessorConfig.from_env(),
            snapshot=SnapshotConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required")
        if not self.kafka.topic:
            raise ValueError("KAFKA_TOPIC is required")
        if self.graph.referral_point_depth < 0:
            raise ValueError("REFERRAL_POINT_DEPTH must be >= 0")
        if self.snapshot.interval_ms <= 0:
            raise ValueError("SNAPSHOT_INTERVAL_MS must be positive")
        if self.snapshot.page_size <= 0:
            raise ValueError("BACKFILL_PAGE_SIZE must be positive")
        if self.processor.stats_interval_seconds <= 0:
            raise ValueError("PROCESSOR_STATS_INTERVAL_SECONDS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be json or text")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Configuration loaded",
            extra={
                "kafka_brokers": self.kafka.brokers,
                "kafka_topic": self.kafka.topic,
                "kafka_group_id": self.kafka.group_id,
                "data_dir": self.storage.data_dir,
                "resume": self.processor.resume,
                "referral_point_depth": self.graph.referral_point_depth,
                "snapshot_dir": self.snapshot.snapshot_dir,
                "snapshot_interval_ms": self.snapshot.interval_ms,
                "log_level": self.observability.log_level,
            },
        )
