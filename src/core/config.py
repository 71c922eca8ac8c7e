"""
POS Cloud Sync Configuration

Centralized configuration for the event outbox and its delivery worker.
Values come from the environment (and a local .env file); keyword
overrides win so tests and embedding applications can tune everything.
"""

import os
import socket
from dataclasses import dataclass, field, replace
from typing import List

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class SyncConfig:
    """Configuration for the POS -> cloud outbox."""

    # Remote ingestion endpoint
    cloud_base_url: str = "http://localhost:8080"
    signing_secret: str = ""
    node_id: str = field(default_factory=socket.gethostname)
    http_timeout_seconds: float = 10.0

    # Queue bounds
    max_queue_size: int = 1000
    batch_size: int = 10
    max_attempts: int = 5

    # Scheduling and backoff
    interval_seconds: float = 30.0
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 3_600_000

    # Stale "processing" sweep
    processing_lease_seconds: int = 300
    reclaim_on_start: bool = True

    enabled: bool = True

    @classmethod
    def from_env(cls, **overrides) -> "SyncConfig":
        """Build a config from SYNC_* environment variables."""
        config = cls(
            cloud_base_url=os.getenv("SYNC_CLOUD_BASE_URL", "http://localhost:8080"),
            signing_secret=os.getenv("SYNC_SIGNING_SECRET", ""),
            node_id=os.getenv("SYNC_NODE_ID", socket.gethostname()),
            http_timeout_seconds=float(os.getenv("SYNC_HTTP_TIMEOUT_SECONDS", "10")),
            max_queue_size=int(os.getenv("SYNC_MAX_QUEUE_SIZE", "1000")),
            batch_size=int(os.getenv("SYNC_BATCH_SIZE", "10")),
            max_attempts=int(os.getenv("SYNC_MAX_ATTEMPTS", "5")),
            interval_seconds=float(os.getenv("SYNC_INTERVAL_SECONDS", "30")),
            base_backoff_ms=int(os.getenv("SYNC_BASE_BACKOFF_MS", "1000")),
            max_backoff_ms=int(os.getenv("SYNC_MAX_BACKOFF_MS", "3600000")),
            processing_lease_seconds=int(os.getenv("SYNC_PROCESSING_LEASE_SECONDS", "300")),
            reclaim_on_start=_env_bool("SYNC_RECLAIM_ON_START", "true"),
            enabled=_env_bool("SYNC_ENABLED", "true"),
        )
        return replace(config, **overrides) if overrides else config

    @property
    def ingest_url(self) -> str:
        return self.cloud_base_url.rstrip("/") + "/events/ingest"

    def validate(self) -> List[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.signing_secret:
            issues.append("WARNING: No signing secret configured (SYNC_SIGNING_SECRET)")

        if not self.cloud_base_url.startswith(("http://", "https://")):
            issues.append(f"ERROR: Invalid cloud base URL: {self.cloud_base_url}")

        if self.max_queue_size < 1:
            issues.append("ERROR: SYNC_MAX_QUEUE_SIZE must be at least 1")

        if self.batch_size < 1:
            issues.append("ERROR: SYNC_BATCH_SIZE must be at least 1")

        if self.max_attempts < 0:
            issues.append("ERROR: SYNC_MAX_ATTEMPTS must not be negative")

        if self.max_backoff_ms < self.base_backoff_ms:
            issues.append("ERROR: SYNC_MAX_BACKOFF_MS is smaller than SYNC_BASE_BACKOFF_MS")

        if self.interval_seconds <= 0:
            issues.append("ERROR: SYNC_INTERVAL_SECONDS must be positive")

        return issues
