"""Runtime configuration for discovery, execution, locking, and the queue worker."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

STRATEGY_NAMES = (
    "sequential",
    "batch",
    "transactional_batch",
    "allowed_to_fail_batch",
    "dependency_wave",
    "scheduled",
)


@dataclass(slots=True)
class DiscoverySettings:
    """Where task files live."""

    migration_paths: tuple[Path, ...] = (Path("migrations"),)
    operation_paths: tuple[Path, ...] = (Path("operations"),)


@dataclass(slots=True)
class ExecutionSettings:
    """Per-run execution policy."""

    strategy: str = "sequential"
    auto_transaction: bool = True
    record_errors: bool = True
    environment: str = "production"
    max_workers: int = 8
    executed_by: str | None = None
    target_db_url: str | None = None


@dataclass(slots=True)
class LockSettings:
    """Isolation lock settings."""

    name: str = "sequencer:process"
    timeout_seconds: float = 60.0
    ttl_seconds: int = 600


@dataclass(slots=True)
class QueueSettings:
    """Async dispatch and worker settings."""

    default_queue: str = "default"
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class GuardSettings:
    """Host allow-lists; empty means unrestricted."""

    allowed_hostnames: tuple[str, ...] = ()
    allowed_ips: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".sequencer.db")
    sqlite_busy_timeout_ms: int = 5_000
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    lock: LockSettings = field(default_factory=LockSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    guards: GuardSettings = field(default_factory=GuardSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SEQUENCER_DB_PATH", ".sequencer.db")),
            sqlite_busy_timeout_ms=int(os.getenv("SEQUENCER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            discovery=DiscoverySettings(
                migration_paths=_env_paths("SEQUENCER_MIGRATION_PATHS", default=("migrations",)),
                operation_paths=_env_paths("SEQUENCER_OPERATION_PATHS", default=("operations",)),
            ),
            execution=ExecutionSettings(
                strategy=os.getenv("SEQUENCER_STRATEGY", "sequential").strip().lower(),
                auto_transaction=_env_bool("SEQUENCER_AUTO_TRANSACTION", default=True),
                record_errors=_env_bool("SEQUENCER_RECORD_ERRORS", default=True),
                environment=os.getenv("SEQUENCER_ENVIRONMENT", "production").strip(),
                max_workers=int(os.getenv("SEQUENCER_MAX_WORKERS", "8")),
                executed_by=os.getenv("SEQUENCER_EXECUTED_BY") or None,
                target_db_url=os.getenv("SEQUENCER_TARGET_DB_URL") or None,
            ),
            lock=LockSettings(
                name=os.getenv("SEQUENCER_LOCK_NAME", "sequencer:process"),
                timeout_seconds=float(os.getenv("SEQUENCER_LOCK_TIMEOUT_SECONDS", "60")),
                ttl_seconds=int(os.getenv("SEQUENCER_LOCK_TTL_SECONDS", "600")),
            ),
            queue=QueueSettings(
                default_queue=os.getenv("SEQUENCER_QUEUE", "default"),
                poll_interval_seconds=float(
                    os.getenv("SEQUENCER_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
            ),
            guards=GuardSettings(
                allowed_hostnames=_env_csv("SEQUENCER_ALLOWED_HOSTNAMES"),
                allowed_ips=_env_csv("SEQUENCER_ALLOWED_IPS"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot work with."""

        if self.execution.strategy not in STRATEGY_NAMES:
            raise ValueError(
                f"Unknown SEQUENCER_STRATEGY {self.execution.strategy!r}. "
                f"Expected one of: {', '.join(STRATEGY_NAMES)}.",
            )
        if self.execution.max_workers <= 0:
            raise ValueError("SEQUENCER_MAX_WORKERS must be > 0.")
        if self.lock.timeout_seconds < 0:
            raise ValueError("SEQUENCER_LOCK_TIMEOUT_SECONDS must be >= 0.")
        if self.lock.ttl_seconds <= 0:
            raise ValueError("SEQUENCER_LOCK_TTL_SECONDS must be > 0.")
        if not self.lock.name.strip():
            raise ValueError("SEQUENCER_LOCK_NAME must not be empty.")
        if not self.queue.default_queue.strip():
            raise ValueError("SEQUENCER_QUEUE must not be empty.")
        if self.queue.poll_interval_seconds <= 0:
            raise ValueError("SEQUENCER_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SEQUENCER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.execution.target_db_url is not None and _same_sqlite_file(
            self.execution.target_db_url,
            self.db_path,
        ):
            raise ValueError(
                "SEQUENCER_TARGET_DB_URL must not point at the history database "
                "(SEQUENCER_DB_PATH).",
            )


def _same_sqlite_file(url: str, db_path: Path) -> bool:
    try:
        parsed = make_url(url)
    except ArgumentError as error:
        raise ValueError(f"Invalid SEQUENCER_TARGET_DB_URL: {url!r}") from error
    if parsed.get_backend_name() != "sqlite" or not parsed.database:
        return False
    return Path(parsed.database).resolve() == db_path.resolve()


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _env_paths(name: str, default: tuple[str, ...]) -> tuple[Path, ...]:
    values = _env_csv(name) or default
    return tuple(Path(value) for value in values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
