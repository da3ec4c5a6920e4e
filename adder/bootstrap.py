"""Bootstrap module for the member-adding engine.

Central responsibilities:
- Load and validate settings from environment (.env supported by the Settings class)
- Configure structured logging (structlog + stdout, rotating file, daily activity file)
- Build the messaging client, connection monitor, state store and batch processor
- Expose Prometheus metric instruments (counters, gauges, histograms)

Design notes:
- Heavy or optional collaborators (real messaging client) are imported lazily
- bootstrap() is idempotent; the context is a process-wide singleton guarded by a lock
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, TYPE_CHECKING
import asyncio
import importlib
import logging
from logging.handlers import RotatingFileHandler
import sys
import time

import structlog
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from prometheus_client import Counter, Histogram, Gauge

if TYPE_CHECKING:  # pragma: no cover
    from .client import ConnectionMonitor, MessagingClient
    from .processor import BatchProcessor
    from .store import JsonStateStore

# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

class Settings(BaseSettings):
    """Application settings loaded from environment.

    Defaults mirror the conservative limits the engine ships with; every value
    can be overridden through the matching environment variable.
    """

    app_name: str = Field("group-member-adder", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file: str | None = Field(None, alias="LOG_FILE")
    log_max_bytes: int = Field(2_000_000, alias="LOG_MAX_BYTES")  # ~2MB
    log_backup_count: int = Field(5, alias="LOG_BACKUP_COUNT")
    # Per-day activity logs (YYYY-MM-DD.log), read back by /api/logs
    log_dir: str = Field("data/logs", alias="LOG_DIR")

    # Persisted state records (stats, failures, batch)
    data_dir: str = Field("data", alias="DATA_DIR")

    # Quotas
    daily_limit: int = Field(20000, alias="DAILY_LIMIT")
    hourly_limit: int = Field(1000, alias="HOURLY_LIMIT")
    max_batch_size: int = Field(1000, alias="MAX_BATCH_SIZE")

    # Pacing (seconds)
    min_delay_seconds: int = Field(30, alias="MIN_DELAY")
    max_delay_seconds: int = Field(90, alias="MAX_DELAY")
    batch_cooldown_seconds: int = Field(300, alias="BATCH_COOLDOWN")
    pattern_variation_enabled: bool = Field(True, alias="PATTERN_VARIATION")

    # Protection
    failure_threshold: int = Field(10, alias="FAILURE_THRESHOLD")
    circuit_breaker_timeout_seconds: int = Field(1800, alias="CIRCUIT_BREAKER_TIMEOUT")

    # Messaging client: "package.module:factory" called as factory(settings, monitor)
    messaging_client: str | None = Field(None, alias="MESSAGING_CLIENT")
    mock_mode: bool = Field(False, alias="MOCK_MODE")

    # API server
    app_host: str = Field("127.0.0.1", alias="APP_HOST")
    app_port: int = Field(8000, alias="APP_PORT")
    enable_metrics: bool = Field(True, alias="ENABLE_METRICS")
    quiet_startup: bool = Field(False, alias="QUIET_STARTUP")

    @field_validator(
        "daily_limit",
        "hourly_limit",
        "max_batch_size",
        "failure_threshold",
        "circuit_breaker_timeout_seconds",
    )
    @classmethod
    def _positive(cls, v: int) -> int:  # noqa: D401
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("min_delay_seconds", "max_delay_seconds", "batch_cooldown_seconds")
    @classmethod
    def _non_negative(cls, v: int) -> int:  # noqa: D401
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @model_validator(mode="after")
    def _delay_window(self) -> "Settings":
        if self.min_delay_seconds > self.max_delay_seconds:
            raise ValueError("MIN_DELAY must not exceed MAX_DELAY")
        return self

    # Pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


# ------------------------------------------------------------
# Logging configuration (structlog)
# ------------------------------------------------------------

def configure_logging(level: str = "INFO", settings: Settings | None = None) -> None:
    """Configure structured logging with structlog.

    Events are rendered to JSON by structlog and handed to the stdlib root
    logger, which fans them out to stdout, the optional rotating LOG_FILE and
    the per-day activity file under LOG_DIR.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    def redact_sensitive(logger, method_name, event_dict):  # noqa: D401
        """Shallow redaction of credentials that end up in log context."""
        sensitive_keys = {"password", "pass", "pwd", "authorization", "cookie", "token", "session"}

        def _scrub(value):
            if isinstance(value, dict):
                out = {}
                for k, v in value.items():
                    ks = str(k).lower()
                    if ks in sensitive_keys or any(sk in ks for sk in ("token", "password", "secret")):
                        out[k] = "[REDACTED]"
                    else:
                        out[k] = _scrub(v)
                return out
            if isinstance(value, (list, tuple)):
                return [_scrub(v) for v in value]
            return value

        return _scrub(event_dict)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            timestamper,
            structlog.processors.add_log_level,
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(stream_handler)

    if settings and settings.log_file:
        try:
            log_path = Path(settings.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            handlers.append(file_handler)
        except OSError as e:  # pragma: no cover
            print(f"Failed to set file handler: {e}", file=sys.stderr)

    if settings and settings.log_dir:
        from .activity_log import DailyActivityHandler

        try:
            activity_handler = DailyActivityHandler(settings.log_dir)
            activity_handler.setFormatter(logging.Formatter("%(message)s"))
            handlers.append(activity_handler)
        except OSError as e:  # pragma: no cover
            print(f"Failed to set activity log handler: {e}", file=sys.stderr)

    root = logging.getLogger()
    for old in root.handlers:
        if old not in handlers:
            old.close()
    root.handlers = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


# ------------------------------------------------------------
# Metrics instruments
# ------------------------------------------------------------
MEMBER_ADDITIONS_TOTAL = Counter(
    "member_additions_total", "Per-item outcomes of add attempts", labelnames=("outcome",)
)
MEMBER_BATCHES_TOTAL = Counter(
    "member_batches_total", "Batches by terminal outcome", labelnames=("outcome",)
)
INTER_ITEM_DELAY_SECONDS = Histogram(
    "inter_item_delay_seconds",
    "Computed wait between two additions",
    buckets=(15, 30, 45, 60, 90, 120, 180, 240, 300, 600),
)
CIRCUIT_BREAKER_TRIPS_TOTAL = Counter(
    "circuit_breaker_trips_total", "Times protection mode was entered", labelnames=("reason",)
)
PROTECTION_ACTIVE = Gauge(
    "protection_active", "1 while the circuit breaker is tripped"
)
ADDED_TODAY = Gauge(
    "members_added_today", "Members added since the last daily reset"
)
PROVIDER_RETRIES_TOTAL = Counter(
    "provider_retries_total", "Retried messaging-client calls", labelnames=("operation",)
)


# ------------------------------------------------------------
# Application context
# ------------------------------------------------------------
@dataclass(slots=True)
class AppContext:
    settings: Settings
    logger: structlog.BoundLogger
    store: "JsonStateStore"
    monitor: "ConnectionMonitor"
    client: "MessagingClient"
    processor: "BatchProcessor"


_context_singleton: Optional[AppContext] = None
_context_lock = asyncio.Lock()


# ------------------------------------------------------------
# Initialization helpers
# ------------------------------------------------------------
def load_client(settings: Settings, monitor: "ConnectionMonitor", logger: Any = None) -> "MessagingClient":
    """Instantiate the messaging client named by MESSAGING_CLIENT.

    Falls back to the in-process mock when MOCK_MODE is set or no client is
    configured. A configured path that cannot be imported is an error.
    """
    logger = logger or structlog.get_logger(__name__)
    if settings.mock_mode or not settings.messaging_client:
        from .mock_client import MockMessagingClient

        if not settings.mock_mode:
            logger.warning("messaging_client_unset_using_mock")
        client = MockMessagingClient()
        monitor.mark_connected()
        return client

    module_name, _, attr = settings.messaging_client.partition(":")
    if not module_name or not attr:
        raise ValueError("MESSAGING_CLIENT must look like 'package.module:factory'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    client = factory(settings, monitor)
    logger.info("messaging_client_loaded", client=settings.messaging_client)
    return client


async def bootstrap(force: bool = False) -> AppContext:
    """Create (or return existing) application context.

    Args:
        force: Recreate the context even if already initialized (tests, config reloads).
    """
    global _context_singleton
    if _context_singleton and not force:
        return _context_singleton

    async with _context_lock:
        if _context_singleton and not force:
            return _context_singleton

        settings = Settings()  # Loads from env automatically
        configure_logging(settings.log_level, settings)
        logger = structlog.get_logger().bind(component="bootstrap")

        t0 = time.perf_counter()
        # Lazy imports: these modules pull metrics from this one
        from .client import ConnectionMonitor
        from .processor import BatchProcessor
        from .state import SafetyConfig
        from .store import JsonStateStore

        store = JsonStateStore(settings.data_dir)
        monitor = ConnectionMonitor()
        client = load_client(settings, monitor, logger)
        processor = BatchProcessor(
            SafetyConfig.from_settings(settings),
            store,
            client,
            monitor,
        )
        elapsed = time.perf_counter() - t0

        ctx = AppContext(
            settings=settings,
            logger=logger.bind(subsystem="core"),
            store=store,
            monitor=monitor,
            client=client,
            processor=processor,
        )
        log_method = logger.debug if settings.quiet_startup else logger.info
        log_method(
            "bootstrap_complete",
            elapsed=f"{elapsed:.3f}s",
            data_dir=settings.data_dir,
            mock_mode=settings.mock_mode or not settings.messaging_client,
            daily_limit=settings.daily_limit,
            hourly_limit=settings.hourly_limit,
        )
        _context_singleton = ctx
        return ctx


# ------------------------------------------------------------
# Helper accessors
# ------------------------------------------------------------
async def get_context() -> AppContext:
    """Public accessor for the global application context."""
    return await bootstrap()


def reset_context() -> None:
    """Forget the current context so the next bootstrap() rebuilds it."""
    global _context_singleton
    _context_singleton = None
