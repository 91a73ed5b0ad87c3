import os
import time
import logging
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, start_http_server

# Simple metrics configuration (no multiprocess)
_gauge_kwargs = {}


# ----------
# Bulk runs and the global lease
# ----------

BULK_RUNS_STARTED_TOTAL = Counter(
    "bulk_runs_started_total",
    "Bulk evaluation runs started",
    labelnames=("mode",),  # start | resume
)

BULK_RUNS_FINISHED_TOTAL = Counter(
    "bulk_runs_finished_total",
    "Bulk evaluation runs finished",
    labelnames=("outcome",),  # completed | failed | paused
)

BULK_RUNS_BUSY_TOTAL = Counter(
    "bulk_runs_busy_total",
    "Bulk run start requests rejected because the lease was held",
)

LEASE_RECOVERIES_TOTAL = Counter(
    "lease_recoveries_total",
    "Stale evaluation leases reclaimed",
    labelnames=("source",),  # acquire | startup
)

LEASE_HELD = Gauge(
    "lease_held",
    "Whether this process currently holds the global evaluation lease (1/0)",
    **_gauge_kwargs,
)


# ----------
# Submissions and scoring backends
# ----------

SUBMISSIONS_PROCESSED_TOTAL = Counter(
    "submissions_processed_total",
    "Submissions handled by bulk runs",
    labelnames=("result",),  # scored | unscored | skipped
)

BACKEND_ATTEMPTS_TOTAL = Counter(
    "scoring_backend_attempts_total",
    "Scoring backend attempts by outcome",
    labelnames=("backend", "outcome"),  # ok | invalid | transport
)

BACKEND_ABSENT_TOTAL = Counter(
    "scoring_backend_absent_total",
    "Backends that produced no valid score after all attempts",
    labelnames=("backend",),
)

EVALUATE_DURATION_SECONDS = Histogram(
    "submission_evaluate_duration_seconds",
    "Time spent scoring one submission across the backend panel",
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)


# ----------
# Leaderboards
# ----------

LEADERBOARD_GENERATIONS_TOTAL = Counter(
    "leaderboard_generations_total",
    "Leaderboard generations",
    labelnames=("kind", "outcome"),  # automated | final | level1
)

LEADERBOARD_CACHE_TOTAL = Counter(
    "leaderboard_cache_total",
    "Final leaderboard cache lookups",
    labelnames=("result",),  # hit | miss | error
)


# System health metrics
DATABASE_HEALTH = Gauge(
    "database_health",
    "Database connection health status (1=healthy, 0=unhealthy)",
    **_gauge_kwargs,
)

REDIS_HEALTH = Gauge(
    "redis_health",
    "Redis connection health status (1=healthy, 0=unhealthy)",
    **_gauge_kwargs,
)

# Set initial values for health metrics so they appear in Prometheus
DATABASE_HEALTH.set(0)  # Start as unhealthy until checked
REDIS_HEALTH.set(0)  # Start as unhealthy until checked
LEASE_HELD.set(0)


def check_database_health() -> bool:
    """Check database health and update metrics"""
    try:
        from app.db.session import engine
        from sqlalchemy import text
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        DATABASE_HEALTH.set(1)
        return True
    except Exception as e:
        DATABASE_HEALTH.set(0)
        logging.getLogger(__name__).error(f"Database health check failed: {str(e)}")
        return False


def check_redis_health() -> bool:
    """Check Redis health and update metrics"""
    try:
        import redis
        from app.core.config import settings
        r = redis.from_url(settings.REDIS_URL, socket_timeout=2)
        r.ping()
        REDIS_HEALTH.set(1)
        return True
    except Exception as e:
        REDIS_HEALTH.set(0)
        logging.getLogger(__name__).error(f"Redis health check failed: {str(e)}")
        return False


def start_worker_metrics_server(port: Optional[int] = None) -> None:
    """Start a Prometheus metrics HTTP server for the Celery worker process."""
    logger = logging.getLogger(__name__)
    p = int(port or os.getenv("WORKER_METRICS_PORT", "9101"))
    try:
        start_http_server(p, addr="0.0.0.0")
        logger.info(f"Worker metrics server started on port {p}")
    except OSError as e:
        # Port already in use; ignore to prevent crash in forked workers
        logger.error(f"Failed to start worker metrics server on port {p}: {str(e)}")


class DurationTimer:
    """Simple context manager to measure durations with perf_counter."""

    def __init__(self):
        self._start = 0.0
        self.seconds = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.seconds = max(0.0, time.perf_counter() - self._start)
        return False


def init_fastapi_instrumentation(app) -> None:
    """Attach per-route HTTP metrics to the default registry served by /metrics.

    Imported lazily so worker processes don't load the instrumentator.
    """
    from prometheus_fastapi_instrumentator import Instrumentator

    Instrumentator(excluded_handlers=["/metrics", "/health"]).instrument(app)
