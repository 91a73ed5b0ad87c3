import logging
import os
from pythonjsonlogger import jsonlogger

# Keys every record carries, with the value used when a call site omits them
REQUEST_DEFAULTS = {
    "request_id": "-",
    "method": "-",
    "path": "-",
    "status_code": 0,
    "duration_ms": 0,
    "client": "-",
}

# Run/lease/backend context; nullable and high-cardinality, so searchable fields rather than labels
EVALUATION_KEYS = (
    "competition_id",
    "submission_id",
    "challenge_id",
    "backend",
    "attempt",
    "lease_owner",
    "stage",
    "task_name",
    "task_id",
    "user_id",
)


class ContextDefaultsFilter(logging.Filter):
    """Give every record the same schema, plus the service name."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for key, default in REQUEST_DEFAULTS.items():
            if not hasattr(record, key):
                setattr(record, key, default)
        for key in EVALUATION_KEYS:
            if not hasattr(record, key):
                setattr(record, key, None)
        if not hasattr(record, "service"):
            record.service = self.service_name
        return True


def _format_string() -> str:
    fields = ["asctime", "levelname", "name", "message", "service", *REQUEST_DEFAULTS, *EVALUATION_KEYS]
    return " ".join(f"%({f})s" for f in fields)


def setup_logging() -> None:
    """Route the root logger to stdout as one JSON object per line.

    Safe to call from both the API and the Celery worker; existing handlers
    are replaced rather than stacked.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    service_name = os.getenv("SERVICE_NAME", "bulk-eval-api")

    handler = logging.StreamHandler()
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            _format_string(),
            rename_fields={"levelname": "level", "asctime": "time"},
        )
    )
    handler.addFilter(ContextDefaultsFilter(service_name))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    logging.captureWarnings(True)

    # uvicorn and celery install their own handlers; funnel them into ours
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "celery"):
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.propagate = True
