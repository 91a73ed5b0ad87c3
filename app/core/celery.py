from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure
from app.core.config import settings
import logging
from app.core.metrics import start_worker_metrics_server
from app.core.logging_config import setup_logging

# Ensure structured JSON logging for the worker process
setup_logging()

celery_app = Celery(
    "worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_time_limit=settings.LEASE_STALE_AFTER_SECONDS,
    task_reject_on_worker_lost=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    task_routes={
        "app.core.celery.run_bulk_evaluation_task": {"queue": "celery"},
    },
)


@celery_app.on_after_configure.connect
def setup_observability(sender, **kwargs):
    logger = logging.getLogger(__name__)
    logger.info("Setting up observability for Celery worker")

    # Start metrics endpoint for worker
    try:
        start_worker_metrics_server()
    except Exception as e:
        logger.error(f"Failed to start worker metrics server: {str(e)}")


# ---- Celery task lifecycle structured logs ----

def _competition_from(args, kwargs):
    if isinstance(kwargs, dict) and kwargs.get("competition_id"):
        return kwargs.get("competition_id")
    if isinstance(args, (list, tuple)) and len(args) > 0 and isinstance(args[0], str):
        return args[0]
    return None


@task_prerun.connect
def _on_task_start(task_id=None, task=None, args=None, kwargs=None, **extra_kwargs):
    logging.getLogger("celery.task").info(
        "task_started",
        extra={
            "task_name": getattr(task, "name", None),
            "task_id": task_id,
            "competition_id": _competition_from(args, kwargs),
        },
    )


@task_postrun.connect
def _on_task_success(task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **extra_kwargs):
    logging.getLogger("celery.task").info(
        "task_finished",
        extra={
            "task_name": getattr(task, "name", None),
            "task_id": task_id,
            "competition_id": _competition_from(args, kwargs),
            "stage": state,
        },
    )


@task_failure.connect
def _on_task_failure(task_id=None, exception=None, args=None, kwargs=None, traceback=None, einfo=None, sender=None, **extra_kwargs):
    logging.getLogger("celery.task").error(
        f"task_failed: {str(exception)}",
        extra={
            "task_name": getattr(sender, "name", None),
            "task_id": task_id,
            "competition_id": _competition_from(args, kwargs),
        },
    )


@celery_app.task(bind=True)
def run_bulk_evaluation_task(self, competition_id: str, lease_version: int):
    """Run one bulk evaluation under an already-acquired lease.

    Not retried: on a store failure the run releases its lease, and a new
    run must acquire it again through the start/resume endpoints.
    """
    from app.services.orchestrator import bulk_orchestrator

    self.update_state(
        state="STARTED",
        meta={"competition_id": competition_id, "lease_version": lease_version},
    )
    summary = bulk_orchestrator.run(competition_id, lease_version)
    return {
        "competition_id": summary.competition_id,
        "state": summary.state.value,
        "evaluated": summary.evaluated,
        "unscored": summary.unscored,
        "skipped": summary.skipped,
        "skipped_ids": summary.skipped_ids,
    }
