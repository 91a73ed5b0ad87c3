from fastapi import APIRouter, Body, Depends
import logging

from app.core.celery import run_bulk_evaluation_task
from app.core.config import settings
from app.core.exceptions import BadRequestError, StoreUnavailableError
from app.core.security import require_roles
from app.schemas.evaluation import StartEvaluationRequest
from app.services.lease import evaluation_lease
from app.services.orchestrator import bulk_orchestrator
from app.services.progress import progress_tracker

logger = logging.getLogger(__name__)
router = APIRouter()


def _launch(payload: StartEvaluationRequest, resume: bool) -> dict:
    competition_id = payload.competitionId.strip()
    user_id = payload.userId.strip()
    if not competition_id or not user_id:
        raise BadRequestError("Missing required fields: competitionId, userId")

    result = bulk_orchestrator.start(competition_id, user_id, resume=resume)
    if not result.needs_run:
        return {"message": result.message, "totalSubmissions": 0}

    try:
        run_bulk_evaluation_task.delay(competition_id, result.lease_version)
    except Exception as e:
        logger.exception(
            f"Failed to dispatch bulk evaluation: {str(e)}",
            extra={"competition_id": competition_id, "user_id": user_id},
        )
        bulk_orchestrator.abandon(competition_id, result.lease_version)
        raise StoreUnavailableError("Failed to dispatch evaluation task") from e

    return {"message": result.message, "totalSubmissions": result.total_submissions}


@router.post("/bulk-evaluate/start")
def start_bulk_evaluation(
    payload: StartEvaluationRequest = Body(...),
    claims: dict = Depends(require_roles(settings.evaluation_roles)),
):
    """Acquire the global lease and queue a run over every unscored submission."""
    return _launch(payload, resume=False)


@router.post("/bulk-evaluate/resume")
def resume_bulk_evaluation(
    payload: StartEvaluationRequest = Body(...),
    claims: dict = Depends(require_roles(settings.evaluation_roles)),
):
    """Like start, but keeps the existing progress counters."""
    return _launch(payload, resume=True)


@router.get("/bulk-evaluate/check-lock")
def check_lock():
    lease = evaluation_lease.current()
    return lease.model_dump(mode="json", by_alias=True)


@router.get("/bulk-evaluate/progress/{competition_id}")
def get_progress(competition_id: str):
    progress = progress_tracker.get(competition_id)
    return {"progress": progress.model_dump(mode="json", by_alias=True) if progress else None}
