from fastapi import APIRouter, Depends
import logging

from app.core.config import settings
from app.core.exceptions import StoreUnavailableError
from app.core.metrics import DurationTimer
from app.core.security import require_roles
from app.services.leaderboard import leaderboard_service
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/competitions/{competition_id}/final-leaderboard")
def generate_final_leaderboard(
    competition_id: str,
    claims: dict = Depends(require_roles(settings.leaderboard_roles)),
):
    """Merge automated and judge scores into the competition's final leaderboard.

    Safe to call repeatedly; each call overwrites the previous result.
    """
    with DurationTimer() as t:
        try:
            entries = leaderboard_service.generate_final_leaderboard(competition_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e
    logger.info(
        "final_leaderboard_generated",
        extra={"competition_id": competition_id, "user_id": claims.get("sub"), "duration_ms": int(t.seconds * 1000)},
    )
    return {"message": "Final leaderboard generated successfully", "entries": len(entries)}


@router.post("/competitions/{competition_id}/level1-final-leaderboard")
def generate_level1_leaderboard(
    competition_id: str,
    claims: dict = Depends(require_roles(settings.leaderboard_roles)),
):
    """Final leaderboard for competitions that skip the judging round."""
    try:
        entries = leaderboard_service.generate_level1_leaderboard(competition_id)
    except SQLAlchemyError as e:
        raise StoreUnavailableError(str(e)) from e
    logger.info(
        "level1_leaderboard_generated",
        extra={"competition_id": competition_id, "user_id": claims.get("sub")},
    )
    return {"message": "Level 1 final leaderboard generated successfully", "entries": len(entries)}


@router.get("/competitions/{competition_id}/final-leaderboard")
def get_final_leaderboard(competition_id: str):
    return {"leaderboard": leaderboard_service.get_final_leaderboard(competition_id)}


@router.get("/competitions/{competition_id}/judge-evaluations/complete")
def judge_evaluations_complete(competition_id: str):
    return leaderboard_service.judge_evaluation_status(competition_id)
