import logging
from typing import Callable, Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from app.db.base import utcnow
from app.db.session import SessionLocal
from app.models import EvaluationProgress
from app.schemas.evaluation import RunProgress, RunStatus

logger = logging.getLogger(__name__)


def pause_statement(competition_id: str, reason: str, now):
    """UPDATE that moves a running run to paused. Shared with lease recovery."""
    return (
        update(EvaluationProgress)
        .where(EvaluationProgress.competition_id == competition_id)
        .where(EvaluationProgress.status == RunStatus.RUNNING.value)
        .values(status=RunStatus.PAUSED.value, last_update_time=now, pause_reason=reason)
    )


class ProgressTracker:
    """Persisted counters for an in-flight bulk run, one row per competition."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def start(self, competition_id: str, total_submissions: int) -> RunProgress:
        db = self.session_factory()
        try:
            now = self.clock()
            row = EvaluationProgress(
                competition_id=competition_id,
                total_submissions=total_submissions,
                evaluated_submissions=0,
                start_time=now,
                last_update_time=now,
                status=RunStatus.RUNNING.value,
                pause_reason=None,
            )
            db.merge(row)  # upsert by primary key
            db.commit()
            logger.info(
                f"Progress started: 0/{total_submissions}",
                extra={"competition_id": competition_id, "stage": "progress_start"},
            )
            return RunProgress.model_validate(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def resume(self, competition_id: str, total_submissions: Optional[int] = None) -> RunProgress:
        """Mark a paused run running again, keeping its counters.

        Falls back to ``start`` when the competition has no progress row yet.
        """
        db = self.session_factory()
        try:
            result = db.execute(
                update(EvaluationProgress)
                .where(EvaluationProgress.competition_id == competition_id)
                .values(status=RunStatus.RUNNING.value, last_update_time=self.clock(), pause_reason=None)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if result.rowcount == 0:
            return self.start(competition_id, total_submissions or 0)
        return self.get(competition_id)

    def advance(self, competition_id: str, n: int = 1, guard=None) -> bool:
        """Atomic in-database increment, clamped to total_submissions.

        ``guard`` is an extra SQL condition (see ``LeaseLock.held_clause``); when
        it does not hold nothing is written and False is returned.
        """
        incremented = EvaluationProgress.evaluated_submissions + n
        stmt = update(EvaluationProgress).where(EvaluationProgress.competition_id == competition_id)
        if guard is not None:
            stmt = stmt.where(guard)
        db = self.session_factory()
        try:
            result = db.execute(
                stmt.values(
                    evaluated_submissions=case(
                        (incremented > EvaluationProgress.total_submissions, EvaluationProgress.total_submissions),
                        else_=incremented,
                    ),
                    last_update_time=self.clock(),
                )
            )
            db.commit()
            return result.rowcount == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def finish(self, competition_id: str, guard=None) -> bool:
        if not self._set_status(competition_id, RunStatus.COMPLETED, guard):
            return False
        logger.info("Progress completed", extra={"competition_id": competition_id, "stage": "progress_finish"})
        return True

    def pause(self, competition_id: str, reason: str) -> None:
        """Only lease recovery pauses a run; the owning orchestrator never does."""
        db = self.session_factory()
        try:
            db.execute(pause_statement(competition_id, reason, self.clock()))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, competition_id: str) -> Optional[RunProgress]:
        db = self.session_factory()
        try:
            row = db.get(EvaluationProgress, competition_id)
            return RunProgress.model_validate(row) if row is not None else None
        finally:
            db.close()

    def _set_status(self, competition_id: str, status: RunStatus, guard=None) -> bool:
        stmt = update(EvaluationProgress).where(EvaluationProgress.competition_id == competition_id)
        if guard is not None:
            stmt = stmt.where(guard)
        db = self.session_factory()
        try:
            result = db.execute(stmt.values(status=status.value, last_update_time=self.clock()))
            db.commit()
            return result.rowcount == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


progress_tracker = ProgressTracker()
