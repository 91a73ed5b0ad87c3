"""Bulk evaluation run: one lease, one competition, submissions scored one at a time."""
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import LeaseBusyError, MissingRubricOrBriefError, StoreUnavailableError
from app.core.metrics import (
    BULK_RUNS_BUSY_TOTAL,
    BULK_RUNS_FINISHED_TOTAL,
    BULK_RUNS_STARTED_TOTAL,
    LEASE_HELD,
    SUBMISSIONS_PROCESSED_TOTAL,
)
from app.db.session import SessionLocal
from app.models import Challenge, Submission
from app.schemas.evaluation import RubricCriterion, RunState
from app.services.leaderboard import leaderboard_service
from app.services.lease import LeaseLock, evaluation_lease
from app.services.progress import ProgressTracker, progress_tracker
from app.services.scoring import ScoringAggregator

logger = logging.getLogger(__name__)


@dataclass
class ChallengeConfig:
    rubric: list[RubricCriterion]
    brief: str


@dataclass
class StartResult:
    message: str
    total_submissions: int = 0
    lease_version: Optional[int] = None

    @property
    def needs_run(self) -> bool:
        return self.lease_version is not None


@dataclass
class RunSummary:
    competition_id: str
    state: RunState
    evaluated: int = 0
    unscored: int = 0
    skipped: int = 0
    skipped_ids: list[str] = field(default_factory=list)


def clean_rubric(raw) -> list[RubricCriterion]:
    """Validated rubric or an empty list.

    Criteria with a negative weight or blank name are dropped; duplicate names
    keep the first entry.
    """
    if not isinstance(raw, list):
        return []
    rubric: list[RubricCriterion] = []
    seen: set[str] = set()
    for item in raw:
        try:
            criterion = RubricCriterion.model_validate(item)
        except ValidationError:
            continue
        name = criterion.name.strip()
        if not name or name in seen:
            continue
        seen.add(name)
        rubric.append(criterion.model_copy(update={"name": name}))
    return rubric


class BulkEvaluationOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        lease: Optional[LeaseLock] = None,
        progress: Optional[ProgressTracker] = None,
        aggregator: Optional[ScoringAggregator] = None,
        on_completed: Optional[Callable[[str], None]] = None,
    ):
        self.session_factory = session_factory
        self.lease = lease or LeaseLock(session_factory=session_factory)
        self.progress = progress or ProgressTracker(session_factory=session_factory)
        self._aggregator = aggregator
        self.on_completed = on_completed
        self.state = RunState.IDLE

    @property
    def aggregator(self) -> ScoringAggregator:
        if self._aggregator is None:
            self._aggregator = ScoringAggregator()
        return self._aggregator

    # ---- Idle -> Acquiring -> Running ----

    def start(self, competition_id: str, user_id: str, resume: bool = False) -> StartResult:
        """Acquire the global lease and initialise progress for a run.

        Raises LeaseBusyError when another run holds a fresh lease; the caller
        decides whether to retry. The returned lease version must be passed to
        ``run``.
        """
        self.state = RunState.ACQUIRING
        reason = "Resuming evaluation" if resume else "Starting evaluation"
        outcome = self.lease.acquire(competition_id, user_id, reason=reason)
        if not outcome.acquired:
            self.state = RunState.IDLE
            BULK_RUNS_BUSY_TOTAL.inc()
            raise LeaseBusyError(outcome.lease.locked_by, outcome.lease.locked_at)
        version = outcome.lease.version

        try:
            total = self._count_unscored(competition_id)
            if total == 0:
                self.lease.release(competition_id, version)
                self.state = RunState.IDLE
                return StartResult(message="No submissions to evaluate")
            if resume:
                self.progress.resume(competition_id, total)
            else:
                self.progress.start(competition_id, total)
        except Exception as e:
            self._fail(competition_id, version, e)

        self.state = RunState.RUNNING
        LEASE_HELD.set(1)
        BULK_RUNS_STARTED_TOTAL.labels(mode="resume" if resume else "start").inc()
        logger.info(
            f"Bulk evaluation {'resumed' if resume else 'started'}: {total} submissions",
            extra={"competition_id": competition_id, "user_id": user_id, "stage": "start"},
        )
        message = "Evaluation resumed successfully" if resume else "Evaluation started successfully"
        return StartResult(message=message, total_submissions=total, lease_version=version)

    def abandon(self, competition_id: str, lease_version: int) -> None:
        """Release the lease when the run could not be handed to a worker."""
        self.lease.release(competition_id, lease_version)
        LEASE_HELD.set(0)
        self.state = RunState.FAILED

    # ---- Running -> Completed | Failed (| Paused via recovery) ----

    def run(self, competition_id: str, lease_version: int) -> RunSummary:
        summary = RunSummary(competition_id=competition_id, state=RunState.RUNNING)
        self.state = RunState.RUNNING
        held = self.lease.held_clause(competition_id, lease_version)
        try:
            configs = self._load_challenge_configs(competition_id)
            pending = self._unscored_submissions(competition_id)
            for submission_id, challenge_id, prompt_text in pending:
                if not self.lease.is_held_by(competition_id, lease_version):
                    return self._lost_lease(summary)
                try:
                    config = self._config_for(submission_id, challenge_id, prompt_text, configs)
                except MissingRubricOrBriefError as e:
                    summary.skipped += 1
                    summary.skipped_ids.append(submission_id)
                    SUBMISSIONS_PROCESSED_TOTAL.labels(result="skipped").inc()
                    logger.warning(
                        f"Skipping submission {submission_id}: {str(e)}",
                        extra={"competition_id": competition_id, "submission_id": submission_id, "challenge_id": challenge_id},
                    )
                    continue

                score = self.aggregator.evaluate(prompt_text, config.rubric, config.brief, submission_id=submission_id)
                self._write_back(submission_id, score)
                if score.aggregate_score is None:
                    summary.unscored += 1
                    SUBMISSIONS_PROCESSED_TOTAL.labels(result="unscored").inc()
                else:
                    summary.evaluated += 1
                    SUBMISSIONS_PROCESSED_TOTAL.labels(result="scored").inc()
                # Counters belong to whoever holds the lease now
                if not self.progress.advance(competition_id, guard=held):
                    return self._lost_lease(summary)

            if not self.progress.finish(competition_id, guard=held):
                return self._lost_lease(summary)
            self.lease.release(competition_id, lease_version)
        except Exception as e:
            self._fail(competition_id, lease_version, e)

        self.state = summary.state = RunState.COMPLETED
        LEASE_HELD.set(0)
        BULK_RUNS_FINISHED_TOTAL.labels(outcome="completed").inc()
        logger.info(
            f"Evaluation completed: {summary.evaluated} scored, {summary.unscored} unscored, {summary.skipped} skipped",
            extra={"competition_id": competition_id, "stage": "completed"},
        )
        if self.on_completed is not None:
            try:
                self.on_completed(competition_id)
            except Exception as e:
                # The run itself succeeded; leaderboard generation can be re-triggered
                logger.error(
                    f"Post-run leaderboard generation failed: {str(e)}",
                    extra={"competition_id": competition_id},
                )
        return summary

    # ---- helpers ----

    def _lost_lease(self, summary: RunSummary) -> RunSummary:
        # Lease was reclaimed as stale; the new holder paused this run
        self.state = summary.state = RunState.PAUSED
        LEASE_HELD.set(0)
        BULK_RUNS_FINISHED_TOTAL.labels(outcome="paused").inc()
        logger.warning(
            "Lease lost, stopping run",
            extra={"competition_id": summary.competition_id, "stage": "lease_lost"},
        )
        return summary

    def _fail(self, competition_id: str, lease_version: int, error: Exception):
        """Release the lease, then re-raise. Store errors surface as StoreUnavailableError."""
        self.state = RunState.FAILED
        BULK_RUNS_FINISHED_TOTAL.labels(outcome="failed").inc()
        logger.exception(
            f"Bulk evaluation failed: {str(error)}",
            extra={"competition_id": competition_id, "stage": "failed"},
        )
        try:
            self.lease.release(competition_id, lease_version)
            LEASE_HELD.set(0)
        except SQLAlchemyError as release_error:
            # Store is down; staleness recovery will reclaim the lease
            logger.error(
                f"Failed to release lease after error: {str(release_error)}",
                extra={"competition_id": competition_id},
            )
        if isinstance(error, SQLAlchemyError):
            raise StoreUnavailableError(str(error)) from error
        raise error

    def _count_unscored(self, competition_id: str) -> int:
        db = self.session_factory()
        try:
            return (
                db.query(Submission)
                .filter(Submission.competition_id == competition_id)
                .filter(Submission.final_score.is_(None))
                .count()
            )
        finally:
            db.close()

    def _unscored_submissions(self, competition_id: str) -> list[tuple[str, Optional[str], Optional[str]]]:
        db = self.session_factory()
        try:
            rows = (
                db.query(Submission.id, Submission.challenge_id, Submission.prompt_text)
                .filter(Submission.competition_id == competition_id)
                .filter(Submission.final_score.is_(None))
                .order_by(Submission.created_at.asc(), Submission.id.asc())
                .all()
            )
            return [(r[0], r[1], r[2]) for r in rows]
        finally:
            db.close()

    def _load_challenge_configs(self, competition_id: str) -> dict[str, ChallengeConfig]:
        db = self.session_factory()
        try:
            challenges = db.query(Challenge).filter(Challenge.competition_id == competition_id).all()
            configs: dict[str, ChallengeConfig] = {}
            for challenge in challenges:
                rubric = clean_rubric(challenge.rubric)
                if not rubric:
                    logger.warning(
                        f"Challenge {challenge.id}: invalid rubric",
                        extra={"competition_id": competition_id, "challenge_id": challenge.id},
                    )
                    continue
                configs[challenge.id] = ChallengeConfig(rubric=rubric, brief=challenge.problem_statement or "")
            return configs
        finally:
            db.close()

    @staticmethod
    def _config_for(submission_id, challenge_id, prompt_text, configs) -> ChallengeConfig:
        if not prompt_text or not challenge_id:
            raise MissingRubricOrBriefError("missing prompt text or challenge id")
        config = configs.get(challenge_id)
        if config is None:
            raise MissingRubricOrBriefError(f"no valid rubric for challenge {challenge_id}")
        if not config.brief.strip():
            raise MissingRubricOrBriefError(f"no problem statement for challenge {challenge_id}")
        return config

    def _write_back(self, submission_id: str, score) -> None:
        db = self.session_factory()
        try:
            submission = db.get(Submission, submission_id)
            if submission is None:
                return
            submission.llm_scores = {
                backend: result.model_dump(by_alias=True)
                for backend, result in score.valid_scores.items()
            }
            if score.aggregate_score is not None:
                submission.final_score = score.aggregate_score
                submission.status = "evaluated"
                submission.error = None
            else:
                submission.status = "unscored"
                submission.error = "No scoring backend returned a valid score"
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def _generate_leaderboard_after_run(competition_id: str) -> None:
    leaderboard_service.generate_automated_leaderboard(competition_id)


bulk_orchestrator = BulkEvaluationOrchestrator(
    lease=evaluation_lease,
    progress=progress_tracker,
    on_completed=_generate_leaderboard_after_run,
)
