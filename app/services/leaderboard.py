import logging
import json
import redis
from typing import Callable, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import CompetitionNotFoundError
from app.core.metrics import LEADERBOARD_CACHE_TOTAL, LEADERBOARD_GENERATIONS_TOTAL
from app.db.base import utcnow
from app.db.session import SessionLocal
from app.models import (
    Competition,
    FinalLeaderboardEntry,
    JudgeEvaluation,
    LeaderboardEntry,
    Participant,
    Submission,
)
from app.schemas import evaluation as schemas
from app.services.ranking import (
    are_judge_evaluations_complete,
    compute_final_leaderboard,
    compute_level1_leaderboard,
    sum_human_scores,
)

logger = logging.getLogger(__name__)


class RedisLeaderboardCache:
    """Redis copy of generated final leaderboards; the DB stays authoritative."""

    def __init__(self, redis_client=None):
        self.redis_client = redis_client
        self.final_key = "final_leaderboard:{competition_id}"

    def connect(self):
        """Connect to Redis with proper configuration"""
        try:
            self.redis_client = redis.from_url(
                settings.REDIS_URL,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True
            )
            # Test connection
            self.redis_client.ping()
            logger.info("Connected to Redis leaderboard cache")
        except Exception as e:
            logger.critical(f"Failed to connect to Redis: {str(e)}")
            raise

    def store(self, competition_id: str, entries: list[dict]) -> None:
        if not self.redis_client:
            self.connect()
        key = self.final_key.format(competition_id=competition_id)
        self.redis_client.set(key, json.dumps(entries), ex=settings.LEADERBOARD_CACHE_TTL_SECONDS)

    def load(self, competition_id: str) -> Optional[list[dict]]:
        if not self.redis_client:
            self.connect()
        raw = self.redis_client.get(self.final_key.format(competition_id=competition_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)


class LeaderboardService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        cache: Optional[RedisLeaderboardCache] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else RedisLeaderboardCache()

    # ---- automated track ----

    def generate_automated_leaderboard(self, competition_id: str) -> list[schemas.LeaderboardEntry]:
        """Sum each participant's scored submissions into the automated leaderboard."""
        db = self.session_factory()
        try:
            rows = (
                db.query(Submission.participant_id, Submission.final_score)
                .filter(Submission.competition_id == competition_id)
                .filter(Submission.final_score.isnot(None))
                .filter(Submission.participant_id.isnot(None))
                .all()
            )
            totals: dict[str, float] = {}
            for participant_id, score in rows:
                totals[participant_id] = totals.get(participant_id, 0.0) + float(score)

            people = self._participants(db, totals.keys())
            entries = [
                schemas.LeaderboardEntry(
                    participant_id=pid,
                    full_name=people.get(pid, (None, None))[0] or "Unknown",
                    email=people.get(pid, (None, None))[1] or "",
                    automated_score=total,
                )
                for pid, total in totals.items()
            ]
            ranked = compute_level1_leaderboard(entries)

            db.execute(delete(LeaderboardEntry).where(LeaderboardEntry.competition_id == competition_id))
            for r in ranked:
                db.add(
                    LeaderboardEntry(
                        competition_id=competition_id,
                        participant_id=r.participant_id,
                        full_name=r.full_name,
                        email=r.email,
                        total_score=r.automated_score,
                        rank=r.rank,
                    )
                )
            db.commit()
            LEADERBOARD_GENERATIONS_TOTAL.labels(kind="automated", outcome="ok").inc()
            logger.info(
                f"Automated leaderboard generated with {len(entries)} participants",
                extra={"competition_id": competition_id},
            )
            return entries
        except Exception:
            db.rollback()
            LEADERBOARD_GENERATIONS_TOTAL.labels(kind="automated", outcome="error").inc()
            raise
        finally:
            db.close()

    def automated_entries(self, db: Session, competition_id: str) -> list[schemas.LeaderboardEntry]:
        rows = db.query(LeaderboardEntry).filter(LeaderboardEntry.competition_id == competition_id).all()
        return [
            schemas.LeaderboardEntry(
                participant_id=r.participant_id,
                full_name=r.full_name,
                email=r.email,
                automated_score=r.total_score or 0.0,
            )
            for r in rows
        ]

    def human_scores(self, db: Session, competition_id: str, eligible=None) -> dict[str, float]:
        rows = (
            db.query(JudgeEvaluation.participant_id, JudgeEvaluation.total_score)
            .filter(JudgeEvaluation.competition_id == competition_id)
            .all()
        )
        return sum_human_scores(((r[0], r[1]) for r in rows), eligible=eligible)

    # ---- final leaderboards ----

    def generate_final_leaderboard(self, competition_id: str) -> list[schemas.FinalEntry]:
        """Merge automated and judge scores, persist, and mark the competition."""
        return self._generate(competition_id, kind="final")

    def generate_level1_leaderboard(self, competition_id: str) -> list[schemas.FinalEntry]:
        return self._generate(competition_id, kind="level1")

    def _generate(self, competition_id: str, kind: str) -> list[schemas.FinalEntry]:
        db = self.session_factory()
        try:
            competition = db.get(Competition, competition_id)
            if competition is None:
                raise CompetitionNotFoundError(competition_id)

            automated = self.automated_entries(db, competition_id)
            if kind == "final":
                human = self.human_scores(db, competition_id, eligible=[a.participant_id for a in automated])
                entries = compute_final_leaderboard(automated, human, competition.top_n or 0)
            else:
                entries = compute_level1_leaderboard(automated)

            # Wholesale overwrite
            db.execute(delete(FinalLeaderboardEntry).where(FinalLeaderboardEntry.competition_id == competition_id))
            for e in entries:
                db.add(
                    FinalLeaderboardEntry(
                        competition_id=competition_id,
                        participant_id=e.participant_id,
                        full_name=e.full_name,
                        email=e.email,
                        llm_score=e.automated_score,
                        judge_score=e.human_score,
                        final_score=e.final_score,
                        rank=e.rank,
                    )
                )
            competition.has_final_leaderboard = True
            competition.final_leaderboard_generated_at = utcnow()
            db.commit()
        except CompetitionNotFoundError:
            db.rollback()
            raise
        except Exception:
            db.rollback()
            LEADERBOARD_GENERATIONS_TOTAL.labels(kind=kind, outcome="error").inc()
            raise
        finally:
            db.close()

        LEADERBOARD_GENERATIONS_TOTAL.labels(kind=kind, outcome="ok").inc()
        logger.info(
            f"{kind} leaderboard generated with {len(entries)} entries",
            extra={"competition_id": competition_id},
        )
        try:
            self.cache.store(competition_id, [e.model_dump(mode="json", by_alias=True) for e in entries])
        except Exception as e:
            logger.error(
                f"Failed to cache final leaderboard: {str(e)}",
                extra={"competition_id": competition_id},
            )
        return entries

    def get_final_leaderboard(self, competition_id: str) -> list[dict]:
        """Cached entries, falling back to the DB when Redis is empty or down."""
        try:
            cached = self.cache.load(competition_id)
            if cached is not None:
                LEADERBOARD_CACHE_TOTAL.labels(result="hit").inc()
                return cached
            LEADERBOARD_CACHE_TOTAL.labels(result="miss").inc()
        except Exception as e:
            LEADERBOARD_CACHE_TOTAL.labels(result="error").inc()
            logger.error(
                f"Leaderboard cache read failed: {str(e)}",
                extra={"competition_id": competition_id},
            )

        db = self.session_factory()
        try:
            if db.get(Competition, competition_id) is None:
                raise CompetitionNotFoundError(competition_id)
            rows = (
                db.query(FinalLeaderboardEntry)
                .filter(FinalLeaderboardEntry.competition_id == competition_id)
                .order_by(FinalLeaderboardEntry.rank.asc(), FinalLeaderboardEntry.participant_id.asc())
                .all()
            )
            entries = [
                schemas.FinalEntry(
                    participant_id=r.participant_id,
                    full_name=r.full_name,
                    email=r.email,
                    automated_score=r.llm_score,
                    human_score=r.judge_score or 0.0,
                    final_score=r.final_score,
                    rank=r.rank,
                ).model_dump(mode="json", by_alias=True)
                for r in rows
            ]
        finally:
            db.close()
        return entries

    def judge_evaluation_status(self, competition_id: str) -> dict:
        db = self.session_factory()
        try:
            competition = db.get(Competition, competition_id)
            if competition is None:
                raise CompetitionNotFoundError(competition_id)
            automated = self.automated_entries(db, competition_id)
            human = self.human_scores(db, competition_id, eligible=[a.participant_id for a in automated])
            top_n = competition.top_n or 0
            return {
                "complete": are_judge_evaluations_complete(human, top_n),
                "topN": top_n,
                "evaluated": len(human),
            }
        finally:
            db.close()

    @staticmethod
    def _participants(db: Session, participant_ids) -> dict[str, tuple[Optional[str], Optional[str]]]:
        ids = list(participant_ids)
        if not ids:
            return {}
        rows = db.query(Participant).filter(Participant.id.in_(ids)).all()
        return {p.id: (p.full_name, p.email) for p in rows}


# Global instance
leaderboard_service = LeaderboardService()
