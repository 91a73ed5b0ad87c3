from sqlalchemy import Column, String, Float, DateTime, Text, JSON, UniqueConstraint
from app.db.base import Base, utcnow


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(String, primary_key=True, index=True)
    competition_id = Column(String, index=True, nullable=False)
    challenge_id = Column(String, index=True)
    participant_id = Column(String, index=True)
    prompt_text = Column(Text, nullable=True)
    # backend id -> {"scores": {...}, "finalScore": float, "description": str}
    llm_scores = Column(JSON, nullable=True)
    final_score = Column(Float, nullable=True)  # aggregate; NULL means unscored
    created_at = Column(DateTime, default=utcnow)
    status = Column(String, default="pending")  # pending, evaluated, unscored
    error = Column(String, nullable=True)


class JudgeEvaluation(Base):
    """Human score for one submission. One judge per submission."""

    __tablename__ = "judge_evaluations"
    __table_args__ = (UniqueConstraint("submission_id", name="uq_judge_evaluations_submission"),)

    id = Column(String, primary_key=True, index=True)
    submission_id = Column(String, index=True, nullable=False)
    competition_id = Column(String, index=True, nullable=False)
    participant_id = Column(String, index=True, nullable=False)
    judge_id = Column(String, index=True)
    total_score = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow)
