from sqlalchemy import Column, String, Integer, Boolean, DateTime
from app.db.base import Base, utcnow


class EvaluationLease(Base):
    """Global bulk-evaluation lease. Mutated only through versioned compare-and-set."""

    __tablename__ = "evaluation_locks"

    key = Column(String, primary_key=True)
    is_locked = Column(Boolean, nullable=False, default=False)
    locked_by = Column(String, nullable=True)  # competition id
    locked_by_user = Column(String, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    reason = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=0)


class EvaluationProgress(Base):
    __tablename__ = "evaluation_progress"

    competition_id = Column(String, primary_key=True)
    total_submissions = Column(Integer, nullable=False, default=0)
    evaluated_submissions = Column(Integer, nullable=False, default=0)
    start_time = Column(DateTime, default=utcnow)
    last_update_time = Column(DateTime, default=utcnow)
    status = Column(String, nullable=False, default="running")  # running, paused, completed
    pause_reason = Column(String, nullable=True)
