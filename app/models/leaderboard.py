from sqlalchemy import Column, String, Float, Integer, DateTime
from app.db.base import Base, utcnow


class LeaderboardEntry(Base):
    """Automated-track standing of one participant in one competition."""

    __tablename__ = "leaderboard_entries"

    competition_id = Column(String, primary_key=True)
    participant_id = Column(String, primary_key=True)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    total_score = Column(Float, nullable=False)
    rank = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class FinalLeaderboardEntry(Base):
    __tablename__ = "final_leaderboard_entries"

    competition_id = Column(String, primary_key=True)
    participant_id = Column(String, primary_key=True)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    llm_score = Column(Float, nullable=False)
    judge_score = Column(Float, nullable=False, default=0.0)
    final_score = Column(Float, nullable=True)  # NULL for automated-only participants
    rank = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
