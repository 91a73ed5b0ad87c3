from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, JSON
from app.db.base import Base, utcnow


class Competition(Base):
    __tablename__ = "competitions"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False, default="Untitled Competition")
    top_n = Column(Integer, nullable=False, default=0)
    has_final_leaderboard = Column(Boolean, nullable=False, default=False)
    final_leaderboard_generated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Challenge(Base):
    __tablename__ = "challenges"

    id = Column(String, primary_key=True, index=True)
    competition_id = Column(String, index=True, nullable=False)
    # [{"name": str, "description": str, "weight": float}, ...]
    rubric = Column(JSON, nullable=True)
    problem_statement = Column(Text, nullable=True)


class Participant(Base):
    __tablename__ = "participants"

    id = Column(String, primary_key=True, index=True)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
