from app.models.competition import Competition, Challenge, Participant
from app.models.submission import Submission, JudgeEvaluation
from app.models.evaluation import EvaluationLease, EvaluationProgress
from app.models.leaderboard import LeaderboardEntry, FinalLeaderboardEntry

__all__ = [
    "Competition",
    "Challenge",
    "Participant",
    "Submission",
    "JudgeEvaluation",
    "EvaluationLease",
    "EvaluationProgress",
    "LeaderboardEntry",
    "FinalLeaderboardEntry",
]
