"""Value types shared by the orchestrator, scoring and ranking services."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class RunStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class RunState(str, Enum):
    """Orchestrator lifecycle. PAUSED is only entered through lease recovery."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class RubricCriterion(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    weight: float = Field(0.0, ge=0)


class ModelScore(BaseModel):
    """One backend's validated verdict on one submission."""

    scores: dict[str, int]
    final_score: float = Field(serialization_alias="finalScore")
    description: str

    model_config = ConfigDict(populate_by_name=True)


class SubmissionScore(BaseModel):
    submission_id: Optional[str] = None
    per_backend_scores: dict[str, Optional[ModelScore]] = Field(default_factory=dict)
    aggregate_score: Optional[float] = None

    @property
    def valid_scores(self) -> dict[str, ModelScore]:
        return {k: v for k, v in self.per_backend_scores.items() if v is not None}


class LeaseInfo(BaseModel):
    is_locked: bool = Field(False, serialization_alias="isLocked")
    locked_by: Optional[str] = Field(None, serialization_alias="lockedBy")
    locked_by_user: Optional[str] = Field(None, serialization_alias="lockedByUser")
    locked_at: Optional[datetime] = Field(None, serialization_alias="lockedAt")
    reason: Optional[str] = Field(None, serialization_alias="lockReason")
    version: int = 0

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class LeaseResult(BaseModel):
    """Outcome of LeaseLock.acquire: Acquired (acquired=True) or Busy."""

    acquired: bool
    lease: LeaseInfo
    recovered_from: Optional[str] = None


class RunProgress(BaseModel):
    competition_id: str = Field(validation_alias=AliasChoices("competition_id", "competitionId"), serialization_alias="competitionId")
    total_submissions: int = Field(0, validation_alias=AliasChoices("total_submissions", "totalSubmissions"), serialization_alias="totalSubmissions")
    evaluated_submissions: int = Field(
        0, validation_alias=AliasChoices("evaluated_submissions", "evaluatedSubmissions"), serialization_alias="evaluatedSubmissions"
    )
    start_time: Optional[datetime] = Field(None, validation_alias=AliasChoices("start_time", "startTime"), serialization_alias="startTime")
    last_update_time: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("last_update_time", "lastUpdateTime"), serialization_alias="lastUpdateTime"
    )
    status: RunStatus = Field(
        RunStatus.RUNNING, validation_alias=AliasChoices("status", "evaluationStatus"), serialization_alias="evaluationStatus"
    )
    pause_reason: Optional[str] = Field(None, validation_alias=AliasChoices("pause_reason", "pauseReason"), serialization_alias="pauseReason")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING


class LeaderboardEntry(BaseModel):
    """Automated-track standing used as ranking input."""

    participant_id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    automated_score: float = 0.0


class FinalEntry(BaseModel):
    participant_id: str = Field(serialization_alias="participantId")
    full_name: Optional[str] = Field(None, serialization_alias="fullName")
    email: Optional[str] = None
    automated_score: float = Field(serialization_alias="llmScore")
    human_score: float = Field(0.0, serialization_alias="judgeScore")
    final_score: Optional[float] = Field(None, serialization_alias="finalScore")
    rank: int = 0

    model_config = ConfigDict(populate_by_name=True)

    @property
    def score_for_rank(self) -> float:
        if self.human_score > 0 and self.final_score is not None:
            return self.final_score
        return self.automated_score


class StartEvaluationRequest(BaseModel):
    competitionId: str = ""
    userId: str = ""
