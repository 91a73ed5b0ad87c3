"""Final ranking that merges automated (LLM) and human (judge) scores.

The merge is deliberately NOT a global sort. Judge-evaluated participants
(group A) are ordered by their blended score, automated-only participants
(group B) by their automated score, and the output is::

    A[:top_n] + A[top_n:] + B

Ranks come from one left-to-right scan that compares each entry's ranking
score with the previous entry's raw score: a strictly lower score takes rank
``index + 1``, anything else reuses the previous rank. Because group B is not
merged back into group A's order, an automated-only participant can follow a
lower blended score and share its rank, e.g. blended 77.5 then automated 80
both rank 2.
"""
from typing import Iterable, Mapping, Sequence

from app.schemas.evaluation import FinalEntry, LeaderboardEntry


def assign_dense_ranks(entries: Sequence[FinalEntry]) -> list[FinalEntry]:
    """Tie-aware competition ranking (1, 1, 3) over the given order."""
    ranked: list[FinalEntry] = []
    current_rank = 0
    prev_score = None
    for index, entry in enumerate(entries):
        score = entry.score_for_rank
        if prev_score is None or score < prev_score:
            current_rank = index + 1
        ranked.append(entry.model_copy(update={"rank": current_rank}))
        prev_score = score
    return ranked


def compute_final_leaderboard(
    automated: Iterable[LeaderboardEntry],
    human_scores_by_participant: Mapping[str, float],
    top_n: int,
) -> list[FinalEntry]:
    participants: dict[str, FinalEntry] = {}
    for entry in automated:
        human = float(human_scores_by_participant.get(entry.participant_id, 0.0) or 0.0)
        final = (entry.automated_score + human) / 2 if human > 0 else None
        participants[entry.participant_id] = FinalEntry(
            participant_id=entry.participant_id,
            full_name=entry.full_name,
            email=entry.email,
            automated_score=entry.automated_score,
            human_score=human,
            final_score=final,
        )

    group_a = sorted(
        (p for p in participants.values() if p.human_score > 0),
        key=lambda p: p.final_score,
        reverse=True,
    )
    group_b = sorted(
        (p for p in participants.values() if p.human_score <= 0),
        key=lambda p: p.automated_score,
        reverse=True,
    )
    top_n = max(0, top_n)
    ordered = group_a[:top_n] + group_a[top_n:] + group_b
    return assign_dense_ranks(ordered)


def compute_level1_leaderboard(automated: Iterable[LeaderboardEntry]) -> list[FinalEntry]:
    """Single-track variant for competitions without a judging phase."""
    entries = [
        FinalEntry(
            participant_id=e.participant_id,
            full_name=e.full_name,
            email=e.email,
            automated_score=e.automated_score,
            human_score=0.0,
            final_score=e.automated_score,
        )
        for e in automated
    ]
    entries.sort(key=lambda e: e.automated_score, reverse=True)
    return assign_dense_ranks(entries)


def sum_human_scores(evaluations: Iterable[tuple[str, float]], eligible: Iterable[str] | None = None) -> dict[str, float]:
    """Total judge score per participant across their submissions.

    ``evaluations`` yields ``(participant_id, total_score)`` pairs, one per
    judged submission. When ``eligible`` is given, other participants are
    ignored.
    """
    allowed = set(eligible) if eligible is not None else None
    totals: dict[str, float] = {}
    for participant_id, score in evaluations:
        if allowed is not None and participant_id not in allowed:
            continue
        totals[participant_id] = totals.get(participant_id, 0.0) + float(score or 0.0)
    return totals


def are_judge_evaluations_complete(human_scores_by_participant: Mapping[str, float], top_n: int) -> bool:
    """True iff exactly ``top_n`` distinct participants have a recorded human score."""
    return len(human_scores_by_participant) == top_n
