# tests/test_ranking.py
"""Final ranking merge and tie-aware rank assignment."""

import pytest

from app.schemas.evaluation import FinalEntry, LeaderboardEntry
from app.services.ranking import (
    are_judge_evaluations_complete,
    assign_dense_ranks,
    compute_final_leaderboard,
    compute_level1_leaderboard,
    sum_human_scores,
)


def automated(**scores):
    return [LeaderboardEntry(participant_id=pid, full_name=pid.upper(), automated_score=s) for pid, s in scores.items()]


class TestFinalLeaderboard:
    def test_mixed_groups_follow_concatenation_order(self):
        result = compute_final_leaderboard(automated(a=90, b=85, c=80, d=75), {"a": 80, "b": 70}, top_n=2)

        assert [e.participant_id for e in result] == ["a", "b", "c", "d"]
        assert [e.score_for_rank for e in result] == [85, 77.5, 80, 75]
        # c is not strictly below b's 77.5, so it shares b's rank; d drops to its position
        assert [e.rank for e in result] == [1, 2, 2, 4]

    def test_blended_and_automated_only_scores(self):
        result = {e.participant_id: e for e in compute_final_leaderboard(automated(a=90, c=80), {"a": 80}, top_n=1)}

        assert result["a"].final_score == pytest.approx(85.0)
        assert result["a"].human_score == 80
        assert result["c"].final_score is None
        assert result["c"].human_score == 0.0

    def test_no_human_scores_sorts_by_automated(self):
        result = compute_final_leaderboard(automated(a=10, b=30, c=20), {}, top_n=3)
        assert [e.participant_id for e in result] == ["b", "c", "a"]
        assert [e.rank for e in result] == [1, 2, 3]

    def test_overflow_of_judged_group_precedes_automated_only(self):
        result = compute_final_leaderboard(automated(a=50, b=40, c=99), {"a": 50, "b": 40}, top_n=1)
        assert [e.participant_id for e in result] == ["a", "b", "c"]
        assert [e.rank for e in result] == [1, 2, 2]

    def test_equal_scores_share_rank_and_next_rank_skips(self):
        result = compute_final_leaderboard(automated(a=80, b=80, c=70), {}, top_n=0)
        assert [e.rank for e in result] == [1, 1, 3]

    def test_human_score_for_unknown_participant_is_ignored(self):
        result = compute_final_leaderboard(automated(a=60), {"ghost": 90}, top_n=1)
        assert [e.participant_id for e in result] == ["a"]
        assert result[0].final_score is None

    def test_rerun_is_deterministic(self):
        first = compute_final_leaderboard(automated(a=90, b=85, c=80, d=75), {"a": 80, "b": 70}, top_n=2)
        second = compute_final_leaderboard(automated(a=90, b=85, c=80, d=75), {"a": 80, "b": 70}, top_n=2)
        assert first == second

    def test_serialized_names(self):
        entry = compute_final_leaderboard(automated(a=90), {"a": 80}, top_n=1)[0]
        body = entry.model_dump(by_alias=True)
        assert body["participantId"] == "a"
        assert body["llmScore"] == 90
        assert body["judgeScore"] == 80
        assert body["finalScore"] == pytest.approx(85.0)
        assert body["rank"] == 1


class TestLevel1Leaderboard:
    def test_final_equals_automated(self):
        result = compute_level1_leaderboard(automated(a=70, b=90, c=90))
        assert [e.participant_id for e in result] == ["b", "c", "a"]
        assert [e.rank for e in result] == [1, 1, 3]
        assert all(e.final_score == e.automated_score for e in result)


class TestHelpers:
    def test_assign_dense_ranks_empty(self):
        assert assign_dense_ranks([]) == []

    def test_assign_dense_ranks_does_not_mutate_input(self):
        entries = [FinalEntry(participant_id="a", automated_score=1.0)]
        ranked = assign_dense_ranks(entries)
        assert ranked[0].rank == 1
        assert entries[0].rank == 0

    def test_sum_human_scores_per_participant(self):
        totals = sum_human_scores([("a", 40), ("a", 30), ("b", 50), ("x", 99)], eligible=["a", "b"])
        assert totals == {"a": 70.0, "b": 50.0}

    def test_judging_complete_only_at_exactly_top_n(self):
        assert are_judge_evaluations_complete({"a": 1.0, "b": 2.0}, 2)
        assert not are_judge_evaluations_complete({"a": 1.0}, 2)
        assert not are_judge_evaluations_complete({"a": 1.0, "b": 2.0, "c": 3.0}, 2)
