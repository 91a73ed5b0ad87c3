# tests/test_leaderboard_service.py

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import CompetitionNotFoundError
from app.models import (
    Competition,
    FinalLeaderboardEntry,
    JudgeEvaluation,
    LeaderboardEntry,
    Participant,
    Submission,
)
from app.services.leaderboard import LeaderboardService, RedisLeaderboardCache


@pytest.fixture
def cache():
    c = MagicMock()
    c.load.return_value = None
    return c


@pytest.fixture
def service(session_factory, cache):
    return LeaderboardService(session_factory=session_factory, cache=cache)


@pytest.fixture
def judged_competition(seed):
    seed(
        Competition(id="comp-1", title="Prompt Cup", top_n=2),
        *[Participant(id=pid, full_name=f"Person {pid}", email=f"{pid}@example.com") for pid in "abcd"],
        *[
            LeaderboardEntry(competition_id="comp-1", participant_id=pid, full_name=f"Person {pid}",
                             email=f"{pid}@example.com", total_score=score, rank=0)
            for pid, score in {"a": 90, "b": 85, "c": 80, "d": 75}.items()
        ],
        JudgeEvaluation(id="j-1", submission_id="s-a", competition_id="comp-1", participant_id="a", total_score=80),
        JudgeEvaluation(id="j-2", submission_id="s-b", competition_id="comp-1", participant_id="b", total_score=70),
    )
    return "comp-1"


def final_rows(session_factory, competition_id):
    db = session_factory()
    try:
        return {
            r.participant_id: r
            for r in db.query(FinalLeaderboardEntry).filter(FinalLeaderboardEntry.competition_id == competition_id)
        }
    finally:
        db.close()


class TestAutomatedLeaderboard:
    def test_sums_scored_submissions_per_participant(self, service, seed, session_factory):
        seed(
            Participant(id="p-1", full_name="Ada", email="ada@example.com"),
            Submission(id="s-1", competition_id="comp-1", participant_id="p-1", final_score=40.0),
            Submission(id="s-2", competition_id="comp-1", participant_id="p-1", final_score=35.5),
            Submission(id="s-3", competition_id="comp-1", participant_id="p-2", final_score=60.0),
            Submission(id="s-4", competition_id="comp-1", participant_id="p-2", final_score=None),
        )
        entries = {e.participant_id: e for e in service.generate_automated_leaderboard("comp-1")}

        assert entries["p-1"].automated_score == pytest.approx(75.5)
        assert entries["p-1"].full_name == "Ada"
        assert entries["p-2"].automated_score == pytest.approx(60.0)

        db = session_factory()
        try:
            ranks = {r.participant_id: r.rank for r in db.query(LeaderboardEntry).all()}
        finally:
            db.close()
        assert ranks == {"p-1": 1, "p-2": 2}


class TestFinalLeaderboard:
    def test_generation_persists_entries_and_flags_competition(self, service, judged_competition, session_factory, cache):
        entries = service.generate_final_leaderboard(judged_competition)

        assert [e.participant_id for e in entries] == ["a", "b", "c", "d"]
        rows = final_rows(session_factory, judged_competition)
        assert rows["a"].final_score == pytest.approx(85.0)
        assert rows["c"].final_score is None
        assert rows["c"].rank == 2
        assert rows["d"].rank == 4

        db = session_factory()
        try:
            competition = db.get(Competition, judged_competition)
        finally:
            db.close()
        assert competition.has_final_leaderboard
        assert isinstance(competition.final_leaderboard_generated_at, datetime)
        cache.store.assert_called_once()

    def test_regeneration_overwrites_previous_entries(self, service, judged_competition, session_factory, seed):
        seed(FinalLeaderboardEntry(competition_id=judged_competition, participant_id="zombie", llm_score=1.0, rank=99))
        service.generate_final_leaderboard(judged_competition)
        service.generate_final_leaderboard(judged_competition)

        rows = final_rows(session_factory, judged_competition)
        assert set(rows) == {"a", "b", "c", "d"}

    def test_level1_uses_automated_scores(self, service, judged_competition, session_factory):
        service.generate_level1_leaderboard(judged_competition)
        rows = final_rows(session_factory, judged_competition)
        assert rows["a"].final_score == 90
        assert rows["a"].judge_score == 0.0
        assert [rows[p].rank for p in "abcd"] == [1, 2, 3, 4]

    def test_unknown_competition(self, service):
        with pytest.raises(CompetitionNotFoundError):
            service.generate_final_leaderboard("nope")

    def test_cache_failure_does_not_fail_generation(self, service, judged_competition, cache):
        cache.store.side_effect = ConnectionError("redis down")
        assert len(service.generate_final_leaderboard(judged_competition)) == 4


class TestReads:
    def test_cache_hit_skips_database(self, service, cache):
        cache.load.return_value = [{"participantId": "a", "rank": 1}]
        assert service.get_final_leaderboard("comp-1") == [{"participantId": "a", "rank": 1}]

    def test_cache_miss_reads_database_in_rank_order(self, service, judged_competition):
        service.generate_final_leaderboard(judged_competition)
        entries = service.get_final_leaderboard(judged_competition)
        assert [e["participantId"] for e in entries] == ["a", "b", "c", "d"]
        assert entries[2]["finalScore"] is None

    def test_cache_error_falls_back_to_database(self, service, judged_competition, cache):
        cache.load.side_effect = ConnectionError("redis down")
        assert service.get_final_leaderboard(judged_competition) == []

    def test_judge_status(self, service, judged_competition):
        assert service.judge_evaluation_status(judged_competition) == {"complete": True, "topN": 2, "evaluated": 2}


class TestRedisLeaderboardCache:
    def test_store_and_load_round_trip_through_client(self):
        client = MagicMock()
        cache = RedisLeaderboardCache(redis_client=client)
        cache.store("comp-1", [{"participantId": "a"}])

        key, payload = client.set.call_args.args
        assert key == "final_leaderboard:comp-1"
        client.get.return_value = payload.encode("utf-8")
        assert cache.load("comp-1") == [{"participantId": "a"}]

    def test_missing_key(self):
        client = MagicMock()
        client.get.return_value = None
        assert RedisLeaderboardCache(redis_client=client).load("comp-1") is None
