# tests/test_scoring.py
"""Scoring panel: reply validation, weighted scores, retry and partial failure."""

import json
from unittest.mock import MagicMock

import pytest
import requests
from pydantic import ValidationError

from app.core.exceptions import BackendInvalidResponse
from app.schemas.evaluation import RubricCriterion
from app.services.scoring import (
    OpenRouterBackend,
    ScoringAggregator,
    build_system_prompt,
    extract_json_object,
    validate_reply,
    weighted_score,
)

RUBRIC = [
    RubricCriterion(name="Correctness", description="Solves it", weight=0.6),
    RubricCriterion(name="Creativity", description="Original", weight=0.4),
]


class FakeBackend:
    """Returns queued replies in order; an Exception instance is raised instead."""

    def __init__(self, backend_id, *replies):
        self.backend_id = backend_id
        self.replies = list(replies)
        self.calls = 0

    def complete(self, system_prompt, user_prompt):
        self.calls += 1
        reply = self.replies.pop(0) if self.replies else self.last
        self.last = reply
        if isinstance(reply, Exception):
            raise reply
        return reply


def reply(correctness, creativity, description="ok"):
    return json.dumps({"Correctness": correctness, "Creativity": creativity, "description": description})


def aggregator(*backends, attempts=2):
    sleeps = []
    agg = ScoringAggregator(backends=backends, attempts=attempts, retry_delay=0.5, sleep=sleeps.append)
    return agg, sleeps


class TestValidation:
    def test_weighted_score_example(self):
        score = validate_reply({"Correctness": 80, "Creativity": 70, "description": "ok"}, RUBRIC)
        assert score.final_score == pytest.approx(76.0)
        assert score.scores == {"Correctness": 80, "Creativity": 70}

    def test_zero_weight_criteria_do_not_count(self):
        rubric = RUBRIC + [RubricCriterion(name="Style", weight=0.0)]
        assert weighted_score({"Correctness": 80, "Creativity": 70, "Style": 100}, rubric) == pytest.approx(76.0)

    def test_negative_weight_is_rejected(self):
        with pytest.raises(ValidationError):
            RubricCriterion(name="Style", weight=-0.1)

    @pytest.mark.parametrize(
        "payload",
        [
            {"Correctness": 80, "description": "missing a criterion"},
            {"Correctness": 80.5, "Creativity": 70, "description": "float"},
            {"Correctness": "80", "Creativity": 70, "description": "string"},
            {"Correctness": True, "Creativity": 70, "description": "bool"},
            {"Correctness": 101, "Creativity": 70, "description": "too high"},
            {"Correctness": -1, "Creativity": 70, "description": "negative"},
            {"Correctness": 80, "Creativity": 70},
            {"Correctness": 80, "Creativity": 70, "description": "   "},
        ],
    )
    def test_rejects_invalid_replies(self, payload):
        with pytest.raises(BackendInvalidResponse):
            validate_reply(payload, RUBRIC)

    def test_criterion_names_must_match_exactly(self):
        with pytest.raises(BackendInvalidResponse):
            validate_reply({"correctness": 80, "Creativity": 70, "description": "ok"}, RUBRIC)

    def test_boundary_scores_accepted(self):
        score = validate_reply({"Correctness": 0, "Creativity": 100, "description": "edges"}, RUBRIC)
        assert score.final_score == pytest.approx(40.0)


class TestExtractJson:
    def test_object_wrapped_in_prose(self):
        content = 'Here you go:\n```json\n{"Correctness": 80, "Creativity": 70, "description": "ok"}\n```'
        assert extract_json_object(content)["Correctness"] == 80

    def test_braces_inside_strings(self):
        content = '{"Correctness": 80, "Creativity": 70, "description": "uses {placeholders}"}'
        assert extract_json_object(content)["description"] == "uses {placeholders}"

    def test_skips_unparseable_candidate(self):
        content = '{not json} then {"Correctness": 1, "Creativity": 2, "description": "x"}'
        assert extract_json_object(content)["Creativity"] == 2

    def test_no_object_raises(self):
        with pytest.raises(BackendInvalidResponse):
            extract_json_object("I refuse to answer")


class TestSystemPrompt:
    def test_schema_lists_every_criterion(self):
        prompt = build_system_prompt(RUBRIC)
        assert '"Correctness": <integer 0-100>' in prompt
        assert '"Creativity": <integer 0-100>' in prompt
        assert '"description"' in prompt


class TestAggregator:
    def test_single_backend_example(self):
        agg, _ = aggregator(FakeBackend("m1", reply(80, 70)))
        result = agg.evaluate("prompt", RUBRIC, "brief", submission_id="s-1")
        assert result.aggregate_score == pytest.approx(76.0)
        assert result.submission_id == "s-1"

    def test_two_of_three_valid(self):
        agg, _ = aggregator(
            FakeBackend("m1", reply(80, 70)),
            FakeBackend("m2", reply(90, 75)),
            FakeBackend("m3", "not json at all"),
        )
        result = agg.evaluate("prompt", RUBRIC, "brief")
        assert result.aggregate_score == pytest.approx(80.0)
        assert result.per_backend_scores["m3"] is None
        assert set(result.valid_scores) == {"m1", "m2"}

    def test_all_backends_fail_gives_no_aggregate(self):
        agg, _ = aggregator(
            FakeBackend("m1", "garbage"),
            FakeBackend("m2", requests.ConnectionError("down")),
        )
        result = agg.evaluate("prompt", RUBRIC, "brief")
        assert result.aggregate_score is None
        assert result.valid_scores == {}

    def test_retry_recovers_and_sleeps_once(self):
        backend = FakeBackend("m1", requests.Timeout("slow"), reply(80, 70))
        agg, sleeps = aggregator(backend)
        result = agg.evaluate("prompt", RUBRIC, "brief")
        assert result.aggregate_score == pytest.approx(76.0)
        assert backend.calls == 2
        assert sleeps == [0.5]

    def test_gives_up_after_configured_attempts(self):
        backend = FakeBackend("m1", "bad")
        agg, sleeps = aggregator(backend, attempts=2)
        assert agg.evaluate("prompt", RUBRIC, "brief").aggregate_score is None
        assert backend.calls == 2
        assert sleeps == [0.5]

    def test_no_sleep_when_first_attempt_succeeds(self):
        agg, sleeps = aggregator(FakeBackend("m1", reply(50, 50)))
        agg.evaluate("prompt", RUBRIC, "brief")
        assert sleeps == []


class TestOpenRouterBackend:
    def _response(self, body):
        resp = MagicMock()
        resp.json.return_value = body
        resp.raise_for_status.return_value = None
        return resp

    def test_posts_bearer_request_and_returns_content(self):
        session = MagicMock()
        session.post.return_value = self._response({"choices": [{"message": {"content": "{}"}}]})
        backend = OpenRouterBackend("model-a", api_url="https://llm.test/v1/chat", api_key="k", session=session)

        assert backend.complete("system", "user") == "{}"
        args, kwargs = session.post.call_args
        assert args[0] == "https://llm.test/v1/chat"
        assert kwargs["headers"]["Authorization"] == "Bearer k"
        assert kwargs["json"]["model"] == "model-a"
        assert kwargs["json"]["messages"][0] == {"role": "system", "content": "system"}

    def test_empty_content_is_invalid(self):
        session = MagicMock()
        session.post.return_value = self._response({"choices": [{"message": {"content": ""}}]})
        backend = OpenRouterBackend("model-a", api_key="k", session=session)
        with pytest.raises(BackendInvalidResponse):
            backend.complete("system", "user")

    def test_http_error_propagates_as_request_exception(self):
        session = MagicMock()
        resp = self._response({})
        resp.raise_for_status.side_effect = requests.HTTPError("502")
        session.post.return_value = resp
        backend = OpenRouterBackend("model-a", api_key="k", session=session)
        with pytest.raises(requests.RequestException):
            backend.complete("system", "user")
