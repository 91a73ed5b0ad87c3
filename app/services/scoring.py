"""Panel scoring of one submission by several independent LLM backends.

Every backend receives the same instruction payload, which spells out the
rubric as a JSON schema. Replies go through a single validation gate before
any score is trusted; a backend whose reply fails the gate is retried and, if
it still fails, counted as absent. The aggregate is the mean of the valid
backends' weighted scores.
"""
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence

import requests

from app.core.config import settings
from app.core.exceptions import BackendInvalidResponse
from app.core.metrics import (
    BACKEND_ABSENT_TOTAL,
    BACKEND_ATTEMPTS_TOTAL,
    EVALUATE_DURATION_SECONDS,
    DurationTimer,
)
from app.schemas.evaluation import ModelScore, RubricCriterion, SubmissionScore

logger = logging.getLogger(__name__)

JUSTIFICATION_FIELD = "description"


class OpenRouterBackend:
    """One scoring backend: a chat-completions model behind a bearer-authenticated API."""

    def __init__(
        self,
        model: str,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.model = model
        self.api_url = api_url or settings.SCORING_API_URL
        self.api_key = api_key if api_key is not None else settings.SCORING_API_KEY
        self.max_tokens = max_tokens or settings.SCORING_MAX_TOKENS
        self.temperature = settings.SCORING_TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or settings.SCORING_REQUEST_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    @property
    def backend_id(self) -> str:
        return self.model

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if settings.SCORING_HTTP_REFERER:
            headers["HTTP-Referer"] = settings.SCORING_HTTP_REFERER
        if settings.SCORING_X_TITLE:
            headers["X-Title"] = settings.SCORING_X_TITLE
        resp = self.session.post(
            self.api_url,
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
            },
            headers=headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str) or not content.strip():
            raise BackendInvalidResponse(f"Model {self.model} returned empty content")
        return content


def default_backends() -> list[OpenRouterBackend]:
    return [OpenRouterBackend(model) for model in settings.scoring_models]


def build_system_prompt(rubric: Sequence[RubricCriterion]) -> str:
    """Instruction payload embedding the rubric as the required reply schema."""
    schema_fields = ", ".join(
        f"{json.dumps(c.name)}: <integer 0-100>" for c in rubric
    )
    return f"""
<role>
You are a meticulous and impartial AI judge for a prompt engineering competition.
Your task is to provide a quantitative analysis of a student's submission based on a given problem statement and rubric.
</role>

<evaluation_process>
1. Analyze the problem statement. It is the ground truth for requirements and constraints.
2. Read each rubric criterion and what a strong submission looks like for it.
3. Assess the submission against the problem statement, one criterion at a time.
4. Assign each criterion an integer score from 0 to 100.
</evaluation_process>

<scoring_guide>
- 81-100 (Excellent): meets or exceeds every aspect of the criterion.
- 61-80 (Good): meets the criterion with minor room for improvement.
- 41-60 (Average): addresses the criterion with notable flaws or omissions.
- 21-40 (Poor): attempts the criterion but fails in significant ways.
- 0-20 (Failing): does not address the criterion or is irrelevant.
</scoring_guide>

<output_format>
Your final output MUST be a single, valid JSON object and nothing else.
Every field below is required.

{{
  {schema_fields},
  "{JUSTIFICATION_FIELD}": "<A 1-2 sentence, neutral justification for your scores.>"
}}
</output_format>
""".strip()


def build_user_prompt(submission_text: str, rubric: Sequence[RubricCriterion], brief: str) -> str:
    criteria = "\n".join(f"- {c.name} : {c.description}" for c in rubric)
    return f"""
Evaluate the following student's prompt according to the PROBLEM STATEMENT and the rubric below.
Score each criterion from 0-100 (integers only).

PROBLEM STATEMENT (authoritative brief):
{brief}

Rubric:
{criteria}

Prompt to Evaluate:
\"\"\"{submission_text}\"\"\"

Return only the JSON object with scores for each criterion and a brief description.
""".strip()


def extract_json_object(content: str) -> dict:
    """Parse the first balanced ``{...}`` in ``content``, tolerating wrapper text.

    Braces inside JSON strings are ignored while scanning.
    """
    start = content.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(content)):
            ch = content[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidate = content[start:i + 1]
                    try:
                        parsed = json.loads(candidate)
                    except json.JSONDecodeError:
                        break
                    if isinstance(parsed, dict):
                        return parsed
                    break
        start = content.find("{", start + 1)
    raise BackendInvalidResponse("No valid JSON object found in model output")


def weighted_score(scores: dict[str, int], rubric: Sequence[RubricCriterion]) -> float:
    return float(sum(scores[c.name] * c.weight for c in rubric if c.weight > 0))


def validate_reply(payload: dict, rubric: Sequence[RubricCriterion]) -> ModelScore:
    """The single validation gate. Rejects rather than coerces."""
    scores: dict[str, int] = {}
    missing = [c.name for c in rubric if c.name not in payload]
    if missing:
        raise BackendInvalidResponse(f"Missing criteria: {', '.join(missing)}")
    for c in rubric:
        value = payload[c.name]
        # bool is an int subclass; JSON true/false is not a score
        if isinstance(value, bool) or not isinstance(value, int):
            raise BackendInvalidResponse(f"Score for {c.name!r} is not an integer: {value!r}")
        if not 0 <= value <= 100:
            raise BackendInvalidResponse(f"Score for {c.name!r} out of range: {value}")
        scores[c.name] = value
    description = payload.get(JUSTIFICATION_FIELD)
    if not isinstance(description, str) or not description.strip():
        raise BackendInvalidResponse("Missing or empty justification")
    return ModelScore(scores=scores, final_score=weighted_score(scores, rubric), description=description)


class ScoringAggregator:
    def __init__(
        self,
        backends: Optional[Sequence] = None,
        attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backends = list(backends) if backends is not None else default_backends()
        self.attempts = max(1, attempts or settings.SCORING_RETRY_ATTEMPTS)
        self.retry_delay = settings.SCORING_RETRY_DELAY_MS / 1000.0 if retry_delay is None else retry_delay
        self.sleep = sleep

    def evaluate(
        self,
        submission_text: str,
        rubric: Sequence[RubricCriterion],
        brief: str,
        submission_id: Optional[str] = None,
    ) -> SubmissionScore:
        """Score one submission with every backend in parallel.

        Never raises for backend failures: a backend that cannot produce a
        valid reply is recorded as absent, and the aggregate is None only when
        all backends are absent.
        """
        system_prompt = build_system_prompt(rubric)
        user_prompt = build_user_prompt(submission_text, rubric, brief)

        with DurationTimer() as timer:
            if self.backends:
                with ThreadPoolExecutor(max_workers=len(self.backends)) as pool:
                    futures = [
                        pool.submit(self._score_with_retry, backend, system_prompt, user_prompt, rubric, submission_id)
                        for backend in self.backends
                    ]
                    results = [f.result() for f in futures]
            else:
                results = []
        EVALUATE_DURATION_SECONDS.observe(timer.seconds)

        per_backend = {backend.backend_id: result for backend, result in zip(self.backends, results)}
        valid = [r.final_score for r in results if r is not None]
        aggregate = sum(valid) / len(valid) if valid else None
        if aggregate is None:
            logger.warning("all_backends_failed", extra={"submission_id": submission_id})
        return SubmissionScore(
            submission_id=submission_id,
            per_backend_scores=per_backend,
            aggregate_score=aggregate,
        )

    def _score_with_retry(self, backend, system_prompt, user_prompt, rubric, submission_id) -> Optional[ModelScore]:
        backend_id = backend.backend_id
        for attempt in range(1, self.attempts + 1):
            if attempt > 1:
                self.sleep(self.retry_delay)
            try:
                content = backend.complete(system_prompt, user_prompt)
                score = validate_reply(extract_json_object(content), rubric)
                BACKEND_ATTEMPTS_TOTAL.labels(backend=backend_id, outcome="ok").inc()
                return score
            except BackendInvalidResponse as e:
                BACKEND_ATTEMPTS_TOTAL.labels(backend=backend_id, outcome="invalid").inc()
                logger.warning(
                    f"Invalid response from {backend_id}: {str(e)}",
                    extra={"backend": backend_id, "attempt": attempt, "submission_id": submission_id},
                )
            except (requests.RequestException, ValueError) as e:
                BACKEND_ATTEMPTS_TOTAL.labels(backend=backend_id, outcome="transport").inc()
                logger.warning(
                    f"Request to {backend_id} failed: {str(e)}",
                    extra={"backend": backend_id, "attempt": attempt, "submission_id": submission_id},
                )
        BACKEND_ABSENT_TOTAL.labels(backend=backend_id).inc()
        logger.error(
            f"{backend_id} produced no valid score after {self.attempts} attempts",
            extra={"backend": backend_id, "submission_id": submission_id},
        )
        return None
