"""
Feedback generator boundary for open-ended answers.

The grading engine only sees the ``FeedbackGenerator`` protocol. Two
implementations are provided:

- ``HttpFeedbackGenerator`` calls an OpenAI-compatible chat-completions
  endpoint (LM Studio, OpenRouter, OpenAI) through httpx.
- ``StubFeedbackGenerator`` scores deterministically from rubric keywords and
  can be scripted to fail, for tests and offline runs.

Failures are classified at this boundary: timeouts, connection errors, 429
and 5xx become ``TransientExternalError``; other 4xx responses and replies
that are not valid grading JSON become ``TerminalExternalError``.
"""

import json
import logging
import re
import threading
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..exceptions import (
    ConfigurationError,
    TerminalExternalError,
    TransientExternalError,
)
from .settings_config_service import get_settings_service


@dataclass
class FeedbackResult:
    """Raw score on the rubric's scale plus the explanation shown to the student"""

    score: float
    explanation: str
    max_score: float = 5.0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def normalized(self) -> float:
        if self.max_score <= 0:
            return 0.0
        return max(0.0, min(1.0, self.score / self.max_score))


class FeedbackGenerator(Protocol):
    name: str

    def generate_feedback(self, rubric: Dict[str, Any], answer: str) -> FeedbackResult: ...


def parse_grading_reply(content: str, max_score: float) -> FeedbackResult:
    """
    Extract the grading JSON from a model reply.

    Raises:
        TerminalExternalError: if no JSON object with a numeric score is present
    """
    json_str = None
    if "```" in content:
        blocks = re.findall(
            r"```(?:json)?\s*(.*?)\s*```", content, re.DOTALL | re.IGNORECASE
        )
        for block in blocks:
            if "{" in block and "}" in block:
                json_str = block
                break

    if not json_str:
        json_start = content.find("{")
        json_end = content.rfind("}") + 1
        if json_start != -1 and json_end > json_start:
            json_str = content[json_start:json_end]

    if not json_str:
        raise TerminalExternalError("Feedback reply contained no JSON object")

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise TerminalExternalError(f"Feedback reply was not valid JSON: {e}")

    if not isinstance(data, dict):
        raise TerminalExternalError("Feedback reply JSON must be an object")

    raw_score = data.get("score")
    if isinstance(raw_score, bool) or not isinstance(raw_score, (int, float)):
        raise TerminalExternalError("Feedback reply is missing a numeric 'score'")

    return FeedbackResult(
        score=min(max(float(raw_score), 0.0), max_score),
        explanation=str(data.get("explanation") or data.get("feedback") or ""),
        max_score=max_score,
        details={
            key: data[key]
            for key in ("strengths", "improvements", "misconceptions")
            if key in data
        },
    )


class HttpFeedbackGenerator:
    """Feedback generator backed by an OpenAI-compatible HTTP endpoint"""

    name = "http"

    def __init__(
        self,
        url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if not url:
            raise ConfigurationError("Feedback generator URL not configured")
        self.url = url
        self.model = model
        self.api_key = api_key
        self.logger = logging.getLogger(__name__)
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0)
        )
        weakref.finalize(self, self._client.close)

    def close(self):
        self._client.close()

    def _build_prompt(self, rubric: Dict[str, Any], answer: str) -> str:
        max_score = rubric.get("max_score", 5)
        criteria = rubric.get("criteria")
        criteria_str = (
            json.dumps(criteria, indent=2) if criteria else "Judge accuracy and clarity"
        )
        reference = rubric.get("reference_answer") or "None provided"
        return f"""
        Grade this student's answer to a reading comprehension question.

        Question: {rubric.get("question", "")}
        Question Type: {rubric.get("activity_type", "short_answer")}
        Reference Answer: {reference}
        Rubric: {criteria_str}
        Student's Answer: {answer}

        Award a score from 0 to {max_score} following the rubric.

        Return only JSON:
        {{
            "score": 3,
            "explanation": "What the answer did well and what it missed",
            "strengths": ["..."],
            "improvements": ["..."]
        }}
        """

    def generate_feedback(self, rubric: Dict[str, Any], answer: str) -> FeedbackResult:
        max_score = float(rubric.get("max_score", 5))
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        data = {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": "You are an expert language teacher. Grade fairly and return JSON only.",
                },
                {"role": "user", "content": self._build_prompt(rubric, answer)},
            ],
            "temperature": 0.2,
            "max_tokens": 600,
        }

        try:
            response = self._client.post(self.url, json=data, headers=headers)
        except httpx.TimeoutException:
            raise TransientExternalError("Feedback generator timed out")
        except httpx.TransportError as e:
            raise TransientExternalError(f"Feedback generator unreachable: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientExternalError(
                f"Feedback generator unavailable ({response.status_code})"
            )
        if response.status_code >= 400:
            raise TerminalExternalError(
                f"Feedback generator rejected request ({response.status_code}): "
                f"{response.text[:200]}"
            )

        try:
            result = response.json()
            content = result["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TerminalExternalError(f"Unexpected feedback response shape: {e}")

        return parse_grading_reply(content or "", max_score)


class StubFeedbackGenerator:
    """
    Deterministic feedback generator.

    Scores the share of rubric keywords (or reference-answer words) present in
    the answer. ``script`` is a list of exceptions raised, in order, by the
    first calls; once exhausted the generator scores normally.
    """

    name = "stub"

    def __init__(
        self,
        script: Optional[List[Exception]] = None,
        latency_seconds: float = 0.0,
    ):
        self.script = list(script or [])
        self.latency_seconds = latency_seconds
        self.calls = 0
        self._lock = threading.Lock()

    def fail_next(self, *errors: Exception):
        with self._lock:
            self.script.extend(errors)

    @staticmethod
    def _words(text: str) -> List[str]:
        return re.findall(r"[a-z0-9']+", text.lower())

    def generate_feedback(self, rubric: Dict[str, Any], answer: str) -> FeedbackResult:
        with self._lock:
            self.calls += 1
            error = self.script.pop(0) if self.script else None
        if self.latency_seconds:
            time.sleep(self.latency_seconds)
        if error is not None:
            raise error

        max_score = float(rubric.get("max_score", 5))
        keywords = [k.lower() for k in rubric.get("keywords") or []]
        if not keywords:
            keywords = sorted(set(self._words(rubric.get("reference_answer") or "")))
        answer_words = set(self._words(answer))

        if not keywords:
            ratio = 1.0 if answer_words else 0.0
        else:
            ratio = sum(1 for k in keywords if k in answer_words) / len(keywords)

        matched = [k for k in keywords if k in answer_words]
        return FeedbackResult(
            score=round(ratio * max_score, 2),
            explanation=f"Matched {len(matched)} of {len(keywords)} key points.",
            max_score=max_score,
            details={"matched": matched},
        )


def build_feedback_generator(settings=None) -> FeedbackGenerator:
    """Create the configured feedback generator"""
    settings = settings or get_settings_service()
    provider = settings.get("feedback", "provider", "http")
    if provider == "stub":
        return StubFeedbackGenerator()
    if provider == "http":
        return HttpFeedbackGenerator(
            url=settings.get("feedback", "url", ""),
            model=settings.get("feedback", "model", ""),
            api_key=settings.get("feedback", "api_key", "") or None,
            timeout_seconds=settings.getfloat("feedback", "timeout_seconds", 30.0),
        )
    raise ConfigurationError(f"Unsupported feedback provider: {provider}")
