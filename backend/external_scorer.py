"""
External grading model client (Azure OpenAI chat completions).

grade(question, rubric, student_answer, max_points) -> ExternalScore
Transient failures (429/5xx, timeouts, transport errors) are retried with a
short exponential backoff inside the call; anything else, or exhausting the
retries, raises ExternalScorerError and the job is abandoned.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from constants import (
    AZURE_OPENAI_API_KEY,
    AZURE_OPENAI_API_VERSION,
    AZURE_OPENAI_DEPLOYMENT,
    AZURE_OPENAI_ENDPOINT,
    LLM_HTTP_TIMEOUT,
    LLM_MAX_RETRIES,
)
from error_utils import ExternalScorerError
from models import ExternalScore

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

GRADING_SYSTEM_PROMPT = """You are an experienced academic grader. Evaluate student answers fairly and constructively.

GRADING:
- Judge the answer against the criteria in the grading rubric
- Award a score proportional to the quality and completeness of the answer
- Be rigorous but fair

FEEDBACK (shown to the student):
- Neutral, supportive academic tone
- If the answer is correct, briefly confirm its strengths
- If it is incomplete or wrong, explain clearly what is missing or incorrect
- Keep feedback short when everything is right, detailed when corrections are needed
- Do not quote the rubric criteria verbatim

RATIONALE (internal only):
- Explain how you arrived at the score with respect to the criteria

Return STRICT JSON only: {"score": number, "feedback": string, "rationale": string}"""


def build_grading_prompt(question: str, rubric: Optional[str], student_answer: str, max_points: float) -> str:
    return (
        f"QUESTION:\n{question}\n\n"
        f"GRADING RUBRIC ({max_points:g} points max):\n{rubric or 'No rubric provided; grade on correctness and completeness.'}\n\n"
        f"STUDENT ANSWER:\n{student_answer or '(empty answer)'}\n\n"
        f"Grade this answer out of {max_points:g}, with feedback for the student and your rationale."
    )


def _parse_completion(data: Dict[str, Any]) -> ExternalScore:
    choices = data.get("choices") or []
    content = choices[0].get("message", {}).get("content") if choices else None
    if not content:
        raise ExternalScorerError("Grading model returned an empty completion")
    try:
        payload = json.loads(content)
        return ExternalScore.model_validate(payload)
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise ExternalScorerError("Grading model returned malformed JSON") from e


class ExternalScorer:
    def __init__(
        self,
        endpoint: str = AZURE_OPENAI_ENDPOINT,
        api_key: str = AZURE_OPENAI_API_KEY,
        deployment: str = AZURE_OPENAI_DEPLOYMENT,
        api_version: str = AZURE_OPENAI_API_VERSION,
        timeout: float = LLM_HTTP_TIMEOUT,
        max_retries: int = LLM_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.deployment = deployment
        self.api_version = api_version
        self.timeout = timeout
        self.max_retries = max_retries
        self.transport = transport
        self.initial_delay = 0.5

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_key and self.deployment)

    def _body(self, prompt: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "messages": [
                {"role": "system", "content": GRADING_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        dep = (self.deployment or "").lower()
        # GPT-5 deployments take max_completion_tokens and reject temperature
        if "gpt-5" in dep or "gpt5" in dep:
            body["max_completion_tokens"] = 1000
        else:
            body["temperature"] = 0.0
            body["max_tokens"] = 1000
        return body

    async def grade(self, question: str, rubric: Optional[str], student_answer: str, max_points: float) -> ExternalScore:
        """Score is clamped to [0, max_points]."""
        if not self.configured:
            raise ExternalScorerError("External grading model is not configured")

        url = (
            f"{self.endpoint.rstrip('/')}/openai/deployments/{self.deployment}"
            f"/chat/completions?api-version={self.api_version}"
        )
        headers = {"api-key": self.api_key, "content-type": "application/json"}
        body = self._body(build_grading_prompt(question, rubric, student_answer, max_points))

        delay = self.initial_delay
        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    resp = await client.post(url, headers=headers, json=body)
            except httpx.HTTPError as e:
                if attempt < self.max_retries:
                    logger.warning(f"Grading model call failed ({e.__class__.__name__}); retrying in {delay}s")
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, 4.0)
                    continue
                raise ExternalScorerError("Grading model unreachable") from e

            if resp.status_code == 200:
                try:
                    data = resp.json() or {}
                except ValueError as e:
                    raise ExternalScorerError("Grading model returned a non-JSON response") from e
                result = _parse_completion(data)
                return result.model_copy(update={"score": min(max_points, max(0.0, result.score))})

            if resp.status_code in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                logger.warning(f"Grading model returned {resp.status_code}; retrying in {delay}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, 4.0)
                continue

            raise ExternalScorerError(f"Grading model returned HTTP {resp.status_code}")

        raise ExternalScorerError("Grading model retries exhausted")
