"""
Answer grading: local checks for closed-form questions and the batch
grading oracle for open-ended ones
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from quiz_tutor.config import settings
from quiz_tutor.core.exceptions import InvalidInput, OracleUnavailable
from quiz_tutor.core.llm import LLMProvider, get_llm_provider
from quiz_tutor.core.logging import get_logger
from quiz_tutor.core.questions import (
    GradedQuestion,
    GradingRequestItem,
    Outcome,
    Question,
)
from quiz_tutor.core.retry import oracle_retry


logger = get_logger(__name__)


def _as_index_set(answer: Any) -> Optional[frozenset]:
    """Selected option indices, or None when the answer is not an index collection."""
    if not isinstance(answer, (list, tuple, set, frozenset)):
        return None
    for value in answer:
        if isinstance(value, bool) or not isinstance(value, int):
            return None
    return frozenset(answer)


def grade_answer(question: Question, answer: Any) -> Optional[bool]:
    """Decide correctness of one closed-form answer.

    Returns None for open-ended questions, which only the grading oracle can
    judge. A missing answer or one of the wrong shape is simply incorrect.
    """
    qtype = question.type
    if qtype == "open_ended":
        return None

    if qtype == "true_false":
        return isinstance(answer, bool) and answer == question.correct_answer

    selected = _as_index_set(answer)
    if selected is None:
        return False
    if qtype == "single":
        return len(selected) == 1 and selected == question.correct_indices
    if qtype == "multiple":
        # No partial credit: the whole selection must match
        return selected == question.correct_indices
    raise ValueError(f"Unknown question type: {qtype}")


def classify_outcome(question: Question, answer: Any, graded: Optional[GradedQuestion] = None) -> Outcome:
    if question.type == "open_ended":
        if graded is not None and graded.grade in ("correct", "partial"):
            return graded.grade
        return "incorrect"
    return "correct" if grade_answer(question, answer) else "incorrect"


def answer_text(answer: Any) -> str:
    """Free-text answer as sent to the oracle; anything else grades as blank."""
    return answer.strip() if isinstance(answer, str) else ""


def extract_improvements(grading_results: List[GradedQuestion]) -> List[str]:
    """Deduplicated improvement suggestions across a grading batch"""
    improvements: List[str] = []
    for result in grading_results:
        improvements.extend(result.improvements)
    return list(dict.fromkeys(improvements))


class OpenEndedBatchGrader(ABC):
    """Grades a batch of open-ended answers in a single round-trip.

    Implementations must return exactly one GradedQuestion per request item,
    in request order, or raise OracleUnavailable for the whole batch.
    """

    async def grade_batch(self, items: List[GradingRequestItem]) -> List[GradedQuestion]:
        if not items:
            raise InvalidInput("Grading batch must contain at least one question")
        graded = await self._grade(items)
        if len(graded) != len(items):
            raise OracleUnavailable(
                "Grading oracle returned a misaligned batch",
                {"requested": len(items), "returned": len(graded)}
            )
        return graded

    @abstractmethod
    async def _grade(self, items: List[GradingRequestItem]) -> List[GradedQuestion]:
        pass


def parse_graded_items(raw_items: Any) -> List[GradedQuestion]:
    if not isinstance(raw_items, list):
        raise OracleUnavailable("Invalid response format: missing graded array")
    try:
        return [GradedQuestion.model_validate(item) for item in raw_items]
    except ValidationError as e:
        raise OracleUnavailable("Invalid graded item in oracle response", {"error": str(e)}) from e


GRADED_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "graded": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string"},
                    "answer": {"type": "string"},
                    "grade": {"type": "string", "enum": ["correct", "incorrect", "partial"]},
                    "score": {"type": "number"},
                    "feedback": {"type": "string"},
                    "improvements": {"type": "array", "items": {"type": "string"}},
                    "weakAreas": {"type": "array", "items": {"type": "string"}}
                },
                "required": ["grade", "score", "feedback", "improvements", "weakAreas"]
            }
        }
    },
    "required": ["graded"]
}


class LLMOpenEndedGrader(OpenEndedBatchGrader):
    """Grade open-ended answers with one LLM call per batch."""

    system_prompt = (
        "You are an expert educational tutor. Always respond with valid JSON in the exact format "
        "requested. Provide detailed, constructive feedback that helps students learn."
    )

    def __init__(self, llm_provider: Optional[LLMProvider] = None):
        self.llm = llm_provider or get_llm_provider()

    @staticmethod
    def build_prompt(items: List[GradingRequestItem]) -> str:
        blocks = []
        for idx, item in enumerate(items, start=1):
            block = f"Q{idx}: {item.question}\nStudent answer: {item.answer or '(no answer)'}"
            if item.context:
                block += f"\nExpected/Context: {item.context}"
            blocks.append(block)
        return (
            "Grade each open-ended student answer below. For every question:\n"
            "1. Grade the answer as \"correct\", \"incorrect\", or \"partial\"\n"
            "2. Give a score from 0 to 1\n"
            "3. Explain the grade in the feedback\n"
            "4. List specific improvements\n"
            "5. Identify weak areas or concepts the student needs to work on\n\n"
            "Grading bands:\n"
            "- correct (0.8-1.0): complete understanding, covers all key points\n"
            "- partial (0.3-0.7): some understanding, missing key elements or minor errors\n"
            "- incorrect (0.0-0.2): fundamental misunderstanding or no answer\n\n"
            f"Return exactly {len(items)} graded entries in the same order as the questions.\n\n"
            "Questions to grade:\n" + "\n\n".join(blocks)
        )

    async def _grade(self, items: List[GradingRequestItem]) -> List[GradedQuestion]:
        try:
            data = await self.llm.generate_json(
                prompt=self.build_prompt(items),
                schema=GRADED_SCHEMA,
                system_prompt=self.system_prompt,
                root_key="graded"
            )
        except Exception as e:
            raise OracleUnavailable("LLM grading call failed", {"error": str(e)}) from e
        return parse_graded_items(data.get("graded"))


class HttpOpenEndedGrader(OpenEndedBatchGrader):
    """Grade open-ended answers through a remote grading function.

    POSTs the request items as a JSON array and expects ``{"graded": [...]}``.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.url = url or settings.grading_service_url
        if not self.url:
            raise InvalidInput("grading_service_url is not configured")
        self.client = client
        self.headers = {"Content-Type": "application/json", **(headers or {})}

    @oracle_retry
    async def _post(self, client: httpx.AsyncClient, payload: List[Dict[str, Any]]) -> httpx.Response:
        return await client.post(self.url, json=payload, headers=self.headers)

    async def _send(self, payload: List[Dict[str, Any]]) -> httpx.Response:
        if self.client is not None:
            return await self._post(self.client, payload)
        async with httpx.AsyncClient(timeout=settings.grading_timeout) as client:
            return await self._post(client, payload)

    async def _grade(self, items: List[GradingRequestItem]) -> List[GradedQuestion]:
        payload = [item.model_dump() for item in items]
        try:
            response = await self._send(payload)
        except httpx.HTTPError as e:
            raise OracleUnavailable("Grading service unreachable", {"error": str(e)}) from e

        if response.is_error:
            message = f"HTTP {response.status_code}"
            try:
                message = response.json().get("error") or message
            except (ValueError, AttributeError):
                if response.text:
                    message = response.text
            raise OracleUnavailable("Grading service error", {"status": response.status_code, "error": message})

        try:
            data = response.json()
        except ValueError as e:
            raise OracleUnavailable("Grading service returned invalid JSON") from e
        if not isinstance(data, dict):
            raise OracleUnavailable("Invalid response format: missing graded array")
        return parse_graded_items(data.get("graded"))


def get_open_ended_grader() -> OpenEndedBatchGrader:
    """Grader selected from configuration"""
    if settings.grading_service_url:
        return HttpOpenEndedGrader()
    return LLMOpenEndedGrader()
