import os

# Settings are read once at import time
os.environ.setdefault("PROGRESS_BACKEND", "memory")
os.environ.setdefault("ORACLE_MAX_RETRIES", "1")
os.environ.setdefault("LLM_MAX_RETRIES", "1")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import Any, Dict, List, Optional

import pytest

from quiz_tutor.core.generation import GenerationOracle, GenerationRequest
from quiz_tutor.core.grading import OpenEndedBatchGrader
from quiz_tutor.core.llm import LLMProvider
from quiz_tutor.core.questions import (
    GradedQuestion,
    GradingRequestItem,
    MultipleChoiceQuestion,
    OpenEndedQuestion,
    Quiz,
    SingleChoiceQuestion,
    TrueFalseQuestion,
)


class FakeGrader(OpenEndedBatchGrader):
    """Returns canned verdicts, or raises, and remembers every batch it saw"""

    def __init__(self, results: Optional[List[GradedQuestion]] = None, error: Optional[Exception] = None):
        self.results = results or []
        self.error = error
        self.batches: List[List[GradingRequestItem]] = []

    async def _grade(self, items):
        self.batches.append(list(items))
        if self.error is not None:
            raise self.error
        return list(self.results)


class FakeGenerationOracle(GenerationOracle):
    """Replays one scripted response per call; an Exception entry is raised"""

    def __init__(self, responses: List[Any], default: Optional[List[Dict[str, Any]]] = None):
        self.responses = list(responses)
        self.default = default if default is not None else []
        self.counts: List[int] = []
        self.requests: List[GenerationRequest] = []

    async def propose(self, request, count):
        self.counts.append(count)
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return list(response)


class FakeLLM(LLMProvider):
    def __init__(self, payload: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.payload = payload or {}
        self.error = error
        self.prompts: List[str] = []

    async def generate(self, prompt, system_prompt=None, **kwargs):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return ""

    async def generate_json(self, prompt, schema, system_prompt=None, root_key=None, **kwargs):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.payload


def valid_candidate(n: int) -> Dict[str, Any]:
    return {
        "question": f"Question {n}?",
        "type": "single",
        "choices": ["A", "B", "C", "D"],
        "answer": "A",
        "wrongAnswers": {"B": "Not quite"},
    }


def invalid_candidate(n: int) -> Dict[str, Any]:
    return {
        "question": f"Broken {n}?",
        "type": "single",
        "choices": ["A", "B", "C", "D"],
        "answer": "Z",
    }


def graded(grade: str, score: float, weak_areas: Optional[List[str]] = None,
           improvements: Optional[List[str]] = None) -> GradedQuestion:
    return GradedQuestion(
        grade=grade,
        score=score,
        feedback=f"{grade} answer",
        weak_areas=weak_areas or [],
        improvements=improvements or [],
    )


@pytest.fixture
def example_quiz() -> Quiz:
    return Quiz(
        title="Cell biology basics",
        topic="Biology",
        questions=[
            SingleChoiceQuestion(
                id="q1",
                prompt="Which organelle produces ATP?",
                options=["Nucleus", "Mitochondrion", "Ribosome"],
                correct_answer=[1],
            ),
            TrueFalseQuestion(id="q2", prompt="Plant cells lack a cell wall.", correct_answer=True),
            OpenEndedQuestion(
                id="q3",
                prompt="Describe what osmosis is.",
                correct_answer="Diffusion of water across a semi-permeable membrane",
            ),
        ],
    )


@pytest.fixture
def example_answers() -> List[Any]:
    return [[1], False, "Water moving through a membrane"]


@pytest.fixture
def multiple_question() -> MultipleChoiceQuestion:
    return MultipleChoiceQuestion(
        id="m1",
        prompt="Select all that apply: which are noble gases?",
        options=["Neon", "Oxygen", "Argon", "Nitrogen"],
        correct_answer=[0, 2],
    )
