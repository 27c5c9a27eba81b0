"""
Quiz domain model: question variants, answers, grading records and results
"""
from __future__ import annotations

import math
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)


QuestionType = Literal["single", "multiple", "true_false", "open_ended"]
Difficulty = Literal["easy", "medium", "hard"]
Grade = Literal["correct", "partial", "incorrect"]
Outcome = Literal["correct", "partial", "incorrect"]

CLOSED_FORM_TYPES = {"single", "multiple", "true_false"}

# Selected indices (single/multiple), a boolean (true_false) or free text (open_ended).
# None marks an unanswered question of any type.
AnswerValue = Union[List[StrictInt], StrictBool, StrictStr, None]


class _QuestionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    prompt: str = Field(min_length=1, validation_alias=AliasChoices("prompt", "question"))
    explanation: str = ""

    @field_validator("prompt")
    def validate_prompt(cls, v):
        if not v.strip():
            raise ValueError("prompt must not be blank")
        return v


class _ChoiceQuestion(_QuestionBase):
    options: List[str] = Field(min_length=1)
    correct_answer: List[StrictInt] = Field(
        validation_alias=AliasChoices("correct_answer", "correctAnswer")
    )

    @model_validator(mode="after")
    def validate_indices(self):
        if not self.correct_answer:
            raise ValueError("correct_answer must name at least one option")
        if len(set(self.correct_answer)) != len(self.correct_answer):
            raise ValueError("correct_answer indices must be unique")
        for idx in self.correct_answer:
            if not 0 <= idx < len(self.options):
                raise ValueError(f"correct_answer index {idx} is outside the options range")
        return self

    @property
    def correct_indices(self) -> frozenset:
        return frozenset(self.correct_answer)


class SingleChoiceQuestion(_ChoiceQuestion):
    type: Literal["single"] = "single"

    @model_validator(mode="before")
    @classmethod
    def coerce_legacy_answer(cls, data: Any) -> Any:
        # Older quizzes stored a bare index or the text of the correct option
        if not isinstance(data, dict):
            return data
        key = "correct_answer" if "correct_answer" in data else "correctAnswer"
        value = data.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return {**data, key: [value]}
        if isinstance(value, str):
            options = data.get("options") or []
            if value in options:
                return {**data, key: [options.index(value)]}
        return data

    @model_validator(mode="after")
    def validate_single(self):
        if len(self.correct_answer) != 1:
            raise ValueError("single choice questions have exactly one correct option")
        return self


class MultipleChoiceQuestion(_ChoiceQuestion):
    type: Literal["multiple"] = "multiple"


class TrueFalseQuestion(_QuestionBase):
    type: Literal["true_false"] = "true_false"
    correct_answer: StrictBool = Field(
        validation_alias=AliasChoices("correct_answer", "correctAnswer")
    )


class OpenEndedQuestion(_QuestionBase):
    type: Literal["open_ended"] = "open_ended"
    # Reference model answer, only used as grading context
    correct_answer: str = Field(
        default="",
        validation_alias=AliasChoices("correct_answer", "correctAnswer")
    )


Question = Annotated[
    Union[SingleChoiceQuestion, MultipleChoiceQuestion, TrueFalseQuestion, OpenEndedQuestion],
    Field(discriminator="type"),
]


class Quiz(BaseModel):
    """Ordered questions; position is what correlates answers with questions."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    title: str = ""
    topic: str = ""
    difficulty: Difficulty = "medium"
    questions: List[Question] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_ids(self):
        seen = set()
        for q in self.questions:
            if q.id in seen:
                raise ValueError(f"duplicate question id {q.id!r}")
            seen.add(q.id)
        return self

    def open_ended_questions(self) -> List[OpenEndedQuestion]:
        return [q for q in self.questions if q.type == "open_ended"]


class GradingRequestItem(BaseModel):
    """One open-ended item sent to the grading oracle."""
    question: str
    answer: str
    context: str = ""


class GradedQuestion(BaseModel):
    """Oracle verdict for one open-ended answer. Never mutated once built."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    question: str = ""
    answer: str = ""
    grade: Grade = "incorrect"
    score: float = 0.0
    feedback: str = "No feedback provided"
    improvements: List[str] = Field(default_factory=list)
    weak_areas: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("weak_areas", "weakAreas")
    )

    @field_validator("question", "answer", mode="before")
    def none_to_empty(cls, v):
        return "" if v is None else str(v)

    @field_validator("grade", mode="before")
    def sanitize_grade(cls, v):
        return v if v in ("correct", "partial", "incorrect") else "incorrect"

    @field_validator("score", mode="before")
    def clamp_score(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(value):
            return 0.0
        return max(0.0, min(1.0, value))

    @field_validator("feedback", mode="before")
    def default_feedback(cls, v):
        return str(v) if v else "No feedback provided"

    @field_validator("improvements", "weak_areas", mode="before")
    def listify(cls, v):
        if not isinstance(v, list):
            return []
        return [str(x).strip() for x in v if x is not None and str(x).strip()]


class QuestionOutcome(BaseModel):
    question_id: str
    type: QuestionType
    outcome: Outcome
    points: float


class ScoringResult(BaseModel):
    """Aggregate score for one scoring pass.

    ``grading_results`` follows the order of the quiz's open-ended questions,
    not the full question sequence. Use :meth:`graded_by_question_id` rather
    than indexing it directly.
    """
    score: int = Field(ge=0, le=100)
    grading_results: List[GradedQuestion] = Field(default_factory=list)
    outcomes: List[QuestionOutcome] = Field(default_factory=list)
    degraded: bool = False

    def graded_by_question_id(self, quiz: Quiz) -> Dict[str, GradedQuestion]:
        return pair_open_ended_results(quiz, self.grading_results)


def pair_open_ended_results(quiz: Quiz, grading_results: List[GradedQuestion]) -> Dict[str, GradedQuestion]:
    """Re-key positional oracle results by the originating question id."""
    open_ids = [q.id for q in quiz.open_ended_questions()]
    return dict(zip(open_ids, grading_results))
