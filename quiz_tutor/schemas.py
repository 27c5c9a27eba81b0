from typing import List, Optional
from pydantic import BaseModel, Field

from quiz_tutor.core.generation import GenerationRequest, GenerationMetadata
from quiz_tutor.core.progress import LearningProgress
from quiz_tutor.core.questions import (
    AnswerValue,
    GradedQuestion,
    Question,
    QuestionOutcome,
    Quiz,
)


# ======================= Scoring =======================

class QuizScoreRequest(BaseModel):
    quiz: Quiz
    # One entry per question, in quiz order; null for unanswered
    answers: List[AnswerValue]
    user_id: Optional[str] = None


class QuizScoreResponse(BaseModel):
    score: int
    grading_results: List[GradedQuestion]
    outcomes: List[QuestionOutcome]
    weak_areas: List[str]
    strengths: List[str]
    improvements: List[str]
    degraded: bool = False
    progress_saved: Optional[bool] = None


# ======================= Generation =======================

class QuizGenerateRequest(GenerationRequest):
    user_id: Optional[str] = None


class QuizGenerateResponse(BaseModel):
    questions: List[Question]
    metadata: GenerationMetadata


# ======================= Progress =======================

class ProgressListResponse(BaseModel):
    user_id: str
    records: List[LearningProgress]


class WeakAreasResponse(BaseModel):
    user_id: str
    topic: Optional[str] = None
    weak_areas: List[str]


class RemoveWeakAreasRequest(BaseModel):
    topic: str
    areas: List[str] = Field(min_length=1)
