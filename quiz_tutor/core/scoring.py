"""
Quiz scoring: merges local closed-form grading with one batch call to the
open-ended grading oracle
"""
from __future__ import annotations

import math
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from quiz_tutor.config import settings
from quiz_tutor.core.exceptions import InvalidInput
from quiz_tutor.core.grading import (
    OpenEndedBatchGrader,
    answer_text,
    classify_outcome,
    get_open_ended_grader,
    grade_answer,
)
from quiz_tutor.core.logging import get_logger, metrics_logger
from quiz_tutor.core.questions import (
    GradedQuestion,
    GradingRequestItem,
    OpenEndedQuestion,
    QuestionOutcome,
    Quiz,
    ScoringResult,
)


logger = get_logger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def validate_submission(quiz: Quiz, answers: Optional[Sequence[Any]]) -> None:
    if not quiz.questions:
        raise InvalidInput("Quiz has no questions")
    if answers is None or len(answers) != len(quiz.questions):
        raise InvalidInput(
            "Answers must align one-to-one with quiz questions",
            {"questions": len(quiz.questions), "answers": 0 if answers is None else len(answers)}
        )


class ScoringEngine:
    """Score a quiz submission.

    Closed-form questions are graded locally; all open-ended questions go to
    the grading oracle as a single batch. If that call fails, every
    open-ended question is credited ``fallback_score`` points and the result
    carries no grading records.
    """

    def __init__(self, grader: Optional[OpenEndedBatchGrader] = None, fallback_score: Optional[float] = None):
        self._grader = grader
        self.fallback_score = settings.open_ended_fallback_score if fallback_score is None else fallback_score

    @property
    def grader(self) -> OpenEndedBatchGrader:
        if self._grader is None:
            self._grader = get_open_ended_grader()
        return self._grader

    async def score(self, quiz: Quiz, answers: Sequence[Any]) -> ScoringResult:
        try:
            validate_submission(quiz, answers)
        except InvalidInput as e:
            metrics_logger.log_scoring_rejected(e.message)
            raise

        start = time.time()
        points: Dict[str, float] = {}
        open_items: List[Tuple[OpenEndedQuestion, GradingRequestItem]] = []

        for question, answer in zip(quiz.questions, answers):
            if question.type == "open_ended":
                context = f"Expected answer: {question.correct_answer}" if question.correct_answer else ""
                open_items.append((question, GradingRequestItem(
                    question=question.prompt,
                    answer=answer_text(answer),
                    context=context
                )))
                continue
            points[question.id] = 1.0 if grade_answer(question, answer) else 0.0

        grading_results: List[GradedQuestion] = []
        graded_by_id: Dict[str, GradedQuestion] = {}
        degraded = False
        if open_items:
            grading_results, degraded = await self._grade_open_ended([item for _, item in open_items])
            if degraded:
                for question, _ in open_items:
                    points[question.id] = self.fallback_score
            else:
                for (question, _), graded in zip(open_items, grading_results):
                    graded_by_id[question.id] = graded
                    points[question.id] = graded.score

        outcomes = [
            QuestionOutcome(
                question_id=question.id,
                type=question.type,
                outcome=classify_outcome(question, answer, graded_by_id.get(question.id)),
                points=points[question.id]
            )
            for question, answer in zip(quiz.questions, answers)
        ]

        total_points = sum(points.values())
        score = round_half_up(100 * total_points / len(quiz.questions))
        score = max(0, min(100, score))

        metrics_logger.log_scoring_complete(
            quiz_title=quiz.title,
            score=score,
            question_count=len(quiz.questions),
            open_ended_count=len(open_items),
            duration=time.time() - start,
            degraded=degraded
        )
        return ScoringResult(
            score=score,
            grading_results=grading_results,
            outcomes=outcomes,
            degraded=degraded
        )

    async def _grade_open_ended(self, items: List[GradingRequestItem]) -> Tuple[List[GradedQuestion], bool]:
        metrics_logger.log_grading_batch(len(items))
        try:
            return await self.grader.grade_batch(items), False
        except Exception as e:
            metrics_logger.log_oracle_failure(
                reason=type(e).__name__,
                batch_size=len(items),
                fallback_score=self.fallback_score
            )
            logger.warning("Open-ended grading failed, using fallback credit", error=str(e))
            return [], True
