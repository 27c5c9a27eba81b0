"""
Weak-area and strength extraction from a completed scoring pass
"""
from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

from quiz_tutor.core.exceptions import InvalidInput
from quiz_tutor.core.grading import extract_improvements
from quiz_tutor.core.questions import Quiz, ScoringResult


class WeaknessReport(BaseModel):
    weak_areas: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)


class WeaknessExtractor:
    """Tag questions as strengths or weak areas for progress tracking.

    Reads the per-question outcomes recorded by the scoring pass. Correct and
    partial outcomes count as strengths by prompt text; incorrect ones as weak
    areas. Oracle weak areas of incorrect or partial open-ended answers are
    added to the weak areas as well. Both lists are deduplicated with
    first-seen order kept.
    """

    def extract(self, quiz: Quiz, result: ScoringResult) -> WeaknessReport:
        outcomes = {o.question_id: o.outcome for o in result.outcomes}
        missing = [q.id for q in quiz.questions if q.id not in outcomes]
        if missing:
            raise InvalidInput("Scoring result has no outcome for some questions", {"question_ids": missing})

        graded_by_id = result.graded_by_question_id(quiz)
        weak_areas: List[str] = []
        strengths: List[str] = []

        for question in quiz.questions:
            outcome = outcomes[question.id]
            if outcome in ("correct", "partial"):
                strengths.append(question.prompt)
            else:
                weak_areas.append(question.prompt)
            graded = graded_by_id.get(question.id)
            if graded is not None and outcome in ("incorrect", "partial"):
                weak_areas.extend(graded.weak_areas)

        return WeaknessReport(
            weak_areas=list(dict.fromkeys(weak_areas)),
            strengths=list(dict.fromkeys(strengths)),
            improvements=extract_improvements(result.grading_results)
        )
