from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from quiz_tutor.schemas import (
    QuizScoreRequest, QuizScoreResponse,
    QuizGenerateRequest, QuizGenerateResponse,
)
from quiz_tutor.core.exceptions import InvalidInput, QuizTutorException
from quiz_tutor.core.generation import QuestionGenerator
from quiz_tutor.core.logging import get_logger, metrics_logger, user_id_var
from quiz_tutor.core.progress import ProgressStore, ProgressUpdate, build_progress_update, get_progress_store
from quiz_tutor.core.scoring import ScoringEngine
from quiz_tutor.core.weakness import WeaknessExtractor


logger = get_logger(__name__)

router = APIRouter(prefix="/ai/quiz", tags=["quiz"])


def get_scoring_engine() -> ScoringEngine:
    return ScoringEngine()


def get_question_generator() -> QuestionGenerator:
    return QuestionGenerator()


async def save_progress(store: ProgressStore, user_id: str, update: ProgressUpdate) -> bool:
    """Write-and-forget: a failed write never fails the scoring response"""
    try:
        await store.merge(user_id, update)
    except Exception as e:
        metrics_logger.log_progress_write(update.topic, success=False, error=str(e))
        return False
    metrics_logger.log_progress_write(update.topic, success=True)
    return True


@router.post("/score", response_model=QuizScoreResponse)
async def score_quiz(
    req: QuizScoreRequest,
    engine: ScoringEngine = Depends(get_scoring_engine),
    store: ProgressStore = Depends(get_progress_store),
):
    if req.user_id:
        user_id_var.set(req.user_id)
        if not req.quiz.topic.strip():
            raise InvalidInput("A quiz topic is required to record progress", {"user_id": req.user_id})
    try:
        result = await engine.score(req.quiz, req.answers)
        report = WeaknessExtractor().extract(req.quiz, result)
    except QuizTutorException:
        raise
    except Exception as e:
        logger.error("Quiz scoring failed", error=str(e))
        raise HTTPException(status_code=500, detail=f"Scoring failed: {e}")

    progress_saved: Optional[bool] = None
    if req.user_id:
        progress_saved = await save_progress(store, req.user_id, build_progress_update(req.quiz, result, report))

    return QuizScoreResponse(
        score=result.score,
        grading_results=result.grading_results,
        outcomes=result.outcomes,
        weak_areas=report.weak_areas,
        strengths=report.strengths,
        improvements=report.improvements,
        degraded=result.degraded,
        progress_saved=progress_saved
    )


@router.post("/generate", response_model=QuizGenerateResponse)
async def generate_quiz(
    req: QuizGenerateRequest,
    generator: QuestionGenerator = Depends(get_question_generator),
    store: ProgressStore = Depends(get_progress_store),
):
    if req.user_id:
        user_id_var.set(req.user_id)
    request = req
    if req.user_id and not req.contexts:
        try:
            hints = await store.weak_areas_for_user(req.user_id, topic=req.topic)
        except Exception as e:
            logger.warning("Could not load weak areas for generation hints", error=str(e))
            hints = []
        if hints:
            request = req.model_copy(update={"contexts": hints})

    try:
        quiz = await generator.generate(request)
    except QuizTutorException:
        raise
    except Exception as e:
        logger.error("Question generation failed", error=str(e))
        raise HTTPException(status_code=500, detail=f"Question generation failed: {e}")

    return QuizGenerateResponse(questions=quiz.questions, metadata=quiz.metadata)
