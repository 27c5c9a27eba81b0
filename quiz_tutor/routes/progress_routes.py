"""
Learning progress routes
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from quiz_tutor.schemas import ProgressListResponse, WeakAreasResponse, RemoveWeakAreasRequest
from quiz_tutor.core.logging import get_logger
from quiz_tutor.core.progress import LearningProgress, ProgressStore, get_progress_store

logger = get_logger(__name__)

router = APIRouter(prefix="/ai/progress", tags=["progress"])


@router.get("/{user_id}", response_model=ProgressListResponse)
async def list_progress(
    user_id: str,
    topic: Optional[str] = Query(None, description="Restrict to one topic"),
    store: ProgressStore = Depends(get_progress_store),
):
    records = await store.list_for_user(user_id)
    if topic:
        records = [r for r in records if r.topic == topic]
    return ProgressListResponse(user_id=user_id, records=records)


@router.get("/{user_id}/weak-areas", response_model=WeakAreasResponse)
async def get_weak_areas(
    user_id: str,
    topic: Optional[str] = Query(None, description="Restrict to one topic"),
    store: ProgressStore = Depends(get_progress_store),
):
    weak_areas = await store.weak_areas_for_user(user_id, topic=topic)
    return WeakAreasResponse(user_id=user_id, topic=topic, weak_areas=weak_areas)


@router.post("/{user_id}/weak-areas/remove", response_model=LearningProgress)
async def remove_weak_areas(
    user_id: str,
    req: RemoveWeakAreasRequest,
    store: ProgressStore = Depends(get_progress_store),
):
    record = await store.remove_weak_areas(user_id, req.topic, req.areas)
    if record is None:
        raise HTTPException(status_code=404, detail="No progress recorded for this topic")
    logger.info("Weak areas removed", topic=req.topic, removed=len(req.areas))
    return record
