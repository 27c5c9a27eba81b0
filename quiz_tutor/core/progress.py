"""
Learning progress store: union-merges weak areas and strengths per topic
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quiz_tutor.config import settings, ProgressBackend
from quiz_tutor.core.exceptions import DatabaseError, InvalidInput
from quiz_tutor.core.logging import get_logger
from quiz_tutor.core.questions import Quiz, ScoringResult
from quiz_tutor.core.weakness import WeaknessReport
from quiz_tutor.models import LearningProgressRecord


logger = get_logger(__name__)


class ProgressUpdate(BaseModel):
    topic: str
    weak_areas: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    score: float = 0.0


class LearningProgress(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    topic: str
    weak_areas: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    progress_score: float = 0.0
    last_updated: Optional[datetime] = None


def union_tags(existing: Iterable[str], new: Iterable[str]) -> List[str]:
    """Union keeping first-seen order; nothing is dropped."""
    return list(dict.fromkeys([*existing, *new]))


def build_progress_update(quiz: Quiz, result: ScoringResult, report: WeaknessReport) -> ProgressUpdate:
    return ProgressUpdate(
        topic=quiz.topic,
        weak_areas=report.weak_areas,
        strengths=report.strengths,
        score=result.score
    )


def _validate_topic(topic: str) -> None:
    if not topic or not topic.strip():
        raise InvalidInput("Progress records need a topic")


class ProgressStore(ABC):
    """Per-user, per-topic progress persistence"""

    @abstractmethod
    async def merge(self, user_id: str, update: ProgressUpdate) -> LearningProgress:
        """Union-merge a scoring pass into the user's record for its topic"""

    @abstractmethod
    async def get(self, user_id: str, topic: str) -> Optional[LearningProgress]:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[LearningProgress]:
        pass

    @abstractmethod
    async def remove_weak_areas(self, user_id: str, topic: str, areas: List[str]) -> Optional[LearningProgress]:
        """Explicitly drop weak areas, e.g. once a learner marks them mastered"""

    async def weak_areas_for_user(self, user_id: str, topic: Optional[str] = None) -> List[str]:
        records = await self.list_for_user(user_id)
        if topic:
            records = [r for r in records if r.topic == topic]
        return union_tags([], (area for r in records for area in r.weak_areas))


class InMemoryProgressStore(ProgressStore):
    """Process-local store for development and tests"""

    def __init__(self):
        self._records: Dict[Tuple[str, str], LearningProgress] = {}

    async def merge(self, user_id: str, update: ProgressUpdate) -> LearningProgress:
        _validate_topic(update.topic)
        existing = self._records.get((user_id, update.topic))
        record = LearningProgress(
            user_id=user_id,
            topic=update.topic,
            weak_areas=union_tags(existing.weak_areas if existing else [], update.weak_areas),
            strengths=union_tags(existing.strengths if existing else [], update.strengths),
            progress_score=update.score,
            last_updated=datetime.now(timezone.utc)
        )
        self._records[(user_id, update.topic)] = record
        return record

    async def get(self, user_id: str, topic: str) -> Optional[LearningProgress]:
        return self._records.get((user_id, topic))

    async def list_for_user(self, user_id: str) -> List[LearningProgress]:
        return [r for (uid, _), r in self._records.items() if uid == user_id]

    async def remove_weak_areas(self, user_id: str, topic: str, areas: List[str]) -> Optional[LearningProgress]:
        existing = self._records.get((user_id, topic))
        if existing is None:
            return None
        drop = set(areas)
        record = existing.model_copy(update={
            "weak_areas": [a for a in existing.weak_areas if a not in drop],
            "last_updated": datetime.now(timezone.utc)
        })
        self._records[(user_id, topic)] = record
        return record


class SqlProgressStore(ProgressStore):
    """SQLAlchemy-backed store over the learning_progress table"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from quiz_tutor.db import async_session
            session_factory = async_session
        self.session_factory = session_factory

    @staticmethod
    def record_query(user_id: str, topic: str, for_update: bool = False) -> Select:
        query = select(LearningProgressRecord).where(
            LearningProgressRecord.user_id == user_id,
            LearningProgressRecord.topic == topic
        )
        return query.with_for_update() if for_update else query

    async def _fetch(
        self,
        session: AsyncSession,
        user_id: str,
        topic: str,
        for_update: bool = False
    ) -> Optional[LearningProgressRecord]:
        result = await session.execute(self.record_query(user_id, topic, for_update))
        return result.scalar_one_or_none()

    async def _merge_once(self, user_id: str, update: ProgressUpdate) -> LearningProgress:
        async with self.session_factory() as session:
            # Row lock held until commit; concurrent merges on one record serialize here
            row = await self._fetch(session, user_id, update.topic, for_update=True)
            now = datetime.now(timezone.utc)
            if row is None:
                row = LearningProgressRecord(
                    user_id=user_id,
                    topic=update.topic,
                    weak_areas=union_tags([], update.weak_areas),
                    strengths=union_tags([], update.strengths),
                    progress_score=update.score,
                    last_updated=now
                )
                session.add(row)
            else:
                # Assign fresh lists so the JSON columns are flagged dirty
                row.weak_areas = union_tags(row.weak_areas or [], update.weak_areas)
                row.strengths = union_tags(row.strengths or [], update.strengths)
                row.progress_score = update.score
                row.last_updated = now
            await session.commit()
            await session.refresh(row)
            return LearningProgress.model_validate(row)

    async def merge(self, user_id: str, update: ProgressUpdate) -> LearningProgress:
        _validate_topic(update.topic)
        try:
            try:
                return await self._merge_once(user_id, update)
            except IntegrityError:
                # Another writer inserted the first record for this topic; merge into it
                logger.info("Progress record created concurrently, retrying as update", topic=update.topic)
                return await self._merge_once(user_id, update)
        except SQLAlchemyError as e:
            logger.error("Progress merge failed", error=str(e), topic=update.topic)
            raise DatabaseError("Failed to save learning progress", {"error": str(e)}) from e

    async def get(self, user_id: str, topic: str) -> Optional[LearningProgress]:
        try:
            async with self.session_factory() as session:
                row = await self._fetch(session, user_id, topic)
                return LearningProgress.model_validate(row) if row else None
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load learning progress", {"error": str(e)}) from e

    async def list_for_user(self, user_id: str) -> List[LearningProgress]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(LearningProgressRecord)
                    .where(LearningProgressRecord.user_id == user_id)
                    .order_by(LearningProgressRecord.id)
                )
                return [LearningProgress.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to load learning progress", {"error": str(e)}) from e

    async def remove_weak_areas(self, user_id: str, topic: str, areas: List[str]) -> Optional[LearningProgress]:
        drop = set(areas)
        try:
            async with self.session_factory() as session:
                row = await self._fetch(session, user_id, topic, for_update=True)
                if row is None:
                    return None
                row.weak_areas = [a for a in (row.weak_areas or []) if a not in drop]
                row.last_updated = datetime.now(timezone.utc)
                await session.commit()
                await session.refresh(row)
                return LearningProgress.model_validate(row)
        except SQLAlchemyError as e:
            logger.error("Weak area removal failed", error=str(e), topic=topic)
            raise DatabaseError("Failed to update learning progress", {"error": str(e)}) from e


_progress_store: Optional[ProgressStore] = None


def get_progress_store() -> ProgressStore:
    """Get singleton progress store for the configured backend"""
    global _progress_store
    if _progress_store is None:
        if settings.progress_backend == ProgressBackend.MEMORY:
            _progress_store = InMemoryProgressStore()
        else:
            _progress_store = SqlProgressStore()
    return _progress_store
