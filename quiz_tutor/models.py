"""
Database models for longitudinal learning progress
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Float, JSON,
    Index, UniqueConstraint, func
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class LearningProgressRecord(Base):
    """Per-user, per-topic weak areas and strengths accumulated across quizzes"""
    __tablename__ = "learning_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    topic = Column(String(500), nullable=False)

    # Tag sets only ever grow through merges; removal is an explicit action
    weak_areas = Column(JSON, nullable=False, default=list)
    strengths = Column(JSON, nullable=False, default=list)
    progress_score = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_updated = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'topic', name='uq_progress_user_topic'),
        Index('idx_progress_last_updated', 'last_updated'),
    )
