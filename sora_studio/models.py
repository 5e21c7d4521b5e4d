# Tables (ORM models): videos and usage_logs

from enum import Enum
from typing import Optional, Any
from datetime import datetime, timezone
from uuid import uuid4
from sqlmodel import SQLModel, Field, Column, JSON


def utcnow() -> datetime:
    # timezone-aware UTC, datetime columns reject naive values
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class VideoStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


OUTSTANDING_STATUSES = (VideoStatus.PENDING.value, VideoStatus.PROCESSING.value)


class VideoPhase(str, Enum):
    """Lifecycle state derived from a video row."""
    NEEDS_SUBMISSION = "needs_submission"  # pending, never accepted by OpenAI
    AWAITING_RESULT = "awaiting_result"
    COMPLETED = "completed"
    FAILED = "failed"


class Video(SQLModel, table=True):
    __tablename__ = "videos"

    id: str = Field(default_factory=new_id, primary_key=True, index=True)
    user_id: str = Field(index=True)
    prompt: str
    enhanced_prompt: Optional[str] = None
    model: str
    duration: int
    size: str
    category: str = Field(index=True)
    style: Optional[str] = None
    status: str = Field(default=VideoStatus.PENDING.value, index=True)  # pending | processing | completed | failed
    openai_task_id: Optional[str] = Field(default=None, index=True)
    video_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    cost: float = 0.0
    meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def phase(self) -> VideoPhase:
        if self.status == VideoStatus.COMPLETED:
            return VideoPhase.COMPLETED
        if self.status == VideoStatus.FAILED:
            return VideoPhase.FAILED
        if not self.openai_task_id:
            return VideoPhase.NEEDS_SUBMISSION
        return VideoPhase.AWAITING_RESULT


class UsageLog(SQLModel, table=True):
    __tablename__ = "usage_logs"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    video_id: str = Field(index=True)
    action: str  # generate | upgrade | retry
    cost: float = 0.0
    duration: int = 0
    meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
