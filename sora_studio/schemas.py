# Pydantic schemas for requests and responses

from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import Video, UsageLog
from .pricing import SUPPORTED_SECONDS, SUPPORTED_SIZES, is_supported

ModelName = Literal["sora-2", "sora-2-pro"]


# Body of POST /api/videos
class VideoGenerationRequest(BaseModel):
    prompt: str = Field(max_length=1000)
    model: ModelName = "sora-2"
    duration: int = 4
    size: str = "1280x720"
    category: str
    style: Optional[str] = None
    enhance: bool = False

    @field_validator("prompt", "category")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @model_validator(mode="after")
    def supported_combination(self):
        if not is_supported(self.model, self.duration, self.size):
            raise ValueError(
                f"{self.model} cannot render {self.size} for {self.duration}s "
                f"(sizes: {', '.join(SUPPORTED_SIZES[self.model])}; durations: {list(SUPPORTED_SECONDS)})"
            )
        return self

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"enhance"})


# Body of POST /functions/generate-video (direct relay to OpenAI)
class RelayGenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(min_length=1)
    model: ModelName = "sora-2"
    duration: int = 4
    size: str = Field(default="1280x720", alias="resolution")
    category: str = "general"
    style: Optional[str] = None


# Body of POST /functions/enhance-prompt
class EnhanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_prompt: str = Field(alias="originalPrompt", min_length=1)
    duration: str | int = ""
    resolution: str = ""
    category: str = ""
    style: Optional[str] = ""
    model: str = "sora-2"


class EnhanceResponse(BaseModel):
    original: str
    enhanced: str


class VideoOut(BaseModel):
    id: str
    user_id: str
    prompt: str
    enhanced_prompt: Optional[str] = None
    model: str
    duration: int
    size: str
    category: str
    style: Optional[str] = None
    status: str
    phase: str
    openai_task_id: Optional[str] = None
    video_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    cost: float
    metadata: Dict[str, Any] = Field(default_factory=dict)
    progress: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_video(cls, video: Video, progress: Optional[int] = None) -> "VideoOut":
        return cls(
            id=video.id,
            user_id=video.user_id,
            prompt=video.prompt,
            enhanced_prompt=video.enhanced_prompt,
            model=video.model,
            duration=video.duration,
            size=video.size,
            category=video.category,
            style=video.style,
            status=video.status,
            phase=video.phase.value,
            openai_task_id=video.openai_task_id,
            video_path=video.video_path,
            thumbnail_path=video.thumbnail_path,
            cost=video.cost,
            metadata=video.meta or {},
            progress=progress,
            created_at=video.created_at,
            updated_at=video.updated_at,
        )


class SubmitOut(BaseModel):
    video: VideoOut
    submitted: bool
    error: Optional[str] = None


class VideoPage(BaseModel):
    videos: List[VideoOut]
    total: int
    limit: int
    offset: int


class StatusOut(BaseModel):
    video_id: str
    status: str
    phase: str
    progress: Optional[int] = None


class SignedUrlOut(BaseModel):
    url: str
    thumbnail_url: Optional[str] = None
    expires_in: int


class UpgradeCostOut(BaseModel):
    video_id: str
    model: str
    cost: float


class StatsOut(BaseModel):
    total_videos: int
    completed_videos: int
    processing_videos: int
    total_cost: float
    category_counts: Dict[str, int]


class UsageLogOut(BaseModel):
    id: str
    video_id: str
    action: str
    cost: float
    duration: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_log(cls, log: UsageLog) -> "UsageLogOut":
        return cls(
            id=log.id,
            video_id=log.video_id,
            action=log.action,
            cost=log.cost,
            duration=log.duration,
            metadata=log.meta or {},
            created_at=log.created_at,
        )


class UsageSummaryOut(BaseModel):
    period: str
    start: datetime
    end: datetime
    total_cost: float
    video_count: int
    logs: List[UsageLogOut]


class NotificationOut(BaseModel):
    level: str
    title: str
    description: str = ""
    video_id: Optional[str] = None
    created_at: datetime
