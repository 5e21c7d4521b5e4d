"""
Video generation lifecycle.

A video row moves through::

    needs_submission --submit--> awaiting_result --check--> completed | failed
            ^                                                   |
            +------------------------retry----------------------+

``submit`` creates the row and hands the prompt to OpenAI, ``check_status``
reconciles one row against the OpenAI job, and ``materialize`` copies a
finished asset into owned storage. User-facing outcomes are pushed to the
notification feed; nothing here raises into the polling loop.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Tuple

from sqlmodel import Session

from . import repository
from .errors import NotFoundError, QuotaExceededError, UpstreamError, ValidationError
from .logging_config import get_logger
from .models import Video, VideoPhase, VideoStatus
from .notifications import NotificationCenter
from .openai_client import SoraClient
from .pricing import PRO_MODEL, estimate_cost, upgrade_cost
from .schemas import VideoGenerationRequest
from .storage import (
    THUMBNAIL_CONTENT_TYPE,
    VIDEO_CONTENT_TYPE,
    Storage,
    thumbnail_key,
    video_key,
)

logger = get_logger(__name__)

REMOTE_FAILED = ("failed", "cancelled")
TERMINAL = (VideoStatus.COMPLETED.value, VideoStatus.FAILED.value)


@dataclass
class SubmitResult:
    video: Video
    submitted: bool
    error: Optional[str] = None


@dataclass
class StatusCheck:
    video_id: str
    status: str
    progress: Optional[int] = None


def _cancelled(token) -> bool:
    return token is not None and token.cancelled


class VideoLifecycle:
    def __init__(
        self,
        client: SoraClient,
        storage: Storage,
        notifications: NotificationCenter,
        session_factory: Callable[[], Session],
        fetch_thumbnails: bool = True,
    ):
        self.client = client
        self.storage = storage
        self.notifications = notifications
        self._session = session_factory
        self.fetch_thumbnails = fetch_thumbnails
        # last known progress per video id (real value from OpenAI or a synthetic estimate)
        self.progress: Dict[str, int] = {}
        self._in_flight: Set[str] = set()

    def load(self, video_id: str) -> Optional[Video]:
        with self._session() as session:
            return repository.get_video(session, video_id)

    def is_checking(self, video_id: str) -> bool:
        return video_id in self._in_flight

    # Blocking session work; async callers go through _db()
    def _create(self, video: Video) -> Video:
        with self._session() as session:
            return repository.create_video(session, video)

    def _update(self, video_id: str, **updates: Any) -> Video:
        with self._session() as session:
            return repository.update_video(session, video_id, **updates)

    def _start_job(self, video_id: str, external_id: str, action: str, usage_meta: Dict[str, Any]) -> Video:
        with self._session() as session:
            return repository.start_job(session, video_id, external_id, action=action, meta=usage_meta)

    def _record_started(self, video: Video, action: str, usage_meta: Dict[str, Any]) -> Video:
        with self._session() as session:
            return repository.record_started_job(session, video, action=action, meta=usage_meta)

    def _find_owned(self, video_id: str, owner_id: str) -> Optional[Video]:
        with self._session() as session:
            return repository.get_video(session, video_id, owner_id)

    def _find_job(self, openai_task_id: str, owner_id: str) -> Optional[Video]:
        with self._session() as session:
            return repository.get_video_by_task(session, openai_task_id, owner_id)

    def _remove(self, video_id: str, owner_id: str) -> None:
        with self._session() as session:
            row = repository.get_video(session, video_id, owner_id)
            if row is None:
                raise NotFoundError("Video not found")
            repository.delete_video(session, row)

    async def _db(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def fetch(self, video_id: str) -> Optional[Video]:
        return await self._db(self.load, video_id)

    async def owned(self, video_id: str, owner_id: str) -> Video:
        video = await self._db(self._find_owned, video_id, owner_id)
        if video is None:
            raise NotFoundError("Video not found")
        return video

    async def owned_job(self, openai_task_id: str, owner_id: str) -> Video:
        """The caller's video behind an OpenAI job id."""
        video = await self._db(self._find_job, openai_task_id, owner_id)
        if video is None:
            raise NotFoundError("Video not found")
        return video

    # -------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------
    async def submit(self, owner_id: str, request: VideoGenerationRequest) -> SubmitResult:
        enhanced = None
        if request.enhance:
            enhanced = await self._enhance(owner_id, request)

        video = Video(
            user_id=owner_id,
            prompt=request.prompt,
            enhanced_prompt=enhanced,
            model=request.model,
            duration=request.duration,
            size=request.size,
            category=request.category,
            style=request.style,
            status=VideoStatus.PENDING.value,
            cost=estimate_cost(request.model, request.duration, request.size),
            meta={"request": request.snapshot()},
        )
        video = await self._db(self._create, video)
        logger.info("video %s created for %s (cost %.2f)", video.id, owner_id, video.cost)

        return await self._send(
            owner_id,
            video,
            action="generate",
            usage_meta={"request": request.snapshot()},
            success=("Video in progress", "Your video is being generated. We'll let you know when it's ready."),
        )

    async def _enhance(self, owner_id: str, request: VideoGenerationRequest) -> Optional[str]:
        try:
            return await self.client.enhance_prompt(
                request.prompt,
                duration=request.duration,
                resolution=request.size,
                category=request.category,
                style=request.style,
                model=request.model,
            )
        except QuotaExceededError as e:
            self.notifications.error(owner_id, "Insufficient credits", e.message)
            raise
        except Exception as e:
            logger.warning("prompt enhancement failed, using the original prompt: %s", e)
            self.notifications.warning(owner_id, "Prompt not enhanced", "Using your original prompt instead.")
            return None

    async def retry(self, owner_id: str, video: Video) -> SubmitResult:
        if video.phase not in (VideoPhase.NEEDS_SUBMISSION, VideoPhase.FAILED):
            raise ValidationError("Only unsubmitted or failed videos can be retried")
        logger.info("retrying video %s (%s)", video.id, video.phase.value)
        return await self._send(
            owner_id,
            video,
            action="retry",
            usage_meta={"request": video.meta.get("request") if video.meta else None},
            success=("Video retried", "The video is being generated again."),
        )

    async def upgrade(self, owner_id: str, source: Video) -> SubmitResult:
        if source.model == PRO_MODEL:
            raise ValidationError(f"Video already uses {PRO_MODEL}")
        request = {
            "prompt": source.prompt,
            "model": PRO_MODEL,
            "duration": source.duration,
            "size": source.size,
            "category": source.category,
            "style": source.style,
        }
        video = Video(
            user_id=owner_id,
            prompt=source.prompt,
            enhanced_prompt=source.enhanced_prompt,
            model=PRO_MODEL,
            duration=source.duration,
            size=source.size,
            category=source.category,
            style=source.style,
            status=VideoStatus.PENDING.value,
            cost=upgrade_cost(source),
            meta={"request": request, "upgraded_from": source.id},
        )
        video = await self._db(self._create, video)
        logger.info("video %s upgraded to %s as %s", source.id, PRO_MODEL, video.id)

        return await self._send(
            owner_id,
            video,
            action="upgrade",
            usage_meta={"original_video_id": source.id, "request": request},
            success=("Upgrade in progress", f"Your video is being generated with {PRO_MODEL}."),
        )

    async def relay(
        self,
        owner_id: str,
        *,
        model: str,
        prompt: str,
        duration: int,
        size: str,
        category: str,
        style: Optional[str] = None,
    ) -> Tuple[Video, Dict[str, Any]]:
        """
        Direct hand-off used by the /functions relay: OpenAI errors propagate
        to the caller, and only an accepted job gets a row (already processing).
        """
        data = await self.client.create_video(model=model, prompt=prompt, seconds=duration, size=size)
        external_id = data.get("id") if isinstance(data, dict) else None
        if not external_id:
            raise UpstreamError("OpenAI did not return a job id")

        request = {"prompt": prompt, "model": model, "duration": duration, "size": size, "category": category, "style": style}
        video = Video(
            user_id=owner_id,
            prompt=prompt,
            model=model,
            duration=duration,
            size=size,
            category=category,
            style=style,
            status=VideoStatus.PROCESSING.value,
            openai_task_id=external_id,
            cost=estimate_cost(model, duration, size),
            meta={"request": request},
        )
        video = await self._db(self._record_started, video, "generate", {"request": request})
        self.progress[video.id] = 0
        logger.info("relayed job %s stored as video %s for %s", external_id, video.id, owner_id)
        return video, data

    async def _send(
        self,
        owner_id: str,
        video: Video,
        *,
        action: str,
        usage_meta: Dict[str, Any],
        success: Tuple[str, str],
    ) -> SubmitResult:
        """Hand a stored row to OpenAI. On any failure the row stays as it is."""
        try:
            data = await self.client.create_video(
                model=video.model,
                prompt=video.enhanced_prompt or video.prompt,
                seconds=video.duration,
                size=video.size,
            )
        except Exception as e:
            logger.error("submission of video %s failed: %s", video.id, e)
            self.notifications.error(owner_id, "Video generation failed", str(e), video.id)
            return SubmitResult(video, False, str(e))

        external_id = data.get("id") if isinstance(data, dict) else None
        if not external_id:
            logger.error("OpenAI returned no job id for video %s: %s", video.id, data)
            self.notifications.error(owner_id, "Video generation failed", "OpenAI did not return a job id.", video.id)
            return SubmitResult(video, False, "no job id returned")

        try:
            video = await self._db(self._start_job, video.id, external_id, action, usage_meta)
        except Exception as e:
            logger.exception("video %s accepted as %s but the row could not be updated", video.id, external_id)
            self.notifications.warning(
                owner_id,
                "Warning",
                "The video was submitted but its status could not be saved. Check your video list.",
                video.id,
            )
            return SubmitResult(video, False, str(e))

        self.progress[video.id] = 0
        self.notifications.success(owner_id, success[0], success[1], video.id)
        return SubmitResult(video, True)

    # -------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------
    async def check_status(self, video: Video, token=None) -> Optional[StatusCheck]:
        """
        Reconcile one video with its OpenAI job.

        Returns the resulting status (None when nothing was checked). Never
        raises: this runs from the polling loop, which must keep going.
        """
        try:
            if not video.openai_task_id:
                logger.warning("video %s has no OpenAI job id, leaving it pending", video.id)
                return None
            if video.id in self._in_flight:
                logger.debug("status check for %s already running", video.id)
                return None

            self._in_flight.add(video.id)
            try:
                return await self._reconcile(video.id, token)
            finally:
                self._in_flight.discard(video.id)
        except Exception:
            logger.exception("status check for video %s failed", video.id)
            return None

    async def _reconcile(self, video_id: str, token) -> Optional[StatusCheck]:
        # the caller's copy may be stale, the row decides
        video = await self.fetch(video_id)
        if video is None:
            return None
        if video.status in TERMINAL:
            return StatusCheck(video.id, video.status, self.progress.get(video.id))

        remote = await self.client.retrieve_video(video.openai_task_id)
        status = str(remote.get("status") or "").lower()
        if _cancelled(token):
            return None

        if status == VideoStatus.COMPLETED:
            video_path, thumb_path = await self.materialize(video)
            if _cancelled(token):
                return None
            try:
                await self._db(
                    self._update,
                    video.id,
                    status=VideoStatus.COMPLETED.value,
                    video_path=video_path,
                    thumbnail_path=thumb_path,
                )
            except Exception:
                logger.exception("video %s is ready but the row could not be updated", video.id)
                return None
            self.progress.pop(video.id, None)
            self.notifications.success(video.user_id, "Video completed!", "Your video is ready to watch.", video.id)
            return StatusCheck(video.id, VideoStatus.COMPLETED.value, 100)

        if status in REMOTE_FAILED:
            reason = _remote_error(remote)
            try:
                await self._db(
                    self._update,
                    video.id,
                    status=VideoStatus.FAILED.value,
                    video_path=None,
                    thumbnail_path=None,
                    meta={**(video.meta or {}), "error": reason},
                )
            except Exception:
                logger.exception("could not mark video %s as failed", video.id)
                return None
            self.progress.pop(video.id, None)
            self.notifications.error(
                video.user_id,
                "Generation failed",
                reason or "There was a problem generating your video.",
                video.id,
            )
            return StatusCheck(video.id, VideoStatus.FAILED.value)

        progress = remote.get("progress")
        if not isinstance(progress, (int, float)):
            return StatusCheck(video.id, VideoStatus.PROCESSING.value)
        self.progress[video.id] = int(progress)
        return StatusCheck(video.id, VideoStatus.PROCESSING.value, int(progress))

    async def materialize(self, video: Video) -> Tuple[str, Optional[str]]:
        """Copy the finished asset (and its thumbnail) from OpenAI into owned storage."""
        task_id = video.openai_task_id
        path = video_key(task_id)
        if await asyncio.to_thread(self.storage.exists, path):
            logger.info("reusing stored asset %s for video %s", path, video.id)
        else:
            content = await self.client.download_content(task_id)
            await asyncio.to_thread(self.storage.upload, path, content, VIDEO_CONTENT_TYPE)

        thumb = None
        if self.fetch_thumbnails:
            thumb_path = thumbnail_key(task_id)
            try:
                if not await asyncio.to_thread(self.storage.exists, thumb_path):
                    data = await self.client.download_content(task_id, variant="thumbnail")
                    await asyncio.to_thread(self.storage.upload, thumb_path, data, THUMBNAIL_CONTENT_TYPE)
                thumb = thumb_path
            except Exception as e:
                logger.warning("no thumbnail for video %s: %s", video.id, e)
        return path, thumb

    # -------------------------------------------------------------------
    # Delete / links
    # -------------------------------------------------------------------
    async def delete(self, owner_id: str, video: Video) -> None:
        for path in (video.video_path, video.thumbnail_path):
            if not path or path.startswith(("http://", "https://")):
                continue
            try:
                await asyncio.to_thread(self.storage.delete, path)
            except Exception as e:
                logger.warning("could not delete %s: %s", path, e)
        await self._db(self._remove, video.id, owner_id)
        self.progress.pop(video.id, None)
        logger.info("video %s deleted", video.id)

    def signed_urls(self, video: Video, expires_in: int) -> Tuple[str, Optional[str]]:
        if video.phase != VideoPhase.COMPLETED or not video.video_path:
            raise ValidationError("Video is not ready yet", status_code=409)
        return self._link(video.video_path, expires_in), (
            self._link(video.thumbnail_path, expires_in) if video.thumbnail_path else None
        )

    def _link(self, path: str, expires_in: int) -> str:
        # rows written before storage paths were introduced hold full URLs
        if path.startswith(("http://", "https://")):
            return path
        return self.storage.create_signed_url(path, expires_in)


def _remote_error(remote: Dict[str, Any]) -> Optional[str]:
    error = remote.get("error")
    if isinstance(error, dict):
        return error.get("message")
    if isinstance(error, str):
        return error
    return None
