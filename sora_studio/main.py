# sora_studio/main.py
# FastAPI entry point

import asyncio
from typing import Optional, List

from fastapi import FastAPI, BackgroundTasks, Depends, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import repository
from .config import settings
from .db import init_db, get_session, session_factory
from .errors import AppError, NotFoundError
from .lifecycle import REMOTE_FAILED, VideoLifecycle
from .logging_config import get_logger, setup_logging
from .models import Video, VideoStatus, utcnow
from .notifications import NotificationCenter
from .openai_client import SoraClient
from .poller import StatusPoller, watch_submission
from .pricing import PRO_MODEL, upgrade_cost
from .schemas import (
    EnhanceRequest,
    EnhanceResponse,
    NotificationOut,
    RelayGenerateRequest,
    SignedUrlOut,
    StatsOut,
    StatusOut,
    SubmitOut,
    UpgradeCostOut,
    UsageLogOut,
    UsageSummaryOut,
    VideoGenerationRequest,
    VideoOut,
    VideoPage,
)
from .storage import LocalStorage, build_storage

logger = get_logger(__name__)

# -------------------------------------------------------------------
# FastAPI & CORS
# -------------------------------------------------------------------
app = FastAPI(title="Sora Studio", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_services(target: FastAPI) -> None:
    notifications = NotificationCenter()
    lifecycle = VideoLifecycle(
        SoraClient(),
        build_storage(),
        notifications,
        session_factory(),
        fetch_thumbnails=settings.FETCH_THUMBNAILS,
    )
    target.state.notifications = notifications
    target.state.lifecycle = lifecycle
    target.state.poller = StatusPoller(lifecycle, _load_outstanding, interval=settings.POLL_INTERVAL)


def _load_outstanding() -> List[Video]:
    with session_factory()() as session:
        return repository.list_outstanding(session)


@app.on_event("startup")
async def on_startup():
    setup_logging(settings.LOG_LEVEL)
    init_db()
    build_services(app)
    logger.info("storage backend: %s  openai: %s", settings.STORAGE_BACKEND, settings.OPENAI_BASE_URL)
    if settings.POLL_AUTOSTART and await asyncio.to_thread(_load_outstanding):
        app.state.poller.ensure_running()


@app.on_event("shutdown")
async def on_shutdown():
    poller = getattr(app.state, "poller", None)
    if poller is not None:
        await poller.stop()


@app.get("/health")
def health():
    return {"ok": True, "time": utcnow().isoformat()}


# -------------------------------------------------------------------
# Errors: every failure is answered as {"error": "..."}
# -------------------------------------------------------------------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.message, "code": exc.code}, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()
    )
    return JSONResponse({"error": problems or "Invalid request"}, status_code=422)


# -------------------------------------------------------------------
# Dependencies
# -------------------------------------------------------------------
def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # identity is set by the auth gateway in front of the service
    if not x_user_id or not x_user_id.strip():
        raise AppError("User not authenticated", code="UNAUTHENTICATED", status_code=401)
    return x_user_id.strip()


def get_lifecycle(request: Request) -> VideoLifecycle:
    return request.app.state.lifecycle


def get_poller(request: Request) -> StatusPoller:
    return request.app.state.poller


def get_notifications(request: Request) -> NotificationCenter:
    return request.app.state.notifications


def get_watcher(
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
    poller: StatusPoller = Depends(get_poller),
):
    async def watch(video_id: str):
        await watch_submission(
            lifecycle,
            video_id,
            attempts=settings.POLL_MAX_ATTEMPTS,
            interval=settings.POLL_INTERVAL,
            step=settings.PROGRESS_STEP,
            token=poller.token,
        )
    return watch


def _owned_video(session: Session, video_id: str, owner_id: str) -> Video:
    video = repository.get_video(session, video_id, owner_id)
    if not video:
        raise NotFoundError("Video not found")
    return video


def _submitted(result, lifecycle, poller, background_tasks, watch) -> SubmitOut:
    if result.submitted:
        poller.ensure_running()
        background_tasks.add_task(watch, result.video.id)
    return SubmitOut(
        video=VideoOut.from_video(result.video, lifecycle.progress.get(result.video.id)),
        submitted=result.submitted,
        error=result.error,
    )


#-----------VIDEOS-----------------------------------------------------------------------------
#---------------------------------------------------------------------------------------------
# Create a video: row + OpenAI job. A failed hand-off leaves the row pending (retryable).
#*******************************************************************************************************
@app.post("/api/videos", response_model=SubmitOut, status_code=201)
async def create_video(
    body: VideoGenerationRequest,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_owner_id),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
    poller: StatusPoller = Depends(get_poller),
    watch=Depends(get_watcher),
):
    result = await lifecycle.submit(owner_id, body)
    return _submitted(result, lifecycle, poller, background_tasks, watch)


# Gallery: filter by category/status, paginate
#*******************************************************************************************************
@app.get("/api/videos", response_model=VideoPage)
def list_videos(
    category: Optional[str] = None,
    status: Optional[VideoStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    order_by: str = Query("created_at", pattern="^(created_at|updated_at)$"),
    ascending: bool = False,
    owner_id: str = Depends(get_owner_id),
    session: Session = Depends(get_session),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    videos, total = repository.list_user_videos(
        session,
        owner_id,
        category=category,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
        order_by=order_by,
        ascending=ascending,
    )
    return VideoPage(
        videos=[VideoOut.from_video(v, lifecycle.progress.get(v.id)) for v in videos],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get("/api/videos/{video_id}", response_model=VideoOut)
def get_video(
    video_id: str,
    owner_id: str = Depends(get_owner_id),
    session: Session = Depends(get_session),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    video = _owned_video(session, video_id, owner_id)
    return VideoOut.from_video(video, lifecycle.progress.get(video.id))


@app.delete("/api/videos/{video_id}")
async def delete_video(
    video_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    video = await lifecycle.owned(video_id, owner_id)
    await lifecycle.delete(owner_id, video)
    return {"detail": "Video deleted"}


@app.post("/api/videos/{video_id}/retry", response_model=SubmitOut)
async def retry_video(
    video_id: str,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_owner_id),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
    poller: StatusPoller = Depends(get_poller),
    watch=Depends(get_watcher),
):
    video = await lifecycle.owned(video_id, owner_id)
    result = await lifecycle.retry(owner_id, video)
    return _submitted(result, lifecycle, poller, background_tasks, watch)


@app.get("/api/videos/{video_id}/upgrade-cost", response_model=UpgradeCostOut)
def get_upgrade_cost(
    video_id: str,
    owner_id: str = Depends(get_owner_id),
    session: Session = Depends(get_session),
):
    video = _owned_video(session, video_id, owner_id)
    return UpgradeCostOut(video_id=video.id, model=PRO_MODEL, cost=upgrade_cost(video))


@app.post("/api/videos/{video_id}/upgrade", response_model=SubmitOut, status_code=201)
async def upgrade_video(
    video_id: str,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_owner_id),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
    poller: StatusPoller = Depends(get_poller),
    watch=Depends(get_watcher),
):
    source = await lifecycle.owned(video_id, owner_id)
    result = await lifecycle.upgrade(owner_id, source)
    return _submitted(result, lifecycle, poller, background_tasks, watch)


# Status as stored (cheap, for UI polling) and an explicit reconcile against OpenAI
#*******************************************************************************************************
@app.get("/api/videos/{video_id}/status", response_model=StatusOut)
def video_status(
    video_id: str,
    owner_id: str = Depends(get_owner_id),
    session: Session = Depends(get_session),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    video = _owned_video(session, video_id, owner_id)
    return StatusOut(video_id=video.id, status=video.status, phase=video.phase.value, progress=lifecycle.progress.get(video.id))


@app.post("/api/videos/{video_id}/check", response_model=StatusOut)
async def check_video(
    video_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    video = await lifecycle.owned(video_id, owner_id)
    await lifecycle.check_status(video)
    video = await lifecycle.fetch(video.id) or video
    return StatusOut(video_id=video.id, status=video.status, phase=video.phase.value, progress=lifecycle.progress.get(video.id))


@app.get("/api/videos/{video_id}/url", response_model=SignedUrlOut)
def video_url(
    video_id: str,
    expires_in: int = Query(settings.SIGNED_URL_TTL, ge=60, le=7 * 24 * 3600),
    owner_id: str = Depends(get_owner_id),
    session: Session = Depends(get_session),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    video = _owned_video(session, video_id, owner_id)
    url, thumbnail_url = lifecycle.signed_urls(video, expires_in)
    return SignedUrlOut(url=url, thumbnail_url=thumbnail_url, expires_in=expires_in)


#-----------STATS & USAGE----------------------------------------------------------------------
#---------------------------------------------------------------------------------------------
@app.get("/api/stats", response_model=StatsOut)
def stats(owner_id: str = Depends(get_owner_id), session: Session = Depends(get_session)):
    return StatsOut(**repository.get_user_stats(session, owner_id))


@app.get("/api/usage", response_model=UsageSummaryOut)
def usage(
    period: str = Query("month"),
    owner_id: str = Depends(get_owner_id),
    session: Session = Depends(get_session),
):
    summary = repository.get_usage_summary(session, owner_id, period)
    summary["logs"] = [UsageLogOut.from_log(log) for log in summary["logs"]]
    return UsageSummaryOut(**summary)


@app.get("/api/notifications", response_model=List[NotificationOut])
def notifications(
    owner_id: str = Depends(get_owner_id),
    center: NotificationCenter = Depends(get_notifications),
):
    return [NotificationOut(**n.to_dict()) for n in center.drain(owner_id)]


# Target of local signed URLs
#*******************************************************************************************************
@app.get("/api/storage/{path:path}")
def storage_object(
    path: str,
    expires: int = Query(...),
    signature: str = Query(...),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    storage = lifecycle.storage
    if not isinstance(storage, LocalStorage):
        raise NotFoundError("Object not found")
    if not storage.verify(path, expires, signature):
        raise AppError("Invalid or expired link", code="INVALID_SIGNATURE", status_code=403)
    target = storage.open_path(path)
    media_type = "video/mp4" if target.suffix == ".mp4" else None
    return FileResponse(target, media_type=media_type)


#-----------FUNCTION RELAYS--------------------------------------------------------------------
#---------------------------------------------------------------------------------------------
# POST starts a generation, GET ?video_id= answers 202 while running and the mp4 once ready
#*******************************************************************************************************
@app.post("/functions/generate-video")
async def relay_generate(
    body: RelayGenerateRequest,
    owner_id: str = Depends(get_owner_id),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
    poller: StatusPoller = Depends(get_poller),
):
    video, data = await lifecycle.relay(
        owner_id,
        model=body.model,
        prompt=body.prompt,
        duration=body.duration,
        size=body.size,
        category=body.category,
        style=body.style,
    )
    poller.ensure_running()
    return {
        **data,
        "video_id": video.openai_task_id,
        "estimated_cost": video.cost,
    }


@app.get("/functions/generate-video")
async def relay_status(
    video_id: str = Query(...),
    owner_id: str = Depends(get_owner_id),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    # only jobs the caller started are visible
    await lifecycle.owned_job(video_id, owner_id)
    remote = await lifecycle.client.retrieve_video(video_id)
    status = str(remote.get("status") or "").lower()
    if status == VideoStatus.COMPLETED:
        content = await lifecycle.client.download_content(video_id)
        return Response(content=content, media_type="video/mp4")
    if status in REMOTE_FAILED:
        error = remote.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        return JSONResponse({"error": message or "Video generation failed"}, status_code=502)
    return JSONResponse({"id": video_id, "status": status, "progress": remote.get("progress")}, status_code=202)


@app.post("/functions/enhance-prompt", response_model=EnhanceResponse)
async def relay_enhance(
    body: EnhanceRequest,
    owner_id: str = Depends(get_owner_id),
    lifecycle: VideoLifecycle = Depends(get_lifecycle),
):
    enhanced = await lifecycle.client.enhance_prompt(
        body.original_prompt,
        duration=body.duration,
        resolution=body.resolution,
        category=body.category,
        style=body.style,
        model=body.model,
    )
    return EnhanceResponse(original=body.original_prompt, enhanced=enhanced)
