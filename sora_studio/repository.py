# sora_studio/repository.py
# Row-level access to the videos and usage_logs tables

import calendar
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from .errors import NotFoundError, ValidationError
from .models import OUTSTANDING_STATUSES, UsageLog, Video, VideoStatus, utcnow

ORDERABLE = ("created_at", "updated_at")
PERIODS = ("today", "yesterday", "week", "15days", "month", "3months", "year")


# -------------------------------------------------------------------
# Videos
# -------------------------------------------------------------------
def create_video(session: Session, video: Video) -> Video:
    session.add(video)
    session.commit()
    session.refresh(video)
    return video


def get_video(session: Session, video_id: str, owner_id: Optional[str] = None) -> Optional[Video]:
    video = session.get(Video, video_id)
    if video is None or (owner_id is not None and video.user_id != owner_id):
        return None
    return video


def update_video(session: Session, video_id: str, **updates: Any) -> Video:
    video = session.get(Video, video_id)
    if video is None:
        raise NotFoundError(f"Video {video_id} not found")
    for key, value in updates.items():
        setattr(video, key, value)
    video.updated_at = utcnow()
    session.add(video)
    session.commit()
    session.refresh(video)
    return video


def get_video_by_task(session: Session, openai_task_id: str, owner_id: str) -> Optional[Video]:
    query = select(Video).where(Video.openai_task_id == openai_task_id, Video.user_id == owner_id)
    return session.exec(query).first()


def _usage_entry(video: Video, action: str, meta: Optional[Dict[str, Any]]) -> UsageLog:
    return UsageLog(
        user_id=video.user_id,
        video_id=video.id,
        action=action,
        cost=video.cost,
        duration=video.duration,
        meta=meta or {},
    )


def start_job(
    session: Session,
    video_id: str,
    openai_task_id: str,
    *,
    action: str,
    meta: Optional[Dict[str, Any]] = None,
) -> Video:
    """Mark a stored video as processing under `openai_task_id` and log the charge, in one commit."""
    video = session.get(Video, video_id)
    if video is None:
        raise NotFoundError(f"Video {video_id} not found")
    video.openai_task_id = openai_task_id
    video.status = VideoStatus.PROCESSING.value
    video.video_path = None
    video.thumbnail_path = None
    video.updated_at = utcnow()
    session.add(video)
    session.add(_usage_entry(video, action, meta))
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(video)
    return video


def record_started_job(session: Session, video: Video, *, action: str, meta: Optional[Dict[str, Any]] = None) -> Video:
    """Insert a video OpenAI already accepted together with its usage entry."""
    session.add(video)
    session.add(_usage_entry(video, action, meta))
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(video)
    return video


def delete_video(session: Session, video: Video) -> None:
    session.delete(video)
    session.commit()


def list_user_videos(
    session: Session,
    owner_id: str,
    *,
    category: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "created_at",
    ascending: bool = False,
) -> Tuple[List[Video], int]:
    if order_by not in ORDERABLE:
        raise ValidationError(f"cannot order by {order_by}")

    filters = [Video.user_id == owner_id]
    if category:
        filters.append(Video.category == category)
    if status:
        filters.append(Video.status == status)

    column = getattr(Video, order_by)
    query = (
        select(Video)
        .where(*filters)
        .order_by(column.asc() if ascending else column.desc())
        .offset(offset)
        .limit(limit)
    )
    videos = list(session.exec(query).all())
    total = session.exec(select(func.count()).select_from(Video).where(*filters)).one()
    return videos, int(total)


def list_outstanding(session: Session) -> List[Video]:
    """Videos still pending or processing, oldest first."""
    query = select(Video).where(Video.status.in_(OUTSTANDING_STATUSES)).order_by(Video.created_at.asc())
    return list(session.exec(query).all())


# -------------------------------------------------------------------
# Usage & stats
# -------------------------------------------------------------------
def log_usage(session: Session, entry: UsageLog) -> UsageLog:
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


def get_videos_by_category(session: Session, owner_id: str) -> Dict[str, int]:
    query = (
        select(Video.category, func.count())
        .where(Video.user_id == owner_id, Video.status == VideoStatus.COMPLETED.value)
        .group_by(Video.category)
    )
    return {category: int(count) for category, count in session.exec(query).all()}


def get_user_stats(session: Session, owner_id: str) -> Dict[str, Any]:
    rows = session.exec(select(Video.status, Video.cost).where(Video.user_id == owner_id)).all()
    return {
        "total_videos": len(rows),
        "completed_videos": sum(1 for status, _ in rows if status == VideoStatus.COMPLETED),
        "processing_videos": sum(1 for status, _ in rows if status == VideoStatus.PROCESSING),
        "total_cost": round(sum(cost or 0 for _, cost in rows), 2),
        "category_counts": get_videos_by_category(session, owner_id),
    }


def months_ago(moment: datetime, months: int) -> datetime:
    """Same wall-clock time `months` calendar months earlier, day clamped to the month's length."""
    index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_range(period: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Start/end of a spend-report period, `now` being the end."""
    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return midnight, now
    if period == "yesterday":
        return midnight - timedelta(days=1), midnight
    if period == "week":
        return now - timedelta(days=7), now
    if period == "15days":
        return now - timedelta(days=15), now
    if period == "month":
        return months_ago(now, 1), now
    if period == "3months":
        return months_ago(now, 3), now
    if period == "year":
        return months_ago(now, 12), now
    raise ValidationError(f"unknown period {period!r}, expected one of {', '.join(PERIODS)}")


def get_usage_summary(session: Session, owner_id: str, period: str = "month", now: Optional[datetime] = None) -> Dict[str, Any]:
    start, end = period_range(period, now)
    query = (
        select(UsageLog)
        .where(UsageLog.user_id == owner_id, UsageLog.created_at >= start, UsageLog.created_at <= end)
        .order_by(UsageLog.created_at.desc())
    )
    logs = list(session.exec(query).all())
    return {
        "period": period,
        "start": start,
        "end": end,
        "total_cost": round(sum(log.cost for log in logs), 2),
        "video_count": len(logs),
        "logs": logs,
    }
