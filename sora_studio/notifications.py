"""
Per-owner notification feed.

The lifecycle code reports user-facing outcomes here (video ready, generation
failed, polling timed out) instead of raising. A UI drains the feed and shows
the entries as toasts.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Deque, Dict, List, Optional

from .logging_config import get_logger
from .models import utcnow

logger = get_logger(__name__)

SUCCESS = "success"
ERROR = "error"
WARNING = "warning"
INFO = "info"


@dataclass
class Notification:
    level: str
    title: str
    description: str = ""
    video_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class NotificationCenter:
    def __init__(self, max_per_owner: int = 100):
        self._feeds: Dict[str, Deque[Notification]] = defaultdict(lambda: deque(maxlen=max_per_owner))

    def push(self, owner_id: str, level: str, title: str, description: str = "", video_id: str | None = None) -> None:
        try:
            self._feeds[owner_id].append(Notification(level, title, description, video_id))
        except Exception:
            logger.exception("could not record notification for %s", owner_id)

    def success(self, owner_id: str, title: str, description: str = "", video_id: str | None = None) -> None:
        self.push(owner_id, SUCCESS, title, description, video_id)

    def error(self, owner_id: str, title: str, description: str = "", video_id: str | None = None) -> None:
        self.push(owner_id, ERROR, title, description, video_id)

    def warning(self, owner_id: str, title: str, description: str = "", video_id: str | None = None) -> None:
        self.push(owner_id, WARNING, title, description, video_id)

    def peek(self, owner_id: str) -> List[Notification]:
        return list(self._feeds.get(owner_id, ()))

    def drain(self, owner_id: str) -> List[Notification]:
        feed = self._feeds.pop(owner_id, None)
        return list(feed) if feed else []
