# sora_studio/poller.py
# Background polling of OpenAI jobs that are still running

import asyncio
import contextlib
from typing import Callable, List, Optional, Set

from .lifecycle import TERMINAL, VideoLifecycle
from .logging_config import get_logger
from .models import Video, VideoPhase

logger = get_logger(__name__)

SYNTHETIC_PROGRESS_CAP = 95
TIMED_OUT = "timeout"


class CancelToken:
    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class StatusPoller:
    """
    Every `interval` seconds, reloads the outstanding videos and fires one
    status check per video without waiting for it. The loop ends by itself
    once nothing is outstanding; `ensure_running()` starts it again.
    """

    def __init__(
        self,
        lifecycle: VideoLifecycle,
        load_outstanding: Callable[[], List[Video]],
        interval: float = 5.0,
    ):
        self.lifecycle = lifecycle
        self.load_outstanding = load_outstanding
        self.interval = interval
        self.token = CancelToken()
        self._task: Optional[asyncio.Task] = None
        self._checks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def ensure_running(self) -> None:
        if self.running:
            return
        if self.token.cancelled:
            self.token = CancelToken()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("status poller started (every %.1fs)", self.interval)

    async def _run(self) -> None:
        token = self.token
        while not token.cancelled:
            await asyncio.sleep(self.interval)
            if token.cancelled or await self.tick() == 0:
                break
        logger.info("status poller stopped")

    async def tick(self) -> int:
        """Schedule one check per outstanding video; returns how many are outstanding."""
        try:
            outstanding = await asyncio.to_thread(self.load_outstanding)
            videos = [v for v in outstanding if v.phase == VideoPhase.AWAITING_RESULT]
        except Exception:
            logger.exception("could not load outstanding videos")
            return -1  # keep polling, the store may come back

        for video in videos:
            if self.lifecycle.is_checking(video.id):
                continue
            task = asyncio.get_running_loop().create_task(self.lifecycle.check_status(video, self.token))
            self._checks.add(task)
            task.add_done_callback(self._checks.discard)
        return len(videos)

    async def stop(self) -> None:
        self.token.cancel()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for check in list(self._checks):
            check.cancel()
        if self._checks:
            await asyncio.gather(*self._checks, return_exceptions=True)


async def watch_submission(
    lifecycle: VideoLifecycle,
    video_id: str,
    *,
    attempts: int = 60,
    interval: float = 5.0,
    step: int = 5,
    token: Optional[CancelToken] = None,
) -> Optional[str]:
    """
    Poll one freshly submitted video until it finishes or `attempts` run out.

    While OpenAI reports no progress, a synthetic value advancing by `step`
    per tick (capped below 100) is published instead. Returns the final status,
    "timeout" when the ceiling is hit, or None if the video went away.
    """
    synthetic = 0
    real_seen = False
    owner_id = None
    for _ in range(attempts):
        await asyncio.sleep(interval)
        if token is not None and token.cancelled:
            return None

        video = await lifecycle.fetch(video_id)
        if video is None:
            return None
        owner_id = video.user_id
        if video.status in TERMINAL:
            return video.status

        result = await lifecycle.check_status(video, token)
        if result is not None and result.status in TERMINAL:
            return result.status

        if result is not None and result.progress is not None:
            real_seen = True
        if not real_seen:
            synthetic = min(synthetic + step, SYNTHETIC_PROGRESS_CAP)
            lifecycle.progress[video_id] = synthetic

    logger.warning("video %s still not finished after %d checks", video_id, attempts)
    if owner_id is not None:
        lifecycle.notifications.error(
            owner_id,
            "Generation timed out",
            "The video is taking longer than expected. It stays in your list; check again later.",
            video_id,
        )
    return TIMED_OUT
