# tests/conftest.py
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, create_engine

from sora_studio import main
from sora_studio.db import init_db, session_factory
from sora_studio.lifecycle import VideoLifecycle
from sora_studio.models import Video
from sora_studio.notifications import NotificationCenter
from sora_studio.poller import CancelToken
from sora_studio.storage import LocalStorage


class FakeSoraClient:
    """Stands in for SoraClient; answers are queued per OpenAI job id."""

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.create_result: Any = None
        self.statuses: Dict[str, List[Any]] = {}
        self.retrieve_calls: List[str] = []
        self.downloads: List[tuple] = []
        self.content = b"fake-mp4-bytes"
        self.thumbnail: Any = b"fake-webp-bytes"
        self.enhance_result: Any = "an enhanced prompt"
        self.enhance_calls: List[str] = []
        self._next = 0

    async def create_video(self, *, model: str, prompt: str, seconds: int, size: str) -> dict:
        self.created.append({"model": model, "prompt": prompt, "seconds": seconds, "size": size})
        if isinstance(self.create_result, Exception):
            raise self.create_result
        if self.create_result is not None:
            return self.create_result
        self._next += 1
        return {"id": f"video_{self._next}", "status": "queued"}

    async def retrieve_video(self, video_id: str) -> dict:
        self.retrieve_calls.append(video_id)
        queue = self.statuses.get(video_id) or [{"status": "in_progress"}]
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def download_content(self, video_id: str, variant: Optional[str] = None) -> bytes:
        self.downloads.append((video_id, variant))
        if variant == "thumbnail":
            if isinstance(self.thumbnail, Exception):
                raise self.thumbnail
            return self.thumbnail
        return self.content

    async def enhance_prompt(self, prompt: str, **context) -> str:
        self.enhance_calls.append(prompt)
        if isinstance(self.enhance_result, Exception):
            raise self.enhance_result
        return self.enhance_result


class FakePoller:
    def __init__(self):
        self.token = CancelToken()
        self.started = 0

    def ensure_running(self):
        self.started += 1


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    init_db(engine)
    return engine


@pytest.fixture
def sessions(engine):
    return session_factory(engine)


@pytest.fixture
def fake_client():
    return FakeSoraClient()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "storage", secret="test-secret")


@pytest.fixture
def notifications():
    return NotificationCenter()


@pytest.fixture
def lifecycle(fake_client, storage, notifications, sessions):
    return VideoLifecycle(fake_client, storage, notifications, sessions)


@pytest.fixture
def make_video(sessions):
    def _make(**overrides) -> Video:
        fields = dict(
            user_id="user-1",
            prompt="a cat",
            model="sora-2",
            duration=4,
            size="1280x720",
            category="animals",
            cost=0.4,
        )
        fields.update(overrides)
        with sessions() as session:
            video = Video(**fields)
            session.add(video)
            session.commit()
            session.refresh(video)
            return video
    return _make


@pytest.fixture
def watched():
    return []


@pytest.fixture
def poller():
    return FakePoller()


@pytest.fixture
def client(engine, lifecycle, notifications, poller, watched):
    def override_session():
        with Session(engine) as session:
            yield session

    def override_watcher():
        async def watch(video_id: str):
            watched.append(video_id)
        return watch

    app = main.app
    app.dependency_overrides[main.get_session] = override_session
    app.dependency_overrides[main.get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[main.get_notifications] = lambda: notifications
    app.dependency_overrides[main.get_poller] = lambda: poller
    app.dependency_overrides[main.get_watcher] = override_watcher
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"X-User-Id": "user-1"}
