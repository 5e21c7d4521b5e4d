import asyncio
import threading

import httpx
import pytest

from sora_studio import repository
from sora_studio.errors import QuotaExceededError, UpstreamError, ValidationError
from sora_studio.models import UsageLog, VideoPhase
from sora_studio.schemas import VideoGenerationRequest
from sora_studio.storage import video_key
from sqlmodel import select


def request(**overrides):
    fields = dict(prompt="a cat", model="sora-2", duration=4, size="1280x720", category="animals")
    fields.update(overrides)
    return VideoGenerationRequest(**fields)


def usage_rows(sessions):
    with sessions() as session:
        return list(session.exec(select(UsageLog)).all())


# -------------------------------------------------------------------
# submit
# -------------------------------------------------------------------
def test_submit_moves_video_to_processing(lifecycle, fake_client, sessions, notifications):
    result = asyncio.run(lifecycle.submit("user-1", request()))

    assert result.submitted
    video = lifecycle.load(result.video.id)
    assert video.status == "processing"
    assert video.openai_task_id == "video_1"
    assert video.cost == 0.40
    assert video.video_path is None
    assert fake_client.created == [{"model": "sora-2", "prompt": "a cat", "seconds": 4, "size": "1280x720"}]

    logs = usage_rows(sessions)
    assert [(log.action, log.cost, log.video_id) for log in logs] == [("generate", 0.40, video.id)]
    assert notifications.peek("user-1")[-1].level == "success"


def test_submitted_video_is_usable_after_the_write(lifecycle):
    result = asyncio.run(lifecycle.submit("user-1", request()))

    assert (result.video.status, result.video.openai_task_id) == ("processing", "video_1")
    assert lifecycle.progress[result.video.id] == 0


def test_status_and_usage_are_written_together(lifecycle, fake_client, sessions, notifications, monkeypatch):
    def unsaveable_log(**fields):
        fields["video_id"] = None  # NOT NULL column, the commit fails
        return UsageLog(**fields)

    monkeypatch.setattr(repository, "UsageLog", unsaveable_log)

    result = asyncio.run(lifecycle.submit("user-1", request()))

    assert not result.submitted
    video = lifecycle.load(result.video.id)
    assert (video.status, video.openai_task_id) == ("pending", None)
    assert usage_rows(sessions) == []
    assert notifications.peek("user-1")[-1].level == "warning"


def test_submit_pro_cost(lifecycle):
    result = asyncio.run(lifecycle.submit("user-1", request(model="sora-2-pro", duration=8, size="1792x1024")))
    assert result.video.cost == 4.00


def test_failed_submission_keeps_row_pending(lifecycle, fake_client, sessions, notifications):
    fake_client.create_result = UpstreamError("openai error 400: bad prompt", upstream_status=400)

    result = asyncio.run(lifecycle.submit("user-1", request()))

    assert not result.submitted
    video = lifecycle.load(result.video.id)
    assert video.status == "pending"
    assert video.openai_task_id is None
    assert video.phase == VideoPhase.NEEDS_SUBMISSION
    assert usage_rows(sessions) == []
    assert notifications.peek("user-1")[-1].level == "error"


def test_response_without_id_is_a_failed_submission(lifecycle, fake_client):
    fake_client.create_result = {"status": "queued"}
    result = asyncio.run(lifecycle.submit("user-1", request()))
    assert not result.submitted
    assert lifecycle.load(result.video.id).phase == VideoPhase.NEEDS_SUBMISSION


def test_enhanced_prompt_is_sent(lifecycle, fake_client):
    result = asyncio.run(lifecycle.submit("user-1", request(enhance=True)))
    assert result.video.enhanced_prompt == "an enhanced prompt"
    assert fake_client.created[0]["prompt"] == "an enhanced prompt"


def test_quota_error_aborts_submission(lifecycle, fake_client, sessions):
    fake_client.enhance_result = QuotaExceededError("The OpenAI API key has no available credits.", upstream_status=429)

    with pytest.raises(QuotaExceededError):
        asyncio.run(lifecycle.submit("user-1", request(enhance=True)))

    assert fake_client.created == []
    with sessions() as session:
        assert repository.list_user_videos(session, "user-1")[1] == 0


def test_other_enhancement_errors_fall_back_to_original_prompt(lifecycle, fake_client):
    fake_client.enhance_result = UpstreamError("OpenAI is experiencing internal problems.", upstream_status=503)

    result = asyncio.run(lifecycle.submit("user-1", request(enhance=True)))

    assert result.submitted
    assert result.video.enhanced_prompt is None
    assert fake_client.created[0]["prompt"] == "a cat"


# -------------------------------------------------------------------
# retry / upgrade
# -------------------------------------------------------------------
def test_retry_resubmits_unsubmitted_video(lifecycle, make_video, sessions):
    video = make_video(status="pending")

    result = asyncio.run(lifecycle.retry("user-1", video))

    assert result.submitted
    stored = lifecycle.load(video.id)
    assert stored.status == "processing"
    assert stored.openai_task_id == "video_1"
    assert [log.action for log in usage_rows(sessions)] == ["retry"]


def test_retry_failed_video(lifecycle, make_video):
    video = make_video(status="failed", openai_task_id="video_old")
    result = asyncio.run(lifecycle.retry("user-1", video))
    assert result.submitted
    assert lifecycle.load(video.id).openai_task_id == "video_1"


def test_retry_refuses_running_video(lifecycle, make_video):
    video = make_video(status="processing", openai_task_id="video_9")
    with pytest.raises(ValidationError):
        asyncio.run(lifecycle.retry("user-1", video))


def test_upgrade_creates_pro_copy(lifecycle, make_video, fake_client, sessions):
    source = make_video(status="completed", openai_task_id="video_0", video_path="video_0.mp4", size="720x1280", duration=8)

    result = asyncio.run(lifecycle.upgrade("user-1", source))

    assert result.submitted
    assert result.video.id != source.id
    assert result.video.model == "sora-2-pro"
    assert result.video.cost == 2.40
    assert fake_client.created[0]["model"] == "sora-2-pro"
    log = usage_rows(sessions)[0]
    assert log.action == "upgrade"
    assert log.meta["original_video_id"] == source.id
    assert lifecycle.load(source.id).model == "sora-2"


def test_upgrade_of_pro_video_is_rejected(lifecycle, make_video):
    source = make_video(model="sora-2-pro")
    with pytest.raises(ValidationError):
        asyncio.run(lifecycle.upgrade("user-1", source))


# -------------------------------------------------------------------
# check_status
# -------------------------------------------------------------------
def test_check_without_external_id_is_a_noop(lifecycle, make_video, fake_client):
    video = make_video(status="pending")

    assert asyncio.run(lifecycle.check_status(video)) is None

    assert lifecycle.load(video.id).status == "pending"
    assert fake_client.retrieve_calls == []


def test_completed_job_is_materialized(lifecycle, make_video, fake_client, storage, notifications):
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "completed", "progress": 100}]

    result = asyncio.run(lifecycle.check_status(video))

    assert result.status == "completed"
    stored = lifecycle.load(video.id)
    assert stored.status == "completed"
    assert stored.video_path == video_key("video_7")
    assert stored.thumbnail_path == "thumbnails/video_7.webp"
    assert storage.open_path(stored.video_path).read_bytes() == b"fake-mp4-bytes"
    assert notifications.peek("user-1")[-1].title == "Video completed!"


def test_second_check_on_completed_video_does_nothing(lifecycle, make_video, fake_client):
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "completed"}]

    asyncio.run(lifecycle.check_status(video))
    path = lifecycle.load(video.id).video_path
    downloads = len(fake_client.downloads)

    # stale in-memory copy still says processing
    asyncio.run(lifecycle.check_status(video))

    assert lifecycle.load(video.id).video_path == path
    assert len(fake_client.downloads) == downloads
    assert fake_client.retrieve_calls == ["video_7"]


def test_existing_object_is_reused(lifecycle, make_video, fake_client, storage):
    storage.upload(video_key("video_7"), b"uploaded-before-crash", "video/mp4")
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "completed"}]

    asyncio.run(lifecycle.check_status(video))

    assert ("video_7", None) not in fake_client.downloads
    assert lifecycle.load(video.id).status == "completed"
    assert storage.open_path("video_7.mp4").read_bytes() == b"uploaded-before-crash"


def test_missing_thumbnail_does_not_block_completion(lifecycle, make_video, fake_client):
    fake_client.thumbnail = UpstreamError("openai error 404: no thumbnail", upstream_status=404)
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "completed"}]

    asyncio.run(lifecycle.check_status(video))

    stored = lifecycle.load(video.id)
    assert stored.status == "completed"
    assert stored.thumbnail_path is None


def test_remote_failure_marks_video_failed(lifecycle, make_video, fake_client, notifications):
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "failed", "error": {"message": "blocked by moderation"}}]

    result = asyncio.run(lifecycle.check_status(video))

    assert result.status == "failed"
    stored = lifecycle.load(video.id)
    assert stored.status == "failed"
    assert stored.video_path is None
    assert stored.meta["error"] == "blocked by moderation"
    last = notifications.peek("user-1")[-1]
    assert (last.level, last.description) == ("error", "blocked by moderation")


def test_network_error_leaves_status_alone(lifecycle, make_video, fake_client, notifications):
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [httpx.ConnectError("connection refused")]

    assert asyncio.run(lifecycle.check_status(video)) is None

    assert lifecycle.load(video.id).status == "processing"
    assert notifications.peek("user-1") == []
    assert not lifecycle.is_checking(video.id)


def test_running_job_reports_progress(lifecycle, make_video, fake_client):
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "in_progress", "progress": 42}]

    result = asyncio.run(lifecycle.check_status(video))

    assert (result.status, result.progress) == ("processing", 42)
    assert lifecycle.progress[video.id] == 42
    assert lifecycle.load(video.id).status == "processing"


def test_failed_row_update_keeps_last_status(lifecycle, make_video, fake_client, notifications, monkeypatch):
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "completed"}]

    def reject(*args, **kwargs):
        raise RuntimeError("write rejected")

    monkeypatch.setattr(repository, "update_video", reject)

    assert asyncio.run(lifecycle.check_status(video)) is None

    assert lifecycle.load(video.id).status == "processing"
    assert notifications.peek("user-1") == []


def test_cancelled_token_prevents_mutation(lifecycle, make_video, fake_client):
    class Token:
        cancelled = True

    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "completed"}]

    assert asyncio.run(lifecycle.check_status(video, Token())) is None
    assert lifecycle.load(video.id).status == "processing"


def test_overlapping_checks_are_skipped(lifecycle, make_video, fake_client):
    video = make_video(status="processing", openai_task_id="video_7")

    async def scenario():
        gate = asyncio.Event()
        original = fake_client.retrieve_video

        async def slow_retrieve(video_id):
            await gate.wait()
            return await original(video_id)

        fake_client.retrieve_video = slow_retrieve
        first = asyncio.create_task(lifecycle.check_status(video))
        await asyncio.sleep(0)
        assert lifecycle.is_checking(video.id)
        second = await lifecycle.check_status(video)
        gate.set()
        return await first, second

    first, second = asyncio.run(scenario())
    assert first.status == "processing"
    assert second is None
    assert fake_client.retrieve_calls == ["video_7"]


def test_storage_path_only_on_completed_rows(lifecycle, make_video, fake_client, sessions):
    outcomes = {"video_a": "completed", "video_b": "failed", "video_c": "in_progress"}
    videos = []
    for task_id, status in outcomes.items():
        fake_client.statuses[task_id] = [{"status": status}]
        videos.append(make_video(status="processing", openai_task_id=task_id))
    videos.append(make_video(status="pending"))

    async def check_all():
        await asyncio.gather(*(lifecycle.check_status(v) for v in videos))

    asyncio.run(check_all())

    with sessions() as session:
        rows, _ = repository.list_user_videos(session, "user-1", limit=100)
    for row in rows:
        assert (row.video_path is not None) == (row.status == "completed")


# -------------------------------------------------------------------
# delete / links
# -------------------------------------------------------------------
def test_delete_removes_row_and_objects(lifecycle, make_video, storage):
    storage.upload("video_7.mp4", b"x", "video/mp4")
    video = make_video(status="completed", openai_task_id="video_7", video_path="video_7.mp4")

    asyncio.run(lifecycle.delete("user-1", video))

    assert lifecycle.load(video.id) is None
    assert not storage.exists("video_7.mp4")


def test_signed_urls_need_a_completed_video(lifecycle, make_video):
    with pytest.raises(ValidationError):
        lifecycle.signed_urls(make_video(status="processing", openai_task_id="video_7"), 3600)

    ready = make_video(status="completed", openai_task_id="video_8", video_path="video_8.mp4")
    url, thumb = lifecycle.signed_urls(ready, 3600)
    assert url.startswith("/api/storage/video_8.mp4?")
    assert thumb is None


def test_legacy_full_urls_are_returned_as_is(lifecycle, make_video):
    video = make_video(status="completed", openai_task_id="video_9", video_path="https://cdn.example.com/v.mp4")
    assert lifecycle.signed_urls(video, 3600)[0] == "https://cdn.example.com/v.mp4"


def test_database_work_runs_off_the_event_loop(lifecycle, make_video, fake_client, monkeypatch):
    video = make_video(status="processing", openai_task_id="video_7")
    fake_client.statuses["video_7"] = [{"status": "completed"}]
    threads = []
    original = repository.update_video

    def recording_update(*args, **kwargs):
        threads.append(threading.get_ident())
        return original(*args, **kwargs)

    monkeypatch.setattr(repository, "update_video", recording_update)

    async def scenario():
        loop_thread = threading.get_ident()
        await lifecycle.check_status(video)
        return loop_thread

    loop_thread = asyncio.run(scenario())
    assert threads and loop_thread not in threads
    assert lifecycle.load(video.id).status == "completed"


# -------------------------------------------------------------------
# relay
# -------------------------------------------------------------------
def test_relay_stores_accepted_job(lifecycle, fake_client, sessions):
    video, data = asyncio.run(
        lifecycle.relay("user-1", model="sora-2", prompt="a cat", duration=8, size="720x1280", category="general")
    )

    assert data["id"] == "video_1"
    stored = lifecycle.load(video.id)
    assert (stored.status, stored.openai_task_id, stored.cost) == ("processing", "video_1", 0.8)
    assert [(log.action, log.cost) for log in usage_rows(sessions)] == [("generate", 0.8)]


def test_relay_propagates_openai_errors(lifecycle, fake_client, sessions):
    fake_client.create_result = UpstreamError("openai error 400: bad prompt", upstream_status=400)

    with pytest.raises(UpstreamError):
        asyncio.run(lifecycle.relay("user-1", model="sora-2", prompt="p", duration=4, size="1280x720", category="general"))

    with sessions() as session:
        assert repository.list_user_videos(session, "user-1")[1] == 0
