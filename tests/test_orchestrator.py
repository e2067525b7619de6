"""
Generation orchestrator tests.

The transport is an AsyncMock except in TestMalformedStatusBodies, which
drives a real FlowClient over httpx.MockTransport. The pool is real and
backed by a temporary credential directory.

Run with:
    python -m pytest tests/test_orchestrator.py -v
"""

import asyncio
import time

import httpx
import pytest

from conftest import fresh_access, make_cookie, make_token
from services.credentials import CredentialPool
from services.generation import (
    ErrorCode,
    GenerationHandler,
    GenerationKind,
    GenerationRequest,
    StreamChunk,
)
from services.transport import (
    Credits,
    FlowAPIError,
    FlowClient,
    ImageResult,
    VideoStatus,
    VideoSubmission,
)

IMAGE_MODEL = "gemini-2.5-flash-image-landscape"
T2V_MODEL = "veo_3_1_t2v_fast_landscape"
I2V_MODEL = "veo_3_1_i2v_s_fast_fl_landscape"
R2V_MODEL = "veo_3_0_r2v_fast_landscape"

VIDEO_URL = "https://storage.example.com/video.mp4"
IMAGE_URL = "https://storage.example.com/image.png"


def status(value: str, url: str = "") -> VideoStatus:
    return VideoStatus(status=value, video_url=url)


PENDING = status("MEDIA_GENERATION_STATUS_PENDING")
ACTIVE = status("MEDIA_GENERATION_STATUS_ACTIVE")
DONE = status("MEDIA_GENERATION_STATUS_SUCCESSFUL", VIDEO_URL)


@pytest.fixture
def client(mock_client):
    mock_client.generate_image.return_value = ImageResult(url=IMAGE_URL)
    submission = VideoSubmission(task_id="task-1", scene_id="scene-1")
    mock_client.generate_video_text.return_value = submission
    mock_client.generate_video_start_end.return_value = submission
    mock_client.generate_video_reference_images.return_value = submission
    mock_client.check_video_status.return_value = DONE
    return mock_client


@pytest.fixture
def pool(config, credential_dir, client):
    (credential_dir / "a.txt").write_text(make_cookie(make_token("a")))
    return CredentialPool(client=client, config=config.pool)


@pytest.fixture
def handler(pool, client, config):
    return GenerationHandler(pool, client, config)


async def loaded(pool):
    await pool.load()
    return pool.credentials()[0]


async def collect(handler, request) -> list[StreamChunk]:
    return [chunk async for chunk in handler.stream(request)]


class TestPreconditions:
    """Steps that fail before any generation call."""

    @pytest.mark.asyncio
    async def test_unsupported_model(self, handler, pool, client):
        await loaded(pool)
        result = await handler.generate(GenerationRequest(model="no-such-model", prompt="x"))

        assert not result.success
        assert result.error_code == ErrorCode.UNSUPPORTED_MODEL
        client.exchange_session_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_credential(self, handler):
        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.NO_CREDENTIAL

    @pytest.mark.asyncio
    async def test_auth_failure_does_not_count_against_credential(self, handler, pool, client):
        credential = await loaded(pool)
        client.exchange_session_token.side_effect = FlowAPIError("rejected", status_code=401)

        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.AUTH_FAILED
        assert credential.error_count == 0
        assert not credential.disabled
        client.generate_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fresh_token_is_reused(self, handler, pool, client):
        credential = await loaded(pool)
        credential.apply_access(fresh_access())

        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))

        assert result.success
        client.exchange_session_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_workspace_failure(self, handler, pool, client):
        await loaded(pool)
        client.create_project.side_effect = FlowAPIError("boom")

        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.WORKSPACE_FAILED

    @pytest.mark.asyncio
    async def test_workspace_created_once(self, handler, pool, client):
        credential = await loaded(pool)

        await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))
        await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="y"))

        assert credential.project_id == "project-1"
        client.create_project.assert_awaited_once_with(credential.session_token, "Flow2API")

    @pytest.mark.asyncio
    async def test_credit_failure_does_not_affect_result(self, handler, pool, client):
        await loaded(pool)
        client.get_credits.side_effect = FlowAPIError("quota down")

        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))
        await handler.wait_idle()

        assert result.success

    @pytest.mark.asyncio
    async def test_credits_recorded_in_background(self, handler, pool, client):
        credential = await loaded(pool)

        await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))
        await handler.wait_idle()

        assert credential.credits == 100
        assert credential.user_tier == "PAYGATE_TIER_TWO"


class TestImageGeneration:
    """Image branch."""

    @pytest.mark.asyncio
    async def test_success_updates_credential(self, handler, pool, client):
        credential = await loaded(pool)
        credential.error_count = 2

        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="a cat", images=[b"img"]))

        assert result.success
        assert result.kind == GenerationKind.IMAGE
        assert result.url == IMAGE_URL
        assert credential.error_count == 0
        assert credential.last_used is not None

        args = client.generate_image.await_args.args
        assert args[1] == "project-1"
        assert args[2] == "a cat"
        assert args[3] == "GEM_PIX"
        assert args[5] == [{"name": "media-1", "imageInputType": "IMAGE_INPUT_TYPE_REFERENCE"}]

    @pytest.mark.asyncio
    async def test_upload_failure(self, handler, pool, client):
        await loaded(pool)
        client.upload_image.side_effect = FlowAPIError("too large")

        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x", images=[b"1", b"2"]))

        assert result.error_code == ErrorCode.UPLOAD_FAILED
        assert client.upload_image.await_count == 1
        client.generate_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transport_failure_increments_error_count(self, handler, pool, client):
        credential = await loaded(pool)
        client.generate_image.side_effect = FlowAPIError("500")

        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.SUBMISSION_FAILED
        assert credential.error_count == 1
        assert not credential.disabled

    @pytest.mark.asyncio
    async def test_empty_url_is_failure(self, handler, pool, client):
        credential = await loaded(pool)
        client.generate_image.return_value = ImageResult(url="")

        result = await handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.EMPTY_RESULT
        assert credential.last_used is None


class TestVideoValidation:
    """Image-count rules per video type."""

    @pytest.mark.asyncio
    async def test_start_end_with_too_many_images_fails_before_upload(self, handler, pool, client):
        await loaded(pool)
        request = GenerationRequest(model=I2V_MODEL, prompt="x", images=[b"1", b"2", b"3"])

        result = await handler.generate(request)

        assert result.error_code == ErrorCode.VALIDATION_FAILED
        client.upload_image.assert_not_awaited()
        client.generate_video_start_end.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_end_without_images_fails_before_upload(self, handler, pool, client):
        await loaded(pool)

        result = await handler.generate(GenerationRequest(model=I2V_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.VALIDATION_FAILED
        client.upload_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_end_two_frames(self, handler, pool, client):
        await loaded(pool)
        client.get_credits.return_value = Credits(credits=5, user_tier="")
        client.upload_image.side_effect = ["start-media", "end-media"]

        result = await handler.generate(GenerationRequest(model=I2V_MODEL, prompt="x", images=[b"1", b"2"]))

        assert result.success
        args = client.generate_video_start_end.await_args.args
        assert args[5] == "start-media"
        assert args[6] == "end-media"
        assert args[7] == "PAYGATE_TIER_ONE"

    @pytest.mark.asyncio
    async def test_start_frame_only(self, handler, pool, client):
        await loaded(pool)

        result = await handler.generate(GenerationRequest(model=I2V_MODEL, prompt="x", images=[b"1"]))

        assert result.success
        assert client.generate_video_start_end.await_args.args[6] is None

    @pytest.mark.asyncio
    async def test_text_to_video_drops_images_with_warning(self, handler, pool, client):
        await loaded(pool)

        chunks = await collect(handler, GenerationRequest(model=T2V_MODEL, prompt="x", images=[b"1"], stream=True))

        assert chunks[-1].result.success
        assert any("do not accept images" in c.content for c in chunks[:-1])
        client.upload_image.assert_not_awaited()
        client.generate_video_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reference_images_any_count(self, handler, pool, client):
        await loaded(pool)

        result = await handler.generate(
            GenerationRequest(model=R2V_MODEL, prompt="x", images=[b"1", b"2", b"3", b"4"])
        )

        assert result.success
        references = client.generate_video_reference_images.await_args.args[5]
        assert len(references) == 4
        assert references[0] == {"imageUsageType": "IMAGE_USAGE_TYPE_ASSET", "mediaId": "media-1"}

    @pytest.mark.asyncio
    async def test_reference_images_none(self, handler, pool, client):
        await loaded(pool)

        result = await handler.generate(GenerationRequest(model=R2V_MODEL, prompt="x"))

        assert result.success
        assert client.generate_video_reference_images.await_args.args[5] == []

    @pytest.mark.asyncio
    async def test_tier_from_credential(self, handler, pool, client):
        credential = await loaded(pool)
        credential.user_tier = "PAYGATE_TIER_TWO"

        await handler.generate(GenerationRequest(model=T2V_MODEL, prompt="x"))

        assert client.generate_video_text.await_args.args[5] == "PAYGATE_TIER_TWO"


class TestVideoSubmission:
    """Submission failures."""

    @pytest.mark.asyncio
    async def test_submit_failure(self, handler, pool, client):
        credential = await loaded(pool)
        client.generate_video_text.side_effect = FlowAPIError("quota")

        result = await handler.generate(GenerationRequest(model=T2V_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.SUBMISSION_FAILED
        assert credential.error_count == 1
        client.check_video_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_task_id(self, handler, pool, client):
        await loaded(pool)
        client.generate_video_text.return_value = VideoSubmission(task_id="", scene_id="s")

        result = await handler.generate(GenerationRequest(model=T2V_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.TASK_CREATION_FAILED


class TestPolling:
    """Bounded status polling."""

    @pytest.mark.asyncio
    async def test_success_after_n_polls(self, handler, pool, client, config):
        credential = await loaded(pool)
        times = []
        sequence = [PENDING, ACTIVE, status("MEDIA_GENERATION_STATUS_SUCCESSFUL", ""), DONE]

        async def check(access_token, task_id, scene_id):
            times.append(time.monotonic())
            assert (task_id, scene_id) == ("task-1", "scene-1")
            return sequence[len(times) - 1]

        client.check_video_status.side_effect = check

        result = await handler.generate(GenerationRequest(model=T2V_MODEL, prompt="x"))

        assert result.success
        assert result.kind == GenerationKind.VIDEO
        assert result.url == VIDEO_URL
        assert len(times) == 4
        interval = config.polling.poll_interval
        assert all(b - a >= interval * 0.9 for a, b in zip(times, times[1:]))
        assert credential.error_count == 0

    @pytest.mark.asyncio
    async def test_timeout_after_max_attempts(self, handler, pool, client, config):
        credential = await loaded(pool)
        client.check_video_status.return_value = PENDING

        result = await handler.generate(GenerationRequest(model=T2V_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.POLL_TIMEOUT
        assert client.check_video_status.await_count == config.polling.max_poll_attempts
        assert credential.error_count == 1

    @pytest.mark.asyncio
    async def test_transport_errors_consume_attempts(self, handler, pool, client, config):
        await loaded(pool)
        client.check_video_status.side_effect = [FlowAPIError("blip"), FlowAPIError("blip"), DONE]

        result = await handler.generate(GenerationRequest(model=T2V_MODEL, prompt="x"))

        assert result.success
        assert client.check_video_status.await_count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", [
        "MEDIA_GENERATION_STATUS_ERROR_NSFW",
        "MEDIA_GENERATION_STATUS_ERROR_PERSON",
        "MEDIA_GENERATION_STATUS_ERROR_SAFETY",
        "MEDIA_GENERATION_STATUS_ERROR_UNKNOWN",
    ])
    async def test_rejected_statuses(self, handler, pool, client, terminal):
        credential = await loaded(pool)
        client.check_video_status.side_effect = [PENDING, status(terminal)]

        result = await handler.generate(GenerationRequest(model=T2V_MODEL, prompt="x"))

        assert result.error_code == ErrorCode.GENERATION_REJECTED
        assert terminal in result.error
        assert client.check_video_status.await_count == 2
        assert credential.error_count == 0

    @pytest.mark.asyncio
    async def test_progress_never_reaches_100(self, handler, pool, client, config):
        await loaded(pool)
        config.polling.max_poll_attempts = 15
        client.check_video_status.return_value = PENDING

        chunks = await collect(handler, GenerationRequest(model=T2V_MODEL, prompt="x", stream=True))

        progress = [c.content for c in chunks if c.content.startswith("Progress:")]
        # Attempts 0, 7 and 14
        assert progress == ["Progress: 0%\n", "Progress: 46%\n", "Progress: 93%\n"]
        assert chunks[-1].result.error_code == ErrorCode.POLL_TIMEOUT


class TestStreaming:
    """Chunk sequence shape."""

    @pytest.mark.asyncio
    async def test_image_stream_ends_with_single_final_chunk(self, handler, pool):
        await loaded(pool)

        chunks = await collect(handler, GenerationRequest(model=IMAGE_MODEL, prompt="x", stream=True))

        assert [c.final for c in chunks].count(True) == 1
        assert chunks[-1].final
        assert chunks[-1].content == f"![Generated Image]({IMAGE_URL})"
        assert all(c.result is None for c in chunks[:-1])

    @pytest.mark.asyncio
    async def test_video_stream_final_chunk_embeds_video(self, handler, pool):
        await loaded(pool)

        chunks = await collect(handler, GenerationRequest(model=T2V_MODEL, prompt="x", stream=True))

        assert chunks[-1].content == f"<video src='{VIDEO_URL}' controls style='max-width:100%'></video>"
        assert chunks[0].content.startswith("✨ Video generation started")

    @pytest.mark.asyncio
    async def test_failure_stream_is_terminated(self, handler):
        chunks = await collect(handler, GenerationRequest(model="unknown", prompt="x", stream=True))

        assert len(chunks) == 1
        assert chunks[0].final
        assert chunks[0].result.error_code == ErrorCode.UNSUPPORTED_MODEL

    @pytest.mark.asyncio
    async def test_abandoned_stream_still_records_success(self, handler, pool):
        credential = await loaded(pool)

        stream = handler.stream(GenerationRequest(model=T2V_MODEL, prompt="x", stream=True))
        first = await stream.__anext__()
        await stream.aclose()
        await handler.wait_idle()

        assert not first.final
        assert credential.last_used is not None


class TestConcurrentRequests:
    """Parallel requests over several credentials."""

    @pytest.mark.asyncio
    async def test_error_counts_sum_per_credential(self, config, credential_dir, client):
        for seed in ("a", "b", "c"):
            (credential_dir / f"{seed}.txt").write_text(make_cookie(make_token(seed)))
        pool = CredentialPool(client=client, config=config.pool)
        await pool.load()
        handler = GenerationHandler(pool, client, config)

        async def flaky(*args):
            await asyncio.sleep(0.001)
            raise FlowAPIError("500")

        client.generate_image.side_effect = flaky

        # Keep every credential selectable: the threshold is never reached
        pool.config.error_threshold = 100
        results = await asyncio.gather(*[
            handler.generate(GenerationRequest(model=IMAGE_MODEL, prompt=str(i)))
            for i in range(30)
        ])
        await handler.wait_idle()

        assert all(r.error_code == ErrorCode.SUBMISSION_FAILED for r in results)
        assert sum(c.error_count for c in pool.credentials()) == 30


class TestMalformedStatusBodies:
    """Polling through a real transport client answering with odd bodies."""

    @staticmethod
    def flow_api(status_bodies: list, polls: list):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("/auth/session"):
                return httpx.Response(200, json={"access_token": "at", "user": {"email": None}})
            if path.endswith("/credits"):
                return httpx.Response(200, json={"credits": None, "userPaygateTier": None})
            if path.endswith("project.createProject"):
                return httpx.Response(200, json={"result": {"data": {"json": {"result": {"projectId": "p-1"}}}}})
            if path.endswith(":batchAsyncGenerateVideoText"):
                return httpx.Response(200, json={"operations": [{"operation": {"name": "ops/1"}, "sceneId": "s-1"}]})
            if path.endswith(":batchCheckAsyncVideoGenerationStatus"):
                polls.append(request)
                return httpx.Response(200, json=status_bodies[min(len(polls), len(status_bodies)) - 1])
            return httpx.Response(404)

        return handler

    async def run(self, config, credential_dir, status_bodies):
        (credential_dir / "a.txt").write_text(make_cookie(make_token("a")))
        polls = []
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.flow_api(status_bodies, polls)))
        client = FlowClient(config.api, http_client=http_client)
        pool = CredentialPool(client=client, config=config.pool)
        await pool.load()
        handler = GenerationHandler(pool, client, config)

        result = await handler.generate(GenerationRequest(model=T2V_MODEL, prompt="x"))
        await handler.wait_idle()
        await http_client.aclose()
        return result, polls

    @pytest.mark.asyncio
    async def test_null_status_uses_one_attempt(self, config, credential_dir):
        done = {"operations": [{
            "status": "MEDIA_GENERATION_STATUS_SUCCESSFUL",
            "operation": {"metadata": {"video": {"fifeUrl": VIDEO_URL}}},
        }]}

        result, polls = await self.run(config, credential_dir, [{"operations": [{"status": None}]}, done])

        assert result.success
        assert result.url == VIDEO_URL
        assert len(polls) == 2

    @pytest.mark.asyncio
    async def test_unusable_status_bodies_exhaust_budget(self, config, credential_dir):
        result, polls = await self.run(config, credential_dir, [{"operations": [None]}])

        assert result.error_code == ErrorCode.POLL_TIMEOUT
        assert len(polls) == config.polling.max_poll_attempts
