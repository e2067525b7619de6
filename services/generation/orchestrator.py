"""
Generation Orchestrator

Turns one generation request into the sequence of Flow calls it needs:

1. Validate the model against FLOW_MODELS
2. Take a ready credential from the pool
3. Make sure its access token is fresh
4. Refresh credits in the background (never awaited)
5. Make sure the credential has a project
6. Image: upload references, generate synchronously
   Video: validate image count, upload, submit, poll until terminal
7. Record success / failure on the credential
8. Emit progress chunks and one final chunk with the artifact

Every failure comes back as a GenerationResult; nothing here raises to the
caller.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from core.config import Config, get_config
from services.credentials import Credential, CredentialPool, NoneAvailable
from services.transport import FlowAPIError, FlowClient

from .chunks import StreamChunk, final_chunk, progress_chunk
from .models import (
    ErrorCode,
    FlowModel,
    GenerationError,
    GenerationKind,
    GenerationRequest,
    GenerationResult,
    VideoType,
    get_model,
)

logger = logging.getLogger(__name__)

Emit = Callable[[str], Awaitable[None]]

STATUS_SUCCESSFUL = "MEDIA_GENERATION_STATUS_SUCCESSFUL"

TERMINAL_ERROR_STATUSES = frozenset({
    "MEDIA_GENERATION_STATUS_FAILED",
    "MEDIA_GENERATION_STATUS_ERROR_UNKNOWN",
    "MEDIA_GENERATION_STATUS_ERROR_NSFW",
    "MEDIA_GENERATION_STATUS_ERROR_PERSON",
    "MEDIA_GENERATION_STATUS_ERROR_SAFETY",
})


async def _discard(message: str):
    return None


class GenerationHandler:
    """
    Drives image and video generation on pooled Flow credentials.

    Usage:
        handler = GenerationHandler(pool, client)

        # Streaming
        async for chunk in handler.stream(request):
            await response.write(chunk.to_sse())

        # One-shot
        result = await handler.generate(request)
    """

    def __init__(
        self,
        pool: CredentialPool,
        client: FlowClient,
        config: Optional[Config] = None,
    ):
        self.pool = pool
        self.client = client
        self.config = config or get_config()

        # Detached work: credit refreshes and runs whose stream consumer went away
        self._background: set[asyncio.Task] = set()

    # ==================== Public API ====================

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run a request to completion and return its result."""
        return await self._run(request, _discard)

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Run a request, yielding progress chunks and then exactly one final chunk.

        The workflow runs as its own task: if the consumer stops iterating,
        the job still finishes and its bookkeeping is still recorded.
        """
        queue: asyncio.Queue = asyncio.Queue()

        async def emit(message: str):
            await queue.put(progress_chunk(message))

        async def run():
            result = await self._run(request, emit)
            await queue.put(final_chunk(result))

        task = self._track(asyncio.create_task(run()))

        while True:
            chunk = await queue.get()
            yield chunk
            if chunk.final:
                break

        await task

    async def wait_idle(self):
        """Wait for detached credit refreshes and orphaned runs."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ==================== Workflow ====================

    async def _run(self, request: GenerationRequest, emit: Emit) -> GenerationResult:
        try:
            return await self._handle(request, emit)
        except GenerationError as e:
            logger.warning(f"Generation failed [{e.error_code.value}]: {e}")
            return e.to_result()
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            logger.error(f"Generation failed unexpectedly: {error_msg}")
            return GenerationResult.fail(ErrorCode.INTERNAL_ERROR, error_msg)

    async def _handle(self, request: GenerationRequest, emit: Emit) -> GenerationResult:
        model = get_model(request.model)
        if model is None:
            raise GenerationError(ErrorCode.UNSUPPORTED_MODEL, f"Unsupported model: {request.model}")

        try:
            credential = await self.pool.select()
        except NoneAvailable:
            raise GenerationError(ErrorCode.NO_CREDENTIAL, "No Flow credential available")

        try:
            await self.pool.ensure_access(credential)
        except FlowAPIError as e:
            # Not counted against the credential: the refresh worker owns that
            raise GenerationError(ErrorCode.AUTH_FAILED, f"Credential authentication failed: {e}")

        self._refresh_credits_later(credential)

        await self._ensure_project(credential)

        if model.kind == GenerationKind.IMAGE:
            url = await self._generate_image(credential, model, request, emit)
        else:
            url = await self._generate_video(credential, model, request, emit)

        async with credential.lock:
            credential.record_success()

        logger.info(f"Generated {model.kind.value} with {credential.masked_id}: {url}")
        return GenerationResult.ok(model.kind, url)

    async def _record_failure(self, credential: Credential):
        async with credential.lock:
            credential.record_failure()

    async def _ensure_project(self, credential: Credential):
        async with credential.lock:
            if credential.project_id:
                return
            try:
                project_id = await self.client.create_project(
                    credential.session_token, self.config.api.project_name
                )
            except FlowAPIError as e:
                raise GenerationError(ErrorCode.WORKSPACE_FAILED, f"Failed to create project: {e}")
            credential.project_id = project_id

        logger.info(f"Credential {credential.masked_id} created project {project_id}")

    def _refresh_credits_later(self, credential: Credential):
        self._track(asyncio.create_task(self._refresh_credits(credential)))

    async def _refresh_credits(self, credential: Credential):
        access_token = credential.access_token
        if not access_token:
            return

        try:
            credits = await self.client.get_credits(access_token)
        except FlowAPIError as e:
            logger.warning(f"Credit lookup failed for {credential.masked_id}: {e}")
            return

        async with credential.lock:
            credential.credits = credits.credits
            if credits.user_tier:
                credential.user_tier = credits.user_tier

        logger.info(f"Credential {credential.masked_id} credits: {credits.credits}, tier: {credits.user_tier}")

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background generation task failed: {task.exception()}")

    async def _upload(self, credential: Credential, data: bytes, aspect_ratio: str, label: str) -> str:
        try:
            return await self.client.upload_image(credential.access_token, data, aspect_ratio)
        except FlowAPIError as e:
            await self._record_failure(credential)
            raise GenerationError(ErrorCode.UPLOAD_FAILED, f"Failed to upload {label}: {e}")

    # ==================== Image ====================

    async def _generate_image(
        self,
        credential: Credential,
        model: FlowModel,
        request: GenerationRequest,
        emit: Emit,
    ) -> str:
        await emit("✨ Image generation started\n")

        image_inputs = []
        total = len(request.images)
        if total:
            await emit(f"Uploading {total} reference image(s)...\n")
            for i, data in enumerate(request.images, start=1):
                media_id = await self._upload(credential, data, model.aspect_ratio, f"image {i}")
                image_inputs.append({
                    "name": media_id,
                    "imageInputType": "IMAGE_INPUT_TYPE_REFERENCE",
                })
                await emit(f"Uploaded image {i}/{total}\n")

        await emit("Generating image...\n")

        try:
            result = await self.client.generate_image(
                credential.access_token,
                credential.project_id,
                request.prompt,
                model.model_name,
                model.aspect_ratio,
                image_inputs,
            )
        except FlowAPIError as e:
            await self._record_failure(credential)
            raise GenerationError(ErrorCode.SUBMISSION_FAILED, f"Image generation failed: {e}")

        if not result.url:
            raise GenerationError(ErrorCode.EMPTY_RESULT, "Image generation returned no result")

        return result.url

    # ==================== Video ====================

    async def _generate_video(
        self,
        credential: Credential,
        model: FlowModel,
        request: GenerationRequest,
        emit: Emit,
    ) -> str:
        await emit("✨ Video generation started\n")

        images = list(request.images)

        if model.video_type == VideoType.T2V and images:
            await emit("⚠️ Text-to-video models do not accept images; using the text prompt only\n")
            images = []
        elif model.video_type == VideoType.I2V:
            if len(images) < model.min_images or (model.max_images is not None and len(images) > model.max_images):
                raise GenerationError(
                    ErrorCode.VALIDATION_FAILED,
                    f"First/last frame models need {model.min_images}-{model.max_images} images, got {len(images)}",
                )

        async with credential.lock:
            user_tier = credential.user_tier or self.config.api.default_tier

        try:
            if model.video_type == VideoType.I2V:
                await emit("Uploading start frame...\n")
                start_id = await self._upload(credential, images[0], model.aspect_ratio, "start frame")
                end_id = None
                if len(images) > 1:
                    await emit("Uploading end frame...\n")
                    end_id = await self._upload(credential, images[1], model.aspect_ratio, "end frame")

                await emit("Submitting video job...\n")
                submission = await self.client.generate_video_start_end(
                    credential.access_token, credential.project_id, request.prompt,
                    model.model_key, model.aspect_ratio, start_id, end_id, user_tier,
                )

            elif model.video_type == VideoType.R2V:
                references = []
                if images:
                    await emit(f"Uploading {len(images)} reference image(s)...\n")
                for i, data in enumerate(images, start=1):
                    media_id = await self._upload(credential, data, model.aspect_ratio, f"image {i}")
                    references.append({
                        "imageUsageType": "IMAGE_USAGE_TYPE_ASSET",
                        "mediaId": media_id,
                    })

                await emit("Submitting video job...\n")
                submission = await self.client.generate_video_reference_images(
                    credential.access_token, credential.project_id, request.prompt,
                    model.model_key, model.aspect_ratio, references, user_tier,
                )

            else:
                await emit("Submitting video job...\n")
                submission = await self.client.generate_video_text(
                    credential.access_token, credential.project_id, request.prompt,
                    model.model_key, model.aspect_ratio, user_tier,
                )
        except FlowAPIError as e:
            await self._record_failure(credential)
            raise GenerationError(ErrorCode.SUBMISSION_FAILED, f"Failed to submit video job: {e}")

        if not submission.task_id:
            await self._record_failure(credential)
            raise GenerationError(ErrorCode.TASK_CREATION_FAILED, "Video job was not created")

        logger.info(f"Video task {submission.task_id} submitted with {credential.masked_id}")
        await emit("Generating video...\n")

        return await self._poll_video(credential, submission.task_id, submission.scene_id, emit)

    async def _poll_video(self, credential: Credential, task_id: str, scene_id: str, emit: Emit) -> str:
        """Poll a video job until it reaches a terminal status or the attempt budget runs out."""
        polling = self.config.polling
        max_attempts = polling.max_poll_attempts

        for attempt in range(max_attempts):
            await asyncio.sleep(polling.poll_interval)

            try:
                status = await self.client.check_video_status(credential.access_token, task_id, scene_id)
            except FlowAPIError as e:
                logger.warning(f"Video status poll {attempt + 1}/{max_attempts} failed: {e}")
                continue

            if attempt % polling.progress_every == 0:
                progress = min(attempt * 100 // max_attempts, 95)
                await emit(f"Progress: {progress}%\n")

            if status.status == STATUS_SUCCESSFUL and status.video_url:
                return status.video_url

            if status.status in TERMINAL_ERROR_STATUSES:
                raise GenerationError(ErrorCode.GENERATION_REJECTED, f"Video generation failed: {status.status}")

        await self._record_failure(credential)
        raise GenerationError(
            ErrorCode.POLL_TIMEOUT,
            f"Video generation timed out after {max_attempts} polls",
        )
