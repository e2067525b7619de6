"""
Flow Transport Client

Performs the authenticated network calls the credential pool and the
generation orchestrator need:
- Session token -> access token exchange
- Credit / tier lookup
- Project creation
- Image upload
- Image generation (synchronous)
- Video generation (asynchronous: submit, then poll status)

One pooled httpx.AsyncClient is shared by every caller, so a single
FlowClient is safe to use from many concurrent generation requests.
"""

import base64
import logging
import random
import uuid
from datetime import datetime
from typing import Any, Optional, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import FlowAPIConfig, get_config

from .errors import FlowAPIError, FlowAuthError, FlowResponseError
from .models import AccessToken, Credits, ImageResult, VideoStatus, VideoSubmission

logger = logging.getLogger(__name__)

SESSION_COOKIE = "__Secure-next-auth.session-token"
TOOL_NAME = "PINHOLE"

# Only failures to reach the server are retried; any answer from the server,
# including an auth rejection, is surfaced to the caller immediately.
_RETRYABLE = (httpx.ConnectError, httpx.ConnectTimeout)

ModelT = TypeVar("ModelT", bound=BaseModel)


def sniff_mime_type(data: bytes) -> str:
    """Guess an image MIME type from its magic bytes."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/jpeg"


def _dig(data: Any, *path: Union[str, int]) -> Any:
    """Walk nested dicts and lists, returning None where the shape does not match."""
    for key in path:
        if isinstance(key, int):
            if not isinstance(data, list) or len(data) <= key:
                return None
            data = data[key]
        else:
            if not isinstance(data, dict):
                return None
            data = data.get(key)
    return data


def _build(model: type[ModelT], endpoint: str, **fields) -> ModelT:
    """Construct a wire model, reporting unusable field values as a malformed response."""
    try:
        return model(**fields)
    except (ValidationError, TypeError) as e:
        raise FlowResponseError(f"Malformed {model.__name__} in Flow API response", endpoint=endpoint) from e


def _parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable access token expiry: {value!r}")
        return None


class FlowClient:
    """
    Async client for the Flow API.

    Usage:
        async with FlowClient() as client:
            access = await client.exchange_session_token(session_token)
            project_id = await client.create_project(session_token, "Flow2API")
            submission = await client.generate_video_text(
                access.access_token, project_id, "A red fox in the snow",
                "veo_3_1_t2v_fast", "VIDEO_ASPECT_RATIO_LANDSCAPE", "PAYGATE_TIER_ONE",
            )
            status = await client.check_video_status(
                access.access_token, submission.task_id, submission.scene_id
            )
    """

    def __init__(
        self,
        config: Optional[FlowAPIConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the Flow client.

        Args:
            config: Optional API config override
            http_client: Optional pre-built HTTP client (the caller keeps ownership)
        """
        self.config = config or get_config().api
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "FlowClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.timeout,
                proxy=self.config.proxy,
                follow_redirects=True,
            )
            self._owns_client = True
        return self._http_client

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, url, **kwargs)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        session_token: Optional[str] = None,
        json: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Send a request and decode the JSON body, mapping failures to FlowAPIError."""
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        if session_token:
            headers["Cookie"] = f"{SESSION_COOKIE}={session_token}"

        try:
            response = await self._send(method, url, headers=headers, json=json)
        except httpx.TimeoutException as e:
            raise FlowAPIError(f"Flow API timeout: {type(e).__name__}", endpoint=url) from e
        except httpx.HTTPError as e:
            raise FlowAPIError(f"Flow API request failed: {type(e).__name__}: {e}", endpoint=url) from e

        if response.status_code in (401, 403):
            raise FlowAuthError(
                f"Flow API rejected credentials ({response.status_code})",
                status_code=response.status_code,
                endpoint=url,
            )
        if response.status_code >= 400:
            raise FlowAPIError(
                f"Flow API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                endpoint=url,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise FlowResponseError(
                "Flow API returned a non-JSON body",
                status_code=response.status_code,
                endpoint=url,
            ) from e

        if not isinstance(data, dict):
            raise FlowResponseError("Flow API returned an unexpected body", endpoint=url)
        return data

    # ==================== Account ====================

    async def exchange_session_token(self, session_token: str) -> AccessToken:
        """Exchange a durable session token for a short-lived access token."""
        url = f"{self.config.labs_base_url}/auth/session"
        data = await self._request("GET", url, session_token=session_token)

        access_token = data.get("access_token")
        if not access_token:
            raise FlowAuthError("Session exchange returned no access token", endpoint=url)

        return _build(
            AccessToken,
            url,
            access_token=access_token,
            expires=_parse_expiry(data.get("expires")),
            email=_dig(data, "user", "email") or "",
        )

    async def get_credits(self, access_token: str) -> Credits:
        """Fetch remaining credits and paygate tier."""
        url = f"{self.config.api_base_url}/credits"
        data = await self._request("GET", url, access_token=access_token)

        return _build(
            Credits,
            url,
            credits=data.get("credits") or 0,
            user_tier=data.get("userPaygateTier") or "",
        )

    async def create_project(self, session_token: str, title: str) -> str:
        """Create a project (workspace) and return its ID."""
        url = f"{self.config.labs_base_url}/trpc/project.createProject"
        data = await self._request(
            "POST",
            url,
            session_token=session_token,
            json={"json": {"projectTitle": title, "toolName": TOOL_NAME}},
        )

        project_id = _dig(data, "result", "data", "json", "result", "projectId")
        if not project_id or not isinstance(project_id, str):
            raise FlowResponseError("No projectId in createProject response", endpoint=url)
        return project_id

    # ==================== Media ====================

    async def upload_image(self, access_token: str, data: bytes, aspect_ratio: str) -> str:
        """Upload a reference image and return its media ID."""
        body = {
            "imageInput": {
                "aspectRatio": aspect_ratio,
                "isUserUploaded": True,
                "mimeType": sniff_mime_type(data),
                "rawImageBytes": base64.b64encode(data).decode("ascii"),
            },
        }
        url = f"{self.config.api_base_url}:uploadUserImage"
        resp = await self._request("POST", url, access_token=access_token, json=body)

        media = resp.get("mediaGenerationId")
        media_id = _dig(media, "mediaGenerationId") if isinstance(media, dict) else media
        if not media_id or not isinstance(media_id, str):
            raise FlowResponseError("No mediaGenerationId in upload response", endpoint=url)
        return media_id

    async def generate_image(
        self,
        access_token: str,
        project_id: str,
        prompt: str,
        model_name: str,
        aspect_ratio: str,
        image_inputs: Optional[list[dict]] = None,
    ) -> ImageResult:
        """Generate an image synchronously."""
        body = {
            "requests": [{
                "clientContext": {
                    "projectId": project_id,
                    "sessionId": f";{uuid.uuid4().hex}",
                    "tool": TOOL_NAME,
                },
                "seed": random.randint(1, 99999),
                "imageModelName": model_name,
                "imageAspectRatio": aspect_ratio,
                "prompt": prompt,
                "imageInputs": image_inputs or [],
            }],
        }
        url = f"{self.config.api_base_url}/projects/{project_id}/flowMedia:batchGenerateImages"
        data = await self._request("POST", url, access_token=access_token, json=body)

        first = _dig(data, "media", 0)
        if first is None:
            return ImageResult()
        if not isinstance(first, dict):
            raise FlowResponseError("Unexpected media entry in image response", endpoint=url)

        return _build(
            ImageResult,
            url,
            url=_dig(first, "image", "generatedImage", "fifeUrl") or "",
            media_id=first.get("name"),
        )

    # ==================== Video ====================

    def _video_context(self, project_id: str, user_tier: str) -> dict:
        return {
            "projectId": project_id,
            "tool": TOOL_NAME,
            "userPaygateTier": user_tier,
        }

    def _video_request(self, prompt: str, model_key: str, aspect_ratio: str, scene_id: str) -> dict:
        return {
            "aspectRatio": aspect_ratio,
            "seed": random.randint(1, 99999),
            "textInput": {"prompt": prompt},
            "videoModelKey": model_key,
            "metadata": {"sceneId": scene_id},
        }

    async def _submit_video(self, endpoint: str, access_token: str, body: dict, scene_id: str) -> VideoSubmission:
        url = f"{self.config.api_base_url}/video:{endpoint}"
        data = await self._request("POST", url, access_token=access_token, json=body)

        op = _dig(data, "operations", 0)
        if op is None:
            return VideoSubmission(scene_id=scene_id)
        if not isinstance(op, dict):
            raise FlowResponseError("Unexpected operation entry in video submission response", endpoint=url)

        return _build(
            VideoSubmission,
            url,
            task_id=_dig(op, "operation", "name") or "",
            scene_id=op.get("sceneId") or scene_id,
            status=op.get("status"),
        )

    async def generate_video_text(
        self,
        access_token: str,
        project_id: str,
        prompt: str,
        model_key: str,
        aspect_ratio: str,
        user_tier: str,
    ) -> VideoSubmission:
        """Submit a text-to-video job."""
        scene_id = str(uuid.uuid4())
        body = {
            "clientContext": self._video_context(project_id, user_tier),
            "requests": [self._video_request(prompt, model_key, aspect_ratio, scene_id)],
        }
        return await self._submit_video("batchAsyncGenerateVideoText", access_token, body, scene_id)

    async def generate_video_start_end(
        self,
        access_token: str,
        project_id: str,
        prompt: str,
        model_key: str,
        aspect_ratio: str,
        start_media_id: str,
        end_media_id: Optional[str],
        user_tier: str,
    ) -> VideoSubmission:
        """Submit a first/last frame video job (end frame optional)."""
        scene_id = str(uuid.uuid4())
        request = self._video_request(prompt, model_key, aspect_ratio, scene_id)
        request["startImage"] = {"mediaId": start_media_id}

        endpoint = "batchAsyncGenerateVideoStartImage"
        if end_media_id:
            request["endImage"] = {"mediaId": end_media_id}
            endpoint = "batchAsyncGenerateVideoStartAndEndImage"

        body = {
            "clientContext": self._video_context(project_id, user_tier),
            "requests": [request],
        }
        return await self._submit_video(endpoint, access_token, body, scene_id)

    async def generate_video_reference_images(
        self,
        access_token: str,
        project_id: str,
        prompt: str,
        model_key: str,
        aspect_ratio: str,
        reference_images: list[dict],
        user_tier: str,
    ) -> VideoSubmission:
        """Submit a reference-images video job."""
        scene_id = str(uuid.uuid4())
        request = self._video_request(prompt, model_key, aspect_ratio, scene_id)
        request["referenceImages"] = reference_images

        body = {
            "clientContext": self._video_context(project_id, user_tier),
            "requests": [request],
        }
        return await self._submit_video("batchAsyncGenerateVideoReferenceImages", access_token, body, scene_id)

    async def check_video_status(self, access_token: str, task_id: str, scene_id: str) -> VideoStatus:
        """Query the status of a submitted video job."""
        body = {
            "operations": [{
                "operation": {"name": task_id},
                "sceneId": scene_id,
            }],
        }
        url = f"{self.config.api_base_url}/video:batchCheckAsyncVideoGenerationStatus"
        data = await self._request("POST", url, access_token=access_token, json=body)

        op = _dig(data, "operations", 0)
        if op is None:
            raise FlowResponseError("No operations in status response", endpoint=url)
        if not isinstance(op, dict):
            raise FlowResponseError("Unexpected operation entry in status response", endpoint=url)

        return _build(
            VideoStatus,
            url,
            status=op.get("status") or "",
            video_url=_dig(op, "operation", "metadata", "video", "fifeUrl") or "",
            raw=op,
        )
