"""
Generation models, requests and results.

FLOW_MODELS maps the public model names callers use to the Flow model
identifiers, aspect ratio and image constraints of each model.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class GenerationKind(str, Enum):
    """What a model produces."""
    IMAGE = "image"
    VIDEO = "video"


class VideoType(str, Enum):
    """How a video model consumes images."""
    T2V = "t2v"  # Text only, images are ignored
    I2V = "i2v"  # First frame, optional last frame
    R2V = "r2v"  # Any number of reference images


class ErrorCode(str, Enum):
    """Failure categories reported to callers."""
    UNSUPPORTED_MODEL = "unsupported_model"
    NO_CREDENTIAL = "no_credential"
    AUTH_FAILED = "auth_failed"
    WORKSPACE_FAILED = "workspace_failed"
    UPLOAD_FAILED = "upload_failed"
    VALIDATION_FAILED = "validation_failed"
    SUBMISSION_FAILED = "submission_failed"
    TASK_CREATION_FAILED = "task_creation_failed"
    EMPTY_RESULT = "empty_result"
    POLL_TIMEOUT = "poll_timeout"
    GENERATION_REJECTED = "generation_rejected"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class FlowModel:
    """Static description of one generation model."""
    kind: GenerationKind
    aspect_ratio: str
    model_name: str = ""  # Image models
    model_key: str = ""  # Video models
    video_type: Optional[VideoType] = None
    min_images: int = 0
    max_images: Optional[int] = None


IMAGE_LANDSCAPE = "IMAGE_ASPECT_RATIO_LANDSCAPE"
IMAGE_PORTRAIT = "IMAGE_ASPECT_RATIO_PORTRAIT"
VIDEO_LANDSCAPE = "VIDEO_ASPECT_RATIO_LANDSCAPE"
VIDEO_PORTRAIT = "VIDEO_ASPECT_RATIO_PORTRAIT"


FLOW_MODELS: dict[str, FlowModel] = {
    # Image models
    "gemini-2.5-flash-image-landscape": FlowModel(
        kind=GenerationKind.IMAGE, model_name="GEM_PIX", aspect_ratio=IMAGE_LANDSCAPE,
    ),
    "gemini-2.5-flash-image-portrait": FlowModel(
        kind=GenerationKind.IMAGE, model_name="GEM_PIX", aspect_ratio=IMAGE_PORTRAIT,
    ),
    "imagen-4.0-generate-preview-landscape": FlowModel(
        kind=GenerationKind.IMAGE, model_name="IMAGEN_3_5", aspect_ratio=IMAGE_LANDSCAPE,
    ),
    "imagen-4.0-generate-preview-portrait": FlowModel(
        kind=GenerationKind.IMAGE, model_name="IMAGEN_3_5", aspect_ratio=IMAGE_PORTRAIT,
    ),

    # Text-to-video
    "veo_3_1_t2v_fast_landscape": FlowModel(
        kind=GenerationKind.VIDEO, model_key="veo_3_1_t2v_fast",
        aspect_ratio=VIDEO_LANDSCAPE, video_type=VideoType.T2V,
    ),
    "veo_3_1_t2v_fast_portrait": FlowModel(
        kind=GenerationKind.VIDEO, model_key="veo_3_1_t2v_fast_portrait",
        aspect_ratio=VIDEO_PORTRAIT, video_type=VideoType.T2V,
    ),
    "veo_2_1_fast_d_15_t2v_landscape": FlowModel(
        kind=GenerationKind.VIDEO, model_key="veo_2_1_fast_d_15_t2v",
        aspect_ratio=VIDEO_LANDSCAPE, video_type=VideoType.T2V,
    ),

    # First/last frame
    "veo_3_1_i2v_s_fast_fl_landscape": FlowModel(
        kind=GenerationKind.VIDEO, model_key="veo_3_1_i2v_s_fast_fl",
        aspect_ratio=VIDEO_LANDSCAPE, video_type=VideoType.I2V, min_images=1, max_images=2,
    ),
    "veo_3_1_i2v_s_fast_fl_portrait": FlowModel(
        kind=GenerationKind.VIDEO, model_key="veo_3_1_i2v_s_fast_portrait_fl",
        aspect_ratio=VIDEO_PORTRAIT, video_type=VideoType.I2V, min_images=1, max_images=2,
    ),
    "veo_2_1_fast_d_15_i2v_landscape": FlowModel(
        kind=GenerationKind.VIDEO, model_key="veo_2_1_fast_d_15_i2v",
        aspect_ratio=VIDEO_LANDSCAPE, video_type=VideoType.I2V, min_images=1, max_images=2,
    ),

    # Reference images
    "veo_3_0_r2v_fast_landscape": FlowModel(
        kind=GenerationKind.VIDEO, model_key="veo_3_0_r2v_fast",
        aspect_ratio=VIDEO_LANDSCAPE, video_type=VideoType.R2V,
    ),
    "veo_3_0_r2v_fast_portrait": FlowModel(
        kind=GenerationKind.VIDEO, model_key="veo_3_0_r2v_fast_portrait",
        aspect_ratio=VIDEO_PORTRAIT, video_type=VideoType.R2V,
    ),
}


def get_model(name: str) -> Optional[FlowModel]:
    """Look up a model by its public name."""
    return FLOW_MODELS.get(name)


@dataclass
class GenerationRequest:
    """One logical generation request."""
    model: str
    prompt: str
    images: list[bytes] = field(default_factory=list)
    stream: bool = False


@dataclass
class GenerationResult:
    """Outcome of a generation request. Never persisted."""
    success: bool
    kind: Optional[GenerationKind] = None
    url: str = ""
    error: str = ""
    error_code: Optional[ErrorCode] = None

    @classmethod
    def ok(cls, kind: GenerationKind, url: str) -> "GenerationResult":
        return cls(success=True, kind=kind, url=url)

    @classmethod
    def fail(cls, error_code: ErrorCode, error: str) -> "GenerationResult":
        return cls(success=False, error=error, error_code=error_code)


class GenerationError(Exception):
    """Raised inside a generation workflow; converted to a failed result."""

    def __init__(self, error_code: ErrorCode, message: str):
        self.error_code = error_code
        super().__init__(message)

    def to_result(self) -> GenerationResult:
        return GenerationResult.fail(self.error_code, str(self))
