import re
from enum import Enum
from typing import Any, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from imagestudio.errors import ClassifiedError, ErrorKind

ModelName = Literal[
    "gemini-2.5-flash-image",
    "gemini-3-pro-image-preview",
    "gemini-3-flash-preview",
    "gemini-3-pro-preview",
    "gemini-2.5-flash-lite-latest",
]
AspectRatio = Literal["1:1", "2:3", "3:2", "3:4", "4:3", "9:16", "16:9", "21:9"]
ImageSize = Literal["1K", "2K", "4K"]

DEFAULT_MODEL = "gemini-2.5-flash-image"
PRO_IMAGE_MODEL = "gemini-3-pro-image-preview"

SUPPORTED_MIME_TYPES = ("image/png", "image/jpeg", "image/webp", "image/heic")
MIME_ALIASES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "image/jpg": "image/jpeg",
    "webp": "image/webp",
    "heic": "image/heic",
}
DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,", re.IGNORECASE)


def normalize_mime_type(mime_type: str) -> str:
    lowered = (mime_type or "").strip().lower()
    return MIME_ALIASES.get(lowered, lowered)


def strip_data_url(data: str) -> str:
    """Return the canonical base64 payload without any data-URL prefix."""
    return DATA_URL_PATTERN.sub("", data.strip(), count=1)


class EncodedImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    mime_type: str
    raw_data: str

    @field_validator("mime_type")
    @classmethod
    def supported_mime_type(cls, value: str) -> str:
        # ClassifiedError is not a ValueError, so pydantic lets it through as-is.
        normalized = normalize_mime_type(value)
        if normalized not in SUPPORTED_MIME_TYPES:
            raise ClassifiedError(
                ErrorKind.MALFORMED_REQUEST,
                f"Unsupported image format '{value}'. "
                f"Supported: {', '.join(SUPPORTED_MIME_TYPES)}",
            )
        return normalized

    @classmethod
    def create(cls, mime_type: str, data: str) -> "EncodedImage":
        """Build from a MIME type and base64 data that may carry a data-URL prefix."""
        return cls(mime_type=mime_type, raw_data=strip_data_url(data))

    @classmethod
    def from_data_url(cls, data_url: str) -> "EncodedImage":
        match = DATA_URL_PATTERN.match(data_url.strip())
        mime_type = match.group("mime") if match else "image/png"
        return cls.create(mime_type, data_url)

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.raw_data}"


class GenerationOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: ModelName = DEFAULT_MODEL
    aspect_ratio: Optional[AspectRatio] = None
    image_size: Optional[ImageSize] = None
    thinking_budget: Optional[int] = Field(None, ge=0)
    max_output_tokens: Optional[int] = Field(None, gt=0)
    use_search: bool = False
    system_instruction: Optional[str] = None
    max_retries: int = Field(2, ge=0)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    seed: Optional[int] = None


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    primary_image: EncodedImage
    auxiliary_images: Tuple[EncodedImage, ...] = ()
    options: GenerationOptions = GenerationOptions()

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be empty")
        return value


class PayloadPart(BaseModel):
    """One part of a multimodal payload: inline image data or text."""

    model_config = ConfigDict(frozen=True)

    inline_data: Optional[EncodedImage] = None
    text: Optional[str] = None


class MultimodalPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    parts: Tuple[PayloadPart, ...]


class GenerationConfig(BaseModel):
    """Backend knobs derived from GenerationOptions for a single call."""

    model_config = ConfigDict(frozen=True)

    model: str
    temperature: float = 0.7
    seed: Optional[int] = None
    system_instruction: Optional[str] = None
    max_output_tokens: Optional[int] = None
    thinking_budget: Optional[int] = None
    use_search: bool = False
    aspect_ratio: Optional[str] = None
    image_size: Optional[str] = None

    @property
    def is_image_model(self) -> bool:
        return "image" in self.model


class CandidateResponse(BaseModel):
    """What a provider's send() hands back for the first candidate."""

    text: Optional[str] = None
    images: List[EncodedImage] = []
    finish_reason: Optional[str] = None
    block_reason: Optional[str] = None
    grounding_sources: List[Any] = []


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    image: Optional[EncodedImage] = None
    grounding_sources: Tuple[Any, ...] = ()
    finish_reason: Optional[str] = None


class SessionPhase(str, Enum):
    IDLE = "Idle"
    IN_FLIGHT = "InFlight"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class SessionState(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    phase: SessionPhase = SessionPhase.IDLE
    active_request_token: Optional[Any] = None
    last_result: Optional[GenerationResult] = None
    last_error: Optional[ClassifiedError] = None
