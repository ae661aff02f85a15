import logging

from imagestudio.errors import ClassifiedError, ErrorKind
from imagestudio.models import (
    SUPPORTED_MIME_TYPES,
    EncodedImage,
    GenerationRequest,
    MultimodalPayload,
    PayloadPart,
    normalize_mime_type,
    strip_data_url,
)

logger = logging.getLogger(__name__)


def _image_part(image: EncodedImage, position: str) -> PayloadPart:
    mime_type = normalize_mime_type(image.mime_type)
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise ClassifiedError(
            ErrorKind.MALFORMED_REQUEST,
            f"Unsupported image format '{image.mime_type}' for {position}. "
            f"Supported: {', '.join(SUPPORTED_MIME_TYPES)}",
        )
    data = strip_data_url(image.raw_data)
    if not data:
        raise ClassifiedError(
            ErrorKind.MALFORMED_REQUEST, f"Image data for {position} is empty."
        )
    return PayloadPart(inline_data=EncodedImage(mime_type=mime_type, raw_data=data))


def build_payload(request: GenerationRequest) -> MultimodalPayload:
    """Assemble the ordered multimodal payload for a request.

    The order is a contract with the backend: the primary image first, the
    auxiliary images in input order, then exactly one trailing text part.
    Validation failures raise MalformedRequest before any network call.
    """
    if not request.prompt.strip():
        raise ClassifiedError(ErrorKind.MALFORMED_REQUEST, "Prompt must not be empty.")
    parts = [_image_part(request.primary_image, "the primary image")]
    for index, image in enumerate(request.auxiliary_images, start=1):
        parts.append(_image_part(image, f"auxiliary image {index}"))
    parts.append(PayloadPart(text=request.prompt))
    logger.debug(
        f"Built payload with {len(parts) - 1} image part(s) for model {request.options.model}"
    )
    return MultimodalPayload(parts=tuple(parts))
