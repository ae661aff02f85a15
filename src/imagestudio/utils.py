import base64
import binascii
from pathlib import Path
from datetime import datetime
from PIL import Image, UnidentifiedImageError
import io
import logging
from typing import Optional, Union
import re
from imagestudio.errors import ClassifiedError, ErrorKind
from imagestudio.models import EncodedImage

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 20 * 1024 * 1024
PIL_FORMAT_MIME_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",
    "WEBP": "image/webp",
}
MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/heic": "heic",
}


def sanitize_filename(name: str) -> str:
    """Sanitizes a string to be a valid filename."""
    name = re.sub(r'[<>:"/\\|?*\x00-\x1F]', "_", name)
    name = re.sub(r"\s+", "_", name)
    name = name[:100]
    return name


def generate_filename(prompt: Optional[str] = None, extension: str = "png") -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    if prompt:
        sane_prompt = "".join(
            c if c.isalnum() or c in (" ", "-") else "_" for c in prompt[:30]
        ).rstrip()
        sane_prompt = sane_prompt.replace(" ", "_")
        return f"{sane_prompt}_{timestamp}.{extension}"
    return f"image_{timestamp}.{extension}"


def get_image_extension(image: EncodedImage) -> str:
    return MIME_EXTENSIONS.get(image.mime_type, "png")


def read_image_file(path: Union[str, Path]) -> EncodedImage:
    """Load an image file from disk as a validated EncodedImage."""
    path = Path(path)
    if not path.is_file():
        raise ClassifiedError(ErrorKind.MALFORMED_REQUEST, f"Image file not found: {path}")
    data = path.read_bytes()
    if len(data) > MAX_IMAGE_BYTES:
        raise ClassifiedError(
            ErrorKind.MALFORMED_REQUEST,
            f"{path.name} is {len(data) / 1024 / 1024:.1f}MB; the limit is "
            f"{MAX_IMAGE_BYTES // 1024 // 1024}MB.",
        )
    if path.suffix.lower() in (".heic", ".heif"):
        # Pillow cannot decode HEIC without a plugin; trust the extension.
        mime_type = "image/heic"
    else:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.verify()
                image_format = img.format
        except (UnidentifiedImageError, OSError) as e:
            raise ClassifiedError(
                ErrorKind.MALFORMED_REQUEST,
                f"The selected file is not a valid image: {path.name}",
            ) from e
        mime_type = PIL_FORMAT_MIME_TYPES.get(image_format or "", image_format or "")
    logger.debug(f"Read {path} as {mime_type} ({len(data)} bytes)")
    return EncodedImage.create(mime_type, base64.b64encode(data).decode("ascii"))


def save_image(image: EncodedImage, output_path: Path) -> Optional[Path]:
    try:
        image_bytes = base64.b64decode(image.raw_data)
    except (binascii.Error, ValueError) as e:
        logger.error(f"Error decoding base64 image: {e}")
        return None
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if image.mime_type == "image/heic":
        output_path.write_bytes(image_bytes)
        logger.info(f"Image saved to {output_path}")
        return output_path
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.save(output_path)
        logger.info(f"Image saved to {output_path}")
        return output_path
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.error(f"Failed to process and save image to {output_path}: {e}")
        return None
