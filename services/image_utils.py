import io
from typing import Tuple, Union

from PIL import Image, UnidentifiedImageError

from core.errors import InvalidPayloadError

# Quality constants used by the different call sites
CLOUDKIT_UPLOAD_QUALITY = 0.8
LOCAL_COVER_QUALITY = 0.7
MIGRATION_QUALITY = 0.7


def _open(image: Union[bytes, Image.Image]) -> Image.Image:
    if isinstance(image, Image.Image):
        return image
    try:
        opened = Image.open(io.BytesIO(image))
        opened.load()
        return opened
    except (UnidentifiedImageError, OSError, TypeError, ValueError) as e:
        raise InvalidPayloadError(f"画像データが不正です: {e}")


def encode_jpeg(image: Union[bytes, Image.Image], quality: float) -> bytes:
    """
    Compress an image to JPEG. `quality` is a 0.0-1.0 fraction.
    Raises InvalidPayloadError when the input cannot be decoded or encoded.
    """
    picture = _open(image)
    if picture.mode != "RGB":
        picture = picture.convert("RGB")

    buffer = io.BytesIO()
    try:
        picture.save(buffer, format="JPEG", quality=max(1, min(95, int(round(quality * 100)))))
    except (OSError, ValueError) as e:
        raise InvalidPayloadError(f"画像データが不正です: {e}")
    return buffer.getvalue()


def image_dimensions(data: bytes) -> Tuple[int, int]:
    return _open(data).size
