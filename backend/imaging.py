"""
Helpers for image payloads exchanged with the browser and the recognizers.
"""
import base64
import binascii
import io
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

from errors import DecodeFailure


def strip_data_url(payload: str) -> str:
    """Return the base64 part of a ``data:image/...;base64,`` URL."""
    return payload.split(",", 1)[1] if "," in payload else payload


def decode_image_payload(payload: Union[str, bytes], label: Optional[str] = None) -> bytes:
    """
    Decode a data URL, bare base64 string or raw bytes into verified image bytes.

    Raises:
        DecodeFailure: if the payload is empty, not base64 or not an image.
    """
    if isinstance(payload, (bytes, bytearray)):
        data = bytes(payload)
    else:
        text = strip_data_url((payload or "").strip())
        try:
            data = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeFailure(f"Invalid base64 image data: {e}", label=label) from e

    if not data:
        raise DecodeFailure("Empty image payload", label=label)

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise DecodeFailure(f"Invalid image format: {e}", label=label) from e

    return data


def image_mime_type(data: bytes) -> str:
    """Best-effort MIME type for encoded image bytes; defaults to JPEG."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format, "image/jpeg")
    except (UnidentifiedImageError, OSError):
        return "image/jpeg"


def to_data_url(data: bytes) -> str:
    encoded = base64.b64encode(data).decode("utf-8")
    return f"data:{image_mime_type(data)};base64,{encoded}"
