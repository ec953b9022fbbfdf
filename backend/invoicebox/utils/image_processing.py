"""Image transcoding utilities.

Pillow is used as the imaging backend for the in-process converter.
Decoding a camera-native format (HEIC/HEIF) requires a Pillow plugin
for that format to be registered; without one ``Image.open`` raises and
the caller reports a conversion failure.
"""

from __future__ import annotations

from io import BytesIO
from typing import Tuple

from PIL import ExifTags, Image, ImageOps


ORIENTATION_TAG_ID = next((k for k, v in ExifTags.TAGS.items() if v == "Orientation"), None)


def _apply_exif_orientation(img) -> Tuple[object, bool]:  # pragma: no cover - visual correctness
    """Return a new image with EXIF orientation applied if needed.

    Returns (image, applied_flag). If orientation cannot be determined,
    returns the original image and False.
    """
    if ORIENTATION_TAG_ID is None:
        return img, False
    exif = img.getexif()
    if not exif or ORIENTATION_TAG_ID not in exif:
        return img, False
    # ImageOps.exif_transpose safely no-ops if already correct
    transposed = ImageOps.exif_transpose(img)
    if transposed is not None and transposed is not img:
        return transposed, True
    return img, False


def encode_jpeg(image_data: bytes, quality: int = 90) -> bytes:
    """Decode ``image_data`` and re-encode it as an RGB JPEG.

    EXIF orientation is baked into the pixels so phones' portrait shots
    stay upright after the metadata is dropped.  Raises whatever Pillow
    raises for undecodable input.
    """
    with Image.open(BytesIO(image_data)) as img:
        img, _applied = _apply_exif_orientation(img)
        img = img.convert("RGB")
        buf = BytesIO()
        img.save(buf, format="JPEG", quality=quality)
        return buf.getvalue()
