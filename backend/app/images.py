"""
Product image normalization.

Uploads are decoded with Pillow, rotated according to their EXIF orientation,
shrunk so the longest side is at most MAX_DIMENSION, and re-encoded as WebP
(or AVIF when the client can display it and the installed Pillow can write it).
"""

import io
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

SUPPORTED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
MAX_DIMENSION = 2000

WEBP_QUALITY = 80
AVIF_QUALITY = 75


class ImageRejected(ValueError):
    pass


@dataclass(frozen=True)
class ProcessedImage:
    data: bytes
    content_type: str
    extension: str
    width: int
    height: int


def avif_supported() -> bool:
    Image.init()
    return "AVIF" in Image.SAVE


def process_image(raw: bytes, content_type: str, *, prefer_avif: bool = False) -> ProcessedImage:
    ctype = (content_type or "").split(";", 1)[0].strip().lower()
    if ctype not in SUPPORTED_CONTENT_TYPES:
        raise ImageRejected("Unsupported file format")
    if not raw:
        raise ImageRejected("Image file is empty")

    try:
        with Image.open(io.BytesIO(raw)) as probe:
            probe.verify()
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ImageRejected("Image could not be decoded") from e

    # Animated GIF/WebP: keep the first frame.
    img.seek(0)
    img = ImageOps.exif_transpose(img)
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA" if "A" in img.getbands() or "transparency" in img.info else "RGB")
    if max(img.size) > MAX_DIMENSION:
        img.thumbnail((MAX_DIMENSION, MAX_DIMENSION), Image.Resampling.LANCZOS)

    out = io.BytesIO()
    if prefer_avif and avif_supported():
        img.save(out, format="AVIF", quality=AVIF_QUALITY)
        fmt = "avif"
    else:
        img.save(out, format="WEBP", quality=WEBP_QUALITY, method=4)
        fmt = "webp"
    width, height = img.size
    return ProcessedImage(data=out.getvalue(), content_type=f"image/{fmt}", extension=fmt, width=width, height=height)
