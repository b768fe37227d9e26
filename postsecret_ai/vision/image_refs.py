"""
Turn image references into something a vision API can fetch.

Remote URLs and data URLs pass through; local files are re-encoded as a
downsized JPEG data URL so large scans never exceed request limits.
"""

import base64
import logging
from io import BytesIO
from pathlib import Path
from typing import Union

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

MAX_SIDE = 1600
JPEG_QUALITY = 85

_PASSTHROUGH_PREFIXES = ("http://", "https://", "data:")


def to_image_url(ref: Union[str, Path], max_side: int = MAX_SIDE,
                 quality: int = JPEG_QUALITY) -> str:
    """
    Resolve an image reference into a URL string.

    Args:
        ref: http(s) URL, data URL, or local file path
        max_side: Longest side after downscaling, in pixels
        quality: JPEG quality for re-encoded local files

    Raises:
        FileNotFoundError: Local path does not exist
        OSError: Pillow cannot decode the file
    """
    s = str(ref)
    if s.startswith(_PASSTHROUGH_PREFIXES):
        return s

    path = Path(s)
    if not path.is_file():
        raise FileNotFoundError(f"Image not found: {path}")

    with Image.open(path) as img:
        img = ImageOps.exif_transpose(img)
        if img.mode != "RGB":
            img = img.convert("RGB")
        img.thumbnail((max_side, max_side))

        buffered = BytesIO()
        img.save(buffered, format="JPEG", quality=quality)

    encoded = base64.b64encode(buffered.getvalue()).decode("utf-8")
    logger.debug(f"Encoded {path.name} as data URL ({len(encoded)} b64 chars)")
    return f"data:image/jpeg;base64,{encoded}"
