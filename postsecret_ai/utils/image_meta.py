"""
Orientation and colour palette extraction for stored secrets.

The palette is a light quantization pass: shrink, bucket each channel to
4 bits, count, then keep the most frequent colours that are perceptually
distinct (CIE76 Delta-E in LAB space).

Pure PIL + numpy.
"""

from pathlib import Path
from typing import Dict, List, Tuple, Union

import numpy as np
from PIL import Image, ImageOps

PALETTE_SIZE = 5
MIN_DELTA_E = 20.0
SAMPLE_SIDE = 256
FALLBACK_HEX = "#ffffff"


def orientation_from_size(width: int, height: int) -> str:
    if width <= 0 or height <= 0:
        return "unknown"
    if width == height:
        return "square"
    return "landscape" if width > height else "portrait"


def compute_image_meta(path: Union[str, Path], k: int = PALETTE_SIZE) -> Dict:
    """
    Compute width/height, orientation and a ≤k colour palette.

    Raises:
        OSError: File missing or not decodable by Pillow
    """
    with Image.open(path) as img:
        img = ImageOps.exif_transpose(img)
        width, height = img.size
        rgb = img.convert("RGB")
        rgb.thumbnail((SAMPLE_SIDE, SAMPLE_SIDE))
        pixels = np.asarray(rgb, dtype=np.uint8).reshape(-1, 3)

    palette = palette_hexes(pixels, k)
    return {
        "width": width,
        "height": height,
        "orientation": orientation_from_size(width, height),
        "primary_hex": palette[0] if palette else FALLBACK_HEX,
        "palette": palette or [FALLBACK_HEX],
    }


def palette_hexes(pixels: np.ndarray, k: int = PALETTE_SIZE) -> List[str]:
    """Most frequent 4-bit-quantized colours, filtered for perceptual distance."""
    if pixels.size == 0:
        return []
    # Quantize to 16 levels per channel, centred in each bucket
    quantized = (pixels >> 4).astype(np.uint16) << 4 | 0x8
    keys = (quantized[:, 0].astype(np.uint32) << 16) | (quantized[:, 1].astype(np.uint32) << 8) | quantized[:, 2]
    values, counts = np.unique(keys, return_counts=True)
    order = np.lexsort((values, -counts))
    hexes = [f"#{int(values[i]):06x}" for i in order]
    return filter_similar_colors(hexes, k)


def filter_similar_colors(hexes: List[str], k: int = PALETTE_SIZE,
                          min_distance: float = MIN_DELTA_E) -> List[str]:
    if not hexes:
        return []
    selected = [hexes[0]]
    labs = [rgb_to_lab(hex_to_rgb(hexes[0]))]
    for h in hexes[1:]:
        if len(selected) >= k:
            break
        lab = rgb_to_lab(hex_to_rgb(h))
        if all(_delta_e(lab, other) >= min_distance for other in labs):
            selected.append(h)
            labs.append(lab)
    return selected


def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    h = hex_color.lstrip("#")
    return int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)


def rgb_to_lab(rgb: Tuple[int, int, int]) -> Tuple[float, float, float]:
    """sRGB → XYZ (D65) → CIELAB."""
    def linear(c: float) -> float:
        c = c / 255.0
        return ((c + 0.055) / 1.055) ** 2.4 if c > 0.04045 else c / 12.92

    r, g, b = (linear(c) for c in rgb)
    x = (r * 0.4124564 + g * 0.3575761 + b * 0.1804375) / 0.95047
    y = (r * 0.2126729 + g * 0.7151522 + b * 0.0721750) / 1.00000
    z = (r * 0.0193339 + g * 0.1191920 + b * 0.9503041) / 1.08883

    def f(t: float) -> float:
        return t ** (1 / 3) if t > 0.008856 else 7.787 * t + 16 / 116

    fx, fy, fz = f(x), f(y), f(z)
    return 116 * fy - 16, 500 * (fx - fy), 200 * (fy - fz)


def _delta_e(a: Tuple[float, float, float], b: Tuple[float, float, float]) -> float:
    return float(np.sqrt(sum((p - q) ** 2 for p, q in zip(a, b))))
