"""Progressive-loading placeholders: a tiny inline preview and a visual fingerprint."""

from __future__ import annotations

import base64
from dataclasses import dataclass

import imagehash
import numpy as np
from PIL import Image

from .codec import encode_image, to_image

PREVIEW_WIDTH = 20
PREVIEW_QUALITY = 40
HASH_GRID = 32
HASH_SIZE = 8


@dataclass(frozen=True)
class Placeholders:
    preview: str | None = None
    hash: str | None = None


def generate_preview(pixels: np.ndarray, width: int = PREVIEW_WIDTH, quality: int = PREVIEW_QUALITY) -> str:
    image = to_image(pixels)
    height = max(1, round(image.height * width / image.width))
    small = np.asarray(image.resize((width, height), Image.Resampling.BILINEAR))
    encoded = encode_image(small, "jpeg", quality, native_tools=False)
    return f"data:image/jpeg;base64,{base64.b64encode(encoded.data).decode('ascii')}"


def generate_hash(pixels: np.ndarray) -> str:
    """Return a 16-character hex DCT perceptual hash of a 32x32 downscale.

    Visually similar images produce hashes with a small Hamming distance, so
    the token doubles as a cheap change detector for cached placeholders.
    """
    grid = to_image(pixels).convert("RGB").resize((HASH_GRID, HASH_GRID), Image.Resampling.BILINEAR)
    return str(imagehash.phash(grid, hash_size=HASH_SIZE, highfreq_factor=HASH_GRID // HASH_SIZE))


def generate_placeholders(
    pixels: np.ndarray,
    kind: str = "preview",
    width: int = PREVIEW_WIDTH,
    quality: int = PREVIEW_QUALITY,
) -> Placeholders:
    preview = generate_preview(pixels, width, quality) if kind in {"preview", "both"} else None
    token = generate_hash(pixels) if kind in {"hash", "both"} else None
    return Placeholders(preview=preview, hash=token)
