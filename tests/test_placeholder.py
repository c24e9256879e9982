import base64
import io
import re

import numpy as np
from PIL import Image

from imgoptim.placeholder import generate_hash, generate_placeholders, generate_preview


def test_preview_is_tiny_jpeg_data_uri(noisy_pixels):
    uri = generate_preview(noisy_pixels)
    prefix = "data:image/jpeg;base64,"
    assert uri.startswith(prefix)
    with Image.open(io.BytesIO(base64.b64decode(uri[len(prefix):]))) as image:
        assert image.format == "JPEG"
        assert image.size == (20, 15)


def test_preview_custom_width(noisy_pixels):
    uri = generate_preview(noisy_pixels, width=8)
    data = base64.b64decode(uri.split(",", 1)[1])
    with Image.open(io.BytesIO(data)) as image:
        assert image.width == 8


def test_hash_is_stable_hex(noisy_pixels):
    token = generate_hash(noisy_pixels)
    assert re.fullmatch(r"[0-9a-f]{16}", token)
    assert generate_hash(noisy_pixels.copy()) == token


def test_hash_tracks_content(noisy_pixels):
    gradient = np.tile(np.arange(160, dtype=np.uint8)[np.newaxis, :, np.newaxis], (120, 1, 3))
    assert generate_hash(gradient) != generate_hash(gradient[:, ::-1])


def test_generate_placeholders_kinds(noisy_pixels):
    preview_only = generate_placeholders(noisy_pixels, "preview")
    assert preview_only.preview and preview_only.hash is None

    hash_only = generate_placeholders(noisy_pixels, "hash")
    assert hash_only.preview is None and hash_only.hash

    both = generate_placeholders(noisy_pixels, "both")
    assert both.preview == preview_only.preview
    assert both.hash == hash_only.hash
