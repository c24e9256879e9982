import logging

import numpy as np
import pytest
from PIL import Image

from imgoptim.cache import DISABLE_CACHE_ENV_VAR

# Keep library debug output visible when a test fails.
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
root = logging.getLogger()
if not root.handlers:
    root.addHandler(handler)
root.setLevel(logging.DEBUG)

# Reduce verbosity for noisy external libraries
logging.getLogger("PIL").setLevel(logging.WARNING)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv(DISABLE_CACHE_ENV_VAR, raising=False)
    monkeypatch.delenv("IMGOPTIM_LOG_LEVEL", raising=False)


@pytest.fixture
def noisy_pixels():
    """Random RGB noise, the most photo-like buffer there is."""
    rng = np.random.default_rng(1234)
    return rng.integers(0, 256, size=(120, 160, 3), dtype=np.uint8)


@pytest.fixture
def flat_pixels():
    return np.full((64, 64, 3), 128, dtype=np.uint8)


@pytest.fixture
def stripes_pixels():
    """Black and white vertical stripes two pixels wide, like dense text."""
    pixels = np.zeros((80, 80, 3), dtype=np.uint8)
    for column in range(0, 80, 4):
        pixels[:, column : column + 2] = 255
    return pixels


@pytest.fixture
def make_image(tmp_path):
    """Write a pixel buffer to disk and return the path."""

    def _make(name, pixels=None, size=(64, 48), color=(200, 30, 30)):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if pixels is None:
            image = Image.new("RGB", size, color)
        else:
            image = Image.fromarray(np.asarray(pixels, dtype=np.uint8))
        suffix = path.suffix.lower()
        if suffix in {".jpg", ".jpeg"}:
            image.convert("RGB").save(path, format="JPEG", quality=95)
        else:
            image.save(path, format={".png": "PNG", ".webp": "WEBP", ".gif": "GIF"}[suffix])
        return path

    return _make
