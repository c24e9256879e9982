"""Content statistics used to pick a compression quality.

Every signal is computed on a bounded sample of pixel positions taken at a
fixed stride across the whole buffer, so cost does not grow with image size
and the sample always covers the full frame. All results are clamped to [0, 1].
"""

from __future__ import annotations

import numpy as np

from .models import MetricThresholds, QualityMetrics

DEFAULT_THRESHOLDS = MetricThresholds()


def extract_metrics(pixels: np.ndarray, thresholds: MetricThresholds = DEFAULT_THRESHOLDS) -> QualityMetrics:
    flat, height, width = _as_flat(pixels)
    complexity = calculate_complexity(flat, thresholds)
    edge_density = calculate_edge_density(flat, width, height, thresholds)
    color_variance = calculate_color_variance(flat, thresholds)
    noise_level = calculate_noise_level(flat, thresholds)
    text_likelihood = detect_text_likelihood(flat, edge_density, thresholds)
    photo_likelihood = detect_photo_likelihood(complexity, color_variance, noise_level, thresholds)
    return QualityMetrics(
        complexity=complexity,
        edge_density=edge_density,
        color_variance=color_variance,
        noise_level=noise_level,
        text_likelihood=text_likelihood,
        photo_likelihood=photo_likelihood,
    )


def _as_flat(pixels: np.ndarray) -> tuple[np.ndarray, int, int]:
    """Return an (H*W, ch) int32 view limited to the colour channels."""
    array = np.asarray(pixels)
    if array.ndim == 2:
        array = array[:, :, np.newaxis]
    if array.ndim != 3 or array.size == 0:
        raise ValueError(f"expected a non-empty (height, width, channels) buffer, got shape {array.shape}")
    height, width, channels = array.shape
    colour = array[:, :, : min(3, channels)].astype(np.int32)
    return colour.reshape(height * width, -1), height, width


def _clamp(value: float) -> float:
    return float(min(max(value, 0.0), 1.0))


def _sample(flat: np.ndarray, cap: int) -> tuple[np.ndarray, int]:
    pixel_count = flat.shape[0]
    sample_size = min(cap, pixel_count)
    step = pixel_count // sample_size
    return flat[np.arange(sample_size) * step], sample_size


def _luma(samples: np.ndarray) -> np.ndarray:
    return samples.sum(axis=1) / samples.shape[1]


def calculate_complexity(flat: np.ndarray, thresholds: MetricThresholds = DEFAULT_THRESHOLDS) -> float:
    samples, sample_size = _sample(flat, thresholds.complexity_samples)
    channels = samples.shape[1]
    diffs = np.abs(np.diff(samples, axis=0))
    avg_variation = diffs.sum() / (sample_size * 255 * channels)
    high_freq_ratio = np.count_nonzero(diffs > thresholds.high_frequency_diff) / (sample_size * channels)
    return _clamp((avg_variation + high_freq_ratio) / 2)


def calculate_edge_density(
    flat: np.ndarray, width: int, height: int, thresholds: MetricThresholds = DEFAULT_THRESHOLDS
) -> float:
    sample_rows = min(thresholds.edge_rows, height - 1)
    if sample_rows <= 0 or width < 2:
        return 0.0
    row_step = height // sample_rows
    grid = flat.reshape(height, width, -1)
    rows = grid[np.arange(sample_rows) * row_step]
    transitions = np.abs(np.diff(rows, axis=1)).sum(axis=2)
    edge_pixels = np.count_nonzero(transitions > thresholds.edge_diff)
    return _clamp(edge_pixels / (sample_rows * width))


def calculate_color_variance(flat: np.ndarray, thresholds: MetricThresholds = DEFAULT_THRESHOLDS) -> float:
    samples, sample_size = _sample(flat, thresholds.variance_samples)
    gray = samples.sum(axis=1) // samples.shape[1]
    histogram = np.bincount(gray, minlength=256)
    values = np.arange(histogram.size)
    mean = (histogram * values).sum() / sample_size
    variance = (histogram * (values - mean) ** 2).sum() / sample_size
    return _clamp(np.sqrt(variance) / 128)


def calculate_noise_level(flat: np.ndarray, thresholds: MetricThresholds = DEFAULT_THRESHOLDS) -> float:
    samples, sample_size = _sample(flat, thresholds.noise_samples)
    if sample_size < 3:
        return 0.0
    expected = (samples[:-2] + samples[2:]) / 2
    noise_sum = np.abs(samples[1:-1] - expected).sum()
    return _clamp(noise_sum / (sample_size * 255 * samples.shape[1]))


def detect_text_likelihood(
    flat: np.ndarray, edge_density: float, thresholds: MetricThresholds = DEFAULT_THRESHOLDS
) -> float:
    # Text is mostly very dark or very light pixels with many sharp transitions.
    samples, sample_size = _sample(flat, thresholds.contrast_samples)
    gray = _luma(samples)
    extremes = np.count_nonzero((gray < thresholds.dark_luma) | (gray > thresholds.light_luma))
    contrast_ratio = extremes / sample_size
    return _clamp(edge_density * thresholds.text_edge_weight + contrast_ratio * thresholds.text_contrast_weight)


def detect_photo_likelihood(
    complexity: float,
    color_variance: float,
    noise_level: float,
    thresholds: MetricThresholds = DEFAULT_THRESHOLDS,
) -> float:
    return _clamp(
        complexity * thresholds.photo_complexity_weight
        + color_variance * thresholds.photo_variance_weight
        + noise_level * thresholds.photo_noise_weight
    )
