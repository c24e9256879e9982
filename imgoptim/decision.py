from __future__ import annotations

import numpy as np

from .metrics import DEFAULT_THRESHOLDS, extract_metrics
from .models import Decision, DecisionRules, ImageMetadata, MetricThresholds, QualityMetrics

DEFAULT_RULES = DecisionRules()


def decide(metrics: QualityMetrics, metadata: ImageMetadata, rules: DecisionRules = DEFAULT_RULES) -> Decision:
    return Decision(
        quality=optimal_quality(metrics, metadata, rules),
        formats=recommend_formats(metrics, metadata, rules),
    )


def optimal_quality(metrics: QualityMetrics, metadata: ImageMetadata, rules: DecisionRules = DEFAULT_RULES) -> int:
    # Rules are applied in sequence; each one sees the value left by the previous.
    quality = rules.base_quality

    if metrics.text_likelihood > rules.strong_text:
        quality = rules.strong_text_quality
    elif metrics.text_likelihood > rules.mild_text:
        quality = rules.mild_text_quality

    if metrics.photo_likelihood > rules.photo_cap_threshold:
        quality = min(quality, rules.photo_cap_quality)

    if metrics.complexity > rules.complex_threshold and metrics.text_likelihood < rules.complex_text_ceiling:
        quality -= rules.complex_penalty

    if metrics.edge_density > rules.edge_threshold:
        quality += rules.edge_bonus

    if metrics.color_variance < rules.flat_variance:
        quality += rules.flat_bonus

    if metrics.noise_level > rules.noise_threshold:
        quality -= rules.noise_penalty

    if metadata.has_alpha:
        quality += rules.alpha_bonus

    if metadata.pixel_count < rules.small_pixels:
        quality += rules.small_bonus
    elif metadata.pixel_count > rules.large_pixels:
        quality -= rules.large_penalty

    return max(rules.min_quality, min(rules.max_quality, round(quality)))


def recommend_formats(
    metrics: QualityMetrics, metadata: ImageMetadata, rules: DecisionRules = DEFAULT_RULES
) -> tuple[str, ...]:
    if metadata.is_animated:
        return ("webp", "gif")
    if metrics.text_likelihood > rules.text_format_threshold:
        return ("webp", "png")
    if metrics.photo_likelihood > rules.photo_format_threshold:
        return ("avif", "webp", "jpeg")
    return ("webp", "png" if metadata.has_alpha else "jpeg")


def analyze(
    pixels: np.ndarray,
    metadata: ImageMetadata,
    thresholds: MetricThresholds = DEFAULT_THRESHOLDS,
    rules: DecisionRules = DEFAULT_RULES,
) -> tuple[QualityMetrics, Decision]:
    metrics = extract_metrics(pixels, thresholds)
    return metrics, decide(metrics, metadata, rules)
