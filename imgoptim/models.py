from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable

from .errors import ConfigError

SUPPORTED_FORMATS = ("jpeg", "png", "webp", "avif", "gif", "svg")
FORMAT_ALIASES = {"jpg": "jpeg"}
PLACEHOLDER_KINDS = ("preview", "hash", "both")
REFERENCE_KINDS = ("import", "require", "src", "url", "background")
SOURCE_IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".avif", ".svg")


def normalize_format(fmt: str) -> str:
    fmt = fmt.strip().lower().lstrip(".")
    return FORMAT_ALIASES.get(fmt, fmt)


@dataclass(frozen=True)
class MetricThresholds:
    complexity_samples: int = 20_000
    noise_samples: int = 5_000
    variance_samples: int = 10_000
    contrast_samples: int = 5_000
    edge_rows: int = 100
    high_frequency_diff: int = 50
    edge_diff: int = 25
    dark_luma: float = 50
    light_luma: float = 205
    text_edge_weight: float = 0.6
    text_contrast_weight: float = 0.4
    photo_complexity_weight: float = 0.5
    photo_variance_weight: float = 0.3
    photo_noise_weight: float = 0.2


@dataclass(frozen=True)
class DecisionRules:
    base_quality: int = 80
    strong_text: float = 0.6
    strong_text_quality: int = 92
    mild_text: float = 0.4
    mild_text_quality: int = 88
    photo_cap_threshold: float = 0.7
    photo_cap_quality: int = 78
    complex_threshold: float = 0.7
    complex_text_ceiling: float = 0.3
    complex_penalty: int = 5
    edge_threshold: float = 0.6
    edge_bonus: int = 8
    flat_variance: float = 0.2
    flat_bonus: int = 5
    noise_threshold: float = 0.3
    noise_penalty: int = 3
    alpha_bonus: int = 3
    small_pixels: int = 100_000
    small_bonus: int = 5
    large_pixels: int = 2_000_000
    large_penalty: int = 3
    min_quality: int = 65
    max_quality: int = 95
    text_format_threshold: float = 0.6
    photo_format_threshold: float = 0.6


@dataclass(frozen=True)
class OptimizeOptions:
    output_dir: Path
    formats: tuple[str, ...] = ("webp",)
    sizes: tuple[int, ...] = ()
    quality: int | str = "auto"
    cdn_base_url: str = ""
    parallel: int = 4
    cache_enabled: bool = True
    auto_format: bool = False
    generate_placeholders: bool = False
    placeholder_kind: str = "preview"
    placeholder_width: int = 20
    placeholder_quality: int = 40
    update_codebase: bool = False
    codebase_root: Path | None = None
    rewrite_format: str | None = None
    input_root: Path | None = None
    native_tools: bool = True
    metric_thresholds: MetricThresholds = field(default_factory=MetricThresholds)
    decision_rules: DecisionRules = field(default_factory=DecisionRules)

    def __post_init__(self) -> None:
        if not self.output_dir:
            raise ConfigError("output_dir is required")
        object.__setattr__(self, "output_dir", Path(self.output_dir).resolve())
        if self.codebase_root is not None:
            object.__setattr__(self, "codebase_root", Path(self.codebase_root).resolve())
        if self.input_root is not None:
            object.__setattr__(self, "input_root", Path(self.input_root).resolve())

        if isinstance(self.formats, str):
            raise ConfigError("formats must be a list of format names")
        formats = tuple(normalize_format(fmt) for fmt in self.formats)
        if not formats:
            raise ConfigError("at least one output format is required")
        unknown = [fmt for fmt in formats if fmt not in SUPPORTED_FORMATS]
        if unknown:
            raise ConfigError(f"unsupported formats: {', '.join(unknown)}")
        object.__setattr__(self, "formats", tuple(dict.fromkeys(formats)))

        sizes = tuple(int(size) for size in self.sizes)
        if any(size <= 0 for size in sizes):
            raise ConfigError("responsive sizes must be positive widths")
        object.__setattr__(self, "sizes", sizes)

        if self.quality != "auto":
            if isinstance(self.quality, bool) or not isinstance(self.quality, int):
                raise ConfigError(f"quality must be an integer 1-100 or 'auto', got {self.quality!r}")
            if not 1 <= self.quality <= 100:
                raise ConfigError(f"quality out of range 1-100: {self.quality}")
        if self.parallel < 1:
            raise ConfigError(f"parallel must be at least 1, got {self.parallel}")
        if self.placeholder_kind not in PLACEHOLDER_KINDS:
            raise ConfigError(f"placeholder_kind must be one of {', '.join(PLACEHOLDER_KINDS)}")
        if self.placeholder_width < 1 or not 1 <= self.placeholder_quality <= 100:
            raise ConfigError("placeholder width must be positive and quality within 1-100")
        if self.rewrite_format is not None:
            rewrite_format = normalize_format(self.rewrite_format)
            if rewrite_format not in SUPPORTED_FORMATS:
                raise ConfigError(f"unsupported rewrite_format: {self.rewrite_format}")
            object.__setattr__(self, "rewrite_format", rewrite_format)
        if self.update_codebase and self.codebase_root is None:
            raise ConfigError("update_codebase requires codebase_root")

    @property
    def auto_quality(self) -> bool:
        return self.quality == "auto"

    def fingerprint(self) -> str:
        encoded = json.dumps(asdict(self), sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int
    has_alpha: bool
    frame_count: int = 1

    @property
    def is_animated(self) -> bool:
        return self.frame_count > 1

    @property
    def pixel_count(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class QualityMetrics:
    complexity: float
    edge_density: float
    color_variance: float
    noise_level: float
    text_likelihood: float
    photo_likelihood: float


@dataclass(frozen=True)
class Decision:
    quality: int
    formats: tuple[str, ...]


@dataclass(frozen=True)
class OptimizedArtifact:
    path: Path
    size: int
    format: str
    width: int
    height: int
    cdn_url: str | None = None
    placeholder: str | None = None
    hash: str | None = None


@dataclass(frozen=True)
class Savings:
    bytes: float
    percentage: float

    @classmethod
    def between(cls, original_size: float, optimized_size: float) -> Savings:
        saved = original_size - optimized_size
        if original_size <= 0:
            return cls(saved, 0.0)
        return cls(saved, saved / original_size * 100.0)


@dataclass(frozen=True)
class OptimizationRecord:
    source: Path
    original: ImageMetadata
    optimized: tuple[OptimizedArtifact, ...]
    responsive: tuple[OptimizedArtifact, ...]
    savings: Savings
    elapsed: float
    decision: Decision | None = None
    metrics: QualityMetrics | None = None

    @property
    def average_optimized_size(self) -> float:
        if not self.optimized:
            return float(self.original.size)
        return sum(artifact.size for artifact in self.optimized) / len(self.optimized)


@dataclass(frozen=True)
class BatchError:
    file: str
    error: str


@dataclass(frozen=True)
class BatchOutcome:
    results: tuple[OptimizationRecord, ...]
    errors: tuple[BatchError, ...]
    files_processed: int
    total_savings: Savings
    total_elapsed: float


@dataclass(frozen=True)
class ImageReference:
    source_file: Path
    raw_path: str
    line_number: int
    line_text: str
    kind: str
    column: int = -1


@dataclass(frozen=True)
class ScanResult:
    files_scanned: int
    references: tuple[ImageReference, ...]
    unique_images: frozenset[Path]


@dataclass(frozen=True)
class ConversionOutcome:
    scanned_files: int
    image_references: int
    unique_images: int
    converted_images: int
    updated_files: int
    errors: tuple[BatchError, ...]


def iter_image_files(root: Path, suffixes: Iterable[str] = SOURCE_IMAGE_SUFFIXES) -> list[Path]:
    patterns = {suffix.lower() if suffix.startswith(".") else f".{suffix.lower()}" for suffix in suffixes}
    files = []
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix.lower() in patterns:
            files.append(path)
    return files
