from __future__ import annotations

import asyncio
import logging
import tempfile
import time
from collections import defaultdict
from dataclasses import replace
from pathlib import Path
from typing import Callable, Sequence

import numpy as np

from .cache import ResultCache
from .codec import DecodedImage, EncodedImage, decode_image, encode_image
from .decision import analyze
from .errors import ConfigError, EncodeError, RewriteError
from .models import (
    BatchError,
    BatchOutcome,
    ConversionOutcome,
    Decision,
    ImageMetadata,
    ImageReference,
    OptimizationRecord,
    OptimizedArtifact,
    OptimizeOptions,
    QualityMetrics,
    Savings,
    iter_image_files,
)
from .placeholder import Placeholders, generate_placeholders
from .references import (
    ReferenceScanner,
    is_remote,
    relative_reference_path,
    resolve_reference,
    rewrite_references,
)
from .scheduler import BatchScheduler, ProgressCallback
from .svg import minify_svg

logger = logging.getLogger(__name__)

Decoder = Callable[[Path], DecodedImage]
Encoder = Callable[..., EncodedImage]


class ImageOptimizer:
    def __init__(
        self,
        options: OptimizeOptions,
        cache: ResultCache | None = None,
        decoder: Decoder = decode_image,
        encoder: Encoder = encode_image,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.options = options
        self.cache = cache if cache is not None else ResultCache()
        self.decoder = decoder
        self.encoder = encoder
        self.scheduler = BatchScheduler(options.parallel, on_progress)
        self._fingerprint = options.fingerprint()
        # output path -> source that owns it, so two sources never share a file
        self._claimed: dict[Path, Path] = {}

    async def optimize_single(self, input_path: Path | str) -> OptimizationRecord:
        source = Path(input_path).resolve()
        if not self.options.cache_enabled:
            return await self._optimize(source)
        return await self.cache.get_or_compute(source, self._fingerprint, lambda: self._optimize(source))

    async def optimize_batch(self, files: Sequence[Path | str]) -> BatchOutcome:
        return await self.scheduler.run(files, self.optimize_single)

    async def optimize_directory(self, input_dir: Path | str) -> BatchOutcome:
        root = Path(input_dir)
        if not root.is_dir():
            raise NotADirectoryError(f"Input is not a directory: {root}")
        output_dir = self.options.output_dir
        files = [path for path in iter_image_files(root) if not path.resolve().is_relative_to(output_dir)]
        logger.info(f"[optimize] {len(files)} images found under {root}")
        return await self.optimize_batch(files)

    async def _optimize(self, source: Path) -> OptimizationRecord:
        started = time.perf_counter()
        original_size = source.stat().st_size
        if source.suffix.lower() == ".svg":
            return await self._optimize_svg(source, original_size, started)

        decoded = await asyncio.to_thread(self.decoder, source)
        metadata = ImageMetadata(
            width=decoded.width,
            height=decoded.height,
            format=decoded.format,
            size=original_size,
            has_alpha=decoded.has_alpha,
            frame_count=decoded.frame_count,
        )

        formats = self.options.formats
        metrics: QualityMetrics | None = None
        decision: Decision | None = None
        if self.options.auto_quality:
            metrics, decision = analyze(
                decoded.pixels,
                metadata,
                self.options.metric_thresholds,
                self.options.decision_rules,
            )
            quality = decision.quality
            if self.options.auto_format:
                formats = decision.formats
            logger.debug(f"[optimize] {source.name}: {metrics} -> {decision}")
        else:
            quality = int(self.options.quality)
        formats = tuple(fmt for fmt in formats if fmt != "svg")
        if not formats:
            raise EncodeError(f"{source.name}: no raster output format configured (only svg)")

        placeholders = Placeholders()
        if self.options.generate_placeholders:
            placeholders = await asyncio.to_thread(
                generate_placeholders,
                decoded.pixels,
                self.options.placeholder_kind,
                self.options.placeholder_width,
                self.options.placeholder_quality,
            )

        optimized = []
        for fmt in formats:
            artifact = await self._write_variant(source, decoded.pixels, fmt, quality, None)
            optimized.append(self._with_placeholders(artifact, placeholders))

        responsive = []
        for width in self.options.sizes:
            if width >= metadata.width:
                continue
            for fmt in formats:
                responsive.append(await self._write_variant(source, decoded.pixels, fmt, quality, width))

        average = sum(item.size for item in optimized) / len(optimized) if optimized else original_size
        record = OptimizationRecord(
            source=source,
            original=metadata,
            optimized=tuple(optimized),
            responsive=tuple(responsive),
            savings=Savings.between(original_size, average),
            elapsed=time.perf_counter() - started,
            decision=decision,
            metrics=metrics,
        )
        logger.info(
            f"[optimize] {source.name}: q={quality} {','.join(formats)} "
            f"saved {record.savings.percentage:.1f}% in {record.elapsed:.2f}s"
        )
        return record

    async def _optimize_svg(self, source: Path, original_size: int, started: float) -> OptimizationRecord:
        text = await asyncio.to_thread(source.read_text, encoding="utf-8")
        minified = minify_svg(text, native_tools=self.options.native_tools)
        output = self.build_output_path(source, "svg")
        size = await asyncio.to_thread(self._write_bytes, output, minified.encode("utf-8"))
        artifact = OptimizedArtifact(output, size, "svg", 0, 0, cdn_url=self.cdn_url(output))
        return OptimizationRecord(
            source=source,
            original=ImageMetadata(0, 0, "svg", original_size, has_alpha=True),
            optimized=(artifact,),
            responsive=(),
            savings=Savings.between(original_size, size),
            elapsed=time.perf_counter() - started,
        )

    async def _write_variant(
        self, source: Path, pixels: np.ndarray, fmt: str, quality: int, width: int | None
    ) -> OptimizedArtifact:
        encoded = await asyncio.to_thread(
            self.encoder, pixels, fmt, quality, width, self.options.native_tools
        )
        output = self.build_output_path(source, fmt, width)
        size = await asyncio.to_thread(self._write_bytes, output, encoded.data)
        return OptimizedArtifact(
            path=output,
            size=size,
            format=fmt,
            width=encoded.width,
            height=encoded.height,
            cdn_url=self.cdn_url(output),
        )

    @staticmethod
    def _with_placeholders(artifact: OptimizedArtifact, placeholders: Placeholders) -> OptimizedArtifact:
        if placeholders.preview is None and placeholders.hash is None:
            return artifact
        return replace(artifact, placeholder=placeholders.preview, hash=placeholders.hash)

    @staticmethod
    def _write_bytes(output: Path, data: bytes) -> int:
        output.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=output.parent, prefix=f".{output.stem}.", suffix=output.suffix, delete=False
        ) as handle:
            temp = Path(handle.name)
            try:
                handle.write(data)
            except OSError:
                handle.close()
                temp.unlink(missing_ok=True)
                raise
        try:
            temp.replace(output)
        except OSError:
            temp.unlink(missing_ok=True)
            raise
        return len(data)

    def build_output_path(self, source: Path, fmt: str, width: int | None = None) -> Path:
        suffix = f"-{width}w" if width else ""
        input_root = self.options.input_root
        directory = self.options.output_dir
        if input_root is not None and source.is_relative_to(input_root):
            directory = directory / source.parent.relative_to(input_root)
        path = directory / f"{source.stem}{suffix}.{fmt}"
        index = 1
        while self._claimed.setdefault(path, source) != source:
            path = directory / f"{source.stem}({index}){suffix}.{fmt}"
            index += 1
        return path

    def cdn_url(self, output: Path) -> str | None:
        base = self.options.cdn_base_url
        if not base:
            return None
        relative = output.relative_to(self.options.output_dir).as_posix()
        if "{path}" in base:
            return base.replace("{path}", relative)
        return f"{base.rstrip('/')}/{relative}"

    async def convert_codebase(self) -> ConversionOutcome:
        if not self.options.update_codebase:
            raise ConfigError("update_codebase must be enabled to convert codebase images")
        root = self.options.codebase_root
        if root is None:
            raise ConfigError("codebase_root is required to convert codebase images")
        if not root.is_dir():
            raise ConfigError(f"codebase_root is not a directory: {root}")

        scan = await asyncio.to_thread(ReferenceScanner(root).scan)
        errors: list[BatchError] = []

        by_image: dict[Path, list[ImageReference]] = defaultdict(list)
        for reference in scan.references:
            if is_remote(reference.raw_path):
                continue
            by_image[resolve_reference(reference).resolve()].append(reference)

        candidates = []
        for image in sorted(by_image):
            if not image.is_file():
                logger.debug(f"[convert] skipping missing image {image}")
                continue
            if image.is_relative_to(self.options.output_dir):
                continue
            candidates.append(image)

        batch = await self._for_codebase(root).optimize_batch(candidates)
        errors.extend(batch.errors)

        per_file: dict[Path, list[tuple[ImageReference, str]]] = defaultdict(list)
        converted = 0
        for record in batch.results:
            target = self._rewrite_target(record)
            if target is None:
                message = f"no {self.options.rewrite_format} output to rewrite to"
                errors.extend(BatchError(str(ref.source_file), message) for ref in by_image[record.source])
                continue
            converted += 1
            for reference in by_image[record.source]:
                per_file[reference.source_file].append((reference, relative_reference_path(reference, target.path)))

        updated = 0
        for source_file, replacements in sorted(per_file.items()):
            try:
                await asyncio.to_thread(rewrite_references, source_file, replacements)
            except (OSError, ValueError, RewriteError) as exc:
                logger.warning(f"[convert] {source_file}: {exc}")
                errors.append(BatchError(str(source_file), str(exc)))
            else:
                updated += 1

        logger.info(f"[convert] {converted} images converted, {updated} files updated, {len(errors)} errors")
        return ConversionOutcome(
            scanned_files=scan.files_scanned,
            image_references=len(scan.references),
            unique_images=len(scan.unique_images),
            converted_images=converted,
            updated_files=updated,
            errors=tuple(errors),
        )

    def _for_codebase(self, root: Path) -> ImageOptimizer:
        """Optimizer that mirrors codebase images under output_dir by their path below root."""
        if self.options.input_root is not None:
            return self
        optimizer = ImageOptimizer(
            replace(self.options, input_root=root.resolve()),
            self.cache,
            self.decoder,
            self.encoder,
            self.scheduler.on_progress,
        )
        optimizer._claimed = self._claimed
        return optimizer

    def _rewrite_target(self, record: OptimizationRecord) -> OptimizedArtifact | None:
        if not record.optimized:
            return None
        wanted = self.options.rewrite_format
        if wanted is None:
            return record.optimized[0]
        for artifact in record.optimized:
            if artifact.format == wanted:
                return artifact
        return None

