from __future__ import annotations

import io
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import DecodeError, EncodeError

logger = logging.getLogger(__name__)

WINDOWS_CREATIONFLAGS = (
    getattr(subprocess, "CREATE_NO_WINDOW", 0) if sys.platform.startswith("win") else 0
)
TOOLS_DIR_ENV_VAR = "IMGOPTIM_TOOLS_DIR"
_TOOL_CACHE: dict[tuple[str, ...], str | None] = {}
_TOOL_DIRS: list[Path] | None = None
_TOOL_LOCK = Lock()

Encoder = Callable[[Image.Image, int, bool], tuple[bytes, str]]
_ENGINE_REGISTRY: dict[str, Encoder] = {}


@dataclass(frozen=True)
class DecodedImage:
    pixels: np.ndarray
    width: int
    height: int
    channels: int
    format: str
    has_alpha: bool
    frame_count: int = 1


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    width: int
    height: int
    engine: str


def decode_image(path: Path | str) -> DecodedImage:
    source = Path(path)
    if not source.is_file():
        raise FileNotFoundError(f"No such image: {source}")
    try:
        with Image.open(source) as image:
            frame_count = getattr(image, "n_frames", 1)
            detected = (image.format or source.suffix.lstrip(".")).lower()
            has_alpha = image.mode in {"RGBA", "LA", "PA"} or (
                image.mode == "P" and "transparency" in image.info
            )
            image.seek(0)
            frame = ImageOps.exif_transpose(image)
            frame = frame.convert("RGBA" if has_alpha else "RGB")
            pixels = np.asarray(frame, dtype=np.uint8)
    except PermissionError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as exc:
        raise DecodeError(f"Cannot decode {source.name}: {exc}") from exc
    height, width, channels = pixels.shape
    return DecodedImage(pixels, width, height, channels, detected, has_alpha, frame_count)


def encode_image(
    pixels: np.ndarray,
    fmt: str,
    quality: int,
    target_width: int | None = None,
    native_tools: bool = True,
) -> EncodedImage:
    registry = get_engine_registry()
    encoder = registry.get(fmt)
    if encoder is None:
        raise EncodeError(f"Unsupported output format: {fmt}")
    image = resize_to_width(to_image(pixels), target_width)
    quality = max(1, min(100, int(quality)))
    try:
        data, engine = encoder(image, quality, native_tools)
    except EncodeError:
        raise
    except (OSError, ValueError, KeyError) as exc:
        raise EncodeError(f"{fmt} encode failed: {exc}") from exc
    return EncodedImage(data, image.width, image.height, engine)


def to_image(pixels: np.ndarray) -> Image.Image:
    array = np.ascontiguousarray(pixels, dtype=np.uint8)
    if array.ndim == 3 and array.shape[2] == 1:
        array = array[:, :, 0]
    return Image.fromarray(array)


def resize_to_width(image: Image.Image, width: int | None) -> Image.Image:
    if not width or width >= image.width:
        return image
    height = max(1, round(image.height * width / image.width))
    return image.resize((width, height), Image.Resampling.LANCZOS)


def _run_engine_chain(engines: list[tuple[str, Callable[[], bytes | None]]]) -> tuple[bytes, str] | None:
    for name, runner in engines:
        data = runner()
        if data:
            return data, name
        logger.debug(f"[codec] engine {name} produced no output, trying next")
    return None


def encode_jpeg(image: Image.Image, quality: int, native_tools: bool) -> tuple[bytes, str]:
    rgb = flatten_alpha(image)
    engines: list[tuple[str, Callable[[], bytes | None]]] = []
    cjpeg = get_tool_executable(["cjpeg", "mozjpeg"]) if native_tools else None
    if cjpeg:
        engines.append(("mozjpeg", lambda: run_cjpeg(cjpeg, rgb, quality)))
    result = _run_engine_chain(engines)
    if result:
        return result
    buffer = io.BytesIO()
    rgb.save(buffer, format="JPEG", quality=quality, optimize=True, progressive=True)
    return buffer.getvalue(), "Pillow"


def encode_png(image: Image.Image, quality: int, native_tools: bool) -> tuple[bytes, str]:
    engines: list[tuple[str, Callable[[], bytes | None]]] = []
    pngquant = get_tool_executable(["pngquant"]) if native_tools else None
    if pngquant and quality < 100:
        min_q = max(10, quality - 15)
        engines.append(("pngquant", lambda: run_pngquant(pngquant, image, min_q, quality)))
    result = _run_engine_chain(engines)
    if result is None:
        buffer = io.BytesIO()
        if quality < 100:
            colors = max(16, int(256 * quality / 100))
            quantize_image(image, colors).save(buffer, format="PNG", optimize=True, compress_level=9)
        else:
            image.save(buffer, format="PNG", optimize=True, compress_level=9)
        result = (buffer.getvalue(), "Pillow")
    optimizer = get_tool_executable(["oxipng", "optipng"]) if native_tools else None
    if optimizer:
        optimized = run_png_optimizer(optimizer, result[0])
        if optimized and len(optimized) < len(result[0]):
            return optimized, f"{result[1]}+{Path(optimizer).stem}"
    return result


def encode_webp(image: Image.Image, quality: int, native_tools: bool) -> tuple[bytes, str]:
    engines: list[tuple[str, Callable[[], bytes | None]]] = []
    cwebp = get_tool_executable(["cwebp"]) if native_tools else None
    if cwebp:
        engines.append(("cwebp", lambda: run_cwebp(cwebp, image, quality)))
    result = _run_engine_chain(engines)
    if result:
        return result
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality, method=6)
    return buffer.getvalue(), "Pillow"


def encode_avif(image: Image.Image, quality: int, native_tools: bool) -> tuple[bytes, str]:
    engines: list[tuple[str, Callable[[], bytes | None]]] = []
    avifenc = get_tool_executable(["avifenc"]) if native_tools else None
    if avifenc:
        engines.append(("avifenc", lambda: run_avifenc(avifenc, image, quality)))
    result = _run_engine_chain(engines)
    if result:
        return result
    Image.init()
    if "AVIF" not in Image.SAVE:
        raise EncodeError("AVIF output needs Pillow built with libavif or the avifenc tool")
    buffer = io.BytesIO()
    image.save(buffer, format="AVIF", quality=quality, speed=6, subsampling="4:2:0")
    return buffer.getvalue(), "Pillow"


def encode_gif(image: Image.Image, quality: int, native_tools: bool) -> tuple[bytes, str]:
    colors = max(16, int(256 * quality / 100))
    buffer = io.BytesIO()
    quantize_image(image, colors).save(buffer, format="GIF", optimize=True)
    data = buffer.getvalue()
    gifsicle = get_tool_executable(["gifsicle"]) if native_tools else None
    if gifsicle:
        optimized = run_gifsicle(gifsicle, data, quality)
        if optimized and len(optimized) < len(data):
            return optimized, "gifsicle"
    return data, "Pillow"


def flatten_alpha(image: Image.Image, background: tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    if image.mode not in {"RGBA", "LA"}:
        return image.convert("RGB")
    rgba = image.convert("RGBA")
    canvas = Image.new("RGB", image.size, background)
    canvas.paste(rgba, mask=rgba.getchannel("A"))
    return canvas


def quantize_image(image: Image.Image, colors: int) -> Image.Image:
    fast_octree = 2
    median_cut = 0
    if image.mode in {"RGBA", "LA"}:
        return image.convert("RGBA").quantize(colors=colors, method=fast_octree)
    return image.convert("RGB").quantize(colors=colors, method=median_cut)


def _run_with_files(
    image: Image.Image | None,
    build_command: Callable[[Path, Path], list[str]],
    input_format: str = "PNG",
    input_bytes: bytes | None = None,
) -> bytes | None:
    suffix = {"PNG": ".png", "PPM": ".ppm", "GIF": ".gif", "SVG": ".svg"}[input_format]
    with tempfile.TemporaryDirectory(prefix="imgoptim_") as workdir:
        source = Path(workdir) / f"input{suffix}"
        output = Path(workdir) / "output.bin"
        if input_bytes is not None:
            source.write_bytes(input_bytes)
        elif image is not None:
            image.save(source, format=input_format)
        command = build_command(source, output)
        result = run_command(command)
        if result.returncode != 0 or not output.exists():
            logger.debug(f"[codec] {Path(command[0]).name} failed: {result.stderr[:200]!r}")
            return None
        return output.read_bytes()


def run_cjpeg(cjpeg: str, image: Image.Image, quality: int) -> bytes | None:
    return _run_with_files(
        image,
        lambda source, output: [
            cjpeg,
            "-quality",
            str(quality),
            "-progressive",
            "-optimize",
            "-outfile",
            str(output),
            str(source),
        ],
        input_format="PPM",
    )


def run_pngquant(pngquant: str, image: Image.Image, min_quality: int, max_quality: int) -> bytes | None:
    return _run_with_files(
        image,
        lambda source, output: [
            pngquant,
            "--quality",
            f"{min_quality}-{max_quality}",
            "--speed",
            "1",
            "--strip",
            "--output",
            str(output),
            "--force",
            str(source),
        ],
    )


def run_png_optimizer(tool: str, data: bytes) -> bytes | None:
    name = Path(tool).name.lower()
    if "oxipng" in name:
        def build(source: Path, output: Path) -> list[str]:
            return [tool, "-o", "4", "--strip", "all", "--out", str(output), str(source)]
    else:
        def build(source: Path, output: Path) -> list[str]:
            return [tool, "-o7", "-strip", "all", "-out", str(output), str(source)]
    return _run_with_files(None, build, input_bytes=data)


def run_cwebp(cwebp: str, image: Image.Image, quality: int) -> bytes | None:
    return _run_with_files(
        image,
        lambda source, output: [
            cwebp,
            "-q",
            str(quality),
            "-m",
            "6",
            "-metadata",
            "none",
            str(source),
            "-o",
            str(output),
        ],
    )


def run_avifenc(avifenc: str, image: Image.Image, quality: int) -> bytes | None:
    return _run_with_files(
        image,
        lambda source, output: [
            avifenc,
            "-q",
            str(quality),
            "--speed",
            "6",
            "--yuv",
            "420",
            str(source),
            "-o",
            str(output),
        ],
    )


def run_gifsicle(gifsicle: str, data: bytes, quality: int) -> bytes | None:
    lossy = max(0, (100 - quality) * 2)
    return _run_with_files(
        None,
        lambda source, output: [
            gifsicle,
            "-O3",
            "--no-comments",
            "--no-names",
            "--no-extensions",
            "--lossy",
            str(lossy),
            str(source),
            "-o",
            str(output),
        ],
        input_format="GIF",
        input_bytes=data,
    )


def run_svgo(svgo: str, text: str, precision: int) -> bytes | None:
    return _run_with_files(
        None,
        lambda source, output: [
            svgo,
            "-p",
            str(precision),
            "--multipass",
            "-i",
            str(source),
            "-o",
            str(output),
        ],
        input_format="SVG",
        input_bytes=text.encode("utf-8"),
    )


def get_tool_executable(names: list[str]) -> str | None:
    key = tuple(names)
    with _TOOL_LOCK:
        if key in _TOOL_CACHE:
            return _TOOL_CACHE[key]
    found = None
    for base in _get_tool_search_dirs():
        for name in names:
            for path in (base / name, base / f"{name}.exe"):
                if found is None and path.is_file():
                    found = str(path)
    if found is None:
        for name in names:
            found = found or shutil.which(name)
    if found:
        logger.debug(f"[codec] using {found} for {'/'.join(names)}")
    with _TOOL_LOCK:
        _TOOL_CACHE[key] = found
    return found


def _get_tool_search_dirs() -> list[Path]:
    global _TOOL_DIRS
    with _TOOL_LOCK:
        if _TOOL_DIRS is not None:
            return _TOOL_DIRS
    base_dirs: list[Path] = []
    override = os.environ.get(TOOLS_DIR_ENV_VAR)
    if override:
        base_dirs.append(Path(override).expanduser())
    vendor_root = Path(__file__).resolve().parent.parent / "vendor"
    platform_key = detect_platform()
    arch_key = detect_arch()
    base_dirs.extend(
        [
            vendor_root / platform_key / arch_key,
            vendor_root / platform_key,
            vendor_root,
        ]
    )
    with _TOOL_LOCK:
        _TOOL_DIRS = base_dirs
    return base_dirs


def reset_tool_cache() -> None:
    global _TOOL_DIRS
    with _TOOL_LOCK:
        _TOOL_CACHE.clear()
        _TOOL_DIRS = None


def detect_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def detect_arch() -> str:
    machine = platform.machine().lower()
    if machine in {"arm64", "aarch64"}:
        return "arm64"
    if machine in {"x86_64", "amd64"}:
        return "x64"
    return machine


def run_command(command: list[str]) -> subprocess.CompletedProcess[bytes]:
    return subprocess.run(command, capture_output=True, creationflags=WINDOWS_CREATIONFLAGS)


def get_engine_status(native_tools: bool = True) -> dict[str, str]:
    if not native_tools:
        status = {fmt: "Pillow" for fmt in ("JPEG", "PNG", "WebP", "AVIF", "GIF")}
        status["SVG"] = "built-in"
        return status
    return {
        "JPEG": "mozjpeg" if get_tool_executable(["cjpeg", "mozjpeg"]) else "Pillow",
        "PNG": "pngquant" if get_tool_executable(["pngquant"]) else "Pillow",
        "WebP": "cwebp" if get_tool_executable(["cwebp"]) else "Pillow",
        "AVIF": "avifenc" if get_tool_executable(["avifenc"]) else "Pillow",
        "GIF": "gifsicle" if get_tool_executable(["gifsicle"]) else "Pillow",
        "SVG": "svgo" if get_tool_executable(["svgo"]) else "built-in",
    }


def get_engine_registry() -> dict[str, Encoder]:
    global _ENGINE_REGISTRY
    if not _ENGINE_REGISTRY:
        _ENGINE_REGISTRY = {
            "jpeg": encode_jpeg,
            "png": encode_png,
            "webp": encode_webp,
            "avif": encode_avif,
            "gif": encode_gif,
        }
    return _ENGINE_REGISTRY


def set_engine_registry(registry: dict[str, Encoder]) -> None:
    global _ENGINE_REGISTRY
    _ENGINE_REGISTRY = dict(registry)
