"""SVG minification.

svgo does the work when it is installed. Otherwise a conservative regex pass
drops comments and metadata, collapses inter-element whitespace outside
``<text>``, rounds long decimals in geometry attributes and shortens colours
in paint attributes.
"""

from __future__ import annotations

import logging
import re

from .codec import get_tool_executable, run_svgo

logger = logging.getLogger(__name__)

_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_METADATA = re.compile(r"<metadata\b.*?</metadata>", re.DOTALL | re.IGNORECASE)
_TEXT_BLOCK = re.compile(r"(<text\b.*?</text>)", re.DOTALL | re.IGNORECASE)
_BETWEEN_TAGS = re.compile(r">\s+<")
_BEFORE_TEXT = re.compile(r">\s+\Z")
_AFTER_TEXT = re.compile(r"\A\s+<")
_PATH_DATA = re.compile(r'\b(d|transform|points)="([^"]*)"')
_LONG_DECIMAL = re.compile(r"-?\d+\.\d{3,}")
_PAINT_ATTR = re.compile(r'\b(fill|stroke|stop-color|flood-color|lighting-color|color|style)="([^"]*)"')
_URL = re.compile(r"(url\([^)]*\))", re.IGNORECASE)
_RGB = re.compile(r"rgb\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*\)", re.IGNORECASE)
_SHORTENABLE_HEX = re.compile(r"#([0-9a-fA-F])\1([0-9a-fA-F])\2([0-9a-fA-F])\3\b")


def minify_svg(text: str, precision: int = 2, native_tools: bool = True) -> str:
    if native_tools:
        svgo = get_tool_executable(["svgo"])
        if svgo:
            data = run_svgo(svgo, text, precision)
            if data is not None:
                return data.decode("utf-8")
            logger.debug("[svg] svgo failed, using built-in minifier")
    return _minify_builtin(text, precision)


def _minify_builtin(text: str, precision: int) -> str:
    text = _COMMENT.sub("", text)
    text = _METADATA.sub("", text)
    text = _collapse_whitespace(text.strip())
    text = _PATH_DATA.sub(lambda match: f'{match.group(1)}="{_round_numbers(match.group(2), precision)}"', text)
    return _PAINT_ATTR.sub(_shorten_paint, text)


def _collapse_whitespace(text: str) -> str:
    # Odd indices are <text> elements, where whitespace between tspans renders.
    parts = _TEXT_BLOCK.split(text)
    for index in range(0, len(parts), 2):
        part = _BETWEEN_TAGS.sub("><", parts[index])
        if index > 0:
            part = "" if part.isspace() else _AFTER_TEXT.sub("<", part)
        if index < len(parts) - 1:
            part = _BEFORE_TEXT.sub(">", part)
        parts[index] = part
    return "".join(parts)


def _round_numbers(value: str, precision: int) -> str:
    def shorten(match: re.Match[str]) -> str:
        rounded = f"{float(match.group(0)):.{precision}f}".rstrip("0").rstrip(".")
        return "0" if rounded in {"-0", ""} else rounded

    return _LONG_DECIMAL.sub(shorten, value)


def _shorten_paint(match: re.Match[str]) -> str:
    pieces = _URL.split(match.group(2))
    for index in range(0, len(pieces), 2):
        pieces[index] = _SHORTENABLE_HEX.sub(r"#\1\2\3", _RGB.sub(_rgb_to_hex, pieces[index]))
    return f'{match.group(1)}="{"".join(pieces)}"'


def _rgb_to_hex(match: re.Match[str]) -> str:
    red, green, blue = (min(255, int(part)) for part in match.groups())
    return f"#{red:02x}{green:02x}{blue:02x}"
