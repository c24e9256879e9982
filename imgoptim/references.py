"""Find image paths in source files and rewrite them after optimization.

Each file type has its own extractor behind the same ``extract`` interface.
Rewrites are line- and substring-scoped: only the recorded path text is
replaced, and a reference that no longer matches its line raises
``RewriteError`` instead of touching anything else.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import shutil
from collections import defaultdict
from pathlib import Path
from typing import Iterable, Sequence

from .errors import RewriteError
from .models import ImageReference, ScanResult

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "avif", "svg")
SCRIPT_EXTENSIONS = ("js", "jsx", "ts", "tsx", "mjs", "cjs")
MARKUP_EXTENSIONS = ("html", "htm", "vue", "svelte")
STYLESHEET_EXTENSIONS = ("css", "scss", "sass", "less")
DEFAULT_INCLUDE = tuple(
    f"**/*.{ext}" for ext in (*SCRIPT_EXTENSIONS, *MARKUP_EXTENSIONS, *STYLESHEET_EXTENSIONS)
)
DEFAULT_EXCLUDE = (
    "**/node_modules/**",
    "**/dist/**",
    "**/build/**",
    "**/.next/**",
    "**/coverage/**",
    "**/.git/**",
)
REMOTE_PREFIXES = ("http://", "https://", "//", "data:")


def _compile_patterns(extensions: Sequence[str]) -> dict[str, re.Pattern[str]]:
    ext = "|".join(re.escape(item) for item in extensions)
    path = rf"(?P<path>[^'\"`\s]+?\.(?:{ext}))"
    bare_path = rf"(?P<path>[^'\"`\s()]+?\.(?:{ext}))"
    return {
        "import": re.compile(
            rf"\bimport\s*(?:\(\s*|[\w$*{{}},\s]+?\s+from\s*)?(?P<q>['\"`]){path}(?P=q)",
            re.IGNORECASE,
        ),
        "require": re.compile(rf"\brequire\s*\(\s*(?P<q>['\"`]){path}(?P=q)\s*\)", re.IGNORECASE),
        "src": re.compile(rf"\bsrc\s*=\s*\{{?\s*(?P<q>['\"`]){path}(?P=q)", re.IGNORECASE),
        "url": re.compile(rf"\burl\s*\(\s*(?P<q>['\"`]?){bare_path}(?P=q)\s*\)", re.IGNORECASE),
        "background": re.compile(
            rf"\bbackground(?:-image|Image)?\s*:\s*['\"`]?\s*url\s*\(\s*(?P<q>['\"`]?){bare_path}(?P=q)",
            re.IGNORECASE,
        ),
    }


class ReferenceExtractor:
    kinds: tuple[str, ...] = ("import", "require", "src", "url", "background")

    def __init__(self, image_extensions: Sequence[str] = IMAGE_EXTENSIONS) -> None:
        patterns = _compile_patterns(image_extensions)
        self.patterns = [(kind, patterns[kind]) for kind in self.kinds]

    def extract(self, source_file: Path, text: str) -> list[ImageReference]:
        references = []
        for index, line in enumerate(text.splitlines(), start=1):
            for kind, pattern in self.patterns:
                for match in pattern.finditer(line):
                    references.append(
                        ImageReference(
                            source_file=source_file,
                            raw_path=match.group("path"),
                            line_number=index,
                            line_text=line,
                            kind=kind,
                            column=match.start("path"),
                        )
                    )
        return references


class ScriptExtractor(ReferenceExtractor):
    pass


class MarkupExtractor(ReferenceExtractor):
    pass


class StylesheetExtractor(ReferenceExtractor):
    kinds = ("url", "background")


def extractor_for(path: Path, image_extensions: Sequence[str] = IMAGE_EXTENSIONS) -> ReferenceExtractor | None:
    suffix = path.suffix.lower().lstrip(".")
    if suffix in SCRIPT_EXTENSIONS:
        return ScriptExtractor(image_extensions)
    if suffix in MARKUP_EXTENSIONS:
        return MarkupExtractor(image_extensions)
    if suffix in STYLESHEET_EXTENSIONS:
        return StylesheetExtractor(image_extensions)
    return None


def _matches(relative: str, pattern: str) -> bool:
    if fnmatch.fnmatch(relative, pattern):
        return True
    # "**/x" should also match "x" at the root.
    return pattern.startswith("**/") and fnmatch.fnmatch(relative, pattern[3:])


def list_files(
    root: Path | str,
    include: Iterable[str] = DEFAULT_INCLUDE,
    exclude: Iterable[str] = DEFAULT_EXCLUDE,
) -> list[Path]:
    root = Path(root).resolve()
    if not root.is_dir():
        raise NotADirectoryError(f"Scan root is not a directory: {root}")
    excludes = list(exclude)
    found: set[Path] = set()
    for pattern in include:
        for path in root.glob(pattern):
            if not path.is_file():
                continue
            relative = path.relative_to(root).as_posix()
            if any(_matches(relative, item) for item in excludes):
                continue
            found.add(path)
    return sorted(found)


def is_remote(raw_path: str) -> bool:
    return raw_path.lower().startswith(REMOTE_PREFIXES)


def resolve_reference(reference: ImageReference) -> Path:
    base = os.path.dirname(os.path.abspath(reference.source_file))
    return Path(os.path.normpath(os.path.join(base, reference.raw_path)))


def relative_reference_path(reference: ImageReference, target: Path | str) -> str:
    base = os.path.dirname(os.path.abspath(reference.source_file))
    relative = Path(os.path.relpath(os.path.abspath(target), base)).as_posix()
    if reference.raw_path.startswith("./") and not relative.startswith("../"):
        relative = f"./{relative}"
    return relative


class ReferenceScanner:
    def __init__(
        self,
        root: Path | str,
        include: Sequence[str] = DEFAULT_INCLUDE,
        exclude: Sequence[str] = DEFAULT_EXCLUDE,
        image_extensions: Sequence[str] = IMAGE_EXTENSIONS,
    ) -> None:
        self.root = Path(root).resolve()
        self.include = tuple(include)
        self.exclude = tuple(exclude)
        self.image_extensions = tuple(image_extensions)

    def scan(self) -> ScanResult:
        files = list_files(self.root, self.include, self.exclude)
        references: list[ImageReference] = []
        for path in files:
            extractor = extractor_for(path, self.image_extensions)
            if extractor is None:
                continue
            text = path.read_text(encoding="utf-8", errors="replace")
            references.extend(extractor.extract(path, text))
        unique = frozenset(resolve_reference(ref) for ref in references if not is_remote(ref.raw_path))
        logger.info(f"[scan] {len(files)} files, {len(references)} references, {len(unique)} images")
        return ScanResult(files_scanned=len(files), references=tuple(references), unique_images=unique)


def rewrite_references(source_file: Path | str, replacements: Sequence[tuple[ImageReference, str]]) -> int:
    """Replace referenced paths in one file and return the number of edits.

    All edits are validated before the file is written, so a stale reference
    leaves the file untouched.
    """
    source_file = Path(source_file)
    with open(source_file, encoding="utf-8", newline="") as handle:
        lines = handle.read().splitlines(keepends=True)

    by_line: dict[int, dict[tuple[int, str], str]] = defaultdict(dict)
    for reference, new_path in replacements:
        by_line[reference.line_number][(reference.column, reference.raw_path)] = new_path

    edits = 0
    for line_number, edits_on_line in by_line.items():
        if not 1 <= line_number <= len(lines):
            raise RewriteError(f"{source_file}:{line_number} no longer exists")
        line = lines[line_number - 1]
        # Right to left so earlier columns stay valid.
        for (column, raw_path), new_path in sorted(edits_on_line.items(), reverse=True):
            if column < 0 or line[column : column + len(raw_path)] != raw_path:
                occurrences = line.count(raw_path)
                if occurrences == 0:
                    raise RewriteError(f"{source_file}:{line_number} does not contain {raw_path!r}")
                if occurrences > 1:
                    raise RewriteError(f"{source_file}:{line_number} changed and contains {raw_path!r} {occurrences} times")
                column = line.find(raw_path)
            line = line[:column] + new_path + line[column + len(raw_path) :]
            edits += 1
        lines[line_number - 1] = line

    temp = source_file.with_name(f"{source_file.name}.__rewrite")
    with open(temp, "w", encoding="utf-8", newline="") as handle:
        handle.write("".join(lines))
    shutil.copymode(source_file, temp)
    temp.replace(source_file)
    return edits
