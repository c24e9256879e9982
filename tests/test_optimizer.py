"""End-to-end tests for the optimization pipeline on real files."""

import asyncio
import re

import pytest
from PIL import Image

from imgoptim.cache import ResultCache
from imgoptim.codec import decode_image
from imgoptim.errors import ConfigError, EncodeError
from imgoptim.models import OptimizeOptions
from imgoptim.optimizer import ImageOptimizer


def make_options(tmp_path, **overrides):
    values = {"output_dir": tmp_path / "out", "formats": ("webp",), "quality": 80, "native_tools": False}
    values.update(overrides)
    return OptimizeOptions(**values)


class CountingDecoder:
    def __init__(self):
        self.calls = 0

    def __call__(self, path):
        self.calls += 1
        return decode_image(path)


def test_optimize_single_writes_artifacts(tmp_path, make_image, noisy_pixels):
    source = make_image("photo.png", noisy_pixels)
    optimizer = ImageOptimizer(make_options(tmp_path, formats=("webp", "jpeg")))
    record = asyncio.run(optimizer.optimize_single(source))

    assert record.source == source.resolve()
    assert record.original.width == 160 and record.original.size == source.stat().st_size
    assert [artifact.format for artifact in record.optimized] == ["webp", "jpeg"]
    for artifact in record.optimized:
        assert artifact.path.parent == (tmp_path / "out").resolve()
        assert artifact.path.stat().st_size == artifact.size
        assert (artifact.width, artifact.height) == (160, 120)
        assert artifact.cdn_url is None
    assert record.decision is None and record.metrics is None
    # Lossless random noise is incompressible, lossy formats must win.
    assert record.savings.bytes > 0


def test_auto_quality_records_decision(tmp_path, make_image, noisy_pixels):
    source = make_image("photo.png", noisy_pixels)
    record = asyncio.run(ImageOptimizer(make_options(tmp_path, quality="auto")).optimize_single(source))
    assert record.metrics is not None
    assert 65 <= record.decision.quality <= 95
    # Formats stay as configured unless auto_format is on.
    assert [artifact.format for artifact in record.optimized] == ["webp"]


def test_auto_format_uses_recommendation(tmp_path, make_image, stripes_pixels):
    source = make_image("text.png", stripes_pixels)
    options = make_options(tmp_path, quality="auto", auto_format=True)
    record = asyncio.run(ImageOptimizer(options).optimize_single(source))
    assert record.decision.formats == ("webp", "png")
    assert [artifact.format for artifact in record.optimized] == ["webp", "png"]


def test_responsive_variants_skip_upscaling(tmp_path, make_image):
    source = make_image("banner.jpg", size=(64, 48))
    options = make_options(tmp_path, sizes=(32, 64, 1000))
    record = asyncio.run(ImageOptimizer(options).optimize_single(source))
    assert [(artifact.path.name, artifact.width, artifact.height) for artifact in record.responsive] == [
        ("banner-32w.webp", 32, 24)
    ]


def test_placeholders_attached_to_primary_artifacts(tmp_path, make_image):
    source = make_image("card.png", size=(64, 48))
    options = make_options(tmp_path, generate_placeholders=True, placeholder_kind="both", sizes=(32,))
    record = asyncio.run(ImageOptimizer(options).optimize_single(source))
    artifact = record.optimized[0]
    assert artifact.placeholder.startswith("data:image/jpeg;base64,")
    assert re.fullmatch(r"[0-9a-f]{16}", artifact.hash)
    assert record.responsive[0].placeholder is None


@pytest.mark.parametrize(
    "base,expected",
    [
        ("https://cdn.example.com/", "https://cdn.example.com/logo.webp"),
        ("https://img.example.com/{path}?v=1", "https://img.example.com/logo.webp?v=1"),
    ],
)
def test_cdn_urls(tmp_path, make_image, base, expected):
    source = make_image("logo.png")
    record = asyncio.run(ImageOptimizer(make_options(tmp_path, cdn_base_url=base)).optimize_single(source))
    assert record.optimized[0].cdn_url == expected


def test_cache_hit_skips_work(tmp_path, make_image):
    source = make_image("a.png")
    decoder = CountingDecoder()
    optimizer = ImageOptimizer(make_options(tmp_path), decoder=decoder)

    async def main():
        first = await optimizer.optimize_single(source)
        second = await optimizer.optimize_single(str(source))
        return first, second

    first, second = asyncio.run(main())
    assert decoder.calls == 1
    assert second is first
    assert optimizer.cache.hits == 1


def test_concurrent_requests_decode_once(tmp_path, make_image):
    source = make_image("a.png")
    decoder = CountingDecoder()
    optimizer = ImageOptimizer(make_options(tmp_path), decoder=decoder)

    async def main():
        return await asyncio.gather(*(optimizer.optimize_single(source) for _ in range(4)))

    records = asyncio.run(main())
    assert decoder.calls == 1
    assert all(record is records[0] for record in records)


def test_cache_is_scoped_to_options(tmp_path, make_image):
    source = make_image("a.png")
    cache = ResultCache()
    decoder = CountingDecoder()
    low = ImageOptimizer(make_options(tmp_path, quality=40), cache=cache, decoder=decoder)
    high = ImageOptimizer(make_options(tmp_path, quality=90), cache=cache, decoder=decoder)

    async def main():
        await low.optimize_single(source)
        await high.optimize_single(source)

    asyncio.run(main())
    assert decoder.calls == 2
    assert len(cache) == 2


def test_cache_disabled_recomputes(tmp_path, make_image):
    source = make_image("a.png")
    decoder = CountingDecoder()
    optimizer = ImageOptimizer(make_options(tmp_path, cache_enabled=False), decoder=decoder)

    async def main():
        await optimizer.optimize_single(source)
        await optimizer.optimize_single(source)

    asyncio.run(main())
    assert decoder.calls == 2
    assert len(optimizer.cache) == 0


def test_batch_isolates_bad_file(tmp_path, make_image):
    good = make_image("good.png")
    other = make_image("other.jpg")
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"not an image")

    outcome = asyncio.run(ImageOptimizer(make_options(tmp_path, parallel=2)).optimize_batch([good, bad, other]))
    assert outcome.files_processed == 2
    assert {record.source.name for record in outcome.results} == {"good.png", "other.jpg"}
    assert len(outcome.errors) == 1
    assert outcome.errors[0].file.endswith("bad.png")
    assert "Cannot decode" in outcome.errors[0].error


def test_same_stem_sources_get_distinct_outputs(tmp_path, make_image):
    first = make_image("a/logo.png", color=(200, 30, 30))
    second = make_image("b/logo.jpg", color=(30, 30, 200))
    optimizer = ImageOptimizer(make_options(tmp_path, parallel=2))

    outcome = asyncio.run(optimizer.optimize_batch([first, second]))
    paths = {record.source.name: record.optimized[0].path for record in outcome.results}
    assert {path.name for path in paths.values()} == {"logo.webp", "logo(1).webp"}
    assert all(path.is_file() for path in paths.values())
    assert sorted(path.name for path in (tmp_path / "out").iterdir()) == ["logo(1).webp", "logo.webp"]

    # A second run keeps each source on the name it was given.
    again = asyncio.run(optimizer.optimize_single(second))
    assert again.optimized[0].path == paths["logo.jpg"]


def test_svg_only_formats_reject_raster_input(tmp_path, make_image):
    source = make_image("photo.png")
    optimizer = ImageOptimizer(make_options(tmp_path, formats=("svg",)))
    with pytest.raises(EncodeError):
        asyncio.run(optimizer.optimize_single(source))

    outcome = asyncio.run(optimizer.optimize_batch([source]))
    assert outcome.files_processed == 0
    assert len(outcome.errors) == 1
    assert "no raster output format" in outcome.errors[0].error


def test_optimize_directory_mirrors_tree(tmp_path, make_image):
    make_image("in/a.png")
    make_image("in/nested/b.jpg")
    make_image("in/out/stale.png")
    options = make_options(tmp_path, output_dir=tmp_path / "in" / "out", input_root=tmp_path / "in")

    outcome = asyncio.run(ImageOptimizer(options).optimize_directory(tmp_path / "in"))
    assert outcome.files_processed == 2
    out = (tmp_path / "in" / "out").resolve()
    assert (out / "a.webp").is_file()
    assert (out / "nested" / "b.webp").is_file()
    assert not (out / "stale.webp").exists()


def test_optimize_directory_requires_directory(tmp_path):
    with pytest.raises(NotADirectoryError):
        asyncio.run(ImageOptimizer(make_options(tmp_path)).optimize_directory(tmp_path / "nope"))


def test_svg_is_minified(tmp_path):
    source = tmp_path / "icon.svg"
    source.write_text('<svg>\n  <!-- c -->\n  <path d="M 0.123456 1"/>\n</svg>\n')
    record = asyncio.run(ImageOptimizer(make_options(tmp_path)).optimize_single(source))
    artifact = record.optimized[0]
    assert artifact.format == "svg"
    assert artifact.path.read_text() == '<svg><path d="M 0.12 1"/></svg>'
    assert record.savings.bytes > 0


def write_codebase(tmp_path, make_image):
    make_image("site/src/assets/logo.png", size=(40, 40))
    make_image("site/src/assets/hero.jpg", size=(80, 60))
    app = tmp_path / "site" / "src" / "App.jsx"
    app.write_text(
        "import logo from './assets/logo.png';\n"
        "const remote = 'x';\n"
        "export const Hero = () => <img src={'./assets/hero.jpg'} />;\n"
        "const cdn = require('https://cdn.example.com/a.png');\n"
        "const gone = require('./assets/missing.png');\n"
    )
    styles = tmp_path / "site" / "src" / "site.css"
    styles.write_text(".hero { background-image: url('./assets/hero.jpg'); }\n")
    return app, styles


def test_convert_codebase_rewrites_references(tmp_path, make_image):
    app, styles = write_codebase(tmp_path, make_image)
    options = make_options(
        tmp_path,
        output_dir=tmp_path / "site" / "public" / "optimized",
        update_codebase=True,
        codebase_root=tmp_path / "site",
        rewrite_format="webp",
    )
    outcome = asyncio.run(ImageOptimizer(options).convert_codebase())

    assert outcome.scanned_files == 2
    # import, src, remote require, missing require, plus url and background in the stylesheet
    assert outcome.image_references == 6
    assert outcome.unique_images == 3
    assert outcome.converted_images == 2
    assert outcome.updated_files == 2
    assert outcome.errors == ()

    lines = app.read_text().splitlines()
    assert lines[0] == "import logo from '../public/optimized/src/assets/logo.webp';"
    assert lines[1] == "const remote = 'x';"
    assert lines[2] == "export const Hero = () => <img src={'../public/optimized/src/assets/hero.webp'} />;"
    assert lines[3] == "const cdn = require('https://cdn.example.com/a.png');"
    assert lines[4] == "const gone = require('./assets/missing.png');"
    assert styles.read_text() == ".hero { background-image: url('../public/optimized/src/assets/hero.webp'); }\n"


def test_convert_reports_missing_rewrite_format(tmp_path, make_image):
    app, _ = write_codebase(tmp_path, make_image)
    before = app.read_text()
    options = make_options(
        tmp_path,
        output_dir=tmp_path / "site" / "public" / "optimized",
        update_codebase=True,
        codebase_root=tmp_path / "site",
        rewrite_format="png",
    )
    outcome = asyncio.run(ImageOptimizer(options).convert_codebase())
    assert outcome.converted_images == 0
    assert outcome.updated_files == 0
    assert len(outcome.errors) == 4
    assert app.read_text() == before


def test_convert_keeps_same_stem_images_apart(tmp_path, make_image):
    make_image("site/src/a/logo.png", color=(200, 30, 30))
    make_image("site/src/b/logo.png", color=(30, 30, 200))
    app = tmp_path / "site" / "src" / "App.jsx"
    app.write_text("import red from './a/logo.png';\nimport blue from './b/logo.png';\n")
    options = make_options(
        tmp_path,
        output_dir=tmp_path / "site" / "public",
        formats=("png",),
        update_codebase=True,
        codebase_root=tmp_path / "site",
    )
    outcome = asyncio.run(ImageOptimizer(options).convert_codebase())

    assert outcome.converted_images == 2
    assert outcome.errors == ()
    assert app.read_text().splitlines() == [
        "import red from '../public/src/a/logo.png';",
        "import blue from '../public/src/b/logo.png';",
    ]
    public = tmp_path / "site" / "public" / "src"
    with Image.open(public / "a" / "logo.png") as image:
        red, _, blue = image.convert("RGB").getpixel((0, 0))
        assert red > 150 and blue < 80
    with Image.open(public / "b" / "logo.png") as image:
        red, _, blue = image.convert("RGB").getpixel((0, 0))
        assert blue > 150 and red < 80


def test_convert_requires_flag(tmp_path):
    optimizer = ImageOptimizer(make_options(tmp_path, codebase_root=tmp_path))
    with pytest.raises(ConfigError):
        asyncio.run(optimizer.convert_codebase())


def test_convert_requires_existing_root(tmp_path):
    options = make_options(tmp_path, update_codebase=True, codebase_root=tmp_path / "missing")
    with pytest.raises(ConfigError):
        asyncio.run(ImageOptimizer(options).convert_codebase())


def test_output_files_decode(tmp_path, make_image):
    source = make_image("check.jpg", size=(30, 20))
    record = asyncio.run(ImageOptimizer(make_options(tmp_path, formats=("png",))).optimize_single(source))
    with Image.open(record.optimized[0].path) as image:
        assert image.format == "PNG"
        assert image.size == (30, 20)
