from __future__ import annotations

from pathlib import Path

from PIL import Image

from feedreel.render.overlay import MAX_WIDTH, create_text_image, truncate_title


def test_truncate_title_limits_words() -> None:
    title = " ".join(f"w{i}" for i in range(20))

    assert truncate_title(title) == " ".join(f"w{i}" for i in range(15)) + "..."
    assert truncate_title("short title") == "short title"


def test_create_text_image_writes_translucent_png(tmp_path: Path) -> None:
    output = create_text_image("Cat jumps over fence", tmp_path / "nested" / "title.png", subtext="u/someone")

    assert output.is_file()
    with Image.open(output) as image:
        assert image.format == "PNG"
        assert image.mode == "RGBA"
        assert image.width <= MAX_WIDTH
        assert image.getpixel((0, 0))[3] == 0
        assert image.getpixel((image.width // 2, 2))[3] == 128


def test_long_titles_wrap_within_max_width(tmp_path: Path) -> None:
    text = " ".join(["compilation"] * 40)

    output = create_text_image(text, tmp_path / "long.png")

    with Image.open(output) as image:
        assert image.width <= MAX_WIDTH
        assert image.height > 100
