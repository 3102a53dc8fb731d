from __future__ import annotations

from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

MAX_FONT_SIZE = 48
MIN_FONT_SIZE = 20
SUBTEXT_SCALE = 0.6
LINE_HEIGHT_FACTOR = 1.2
PADDING_X = 40
PADDING_Y = 30
CORNER_RADIUS = 25
MAX_WIDTH = 1000
BACKGROUND = (0, 0, 0, 128)
FOREGROUND = (255, 255, 255, 255)


def truncate_title(title: str, word_limit: int = 15) -> str:
    words = title.split()
    suffix = "..." if len(words) > word_limit else ""
    return " ".join(words[:word_limit]) + suffix


def _load_font(font_path: str | Path | None, size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    if font_path:
        return ImageFont.truetype(str(font_path), size)
    return ImageFont.load_default(size=size)


def _wrap(draw: ImageDraw.ImageDraw, text: str, font, max_width: float) -> list[str]:
    lines: list[str] = []
    current = ""
    for word in text.split():
        probe = f"{current} {word}" if current else word
        if draw.textlength(probe, font=font) < max_width:
            current = probe
        else:
            if current:
                lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def create_text_image(
    text: str,
    output_path: str | Path,
    *,
    subtext: str | None = None,
    font_path: str | Path | None = None,
) -> Path:
    """Rasterize a title (and optional subtext) on a rounded translucent plate.

    The font shrinks in 2px steps until the widest line fits ``MAX_WIDTH``.
    """

    scratch = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    inner_width = MAX_WIDTH - 2 * PADDING_X

    font_size = MAX_FONT_SIZE
    while True:
        font = _load_font(font_path, font_size)
        sub_font = _load_font(font_path, max(int(font_size * SUBTEXT_SCALE), 1))
        main_lines = _wrap(scratch, text, font, inner_width) or [""]
        sub_lines = _wrap(scratch, subtext, sub_font, inner_width) if subtext else []
        widest = max(scratch.textlength(line, font=font) for line in main_lines)
        if sub_lines:
            widest = max(widest, max(scratch.textlength(line, font=sub_font) for line in sub_lines))
        if widest + 2 * PADDING_X <= MAX_WIDTH or font_size <= MIN_FONT_SIZE:
            break
        font_size -= 2

    main_line_height = font_size * LINE_HEIGHT_FACTOR
    sub_line_height = font_size * SUBTEXT_SCALE * LINE_HEIGHT_FACTOR
    text_height = len(main_lines) * main_line_height
    if sub_lines:
        text_height += len(sub_lines) * sub_line_height + sub_line_height * 0.5

    canvas_width = max(int(round(widest)) + 2 * PADDING_X, 2)
    canvas_height = max(int(round(text_height)) + 2 * PADDING_Y, 2)

    image = Image.new("RGBA", (canvas_width, canvas_height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(image)
    draw.rounded_rectangle(
        (0, 0, canvas_width - 1, canvas_height - 1),
        radius=CORNER_RADIUS,
        fill=BACKGROUND,
    )

    y = PADDING_Y + main_line_height / 2
    for line in main_lines:
        draw.text((canvas_width / 2, y), line, font=font, fill=FOREGROUND, anchor="mm")
        y += main_line_height
    if sub_lines:
        y += sub_line_height * 0.5
        for line in sub_lines:
            draw.text((canvas_width / 2, y), line, font=sub_font, fill=FOREGROUND, anchor="mm")
            y += sub_line_height

    destination = Path(output_path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    image.save(destination, format="PNG")
    return destination
