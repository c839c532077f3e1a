from __future__ import annotations

from io import BytesIO
from typing import Iterable, Sequence

from flask import current_app
from PIL import Image, ImageColor, ImageDraw, ImageFont
from PyPDF2 import PdfReader, PdfWriter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .fields import BulkRow, Field

_FONT_PATHS = {
    "serif": "/usr/share/fonts/truetype/dejavu/DejaVuSerif-Bold.ttf",
    "sans-serif": "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "monospace": "/usr/share/fonts/truetype/dejavu/DejaVuSansMono-Bold.ttf",
    "cursive": "/usr/share/fonts/truetype/dejavu/DejaVuSerif-BoldItalic.ttf",
    "fantasy": "/usr/share/fonts/truetype/dejavu/DejaVuSans-BoldOblique.ttf",
}
_DEFAULT_FONT_PATH = "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"

# Text boxes are fontSize * 1.2 tall and hang 0.75 of that above the anchor.
_LINE_HEIGHT = 1.2
_VERTICAL_OFFSET = 0.75
_PDF_TEXT_FONT = "Helvetica"


class RenderError(RuntimeError):
    """Raised when a template cannot be rasterized into a certificate."""


def merge_row(fields: Iterable[Field], row: BulkRow) -> list[Field]:
    """Copy of ``fields`` carrying the row's cell values (blank when unset)."""
    return [f.with_value(row.get(f.id)) for f in fields]


def _load_font(family: str, size_px: int):
    path = _FONT_PATHS.get(family) or _DEFAULT_FONT_PATH
    try:
        return ImageFont.truetype(path, max(size_px, 1))
    except OSError:
        pass
    try:
        return ImageFont.truetype(_DEFAULT_FONT_PATH, max(size_px, 1))
    except OSError:
        current_app.logger.warning("[RENDER] font %s unavailable; using Pillow default font", family)
        return ImageFont.load_default()


def _open_template(template_path: str) -> Image.Image:
    try:
        with Image.open(template_path) as source:
            source.load()
            if source.mode in ("RGBA", "LA", "P"):
                rgba = source.convert("RGBA")
                background = Image.new("RGB", rgba.size, "white")
                background.paste(rgba, mask=rgba.split()[-1])
                return background
            return source.convert("RGB")
    except (OSError, ValueError) as exc:
        raise RenderError(f"Failed to load template image: {exc}") from exc


def _text_origin(field: Field, text_width: float) -> tuple[float, float]:
    """Top-left corner of the text box for a field anchored at (x, y)."""
    if field.text_align == "left":
        left = field.x
    elif field.text_align == "right":
        left = field.x - text_width
    else:
        left = field.x - text_width / 2
    top = field.y - field.font_size * _LINE_HEIGHT * _VERTICAL_OFFSET
    return left, top


def _drawn_fields(fields: Iterable[Field]) -> list[Field]:
    return [f for f in fields if f.show_in_preview and f.value.strip()]


def render_certificate_image(template_path: str, fields: Sequence[Field]) -> Image.Image:
    image = _open_template(template_path)
    draw = ImageDraw.Draw(image)
    for field in _drawn_fields(fields):
        font = _load_font(field.font_family, field.font_size)
        bbox = draw.textbbox((0, 0), field.value, font=font)
        left, top = _text_origin(field, bbox[2] - bbox[0])
        fill = ImageColor.getrgb(field.color)
        stroke = max(1, field.font_size // 32) if isinstance(font, ImageFont.FreeTypeFont) else 0
        draw.text(
            (int(round(left - bbox[0])), int(round(top))),
            field.value,
            font=font,
            fill=fill,
            stroke_width=stroke,
            stroke_fill=fill,
        )
    return image


def _stamp_metadata(pdf_bytes: bytes, metadata: dict) -> bytes:
    reader = PdfReader(BytesIO(pdf_bytes))
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    writer.add_metadata({f"/{key}": str(value) for key, value in metadata.items()})
    out = BytesIO()
    writer.write(out)
    return out.getvalue()


def render_certificate_pdf(
    template_path: str, fields: Sequence[Field], metadata: dict | None = None
) -> bytes:
    """Render one certificate as a single-page PDF sized to the template.

    The page carries the rasterized certificate plus an invisible text layer
    with every drawn value, so the output stays searchable. ``metadata`` is
    written to the document info dictionary (keys without the leading slash).
    """
    image = render_certificate_image(template_path, fields)
    width, height = image.size

    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(width, height))
    c.drawImage(ImageReader(image), 0, 0, width=width, height=height)

    text = c.beginText()
    text.setTextRenderMode(3)
    for field in _drawn_fields(fields):
        text_width = c.stringWidth(field.value, _PDF_TEXT_FONT, field.font_size)
        left, top = _text_origin(field, text_width)
        baseline = top + field.font_size
        text.setFont(_PDF_TEXT_FONT, field.font_size)
        text.setTextOrigin(left, height - baseline)
        text.textOut(field.value)
    c.drawText(text)
    c.showPage()
    c.save()

    pdf_bytes = buffer.getvalue()
    if metadata:
        pdf_bytes = _stamp_metadata(pdf_bytes, metadata)
    return pdf_bytes


def read_pdf_metadata(data: bytes) -> dict:
    """Document info entries of a PDF, keys without the leading slash."""
    reader = PdfReader(BytesIO(data))
    info = reader.metadata or {}
    return {str(key).lstrip("/"): str(value) for key, value in info.items()}
