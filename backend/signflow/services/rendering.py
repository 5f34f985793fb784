from __future__ import annotations

import base64
import binascii
import io
import logging
from collections import defaultdict
from typing import Any, Mapping, Sequence

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from signflow.models.document import DocumentField, FieldType

logger = logging.getLogger("signflow.executor")

IMAGE_FIELD_TYPES = {FieldType.SIGNATURE.value, FieldType.INITIALS.value}


class RenderingError(ValueError):
    pass


def _decode_data_url(value: str) -> bytes | None:
    if not value.startswith("data:image/"):
        return None
    _, _, payload = value.partition(",")
    if not payload:
        return None
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


def field_box(field: DocumentField, page_width: float, page_height: float) -> tuple[float, float, float, float]:
    """Normalised top-left box to PDF user space (bottom-left origin), clamped to the page."""
    width = max(float(field.w or 0.01), 0.01) * page_width
    height = max(float(field.h or 0.01), 0.01) * page_height
    x = max(float(field.x or 0.0), 0.0) * page_width
    x = min(max(0.0, x), max(0.0, page_width - width))
    y = page_height - float(field.y or 0.0) * page_height - height
    y = min(max(0.0, y), max(0.0, page_height - height))
    return x, y, width, height


class PdfStampRenderer:
    """Flattens captured field values onto the source PDF."""

    text_font = "Helvetica"
    signature_font = "Times-Italic"

    def render_executed(
        self,
        source_bytes: bytes,
        fields: Sequence[DocumentField],
        merged_values: Mapping[str, Any],
    ) -> bytes:
        try:
            reader = PdfReader(io.BytesIO(source_bytes))
            pages = list(reader.pages)
        except (PdfReadError, ValueError, OSError) as exc:
            raise RenderingError(f"Source document is not a readable PDF: {exc}") from exc

        page_fields: dict[int, list[tuple[DocumentField, Any]]] = defaultdict(list)
        for field in fields:
            value = merged_values.get(str(field.id))
            if value is None or value is False or value == "":
                continue
            if field.page_index >= len(pages):
                logger.warning("Field %s points at missing page %s; skipped", field.id, field.page_index)
                continue
            page_fields[field.page_index].append((field, value))

        writer = PdfWriter()
        for page_index, page in enumerate(pages):
            entries = page_fields.get(page_index)
            if entries:
                width = float(page.mediabox.width)
                height = float(page.mediabox.height)
                overlay_stream = io.BytesIO()
                c = canvas.Canvas(overlay_stream, pagesize=(width, height))
                for field, value in entries:
                    self._draw_field(c, page_width=width, page_height=height, field=field, value=value)
                c.save()
                overlay_stream.seek(0)
                page.merge_page(PdfReader(overlay_stream).pages[0])
            writer.add_page(page)

        output = io.BytesIO()
        writer.write(output)
        return output.getvalue()

    def _draw_field(
        self,
        overlay: canvas.Canvas,
        *,
        page_width: float,
        page_height: float,
        field: DocumentField,
        value: Any,
    ) -> None:
        x, y, width, height = field_box(field, page_width, page_height)
        kind = (field.field_type or "").strip().lower()

        if kind == FieldType.CHECKBOX.value:
            if value is True:
                self._draw_check(overlay, x, y, width, height)
            return

        text = value if isinstance(value, str) else str(value)
        if kind in IMAGE_FIELD_TYPES:
            image_bytes = _decode_data_url(text.strip())
            if image_bytes:
                try:
                    reader = ImageReader(io.BytesIO(image_bytes))
                    overlay.drawImage(reader, x, y, width=width, height=height, preserveAspectRatio=True, mask="auto")
                    return
                except (OSError, ValueError):
                    logger.warning("Unreadable image for field %s; skipped", field.id)
                    return
            self._draw_text(overlay, text.strip(), x, y, width, height, self.signature_font, centred=True)
            return

        self._draw_text(overlay, text.strip(), x, y, width, height, self.text_font, centred=False)

    @staticmethod
    def _draw_check(overlay: canvas.Canvas, x: float, y: float, width: float, height: float) -> None:
        size = min(width, height)
        left = x + (width - size) / 2
        bottom = y + (height - size) / 2
        overlay.setStrokeColor(colors.HexColor("#111827"))
        overlay.setLineWidth(max(1.0, size * 0.12))
        overlay.line(left + size * 0.15, bottom + size * 0.5, left + size * 0.4, bottom + size * 0.2)
        overlay.line(left + size * 0.4, bottom + size * 0.2, left + size * 0.85, bottom + size * 0.85)

    @staticmethod
    def _draw_text(
        overlay: canvas.Canvas,
        text: str,
        x: float,
        y: float,
        width: float,
        height: float,
        font_name: str,
        centred: bool,
    ) -> None:
        if not text:
            return
        font_size = max(6, min(24, height * 0.6))
        text_width = pdfmetrics.stringWidth(text, font_name, font_size)
        while text_width > width and font_size > 6:
            font_size -= 1
            text_width = pdfmetrics.stringWidth(text, font_name, font_size)
        overlay.setFont(font_name, font_size)
        overlay.setFillColor(colors.HexColor("#111827"))
        baseline = y + (height - font_size) / 2 + font_size * 0.2
        if centred:
            overlay.drawCentredString(x + width / 2, baseline, text)
        else:
            overlay.drawString(x + 2, baseline, text)
