"""QR codes for participant check-in.

The QR encodes just the participant id. ``build_label_sheet_pdf`` lays labels
out on A4 in a grid (QR on top, big id and name underneath) for printing.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from io import BytesIO

import qrcode
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.lib.utils import ImageReader


def make_qr_png_bytes(text: str, box_size: int = 10, border: int = 2) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img: Image.Image = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    bio = BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()


def make_qr_data_url(text: str) -> str:
    return "data:image/png;base64," + base64.b64encode(make_qr_png_bytes(text)).decode("ascii")


@dataclass
class Label:
    code: str
    caption: str = ""


@dataclass
class SheetLayout:
    margin_mm: float = 10.0
    gap_mm: float = 4.0
    cols: int = 4
    rows: int = 5
    size_mm: float = 44.0
    qr_mm: float = 33.0
    font: str = "Helvetica-Bold"
    font_size: float = 14.0
    caption_font: str = "Helvetica"
    caption_font_size: float = 7.0

    def check(self) -> None:
        if self.qr_mm > self.size_mm:
            raise ValueError("qr_mm must be <= size_mm")
        page_w, page_h = A4
        usable_w = page_w - 2 * self.margin_mm * mm
        usable_h = page_h - 2 * self.margin_mm * mm
        needed_w = (self.cols * self.size_mm + (self.cols - 1) * self.gap_mm) * mm
        needed_h = (self.rows * self.size_mm + (self.rows - 1) * self.gap_mm) * mm
        if needed_w > usable_w + 1e-6 or needed_h > usable_h + 1e-6:
            raise ValueError(
                f"Grid does not fit on A4. "
                f"Needed: {needed_w/mm:.1f}x{needed_h/mm:.1f}mm, "
                f"Usable: {usable_w/mm:.1f}x{usable_h/mm:.1f}mm."
            )


def build_label_sheet_pdf(labels: list[Label], title: str = "Participant QR codes", layout: SheetLayout | None = None) -> bytes:
    layout = layout or SheetLayout()
    layout.check()

    page_w, page_h = A4
    margin = layout.margin_mm * mm
    gap = layout.gap_mm * mm
    label_size = layout.size_mm * mm
    qr_size = layout.qr_mm * mm

    out = BytesIO()
    c = canvas.Canvas(out, pagesize=A4)
    c.setTitle(title)

    def draw_label(x: float, y: float, label: Label):
        # (x, y) is the bottom-left of the label
        pad = 2 * mm
        qr_x = x + (label_size - qr_size) / 2
        qr_y = y + (label_size - qr_size) - pad - (layout.font_size * 0.4)

        img = ImageReader(BytesIO(make_qr_png_bytes(label.code)))
        c.drawImage(img, qr_x, qr_y, width=qr_size, height=qr_size, preserveAspectRatio=True, mask="auto")

        c.setFont(layout.font, layout.font_size)
        c.drawCentredString(x + label_size / 2, y + pad + layout.caption_font_size, label.code)
        if label.caption:
            c.setFont(layout.caption_font, layout.caption_font_size)
            c.drawCentredString(x + label_size / 2, y + pad / 2, label.caption[:40])

    per_page = layout.cols * layout.rows
    if not labels:
        c.showPage()
    for start in range(0, len(labels), per_page):
        page = labels[start:start + per_page]
        for idx, label in enumerate(page):
            r, col = divmod(idx, layout.cols)
            x = margin + col * (label_size + gap)
            # first row at the top of the usable area
            y = (page_h - margin - label_size) - r * (label_size + gap)
            draw_label(x, y, label)
        c.showPage()

    c.save()
    return out.getvalue()
