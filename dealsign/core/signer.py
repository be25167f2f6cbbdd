# ------------------------------------------------------------------------
# File: signer.py
# Location: dealsign/core/signer.py
# Description:
#     Burns a signature mark (drawn image or typed name) and a translucent
#     watermark into a PDF. Each page that needs drawing gets a reportlab
#     overlay sized to that page, merged onto the original with pypdf.
#     Every failure is raised as PdfProcessingError naming its stage.
# ------------------------------------------------------------------------

import base64
import binascii
import io
import re
from collections import namedtuple
from datetime import datetime, timezone

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from dealsign.core.errors import InvalidRequest, PdfProcessingError
from dealsign.core.placement import compute_placement, deep_merge, default_placement
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(name="dealsign.signer", logfile="dealsign.log", level=None)

PDF_MAGIC = b"%PDF-"
IMAGE_FORMATS = ("PNG", "JPEG")
SIGNATURE_FONT = "Times-Italic"
MAX_TYPED_FONT_SIZE = 24.0
WATERMARK_FONT = "Helvetica-Bold"
WATERMARK_OPACITY = 0.3
WATERMARK_GRAY = 0.75

SignedDocument = namedtuple("SignedDocument", ["pdf_bytes", "original_size", "signed_size", "placement"])


def decode_image_data(image_data) -> bytes:
    """Accept raw bytes, plain base64 or a data URL and return image bytes."""
    if isinstance(image_data, (bytes, bytearray)):
        return bytes(image_data)

    b64_data = (image_data or "").strip()
    match = re.match(r"^data:.*?;base64,(.+)$", b64_data, re.IGNORECASE | re.DOTALL)
    if match:
        b64_data = match.group(1).strip()

    b64_clean = re.sub(r"[^A-Za-z0-9+/=]", "", b64_data)
    missing_padding = len(b64_clean) % 4
    if missing_padding:
        b64_clean += "=" * (4 - missing_padding)

    try:
        return base64.b64decode(b64_clean, validate=True)
    except (binascii.Error, ValueError) as decode_err:
        raise PdfProcessingError("embed", "signature image is not valid base64") from decode_err


def open_signature_image(image_bytes: bytes) -> Image.Image:
    """Try PNG first, then JPEG; anything else is unsupported."""
    for fmt in IMAGE_FORMATS:
        try:
            img = Image.open(io.BytesIO(image_bytes), formats=[fmt])
            img.load()
            logger.debug("Signature image decoded as %s (%sx%s)", fmt, img.width, img.height)
            return img.convert("RGBA") if fmt == "PNG" else img.convert("RGB")
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
            continue
    raise PdfProcessingError("embed", "unsupported signature image format, expected PNG or JPEG")


def fit_image(src_width: float, src_height: float, box: dict):
    """Uniform scale into the box, centred. Returns (x, y, width, height)."""
    scale = min(box["width"] / src_width, box["height"] / src_height)
    width, height = src_width * scale, src_height * scale
    x = box["x"] + (box["width"] - width) / 2
    y = box["y"] + (box["height"] - height) / 2
    return x, y, width, height


def typed_font_size(text: str, box: dict, font: str = SIGNATURE_FONT) -> float:
    size = min(0.6 * box["height"], MAX_TYPED_FONT_SIZE)
    text_width = pdfmetrics.stringWidth(text, font, size)
    if text_width > box["width"]:
        size = size * box["width"] / text_width
    return size


def load_pdf(pdf_bytes: bytes) -> PdfReader:
    if not pdf_bytes or not bytes(pdf_bytes[:1024]).lstrip().startswith(PDF_MAGIC):
        raise PdfProcessingError("load", "input is not a PDF document")
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        if len(reader.pages) == 0:
            raise PdfProcessingError("load", "PDF has no pages")
        return reader
    except PdfProcessingError:
        raise
    except Exception as e:
        raise PdfProcessingError("load", str(e)) from e


def _page_geometry(page):
    box = page.mediabox
    return float(box.left), float(box.bottom), float(box.width), float(box.height)


def _overlay_canvas(page):
    left, bottom, width, height = _page_geometry(page)
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=(left + width, bottom + height))
    return buffer, c


def _merge_overlay(page, buffer, c):
    c.save()
    buffer.seek(0)
    page.merge_page(PdfReader(buffer).pages[0])


def _write(writer: PdfWriter) -> bytes:
    try:
        out = io.BytesIO()
        writer.write(out)
        return out.getvalue()
    except Exception as e:
        raise PdfProcessingError("save", str(e)) from e


def embed_signature(
    pdf_bytes: bytes,
    document_type: str,
    image_data=None,
    typed_text: str = None,
    placement_override: dict = None,
    signer_name: str = None,
    font: str = None,
):
    """
    Place the mark in the document's signature box. When both an image and
    typed text are supplied the image is drawn. Returns (bytes, placement).
    """
    if not image_data and not (typed_text and typed_text.strip()):
        raise PdfProcessingError("embed", "no signature image or typed signature supplied")

    reader = load_pdf(pdf_bytes)

    requested_page = deep_merge(default_placement(document_type), placement_override).get("page", 1)
    try:
        page_index = min(max(int(requested_page), 1), len(reader.pages)) - 1
    except (TypeError, ValueError, OverflowError):
        raise InvalidRequest("Placement page must be an integer")
    page = reader.pages[page_index]
    left, bottom, page_width, page_height = _page_geometry(page)
    placement = compute_placement(document_type, page_width, page_height, placement_override)
    placement["page"] = page_index + 1

    # placement is top-left based; PDF space is bottom-left based
    box = {
        "x": left + placement["x"],
        "y": bottom + page_height - placement["y"] - placement["height"],
        "width": placement["width"],
        "height": placement["height"],
    }

    try:
        buffer, c = _overlay_canvas(page)
        if image_data:
            img = open_signature_image(decode_image_data(image_data))
            x, y, width, height = fit_image(img.width, img.height, box)
            c.drawImage(ImageReader(img), x, y, width=width, height=height, mask="auto")
        else:
            font = font if font in pdfmetrics.getRegisteredFontNames() or font in pdfmetrics.standardFonts else SIGNATURE_FONT
            text = typed_text.strip()
            size = typed_font_size(text, box, font)
            text_width = pdfmetrics.stringWidth(text, font, size)
            ascent, descent = pdfmetrics.getAscentDescent(font, size)
            x = box["x"] + (box["width"] - text_width) / 2
            baseline = box["y"] + (box["height"] - (ascent - descent)) / 2 - descent
            c.setFont(font, size)
            c.drawString(x, baseline, text)
        _merge_overlay(page, buffer, c)
    except PdfProcessingError:
        raise
    except Exception as e:
        logger.exception("Error embedding signature on PDF.")
        raise PdfProcessingError("embed", str(e)) from e

    writer = PdfWriter()
    for p in reader.pages:
        writer.add_page(p)
    writer.add_metadata({
        "/Author": signer_name or "Unknown",
        "/Subject": f"Signed by {signer_name or 'Unknown'}",
    })
    return _write(writer), placement


def apply_watermark(pdf_bytes: bytes, label: str = "SIGNED", timestamp: datetime = None) -> bytes:
    """Centre a light-grey, 30% opaque "<label> <timestamp>" on every page."""
    reader = load_pdf(pdf_bytes)
    timestamp = timestamp or datetime.now(timezone.utc)
    text = f"{label} {timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC"

    writer = PdfWriter()
    try:
        for page in reader.pages:
            left, bottom, width, height = _page_geometry(page)
            size = max(8.0, min(36.0, min(width, height) / 20))
            buffer, c = _overlay_canvas(page)
            c.setFillGray(WATERMARK_GRAY)
            c.setFillAlpha(WATERMARK_OPACITY)
            c.setFont(WATERMARK_FONT, size)
            c.drawCentredString(left + width / 2, bottom + height / 2 - size / 2, text)
            _merge_overlay(page, buffer, c)
            writer.add_page(page)
    except Exception as e:
        logger.exception("Error applying watermark.")
        raise PdfProcessingError("watermark", str(e)) from e
    return _write(writer)


def create_signed_document(
    pdf_bytes: bytes,
    document_type: str,
    image_data=None,
    typed_text: str = None,
    placement_override: dict = None,
    signer_name: str = None,
    watermark_label: str = "SIGNED",
    timestamp: datetime = None,
    font: str = None,
) -> SignedDocument:
    """Embed the mark, watermark every page and report before/after sizes."""
    logger.info("Creating signed %s document (%d bytes)", document_type, len(pdf_bytes or b""))
    signed, placement = embed_signature(
        pdf_bytes,
        document_type,
        image_data=image_data,
        typed_text=typed_text,
        placement_override=placement_override,
        signer_name=signer_name,
        font=font,
    )
    final = apply_watermark(signed, watermark_label, timestamp)
    logger.info("Signed document created: %d -> %d bytes", len(pdf_bytes), len(final))
    return SignedDocument(final, len(pdf_bytes), len(final), placement)
