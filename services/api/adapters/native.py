# services/api/adapters/native.py

from __future__ import annotations
import io
import logging
import os

import pypdfium2 as pdfium
from PIL import Image

logger = logging.getLogger(__name__)

# PIL save() format names
_PIL_FORMATS = {"webp": "WEBP", "png": "PNG", "jpeg": "JPEG", "jpg": "JPEG"}


class PdfiumRenderingWorker:
    """
    Native rendering worker backed by python-pdfium2 + Pillow.

    Pages are 1-based on this interface; pdfium indexes from 0.
    """

    def __init__(self, image_format: str = "webp", quality: int = 85):
        fmt = image_format.lower()
        if fmt not in _PIL_FORMATS:
            raise ValueError(f"Unsupported image format: {image_format}")
        self.image_format = fmt
        self.quality = quality

    def is_available(self) -> bool:
        return True

    def get_page_count(self, file_path: str) -> int:
        doc = self._open(file_path)
        try:
            return len(doc)
        finally:
            doc.close()

    def render_page(self, file_path: str, page_number: int, dpi: int) -> bytes:
        doc = self._open(file_path)
        try:
            page = doc[self._index(doc, page_number)]
            try:
                # pdfium renders at 72 dpi for scale=1.0
                pil_page: Image.Image = page.render(scale=dpi / 72.0).to_pil()
            finally:
                page.close()
        finally:
            doc.close()
        return self._encode(pil_page)

    def extract_text(self, file_path: str, page_number: int) -> str:
        doc = self._open(file_path)
        try:
            page = doc[self._index(doc, page_number)]
            textpage = page.get_textpage()
            try:
                return textpage.get_text_range() or ""
            finally:
                textpage.close()
                page.close()
        finally:
            doc.close()

    # ---------- helpers ----------

    def _open(self, file_path: str) -> pdfium.PdfDocument:
        if not os.path.isfile(file_path):
            raise FileNotFoundError(file_path)
        return pdfium.PdfDocument(file_path)

    @staticmethod
    def _index(doc: pdfium.PdfDocument, page_number: int) -> int:
        if page_number < 1 or page_number > len(doc):
            raise ValueError(f"Page {page_number} out of range (1..{len(doc)})")
        return page_number - 1

    def _encode(self, img: Image.Image) -> bytes:
        buf = io.BytesIO()
        pil_fmt = _PIL_FORMATS[self.image_format]
        if pil_fmt == "JPEG" and img.mode != "RGB":
            img = img.convert("RGB")
        img.save(buf, format=pil_fmt, quality=self.quality)
        data = buf.getvalue()
        logger.debug("Encoded page image: %s bytes (%s)", len(data), self.image_format)
        return data
