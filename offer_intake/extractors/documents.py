"""Document text extraction: PDF via pdfplumber, DOCX via its XML part."""

from __future__ import annotations

import io
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path
from typing import Any

import pdfplumber
import structlog

from ..errors import PermanentExternalError
from .base import BaseExtractor
from .images import NullOcr, OcrEngine

logger = structlog.get_logger()

_W_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"

# Pages with fewer characters than this are treated as scanned
MIN_PAGE_TEXT_CHARS = 20
OCR_RESOLUTION = 150


class DocumentExtractor(BaseExtractor):
    family = "document"
    extensions = (".pdf", ".docx", ".doc")

    def __init__(self, ocr: OcrEngine | None = None) -> None:
        self._ocr = ocr or NullOcr()

    def extract(self, path: Path, extension: str) -> tuple[str, dict[str, Any]]:
        ext = extension.lower()
        if ext == ".pdf":
            return self._extract_pdf(path)
        if ext == ".docx":
            return self._extract_docx(path)
        raise PermanentExternalError(f"unsupported legacy format: {ext}")

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    def _extract_pdf(self, path: Path) -> tuple[str, dict[str, Any]]:
        pages: list[str] = []
        ocr_pages: list[int] = []

        with pdfplumber.open(path) as pdf:
            for number, page in enumerate(pdf.pages, start=1):
                text = page.extract_text() or ""
                if len(text.strip()) < MIN_PAGE_TEXT_CHARS and not isinstance(self._ocr, NullOcr):
                    ocr_text = self._ocr_page(page)
                    if ocr_text.strip():
                        text = ocr_text
                        ocr_pages.append(number)
                pages.append(text)
            page_count = len(pdf.pages)

        logger.debug("pdf_extracted", file=path.name, pages=page_count, ocr_pages=ocr_pages)
        return "\n\n".join(pages), {"pages": page_count, "ocr_pages": ocr_pages}

    def _ocr_page(self, page: Any) -> str:
        buf = io.BytesIO()
        page.to_image(resolution=OCR_RESOLUTION).original.save(buf, format="PNG")
        return self._ocr.ocr(buf.getvalue(), "image/png")

    # ------------------------------------------------------------------
    # DOCX
    # ------------------------------------------------------------------

    def _extract_docx(self, path: Path) -> tuple[str, dict[str, Any]]:
        with zipfile.ZipFile(path) as zf:
            if "word/document.xml" not in zf.namelist():
                raise PermanentExternalError("invalid DOCX: missing word/document.xml")
            with zf.open("word/document.xml") as f:
                paragraphs: list[str] = []
                current: list[str] = []
                for _event, elem in ET.iterparse(f, events=("end",)):
                    if elem.tag == f"{_W_NS}t" and elem.text:
                        current.append(elem.text)
                    elif elem.tag == f"{_W_NS}tab":
                        current.append("\t")
                    elif elem.tag == f"{_W_NS}p":
                        paragraphs.append("".join(current))
                        current = []
                        elem.clear()

        text = "\n".join(p for p in paragraphs if p)
        return text, {"paragraphs": len(paragraphs)}
