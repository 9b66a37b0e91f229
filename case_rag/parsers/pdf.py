"""PDF text extraction using pdfplumber."""

from __future__ import annotations

import io
import logging

import pdfplumber

from case_rag.exceptions import TextExtractionError
from case_rag.parsers.base import Parser

logger = logging.getLogger(__name__)


class PDFParser(Parser):
    """Extracts text page by page; pages are separated by a blank line."""

    @property
    def supported_types(self) -> list[str]:
        return ["pdf"]

    def extract(self, data: bytes) -> str:
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                pages = [page.extract_text() or "" for page in pdf.pages]
        except Exception as exc:  # pdfminer raises a zoo of exception types
            raise TextExtractionError("pdf", str(exc) or type(exc).__name__) from exc
        logger.debug("Extracted %d PDF pages.", len(pages))
        return "\n\n".join(p.strip() for p in pages if p.strip())
