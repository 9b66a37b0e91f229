"""DOCX text extraction using python-docx."""

from __future__ import annotations

import io
import logging

from docx import Document as open_docx

from case_rag.exceptions import TextExtractionError
from case_rag.parsers.base import Parser

logger = logging.getLogger(__name__)


class DocxParser(Parser):
    """Paragraph text followed by table rows (cells joined with `` | ``)."""

    @property
    def supported_types(self) -> list[str]:
        return ["docx"]

    def extract(self, data: bytes) -> str:
        try:
            doc = open_docx(io.BytesIO(data))
        except Exception as exc:  # zipfile / lxml errors on corrupt input
            raise TextExtractionError("docx", str(exc) or type(exc).__name__) from exc

        parts = [p.text for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    parts.append(" | ".join(cells))
        return "\n".join(parts)
