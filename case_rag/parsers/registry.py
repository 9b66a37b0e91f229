"""Parser registry: dispatches uploads to the correct parser by file type."""

from __future__ import annotations

import logging
from pathlib import PurePath

from case_rag.exceptions import UnsupportedFormatError
from case_rag.parsers.base import Parser
from case_rag.parsers.pdf import PDFParser
from case_rag.parsers.text import TextParser
from case_rag.parsers.word import DocxParser

logger = logging.getLogger(__name__)

_PARSERS: list[Parser] = [
    TextParser(),
    PDFParser(),
    DocxParser(),
]

_MIME_TYPES = {
    "text/plain": "txt",
    "text/markdown": "md",
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
}


def normalize_file_type(file_type: str) -> str:
    """Map ``".PDF"``, ``"pdf"`` or ``"application/pdf"`` to ``"pdf"``."""
    value = file_type.strip().lower()
    if value in _MIME_TYPES:
        return _MIME_TYPES[value]
    return value.lstrip(".")


def file_type_from_name(filename: str) -> str:
    return normalize_file_type(PurePath(filename).suffix or filename)


def get_parser(file_type: str) -> Parser | None:
    """Find a parser that can handle the given file type."""
    ftype = normalize_file_type(file_type)
    for parser in _PARSERS:
        if parser.can_parse(ftype):
            return parser
    return None


def supported_types() -> list[str]:
    return sorted({t for p in _PARSERS for t in p.supported_types})


def extract_text(data: bytes, file_type: str) -> str:
    """Extract the text of an uploaded file.

    Raises:
        UnsupportedFormatError: no parser for *file_type*.
        TextExtractionError: the parser could not read the bytes.
    """
    parser = get_parser(file_type)
    if parser is None:
        logger.debug("No parser for file type %r", file_type)
        raise UnsupportedFormatError(file_type)
    return parser.extract(data)
