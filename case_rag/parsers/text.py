"""Plain text and Markdown uploads."""

from __future__ import annotations

from case_rag.exceptions import TextExtractionError
from case_rag.parsers.base import Parser


class TextParser(Parser):
    @property
    def supported_types(self) -> list[str]:
        return ["txt", "md", "markdown", "text"]

    def extract(self, data: bytes) -> str:
        try:
            # utf-8-sig drops a leading BOM
            return data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise TextExtractionError("txt", f"not valid UTF-8 ({exc.reason})") from exc
