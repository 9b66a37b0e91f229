"""Base parser interface for uploaded document formats."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Parser(ABC):
    """Turns the raw bytes of one file format into plain text."""

    @property
    @abstractmethod
    def supported_types(self) -> list[str]:
        """File types this parser handles, as bare extensions (e.g. ``['pdf']``)."""
        ...

    @abstractmethod
    def extract(self, data: bytes) -> str:
        """Return the document text.

        Raises:
            TextExtractionError: the bytes are not a readable file of this type.
        """
        ...

    def can_parse(self, file_type: str) -> bool:
        return file_type in self.supported_types
