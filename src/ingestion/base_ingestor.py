# src/ingestion/base_ingestor.py — v1
"""Abstract document ingestor interface.

Turns a raw document buffer into text plus tables. Real deployments plug
in PDF/OCR/spreadsheet parsers here; the pipeline only depends on this
contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from dealintake.core.models import ParsedDocument


class BaseIngestor(ABC):
    """Unified interface for raw document parsers."""

    @property
    @abstractmethod
    def supported_extensions(self) -> list[str]:
        """File extensions this ingestor handles (e.g., ['.csv'])."""

    @abstractmethod
    async def parse(self, raw_bytes: bytes, filename: str) -> ParsedDocument:
        """Parse a raw buffer.

        Raises:
            UnsupportedFormat: If the buffer cannot be parsed.
        """
