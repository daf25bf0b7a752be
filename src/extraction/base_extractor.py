# src/extraction/base_extractor.py — v2
"""Abstract field extractor interface.

The extractor is the external black box of the pipeline: document text and
tables in, field proposals with confidences out. Implementations raise
``ProviderUnavailable`` for transient provider trouble and
``InvalidResponse`` for unusable output; anything else is classified by
message in the retry module.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from dealintake.core.models import ExtractionOutput
from dealintake.extraction.profiles import InstructionProfile
from dealintake.ingestion.classifier import classify_document


class BaseFieldExtractor(ABC):
    """Unified interface for field extraction providers."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def extract(
        self,
        document_type: str,
        text: str,
        tables: list[list[list[str]]],
        profile: InstructionProfile,
    ) -> ExtractionOutput:
        """Extract field proposals from one parsed document.

        ``source_document_id`` on returned fields may be left empty; the
        dispatcher stamps the owning document on every field.
        """

    async def detect_type(self, filename: str, text: str) -> str:
        """Detect the document type when the caller supplied none.

        The default uses the keyword classifier; providers with a cheaper
        model-based detector override this.
        """
        return classify_document(filename, text).document_type
