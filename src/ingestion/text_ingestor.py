# src/ingestion/text_ingestor.py — v1
"""Text and delimited-table ingestor (.txt, .md, .csv, .tsv, .json)."""

from __future__ import annotations

import csv
import io
import json
from pathlib import PurePath

from dealintake.core.errors import UnsupportedFormat
from dealintake.core.models import ParsedDocument
from dealintake.ingestion.base_ingestor import BaseIngestor

_MIME_TYPES: dict[str, str] = {
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    ".tsv": "text/tab-separated-values",
    ".json": "application/json",
}


class TextIngestor(BaseIngestor):
    """Decode UTF-8 documents; delimited files are also split into a table."""

    @property
    def supported_extensions(self) -> list[str]:
        return list(_MIME_TYPES)

    async def parse(self, raw_bytes: bytes, filename: str) -> ParsedDocument:
        ext = PurePath(filename).suffix.lower()
        if ext not in _MIME_TYPES:
            raise UnsupportedFormat(
                f"Unsupported format {ext or '<none>'!r} for {filename}. "
                f"Supported: {', '.join(sorted(_MIME_TYPES))}"
            )
        try:
            text = raw_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise UnsupportedFormat(f"{filename} is not valid UTF-8: {exc}") from exc

        tables: list[list[list[str]]] = []
        if ext in (".csv", ".tsv"):
            delimiter = "\t" if ext == ".tsv" else ","
            rows = [row for row in csv.reader(io.StringIO(text), delimiter=delimiter) if row]
            if rows:
                tables.append(rows)
        elif ext == ".json":
            try:
                json.loads(text)
            except json.JSONDecodeError as exc:
                raise UnsupportedFormat(f"{filename} is not valid JSON: {exc}") from exc

        return ParsedDocument(text=text, tables=tables, mime_type=_MIME_TYPES[ext])
