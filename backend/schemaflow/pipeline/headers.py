from __future__ import annotations

import logging
from typing import Protocol

from schemaflow.models.uploaded_file import FileFormat
from schemaflow.services import parser as default_parser
from schemaflow.services.parser import ParsedPreview

logger = logging.getLogger(__name__)

RAW_PREFIX_SIZE = 4096


class Parser(Protocol):
    def preview_bytes(
        self, content: bytes, file_format: FileFormat, max_rows: int = 1
    ) -> ParsedPreview: ...


def synthetic_columns(count: int) -> list[str]:
    return [f"Column {index}" for index in range(1, count + 1)]


def split_raw_header(content: bytes) -> list[str]:
    """Best-effort header split; quoted or escaped commas come out wrong."""
    prefix = content[:RAW_PREFIX_SIZE].decode("utf-8-sig", errors="replace")
    first_line = prefix.splitlines()[0] if prefix.splitlines() else ""
    columns = [cell.strip().strip("\"'").strip() for cell in first_line.split(",")]
    return [column for column in columns if column]


class HeaderExtractor:
    """Derives the ordered column names of an upload without ever raising."""

    def __init__(self, parser: Parser = default_parser) -> None:
        self._parser = parser

    def extract(self, content: bytes, file_format: FileFormat) -> list[str]:
        try:
            preview = self._parser.preview_bytes(content, file_format, max_rows=1)
            return self._columns_from_preview(preview, file_format)
        except Exception as exc:
            logger.warning("parser failed to extract headers, reading raw prefix: %s", exc)

        if file_format == FileFormat.XLSX:
            # A zip container has no readable first line.
            return []
        try:
            return split_raw_header(content)
        except Exception as exc:
            logger.warning("raw header split failed: %s", exc)
            return []

    @staticmethod
    def _columns_from_preview(preview: ParsedPreview, file_format: FileFormat) -> list[str]:
        if file_format == FileFormat.XLSX and preview.rows:
            return [str(key) for key in preview.rows[0].keys()]
        return [header for header in preview.headers if header]
