from __future__ import annotations

import codecs
import csv
import io
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import IO, Any

from openpyxl import load_workbook

from schemaflow.models.uploaded_file import FileFormat

SNIFF_SAMPLE_SIZE = 4096
ENCODING_SAMPLE_SIZE = 64 * 1024


class ParserError(Exception):
    pass


@dataclass
class ParsedPreview:
    headers: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)


def detect_format(filename: str) -> FileFormat:
    extension = Path(filename or "").suffix.lower()
    if extension == ".csv":
        return FileFormat.CSV
    if extension == ".xlsx":
        return FileFormat.XLSX
    return FileFormat.UNKNOWN


def preview_bytes(
    content: bytes,
    file_format: FileFormat,
    max_rows: int = 1,
) -> ParsedPreview:
    return _preview(io.BytesIO(content), file_format, max_rows)


def preview_file(
    file_path: Path,
    file_format: FileFormat,
    max_rows: int = 1,
) -> ParsedPreview:
    if not file_path.exists():
        raise ParserError(f"file not found: {file_path}")
    with file_path.open("rb") as handle:
        return _preview(handle, file_format, max_rows)


def iter_file_rows(file_path: Path, file_format: FileFormat) -> Iterator[dict[str, Any]]:
    """Stream every data row of a stored upload as a header-keyed dict."""
    if not file_path.exists():
        raise ParserError(f"file not found: {file_path}")
    with file_path.open("rb") as handle:
        if file_format == FileFormat.XLSX:
            yield from _iter_xlsx(handle)
        else:
            yield from _iter_csv(handle)


def count_file_rows(file_path: Path, file_format: FileFormat) -> int:
    return sum(1 for _ in iter_file_rows(file_path, file_format))


def _preview(
    stream: IO[bytes],
    file_format: FileFormat,
    max_rows: int,
) -> ParsedPreview:
    if file_format == FileFormat.XLSX:
        headers = _read_xlsx_headers(stream)
    else:
        headers = _read_csv_headers(stream)
    stream.seek(0)

    rows_iter = _iter_xlsx(stream) if file_format == FileFormat.XLSX else _iter_csv(stream)
    rows: list[dict[str, Any]] = []
    try:
        for row in rows_iter:
            rows.append(row)
            if len(rows) >= max_rows:
                break
    finally:
        rows_iter.close()
    return ParsedPreview(headers=headers, rows=rows)


def _detect_encoding(stream: IO[bytes]) -> str:
    sample = stream.read(ENCODING_SAMPLE_SIZE)
    stream.seek(0)
    decoder = codecs.getincrementaldecoder("utf-8-sig")()
    try:
        decoder.decode(sample, final=False)
    except UnicodeDecodeError:
        return "cp1251"
    return "utf-8-sig"


def _open_csv(stream: IO[bytes]) -> tuple[io.TextIOWrapper, csv.Dialect | type[csv.Dialect]]:
    encoding = _detect_encoding(stream)
    text = io.TextIOWrapper(stream, encoding=encoding, errors="replace", newline="")
    sample = text.read(SNIFF_SAMPLE_SIZE)
    text.seek(0)
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    return text, dialect


def _read_csv_headers(stream: IO[bytes]) -> list[str]:
    text, dialect = _open_csv(stream)
    try:
        return [header.strip() for header in next(csv.reader(text, dialect), [])]
    except csv.Error as exc:
        raise ParserError(f"unable to read CSV header: {exc}") from exc
    finally:
        text.detach()


def _iter_csv(stream: IO[bytes]) -> Iterator[dict[str, Any]]:
    text, dialect = _open_csv(stream)
    try:
        reader = csv.reader(text, dialect)
        headers = [header.strip() for header in next(reader, [])]
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            yield _row_dict(headers, row)
    except csv.Error as exc:
        raise ParserError(f"malformed CSV: {exc}") from exc
    finally:
        text.detach()


def _read_xlsx_headers(stream: IO[bytes]) -> list[str]:
    workbook = _load_workbook(stream)
    try:
        headers_row = next(workbook.active.iter_rows(values_only=True), None)
        return _xlsx_headers(headers_row)
    finally:
        workbook.close()


def _iter_xlsx(stream: IO[bytes]) -> Iterator[dict[str, Any]]:
    workbook = _load_workbook(stream)
    try:
        rows_iter = workbook.active.iter_rows(values_only=True)
        headers = _xlsx_headers(next(rows_iter, None))
        for row in rows_iter:
            if all(value is None for value in row):
                continue
            yield _row_dict(headers, [_serialize_cell(value) for value in row])
    finally:
        workbook.close()


def _load_workbook(stream: IO[bytes]):
    try:
        return load_workbook(stream, read_only=True, data_only=True)
    except Exception as exc:
        raise ParserError(f"unable to open XLSX workbook: {exc}") from exc


def _xlsx_headers(headers_row: tuple[Any, ...] | None) -> list[str]:
    return [
        str(value).strip() if value is not None else f"Column {index}"
        for index, value in enumerate(headers_row or (), start=1)
    ]


def _row_dict(headers: list[str], row: list[Any]) -> dict[str, Any]:
    return {
        header: row[index] if index < len(row) else ""
        for index, header in enumerate(headers)
    }


def _serialize_cell(value: object) -> object:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value if value is not None else ""
