from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping, Protocol, Sequence

from backoffice.core.errors import UnsupportedExportFormat

Columns = Sequence[str] | Mapping[str, str]


def column_keys(columns: Columns) -> list[str]:
    return list(columns.keys()) if isinstance(columns, Mapping) else list(columns)


def column_labels(columns: Columns) -> list[str]:
    return [str(label) for label in columns.values()] if isinstance(columns, Mapping) else list(columns)


def _display(value: Any) -> Any:
    if isinstance(value, bool):
        return "Active" if value else "Inactive"
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return value


class Exporter(Protocol):
    media_type: str

    def stream(self, rows: Iterable[Mapping[str, Any]], columns: Columns) -> Iterator[bytes]: ...


class CsvExporter:
    media_type = "text/csv; charset=utf-8"

    def stream(self, rows: Iterable[Mapping[str, Any]], columns: Columns) -> Iterator[bytes]:
        keys = column_keys(columns)
        buffer = io.StringIO()
        writer = csv.writer(buffer)

        def _flush() -> bytes:
            data = buffer.getvalue().encode("utf-8")
            buffer.seek(0)
            buffer.truncate(0)
            return data

        writer.writerow(column_labels(columns))
        yield b"\xef\xbb\xbf" + _flush()
        for row in rows:
            writer.writerow([_display(row.get(key)) for key in keys])
            yield _flush()


class XlsxExporter(CsvExporter):
    """Spreadsheet download: BOM-prefixed CSV with labelled headers that Excel opens as a sheet."""

    extension = "csv"


class JsonExporter:
    media_type = "application/json"

    def stream(self, rows: Iterable[Mapping[str, Any]], columns: Columns) -> Iterator[bytes]:
        keys = column_keys(columns)
        labels = column_labels(columns)
        yield b"["
        first = True
        for row in rows:
            item = {label: _display(row.get(key)) for key, label in zip(keys, labels)}
            prefix = b"" if first else b","
            yield prefix + json.dumps(item, ensure_ascii=False, default=str).encode("utf-8")
            first = False
        yield b"]"


class ExporterRegistry:
    def __init__(self, exporters: Mapping[str, Exporter] | None = None) -> None:
        self._exporters: dict[str, Exporter] = dict(exporters or {})

    def register(self, fmt: str, exporter: Exporter) -> None:
        self._exporters[fmt.lower()] = exporter

    def resolve(self, fmt: str) -> Exporter:
        exporter = self._exporters.get(str(fmt or "").lower())
        if exporter is None:
            raise UnsupportedExportFormat(fmt)
        return exporter

    def formats(self) -> list[str]:
        return sorted(self._exporters)


def default_exporters() -> ExporterRegistry:
    return ExporterRegistry({"csv": CsvExporter(), "json": JsonExporter(), "xlsx": XlsxExporter()})


@dataclass
class ExportResult:
    stream: Iterator[bytes]
    filename: str
    media_type: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Disposition": f'attachment; filename="{self.filename}"'}
