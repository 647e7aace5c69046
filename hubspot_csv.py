"""
Shared reading, projection and chunked writing of HubSpot import files.

HubSpot rejects import files above its upload ceiling (511MB), so every
pipeline writes through ChunkedExportWriter, which tracks the exact UTF-8 byte
size of each chunk and rolls over to a new numbered file before the limit
would be crossed. Rows are never split across files.
"""

import csv
import io
import json
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from sf_associations import Association

HUBSPOT_IMPORT_LIMIT_MB = 511

# Default chunk size leaves headroom under HubSpot's limit
DEFAULT_MAX_CHUNK_MB = 500

RECORD_SEPARATOR = '\n'

# Column every HubSpot import uses to match the associated record
RECORD_ID_COLUMN = 'Record ID'


class ExportWriteError(Exception):
    """Writing a chunk failed; the partition it belongs to is abandoned."""

    def __init__(self, object_type: str, path: Optional[Path], cause: Exception):
        self.object_type = object_type
        self.path = path
        self.cause = cause
        super().__init__(f"{object_type}: could not write {path}: {cause}")


def mb_to_bytes(megabytes: float) -> int:
    return int(megabytes * 1024 * 1024)


def byte_len(text: str) -> int:
    return len(text.encode('utf-8', errors='replace'))


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def read_csv_rows(path) -> Iterator[Dict[str, str]]:
    """
    Lazily yield rows of a CSV export as dicts.

    The file is opened when iteration starts, so a missing file raises
    FileNotFoundError on the first next() call. Bytes that are not valid
    UTF-8 decode to U+FFFD instead of aborting the read.
    """
    with open(path, 'r', newline='', encoding='utf-8-sig', errors='replace') as f:
        reader = csv.DictReader(f)
        for row in reader:
            yield {k: (v if v is not None else '') for k, v in row.items() if k is not None}


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def build_csv_row(values: Sequence[Any]) -> str:
    """
    Serialize one row with csv.writer (QUOTE_MINIMAL) and terminate it with '\\n'.

    The writer keeps its default '\\r\\n' terminator so that fields holding
    either line-break character get quoted; it is swapped for
    RECORD_SEPARATOR afterwards.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(['' if v is None else v for v in values])
    return buffer.getvalue()[:-len(writer.dialect.lineterminator)] + RECORD_SEPARATOR


def format_csv_field(value: Any) -> str:
    """A single field as it appears inside a row."""
    if value is None or value == '':
        return ''
    return build_csv_row([value])[:-len(RECORD_SEPARATOR)]


def parse_iso(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a Salesforce timestamp or date; naive values are taken as UTC."""
    if not dt_str:
        return None
    dt_str = dt_str.strip()

    formats = [
        '%Y-%m-%dT%H:%M:%S.%fZ',
        '%Y-%m-%dT%H:%M:%SZ',
        '%Y-%m-%dT%H:%M:%S.%f%z',
        '%Y-%m-%dT%H:%M:%S%z',
        '%Y-%m-%d %H:%M:%S',
        '%Y-%m-%d',
    ]

    parsed = None
    for fmt in formats:
        try:
            parsed = datetime.strptime(dt_str, fmt)
            break
        except ValueError:
            continue

    if parsed is None:
        try:
            parsed = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso_utc(dt: datetime) -> str:
    """Format as 2024-01-31T09:30:00.000Z."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def parse_minutes(value: Optional[str]) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------

ColumnSource = Callable[[Dict[str, str], Optional[Association]], Any]
FieldMap = List[Tuple[str, ColumnSource]]


def field(name: str) -> ColumnSource:
    return lambda record, assoc: record.get(name)


def constant(value: Any) -> ColumnSource:
    return lambda record, assoc: value


def first_of(*names: str) -> ColumnSource:
    """First non-empty value among several source columns."""
    def source(record, assoc):
        for name in names:
            if record.get(name):
                return record[name]
        return ''
    return source


def record_id() -> ColumnSource:
    return lambda record, assoc: assoc.hubspot_id if assoc else ''


def iso_timestamp(*names: str) -> ColumnSource:
    """Normalize the first non-empty timestamp column to ISO-8601 UTC ('' if unparseable)."""
    raw = first_of(*names)

    def source(record, assoc):
        dt = parse_iso(raw(record, assoc))
        return to_iso_utc(dt) if dt else ''
    return source


def end_time(start_fields: Sequence[str], duration_field: str) -> ColumnSource:
    """Start timestamp plus a duration in minutes."""
    raw = first_of(*start_fields)

    def source(record, assoc):
        start = parse_iso(raw(record, assoc))
        if start is None:
            return ''
        return to_iso_utc(start + timedelta(minutes=parse_minutes(record.get(duration_field))))
    return source


def titled_body(title_field: str, body_field: str) -> ColumnSource:
    """Body prefixed with 'Title: ...' when the record has a title."""
    def source(record, assoc):
        title = record.get(title_field) or ''
        body = record.get(body_field) or ''
        return f"Title: {title}\n\n{body}" if title else body
    return source


class RowProjector:
    """Turns a source record plus one association into a HubSpot-shaped row."""

    def __init__(self, field_map: FieldMap):
        self.field_map = list(field_map)
        self.header = [column for column, _ in self.field_map]

    def project(self, record: Dict[str, str], association: Optional[Association]) -> Dict[str, str]:
        row = {}
        for column, source in self.field_map:
            value = source(record, association)
            row[column] = '' if value is None else str(value)
        return row


# ---------------------------------------------------------------------------
# Chunk formats
# ---------------------------------------------------------------------------

class CsvChunkFormat:
    extension = 'csv'

    def header(self, columns: List[str]) -> str:
        return build_csv_row(columns)

    def footer(self) -> str:
        return ''

    def encode_row(self, row: Dict[str, Any], columns: List[str], first: bool) -> str:
        return build_csv_row([row.get(col, '') for col in columns])


class JsonChunkFormat:
    """Each chunk is a standalone JSON array; the closing bracket is reserved up front."""
    extension = 'json'

    def header(self, columns: List[str]) -> str:
        return '['

    def footer(self) -> str:
        return '\n]\n'

    def encode_row(self, row: Dict[str, Any], columns: List[str], first: bool) -> str:
        ordered = {col: row.get(col, '') for col in columns}
        return ('\n' if first else ',\n') + json.dumps(ordered, ensure_ascii=False)


CHUNK_FORMATS = {
    'csv': CsvChunkFormat,
    'json': JsonChunkFormat,
}


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

class ChunkedExportWriter:
    """
    Append-only writer for one partition (one HubSpot object type).

    Files are named {dataset}_{object_type}_chunk{N}.{ext}, numbered from 1
    and created when their first row arrives. No chunk grows beyond
    max_chunk_bytes unless it holds a single row that is itself larger.
    """

    def __init__(self, output_dir, dataset_name: str, object_type: str, header: List[str],
                 max_chunk_bytes: int, fmt: str = 'csv'):
        if max_chunk_bytes <= 0:
            raise ValueError("max_chunk_bytes must be positive")
        if fmt not in CHUNK_FORMATS:
            raise ValueError(f"Unsupported chunk format: {fmt}")

        self.output_dir = Path(output_dir)
        self.dataset_name = dataset_name
        self.object_type = object_type
        self.columns = list(header)
        self.max_chunk_bytes = max_chunk_bytes
        self.format = CHUNK_FORMATS[fmt]()

        self._header_text = self.format.header(self.columns)
        self._footer_text = self.format.footer()
        self._reserved_bytes = byte_len(self._header_text) + byte_len(self._footer_text)

        self._handle = None
        self.chunk_index = 0
        self.current_size = 0
        self.rows_in_chunk = 0
        self.rows_written = 0
        self.chunk_paths: List[Path] = []
        self.failed = False

    def chunk_path(self, index: int) -> Path:
        filename = f"{self.dataset_name}_{self.object_type}_chunk{index}.{self.format.extension}"
        return self.output_dir / filename

    @property
    def current_path(self) -> Optional[Path]:
        return self.chunk_paths[-1] if self.chunk_paths else None

    def write(self, row: Dict[str, Any]):
        if self.failed:
            raise ExportWriteError(self.object_type, self.current_path, RuntimeError("partition already failed"))

        data = self.format.encode_row(row, self.columns, first=self.rows_in_chunk == 0)
        size = byte_len(data)

        if self._handle is not None and self.rows_in_chunk > 0 and self.current_size + size > self.max_chunk_bytes:
            logging.info(f"Chunk {self.chunk_index} for {self.dataset_name}/{self.object_type} reached "
                         f"{self.current_size} bytes. Starting new chunk.")
            self._close_chunk()
            data = self.format.encode_row(row, self.columns, first=True)
            size = byte_len(data)

        if self._handle is None:
            self._open_chunk()

        if self.current_size + size > self.max_chunk_bytes:
            logging.warning(f"Row of {size} bytes exceeds the {self.max_chunk_bytes}-byte chunk limit; "
                            f"writing it alone to {self.current_path.name}")

        self._write(data)
        self.current_size += size
        self.rows_in_chunk += 1
        self.rows_written += 1

    def close(self):
        if self._handle is not None:
            self._close_chunk()

    def _open_chunk(self):
        self.chunk_index += 1
        path = self.chunk_path(self.chunk_index)
        self.chunk_paths.append(path)
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            self._handle = open(path, 'w', encoding='utf-8', errors='replace', newline='')
        except OSError as e:
            self.failed = True
            raise ExportWriteError(self.object_type, path, e) from e

        logging.info(f"Creating chunk file: {path.name}")
        self._write(self._header_text)
        self.current_size = self._reserved_bytes
        self.rows_in_chunk = 0

    def _close_chunk(self):
        try:
            if self._footer_text:
                self._handle.write(self._footer_text)
            self._handle.close()
        except OSError as e:
            self.failed = True
            raise ExportWriteError(self.object_type, self.current_path, e) from e
        finally:
            self._handle = None

    def _write(self, data: str):
        try:
            self._handle.write(data)
        except OSError as e:
            self.failed = True
            self._abandon()
            raise ExportWriteError(self.object_type, self.current_path, e) from e

    def _abandon(self):
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except OSError as e:
            logging.debug(f"Ignoring close error on failed chunk {self.current_path}: {e}")


class PartitionedExport:
    """
    One dataset split by HubSpot object type, one ChunkedExportWriter each.

    A write failure abandons only the partition it happened in; later rows for
    that partition are counted as dropped and the other partitions carry on.
    """

    def __init__(self, output_dir, dataset_name: str, header: List[str], max_chunk_bytes: int,
                 fmt: str = 'csv'):
        self.output_dir = Path(output_dir)
        self.dataset_name = dataset_name
        self.header = list(header)
        self.max_chunk_bytes = max_chunk_bytes
        self.fmt = fmt
        self.writers: Dict[str, ChunkedExportWriter] = {}
        self.errors: Dict[str, str] = {}
        self.dropped = Counter()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def writer_for(self, object_type: str) -> ChunkedExportWriter:
        writer = self.writers.get(object_type)
        if writer is None:
            writer = ChunkedExportWriter(self.output_dir, self.dataset_name, object_type, self.header,
                                         self.max_chunk_bytes, fmt=self.fmt)
            self.writers[object_type] = writer
        return writer

    def write(self, object_type: str, row: Dict[str, Any]) -> bool:
        if object_type in self.errors:
            self.dropped[object_type] += 1
            return False

        try:
            self.writer_for(object_type).write(row)
            return True
        except ExportWriteError as e:
            self._fail(object_type, e)
            self.dropped[object_type] += 1
            return False

    def close(self):
        for object_type, writer in self.writers.items():
            try:
                writer.close()
            except ExportWriteError as e:
                self._fail(object_type, e)

    def _fail(self, object_type: str, error: ExportWriteError):
        logging.error(f"Write failure in {self.dataset_name}/{object_type}: {error}. "
                      f"Abandoning this partition; other partitions continue.")
        self.errors.setdefault(object_type, str(error))

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def stats(self) -> List[Dict[str, Any]]:
        """Per-partition counters, in the order partitions were first written."""
        rows = []
        for object_type, writer in self.writers.items():
            rows.append({
                'dataset': self.dataset_name,
                'partition': object_type,
                'rows_written': writer.rows_written,
                'chunks': writer.chunk_index,
                'dropped': self.dropped.get(object_type, 0),
                'error': self.errors.get(object_type, ''),
            })
        return rows
