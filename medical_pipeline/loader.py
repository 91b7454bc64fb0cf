"""
RAW layer loader.

Parses landed CSV files against the entity's fixed column schema and appends
every well-formed row to the entity's RAW table. Malformed rows are skipped
and counted; the rest of the file still loads.
"""

import csv
import math
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

from medical_pipeline.config import CsvFormat
from medical_pipeline.errors import PipelineError, RowParseError
from medical_pipeline.landing import parse_s3_uri
from medical_pipeline.schemas import DATE, INTEGER, REAL, EntitySchema, get_schema, schema_for_key
from medical_pipeline.warehouse import Warehouse, now_timestamp
from utils.logger import setup_logger

logger = setup_logger("Loader")


@dataclass(frozen=True)
class LoadResult:
    """Outcome of loading one file into a RAW table."""

    entity: str
    source_file: str
    rows_loaded: int
    rows_skipped: int
    ingestion_ts: str


SQLITE_INT_MIN = -2 ** 63
SQLITE_INT_MAX = 2 ** 63 - 1


def _convert(value: str, sql_type: str) -> Any:
    if sql_type == INTEGER:
        try:
            number = int(value)
        except ValueError:
            as_float = float(value)
            if not as_float.is_integer():
                raise ValueError(f"expected an integer, got '{value}'")
            number = int(as_float)
        if not SQLITE_INT_MIN <= number <= SQLITE_INT_MAX:
            raise ValueError(f"integer out of range: '{value}'")
        return number
    if sql_type == REAL:
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"expected a finite number, got '{value}'")
        return number
    if sql_type == DATE:
        return date.fromisoformat(value).isoformat()
    return value


def _has_undecodable_bytes(value: str) -> bool:
    # surrogateescape maps each undecodable byte to U+DC80..U+DCFF
    return any('\udc80' <= ch <= '\udcff' for ch in value)


def parse_row(
    row: Sequence[str],
    schema: EntitySchema,
    csv_format: CsvFormat,
    line_number: int = 0
) -> Tuple[Any, ...]:
    """
    Convert one CSV row into a tuple of typed column values.

    Null tokens become None; every other field is stripped and converted to
    its column's type. Integers must fit SQLite's signed 64-bit range and
    reals must be finite.

    Args:
        row: Fields as returned by csv.reader
        schema: Entity schema the row must match
        csv_format: Format carrying the null token set
        line_number: Source line, used in error messages

    Returns:
        Tuple of values in schema column order

    Raises:
        RowParseError: If the field count, encoding or any conversion is wrong
    """
    if len(row) != len(schema.columns):
        raise RowParseError(
            line_number, f"expected {len(schema.columns)} fields, found {len(row)}"
        )

    values = []
    for column, raw_value in zip(schema.columns, row):
        if _has_undecodable_bytes(raw_value):
            raise RowParseError(line_number, f"column '{column.name}': invalid UTF-8 bytes")
        value = raw_value.strip()
        if value in csv_format.null_tokens or raw_value in csv_format.null_tokens:
            values.append(None)
            continue
        try:
            values.append(_convert(value, column.sql_type))
        except ValueError as e:
            raise RowParseError(line_number, f"column '{column.name}': {e}") from e
    return tuple(values)


def _iter_rows(handle, csv_format: CsvFormat) -> Iterator[Tuple[int, Optional[List[str]], Optional[str]]]:
    """
    Yield (line_number, fields, error) for each record after the header.

    A csv.Error for one record is reported in place of its fields so the
    caller can skip it and carry on with the next line.
    """
    reader = csv.reader(handle, delimiter=csv_format.delimiter, quotechar=csv_format.quote_char)
    skipped_header = 0
    while True:
        try:
            row = next(reader)
        except StopIteration:
            return
        except csv.Error as e:
            yield reader.line_num, None, str(e)
            continue
        if skipped_header < csv_format.skip_header:
            skipped_header += 1
            continue
        if not row:
            continue
        yield reader.line_num, row, None


class Loader:
    """Appends landed CSV files to RAW tables."""

    def __init__(self, warehouse: Warehouse, csv_format: Optional[CsvFormat] = None, landing_store=None):
        """
        Args:
            warehouse: Target warehouse; RAW tables must already exist
            csv_format: Delimiter, quoting and null tokens for every file
            landing_store: LandingStore used by load_object to fetch S3 objects
        """
        self.warehouse = warehouse
        self.csv_format = csv_format or CsvFormat()
        self.landing_store = landing_store

    def load_file(self, csv_file: str, entity: str, source_file: Optional[str] = None) -> LoadResult:
        """
        Load one CSV file into the entity's RAW table.

        All good rows of the file are appended in a single transaction and
        share one ingestion timestamp.

        Args:
            csv_file: Path to the CSV file
            entity: Entity name (patients, claims, treatments)
            source_file: Value stored in source_file; defaults to the file name

        Returns:
            LoadResult with loaded and skipped row counts
        """
        schema = get_schema(entity)
        source_file = source_file or os.path.basename(csv_file)
        ingestion_ts = now_timestamp()

        rows = []
        skipped = 0
        with open(csv_file, newline='', encoding='utf-8', errors='surrogateescape') as f:
            for line_number, fields, error in _iter_rows(f, self.csv_format):
                if error is not None:
                    logger.debug(f"Skipping malformed record at {source_file}:{line_number}: {error}")
                    skipped += 1
                    continue
                try:
                    values = parse_row(fields, schema, self.csv_format, line_number)
                except RowParseError as e:
                    logger.debug(f"Skipping row in {source_file}: {e}")
                    skipped += 1
                    continue
                rows.append(values + (ingestion_ts, source_file))

        columns = schema.column_names + ["ingestion_ts", "source_file"]
        placeholders = ", ".join("?" for _ in columns)
        with self.warehouse.transaction() as conn:
            conn.executemany(
                f"INSERT INTO {schema.raw_table} ({', '.join(columns)}) VALUES ({placeholders})",
                rows,
            )

        if skipped:
            logger.warning(f"Skipped {skipped} malformed rows in {source_file}")
        logger.info(f"Loaded {len(rows)} records from {source_file} into {schema.raw_table}")
        return LoadResult(
            entity=schema.name,
            source_file=source_file,
            rows_loaded=len(rows),
            rows_skipped=skipped,
            ingestion_ts=ingestion_ts,
        )

    def load_files(self, files: Iterable[Tuple[str, str]], max_workers: int = 4) -> List[LoadResult]:
        """
        Load several (csv_file, entity) pairs in parallel.

        Files are independent: each one is its own transaction against its
        own entity table. A failing file does not stop the others.

        Raises:
            PipelineError: After every file finished, if any of them failed
        """
        files = list(files)
        results = []
        failures = []
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self.load_file, csv_file, entity): csv_file
                for csv_file, entity in files
            }
            for future in as_completed(futures):
                csv_file = futures[future]
                try:
                    results.append(future.result())
                except (OSError, PipelineError) as e:
                    logger.error(f"Error loading {csv_file}: {e}")
                    failures.append(csv_file)

        if failures:
            raise PipelineError(f"{len(failures)} of {len(files)} files failed to load: {failures}")
        return results

    def load_object(self, bucket: str, key: str) -> LoadResult:
        """
        Download a landed S3 object and load it into the RAW table its
        key prefix maps to.
        """
        if self.landing_store is None:
            raise PipelineError("Loader has no landing store configured for S3 objects")

        schema = schema_for_key(key)
        with tempfile.TemporaryDirectory() as tmp_dir:
            local_path = os.path.join(tmp_dir, os.path.basename(key) or "object.csv")
            self.landing_store.download_object(bucket, key, local_path)
            return self.load_file(local_path, schema.name, source_file=f"s3://{bucket}/{key}")

    def load_uri(self, object_uri: str) -> LoadResult:
        """Load a landed object given as 's3://bucket/key'."""
        bucket, key = parse_s3_uri(object_uri)
        return self.load_object(bucket, key)
