"""
STAGING layer transformer.

Builds stg_<entity> from raw_<entity>: string fields are trimmed, categorical
fields upper-cased, location text geocoded, and rows failing the validity
predicate (missing required field, negative numeric field) are dropped.
"""

import json
import sqlite3
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List

import pandas as pd

from medical_pipeline import changelog
from medical_pipeline.geocode import to_point
from medical_pipeline.schemas import ENTITY_SCHEMAS, TEXT, EntitySchema, get_schema
from medical_pipeline.warehouse import GEO_COLUMNS, Warehouse, staging_columns
from utils.logger import setup_logger

logger = setup_logger("Transformer")

OUTPUT_COLUMNS_HEAD = ["raw_row_id"]
OUTPUT_COLUMNS_TAIL = ["ingestion_ts"]


@dataclass(frozen=True)
class TransformResult:
    entity: str
    rows_read: int
    rows_written: int
    rows_rejected: int
    changes_logged: int


def transformer_consumer(entity: str) -> str:
    """Offset name under which the transformer tracks its RAW position."""
    return f"transformer:{entity}"


def _strip_text(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else None
    return value


def normalize_frame(df: pd.DataFrame, schema: EntitySchema) -> pd.DataFrame:
    """
    Apply per-field normalisation to RAW rows.

    Args:
        df: RAW rows with the entity's columns
        schema: Entity schema naming categorical and geocoded columns

    Returns:
        New DataFrame; geocoded entities gain latitude and longitude columns
    """
    normalized = df.copy()

    for column in schema.columns:
        if column.sql_type == TEXT and column.name in normalized.columns:
            normalized[column.name] = normalized[column.name].map(_strip_text)

    for name in schema.categorical_columns:
        normalized[name] = normalized[name].map(lambda v: v.upper() if isinstance(v, str) else v)

    for name in schema.geocoded_columns:
        points = normalized[name].map(to_point)
        normalized[GEO_COLUMNS[0]] = points.map(lambda p: p.latitude if p else None)
        normalized[GEO_COLUMNS[1]] = points.map(lambda p: p.longitude if p else None)

    return normalized


def valid_mask(df: pd.DataFrame, schema: EntitySchema) -> pd.Series:
    """
    Row-level validity predicate: required fields are non-null and
    numeric fields are non-negative (a null optional numeric passes).
    """
    mask = pd.Series(True, index=df.index)
    for name in schema.required_columns:
        mask &= df[name].notna()
    for name in schema.non_negative_columns:
        values = pd.to_numeric(df[name], errors="coerce")
        mask &= values.isna() | (values >= 0)
        # A non-numeric leftover must not slip through as "null"
        mask &= df[name].isna() | values.notna()
    return mask


def _to_rows(df: pd.DataFrame, columns: List[str]) -> List[tuple]:
    # object dtype turns numpy scalars into Python values sqlite3 can bind
    frame = df[columns].astype(object)
    frame = frame.where(pd.notna(frame), None)
    return list(frame.itertuples(index=False, name=None))


def _read_staging(conn: sqlite3.Connection, schema: EntitySchema) -> List[Dict[str, Any]]:
    cursor = conn.execute(f"SELECT * FROM {schema.staging_table} ORDER BY raw_row_id")
    names = [description[0] for description in cursor.description]
    return [dict(zip(names, row)) for row in cursor.fetchall()]


def _payload_key(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True)


class Transformer:
    """Derives STAGING tables from RAW tables."""

    def __init__(self, warehouse: Warehouse):
        self.warehouse = warehouse

    def _clean(self, raw_df: pd.DataFrame, schema: EntitySchema) -> pd.DataFrame:
        normalized = normalize_frame(raw_df, schema)
        return normalized[valid_mask(normalized, schema)]

    def _insert_staging(self, conn: sqlite3.Connection, schema: EntitySchema, clean_df: pd.DataFrame) -> None:
        columns = OUTPUT_COLUMNS_HEAD + staging_columns(schema) + OUTPUT_COLUMNS_TAIL
        placeholders = ", ".join("?" for _ in columns)
        conn.executemany(
            f"INSERT INTO {schema.staging_table} ({', '.join(columns)}) VALUES ({placeholders})",
            _to_rows(clean_df, columns),
        )

    def rebuild(self, entity: str) -> TransformResult:
        """
        Fully replace stg_<entity> from the current RAW snapshot.

        The delete and re-insert run in one transaction, so readers see
        either the previous or the new snapshot. Rows whose content is new
        compared to the previous snapshot are appended to the change-log.
        """
        schema = get_schema(entity)
        with self.warehouse.transaction() as conn:
            raw_df = pd.read_sql(
                f"SELECT rowid AS raw_row_id, * FROM {schema.raw_table} ORDER BY rowid", conn
            )
            clean_df = self._clean(raw_df, schema)

            previous = Counter(_payload_key(row) for row in _read_staging(conn, schema))
            conn.execute(f"DELETE FROM {schema.staging_table}")
            self._insert_staging(conn, schema, clean_df)

            changed = []
            for row in _read_staging(conn, schema):
                key = _payload_key(row)
                if previous[key] > 0:
                    previous[key] -= 1
                else:
                    changed.append(row)
            logged = changelog.append_changes(conn, schema.name, changed)

            if not raw_df.empty:
                changelog.set_offset(conn, transformer_consumer(schema.name), int(raw_df["raw_row_id"].max()))

        result = TransformResult(
            entity=schema.name,
            rows_read=len(raw_df),
            rows_written=len(clean_df),
            rows_rejected=len(raw_df) - len(clean_df),
            changes_logged=logged,
        )
        logger.info(
            f"Rebuilt {schema.staging_table}: {result.rows_written} valid, "
            f"{result.rows_rejected} rejected, {result.changes_logged} changes logged"
        )
        return result

    def process_new(self, entity: str) -> TransformResult:
        """
        Transform only RAW rows appended since the last run and append
        them to stg_<entity> and the change-log.
        """
        schema = get_schema(entity)
        consumer = transformer_consumer(schema.name)
        with self.warehouse.transaction() as conn:
            last_row_id = changelog.get_offset(conn, consumer)
            raw_df = pd.read_sql(
                f"SELECT rowid AS raw_row_id, * FROM {schema.raw_table} WHERE rowid > ? ORDER BY rowid",
                conn,
                params=(last_row_id,),
            )
            if raw_df.empty:
                logger.info(f"No new records to process for {schema.staging_table}")
                return TransformResult(schema.name, 0, 0, 0, 0)

            clean_df = self._clean(raw_df, schema)
            self._insert_staging(conn, schema, clean_df)

            new_rows = conn.execute(
                f"SELECT * FROM {schema.staging_table} WHERE raw_row_id > ? ORDER BY raw_row_id",
                (last_row_id,),
            )
            names = [description[0] for description in new_rows.description]
            logged = changelog.append_changes(
                conn, schema.name, (dict(zip(names, row)) for row in new_rows.fetchall())
            )
            changelog.set_offset(conn, consumer, int(raw_df["raw_row_id"].max()))

        result = TransformResult(
            entity=schema.name,
            rows_read=len(raw_df),
            rows_written=len(clean_df),
            rows_rejected=len(raw_df) - len(clean_df),
            changes_logged=logged,
        )
        logger.info(
            f"Processed {result.rows_read} new records into {schema.staging_table}: "
            f"{result.rows_written} valid, {result.rows_rejected} rejected"
        )
        return result

    def rebuild_all(self) -> List[TransformResult]:
        return [self.rebuild(entity) for entity in ENTITY_SCHEMAS]

    def process_all_new(self) -> List[TransformResult]:
        return [self.process_new(entity) for entity in ENTITY_SCHEMAS]
