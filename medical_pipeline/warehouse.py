#!/usr/bin/env python3
"""
SQLite warehouse holding every pipeline layer.

RAW, STAGING, change-log, dimension, fact and curated objects all live in one
database file. Connections run in autocommit mode; multi-statement writes go
through Warehouse.transaction() so each one commits or rolls back as a unit.
"""

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Union

import pandas as pd

from medical_pipeline.config import DEFAULT_DB_PATH, DEFAULT_EXPORT_DIR
from medical_pipeline.schemas import ENTITY_SCHEMAS, EntitySchema
from utils.logger import setup_logger

logger = setup_logger("Warehouse")

BUSY_TIMEOUT_SECONDS = 30
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

CHANGELOG_TABLE = "staging_changelog"
OFFSETS_TABLE = "pipeline_offsets"

# Staging-only columns appended after the entity's own columns
GEO_COLUMNS = ("latitude", "longitude")

CORE_DDL = [
    f'''
    CREATE TABLE IF NOT EXISTS {CHANGELOG_TABLE} (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        entity TEXT NOT NULL,
        payload TEXT NOT NULL,
        captured_at TEXT NOT NULL
    )
    ''',
    f'''
    CREATE TABLE IF NOT EXISTS {OFFSETS_TABLE} (
        consumer TEXT PRIMARY KEY,
        position INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS dim_patient (
        patient_id TEXT PRIMARY KEY,
        name TEXT,
        age INTEGER,
        gender TEXT,
        latitude REAL,
        longitude REAL,
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS dim_symptom (
        symptom TEXT PRIMARY KEY,
        first_seen_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS fact_claim (
        claim_id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL REFERENCES dim_patient(patient_id),
        claim_amount REAL NOT NULL,
        claim_type TEXT,
        claim_date DATE,
        status TEXT,
        loaded_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS fact_treatment (
        treatment_id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL REFERENCES dim_patient(patient_id),
        department TEXT,
        treatment TEXT,
        cost REAL NOT NULL,
        treatment_date DATE,
        loaded_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS fact_diagnosis (
        treatment_id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL REFERENCES dim_patient(patient_id),
        symptom TEXT REFERENCES dim_symptom(symptom),
        diagnosis TEXT,
        diagnosed_on DATE,
        loaded_at TEXT NOT NULL
    )
    ''',
]


def now_timestamp() -> str:
    """Current local time in the format stored in every *_ts / *_at column."""
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def staging_columns(schema: EntitySchema) -> List[str]:
    """Column order of a staging table, excluding raw_row_id and ingestion_ts."""
    columns = list(schema.column_names)
    if schema.geocoded_columns:
        columns.extend(GEO_COLUMNS)
    return columns


def raw_table_ddl(schema: EntitySchema) -> str:
    column_defs = ",\n        ".join(f"{c.name} {c.sql_type}" for c in schema.columns)
    return f'''
    CREATE TABLE IF NOT EXISTS {schema.raw_table} (
        {column_defs},
        ingestion_ts TEXT NOT NULL,
        source_file TEXT
    )
    '''


def staging_table_ddl(schema: EntitySchema) -> str:
    column_defs = [f"{c.name} {c.sql_type}" for c in schema.columns]
    if schema.geocoded_columns:
        column_defs.extend(f"{name} REAL" for name in GEO_COLUMNS)
    body = ",\n        ".join(column_defs)
    return f'''
    CREATE TABLE IF NOT EXISTS {schema.staging_table} (
        raw_row_id INTEGER NOT NULL,
        {body},
        ingestion_ts TEXT NOT NULL
    )
    '''


class Warehouse:
    """Connection factory and DDL owner for the pipeline's SQLite database."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """
        Initialize the warehouse with database path.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_db_directory()

    def _ensure_db_directory(self) -> None:
        """Ensure the database directory exists."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        """
        Create a connection to the SQLite database.

        Foreign keys are enforced on every connection, and the busy timeout
        lets parallel loader workers wait for each other's write locks.

        Returns:
            SQLite connection object in autocommit mode
        """
        conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside BEGIN IMMEDIATE ... COMMIT.

        Any exception rolls the whole block back and is re-raised. When no
        connection is passed, one is opened and closed around the block.
        """
        owned = conn is None
        if owned:
            conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            if owned:
                conn.close()

    def create_tables(self) -> None:
        """Create RAW, STAGING, change-log, offset, dimension and fact tables."""
        with self.transaction() as conn:
            for schema in ENTITY_SCHEMAS.values():
                conn.execute(raw_table_ddl(schema))
                conn.execute(staging_table_ddl(schema))
            for statement in CORE_DDL:
                conn.execute(statement)
        logger.info("Database tables created successfully")

    def table_names(self) -> List[str]:
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
            return [row[0] for row in rows]
        finally:
            conn.close()

    def read_table(self, table: str) -> pd.DataFrame:
        """Read an entire table or view into a DataFrame."""
        self._check_table(table)
        conn = self.connect()
        try:
            return pd.read_sql(f"SELECT * FROM {table}", conn)
        finally:
            conn.close()

    def count_rows(self, table: str) -> int:
        self._check_table(table)
        conn = self.connect()
        try:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        finally:
            conn.close()

    def get_layer_stats(self) -> Dict[str, Dict[str, Union[int, Optional[str]]]]:
        """
        Get record counts for every table, plus the latest ingestion
        timestamp of each RAW table.

        Returns:
            Dictionary keyed by table name
        """
        conn = self.connect()
        try:
            stats = {}
            tables = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
            for (table,) in tables:
                entry = {"row_count": conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]}
                if table.startswith("raw_"):
                    entry["latest_ingestion_ts"] = conn.execute(
                        f"SELECT MAX(ingestion_ts) FROM {table}"
                    ).fetchone()[0]
                stats[table] = entry
            return stats
        finally:
            conn.close()

    def export_table(self, table: str, output_dir: str = DEFAULT_EXPORT_DIR) -> Optional[str]:
        """
        Export a table or view to PARQUET.

        Args:
            table: Table or view to export
            output_dir: Directory to save the exported file

        Returns:
            Path to the exported file, or None when the table is empty
        """
        df = self.read_table(table)
        if df.empty:
            logger.warning(f"Table '{table}' is empty. No data to export.")
            return None

        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        output_file = os.path.join(output_dir, f"{table}_{timestamp}.parquet")
        df.to_parquet(output_file, index=False)
        logger.info(f"Exported {len(df)} records from '{table}' to {output_file}")
        return output_file

    def _check_table(self, table: str) -> None:
        # Table names are interpolated into SQL, so only known objects pass
        if table not in self.table_names():
            raise ValueError(f"Unknown table or view: {table}")
