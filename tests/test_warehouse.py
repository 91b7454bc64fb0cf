"""Tests for warehouse DDL, transactions and exports."""

import sqlite3

import pandas as pd
import pytest

from medical_pipeline.loader import Loader
from tests.conftest import CLAIM_HEADER


def test_create_tables_is_repeatable(warehouse):
    warehouse.create_tables()

    names = warehouse.table_names()
    for table in ("raw_patients", "stg_claims", "staging_changelog", "pipeline_offsets",
                  "dim_patient", "dim_symptom", "fact_claim", "fact_treatment", "fact_diagnosis"):
        assert table in names


def test_transaction_rolls_back_on_error(warehouse):
    with pytest.raises(RuntimeError):
        with warehouse.transaction() as conn:
            conn.execute("INSERT INTO dim_symptom (symptom, first_seen_at) VALUES ('FEVER', 'now')")
            raise RuntimeError("boom")

    assert warehouse.count_rows("dim_symptom") == 0


def test_foreign_keys_are_enforced(warehouse):
    with pytest.raises(sqlite3.IntegrityError):
        with warehouse.transaction() as conn:
            conn.execute(
                "INSERT INTO fact_claim (claim_id, patient_id, claim_amount, loaded_at) "
                "VALUES ('CLM001', 'PAT404', 1.0, 'now')"
            )


def test_layer_stats_report_latest_ingestion(warehouse, write_csv):
    result = Loader(warehouse).load_file(
        write_csv("claims.csv", [CLAIM_HEADER, "CLM001,PAT001,5000,inpatient,2024-05-01,approved"]),
        "claims",
    )

    stats = warehouse.get_layer_stats()

    assert stats["raw_claims"] == {"row_count": 1, "latest_ingestion_ts": result.ingestion_ts}
    assert stats["raw_patients"]["latest_ingestion_ts"] is None
    assert stats["fact_claim"] == {"row_count": 0}


def test_export_table_writes_parquet(warehouse, write_csv, tmp_path):
    Loader(warehouse).load_file(
        write_csv("claims.csv", [CLAIM_HEADER, "CLM001,PAT001,5000,inpatient,2024-05-01,approved"]),
        "claims",
    )

    output_file = warehouse.export_table("raw_claims", output_dir=str(tmp_path / "out"))

    exported = pd.read_parquet(output_file)
    assert list(exported["claim_id"]) == ["CLM001"]


def test_export_empty_table_returns_none(warehouse, tmp_path):
    assert warehouse.export_table("raw_claims", output_dir=str(tmp_path / "out")) is None


def test_unknown_table_is_rejected(warehouse):
    with pytest.raises(ValueError):
        warehouse.read_table("raw_claims; DROP TABLE raw_claims")
