"""Tests for the STAGING transformer."""

import pandas as pd

from medical_pipeline.loader import Loader
from medical_pipeline.schemas import CLAIMS
from medical_pipeline.transformer import Transformer, normalize_frame, valid_mask
from tests.conftest import CLAIM_HEADER, PATIENT_HEADER


def _load(warehouse, write_csv, name, lines, entity):
    return Loader(warehouse).load_file(write_csv(name, lines), entity)


def _changelog_size(warehouse):
    return warehouse.count_rows("staging_changelog")


def test_valid_mask_rejects_negative_and_missing_required():
    df = pd.DataFrame({
        "claim_id": ["CLM001", "CLM002", None, "CLM004"],
        "patient_id": ["PAT001", "PAT001", "PAT001", "PAT002"],
        "claim_amount": [5000.0, None, 10.0, -50.0],
        "claim_type": ["A", "A", "A", "A"],
        "claim_date": [None] * 4,
        "status": [None] * 4,
    })

    mask = valid_mask(df, CLAIMS)

    assert list(mask) == [True, False, False, False]


def test_normalize_frame_uppercases_and_trims():
    df = pd.DataFrame({
        "claim_id": [" CLM001 "],
        "patient_id": ["PAT001"],
        "claim_amount": [1.0],
        "claim_type": ["inpatient"],
        "claim_date": ["2024-05-01"],
        "status": ["  "],
    })

    normalized = normalize_frame(df, CLAIMS)

    assert normalized.loc[0, "claim_id"] == "CLM001"
    assert normalized.loc[0, "claim_type"] == "INPATIENT"
    assert normalized.loc[0, "status"] is None
    assert df.loc[0, "claim_type"] == "inpatient"


def test_negative_amount_rows_are_excluded(warehouse, write_csv):
    _load(warehouse, write_csv, "claims.csv", [
        CLAIM_HEADER,
        "CLM001,PAT001,5000,inpatient,2024-05-01,approved",
        "CLM004,PAT002,-50,inpatient,2024-05-02,pending",
    ], "claims")

    result = Transformer(warehouse).rebuild("claims")

    staging = warehouse.read_table("stg_claims")
    assert list(staging["claim_id"]) == ["CLM001"]
    assert staging.loc[0, "claim_type"] == "INPATIENT"
    assert result.rows_read == 2
    assert result.rows_rejected == 1
    assert warehouse.count_rows("raw_claims") == 2


def test_patients_are_geocoded_best_effort(warehouse, write_csv):
    _load(warehouse, write_csv, "patients.csv", [
        PATIENT_HEADER,
        "PAT001,Ann,41,female,POINT(13.405 52.52),2024-01-01",
        "PAT002,Bob,35,male,Berlin,2024-01-02",
    ], "patients")

    Transformer(warehouse).rebuild("patients")

    staging = warehouse.read_table("stg_patients").set_index("patient_id")
    assert staging.loc["PAT001", "latitude"] == 52.52
    assert staging.loc["PAT001", "longitude"] == 13.405
    assert pd.isna(staging.loc["PAT002", "latitude"])
    assert staging.loc["PAT002", "gender"] == "MALE"


def test_rebuild_is_idempotent(warehouse, write_csv):
    _load(warehouse, write_csv, "claims.csv", [
        CLAIM_HEADER,
        "CLM001,PAT001,5000,inpatient,2024-05-01,approved",
        "CLM002,PAT001,150,outpatient,2024-05-02,approved",
        "CLM004,PAT002,-50,inpatient,2024-05-02,pending",
    ], "claims")
    transformer = Transformer(warehouse)

    first = transformer.rebuild("claims")
    snapshot = warehouse.read_table("stg_claims")
    logged = _changelog_size(warehouse)
    second = transformer.rebuild("claims")

    pd.testing.assert_frame_equal(snapshot, warehouse.read_table("stg_claims"))
    assert first.changes_logged == 2
    assert second.changes_logged == 0
    assert _changelog_size(warehouse) == logged


def test_rebuild_logs_only_new_rows(warehouse, write_csv):
    transformer = Transformer(warehouse)
    _load(warehouse, write_csv, "a.csv", [CLAIM_HEADER, "CLM001,PAT001,5000,inpatient,2024-05-01,approved"], "claims")
    transformer.rebuild("claims")
    _load(warehouse, write_csv, "b.csv", [CLAIM_HEADER, "CLM002,PAT001,20,outpatient,2024-05-03,approved"], "claims")

    result = transformer.rebuild("claims")

    assert result.rows_written == 2
    assert result.changes_logged == 1


def test_process_new_only_handles_appended_raw_rows(warehouse, write_csv):
    transformer = Transformer(warehouse)
    _load(warehouse, write_csv, "a.csv", [CLAIM_HEADER, "CLM001,PAT001,5000,inpatient,2024-05-01,approved"], "claims")
    first = transformer.process_new("claims")
    _load(warehouse, write_csv, "b.csv", [
        CLAIM_HEADER,
        "CLM002,PAT001,20,outpatient,2024-05-03,approved",
        "CLM003,PAT001,-1,outpatient,2024-05-03,approved",
    ], "claims")

    second = transformer.process_new("claims")
    third = transformer.process_new("claims")

    assert (first.rows_read, first.rows_written) == (1, 1)
    assert (second.rows_read, second.rows_written, second.rows_rejected) == (2, 1, 1)
    assert third.rows_read == 0
    assert list(warehouse.read_table("stg_claims")["claim_id"]) == ["CLM001", "CLM002"]
    assert _changelog_size(warehouse) == 2


def test_rebuild_after_process_new_matches_incremental_result(warehouse, write_csv):
    transformer = Transformer(warehouse)
    _load(warehouse, write_csv, "a.csv", [
        CLAIM_HEADER,
        "CLM001,PAT001,5000,inpatient,2024-05-01,approved",
        "CLM002,PAT001,20,outpatient,2024-05-03,approved",
    ], "claims")
    transformer.process_new("claims")
    incremental = warehouse.read_table("stg_claims")

    result = transformer.rebuild("claims")

    pd.testing.assert_frame_equal(incremental, warehouse.read_table("stg_claims"))
    assert result.changes_logged == 0


def test_rebuild_all_covers_every_entity(warehouse, write_csv):
    _load(warehouse, write_csv, "claims.csv", [CLAIM_HEADER, "CLM001,PAT001,5000,inpatient,2024-05-01,approved"], "claims")
    _load(warehouse, write_csv, "patients.csv", [PATIENT_HEADER, "PAT001,Ann,41,female,,2024-01-01"], "patients")

    results = Transformer(warehouse).rebuild_all()

    assert [r.entity for r in results] == ["patients", "claims", "treatments"]
    assert [r.rows_written for r in results] == [1, 1, 0]
    assert warehouse.count_rows("stg_treatments") == 0
