"""Tests for curated summary views and snapshots."""

import pytest

from medical_pipeline.aggregator import SUMMARIES, Aggregator
from medical_pipeline.loader import Loader
from medical_pipeline.transformer import Transformer
from tests.conftest import CLAIM_HEADER, PATIENT_HEADER, TREATMENT_HEADER


def _stage(warehouse, write_csv, name, lines, entity):
    Loader(warehouse).load_file(write_csv(name, lines), entity)
    Transformer(warehouse).rebuild(entity)


def test_claim_summary_excludes_invalid_claims(warehouse, write_csv):
    _stage(warehouse, write_csv, "claims.csv", [
        CLAIM_HEADER,
        "CLM001,PAT001,5000,inpatient,2024-05-01,approved",
        "CLM004,PAT002,-50,inpatient,2024-05-02,pending",
    ], "claims")

    summary = Aggregator(warehouse).summary("claims_by_type")

    assert list(summary["claim_type"]) == ["INPATIENT"]
    assert summary.loc[0, "claim_count"] == 1
    assert summary.loc[0, "total_claim_amount"] == 5000
    assert summary.loc[0, "avg_claim_amount"] == 5000


def test_views_reflect_current_staging(warehouse, write_csv):
    aggregator = Aggregator(warehouse)
    _stage(warehouse, write_csv, "a.csv", [
        CLAIM_HEADER,
        "CLM001,PAT001,100,inpatient,2024-05-01,approved",
    ], "claims")
    assert aggregator.summary("claims_by_type").loc[0, "claim_count"] == 1

    _stage(warehouse, write_csv, "b.csv", [
        CLAIM_HEADER,
        "CLM002,PAT001,300,Inpatient,2024-05-02,approved",
        "CLM003,PAT001,50,outpatient,2024-05-02,approved",
    ], "claims")
    summary = aggregator.summary("curated_claims_by_type").set_index("claim_type")

    assert summary.loc["INPATIENT", "claim_count"] == 2
    assert summary.loc["INPATIENT", "avg_claim_amount"] == 200
    assert summary.loc["OUTPATIENT", "total_claim_amount"] == 50


def test_patient_and_treatment_summaries(warehouse, write_csv):
    _stage(warehouse, write_csv, "patients.csv", [
        PATIENT_HEADER,
        "PAT001,Ann,40,female,,2024-01-01",
        "PAT002,Eve,60,Female,,2024-01-01",
        "PAT003,Bob,30,male,,2024-01-01",
    ], "patients")
    _stage(warehouse, write_csv, "treatments.csv", [
        TREATMENT_HEADER,
        "TRT001,PAT001,cardiology,hypertension,headache,medication,200,2024-05-01",
        "TRT002,PAT002,cardiology,hypertension,headache,medication,100,2024-05-01",
        "TRT003,PAT003,orthopedics,fracture,pain,surgery,1000,2024-05-01",
    ], "treatments")
    aggregator = Aggregator(warehouse)

    genders = aggregator.summary("patients_by_gender").set_index("gender")
    departments = aggregator.summary("treatments_by_department").set_index("department")
    pairs = aggregator.summary("diagnosis_treatment")

    assert genders.loc["FEMALE", "patient_count"] == 2
    assert genders.loc["FEMALE", "avg_age"] == 50
    assert departments.loc["CARDIOLOGY", "total_cost"] == 300
    assert departments.loc["ORTHOPEDICS", "avg_cost"] == 1000
    assert list(zip(pairs["diagnosis"], pairs["treatment"])) == [
        ("FRACTURE", "SURGERY"),
        ("HYPERTENSION", "MEDICATION"),
    ]


def test_refresh_recomputes_snapshots_from_scratch(warehouse, write_csv):
    aggregator = Aggregator(warehouse)
    _stage(warehouse, write_csv, "claims.csv", [
        CLAIM_HEADER,
        "CLM001,PAT001,5000,inpatient,2024-05-01,approved",
        "CLM002,PAT001,10,outpatient,2024-05-01,approved",
    ], "claims")

    first = aggregator.refresh()
    second = aggregator.refresh()

    assert first == second
    assert second["curated_claims_by_type_snapshot"] == 2
    snapshot = warehouse.read_table("curated_claims_by_type_snapshot")
    assert len(snapshot) == 2
    assert snapshot["processing_timestamp"].nunique() == 1


def test_unknown_summary_raises(warehouse):
    with pytest.raises(ValueError):
        Aggregator(warehouse).summary("revenue")


def test_every_summary_has_a_view(warehouse):
    names = set(warehouse.table_names())

    for summary in SUMMARIES.values():
        assert summary.name in names
        assert summary.snapshot_table in names
