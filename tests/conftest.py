"""Shared fixtures for pipeline tests."""

import io
import os

# Keep test runs from writing log files; must be set before pipeline imports
os.environ["LOG_DIR"] = ""

import pytest
from botocore.exceptions import ClientError

from medical_pipeline.aggregator import Aggregator
from medical_pipeline.warehouse import Warehouse

PATIENT_HEADER = "patient_id,name,age,gender,location,admission_date"
CLAIM_HEADER = "claim_id,patient_id,claim_amount,claim_type,claim_date,status"
TREATMENT_HEADER = "treatment_id,patient_id,department,diagnosis,symptom,treatment,cost,treatment_date"


@pytest.fixture
def warehouse(tmp_path):
    """Warehouse with every table and curated view created."""
    wh = Warehouse(str(tmp_path / "db" / "test.db"))
    wh.create_tables()
    Aggregator(wh).create_views()
    return wh


@pytest.fixture
def write_csv(tmp_path):
    """Write lines to a CSV file under tmp_path and return its path."""

    def _write(name, lines):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)

    return _write


class _FakePaginator:
    def __init__(self, client):
        self._client = client

    def paginate(self, Bucket, Prefix=""):
        contents = [
            {"Key": key, "Size": len(body), "LastModified": self._client.last_modified}
            for (bucket, key), (body, _) in sorted(self._client.objects.items())
            if bucket == Bucket and key.startswith(Prefix)
        ]
        yield {"Contents": contents} if contents else {}


class FakeS3Client:
    """In-memory stand-in for the subset of the boto3 S3 client the pipeline uses."""

    def __init__(self, buckets=()):
        import datetime

        self.buckets = set(buckets)
        self.objects = {}
        self.created = []
        self.fail_uploads = 0
        self.last_modified = datetime.datetime(2024, 5, 1, 12, 0, 0)

    def _not_found(self, operation):
        return ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, operation)

    def head_bucket(self, Bucket):
        if Bucket not in self.buckets:
            raise self._not_found("HeadBucket")
        return {}

    def create_bucket(self, Bucket, CreateBucketConfiguration=None):
        self.buckets.add(Bucket)
        self.created.append((Bucket, CreateBucketConfiguration))
        return {}

    def put(self, bucket, key, body, metadata=None):
        self.buckets.add(bucket)
        self.objects[(bucket, key)] = (body, metadata or {})

    def upload_file(self, Filename, Bucket, Key, ExtraArgs=None, Config=None):
        if self.fail_uploads:
            self.fail_uploads -= 1
            raise ClientError({"Error": {"Code": "500", "Message": "Internal"}}, "PutObject")
        with open(Filename, "rb") as f:
            body = f.read()
        self.objects[(Bucket, Key)] = (body, dict((ExtraArgs or {}).get("Metadata", {})))

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise self._not_found("HeadObject")
        return {"Metadata": self.objects[(Bucket, Key)][1]}

    def download_file(self, Bucket, Key, Filename):
        if (Bucket, Key) not in self.objects:
            raise self._not_found("GetObject")
        with io.open(Filename, "wb") as f:
            f.write(self.objects[(Bucket, Key)][0])

    def get_paginator(self, operation_name):
        assert operation_name == "list_objects_v2"
        return _FakePaginator(self)


@pytest.fixture
def s3_client():
    return FakeS3Client(buckets={"landing"})
