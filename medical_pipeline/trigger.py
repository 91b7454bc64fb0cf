"""
Ingestion trigger for S3 file-arrival notifications.

handler() is the serverless entry point. Its only job is to hand each newly
created object to the Loader; nothing it returns is consumed.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import unquote_plus

from medical_pipeline.config import PipelineConfig
from medical_pipeline.errors import PipelineError, SchemaError
from medical_pipeline.landing import LandingStore
from medical_pipeline.loader import Loader
from medical_pipeline.schemas import schema_for_key
from medical_pipeline.warehouse import Warehouse
from utils.logger import setup_logger

logger = setup_logger("IngestionTrigger")

_default_loader: Optional[Loader] = None


@dataclass(frozen=True)
class ObjectRef:
    bucket: str
    key: str


def parse_event(event: Dict[str, Any]) -> List[ObjectRef]:
    """
    Extract (bucket, key) pairs from an S3 event notification.

    Keys arrive URL-encoded ('+' for spaces) and are decoded here.
    """
    refs = []
    for record in event.get("Records", []):
        s3 = record.get("s3", {})
        bucket = s3.get("bucket", {}).get("name")
        key = s3.get("object", {}).get("key")
        if not bucket or not key:
            logger.warning(f"Ignoring event record without bucket/key: {record}")
            continue
        refs.append(ObjectRef(bucket=bucket, key=unquote_plus(key)))
    return refs


def handle_event(event: Dict[str, Any], loader: Loader) -> None:
    """
    Signal the loader for every object in the event.

    Objects outside any entity prefix are skipped. A failed load is
    re-raised once every other object has been handed over, so the
    runtime's at-least-once delivery retries the event.
    """
    failures = []
    for ref in parse_event(event):
        try:
            schema_for_key(ref.key)
        except SchemaError as e:
            logger.warning(f"Skipping s3://{ref.bucket}/{ref.key}: {e}")
            continue
        try:
            loader.load_object(ref.bucket, ref.key)
        except (OSError, PipelineError) as e:
            logger.error(f"Failed to load s3://{ref.bucket}/{ref.key}: {e}")
            failures.append(ref)

    if failures:
        raise PipelineError(f"{len(failures)} object(s) failed to load: {failures}")


def _build_default_loader() -> Loader:
    config = PipelineConfig.from_env()
    warehouse = Warehouse(config.db_path)
    warehouse.create_tables()
    landing_store = LandingStore.from_config(config, ensure_bucket=False)
    return Loader(warehouse, config.csv_format, landing_store=landing_store)


def handler(event: Dict[str, Any], context: Any = None) -> None:
    """Serverless entry point for S3 ObjectCreated notifications."""
    global _default_loader
    if _default_loader is None:
        _default_loader = _build_default_loader()
    handle_event(event, _default_loader)
