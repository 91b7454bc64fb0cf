"""
Runtime configuration for the medical records pipeline.

Values come from the process environment, optionally seeded from a .env file.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from dotenv import load_dotenv

DEFAULT_DB_PATH = "database/medical_records.db"
DEFAULT_EXPORT_DIR = "data/exports"
DEFAULT_BUCKET = "medical-records-landing"
DEFAULT_REGION = "eu-central-1"
DEFAULT_DELIMITER = ","
DEFAULT_QUOTE_CHAR = '"'
DEFAULT_NULL_TOKENS = frozenset({"", "NULL", "null", "NA", "N/A"})
DEFAULT_SYNC_INTERVAL = 3600  # seconds
DEFAULT_MAX_WORKERS = 4
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2  # seconds


@dataclass(frozen=True)
class CsvFormat:
    """File format the loader applies to every landed CSV."""

    delimiter: str = DEFAULT_DELIMITER
    quote_char: str = DEFAULT_QUOTE_CHAR
    null_tokens: FrozenSet[str] = DEFAULT_NULL_TOKENS
    skip_header: int = 1


@dataclass(frozen=True)
class PipelineConfig:
    """Settings shared by every pipeline stage."""

    db_path: str = DEFAULT_DB_PATH
    export_dir: str = DEFAULT_EXPORT_DIR
    bucket: str = DEFAULT_BUCKET
    region: str = DEFAULT_REGION
    profile_name: Optional[str] = None
    csv_format: CsvFormat = field(default_factory=CsvFormat)
    sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL
    loader_max_workers: int = DEFAULT_MAX_WORKERS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay: int = DEFAULT_RETRY_DELAY

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "PipelineConfig":
        """
        Build a config from environment variables.

        Args:
            dotenv_path: Optional .env file to load first; existing
                environment variables are never overridden by it.

        Returns:
            PipelineConfig populated from the environment
        """
        load_dotenv(dotenv_path)

        null_tokens = DEFAULT_NULL_TOKENS
        raw_tokens = os.environ.get("CSV_NULL_TOKENS")
        if raw_tokens is not None:
            # "|" separates tokens so that "," can stay the CSV delimiter
            null_tokens = frozenset(token.strip() for token in raw_tokens.split("|"))

        csv_format = CsvFormat(
            delimiter=os.environ.get("CSV_DELIMITER", DEFAULT_DELIMITER),
            quote_char=os.environ.get("CSV_QUOTE_CHAR", DEFAULT_QUOTE_CHAR),
            null_tokens=null_tokens,
        )

        return cls(
            db_path=os.environ.get("PIPELINE_DB_PATH", DEFAULT_DB_PATH),
            export_dir=os.environ.get("EXPORT_DIR", DEFAULT_EXPORT_DIR),
            bucket=os.environ.get("LANDING_BUCKET", DEFAULT_BUCKET),
            region=os.environ.get("AWS_REGION", DEFAULT_REGION),
            profile_name=os.environ.get("AWS_PROFILE") or None,
            csv_format=csv_format,
            sync_interval_seconds=int(os.environ.get("SYNC_INTERVAL_SECONDS", DEFAULT_SYNC_INTERVAL)),
            loader_max_workers=int(os.environ.get("LOADER_MAX_WORKERS", DEFAULT_MAX_WORKERS)),
            retry_attempts=int(os.environ.get("S3_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS)),
            retry_delay=int(os.environ.get("S3_RETRY_DELAY", DEFAULT_RETRY_DELAY)),
        )
