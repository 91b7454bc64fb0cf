#!/usr/bin/env python3
"""
S3 Landing Store

Uploaded CSV files land in one bucket under one prefix per entity type
(patients/, claims/, treatments/). This module uploads files there with
retries and MD5 verification, lists and downloads landed objects, and
uploads Parquet exports of the warehouse layers.
"""

import hashlib
import os
import time
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, EndpointConnectionError

from medical_pipeline.config import (
    DEFAULT_BUCKET,
    DEFAULT_REGION,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    PipelineConfig,
)
from medical_pipeline.errors import LandingStoreError
from medical_pipeline.schemas import get_schema
from utils.logger import setup_logger

logger = setup_logger("LandingStore")

EXPORT_PREFIX = "exports"

CONTENT_TYPES = {
    '.csv': 'text/csv',
    '.parquet': 'application/vnd.apache-parquet',
}


def parse_s3_uri(object_uri: str):
    """Split 's3://bucket/key' into (bucket, key)."""
    if not object_uri.startswith('s3://'):
        raise LandingStoreError(f"Invalid S3 URI: {object_uri}")
    parts = object_uri[5:].split('/', 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise LandingStoreError(f"Invalid S3 URI format: {object_uri}")
    return parts[0], parts[1]


class LandingStore:
    """Handles the S3 bucket that receives entity CSV uploads."""

    def __init__(
        self,
        bucket: str = DEFAULT_BUCKET,
        region: str = DEFAULT_REGION,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: int = DEFAULT_RETRY_DELAY,
        profile_name: Optional[str] = None,
        s3_client=None,
        ensure_bucket: bool = True
    ):
        """
        Initialize the landing store.

        Args:
            bucket: Landing bucket name
            region: AWS region to use
            retry_attempts: Number of retry attempts for uploads
            retry_delay: Base delay between retry attempts in seconds
            profile_name: AWS profile name to use for credentials
            s3_client: Pre-built S3 client; one is created from a boto3
                session when omitted
            ensure_bucket: Create the bucket when it does not exist yet
        """
        self.bucket = bucket
        self.region = region
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

        if s3_client is None:
            session = boto3.Session(profile_name=profile_name, region_name=region)
            s3_client = session.client('s3')
        self.s3_client = s3_client

        # Configure transfer settings for multipart uploads
        self.transfer_config = TransferConfig(
            multipart_threshold=8 * 1024 * 1024,  # 8MB
            max_concurrency=10,
            multipart_chunksize=8 * 1024 * 1024,  # 8MB
            use_threads=True
        )

        if ensure_bucket:
            self._ensure_bucket_exists()

    @classmethod
    def from_config(cls, config: PipelineConfig, **kwargs) -> "LandingStore":
        return cls(
            bucket=config.bucket,
            region=config.region,
            retry_attempts=config.retry_attempts,
            retry_delay=config.retry_delay,
            profile_name=config.profile_name,
            **kwargs
        )

    def _ensure_bucket_exists(self) -> None:
        """Ensure the landing bucket exists, creating it if necessary."""
        try:
            self.s3_client.head_bucket(Bucket=self.bucket)
            logger.info(f"Bucket {self.bucket} already exists")
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code')
            if error_code not in ('404', 'NoSuchBucket'):
                logger.error(f"Error checking bucket {self.bucket}: {e}")
                raise LandingStoreError(f"Cannot access bucket {self.bucket}: {e}") from e

            logger.info(f"Creating bucket {self.bucket} in region {self.region}")
            try:
                if self.region == 'us-east-1':
                    self.s3_client.create_bucket(Bucket=self.bucket)
                else:
                    self.s3_client.create_bucket(
                        Bucket=self.bucket,
                        CreateBucketConfiguration={'LocationConstraint': self.region}
                    )
            except ClientError as create_error:
                logger.error(f"Failed to create bucket {self.bucket}: {create_error}")
                raise LandingStoreError(f"Cannot create bucket {self.bucket}: {create_error}") from create_error
            logger.info(f"Successfully created bucket {self.bucket}")

    def _calculate_md5(self, file_path: str) -> str:
        """
        Calculate MD5 hash of a file.

        Args:
            file_path: Path to the file

        Returns:
            MD5 hash as a hex string
        """
        md5_hash = hashlib.md5()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(4096), b""):
                md5_hash.update(chunk)
        return md5_hash.hexdigest()

    def _verify_upload(self, object_key: str, original_md5: str) -> bool:
        """Check the uploaded object carries the MD5 we computed locally."""
        try:
            response = self.s3_client.head_object(Bucket=self.bucket, Key=object_key)
        except ClientError as e:
            logger.error(f"Error verifying upload: {e}")
            return False

        s3_md5 = response.get('Metadata', {}).get('md5_hash')
        if s3_md5 is not None and s3_md5 != original_md5:
            logger.warning(f"MD5 mismatch for s3://{self.bucket}/{object_key}: expected {original_md5}, got {s3_md5}")
            return False
        return True

    def _upload_with_retry(self, file_path: str, object_key: str, metadata: Dict[str, str]) -> bool:
        """
        Upload a file to S3 with exponential backoff between attempts.
        """
        md5_hash = self._calculate_md5(file_path)
        content_type = CONTENT_TYPES.get(Path(file_path).suffix.lower(), 'application/octet-stream')
        metadata = dict(metadata, md5_hash=md5_hash, original_size=str(os.path.getsize(file_path)))

        attempt = 0
        while attempt < self.retry_attempts:
            try:
                logger.info(f"Uploading {file_path} to s3://{self.bucket}/{object_key} (Attempt {attempt + 1})")
                self.s3_client.upload_file(
                    Filename=file_path,
                    Bucket=self.bucket,
                    Key=object_key,
                    ExtraArgs={'Metadata': metadata, 'ContentType': content_type},
                    Config=self.transfer_config
                )
                if self._verify_upload(object_key, md5_hash):
                    logger.info(f"Successfully uploaded and verified file to s3://{self.bucket}/{object_key}")
                    return True
                logger.warning(f"Upload verification failed for s3://{self.bucket}/{object_key}")
            except (ClientError, EndpointConnectionError) as e:
                logger.warning(f"Upload attempt {attempt + 1} failed: {e}")

            attempt += 1
            if attempt < self.retry_attempts:
                sleep_time = self.retry_delay * (2 ** attempt)
                logger.info(f"Retrying in {sleep_time} seconds...")
                time.sleep(sleep_time)

        logger.error(f"Failed to upload {file_path} after {self.retry_attempts} attempts")
        return False

    def upload_entity_file(self, file_path: str, entity: str) -> Optional[str]:
        """
        Upload a CSV file under its entity's landing prefix.

        Args:
            file_path: Path to the CSV file
            entity: Entity name (patients, claims, treatments)

        Returns:
            S3 URI of the uploaded file if successful, None otherwise
        """
        schema = get_schema(entity)
        if not os.path.exists(file_path):
            logger.error(f"File not found: {file_path}")
            return None

        filename = os.path.basename(file_path)
        object_key = f"{schema.prefix}{filename}"
        metadata = {
            'source': 'medical_pipeline',
            'entity': schema.name,
            'upload_date': time.strftime("%Y-%m-%d %H:%M:%S"),
            'original_filename': filename
        }
        if self._upload_with_retry(file_path, object_key, metadata):
            return f"s3://{self.bucket}/{object_key}"
        return None

    def upload_export(self, file_path: str, layer: str, partition_key: Optional[str] = None) -> Optional[str]:
        """
        Upload a layer export under exports/<layer>/<partition>/.

        Args:
            file_path: Path to the exported file
            layer: Layer name ('raw', 'staging', 'fact', 'curated')
            partition_key: Optional partition (default: date=<today>)

        Returns:
            S3 URI of the uploaded file if successful, None otherwise
        """
        if not os.path.exists(file_path):
            logger.error(f"File not found: {file_path}")
            return None

        partition_key = partition_key or f"date={time.strftime('%Y-%m-%d')}"
        filename = os.path.basename(file_path)
        object_key = f"{EXPORT_PREFIX}/{layer}/{partition_key}/{filename}"
        metadata = {
            'source': 'medical_pipeline',
            'layer': layer,
            'upload_date': time.strftime("%Y-%m-%d %H:%M:%S"),
            'original_filename': filename
        }
        if self._upload_with_retry(file_path, object_key, metadata):
            return f"s3://{self.bucket}/{object_key}"
        return None

    def list_entity_files(self, entity: str) -> List[Dict[str, object]]:
        """
        List objects landed under an entity's prefix.

        Returns:
            List of dicts with key, size and last_modified
        """
        schema = get_schema(entity)
        result = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=schema.prefix):
                for obj in page.get('Contents', []):
                    result.append({
                        'key': obj['Key'],
                        'size': obj['Size'],
                        'last_modified': obj['LastModified'].strftime("%Y-%m-%d %H:%M:%S"),
                    })
        except ClientError as e:
            logger.error(f"Error listing {schema.prefix} in {self.bucket}: {e}")
            raise LandingStoreError(f"Cannot list s3://{self.bucket}/{schema.prefix}: {e}") from e
        return result

    def download_object(self, bucket: str, key: str, download_path: str) -> str:
        """
        Download a landed object to a local path.

        Returns:
            The local path

        Raises:
            LandingStoreError: If the object cannot be downloaded
        """
        directory = os.path.dirname(download_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            self.s3_client.download_file(bucket, key, download_path)
        except (ClientError, EndpointConnectionError) as e:
            logger.error(f"Error downloading s3://{bucket}/{key}: {e}")
            raise LandingStoreError(f"Cannot download s3://{bucket}/{key}: {e}") from e
        logger.info(f"Downloaded s3://{bucket}/{key} to {download_path}")
        return download_path
