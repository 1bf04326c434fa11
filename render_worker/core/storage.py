"""
Object Storage

S3-compatible storage for rendered outputs (AWS S3 or MinIO):
- Lazy bucket creation on first use
- Deterministic keys per job (outputs/<job_id>.mp4)
- Time-limited signed URLs for retrieval
"""

import logging
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, BinaryIO, Optional, Tuple, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings, get_settings
from .errors import StorageUploadFailed

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPE = "video/mp4"

# MinIO needs path-style addressing and SigV4 signed URLs
S3_CONFIG = Config(
    retries={
        "max_attempts": 3,
        "mode": "standard",
    },
    connect_timeout=5,
    read_timeout=60,
    s3={"addressing_style": "path"},
    signature_version="s3v4",
)

# head_bucket reports a missing bucket with these codes
_MISSING_BUCKET_CODES = {"404", "NoSuchBucket", "NotFound"}


def create_s3_client(settings: Settings) -> Any:
    """
    Build an S3 client from settings.

    Credentials fall back to the standard boto3 chain (env, profile, role)
    when no access key is configured.
    """
    kwargs = {
        "region_name": settings.s3_region,
        "config": S3_CONFIG,
    }
    if settings.s3_endpoint:
        kwargs["endpoint_url"] = settings.s3_endpoint
    if settings.s3_access_key and settings.s3_secret_key:
        kwargs["aws_access_key_id"] = settings.s3_access_key
        kwargs["aws_secret_access_key"] = settings.s3_secret_key

    return boto3.client("s3", **kwargs)


class ObjectStorage:
    """Uploads rendered files and hands out signed URLs."""

    def __init__(self, settings: Optional[Settings] = None, client: Any = None):
        self.settings = settings or get_settings()
        self.client = client or create_s3_client(self.settings)
        self.bucket = self.settings.s3_bucket
        self._bucket_ready = False
        self._bucket_lock = threading.Lock()

    def ensure_bucket(self) -> None:
        """Create the bucket if it does not exist yet (once per instance)."""
        if self._bucket_ready:
            return

        with self._bucket_lock:
            if self._bucket_ready:
                return
            try:
                self.client.head_bucket(Bucket=self.bucket)
                logger.info(f"Bucket {self.bucket} exists")
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code", "")
                if code not in _MISSING_BUCKET_CODES:
                    raise
                logger.info(f"Creating bucket {self.bucket}")
                self._create_bucket()
            self._bucket_ready = True

    def _create_bucket(self) -> None:
        params = {"Bucket": self.bucket}
        # us-east-1 rejects an explicit LocationConstraint
        if self.settings.s3_region != "us-east-1":
            params["CreateBucketConfiguration"] = {
                "LocationConstraint": self.settings.s3_region
            }
        try:
            self.client.create_bucket(**params)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise

    def put(self, key: str, body: Union[bytes, BinaryIO], content_type: str) -> str:
        """
        Store an object.

        Returns:
            The object key
        """
        self.ensure_bucket()
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )
        return key

    def signed_url(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        """Presigned GET URL valid for ttl_seconds (default from settings)."""
        expires_in = ttl_seconds or self.settings.signed_url_expiry_seconds
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def output_key(self, job_id: str) -> str:
        return f"{self.settings.output_prefix}{job_id}.mp4"

    def upload_video(self, job_id: str, file_path: Union[str, Path]) -> Tuple[str, str]:
        """
        Upload a rendered video and return (key, signed_url).

        Raises:
            StorageUploadFailed: If the file cannot be read or stored
        """
        key = self.output_key(job_id)
        try:
            with open(file_path, "rb") as f:
                self.put(key, f, VIDEO_CONTENT_TYPE)
            url = self.signed_url(key)
        except (BotoCoreError, ClientError, OSError) as e:
            raise StorageUploadFailed(
                f"Failed to upload output: {e}",
                {"key": key, "bucket": self.bucket},
            ) from e

        logger.info(f"Uploaded video for job {job_id}: {key}")
        return key, url


@lru_cache(maxsize=1)
def get_object_storage() -> ObjectStorage:
    """Get the cached storage client for this process."""
    return ObjectStorage()
