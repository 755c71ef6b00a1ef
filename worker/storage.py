"""
Object storage access (S3 API; MinIO in development).

The pipeline talks to storage through the ObjectStore protocol so tests and
the CLI dry run can substitute an in-memory store. S3ObjectStore wraps a
synchronous boto3 client and runs every call in a worker thread.
"""

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional, Protocol

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config import S3_ACCESS_KEY, S3_ENDPOINT_URL, S3_REGION, S3_SECRET_KEY, USERS_BUCKET, VIDEOS_BUCKET

logger = logging.getLogger(__name__)

HLS_PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
HLS_SEGMENT_CONTENT_TYPE = "video/MP2T"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_NOT_FOUND_CODES = frozenset(["404", "NoSuchKey", "NotFound", "NoSuchBucket"])
_BUCKET_EXISTS_CODES = frozenset(["BucketAlreadyOwnedByYou", "BucketAlreadyExists"])


class StorageError(Exception):
    """Base class for object storage failures."""


class ObjectNotFoundError(StorageError):
    """The requested object (or its bucket) does not exist."""

    def __init__(self, bucket: str, key: str):
        super().__init__(f"Object not found: {bucket}/{key}")
        self.bucket = bucket
        self.key = key


class StorageIOError(StorageError):
    """Transport or service error while talking to storage."""


def content_type_for(path) -> str:
    """Content type to store an HLS artifact with, chosen by file extension."""
    suffix = Path(str(path)).suffix.lower()
    if suffix == ".m3u8":
        return HLS_PLAYLIST_CONTENT_TYPE
    if suffix == ".ts":
        return HLS_SEGMENT_CONTENT_TYPE
    return DEFAULT_CONTENT_TYPE


class ObjectStore(Protocol):
    """Minimal object storage interface the pipeline depends on."""

    async def download(self, bucket: str, key: str, dest: Path) -> None: ...

    async def upload(self, bucket: str, key: str, src: Path, content_type: str) -> str: ...

    async def delete(self, bucket: str, key: str) -> None: ...

    async def stat_exists(self, bucket: str, key: str) -> bool: ...


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def create_s3_client(
    endpoint_url: Optional[str] = S3_ENDPOINT_URL,
    access_key: str = S3_ACCESS_KEY,
    secret_key: str = S3_SECRET_KEY,
    region: str = S3_REGION,
):
    """
    SDK client for server-side upload/download.

    Path-style addressing keeps bucket names out of the hostname, which MinIO
    needs when addressed by IP or localhost.
    """
    session = boto3.session.Session(
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name=region,
    )
    return session.client(
        "s3",
        endpoint_url=endpoint_url or None,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


class S3ObjectStore:
    """ObjectStore backed by a boto3 S3 client."""

    def __init__(self, client=None):
        self.client = client if client is not None else create_s3_client()

    async def download(self, bucket: str, key: str, dest: Path) -> None:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(self.client.download_file, bucket, key, str(dest))
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(bucket, key) from e
            raise StorageIOError(f"Download of {bucket}/{key} failed: {e}") from e
        except (BotoCoreError, OSError) as e:
            raise StorageIOError(f"Download of {bucket}/{key} failed: {e}") from e

    async def upload(self, bucket: str, key: str, src: Path, content_type: str) -> str:
        try:
            await asyncio.to_thread(
                self.client.upload_file,
                str(src),
                bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError, S3UploadFailedError, OSError) as e:
            raise StorageIOError(f"Upload of {bucket}/{key} failed: {e}") from e
        return f"{bucket}/{key}"

    async def delete(self, bucket: str, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(bucket, key) from e
            raise StorageIOError(f"Delete of {bucket}/{key} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageIOError(f"Delete of {bucket}/{key} failed: {e}") from e

    async def stat_exists(self, bucket: str, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise StorageIOError(f"Stat of {bucket}/{key} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageIOError(f"Stat of {bucket}/{key} failed: {e}") from e
        return True

    async def ensure_buckets(self, buckets: Iterable[str] = (VIDEOS_BUCKET, USERS_BUCKET)) -> None:
        """Create any missing bucket. Safe to call from several processes at startup."""
        for bucket in buckets:
            try:
                await asyncio.to_thread(self.client.head_bucket, Bucket=bucket)
                continue
            except ClientError as e:
                if _error_code(e) not in _NOT_FOUND_CODES:
                    raise StorageIOError(f"Checking bucket {bucket} failed: {e}") from e
            except BotoCoreError as e:
                raise StorageIOError(f"Checking bucket {bucket} failed: {e}") from e

            try:
                await asyncio.to_thread(self.client.create_bucket, Bucket=bucket)
                logger.info(f"Created bucket {bucket}")
            except ClientError as e:
                if _error_code(e) in _BUCKET_EXISTS_CODES:
                    logger.info(f"Bucket {bucket} was created concurrently")
                    continue
                raise StorageIOError(f"Creating bucket {bucket} failed: {e}") from e
            except BotoCoreError as e:
                raise StorageIOError(f"Creating bucket {bucket} failed: {e}") from e
