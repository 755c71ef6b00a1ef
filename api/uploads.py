"""
Upload handling: store a new source video and queue it for processing.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

from databases import Database

from api.database import videos
from api.db_retry import db_execute_with_retry
from api.enums import ProcessingStatus
from api.metrics import VIDEO_UPLOADS_TOTAL
from api.paths import split_object_path, validate_key_component, video_original_path
from config import SUPPORTED_VIDEO_EXTENSIONS, SUPPORTED_VIDEO_EXTENSIONS_STR, VIDEOS_BUCKET
from worker.job_queue import JobScheduler
from worker.models import QUALITY_CATALOG, ProcessingJob
from worker.storage import DEFAULT_CONTENT_TYPE, ObjectStore, StorageError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 255


class UploadRejected(ValueError):
    """The upload request is invalid (bad extension, missing title, bad owner id)."""


@dataclass(frozen=True)
class AcceptedUpload:
    asset_id: str
    title: str
    source_object_path: str
    status: ProcessingStatus = ProcessingStatus.UPLOADING


def generate_asset_id() -> str:
    return str(uuid.uuid4())


async def accept_video_upload(
    db: Database,
    store: ObjectStore,
    scheduler: JobScheduler,
    owner_id: str,
    file_path: Path,
    filename: str,
    title: str,
    description: Optional[str] = None,
    content_type: str = DEFAULT_CONTENT_TYPE,
) -> AcceptedUpload:
    """
    Store an uploaded source video and queue it for processing.

    The source is stored at <owner>/<asset>/original.<ext> in the videos
    bucket, a videos row is inserted with status "uploading" and a job for the
    full quality catalog is submitted. The caller gets the asset id back
    without waiting for processing.

    Raises:
        UploadRejected: Unsupported extension, empty title or invalid owner id
        StorageError: The source could not be stored
    """
    ext = PurePosixPath(filename).suffix.lower()
    if ext not in SUPPORTED_VIDEO_EXTENSIONS:
        VIDEO_UPLOADS_TOTAL.labels(result="rejected").inc()
        raise UploadRejected(f"Unsupported file type '{ext or filename}'. Supported: {SUPPORTED_VIDEO_EXTENSIONS_STR}")

    title = (title or "").strip()
    if not title:
        VIDEO_UPLOADS_TOTAL.labels(result="rejected").inc()
        raise UploadRejected("Video title is required")
    if len(title) > MAX_TITLE_LENGTH:
        VIDEO_UPLOADS_TOTAL.labels(result="rejected").inc()
        raise UploadRejected(f"Video title must be at most {MAX_TITLE_LENGTH} characters")

    if not validate_key_component(owner_id):
        VIDEO_UPLOADS_TOTAL.labels(result="rejected").inc()
        raise UploadRejected(f"Invalid owner id: {owner_id!r}")

    asset_id = generate_asset_id()
    key = video_original_path(owner_id, asset_id, ext)

    try:
        source_object_path = await store.upload(VIDEOS_BUCKET, key, Path(file_path), content_type)
    except StorageError:
        VIDEO_UPLOADS_TOTAL.labels(result="failed").inc()
        logger.exception(f"Failed to store source for asset {asset_id}")
        raise

    now = datetime.now(timezone.utc)
    try:
        await db_execute_with_retry(
            db,
            videos.insert().values(
                id=asset_id,
                owner_id=owner_id,
                title=title,
                description=description or None,
                source_object_path=source_object_path,
                processing_status=ProcessingStatus.UPLOADING.value,
                created_at=now,
                updated_at=now,
            ),
        )
    except Exception:
        VIDEO_UPLOADS_TOTAL.labels(result="failed").inc()
        logger.exception(f"Failed to record asset {asset_id}, removing stored source")
        try:
            bucket, stored_key = split_object_path(source_object_path)
            await store.delete(bucket, stored_key)
        except StorageError as e:
            logger.warning(f"Could not remove orphaned source {source_object_path}: {e}")
        raise

    scheduler.submit(
        ProcessingJob(
            asset_id=asset_id,
            owner_id=owner_id,
            source_object_path=source_object_path,
            target_tiers=QUALITY_CATALOG,
        )
    )
    VIDEO_UPLOADS_TOTAL.labels(result="accepted").inc()
    logger.info(f"Accepted upload {filename} as asset {asset_id} for owner {owner_id}")

    return AcceptedUpload(asset_id=asset_id, title=title, source_object_path=source_object_path)
