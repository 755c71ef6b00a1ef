"""
Object stage: moves files between durable storage and the local scratch area.

Every job gets its own scratch directory, SCRATCH_DIR/<asset_id>/, which
holds the downloaded source and one subdirectory per tier. The directory is
owned by that job alone and is removed on every exit path when the job is
run inside ObjectStage.scope().
"""

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, List, Optional

from api.paths import split_object_path, validate_key_component
from config import DOWNLOAD_MAX_ATTEMPTS, DOWNLOAD_RETRY_BACKOFF, SCRATCH_DIR, VIDEOS_BUCKET
from worker.errors import DownloadFailure, SourceDeleteFailure
from worker.models import ProcessingJob
from worker.storage import ObjectNotFoundError, ObjectStore, StorageError, content_type_for

logger = logging.getLogger(__name__)


class ObjectStage:
    """Download, publish and clean up the files of one job at a time."""

    def __init__(
        self,
        store: ObjectStore,
        scratch_root: Path = SCRATCH_DIR,
        bucket: str = VIDEOS_BUCKET,
        download_attempts: int = DOWNLOAD_MAX_ATTEMPTS,
        download_backoff: float = DOWNLOAD_RETRY_BACKOFF,
    ):
        self.store = store
        self.scratch_root = Path(scratch_root)
        self.bucket = bucket
        self.download_attempts = max(1, download_attempts)
        self.download_backoff = download_backoff

    def scratch_dir(self, job: ProcessingJob) -> Path:
        if not validate_key_component(job.asset_id):
            raise ValueError(f"Invalid asset id for scratch directory: {job.asset_id!r}")
        return self.scratch_root / job.asset_id

    def local_source_path(self, job: ProcessingJob) -> Path:
        _, key = split_object_path(job.source_object_path)
        return self.scratch_dir(job) / f"original{PurePosixPath(key).suffix.lower()}"

    async def _download_with_retry(self, bucket: str, key: str, dest: Path, asset_id: str) -> None:
        for attempt in range(1, self.download_attempts + 1):
            try:
                await self.store.download(bucket, key, dest)
                return
            except ObjectNotFoundError:
                raise
            except StorageError as e:
                if attempt >= self.download_attempts:
                    raise
                delay = self.download_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Download of {bucket}/{key} for asset {asset_id} failed "
                    f"(attempt {attempt}/{self.download_attempts}), retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

    async def prepare(self, job: ProcessingJob) -> Path:
        """
        Create the job's scratch directory and download the source into it.

        Returns:
            Local path of the downloaded source

        Raises:
            DownloadFailure: If the source could not be retrieved. The scratch
                directory has already been removed when this is raised.
        """
        try:
            bucket, key = split_object_path(job.source_object_path)
            scratch = self.scratch_dir(job)
            scratch.mkdir(parents=True, exist_ok=True)
            local_path = self.local_source_path(job)
            await self._download_with_retry(bucket, key, local_path, job.asset_id)
        except (StorageError, ValueError, OSError) as e:
            self.teardown(job)
            raise DownloadFailure(job.asset_id, e) from e

        logger.info(f"Downloaded {job.source_object_path} for asset {job.asset_id} to {local_path}")
        return local_path

    async def publish(self, local_path: Path, key: str, bucket: Optional[str] = None) -> str:
        """
        Upload one file with the content type matching its extension.

        Returns:
            The "<bucket>/<key>" path of the stored object

        Raises:
            StorageError: If the upload failed
        """
        return await self.store.upload(bucket or self.bucket, key, local_path, content_type_for(local_path))

    async def publish_directory(self, local_dir: Path, key_prefix: str, bucket: Optional[str] = None) -> List[str]:
        """
        Upload every file of a tier directory under key_prefix.

        Segments go first and playlists last, so a playlist object never
        refers to a segment that has not been stored yet.

        Raises:
            StorageError: On the first failed upload
        """
        files = sorted(p for p in Path(local_dir).iterdir() if p.is_file())
        ordered = [p for p in files if p.suffix.lower() != ".m3u8"] + [p for p in files if p.suffix.lower() == ".m3u8"]

        published = []
        for path in ordered:
            published.append(await self.publish(path, f"{key_prefix}/{path.name}", bucket))
        return published

    def teardown(self, job: ProcessingJob) -> None:
        """Remove the job's scratch directory. Missing directories are fine."""
        try:
            scratch = self.scratch_dir(job)
        except ValueError:
            return
        if not scratch.exists():
            return
        try:
            shutil.rmtree(scratch)
        except OSError as e:
            logger.error(f"Failed to remove scratch directory {scratch} for asset {job.asset_id}: {e}")

    @asynccontextmanager
    async def scope(self, job: ProcessingJob) -> AsyncIterator[Path]:
        """Prepare the job's scratch area, yield the local source path, always tear down."""
        local_path = await self.prepare(job)
        try:
            yield local_path
        finally:
            self.teardown(job)

    async def delete_source(self, job: ProcessingJob) -> bool:
        """
        Delete the original upload from durable storage.

        Best effort: failures are logged and reported as False, never raised.
        """
        try:
            bucket, key = split_object_path(job.source_object_path)
            await self.store.delete(bucket, key)
        except (StorageError, ValueError) as e:
            failure = SourceDeleteFailure(job.asset_id, e)
            logger.warning(str(failure))
            return False

        logger.info(f"Deleted source {job.source_object_path} for asset {job.asset_id}")
        return True
