"""
Processing pipeline: the body of one job.

    processing -> download -> probe -> plan -> transcode tiers (concurrently)
    -> upload tiers -> confirm tier playlists -> master manifest -> done
    -> delete source

Tier failures are local: a tier that fails to transcode or upload is left
out of the manifest. Failures that leave nothing to publish are fatal and
propagate as PipelineError subclasses to run_job(), which logs, counts and
alerts them. The source object is deleted only once the manifest is stored
and "done" has been recorded.
"""

import asyncio
import dataclasses
import logging
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from api.enums import JobOutcome, ProcessingStatus, TierOutcome
from api.errors import describe_exception, truncate_error
from api.metrics import (
    PROCESSING_JOB_DURATION_SECONDS,
    PROCESSING_JOBS_ACTIVE,
    PROCESSING_JOBS_TOTAL,
    RENDITIONS_TOTAL,
    SOURCE_DELETES_TOTAL,
    TRANSCODE_RETRIES_TOTAL,
)
from api.paths import hls_variant_dir, hls_variant_index
from api.status import StatusPublisher
from config import (
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    MARK_FAILED_ON_FATAL,
    PARALLEL_TIERS,
    TRANSCODE_MAX_ATTEMPTS,
    TRANSCODE_RETRY_BACKOFF,
)
from worker.alerts import alert_all_renditions_failed, alert_job_failed, send_alert_fire_and_forget
from worker.errors import AllTiersFailed, PipelineError, ProbeFailure, TranscodeFailure
from worker.manifest import publish_master_manifest
from worker.models import ProcessingJob, QualityDescriptor, RenditionResult, VideoInfo
from worker.planner import plan_renditions
from worker.stage import ObjectStage
from worker.storage import StorageError
from worker.transcoder import calculate_ffmpeg_timeout, get_video_info, transcode_rendition

logger = logging.getLogger(__name__)


async def probe_source(job: ProcessingJob, source_path: Path) -> VideoInfo:
    """Probe the downloaded source. Any failure is fatal for the job."""
    try:
        info = await get_video_info(source_path)
    except (RuntimeError, ValueError, OSError) as e:
        raise ProbeFailure(job.asset_id, e) from e
    if info.height <= 0:
        raise ProbeFailure(job.asset_id, f"unusable source height {info.height}")
    logger.info(
        f"Asset {job.asset_id}: source {info.width}x{info.height}, {info.duration:.1f}s, codec {info.codec}"
    )
    return info


async def transcode_with_retry(
    source_path: Path,
    descriptor: QualityDescriptor,
    output_dir: Path,
    duration: float,
    asset_id: str,
    max_attempts: int = TRANSCODE_MAX_ATTEMPTS,
    backoff: float = TRANSCODE_RETRY_BACKOFF,
) -> None:
    """
    Encode one tier, retrying with exponential backoff.

    Partial output from a failed attempt is removed before the next one.

    Raises:
        TranscodeFailure: From the last attempt, once attempts are exhausted
    """
    timeout = calculate_ffmpeg_timeout(duration, descriptor.height)
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            await transcode_rendition(source_path, descriptor, output_dir, duration, timeout=timeout)
            return
        except TranscodeFailure as e:
            if attempt >= attempts:
                raise
            shutil.rmtree(output_dir, ignore_errors=True)
            TRANSCODE_RETRIES_TOTAL.labels(tier=descriptor.name).inc()
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                f"Asset {asset_id}: {descriptor.name} attempt {attempt}/{attempts} failed, "
                f"retrying in {delay:.1f}s: {truncate_error(e.detail, ERROR_SUMMARY_MAX_LENGTH)}"
            )
            await asyncio.sleep(delay)


async def transcode_tiers(
    job: ProcessingJob,
    source_path: Path,
    info: VideoInfo,
    planned: Sequence[QualityDescriptor],
    scratch_dir: Path,
    parallel_tiers: int = PARALLEL_TIERS,
) -> List[RenditionResult]:
    """
    Transcode every planned tier concurrently and wait for all of them.

    Args:
        parallel_tiers: Maximum simultaneous encoders (0 = one per tier)

    Returns:
        One result per planned tier, in planned order
    """
    semaphore = asyncio.Semaphore(parallel_tiers) if parallel_tiers > 0 else None

    async def run_tier(descriptor: QualityDescriptor) -> RenditionResult:
        output_dir = scratch_dir / descriptor.name
        try:
            if semaphore is not None:
                async with semaphore:
                    await transcode_with_retry(source_path, descriptor, output_dir, info.duration, job.asset_id)
            else:
                await transcode_with_retry(source_path, descriptor, output_dir, info.duration, job.asset_id)
        except TranscodeFailure as e:
            logger.error(
                f"Asset {job.asset_id}: {descriptor.name} failed: {truncate_error(e.detail, ERROR_DETAIL_MAX_LENGTH)}"
            )
            return RenditionResult(descriptor=descriptor, succeeded=False, error=e)
        except Exception as e:
            # Sibling tiers are still encoding into the same scratch directory
            logger.exception(f"Asset {job.asset_id}: {descriptor.name} failed unexpectedly")
            return RenditionResult(descriptor=descriptor, succeeded=False, error=TranscodeFailure(descriptor, e))

        logger.info(f"Asset {job.asset_id}: {descriptor.name} transcoded")
        return RenditionResult(
            descriptor=descriptor,
            succeeded=True,
            width=info.scaled_width(descriptor.height),
            height=descriptor.height,
        )

    return list(await asyncio.gather(*(run_tier(d) for d in planned)))


async def upload_tiers(
    job: ProcessingJob,
    stage: ObjectStage,
    results: Sequence[RenditionResult],
    scratch_dir: Path,
    outcomes: Dict[str, TierOutcome],
) -> List[RenditionResult]:
    """Upload each transcoded tier directory. An upload failure fails that tier only."""
    uploaded = []
    for result in results:
        if not result.succeeded:
            uploaded.append(result)
            continue

        remote_dir = hls_variant_dir(job.owner_id, job.asset_id, result.name)
        try:
            await stage.publish_directory(scratch_dir / result.name, remote_dir)
        except (StorageError, OSError) as e:
            logger.error(f"Asset {job.asset_id}: upload of {result.name} failed: {e}")
            outcomes[result.name] = TierOutcome.UPLOAD_FAILED
            failure = TranscodeFailure(result.descriptor, f"upload failed: {e}")
            uploaded.append(dataclasses.replace(result, succeeded=False, error=failure))
            continue

        uploaded.append(dataclasses.replace(result, remote_directory=remote_dir))
    return uploaded


async def confirm_tiers(
    job: ProcessingJob,
    stage: ObjectStage,
    results: Sequence[RenditionResult],
    outcomes: Dict[str, TierOutcome],
) -> List[RenditionResult]:
    """Keep only tiers whose variant playlist object exists in storage right now."""
    confirmed = []
    for result in results:
        if not result.succeeded:
            confirmed.append(result)
            continue

        key = hls_variant_index(job.owner_id, job.asset_id, result.name)
        try:
            exists = await stage.store.stat_exists(stage.bucket, key)
        except StorageError as e:
            logger.warning(f"Asset {job.asset_id}: could not stat {key}: {e}")
            exists = False

        if not exists:
            logger.error(f"Asset {job.asset_id}: {result.name} playlist missing from storage after upload")
            outcomes[result.name] = TierOutcome.MISSING
            failure = TranscodeFailure(result.descriptor, "variant playlist missing after upload")
            confirmed.append(dataclasses.replace(result, succeeded=False, error=failure))
            continue

        confirmed.append(result)
    return confirmed


def record_tier_outcomes(results: Sequence[RenditionResult], outcomes: Dict[str, TierOutcome]) -> None:
    for result in results:
        if result.succeeded:
            outcome = TierOutcome.SUCCEEDED
        else:
            outcome = outcomes.get(result.name, TierOutcome.TRANSCODE_FAILED)
        RENDITIONS_TOTAL.labels(tier=result.name, outcome=outcome.value).inc()


async def process_job(
    job: ProcessingJob,
    stage: ObjectStage,
    publisher: StatusPublisher,
    parallel_tiers: int = PARALLEL_TIERS,
) -> List[RenditionResult]:
    """
    Run one job to completion.

    Returns:
        The published renditions, in catalog order of the manifest

    Raises:
        DownloadFailure, ProbeFailure, AllTiersFailed, ManifestUploadFailure:
            Fatal for the job. The source object is kept and the status is
            left at "processing".
    """
    await publisher.set_processing_status(job.asset_id, ProcessingStatus.PROCESSING)

    async with stage.scope(job) as source_path:
        scratch_dir = stage.scratch_dir(job)
        info = await probe_source(job, source_path)

        planned = plan_renditions(info.height, job.target_tiers)
        logger.info(f"Asset {job.asset_id}: planned tiers {[d.name for d in planned]}")

        outcomes: Dict[str, TierOutcome] = {}
        results = await transcode_tiers(job, source_path, info, planned, scratch_dir, parallel_tiers)
        results = await upload_tiers(job, stage, results, scratch_dir, outcomes)
        results = await confirm_tiers(job, stage, results, outcomes)
        record_tier_outcomes(results, outcomes)

        published = [r for r in results if r.succeeded]
        if planned and not published:
            raise AllTiersFailed(job.asset_id, [r.error for r in results if r.error is not None])

        await publish_master_manifest(stage, job, published)
        await publisher.set_processing_status(job.asset_id, ProcessingStatus.DONE)

        deleted = await stage.delete_source(job)
        SOURCE_DELETES_TOTAL.labels(result="success" if deleted else "failed").inc()

    logger.info(f"Asset {job.asset_id}: published {[r.name for r in published]}")
    return published


async def _mark_failed(job: ProcessingJob, publisher: StatusPublisher, error: str) -> None:
    try:
        await publisher.set_processing_status(job.asset_id, ProcessingStatus.FAILED, error)
    except Exception as e:
        logger.error(f"Asset {job.asset_id}: could not record failed status: {e}")


async def run_job(
    job: ProcessingJob,
    stage: ObjectStage,
    publisher: StatusPublisher,
    parallel_tiers: int = PARALLEL_TIERS,
    mark_failed_on_fatal: Optional[bool] = None,
) -> JobOutcome:
    """
    Run a job and absorb its failure.

    Fatal errors are logged with the asset id, counted and alerted, and the
    outcome is returned instead of raised so the worker loop can move on.
    """
    if mark_failed_on_fatal is None:
        mark_failed_on_fatal = MARK_FAILED_ON_FATAL

    start = time.monotonic()
    PROCESSING_JOBS_ACTIVE.inc()
    try:
        await process_job(job, stage, publisher, parallel_tiers)
        outcome = JobOutcome.DONE
    except AllTiersFailed as e:
        failures = [f.detail for f in e.failures]
        logger.error(f"Asset {job.asset_id}: all renditions failed: {failures}")
        send_alert_fire_and_forget(alert_all_renditions_failed(job.asset_id, job.owner_id, failures))
        if mark_failed_on_fatal:
            await _mark_failed(job, publisher, str(e))
        outcome = JobOutcome.ALL_TIERS_FAILED
    except Exception as e:
        if isinstance(e, PipelineError):
            logger.error(f"Asset {job.asset_id}: job failed: {e}")
        else:
            logger.exception(f"Asset {job.asset_id}: unexpected error while processing")
        error = describe_exception(e)
        send_alert_fire_and_forget(alert_job_failed(job.asset_id, job.owner_id, error))
        if mark_failed_on_fatal:
            await _mark_failed(job, publisher, error)
        outcome = JobOutcome.FAILED
    finally:
        PROCESSING_JOBS_ACTIVE.dec()

    PROCESSING_JOBS_TOTAL.labels(outcome=outcome.value).inc()
    PROCESSING_JOB_DURATION_SECONDS.observe(time.monotonic() - start)
    return outcome
