#!/usr/bin/env python3
"""
Standalone processing worker.

Connects to the database and object storage, makes sure the buckets exist,
queues assets still waiting in "uploading" and then processes jobs until
SIGINT/SIGTERM. Newly uploaded assets are picked up by polling the videos
table. Assets left in "processing" by a crash are stalled and are never
retried here; operators reprocess them with `hlsforge process`.

Run with: python -m worker.main
"""

import asyncio
import logging
import signal
import uuid
from functools import partial
from typing import Iterable, List

import sqlalchemy as sa
from databases import Database

from api.database import configure_database, database, videos
from api.enums import JobOutcome, ProcessingStatus
from api.status import DatabaseStatusPublisher
from config import LOG_LEVEL, WORKER_CONCURRENCY, WORKER_HEALTH_PORT, WORKER_POLL_INTERVAL
from worker.alerts import alert_worker_shutdown, alert_worker_startup, send_alert_fire_and_forget
from worker.health_server import HealthServer
from worker.job_queue import JobScheduler
from worker.models import ProcessingJob
from worker.pipeline import run_job
from worker.stage import ObjectStage
from worker.storage import S3ObjectStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


async def run_claimed_job(job: ProcessingJob, stage: ObjectStage, publisher: DatabaseStatusPublisher) -> JobOutcome:
    """Run the pipeline for a fresh upload, unless another process claimed it first."""
    if not await publisher.claim_upload(job.asset_id):
        logger.info(f"Asset {job.asset_id} is no longer waiting for processing, skipping")
        return JobOutcome.SKIPPED
    return await run_job(job, stage, publisher)


def create_scheduler(
    stage: ObjectStage, publisher: DatabaseStatusPublisher, concurrency: int = WORKER_CONCURRENCY
) -> JobScheduler:
    """Build a scheduler whose jobs claim an upload and run the full pipeline."""
    return JobScheduler(partial(run_claimed_job, stage=stage, publisher=publisher), concurrency=concurrency)


async def find_waiting_uploads(
    db: Database,
    statuses: Iterable[ProcessingStatus] = (ProcessingStatus.UPLOADING,),
) -> List[ProcessingJob]:
    """Jobs for stored sources in the given statuses, oldest first."""
    query = (
        sa.select(videos.c.id, videos.c.owner_id, videos.c.source_object_path)
        .where(videos.c.processing_status.in_([s.value for s in statuses]))
        .where(videos.c.source_object_path.isnot(None))
        .order_by(videos.c.created_at)
    )
    rows = await db.fetch_all(query)
    return [
        ProcessingJob(asset_id=row["id"], owner_id=row["owner_id"], source_object_path=row["source_object_path"])
        for row in rows
    ]


async def enqueue_uploads(db: Database, scheduler: JobScheduler) -> int:
    """Submit every asset waiting in "uploading" not already known to the scheduler. Returns the count."""
    jobs = await find_waiting_uploads(db)
    submitted = 0
    for job in jobs:
        if scheduler.contains(job.asset_id):
            continue
        scheduler.submit(job)
        submitted += 1
    return submitted


async def poll_uploads(db: Database, scheduler: JobScheduler, interval: float) -> None:
    """Periodically queue assets that finished uploading."""
    while not scheduler.is_shutting_down:
        await asyncio.sleep(interval)
        try:
            count = await enqueue_uploads(db, scheduler)
        except Exception as e:
            logger.warning(f"Polling for new uploads failed: {e}")
            continue
        if count:
            logger.info(f"Queued {count} new upload(s)")


async def worker_main() -> None:
    configure_logging()
    worker_id = str(uuid.uuid4())

    await database.connect()
    await configure_database()

    store = S3ObjectStore()
    await store.ensure_buckets()

    stage = ObjectStage(store)
    scheduler = create_scheduler(stage, DatabaseStatusPublisher(database))

    health = HealthServer(port=WORKER_HEALTH_PORT, stats_fn=scheduler.stats)
    await health.start()
    health.set_ready(True)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.shutdown)

    waiting = await enqueue_uploads(database, scheduler)
    logger.info(f"Processing worker started (ID: {worker_id[:8]}), {waiting} waiting upload(s) queued")
    send_alert_fire_and_forget(alert_worker_startup(worker_id=worker_id, concurrency=scheduler.concurrency))

    poller = None
    if WORKER_POLL_INTERVAL > 0:
        poller = asyncio.create_task(poll_uploads(database, scheduler, WORKER_POLL_INTERVAL))

    try:
        await scheduler.run()
    finally:
        logger.info("Shutting down worker...")
        if poller is not None:
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass
        # Awaited directly: the loop is about to close
        await alert_worker_shutdown(worker_id=worker_id, jobs_pending=scheduler.stats()["queued"])
        await health.stop()
        await database.disconnect()
        logger.info("Worker stopped gracefully.")


if __name__ == "__main__":
    asyncio.run(worker_main())
