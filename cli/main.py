#!/usr/bin/env python3
"""
hlsforge CLI - inspect rendition plans, process assets and check playback variants.
"""

import argparse
import asyncio
import logging
import os
import sys
from functools import partial
from pathlib import Path

from rich.console import Console
from rich.table import Table

from api.database import configure_database, database
from api.enums import JobOutcome
from api.errors import truncate_error
from api.paths import split_object_path, validate_key_component
from api.playback import get_hls_variants
from api.status import DatabaseStatusPublisher, InMemoryStatusPublisher
from api.uploads import UploadRejected, accept_video_upload
from config import ERROR_DETAIL_MAX_LENGTH, LOG_LEVEL, SUPPORTED_VIDEO_EXTENSIONS_STR
from worker.job_queue import JobScheduler
from worker.main import configure_logging, run_claimed_job
from worker.models import ProcessingJob, format_bitrate
from worker.pipeline import run_job
from worker.planner import plan_renditions
from worker.stage import ObjectStage
from worker.storage import S3ObjectStore, StorageError

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def key_component(value: str) -> str:
    """Argparse type converter for owner and asset ids."""
    if not validate_key_component(value):
        raise argparse.ArgumentTypeError(f"invalid id: {value!r}")
    return value


def validate_file(file_path: Path) -> int:
    """
    Validate file exists and is readable.

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If file doesn't exist, isn't readable, or is empty
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    return file_size


async def run_one_shot(scheduler: JobScheduler, submit) -> None:
    """Run the scheduler until everything submitted by submit() has finished."""
    runner = asyncio.create_task(scheduler.run())
    try:
        await submit()
        await scheduler.wait_idle()
    finally:
        scheduler.shutdown()
        await runner


def cmd_plan(args):
    """Show which tiers would be produced for a source height."""
    planned = plan_renditions(args.height)
    if not planned:
        console.print(f"No tiers fit a {args.height}p source; the manifest would list no variants.")
        return

    table = Table(title=f"Renditions for a {args.height}p source")
    table.add_column("Tier")
    table.add_column("Height", justify="right")
    table.add_column("Video bitrate", justify="right")
    table.add_column("Audio bitrate", justify="right")
    for descriptor in planned:
        table.add_row(
            descriptor.name,
            str(descriptor.height),
            format_bitrate(descriptor.bitrate),
            format_bitrate(descriptor.audio_bitrate),
        )
    console.print(table)


async def _process(args) -> JobOutcome:
    split_object_path(args.source)

    store = S3ObjectStore()
    stage = ObjectStage(store)
    outcomes = []

    if args.dry_run:
        publisher = InMemoryStatusPublisher()
    else:
        await database.connect()
        await configure_database()
        publisher = DatabaseStatusPublisher(database)

    async def handler(job: ProcessingJob):
        outcomes.append(await run_job(job, stage, publisher))

    scheduler = JobScheduler(handler, concurrency=1)
    job = ProcessingJob(asset_id=args.asset, owner_id=args.owner, source_object_path=args.source)

    async def submit():
        scheduler.submit(job)

    try:
        await store.ensure_buckets()
        await run_one_shot(scheduler, submit)
    finally:
        if not args.dry_run:
            await database.disconnect()

    return outcomes[0] if outcomes else JobOutcome.FAILED


def cmd_process(args):
    """Process one stored source end to end."""
    try:
        outcome = asyncio.run(_process(args))
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except StorageError as e:
        console.print(f"[red]Storage error:[/red] {truncate_error(str(e), ERROR_DETAIL_MAX_LENGTH)}")
        sys.exit(1)

    if outcome == JobOutcome.DONE:
        console.print(f"[green]Asset {args.asset} published[/green]")
    else:
        console.print(f"[red]Asset {args.asset} not published ({outcome.value})[/red]")
        sys.exit(1)


async def _upload(args):
    store = S3ObjectStore()
    stage = ObjectStage(store)
    await database.connect()
    await configure_database()
    accepted = []
    try:
        await store.ensure_buckets()
        scheduler = JobScheduler(
            partial(run_claimed_job, stage=stage, publisher=DatabaseStatusPublisher(database)),
            concurrency=1,
        )

        async def submit():
            accepted.append(
                await accept_video_upload(
                    database,
                    store,
                    scheduler,
                    owner_id=args.owner,
                    file_path=Path(args.file),
                    filename=Path(args.file).name,
                    title=args.title or Path(args.file).stem,
                    description=args.description,
                )
            )

        if args.no_wait:
            await submit()
        else:
            await run_one_shot(scheduler, submit)
    finally:
        await database.disconnect()
    return accepted[0]


def cmd_upload(args):
    """Upload a video file and process it."""
    try:
        validate_file(Path(args.file))
        accepted = asyncio.run(_upload(args))
    except (CLIError, UploadRejected) as e:
        console.print(f"[red]Error:[/red] {e}")
        if isinstance(e, UploadRejected):
            console.print(f"Supported formats: {SUPPORTED_VIDEO_EXTENSIONS_STR}")
        sys.exit(1)
    except StorageError as e:
        console.print(f"[red]Storage error:[/red] {truncate_error(str(e), ERROR_DETAIL_MAX_LENGTH)}")
        sys.exit(1)

    console.print(f"Asset ID: {accepted.asset_id}")
    console.print(f"Source: {accepted.source_object_path}")
    if args.no_wait:
        console.print("Stored with status 'uploading'; a running worker will pick it up.")


def cmd_variants(args):
    """Show which HLS variants of an asset exist in storage."""
    try:
        result = asyncio.run(get_hls_variants(S3ObjectStore(), args.owner, args.asset))
    except StorageError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        sys.exit(1)

    console.print(f"Master: {result.master}")
    table = Table()
    table.add_column("Tier")
    table.add_column("Playlist")
    for name, path in result.variants.items():
        table.add_row(name, path or "[dim]missing[/dim]")
    console.print(table)
    console.print(f"Preferred: {result.preferred or 'none'}")


def main():
    parser = argparse.ArgumentParser(prog="hlsforge", description="hlsforge CLI - HLS ingestion pipeline")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level (default: %(default)s)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Plan command
    plan_parser = subparsers.add_parser("plan", help="Show the tiers planned for a source height")
    plan_parser.add_argument("--height", type=positive_int, required=True, help="Source height in pixels")
    plan_parser.set_defaults(func=cmd_plan)

    # Process command
    process_parser = subparsers.add_parser("process", help="Process a stored source video")
    process_parser.add_argument("--owner", type=key_component, required=True, help="Owner id")
    process_parser.add_argument("--asset", type=key_component, required=True, help="Asset id")
    process_parser.add_argument("--source", required=True, help="Source object path (<bucket>/<key>)")
    process_parser.add_argument(
        "--dry-run", action="store_true", help="Record status changes in memory instead of the database"
    )
    process_parser.set_defaults(func=cmd_process)

    # Upload command
    upload_parser = subparsers.add_parser("upload", help="Upload a video file and process it")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.add_argument("--owner", type=key_component, required=True, help="Owner id")
    upload_parser.add_argument("-t", "--title", help="Video title (default: filename)")
    upload_parser.add_argument("-d", "--description", help="Video description")
    upload_parser.add_argument("--no-wait", action="store_true", help="Store and record only, do not process here")
    upload_parser.set_defaults(func=cmd_upload)

    # Variants command
    variants_parser = subparsers.add_parser("variants", help="List stored HLS variants of an asset")
    variants_parser.add_argument("--owner", type=key_component, required=True, help="Owner id")
    variants_parser.add_argument("--asset", type=key_component, required=True, help="Asset id")
    variants_parser.set_defaults(func=cmd_variants)

    args = parser.parse_args()
    configure_logging(args.log_level.upper())
    logging.getLogger("botocore").setLevel(logging.WARNING)
    args.func(args)


if __name__ == "__main__":
    main()
