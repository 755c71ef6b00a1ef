"""
Processing status publishing.

The pipeline reports status transitions through the StatusPublisher
protocol. Writes are idempotent: setting the same status twice is harmless.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple

import sqlalchemy as sa
from databases import Database

from api.database import videos
from api.db_retry import db_execute_with_retry, fetch_one_with_retry
from api.enums import ProcessingStatus
from api.errors import truncate_error
from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class StatusPublisher(Protocol):
    async def set_processing_status(
        self, asset_id: str, status: ProcessingStatus, error_message: Optional[str] = None
    ) -> None: ...


class DatabaseStatusPublisher:
    """Writes processing_status on the videos table."""

    def __init__(self, db: Database):
        self.db = db

    async def set_processing_status(
        self, asset_id: str, status: ProcessingStatus, error_message: Optional[str] = None
    ) -> None:
        status = ProcessingStatus(status)
        values = {
            "processing_status": status.value,
            "updated_at": datetime.now(timezone.utc),
        }
        if status == ProcessingStatus.FAILED:
            values["error_message"] = truncate_error(error_message, ERROR_DETAIL_MAX_LENGTH)
        elif status == ProcessingStatus.DONE:
            values["error_message"] = None

        await db_execute_with_retry(self.db, videos.update().where(videos.c.id == asset_id).values(**values))
        logger.info(f"Asset {asset_id} status -> {status.value}")

    async def claim_upload(self, asset_id: str) -> bool:
        """
        Move an asset from "uploading" to "processing" in one statement.

        Returns True for exactly one caller per upload. A worker poll and a
        CLI upload that both see the same row can only both run it if both
        claims succeed, which the status condition rules out.
        """
        query = (
            videos.update()
            .where(videos.c.id == asset_id)
            .where(videos.c.processing_status == ProcessingStatus.UPLOADING.value)
            .values(processing_status=ProcessingStatus.PROCESSING.value, updated_at=datetime.now(timezone.utc))
            .returning(videos.c.id)
        )
        claimed = await fetch_one_with_retry(self.db, query) is not None
        if claimed:
            logger.info(f"Asset {asset_id} claimed for processing")
        return claimed

    async def get_processing_status(self, asset_id: str) -> Optional[ProcessingStatus]:
        row = await fetch_one_with_retry(
            self.db, sa.select(videos.c.processing_status).where(videos.c.id == asset_id)
        )
        if row is None:
            return None
        return ProcessingStatus(row["processing_status"])


class InMemoryStatusPublisher:
    """Records every transition. Used by the CLI dry run and tests."""

    def __init__(self):
        self.history: List[Tuple[str, ProcessingStatus]] = []
        self.errors: dict = {}

    async def set_processing_status(
        self, asset_id: str, status: ProcessingStatus, error_message: Optional[str] = None
    ) -> None:
        status = ProcessingStatus(status)
        self.history.append((asset_id, status))
        if error_message:
            self.errors[asset_id] = error_message
        logger.info(f"Asset {asset_id} status -> {status.value}")

    def statuses_for(self, asset_id: str) -> List[ProcessingStatus]:
        return [status for aid, status in self.history if aid == asset_id]

    def current(self, asset_id: str) -> Optional[ProcessingStatus]:
        statuses = self.statuses_for(asset_id)
        return statuses[-1] if statuses else None
