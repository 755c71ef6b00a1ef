"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class ProcessingStatus(str, Enum):
    """Processing status of an uploaded video asset.

    UPLOADING, PROCESSING and DONE are the legacy values external consumers
    rely on. FAILED is only written when MARK_FAILED_ON_FATAL is enabled.
    """

    UPLOADING = "uploading"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class TierOutcome(str, Enum):
    """Outcome of a single rendition, used as a metrics label."""

    SUCCEEDED = "succeeded"
    TRANSCODE_FAILED = "transcode_failed"
    UPLOAD_FAILED = "upload_failed"
    MISSING = "missing"


class JobOutcome(str, Enum):
    """Terminal outcome of a processing job."""

    DONE = "done"
    ALL_TIERS_FAILED = "all_tiers_failed"
    FAILED = "failed"
    SKIPPED = "skipped"  # another process claimed the upload first
