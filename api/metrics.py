"""
Prometheus metrics for the upload handler and the processing worker.

Metrics are exposed by the worker health server at /metrics in Prometheus
text format.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("hlsforge", "hlsforge application information")

# =============================================================================
# Upload Metrics
# =============================================================================

VIDEO_UPLOADS_TOTAL = Counter(
    "hlsforge_video_uploads_total",
    "Total video uploads",
    ["result"],  # accepted, rejected, failed
)

# =============================================================================
# Processing Metrics
# =============================================================================

PROCESSING_JOBS_TOTAL = Counter(
    "hlsforge_processing_jobs_total",
    "Total processing jobs by terminal outcome",
    ["outcome"],  # done, all_tiers_failed, failed
)

PROCESSING_JOBS_ACTIVE = Gauge(
    "hlsforge_processing_jobs_active",
    "Number of jobs currently being processed",
)

PROCESSING_QUEUE_SIZE = Gauge(
    "hlsforge_processing_queue_size",
    "Number of jobs waiting in the processing queue",
)

PROCESSING_JOB_DURATION_SECONDS = Histogram(
    "hlsforge_processing_job_duration_seconds",
    "Processing job duration in seconds",
    buckets=[30, 60, 120, 300, 600, 1200, 1800, 3600, 7200],
)

RENDITIONS_TOTAL = Counter(
    "hlsforge_renditions_total",
    "Rendition results by tier and outcome",
    ["tier", "outcome"],  # outcome: succeeded, transcode_failed, upload_failed, missing
)

TRANSCODE_RETRIES_TOTAL = Counter(
    "hlsforge_transcode_retries_total",
    "Transcode attempts retried after a failure",
    ["tier"],
)

# =============================================================================
# Storage Metrics
# =============================================================================

SOURCE_DELETES_TOTAL = Counter(
    "hlsforge_source_deletes_total",
    "Source object deletions after publish",
    ["result"],  # success, failed
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "hlsforge"})
