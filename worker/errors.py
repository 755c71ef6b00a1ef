"""
Failure taxonomy for the processing pipeline.

Job-fatal errors (DownloadFailure, ProbeFailure, AllTiersFailed,
ManifestUploadFailure) propagate to the worker loop, which logs them and
moves on. TranscodeFailure is tier-local and is absorbed by the pipeline.
SourceDeleteFailure is only ever logged.
"""

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from worker.models import QualityDescriptor


class PipelineError(Exception):
    """Base class for processing pipeline failures."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class DownloadFailure(PipelineError):
    """Source retrieval from durable storage failed."""

    def __init__(self, asset_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to download source for asset {asset_id}: {cause}", cause)
        self.asset_id = asset_id


class ProbeFailure(PipelineError):
    """The downloaded source could not be probed (corrupt or not a video)."""

    def __init__(self, asset_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to probe source for asset {asset_id}: {cause}", cause)
        self.asset_id = asset_id


class TranscodeFailure(PipelineError):
    """One tier's encoder invocation failed. Excludes the tier, not the job."""

    def __init__(self, descriptor: "QualityDescriptor", cause):
        super().__init__(f"Transcode of {descriptor.name} failed: {cause}")
        self.descriptor = descriptor
        self.detail = str(cause)


class AllTiersFailed(PipelineError):
    """Every planned tier failed, so there is nothing to publish."""

    def __init__(self, asset_id: str, failures: Sequence[TranscodeFailure]):
        names = ", ".join(f.descriptor.name for f in failures)
        super().__init__(f"All renditions failed for asset {asset_id} ({names})")
        self.asset_id = asset_id
        self.failures = list(failures)


class ManifestUploadFailure(PipelineError):
    """The master manifest could not be written to durable storage."""

    def __init__(self, asset_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to upload master manifest for asset {asset_id}: {cause}", cause)
        self.asset_id = asset_id


class SourceDeleteFailure(PipelineError):
    """Deleting the original after publish failed. Never raised past the pipeline."""

    def __init__(self, asset_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to delete source for asset {asset_id}: {cause}", cause)
        self.asset_id = asset_id
