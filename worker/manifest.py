"""
Master HLS manifest rendering and publishing.
"""

import logging
from typing import Iterable, List

from api.paths import MASTER_INDEX_NAME, hls_master_index, manifest_variant_uri
from worker.errors import ManifestUploadFailure
from worker.models import ProcessingJob, RenditionResult, scaled_width
from worker.planner import catalog_order
from worker.storage import StorageError

logger = logging.getLogger(__name__)


def rendition_resolution(rendition: RenditionResult) -> str:
    """RESOLUTION attribute value. Falls back to a 16:9 width when none was recorded."""
    height = rendition.height or rendition.descriptor.height
    width = rendition.width if rendition.width > 0 else scaled_width(16, 9, height)
    return f"{width}x{height}"


def render_master_manifest(renditions: Iterable[RenditionResult]) -> str:
    """
    Render the master playlist text for the given renditions.

    Failed renditions are skipped. Variants are listed in catalog order
    (lowest first) whatever the input order, so the output depends only on
    the set of renditions. Lines are joined with "\\n" with no trailing
    newline; with no variants the result is just "#EXTM3U".
    """
    published = [r for r in renditions if r.succeeded]
    published.sort(key=lambda r: catalog_order(r.descriptor))

    lines: List[str] = ["#EXTM3U"]
    for rendition in published:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.descriptor.bitrate},RESOLUTION={rendition_resolution(rendition)}"
        )
        lines.append(manifest_variant_uri(rendition.name))
    return "\n".join(lines)


async def publish_master_manifest(stage, job: ProcessingJob, renditions: Iterable[RenditionResult]) -> str:
    """
    Render the master manifest, stage it in scratch and upload it.

    Args:
        stage: ObjectStage owning the job's scratch directory
        job: Job being published
        renditions: Tiers that passed every check

    Returns:
        "<bucket>/<key>" of the uploaded manifest

    Raises:
        ManifestUploadFailure: If the manifest could not be written or uploaded
    """
    content = render_master_manifest(renditions)
    try:
        scratch = stage.scratch_dir(job)
        scratch.mkdir(parents=True, exist_ok=True)
        local_path = scratch / MASTER_INDEX_NAME
        local_path.write_text(content)
        stored = await stage.publish(local_path, hls_master_index(job.owner_id, job.asset_id))
    except (StorageError, OSError, ValueError) as e:
        raise ManifestUploadFailure(job.asset_id, e) from e

    logger.info(f"Published master manifest {stored} for asset {job.asset_id}")
    return stored
