"""
Rendition planning: which quality tiers to produce for a given source.
"""

from typing import List, Sequence, Tuple

from worker.models import QUALITY_CATALOG, QualityDescriptor


def plan_renditions(
    source_height: int, tiers: Sequence[QualityDescriptor] = QUALITY_CATALOG
) -> List[QualityDescriptor]:
    """
    Return the tiers that can be produced without upscaling.

    A tier is kept when its height is at or below the source height. Input
    order is preserved. An empty list is valid (source smaller than every
    tier): the job still completes, with a manifest listing no variants.
    """
    return [tier for tier in tiers if tier.height <= source_height]


def catalog_order(descriptor: QualityDescriptor) -> Tuple[int, int, str]:
    """Sort key putting tiers in catalog order (lowest first). Unknown tiers follow, by height."""
    for index, tier in enumerate(QUALITY_CATALOG):
        if tier.name == descriptor.name:
            return index, descriptor.height, descriptor.name
    return len(QUALITY_CATALOG), descriptor.height, descriptor.name
