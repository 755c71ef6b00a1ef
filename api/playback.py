"""
Playback discovery: which HLS variants of an asset are actually in storage.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from api.paths import hls_master_index, hls_variant_index, join_object_path
from config import VIDEOS_BUCKET
from worker.models import QUALITY_CATALOG
from worker.storage import ObjectStore, StorageError

logger = logging.getLogger(__name__)


@dataclass
class HlsVariants:
    master: str
    variants: Dict[str, Optional[str]] = field(default_factory=dict)
    available: List[str] = field(default_factory=list)
    preferred: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "master": self.master,
            "variants": dict(self.variants),
            "available": list(self.available),
            "preferred": self.preferred,
        }


async def get_hls_variants(
    store: ObjectStore,
    owner_id: str,
    asset_id: str,
    bucket: str = VIDEOS_BUCKET,
) -> HlsVariants:
    """
    Check every catalog tier's variant playlist, highest quality first.

    Returns storage paths ("<bucket>/<key>"): the master manifest, each
    tier's playlist or None when it is not stored, the stored tiers and the
    preferred (highest stored) tier. A failed stat counts as not stored.
    """
    candidates = sorted(QUALITY_CATALOG, key=lambda d: d.height, reverse=True)

    variants: Dict[str, Optional[str]] = {}
    available: List[str] = []
    for descriptor in candidates:
        key = hls_variant_index(owner_id, asset_id, descriptor.name)
        try:
            exists = await store.stat_exists(bucket, key)
        except StorageError as e:
            logger.warning(f"Could not stat {bucket}/{key}: {e}")
            exists = False
        if exists:
            available.append(descriptor.name)
            variants[descriptor.name] = join_object_path(bucket, key)
        else:
            variants[descriptor.name] = None

    return HlsVariants(
        master=join_object_path(bucket, hls_master_index(owner_id, asset_id)),
        variants=variants,
        available=available,
        preferred=available[0] if available else None,
    )
