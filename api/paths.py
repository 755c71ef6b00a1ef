"""
Object storage key conventions for video assets.

Layout inside the videos bucket (external players depend on it, keep it stable):

    <ownerId>/<assetId>/original.<ext>          source upload, deleted after publish
    <ownerId>/<assetId>/<tierName>/index.m3u8   per-tier variant playlist
    <ownerId>/<assetId>/<tierName>/segment_%03d.ts
    <ownerId>/<assetId>/master.m3u8             top-level manifest
"""

import re
from typing import Tuple

VARIANT_INDEX_NAME = "index.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
MASTER_INDEX_NAME = "master.m3u8"

# Ids and tier names become key components, so no separators or traversal
_KEY_COMPONENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


def validate_key_component(value: str) -> bool:
    """Return True if value is safe to embed as a single object key component."""
    return bool(value) and _KEY_COMPONENT_RE.match(value) is not None


def _require(value: str, what: str) -> str:
    if not validate_key_component(value):
        raise ValueError(f"Invalid {what}: {value!r}")
    return value


def video_base(owner_id: str, asset_id: str) -> str:
    return f"{_require(owner_id, 'owner id')}/{_require(asset_id, 'asset id')}"


def video_original_path(owner_id: str, asset_id: str, ext: str = "mp4") -> str:
    ext = ext.lstrip(".").lower()
    return f"{video_base(owner_id, asset_id)}/original.{_require(ext, 'extension')}"


def hls_variant_dir(owner_id: str, asset_id: str, tier_name: str) -> str:
    return f"{video_base(owner_id, asset_id)}/{_require(tier_name, 'tier name')}"


def hls_variant_index(owner_id: str, asset_id: str, tier_name: str) -> str:
    return f"{hls_variant_dir(owner_id, asset_id, tier_name)}/{VARIANT_INDEX_NAME}"


def hls_master_index(owner_id: str, asset_id: str) -> str:
    return f"{video_base(owner_id, asset_id)}/{MASTER_INDEX_NAME}"


def manifest_variant_uri(tier_name: str) -> str:
    """Variant playlist URI as written in the master manifest (relative to it)."""
    return f"{tier_name}/{VARIANT_INDEX_NAME}"


def split_object_path(object_path: str) -> Tuple[str, str]:
    """
    Split a "<bucket>/<key>" storage path into (bucket, key).

    Raises:
        ValueError: If either part is empty
    """
    bucket, _, key = object_path.partition("/")
    if not bucket or not key:
        raise ValueError(f"Invalid object path (expected '<bucket>/<key>'): {object_path!r}")
    return bucket, key


def join_object_path(bucket: str, key: str) -> str:
    return f"{bucket}/{key}"
