"""Tests for playback variant discovery."""

from api.playback import get_hls_variants
from worker.storage import StorageIOError

from conftest import InMemoryObjectStore


def store_variants(store, tiers):
    for tier in tiers:
        store.put("videos", f"owner-1/asset-1/{tier}/index.m3u8", b"#EXTM3U")


class TestGetHlsVariants:
    """Tests for get_hls_variants."""

    async def test_prefers_highest_stored_tier(self):
        store = InMemoryObjectStore()
        store_variants(store, ["240p", "480p", "720p"])

        result = await get_hls_variants(store, "owner-1", "asset-1")

        assert result.master == "videos/owner-1/asset-1/master.m3u8"
        assert result.available == ["720p", "480p", "240p"]
        assert result.preferred == "720p"
        assert result.variants["1080p"] is None
        assert result.variants["480p"] == "videos/owner-1/asset-1/480p/index.m3u8"

    async def test_nothing_stored(self):
        result = await get_hls_variants(InMemoryObjectStore(), "owner-1", "asset-1")
        assert result.available == []
        assert result.preferred is None
        assert set(result.variants) == {"240p", "480p", "720p", "1080p"}

    async def test_stat_errors_count_as_missing(self):
        class BrokenStore(InMemoryObjectStore):
            async def stat_exists(self, bucket, key):
                if "1080p" in key:
                    raise StorageIOError("timeout")
                return await super().stat_exists(bucket, key)

        store = BrokenStore()
        store_variants(store, ["1080p", "240p"])

        result = await get_hls_variants(store, "owner-1", "asset-1")

        assert result.preferred == "240p"
        assert result.to_dict()["available"] == ["240p"]
