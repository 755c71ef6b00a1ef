"""Tests for the object stage (scratch directories and transfers)."""

import pytest

from worker.errors import DownloadFailure
from worker.models import ProcessingJob
from worker.stage import ObjectStage

from conftest import ASSET_ID, OWNER_ID, SOURCE_KEY


class TestPrepare:
    """Tests for ObjectStage.prepare."""

    async def test_downloads_into_scratch(self, stage, job, scratch_root):
        local = await stage.prepare(job)
        assert local == scratch_root / ASSET_ID / "original.mp4"
        assert local.read_bytes() == b"source-video"

    async def test_retries_transient_failure(self, stage, object_store, job):
        object_store.download_failures = 1
        local = await stage.prepare(job)
        assert local.exists()
        assert len(object_store.ops("download")) == 2

    async def test_gives_up_after_attempts(self, stage, object_store, job, scratch_root):
        object_store.download_failures = 5
        with pytest.raises(DownloadFailure) as exc_info:
            await stage.prepare(job)
        assert exc_info.value.asset_id == ASSET_ID
        assert len(object_store.ops("download")) == 2
        assert not (scratch_root / ASSET_ID).exists()

    async def test_missing_source_not_retried(self, stage, object_store, job, scratch_root):
        object_store.objects.clear()
        with pytest.raises(DownloadFailure):
            await stage.prepare(job)
        assert len(object_store.ops("download")) == 1
        assert not (scratch_root / ASSET_ID).exists()

    async def test_bad_source_path(self, stage):
        job = ProcessingJob(asset_id=ASSET_ID, owner_id=OWNER_ID, source_object_path="no-key")
        with pytest.raises(DownloadFailure):
            await stage.prepare(job)

    def test_unsafe_asset_id_rejected(self, stage):
        job = ProcessingJob(asset_id="../x", owner_id=OWNER_ID, source_object_path=f"videos/{SOURCE_KEY}")
        with pytest.raises(ValueError):
            stage.scratch_dir(job)


class TestScope:
    """scope() removes the scratch directory on every exit path."""

    async def test_removed_after_success(self, stage, job, scratch_root):
        async with stage.scope(job) as local:
            assert local.exists()
        assert not (scratch_root / ASSET_ID).exists()

    async def test_removed_after_error(self, stage, job, scratch_root):
        with pytest.raises(RuntimeError):
            async with stage.scope(job):
                (scratch_root / ASSET_ID / "720p").mkdir()
                raise RuntimeError("boom")
        assert not (scratch_root / ASSET_ID).exists()

    async def test_jobs_get_separate_directories(self, stage, object_store):
        object_store.put("videos", f"{OWNER_ID}/asset-2/original.mp4")
        first = ProcessingJob(asset_id=ASSET_ID, owner_id=OWNER_ID, source_object_path=f"videos/{SOURCE_KEY}")
        second = ProcessingJob(asset_id="asset-2", owner_id=OWNER_ID, source_object_path=f"videos/{OWNER_ID}/asset-2/original.mp4")
        async with stage.scope(first) as a, stage.scope(second) as b:
            assert a.parent != b.parent


class TestPublish:
    """Tests for publish and publish_directory."""

    async def test_publish_directory_uploads_playlists_last(self, stage, object_store, tmp_path):
        tier_dir = tmp_path / "720p"
        tier_dir.mkdir()
        (tier_dir / "index.m3u8").write_text("#EXTM3U")
        (tier_dir / "segment_001.ts").write_bytes(b"G")
        (tier_dir / "segment_000.ts").write_bytes(b"G")

        published = await stage.publish_directory(tier_dir, "owner-1/asset-1/720p")

        assert published == [
            "videos/owner-1/asset-1/720p/segment_000.ts",
            "videos/owner-1/asset-1/720p/segment_001.ts",
            "videos/owner-1/asset-1/720p/index.m3u8",
        ]
        assert object_store.content_types[("videos", "owner-1/asset-1/720p/segment_000.ts")] == "video/MP2T"

    async def test_publish_to_other_bucket(self, stage, object_store, tmp_path):
        path = tmp_path / "thumb.jpg"
        path.write_bytes(b"jpg")
        assert await stage.publish(path, "u/thumb.jpg", bucket="users") == "users/u/thumb.jpg"


class TestDeleteSource:
    """delete_source is best effort."""

    async def test_deletes(self, stage, object_store, job):
        assert await stage.delete_source(job) is True
        assert ("videos", SOURCE_KEY) not in object_store.objects

    async def test_failure_reported_not_raised(self, stage, object_store, job):
        object_store.fail_delete = True
        assert await stage.delete_source(job) is False
        assert ("videos", SOURCE_KEY) in object_store.objects


class TestTeardown:
    """Tests for teardown."""

    def test_missing_directory_is_fine(self, tmp_path, object_store, job):
        ObjectStage(object_store, scratch_root=tmp_path / "nowhere").teardown(job)
