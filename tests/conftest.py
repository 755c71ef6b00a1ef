"""
Pytest fixtures for hlsforge tests.

Provides an in-memory object store, a fake transcoder that writes real HLS
files, a recording status publisher and a temporary SQLite database.
ffmpeg is never required.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest
import sqlalchemy as sa
from databases import Database

# Set up test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["HLSFORGE_SCRATCH_DIR"] = str(Path(_test_temp_dir) / "scratch")
os.environ["HLSFORGE_ALERT_WEBHOOK_URL"] = ""
os.environ["HLSFORGE_TRANSCODE_RETRY_BACKOFF"] = "0"
os.environ["HLSFORGE_DOWNLOAD_RETRY_BACKOFF"] = "0"

from api.database import configure_database, metadata  # noqa: E402
from api.status import InMemoryStatusPublisher  # noqa: E402
from worker.errors import TranscodeFailure  # noqa: E402
from worker.models import ProcessingJob  # noqa: E402
from worker.stage import ObjectStage  # noqa: E402
from worker.storage import ObjectNotFoundError, StorageIOError  # noqa: E402

OWNER_ID = "owner-1"
ASSET_ID = "asset-1"
SOURCE_KEY = f"{OWNER_ID}/{ASSET_ID}/original.mp4"
SOURCE_PATH = f"videos/{SOURCE_KEY}"

VARIANT_PLAYLIST = "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:6\n#EXTINF:6.0,\nsegment_000.ts\n#EXT-X-ENDLIST\n"


class InMemoryObjectStore:
    """ObjectStore keeping objects in a dict, with failure injection."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.content_types: Dict[Tuple[str, str], str] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.download_failures = 0
        self.fail_upload_prefixes: Set[str] = set()
        self.fail_delete = False
        self.hidden_keys: Set[str] = set()

    def put(self, bucket: str, key: str, data: bytes = b"source-video") -> str:
        self.objects[(bucket, key)] = data
        return f"{bucket}/{key}"

    def keys(self, bucket: str = "videos") -> List[str]:
        return sorted(key for b, key in self.objects if b == bucket)

    def ops(self, op: str) -> List[str]:
        return [f"{bucket}/{key}" for name, bucket, key in self.calls if name == op]

    async def download(self, bucket: str, key: str, dest: Path) -> None:
        self.calls.append(("download", bucket, key))
        if self.download_failures > 0:
            self.download_failures -= 1
            raise StorageIOError(f"connection reset while downloading {bucket}/{key}")
        if (bucket, key) not in self.objects:
            raise ObjectNotFoundError(bucket, key)
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        Path(dest).write_bytes(self.objects[(bucket, key)])

    async def upload(self, bucket: str, key: str, src: Path, content_type: str) -> str:
        self.calls.append(("upload", bucket, key))
        if any(key.startswith(prefix) for prefix in self.fail_upload_prefixes):
            raise StorageIOError(f"upload of {bucket}/{key} refused")
        self.objects[(bucket, key)] = Path(src).read_bytes()
        self.content_types[(bucket, key)] = content_type
        return f"{bucket}/{key}"

    async def delete(self, bucket: str, key: str) -> None:
        self.calls.append(("delete", bucket, key))
        if self.fail_delete:
            raise StorageIOError(f"delete of {bucket}/{key} refused")
        self.objects.pop((bucket, key), None)

    async def stat_exists(self, bucket: str, key: str) -> bool:
        self.calls.append(("stat", bucket, key))
        if key in self.hidden_keys:
            return False
        return (bucket, key) in self.objects


class FakeTranscoder:
    """
    Stand-in for transcode_rendition that writes a valid variant playlist.

    failing: tier names that always fail
    flaky: tier name -> number of attempts that fail before succeeding
    """

    def __init__(self, failing: Optional[Set[str]] = None, flaky: Optional[Dict[str, int]] = None):
        self.failing = set(failing or ())
        self.flaky = dict(flaky or {})
        self.calls: List[str] = []

    async def __call__(self, source_path, descriptor, output_dir, duration, timeout=None):
        self.calls.append(descriptor.name)
        if descriptor.name in self.failing:
            raise TranscodeFailure(descriptor, "FFmpeg transcode exited with code 1")
        if self.flaky.get(descriptor.name, 0) > 0:
            self.flaky[descriptor.name] -= 1
            raise TranscodeFailure(descriptor, "FFmpeg transcode exited with code 137")

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / "segment_000.ts").write_bytes(b"\x47" * 188)
        (output_dir / "index.m3u8").write_text(VARIANT_PLAYLIST)
        return output_dir / "index.m3u8"


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    store = InMemoryObjectStore()
    store.put("videos", SOURCE_KEY)
    return store


@pytest.fixture
def scratch_root(tmp_path) -> Path:
    return tmp_path / "scratch"


@pytest.fixture
def stage(object_store, scratch_root) -> ObjectStage:
    return ObjectStage(object_store, scratch_root=scratch_root, download_attempts=2, download_backoff=0)


@pytest.fixture
def publisher() -> InMemoryStatusPublisher:
    return InMemoryStatusPublisher()


@pytest.fixture
def job() -> ProcessingJob:
    return ProcessingJob(asset_id=ASSET_ID, owner_id=OWNER_ID, source_object_path=SOURCE_PATH)


@pytest.fixture
async def test_db(tmp_path):
    """Connected SQLite database with all tables created."""
    db_url = f"sqlite:///{tmp_path / 'hlsforge_test.db'}"

    engine = sa.create_engine(db_url)
    metadata.create_all(engine)
    engine.dispose()

    db = Database(db_url)
    await db.connect()
    await configure_database(db)
    yield db
    await db.disconnect()
