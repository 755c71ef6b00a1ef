"""
Tests for the ffmpeg adapter.

Subprocess behavior is exercised with the running Python interpreter standing
in for ffmpeg, so no encoder is needed.
"""

import logging
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from config import FFMPEG_TIMEOUT_MAXIMUM, FFMPEG_TIMEOUT_MINIMUM
from worker.errors import TranscodeFailure
from worker.models import QUALITY_CATALOG
from worker.transcoder import (
    MAX_DURATION_SECONDS,
    build_transcode_command,
    calculate_ffmpeg_timeout,
    parse_probe_output,
    run_encoder,
    transcode_rendition,
    validate_duration,
    validate_hls_playlist,
)

from conftest import VARIANT_PLAYLIST

TIER_720 = QUALITY_CATALOG[2]


def python_cmd(code: str):
    return [sys.executable, "-c", code]


def write_hls_script(output_dir: Path, playlist: str) -> str:
    return (
        "from pathlib import Path\n"
        f"d = Path({str(output_dir)!r})\n"
        "(d / 'segment_000.ts').write_bytes(b'G' * 188)\n"
        f"(d / 'index.m3u8').write_text({playlist!r})\n"
    )


class TestBuildTranscodeCommand:
    """Tests for the per-tier ffmpeg argv."""

    def test_encoder_settings(self, tmp_path):
        cmd = build_transcode_command(Path("/in/original.mp4"), TIER_720, tmp_path)

        def value(flag):
            return cmd[cmd.index(flag) + 1]

        assert cmd[0] == "ffmpeg"
        assert value("-i") == "/in/original.mp4"
        assert value("-c:v") == "libx264"
        assert value("-b:v") == "2000k"
        assert value("-maxrate") == "2000k"
        assert value("-bufsize") == "4000k"
        assert value("-vf") == "scale=-2:720"
        assert value("-c:a") == "aac"
        assert value("-b:a") == "128k"
        assert value("-ac") == "2"

    def test_hls_output(self, tmp_path):
        cmd = build_transcode_command(Path("in.mp4"), TIER_720, tmp_path, segment_duration=4)

        def value(flag):
            return cmd[cmd.index(flag) + 1]

        assert value("-hls_time") == "4"
        assert value("-hls_playlist_type") == "vod"
        assert value("-hls_list_size") == "0"
        assert value("-hls_segment_filename") == str(tmp_path / "segment_%03d.ts")
        assert value("-f") == "hls"
        assert cmd[-1] == str(tmp_path / "index.m3u8")


class TestCalculateTimeout:
    """Timeouts scale with duration and resolution, within bounds."""

    def test_short_video_gets_minimum(self):
        assert calculate_ffmpeg_timeout(1.0, 240) == FFMPEG_TIMEOUT_MINIMUM

    def test_huge_video_gets_maximum(self):
        assert calculate_ffmpeg_timeout(10_000_000.0, 1080) == FFMPEG_TIMEOUT_MAXIMUM

    def test_higher_resolution_gets_longer_timeout(self):
        assert calculate_ffmpeg_timeout(1000.0, 1080) > calculate_ffmpeg_timeout(1000.0, 240)


class TestValidateDuration:
    """Tests for validate_duration."""

    def test_accepts_string(self):
        assert validate_duration("12.5") == 12.5

    @pytest.mark.parametrize("value", [None, "abc", 0, -1, float("nan"), float("inf"), MAX_DURATION_SECONDS + 1])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValueError):
            validate_duration(value)


class TestParseProbeOutput:
    """Tests for turning ffprobe JSON into VideoInfo."""

    def test_video_stream(self):
        data = {
            "streams": [
                {"codec_type": "audio", "codec_name": "aac"},
                {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080},
            ],
            "format": {"duration": "42.0"},
        }
        info = parse_probe_output(data)
        assert (info.width, info.height, info.duration, info.codec) == (1920, 1080, 42.0, "h264")

    def test_no_video_stream(self):
        with pytest.raises(RuntimeError):
            parse_probe_output({"streams": [{"codec_type": "audio"}], "format": {"duration": "1"}})

    def test_missing_duration(self):
        with pytest.raises(ValueError):
            parse_probe_output({"streams": [{"codec_type": "video", "width": 2, "height": 2}], "format": {}})


class TestValidateHlsPlaylist:
    """Tests for validate_hls_playlist."""

    async def test_complete_playlist(self, tmp_path):
        (tmp_path / "segment_000.ts").write_bytes(b"G" * 188)
        playlist = tmp_path / "index.m3u8"
        playlist.write_text(VARIANT_PLAYLIST)
        assert await validate_hls_playlist(playlist) == (True, None)

    async def test_missing_file(self, tmp_path):
        ok, error = await validate_hls_playlist(tmp_path / "index.m3u8")
        assert not ok
        assert "does not exist" in error

    async def test_missing_endlist(self, tmp_path):
        (tmp_path / "segment_000.ts").write_bytes(b"G" * 188)
        playlist = tmp_path / "index.m3u8"
        playlist.write_text(VARIANT_PLAYLIST.replace("#EXT-X-ENDLIST\n", ""))
        ok, error = await validate_hls_playlist(playlist)
        assert not ok
        assert "ENDLIST" in error

    async def test_missing_segment(self, tmp_path):
        playlist = tmp_path / "index.m3u8"
        playlist.write_text(VARIANT_PLAYLIST)
        ok, error = await validate_hls_playlist(playlist)
        assert not ok
        assert "segment_000.ts" in error

    async def test_empty_segment(self, tmp_path):
        (tmp_path / "segment_000.ts").write_bytes(b"")
        playlist = tmp_path / "index.m3u8"
        playlist.write_text(VARIANT_PLAYLIST)
        ok, error = await validate_hls_playlist(playlist)
        assert not ok
        assert "Empty segment" in error

    async def test_segments_not_checked(self, tmp_path):
        playlist = tmp_path / "index.m3u8"
        playlist.write_text(VARIANT_PLAYLIST)
        assert await validate_hls_playlist(playlist, check_segments=False) == (True, None)


class TestRunEncoder:
    """Tests for subprocess supervision."""

    async def test_success_logs_progress(self, caplog):
        code = "print('out_time_ms=5000000', flush=True); print('out_time_ms=10000000', flush=True)"
        caplog.set_level(logging.DEBUG, logger="worker.transcoder")

        ok, error = await run_encoder(python_cmd(code), duration=10.0, timeout=30, context="FFmpeg transcode 720p")

        assert (ok, error) == (True, None)
        progress = [r.getMessage() for r in caplog.records if r.getMessage().startswith("FFmpeg transcode 720p:")]
        assert progress == ["FFmpeg transcode 720p: 50%", "FFmpeg transcode 720p: 100%"]

    async def test_malformed_progress_ignored(self):
        code = "print('out_time_ms=garbage', flush=True)"
        ok, _ = await run_encoder(python_cmd(code), duration=10.0, timeout=30)
        assert ok

    async def test_non_zero_exit(self):
        ok, error = await run_encoder(
            python_cmd("import sys; sys.exit(3)"), duration=1.0, timeout=30, context="FFmpeg transcode 720p"
        )
        assert not ok
        assert error == "FFmpeg transcode 720p exited with code 3"

    async def test_timeout_kills_process(self):
        ok, error = await run_encoder(python_cmd("import time; time.sleep(30)"), duration=1.0, timeout=0.2)
        assert not ok
        assert "timed out after" in error


class TestTranscodeRendition:
    """transcode_rendition runs the encoder once and checks its output."""

    async def test_success_returns_playlist(self, tmp_path):
        out = tmp_path / "720p"
        cmd = python_cmd(write_hls_script(out, VARIANT_PLAYLIST))
        with patch("worker.transcoder.build_transcode_command", return_value=cmd):
            playlist = await transcode_rendition(Path("in.mp4"), TIER_720, out, duration=6.0, timeout=30)
        assert playlist == out / "index.m3u8"

    async def test_encoder_failure(self, tmp_path):
        with patch("worker.transcoder.build_transcode_command", return_value=python_cmd("import sys; sys.exit(1)")):
            with pytest.raises(TranscodeFailure) as exc_info:
                await transcode_rendition(Path("in.mp4"), TIER_720, tmp_path / "720p", duration=6.0, timeout=30)
        assert exc_info.value.descriptor == TIER_720
        assert "exited with code 1" in exc_info.value.detail

    async def test_incomplete_playlist(self, tmp_path):
        out = tmp_path / "720p"
        partial = VARIANT_PLAYLIST.replace("#EXT-X-ENDLIST\n", "")
        with patch("worker.transcoder.build_transcode_command", return_value=python_cmd(write_hls_script(out, partial))):
            with pytest.raises(TranscodeFailure) as exc_info:
                await transcode_rendition(Path("in.mp4"), TIER_720, out, duration=6.0, timeout=30)
        assert "invalid output playlist" in exc_info.value.detail

    async def test_missing_binary(self, tmp_path):
        cmd = [str(tmp_path / "no-such-ffmpeg")]
        with patch("worker.transcoder.build_transcode_command", return_value=cmd):
            with pytest.raises(TranscodeFailure) as exc_info:
                await transcode_rendition(Path("in.mp4"), TIER_720, tmp_path / "720p", duration=6.0, timeout=30)
        assert "could not start encoder" in exc_info.value.detail

    async def test_output_directory_error(self, tmp_path):
        """A scratch directory that cannot be created fails the tier, not the caller."""
        blocker = tmp_path / "720p"
        blocker.write_text("not a directory")
        with pytest.raises(TranscodeFailure) as exc_info:
            await transcode_rendition(Path("in.mp4"), TIER_720, blocker / "nested", duration=6.0, timeout=30)
        assert exc_info.value.descriptor == TIER_720
        assert "could not create output directory" in exc_info.value.detail
