"""
ffmpeg/ffprobe adapter.

Probes source videos and encodes one quality tier at a time into a segmented
HLS directory:

    <output_dir>/index.m3u8
    <output_dir>/segment_000.ts, segment_001.ts, ...

Each call runs the encoder exactly once. Retries are the caller's decision.
"""

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Any, List, Optional, Tuple

from api.paths import SEGMENT_PATTERN, VARIANT_INDEX_NAME
from config import (
    FFMPEG_PRESET,
    FFMPEG_TIMEOUT_BASE_MULTIPLIER,
    FFMPEG_TIMEOUT_MAXIMUM,
    FFMPEG_TIMEOUT_MINIMUM,
    FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS,
    FFPROBE_TIMEOUT,
    HLS_SEGMENT_DURATION,
)
from worker.errors import TranscodeFailure
from worker.models import QualityDescriptor, VideoInfo, format_bitrate

logger = logging.getLogger(__name__)

# Maximum video duration allowed (1 week in seconds)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60

FFMPEG_BINARY = "ffmpeg"
FFPROBE_BINARY = "ffprobe"


def calculate_ffmpeg_timeout(duration: float, height: int = 1080) -> float:
    """
    Calculate appropriate timeout for ffmpeg transcoding based on video duration and resolution.

    Higher resolutions take longer to encode, so timeouts scale accordingly.

    Args:
        duration: Video duration in seconds
        height: Target resolution height (e.g., 240, 480, 720, 1080)

    Returns:
        Timeout in seconds, clamped between min and max values
    """
    # Unknown resolutions get the most generous multiplier
    resolution_multiplier = FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS.get(height, 2.0)
    effective_multiplier = FFMPEG_TIMEOUT_BASE_MULTIPLIER * resolution_multiplier
    timeout = duration * effective_multiplier
    return max(FFMPEG_TIMEOUT_MINIMUM, min(timeout, FFMPEG_TIMEOUT_MAXIMUM))


async def stop_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """Kill the process if it is still running and reap it."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        # Exited between the returncode check and kill()
        pass
    try:
        await asyncio.wait_for(process.wait(), timeout=5)
    except asyncio.TimeoutError:
        logger.warning(f"{context} process did not terminate after kill")


async def _follow_progress(process: asyncio.subprocess.Process, duration: float, context: str) -> None:
    """Drain `-progress pipe:1` output until EOF, logging each 25% step."""
    reported = 0
    async for raw in process.stdout:
        key, _, value = raw.decode("utf-8", errors="ignore").strip().partition("=")
        # out_time_ms is in microseconds despite its name
        if key != "out_time_ms" or duration <= 0:
            continue
        try:
            percent = min(100, int(int(value) / 1_000_000 / duration * 100))
        except ValueError:
            continue
        if percent // 25 > reported // 25:
            reported = percent
            logger.debug(f"{context}: {percent}%")
    await process.wait()


async def run_encoder(cmd: List[str], duration: float, timeout: float, context: str = "FFmpeg") -> Tuple[bool, Optional[str]]:
    """
    Run an encoder command to completion under a time limit.

    stdout carries ffmpeg's progress lines and is always drained; stderr is
    discarded so the encoder never blocks on a full pipe. The process is
    killed and reaped on every exit path, including cancellation.

    Returns:
        (success, error_message), error_message being None on success

    Raises:
        OSError: If the process could not be spawned
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        await asyncio.wait_for(_follow_progress(process, duration, context), timeout)
    except asyncio.TimeoutError:
        elapsed = loop.time() - started
        logger.warning(f"{context} exceeded {timeout:.0f}s limit, killing")
        return False, f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)"
    finally:
        await stop_process(process, context)

    if process.returncode != 0:
        return False, f"{context} exited with code {process.returncode}"
    return True, None


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Args:
        duration: Duration value from ffprobe (accepts any input type)

    Returns:
        Validated duration as float

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    # Catches corrupted metadata
    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


def parse_probe_output(data: dict) -> VideoInfo:
    """
    Extract VideoInfo from ffprobe's JSON output.

    Raises:
        RuntimeError: If there is no video stream
        ValueError: If the duration is missing or invalid
    """
    video_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video":
            video_stream = stream
            break

    if not video_stream:
        raise RuntimeError("No video stream found")

    duration = validate_duration(data.get("format", {}).get("duration"))

    return VideoInfo(
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        duration=duration,
        codec=video_stream.get("codec_name", "unknown"),
    )


async def get_video_info(input_path: Path, timeout: float = FFPROBE_TIMEOUT) -> VideoInfo:
    """Get video metadata using ffprobe (async with timeout).

    Args:
        input_path: Path to the video file
        timeout: Maximum time to wait for ffprobe

    Returns:
        VideoInfo with width, height, duration and codec

    Raises:
        RuntimeError: If ffprobe fails, times out or finds no video stream
        ValueError: If the reported duration is invalid
    """
    cmd = [
        FFPROBE_BINARY,
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(input_path),
    ]

    process = await asyncio.create_subprocess_exec(*cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise RuntimeError(f"ffprobe timed out after {timeout}s (file may be on slow storage or corrupted)")

    if process.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {stderr.decode('utf-8', errors='ignore')}")

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as e:
        raise RuntimeError(f"ffprobe returned invalid JSON: {e}") from e

    return parse_probe_output(data)


def build_transcode_command(
    input_path: Path,
    descriptor: QualityDescriptor,
    output_dir: Path,
    segment_duration: int = HLS_SEGMENT_DURATION,
) -> List[str]:
    """Build the ffmpeg argv that encodes one tier into output_dir as VOD HLS."""
    bitrate = format_bitrate(descriptor.bitrate)
    return [
        FFMPEG_BINARY,
        "-y",
        "-i",
        str(input_path),
        "-c:v",
        "libx264",
        "-preset",
        FFMPEG_PRESET,
        "-b:v",
        bitrate,
        "-maxrate",
        bitrate,
        "-bufsize",
        format_bitrate(descriptor.bitrate * 2),
        "-vf",
        f"scale=-2:{descriptor.height}",
        "-c:a",
        "aac",
        "-b:a",
        format_bitrate(descriptor.audio_bitrate),
        "-ac",
        "2",
        "-hls_time",
        str(segment_duration),
        "-hls_playlist_type",
        "vod",
        "-hls_list_size",
        "0",
        "-hls_segment_filename",
        str(output_dir / SEGMENT_PATTERN),
        "-progress",
        "pipe:1",
        "-f",
        "hls",
        str(output_dir / VARIANT_INDEX_NAME),
    ]


async def validate_hls_playlist(playlist_path: Path, check_segments: bool = True) -> Tuple[bool, Optional[str]]:
    """
    Validate an HLS variant playlist is complete and well-formed.

    Args:
        playlist_path: Path to the .m3u8 playlist file
        check_segments: If True, also verify all referenced segments exist and are non-empty

    Returns:
        Tuple[bool, Optional[str]]: (is_valid, error_message)
        error_message is None if valid, otherwise describes the issue
    """
    if not playlist_path.exists():
        return False, "Playlist file does not exist"

    try:
        content = playlist_path.read_text()

        if not content.startswith("#EXTM3U"):
            return False, "Missing #EXTM3U header"

        # ffmpeg only writes the end marker once the encode finished
        if "#EXT-X-ENDLIST" not in content:
            return False, "Missing #EXT-X-ENDLIST (incomplete transcode)"

        if not check_segments:
            return True, None

        segment_count = 0
        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            if line.endswith(".ts"):
                segment_path = playlist_path.parent / line
                if not segment_path.exists():
                    return False, f"Missing segment file: {line}"
                if segment_path.stat().st_size == 0:
                    return False, f"Empty segment file: {line}"
                segment_count += 1

        if segment_count == 0:
            return False, "Playlist contains no segment references"

        return True, None

    except (IOError, OSError) as e:
        return False, f"Error reading playlist: {e}"


async def transcode_rendition(
    input_path: Path,
    descriptor: QualityDescriptor,
    output_dir: Path,
    duration: float,
    timeout: Optional[float] = None,
) -> Path:
    """
    Encode one tier into output_dir.

    Args:
        input_path: Downloaded source video
        descriptor: Tier to produce
        output_dir: Directory for index.m3u8 and segments (created if missing)
        duration: Source duration in seconds (progress and default timeout)
        timeout: Encoder time limit; calculate_ffmpeg_timeout() if None

    Returns:
        Path to the produced variant playlist

    Raises:
        TranscodeFailure: On a scratch directory error, spawn error, non-zero
            exit, timeout or an incomplete playlist
    """
    if timeout is None:
        timeout = calculate_ffmpeg_timeout(duration, descriptor.height)
    logger.info(f"Transcoding {descriptor.name} (timeout {timeout:.0f}s) into {output_dir}")

    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise TranscodeFailure(descriptor, f"could not create output directory: {e}") from e

    cmd = build_transcode_command(input_path, descriptor, output_dir)
    try:
        success, error_msg = await run_encoder(cmd, duration, timeout, context=f"FFmpeg transcode {descriptor.name}")
    except OSError as e:
        raise TranscodeFailure(descriptor, f"could not start encoder: {e}") from e

    if not success:
        raise TranscodeFailure(descriptor, error_msg)

    playlist_path = output_dir / VARIANT_INDEX_NAME
    is_valid, validation_error = await validate_hls_playlist(playlist_path)
    if not is_valid:
        raise TranscodeFailure(descriptor, f"invalid output playlist: {validation_error}")

    return playlist_path
