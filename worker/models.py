"""
Value objects passed between the stages of the processing pipeline.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Tuple

from config import AUDIO_BITRATE, QUALITY_PRESETS

if TYPE_CHECKING:
    from worker.errors import TranscodeFailure


def parse_bitrate(value) -> int:
    """
    Convert an ffmpeg-style bitrate ("400k", "4M", "128000") to bits per second.

    Raises:
        ValueError: If the value is not a positive bitrate
    """
    if isinstance(value, int):
        bps = value
    else:
        text = str(value).strip().lower()
        multiplier = 1
        if text.endswith("k"):
            multiplier, text = 1000, text[:-1]
        elif text.endswith("m"):
            multiplier, text = 1_000_000, text[:-1]
        try:
            bps = int(float(text) * multiplier)
        except ValueError as e:
            raise ValueError(f"Invalid bitrate: {value!r}") from e
    if bps <= 0:
        raise ValueError(f"Bitrate must be positive: {value!r}")
    return bps


def format_bitrate(bps: int) -> str:
    """Format bits per second the way ffmpeg options take them ("400k")."""
    if bps % 1000 == 0:
        return f"{bps // 1000}k"
    return str(bps)


def scaled_width(source_width: int, source_height: int, target_height: int) -> int:
    """Width ffmpeg picks for scale=-2:<target_height>: aspect kept, half-width rounded to nearest."""
    half = source_width * target_height / (source_height * 2)
    return max(2, int(half + 0.5) * 2)


@dataclass(frozen=True)
class QualityDescriptor:
    """One rendition tier: target height and bitrates in bits per second."""

    name: str
    height: int
    bitrate: int
    audio_bitrate: int

    @classmethod
    def from_preset(cls, preset: dict) -> "QualityDescriptor":
        return cls(
            name=preset["name"],
            height=int(preset["height"]),
            bitrate=parse_bitrate(preset["bitrate"]),
            audio_bitrate=parse_bitrate(preset.get("audio_bitrate", AUDIO_BITRATE)),
        )


QUALITY_CATALOG: Tuple[QualityDescriptor, ...] = tuple(QualityDescriptor.from_preset(p) for p in QUALITY_PRESETS)


@dataclass(frozen=True)
class ProcessingJob:
    """A request to process one uploaded asset. Consumed once, never persisted."""

    asset_id: str
    owner_id: str
    source_object_path: str  # "<bucket>/<key>"
    target_tiers: Tuple[QualityDescriptor, ...] = QUALITY_CATALOG


@dataclass(frozen=True)
class VideoInfo:
    """Source properties reported by ffprobe."""

    width: int
    height: int
    duration: float
    codec: str = "unknown"

    def scaled_width(self, target_height: int) -> int:
        """
        Width ffmpeg produces for scale=-2:<target_height>.

        Keeps the source aspect ratio and rounds to an even number. Falls back
        to 16:9 when the source dimensions are unknown.
        """
        if self.width > 0 and self.height > 0:
            return scaled_width(self.width, self.height, target_height)
        return scaled_width(16, 9, target_height)


@dataclass(frozen=True)
class RenditionResult:
    """Outcome of one tier. remote_directory is only meaningful if succeeded."""

    descriptor: QualityDescriptor
    succeeded: bool
    remote_directory: Optional[str] = None
    width: int = 0
    height: int = 0
    error: Optional["TranscodeFailure"] = field(default=None, compare=False)

    @property
    def name(self) -> str:
        return self.descriptor.name
