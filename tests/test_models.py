"""Tests for pipeline value objects and the quality catalog."""

import pytest

from worker.models import QUALITY_CATALOG, QualityDescriptor, VideoInfo, format_bitrate, parse_bitrate


class TestBitrates:
    """Tests for bitrate parsing and formatting."""

    @pytest.mark.parametrize(
        "value,expected",
        [("400k", 400_000), ("4000k", 4_000_000), ("4M", 4_000_000), ("128000", 128_000), (96_000, 96_000)],
    )
    def test_parse(self, value, expected):
        assert parse_bitrate(value) == expected

    @pytest.mark.parametrize("value", ["", "fast", "0k", "-5k"])
    def test_parse_rejects_invalid(self, value):
        with pytest.raises(ValueError):
            parse_bitrate(value)

    def test_format(self):
        assert format_bitrate(2_000_000) == "2000k"
        assert format_bitrate(128_000) == "128k"
        assert format_bitrate(1500) == "1500"
        assert format_bitrate(1234) == "1234"


class TestQualityCatalog:
    """The catalog is fixed and ordered lowest first."""

    def test_catalog_values(self):
        assert [(d.name, d.height, d.bitrate, d.audio_bitrate) for d in QUALITY_CATALOG] == [
            ("240p", 240, 400_000, 128_000),
            ("480p", 480, 800_000, 128_000),
            ("720p", 720, 2_000_000, 128_000),
            ("1080p", 1080, 4_000_000, 128_000),
        ]

    def test_from_preset_with_explicit_audio(self):
        d = QualityDescriptor.from_preset({"name": "360p", "height": 360, "bitrate": "600k", "audio_bitrate": "96k"})
        assert d == QualityDescriptor(name="360p", height=360, bitrate=600_000, audio_bitrate=96_000)

    def test_descriptors_are_immutable(self):
        with pytest.raises(AttributeError):
            QUALITY_CATALOG[0].height = 100


class TestScaledWidth:
    """VideoInfo.scaled_width mirrors ffmpeg's scale=-2:<height>."""

    def test_16_9_source(self):
        info = VideoInfo(width=1920, height=1080, duration=10.0)
        assert info.scaled_width(720) == 1280
        assert info.scaled_width(480) == 854
        assert info.scaled_width(240) == 426

    def test_4_3_source(self):
        info = VideoInfo(width=640, height=480, duration=10.0)
        assert info.scaled_width(240) == 320

    def test_portrait_source(self):
        info = VideoInfo(width=1080, height=1920, duration=10.0)
        assert info.scaled_width(480) == 270

    def test_result_is_even(self):
        info = VideoInfo(width=1000, height=1000, duration=10.0)
        assert info.scaled_width(239) % 2 == 0

    def test_unknown_dimensions_fall_back_to_16_9(self):
        info = VideoInfo(width=0, height=0, duration=10.0)
        assert info.scaled_width(720) == 1280
