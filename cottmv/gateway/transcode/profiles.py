"""Quality ladder and output format tables.

Every tier and format maps to its FFmpeg parameters through an exhaustive match,
so adding an enum member without parameters fails type checking (`assert_never`).
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never


class Quality(StrEnum):
    P480 = "480p"
    P720 = "720p"
    P1080 = "1080p"
    P1440 = "1440p"
    P2160 = "2160p"
    ORIGINAL = "original"


class OutputFormat(StrEnum):
    MP4 = "mp4"
    WEBM = "webm"


@dataclass(frozen=True)
class QualityParams:
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str


@dataclass(frozen=True)
class FormatParams:
    extension: str
    muxer: str
    mime_type: str
    video_codec: str
    audio_codec: str
    extra_args: tuple[str, ...]


def quality_params(quality: Quality) -> QualityParams | None:
    """Resolution and bitrates for a tier. `original` keeps the source resolution (None)."""
    match quality:
        case Quality.P480:
            return QualityParams(width=854, height=480, video_bitrate="1000k", audio_bitrate="128k")
        case Quality.P720:
            return QualityParams(width=1280, height=720, video_bitrate="2500k", audio_bitrate="192k")
        case Quality.P1080:
            return QualityParams(width=1920, height=1080, video_bitrate="5000k", audio_bitrate="256k")
        case Quality.P1440:
            return QualityParams(width=2560, height=1440, video_bitrate="10000k", audio_bitrate="320k")
        case Quality.P2160:
            return QualityParams(width=3840, height=2160, video_bitrate="20000k", audio_bitrate="320k")
        case Quality.ORIGINAL:
            return None
        case _:
            assert_never(quality)


def format_params(fmt: OutputFormat) -> FormatParams:
    match fmt:
        case OutputFormat.MP4:
            return FormatParams(
                extension="mp4",
                muxer="mp4",
                mime_type="video/mp4",
                video_codec="libx264",
                audio_codec="aac",
                # faststart moves the moov atom up front so playback can begin before download ends
                extra_args=("-movflags", "+faststart", "-preset", "medium", "-crf", "23"),
            )
        case OutputFormat.WEBM:
            return FormatParams(
                extension="webm",
                muxer="webm",
                mime_type="video/webm",
                video_codec="libvpx-vp9",
                audio_codec="libopus",
                extra_args=("-deadline", "good", "-cpu-used", "2"),
            )
        case _:
            assert_never(fmt)


def qualities_up_to(source_height: int) -> list[Quality]:
    """Tiers that do not upscale a source of the given height, plus `original`.

    An unknown height (0) offers the whole ladder.
    """
    tiers = []
    for q in Quality:
        params = quality_params(q)
        if params is not None and (not source_height or params.height <= source_height):
            tiers.append(q)
    return [*tiers, Quality.ORIGINAL]
