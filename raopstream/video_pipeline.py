"""Video pipeline descriptions, orientation transforms and frame checks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

logger = logging.getLogger(__name__)

SECOND_IN_NSECS = 1_000_000_000
H264_CAPS = "video/x-h264,stream-format=(string)byte-stream,alignment=(string)au"

_USHORT_MAX = 0xFFFF


class VideoFlip(IntEnum):
    """Image flips and rotations that can be applied to the video."""

    NONE = 0
    LEFT = 1
    RIGHT = 2
    INVERT = 3
    VFLIP = 4
    HFLIP = 5


# (flip, rotation) -> videoflip method; rotation NONE covers any other rotation.
_METHODS = {
    (VideoFlip.INVERT, VideoFlip.LEFT): "clockwise",
    (VideoFlip.INVERT, VideoFlip.RIGHT): "counterclockwise",
    (VideoFlip.INVERT, VideoFlip.NONE): "rotate-180",
    (VideoFlip.HFLIP, VideoFlip.LEFT): "upper-left-diagonal",
    (VideoFlip.HFLIP, VideoFlip.RIGHT): "upper-right-diagonal",
    (VideoFlip.HFLIP, VideoFlip.NONE): "horizontal-flip",
    (VideoFlip.VFLIP, VideoFlip.LEFT): "upper-right-diagonal",
    (VideoFlip.VFLIP, VideoFlip.RIGHT): "upper-left-diagonal",
    (VideoFlip.VFLIP, VideoFlip.NONE): "vertical-flip",
    (VideoFlip.NONE, VideoFlip.LEFT): "counterclockwise",
    (VideoFlip.NONE, VideoFlip.RIGHT): "clockwise",
}


@dataclass(frozen=True)
class VideoSize:
    """Reported video dimensions, in whole pixels."""

    width: int
    height: int
    width_source: int
    height_source: int


def videoflip_element(flip: VideoFlip, rotation: VideoFlip) -> str:
    """Return the ``videoflip`` pipeline element for a flip and a rotation.

    Returns an empty string when no transform is needed.
    """
    flip = VideoFlip(flip)
    rotation = VideoFlip(rotation)
    if flip not in (VideoFlip.INVERT, VideoFlip.HFLIP, VideoFlip.VFLIP):
        flip = VideoFlip.NONE
    if rotation not in (VideoFlip.LEFT, VideoFlip.RIGHT):
        rotation = VideoFlip.NONE
    method = _METHODS.get((flip, rotation))
    return f"videoflip method={method} ! " if method else ""


def pipeline_description(parser: str, decoder: str, converter: str, videosink: str,
                         flip: VideoFlip, rotation: VideoFlip, video_sync: bool) -> str:
    """Build the launch description of the H.264 video pipeline."""
    description = (
        "appsrc name=video_source ! queue ! "
        f"{parser} ! {decoder} ! {converter} ! "
        f"{videoflip_element(flip, rotation)}"
        f"{videosink} name=video_sink"
        f"{' sync=true' if video_sync else ' sync=false'}"
    )
    logger.debug("video pipeline will be:\n\"%s\"", description)
    return description


def is_valid_video(data: bytes) -> bool:
    """Whether a frame holds valid Annex B data.

    Valid frames start with a zero byte; a frame whose decryption failed is
    marked with a first byte of 1. Raises ``ValueError`` for empty data.
    """
    if not data:
        raise ValueError("video frame must not be empty")
    if data[0]:
        logger.error("decryption of video packet failed")
        return False
    return True


def presentation_time(ntp_time: int, base_time: int, sync: bool) -> Optional[int]:
    """Return a buffer's presentation time relative to the pipeline base time.

    Returns ``None`` when not synchronising. Raises ``ValueError`` when the
    time precedes the base time.
    """
    if not sync:
        return None
    if ntp_time < base_time:
        logger.error(
            "invalid ntp_time < video pipeline base_time\n%8.6f ntp_time\n%8.6f base_time",
            ntp_time / SECOND_IN_NSECS, base_time / SECOND_IN_NSECS,
        )
        raise ValueError("ntp_time precedes the pipeline base time")
    return ntp_time - base_time


def _to_ushort(value: float) -> int:
    pixels = int(value)
    if not 0 <= pixels <= _USHORT_MAX:
        raise ValueError(f"video dimension out of range: {value}")
    return pixels


def video_size(width_source: float, height_source: float, width: float,
               height: float) -> VideoSize:
    """Truncate reported float dimensions to whole pixels."""
    size = VideoSize(
        width=_to_ushort(width),
        height=_to_ushort(height),
        width_source=_to_ushort(width_source),
        height_source=_to_ushort(height_source),
    )
    logger.debug("begin video stream wxh = %dx%d; source %dx%d",
                 size.width, size.height, size.width_source, size.height_source)
    return size