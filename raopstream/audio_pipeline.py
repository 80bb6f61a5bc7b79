"""Audio pipeline descriptions, frame validation and format selection."""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

SECOND_IN_NSECS = 1_000_000_000
MAX_VOLUME_DB = 28

_LPCM_CAPS = "audio/x-raw,rate=(int)44100,channels=(int)2,format=S16LE,layout=interleaved"
_ALAC_CAPS = (
    "audio/x-alac,mpegversion=(int)4,channnels=(int)2,rate=(int)44100,stream-format=raw,"
    "codec_data=(buffer)"
    "00000024616c6163000000000000016000102" "80a0e0200ff00000000000000000000ac44"
)
_AAC_LC_CAPS = (
    "audio/mpeg,mpegversion=(int)4,channnels=(int)2,rate=(int)44100,stream-format=raw,"
    "codec_data=(buffer)1210"
)
_AAC_ELD_CAPS = (
    "audio/mpeg,mpegversion=(int)4,channnels=(int)2,rate=(int)44100,stream-format=raw,"
    "codec_data=(buffer)f8e85000"
)

_AAC_ELD_FIRST_BYTES = frozenset({0x8C, 0x8D, 0x8E, 0x80, 0x81, 0x82})


class AudioFormat(Enum):
    """Audio compression types, identified by their ``ct`` value."""

    AAC_ELD = (8, "AAC-ELD 44100/2", _AAC_ELD_CAPS, "avdec_aac")
    ALAC = (2, "ALAC 44100/16/2", _ALAC_CAPS, "avdec_alac")
    AAC_LC = (4, "AAC-LC 44100/2", _AAC_LC_CAPS, "avdec_aac")
    PCM = (1, "PCM 44100/16/2 S16LE", _LPCM_CAPS, None)

    def __init__(self, ct: int, label: str, caps: str, decoder: Optional[str]) -> None:
        self.ct = ct
        self.label = label
        self.caps = caps
        self.decoder = decoder

    @classmethod
    def from_ct(cls, ct: int) -> AudioFormat:
        """Return the format with compression type ``ct``; raises ``ValueError`` if unknown."""
        for fmt in cls:
            if fmt.ct == ct:
                return fmt
        raise ValueError(f"unknown audio compression type ct = {ct}")


# Only these formats are seen in practice and get a pipeline.
ENABLED_FORMATS = (AudioFormat.AAC_ELD, AudioFormat.ALAC)


def pipeline_description(audio_format: AudioFormat, audiosink: str, audio_sync: bool,
                         video_sync: bool, have_decoder: bool) -> str:
    """Build the launch description of the pipeline for ``audio_format``.

    The decoder is left out when ``have_decoder`` is false. ALAC follows
    ``audio_sync``; the other formats follow ``video_sync``.
    """
    parts = ["appsrc name=audio_source ! ", "queue ! "]
    if audio_format.decoder and have_decoder:
        parts.append(f"{audio_format.decoder} ! ")
    parts.append("audioconvert ! ")
    parts.append("audioresample ! ")
    parts.append("volume name=volume ! level ! ")
    parts.append(audiosink)
    sync = audio_sync if audio_format is AudioFormat.ALAC else video_sync
    parts.append(" sync=true" if sync else " sync=false")
    return "".join(parts)


def is_valid_frame(ct: int, data: bytes) -> bool:
    """Check the first byte of a frame against what its compression type requires."""
    if not data:
        return False
    first = data[0]
    if ct == AudioFormat.AAC_ELD.ct:
        return first in _AAC_ELD_FIRST_BYTES
    if ct == AudioFormat.ALAC.ct:
        return first == 0x20
    if ct == AudioFormat.AAC_LC.ct:
        return first == 0xFF
    return True


def volume_to_gain(volume: float) -> Optional[float]:
    """Map an attenuation in dB (-144..0) to a linear gain in tenths.

    Returns ``None`` when the volume is at or beyond -28 dB, in which case the
    gain is left unchanged.
    """
    magnitude = abs(volume)
    if magnitude >= MAX_VOLUME_DB:
        return None
    return math.floor((MAX_VOLUME_DB - magnitude) / MAX_VOLUME_DB * 10) / 10


def presentation_time(ntp_time: int, base_time: int, sync: bool) -> Optional[int]:
    """Return a buffer's presentation time relative to the pipeline base time.

    Returns ``None`` when not synchronising. Raises ``ValueError`` when the
    time precedes the base time.
    """
    if not sync:
        return None
    if ntp_time < base_time:
        logger.error(
            "invalid ntp_time < pipeline base_time\n%8.6f ntp_time\n%8.6f base_time",
            ntp_time / SECOND_IN_NSECS, base_time / SECOND_IN_NSECS,
        )
        raise ValueError("ntp_time precedes the pipeline base time")
    return ntp_time - base_time


class AudioPipelineSelector:
    """Tracks which audio pipeline is playing and whether frames should be rendered."""

    def __init__(self, have_aac: bool, have_alac: bool, audio_sync: bool,
                 video_sync: bool) -> None:
        self.have_aac = have_aac
        self.have_alac = have_alac
        self.audio_sync = audio_sync
        self.video_sync = video_sync
        self.current: Optional[AudioFormat] = None
        self.render_audio = False
        self.sync = False

    def start(self, ct: int) -> AudioFormat:
        """Select the pipeline for compression type ``ct`` and return its format.

        Raises ``ValueError`` for a type with no pipeline; rendering is then off.
        """
        self.render_audio = False
        fmt = next((f for f in ENABLED_FORMATS if f.ct == ct), None)
        if fmt is None:
            logger.error("unknown audio compression type ct = %d", ct)
            raise ValueError(f"unknown audio compression type ct = {ct}")

        if fmt in (AudioFormat.AAC_ELD, AudioFormat.AAC_LC):
            if self.have_aac:
                self.render_audio = True
            else:
                logger.info("decoder avdec_aac is missing, cannot decode AAC audio")
            self.sync = self.video_sync
        elif fmt is AudioFormat.ALAC:
            if self.have_alac:
                self.render_audio = True
            else:
                logger.info("decoder avdec_alac is missing, cannot decode ALAC audio")
            self.sync = self.audio_sync
        else:
            self.render_audio = True
            self.sync = False

        if self.current is None:
            logger.info("start audio connection, format %s", fmt.label)
            self.current = fmt
        elif self.current is not fmt:
            logger.info("changed audio connection, format %s", fmt.label)
            self.current = fmt
        return fmt

    def stop(self) -> None:
        """Stop the current pipeline."""
        self.current = None

    def accepts(self, data: bytes) -> bool:
        """Whether ``data`` should be pushed into the current pipeline."""
        if not self.render_audio or self.current is None or not data:
            return False
        if is_valid_frame(self.current.ct, data):
            return True
        logger.error("invalid audio frame (compression_type %d) skipped, first byte 0x%02x",
                     self.current.ct, data[0])
        return False