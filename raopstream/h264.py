"""Mirroring stream packet headers and H.264 NAL unit handling."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field

from .hexutil import data_to_string

logger = logging.getLogger(__name__)

HEADER_SIZE = 128
NAL_START_CODE = b"\x00\x00\x00\x01"

# Values of the first payload-type byte (header byte 4).
PAYLOAD_VIDEO = 0x00
PAYLOAD_CODEC = 0x01
PAYLOAD_HEARTBEAT = 0x02
PAYLOAD_REPORT = 0x05

NAL_SLICE = 1
NAL_PARTITION_A = 2
NAL_PARTITION_B = 3
NAL_PARTITION_C = 4
NAL_IDR = 5
NAL_SEI = 6
NAL_SPS = 7
NAL_PPS = 8
NAL_PREFIX = 14

_VCL_TYPES = frozenset({NAL_SLICE, NAL_IDR, NAL_PREFIX})
_PARTITION_TYPES = frozenset({NAL_PARTITION_A, NAL_PARTITION_B, NAL_PARTITION_C})
_PARAMETER_NAMES = {
    NAL_SEI: ("SEI", "Supplemental Enhancement Information"),
    NAL_SPS: ("SPS", "Sequence Parameter Set"),
    NAL_PPS: ("PPS", "Picture Parameter Set"),
}


@dataclass(frozen=True)
class MirrorHeader:
    """The 128-byte header that precedes every mirroring payload.

    Bytes 0-3 hold the payload size and bytes 8-15 the raw NTP timestamp, both
    little-endian. Bytes 4-5 identify the payload type and bytes 6-7 an option.
    Codec packets also carry image sizes as little-endian floats.
    """

    payload_size: int
    payload_type: int
    payload_subtype: int
    option: int
    ntp_timestamp_raw: int
    type_bytes: bytes
    width: float = 0.0
    height: float = 0.0
    width_source: float = 0.0
    height_source: float = 0.0
    extra_width: float = 0.0
    extra_height: float = 0.0
    display_width: float = 0.0
    display_height: float = 0.0

    def description(self) -> str:
        """Header bytes 4-7 as ``"xx "`` hex pairs."""
        return "".join(f"{byte:02x} " for byte in self.type_bytes)


@dataclass(frozen=True)
class NalConversion:
    """Result of replacing NAL length prefixes with Annex B start codes.

    ``data`` holds the converted bytes; when ``valid`` is false the caller is
    expected to mark the frame (first output byte set to 1).
    """

    data: bytes
    nal_count: int
    valid: bool
    nal_types: tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CodecInfo:
    """SPS and PPS parameter sets carried by an unencrypted codec packet."""

    header: bytes
    sps: bytes
    pps: bytes
    remainder: bytes

    @property
    def sps_pps(self) -> bytes:
        """Both parameter sets as Annex B NAL units, ready to prepend to a frame."""
        return NAL_START_CODE + self.sps + NAL_START_CODE + self.pps


def parse_header(packet: bytes) -> MirrorHeader:
    """Parse a 128-byte mirroring header; raises ``ValueError`` if it is short."""
    packet = bytes(packet)
    if len(packet) < HEADER_SIZE:
        raise ValueError(f"mirror header must be {HEADER_SIZE} bytes, got {len(packet)}")
    payload_size, payload_type, payload_subtype, option, ntp_raw = struct.unpack_from(
        "<IBBHQ", packet, 0
    )
    (width, height) = struct.unpack_from("<ff", packet, 16)
    (width_source, height_source) = struct.unpack_from("<ff", packet, 40)
    (extra_width, extra_height) = struct.unpack_from("<ff", packet, 48)
    (display_width, display_height) = struct.unpack_from("<ff", packet, 56)
    return MirrorHeader(
        payload_size=payload_size,
        payload_type=payload_type,
        payload_subtype=payload_subtype,
        option=option,
        ntp_timestamp_raw=ntp_raw,
        type_bytes=packet[4:8],
        width=width,
        height=height,
        width_source=width_source,
        height_source=height_source,
        extra_width=extra_width,
        extra_height=extra_height,
        display_width=display_width,
        display_height=display_height,
    )


def _log_nal(nalu_type: int, ref_idc: int, unit: bytes, nc_len: int,
             offset: int, payload_size: int, count: int) -> None:
    if nalu_type in _VCL_TYPES:
        return
    if nalu_type in _PARAMETER_NAMES:
        if logger.isEnabledFor(logging.DEBUG):
            short, long_name = _PARAMETER_NAMES[nalu_type]
            logger.debug("mirror %s NAL size = %d", short, nc_len)
            logger.debug("mirror h264 %s:\n%s", long_name, data_to_string(unit, 16))
        return
    kind = "partitioned VCL" if nalu_type in _PARTITION_TYPES else "non-VCL"
    logger.info(
        "unexpected %s NAL unit: nalu_type = %d, ref_idc = %d, nalu_size = %d, "
        "processed bytes %d, payloadsize = %d nalus_count = %d",
        kind, nalu_type, ref_idc, nc_len, offset, payload_size, count,
    )


def convert_nal_units(data: bytes) -> NalConversion:
    """Replace each 4-byte big-endian NAL length with a start code.

    The data is invalid when a length is negative or runs past the end, when
    a NAL unit sets its forbidden zero bit, or when the lengths do not add up
    to the data size exactly.
    """
    out = bytearray(data)
    size = len(out)
    offset = 0
    count = 0
    types: list[int] = []
    valid = True
    while offset < size:
        if offset + 4 > size:
            valid = False
            break
        (nc_len,) = struct.unpack_from(">i", out, offset)
        if nc_len < 0:
            valid = False
            break
        out[offset:offset + 4] = NAL_START_CODE
        offset += 4
        count += 1
        if offset >= size or out[offset] & 0x80:
            valid = False
            break
        nalu_type = out[offset] & 0x1F
        ref_idc = out[offset] >> 5
        types.append(nalu_type)
        _log_nal(nalu_type, ref_idc, bytes(out[offset:offset + nc_len]), nc_len,
                 offset, size, count)
        offset += nc_len
    if offset != size:
        valid = False
    if not valid:
        logger.debug("nalu marked as invalid")
    return NalConversion(data=bytes(out), nal_count=count, valid=valid, nal_types=tuple(types))


def parse_codec_payload(payload: bytes) -> CodecInfo:
    """Extract the SPS and PPS from an unencrypted codec payload.

    Layout: 6 header bytes, a big-endian SPS size at 6, the SPS at 8, one
    byte, a big-endian PPS size, then the PPS and any remainder. Raises
    ``ValueError`` when the payload is too short for the sizes it declares.
    """
    payload = bytes(payload)
    if len(payload) < 8:
        raise ValueError("codec payload too short for SPS size")
    (sps_size,) = struct.unpack_from(">h", payload, 6)
    if sps_size < 0 or len(payload) < sps_size + 11:
        raise ValueError("codec payload too short for SPS and PPS size")
    (pps_size,) = struct.unpack_from(">h", payload, sps_size + 9)
    pps_start = sps_size + 11
    remainder_size = len(payload) - sps_size - pps_size - 11
    if pps_size < 0 or remainder_size < 0:
        logger.error("pps_sps error: packet remainder size = %d < 0", remainder_size)
        raise ValueError("codec payload too short for PPS")
    sps = payload[8:8 + sps_size]
    pps = payload[pps_start:pps_start + pps_size]
    remainder = payload[pps_start + pps_size:]
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("mirror h264 SPS+PPS header:\n%s", data_to_string(payload[:6], 16))
        logger.debug("mirror SPS NAL size = %d", sps_size)
        logger.debug("mirror h264 Sequence Parameter Set:\n%s", data_to_string(sps, 16))
        logger.debug("mirror PPS NAL size = %d", pps_size)
        logger.debug("mirror h264 Picture Parameter Set:\n%s", data_to_string(pps, 16))
        if remainder:
            logger.debug("remainder size = %d", len(remainder))
            logger.debug("remainder of SPS+PPS packet:\n%s", data_to_string(remainder, 16))
    return CodecInfo(header=payload[:6], sps=sps, pps=pps, remainder=remainder)