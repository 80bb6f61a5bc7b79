"""RTP timestamp extension and RTP-to-NTP clock synchronisation."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SECOND_IN_NSECS = 1_000_000_000
SYNC_DATA_COUNT = 8

_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF


@dataclass
class SyncPoint:
    """A local wall-clock time (ns) paired with the remote RTP time at that moment."""

    ntp_time: int = 0
    rtp_time: int = 0


class RtpClock:
    """Maps 32-bit RTP timestamps onto a 64-bit timeline and onto NTP time.

    ``ntp_time = sync_offset + clock_rate * rtp_time`` where ``clock_rate`` is
    nanoseconds per RTP tick.
    """

    def __init__(self, sample_rate: int) -> None:
        if sample_rate <= 0:
            raise ValueError("sample rate must be positive")
        self.clock_rate = float(SECOND_IN_NSECS // sample_rate)
        self.sync_offset = 0
        self.sync_data = [SyncPoint() for _ in range(SYNC_DATA_COUNT)]
        self.sync_index = 0
        self.rtp_time = 0
        self.rtp_start_time = 0
        self.started = False

    def reset(self) -> None:
        """Forget the RTP epoch and all stored sync points."""
        self.started = False
        for point in self.sync_data:
            point.ntp_time = 0
            point.rtp_time = 0

    def extend(self, rtp32: int) -> int:
        """Convert a 32-bit RTP timestamp to 64 bits, keeping a consistent epoch.

        The first call places the timestamp in epoch 1; later calls move the
        64-bit time by the shorter distance, forwards or backwards.
        """
        rtp32 &= _MASK32
        if self.started:
            low = self.rtp_time & _MASK32
            forward = (rtp32 - low) & _MASK32
            backward = (low - rtp32) & _MASK32
            if forward <= backward:
                self.rtp_time = (self.rtp_time + forward) & _MASK64
            else:
                self.rtp_time = (self.rtp_time - backward) & _MASK64
        else:
            self.rtp_time = (1 << 32) + rtp32
            self.rtp_start_time = self.rtp_time
            self.started = True
        return self.rtp_time

    def sync(self, ntp_time: int, rtp_time: int) -> int:
        """Record a sync point and update the offset; returns the offset correction."""
        offset = float(ntp_time) - self.clock_rate * rtp_time
        correction = 0

        self.sync_index = (self.sync_index + 1) % SYNC_DATA_COUNT
        latest = self.sync_data[self.sync_index]
        latest.ntp_time = ntp_time
        latest.rtp_time = rtp_time

        valid = [point for point in self.sync_data if point.ntp_time != 0]
        ntp_sum = 0
        rtp_sum = 0
        for point in valid:
            if point is latest:
                continue
            ntp_sum = (ntp_sum + ntp_time - point.ntp_time) & _MASK64
            rtp_sum = (rtp_sum + rtp_time - point.rtp_time) & _MASK64

        if len(valid) > 1:
            correction -= self.sync_offset
            offset += (float(ntp_sum) - self.clock_rate * rtp_sum) / len(valid)
        self.sync_offset = int(offset)
        correction += self.sync_offset

        logger.debug(
            "dataset %d rtp sync correction=%d, rtp_sync_offset=%d",
            len(valid), correction, self.sync_offset,
        )
        return correction

    def ntp_time_for(self, rtp_time: int) -> int:
        """Return the NTP time (ns) that corresponds to a 64-bit RTP time."""
        return (self.sync_offset + int(self.clock_rate * rtp_time)) & _MASK64