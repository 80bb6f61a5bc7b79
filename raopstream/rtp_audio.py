"""RTP audio receiver: UDP control and data sockets, clock sync and event dispatch."""

from __future__ import annotations

import ipaddress
import logging
import select
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .hexutil import data_to_string
from .rtp_clock import SECOND_IN_NSECS, RtpClock

logger = logging.getLogger(__name__)

RAOP_AESIV_LEN = 16
RAOP_AESKEY_LEN = 16
RAOP_PACKET_LEN = 32768

NO_FLUSH = -42
DEFAULT_SAMPLE_RATE = 44100
# Empirical: matches an audio latency of about -0.25 s after the first clock sync.
DELAY_AAC = 0.275
NO_DATA_MARKER = b"\x00\x68\x34\x00"

CT_ALAC = 2
CT_AAC_ELD = 8

_SELECT_TIMEOUT = 0.005
_MASK64 = 0xFFFFFFFFFFFFFFFF


class AudioBuffer(Protocol):
    """Reordering buffer for encrypted audio packets."""

    def enqueue(self, packet: bytes, ntp_time: int, rtp_time: int, use_seqnum: bool) -> int:
        """Store a packet; returns a non-negative value on success."""

    def dequeue(self, no_resend: bool) -> Optional[tuple[bytes, int, int, int]]:
        """Return ``(payload, ntp_time, rtp_time, seqnum)`` or ``None`` when empty."""

    def handle_resends(self, callback: Callable[[int, int], None]) -> None:
        """Call ``callback(seqnum, count)`` for each missing packet run."""

    def flush(self, next_seq: int) -> None:
        """Discard buffered packets."""


class NtpClock(Protocol):
    """Local/remote clock conversions, all in nanoseconds."""

    def get_local_time(self) -> int:
        """Current local time."""

    def remote_timestamp_to_nano_seconds(self, raw: int) -> int:
        """Convert a raw 64-bit remote NTP timestamp."""

    def convert_remote_time(self, remote_time: int) -> int:
        """Map a remote time onto the local clock."""

    def convert_local_time(self, local_time: int) -> int:
        """Map a local time onto the remote clock."""


@dataclass(frozen=True)
class AudioFrame:
    """One decrypted-order audio payload handed to the renderer."""

    data: bytes
    rtp_time: int
    seqnum: int
    ct: int
    ntp_time_local: int
    ntp_time_remote: int
    synced: bool


@dataclass
class AudioCallbacks:
    """Optional hooks invoked by the receiver."""

    audio_process: Optional[Callable[[object, AudioFrame], None]] = None
    audio_set_volume: Optional[Callable[[float], None]] = None
    audio_flush: Optional[Callable[[], None]] = None
    audio_set_metadata: Optional[Callable[[bytes], None]] = None
    audio_set_coverart: Optional[Callable[[bytes], None]] = None
    audio_remote_control_id: Optional[Callable[[str, str], None]] = None
    audio_set_progress: Optional[Callable[[int, int, int], None]] = None


def build_resend_request(our_seqnum: int, seqnum: int, count: int) -> bytes:
    """Build the 8-byte control packet asking the sender to resend packets."""
    return struct.pack(
        ">BBHHH", 0x80, 0x55 | 0x80, our_seqnum & 0xFFFF, seqnum & 0xFFFF, count & 0xFFFF
    )


def _parse_remote(remote: bytes | str) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    if isinstance(remote, str):
        return ipaddress.ip_address(remote)
    raw = bytes(remote)
    if len(raw) not in (4, 16):
        raise ValueError(f"remote address must be 4 or 16 bytes, got {len(raw)}")
    return ipaddress.ip_address(raw)


def _open_udp_socket(port: int, use_ipv6: bool) -> socket.socket:
    family = socket.AF_INET6 if use_ipv6 else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        if use_ipv6:
            try:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            except OSError:
                pass
        sock.bind(("::" if use_ipv6 else "", port))
    except OSError:
        sock.close()
        raise
    return sock


class AudioRtpReceiver:
    """Receives RTP audio over UDP, keeps the RTP clock in sync and feeds a renderer."""

    def __init__(self, callbacks: AudioCallbacks, buffer: AudioBuffer, ntp: NtpClock,
                 remote: bytes | str) -> None:
        self.callbacks = callbacks
        self.buffer = buffer
        self.ntp = ntp
        self.remote = _parse_remote(remote)
        logger.debug("rtp parse remote ip = %s", self.remote)

        self.clock = RtpClock(DEFAULT_SAMPLE_RATE)
        self.ct = 0
        self.control_rport = 0
        self.control_lport = 0
        self.data_lport = 0
        self.ntp_start_time = 0

        self._lock = threading.Lock()
        self._running = False
        self._joined = True
        self._thread: Optional[threading.Thread] = None
        self._csock: Optional[socket.socket] = None
        self._dsock: Optional[socket.socket] = None
        self._control_addr = None
        self._control_seqnum = 0

        self._volume = 0.0
        self._volume_changed = False
        self._flush = NO_FLUSH
        self._metadata: Optional[bytes] = None
        self._coverart: Optional[bytes] = None
        self._dacp_id: Optional[str] = None
        self._active_remote_header: Optional[str] = None
        self._progress = (0, 0, 0)
        self._progress_changed = False

        self._reset_session()

    def _reset_session(self) -> None:
        self._have_synced = False
        self._no_data_yet = True
        self._rtp_count = 0
        self._sync_adjustment = 0.0
        self._seqnum1 = 0
        self._seqnum2 = 0

    @property
    def _no_resend(self) -> bool:
        return self.control_rport == 0

    def __enter__(self) -> AudioRtpReceiver:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start_audio(self, control_rport: int, control_lport: int, data_lport: int,
                    ct: int, sample_rate: int) -> tuple[int, int]:
        """Open the control and data sockets and start the receiving thread.

        Returns the bound ``(control_lport, data_lport)``. Raises ``OSError``
        when the sockets cannot be opened.
        """
        logger.info("rtp starting audio")
        with self._lock:
            if self._running or not self._joined:
                return self.control_lport, self.data_lport

            clock = RtpClock(sample_rate)
            use_ipv6 = self.remote.version == 6
            csock = dsock = None
            try:
                csock = _open_udp_socket(control_lport, use_ipv6)
                dsock = _open_udp_socket(data_lport, use_ipv6)
            except OSError:
                logger.error("rtp initializing sockets failed")
                if csock is not None:
                    csock.close()
                raise

            self.ct = ct
            self.clock = clock
            self.control_rport = control_rport
            self._csock, self._dsock = csock, dsock
            self.control_lport = csock.getsockname()[1]
            self.data_lport = dsock.getsockname()[1]
            logger.debug("rtp local control port UDP %d", self.control_lport)
            logger.debug("rtp local data port    UDP %d", self.data_lport)

            self._reset_session()
            self._control_addr = None
            self.ntp_start_time = self.ntp.get_local_time()
            self.clock.reset()
            logger.debug("rtp start_time = %8.6f", self.ntp_start_time / SECOND_IN_NSECS)

            self._running = True
            self._joined = False
            self._thread = threading.Thread(target=self._run, name="rtp-audio", daemon=True)
            self._thread.start()
            return self.control_lport, self.data_lport

    def set_volume(self, volume: float) -> None:
        """Queue a volume change, clamped to the range -144..0 dB."""
        volume = min(0.0, max(-144.0, float(volume)))
        with self._lock:
            self._volume = volume
            self._volume_changed = True

    def set_metadata(self, data: bytes) -> None:
        """Queue metadata for delivery; empty data is ignored."""
        if not data:
            return
        with self._lock:
            self._metadata = bytes(data)

    def set_coverart(self, data: bytes) -> None:
        """Queue cover art for delivery; empty data is ignored."""
        if not data:
            return
        with self._lock:
            self._coverart = bytes(data)

    def remote_control_id(self, dacp_id: Optional[str],
                          active_remote_header: Optional[str]) -> None:
        """Queue DACP remote-control identifiers; ignored unless both are given."""
        if dacp_id is None or active_remote_header is None:
            return
        with self._lock:
            self._dacp_id = dacp_id
            self._active_remote_header = active_remote_header

    def set_progress(self, start: int, curr: int, end: int) -> None:
        """Queue playback progress values."""
        with self._lock:
            self._progress = (start, curr, end)
            self._progress_changed = True

    def flush(self, next_seq: int) -> None:
        """Queue a flush request."""
        with self._lock:
            self._flush = next_seq

    def process_events(self) -> bool:
        """Deliver queued events to the callbacks.

        Returns ``False`` without delivering anything when not running.
        """
        with self._lock:
            if not self._running:
                return False
            volume, volume_changed = self._volume, self._volume_changed
            self._volume_changed = False
            flush, self._flush = self._flush, NO_FLUSH
            metadata, self._metadata = self._metadata, None
            coverart, self._coverart = self._coverart, None
            dacp_id, self._dacp_id = self._dacp_id, None
            active_remote, self._active_remote_header = self._active_remote_header, None
            progress, progress_changed = self._progress, self._progress_changed
            self._progress_changed = False

        cb = self.callbacks
        if volume_changed and cb.audio_set_volume:
            cb.audio_set_volume(volume)
        if flush != NO_FLUSH and cb.audio_flush:
            cb.audio_flush()
        if metadata is not None and cb.audio_set_metadata:
            cb.audio_set_metadata(metadata)
        if coverart is not None and cb.audio_set_coverart:
            cb.audio_set_coverart(coverart)
        if dacp_id is not None and active_remote is not None and cb.audio_remote_control_id:
            cb.audio_remote_control_id(dacp_id, active_remote)
        if progress_changed and cb.audio_set_progress:
            cb.audio_set_progress(*progress)
        return True

    def handle_control_packet(self, packet: bytes) -> None:
        """Handle a packet from the control port: resent audio or a clock sync."""
        packet = bytes(packet)
        debug = logger.isEnabledFor(logging.DEBUG)
        type_c = packet[1] & ~0x80 if len(packet) >= 2 else -1
        logger.debug("rtp type_c 0x%02x, packetlen = %d", type_c & 0xFF, len(packet))

        if type_c == 0x56 and len(packet) >= 8:
            resent = packet[4:]
            seqnum = int.from_bytes(resent[2:4], "big")
            if len(resent) >= 12:
                timestamp = int.from_bytes(resent[4:8], "big")
                rtp_time = self.clock.extend(timestamp)
                ntp_time = self.clock.ntp_time_for(rtp_time) if self._have_synced else 0
                logger.debug("rtp resent audio packet: seqnum=%u", seqnum)
                self.buffer.enqueue(resent, ntp_time, rtp_time, True)
            elif debug:
                logger.debug("received empty resent audio packet length %d, seqnum=%u:\n%s",
                             len(packet), seqnum, data_to_string(packet, 16))
        elif type_c == 0x54 and len(packet) >= 20:
            sync_rtp = int.from_bytes(packet[4:8], "big")
            sync_rtp64 = self.clock.extend(sync_rtp)
            if not self._have_synced:
                logger.debug("first audio rtp sync")
                self._have_synced = True
            sync_ntp_raw = int.from_bytes(packet[8:16], "big")
            sync_ntp_remote = self.ntp.remote_timestamp_to_nano_seconds(sync_ntp_raw)
            if debug:
                sync_ntp_local = self.ntp.convert_remote_time(sync_ntp_remote)
                logger.debug(
                    "rtp sync: client ntp=%8.6f, ntp = %8.6f, ntp_start_time %8.6f sync_rtp=%u\n%s",
                    sync_ntp_remote / SECOND_IN_NSECS, sync_ntp_local / SECOND_IN_NSECS,
                    self.ntp_start_time / SECOND_IN_NSECS, sync_rtp, data_to_string(packet, 20),
                )
            self.clock.sync(sync_ntp_remote, sync_rtp64)
        elif debug:
            logger.debug("rtp unknown udp control packet\n%s", data_to_string(packet, 16))

    def handle_data_packet(self, packet: bytes) -> None:
        """Handle an RTP audio data packet and deliver any frames now in order."""
        packet = bytes(packet)
        if len(packet) < 12:
            if logger.isEnabledFor(logging.DEBUG) and packet:
                logger.debug("received short packet with length %d:\n%s",
                             len(packet), data_to_string(packet, 16))
            return

        rtp_time = self.clock.extend(int.from_bytes(packet[4:8], "big"))
        ntp_time = 0

        if self.ct == CT_ALAC and len(packet) == 44:
            return  # ALAC format-information packet, no audio

        if self._have_synced:
            ntp_time = self.clock.ntp_time_for(rtp_time)
        elif len(packet) == 16 and packet[12:16] == NO_DATA_MARKER:
            if self._no_data_yet:
                self._track_no_data_packet(packet, rtp_time)
            return
        else:
            self._no_data_yet = False

        self.buffer.enqueue(packet, ntp_time, rtp_time, True)

        if self.ct == CT_ALAC and not self._have_synced:
            return  # ALAC: wait for the first sync before dequeuing

        self._drain()
        if not self._no_resend:
            self.buffer.handle_resends(self._request_resend)

    def _track_no_data_packet(self, packet: bytes, rtp_time: int) -> None:
        # Estimate an initial offset from "no data" packets before the first sync.
        sync_ntp = self.ntp.get_local_time() - self.ntp_start_time
        sync_rtp = rtp_time - self.clock.rtp_start_time
        seqnum = int.from_bytes(packet[2:4], "big")
        if self._rtp_count == 0:
            self._sync_adjustment = float(sync_ntp)
            self._rtp_count = 1
            self._seqnum1 = self._seqnum2 = seqnum
        if self._seqnum2 != seqnum:
            # each AAC-ELD frame is sent three times; count one copy only
            self._rtp_count += 1
            self._sync_adjustment += (
                float(sync_ntp) - self.clock.clock_rate * sync_rtp - self._sync_adjustment
            ) / self._rtp_count
        self._seqnum2 = self._seqnum1
        self._seqnum1 = seqnum

    def _drain(self) -> None:
        debug = logger.isEnabledFor(logging.DEBUG)
        while (entry := self.buffer.dequeue(self._no_resend)) is not None:
            payload, ntp_timestamp, rtp64, seqnum = entry
            if self._have_synced:
                if ntp_timestamp == 0:
                    ntp_timestamp = self.clock.ntp_time_for(rtp64)
                remote = ntp_timestamp
                local = self.ntp.convert_remote_time(remote)
            else:
                elapsed = (
                    self.clock.clock_rate * ((rtp64 - self.clock.rtp_start_time) & _MASK64)
                    + self._sync_adjustment
                    + DELAY_AAC * SECOND_IN_NSECS
                )
                local = (self.ntp_start_time + int(elapsed)) & _MASK64
                remote = self.ntp.convert_local_time(local)
            frame = AudioFrame(
                data=bytes(payload), rtp_time=rtp64, seqnum=seqnum, ct=self.ct,
                ntp_time_local=local, ntp_time_remote=remote, synced=self._have_synced,
            )
            if self.callbacks.audio_process:
                self.callbacks.audio_process(self.ntp, frame)
            if debug:
                now = self.ntp.get_local_time()
                logger.debug(
                    "rtp audio: now = %8.6f, ntp = %8.6f, latency = %8.6f, rtp_time=%u seqnum = %u",
                    now / SECOND_IN_NSECS, local / SECOND_IN_NSECS,
                    (now - local) / SECOND_IN_NSECS, rtp64 & 0xFFFFFFFF, seqnum,
                )

    def _request_resend(self, seqnum: int, count: int) -> None:
        logger.debug("rtp got resend request %d %d", seqnum, count)
        our_seqnum = self._control_seqnum
        self._control_seqnum = (our_seqnum + 1) & 0xFFFF
        request = build_resend_request(our_seqnum, seqnum, count)
        if self._csock is None or self._control_addr is None:
            logger.warning("rtp resend failed: no control address")
            return
        try:
            self._csock.sendto(request, self._control_addr)
        except OSError as exc:
            logger.warning("rtp resend failed: %s", exc)

    def _run(self) -> None:
        csock, dsock = self._csock, self._dsock
        while self.process_events():
            try:
                readable, _, _ = select.select([csock, dsock], [], [], _SELECT_TIMEOUT)
            except (OSError, ValueError):
                logger.error("rtp error in select")
                break
            if csock in readable:
                try:
                    packet, addr = csock.recvfrom(RAOP_PACKET_LEN)
                except OSError:
                    packet = b""
                else:
                    if self._control_addr is None and packet:
                        self._control_addr = addr
                self.handle_control_packet(packet)
            if dsock in readable:
                try:
                    packet = dsock.recv(RAOP_PACKET_LEN)
                except OSError:
                    continue
                self.handle_data_packet(packet)

        with self._lock:
            self._running = False
        logger.debug("rtp exiting thread")

    def stop(self) -> None:
        """Stop the receiving thread, close the sockets and flush the buffer."""
        with self._lock:
            if not self._running or self._joined:
                return
            self._running = False
        if self._thread is not None:
            self._thread.join()
        for sock in (self._csock, self._dsock):
            if sock is not None:
                sock.close()
        self._csock = self._dsock = None
        self.buffer.flush(-1)
        with self._lock:
            self._joined = True

    def is_running(self) -> bool:
        """Whether the receiving thread is active."""
        with self._lock:
            return self._running

    def close(self) -> None:
        """Release all resources."""
        self.stop()