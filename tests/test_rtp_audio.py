import ipaddress
import socket
import struct
import time

import pytest

from raopstream.rtp_audio import (
    DELAY_AAC,
    AudioCallbacks,
    AudioRtpReceiver,
    build_resend_request,
)
from raopstream.rtp_clock import SECOND_IN_NSECS

LOCALHOST = b"\x7f\x00\x00\x01"


class FakeBuffer:
    def __init__(self, resend=None):
        self.queue = []
        self.enqueued = []
        self.flushed = []
        self.resend = resend

    def enqueue(self, packet, ntp_time, rtp_time, use_seqnum):
        entry = (bytes(packet), ntp_time, rtp_time)
        self.enqueued.append(entry)
        self.queue.append(entry)
        return 1

    def dequeue(self, no_resend):
        if not self.queue:
            return None
        packet, ntp_time, rtp_time = self.queue.pop(0)
        return packet[12:], ntp_time, rtp_time, int.from_bytes(packet[2:4], "big")

    def handle_resends(self, callback):
        if self.resend is not None:
            seqnum, count = self.resend
            self.resend = None
            callback(seqnum, count)

    def flush(self, next_seq):
        self.flushed.append(next_seq)


class FakeNtp:
    def get_local_time(self):
        return 10 * SECOND_IN_NSECS

    def remote_timestamp_to_nano_seconds(self, raw):
        return raw

    def convert_remote_time(self, remote_time):
        return remote_time + 5

    def convert_local_time(self, local_time):
        return local_time - 5


def data_packet(seq, ts, payload=b"\x8c\x01\x02\x03"):
    return bytes([0x80, 0x60]) + struct.pack(">HI", seq, ts) + b"\x00" * 4 + payload


def sync_packet(rtp, ntp_raw):
    return bytes([0x80, 0xD4, 0x00, 0x04]) + struct.pack(">IQI", rtp, ntp_raw, rtp + 7497)


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class Recorder:
    def __init__(self):
        self.frames = []
        self.volumes = []
        self.flushes = []
        self.metadata = []
        self.coverart = []
        self.remote = []
        self.progress = []

    def callbacks(self):
        return AudioCallbacks(
            audio_process=lambda ntp, frame: self.frames.append(frame),
            audio_set_volume=self.volumes.append,
            audio_flush=lambda: self.flushes.append(True),
            audio_set_metadata=self.metadata.append,
            audio_set_coverart=self.coverart.append,
            audio_remote_control_id=lambda d, a: self.remote.append((d, a)),
            audio_set_progress=lambda s, c, e: self.progress.append((s, c, e)),
        )


@pytest.fixture
def setup():
    recorder = Recorder()
    buffer = FakeBuffer()
    receiver = AudioRtpReceiver(recorder.callbacks(), buffer, FakeNtp(), LOCALHOST)
    yield receiver, recorder, buffer
    receiver.close()


def test_build_resend_request_wire_format():
    assert build_resend_request(0x1234, 0x0102, 3) == b"\x80\xd5\x12\x34\x01\x02\x00\x03"


def test_invalid_remote_length_rejected():
    with pytest.raises(ValueError):
        AudioRtpReceiver(AudioCallbacks(), FakeBuffer(), FakeNtp(), b"\x01\x02\x03")


def test_remote_address_parsed(setup):
    receiver, _, _ = setup
    assert receiver.remote == ipaddress.ip_address("127.0.0.1")


def test_unsynced_frame_uses_start_estimate(setup):
    receiver, recorder, buffer = setup
    receiver.handle_data_packet(data_packet(1, 1000))
    assert len(recorder.frames) == 1
    frame = recorder.frames[0]
    assert frame.data == b"\x8c\x01\x02\x03"
    assert frame.seqnum == 1
    assert frame.synced is False
    assert frame.rtp_time == receiver.clock.rtp_start_time
    assert frame.ntp_time_local == int(DELAY_AAC * SECOND_IN_NSECS)
    assert frame.ntp_time_remote == frame.ntp_time_local - 5
    assert buffer.enqueued[0][1] == 0


def test_short_data_packet_ignored(setup):
    receiver, recorder, buffer = setup
    receiver.handle_data_packet(b"\x80\x60\x00\x01")
    assert buffer.enqueued == []
    assert recorder.frames == []


def test_no_data_marker_packets_not_enqueued(setup):
    receiver, recorder, buffer = setup
    receiver.handle_data_packet(data_packet(1, 1000, b"\x00\x68\x34\x00"))
    receiver.handle_data_packet(data_packet(2, 1480, b"\x00\x68\x34\x00"))
    assert buffer.enqueued == []
    receiver.handle_data_packet(data_packet(3, 1960))
    assert len(buffer.enqueued) == 1
    assert [f.seqnum for f in recorder.frames] == [3]


def test_sync_packet_aligns_clock(setup):
    receiver, _, _ = setup
    ntp_raw = 5 * SECOND_IN_NSECS
    receiver.handle_control_packet(sync_packet(1000, ntp_raw))
    rtp64 = receiver.clock.rtp_start_time
    assert abs(receiver.clock.ntp_time_for(rtp64) - ntp_raw) <= 1


def test_synced_frame_uses_clock(setup):
    receiver, recorder, buffer = setup
    receiver.handle_control_packet(sync_packet(1000, 5 * SECOND_IN_NSECS))
    receiver.handle_data_packet(data_packet(2, 1480))
    frame = recorder.frames[0]
    assert frame.synced is True
    assert frame.ntp_time_remote == receiver.clock.ntp_time_for(frame.rtp_time)
    assert frame.ntp_time_local == frame.ntp_time_remote + 5
    assert buffer.enqueued[0][1] == frame.ntp_time_remote


def test_resent_packet_enqueued(setup):
    receiver, recorder, buffer = setup
    inner = data_packet(9, 4000)
    receiver.handle_control_packet(bytes([0x80, 0xD6, 0x00, 0x01]) + inner)
    assert buffer.enqueued[0][0] == inner
    assert buffer.enqueued[0][2] == receiver.clock.rtp_start_time
    assert recorder.frames == []


def test_empty_resent_packet_not_enqueued(setup):
    receiver, _, buffer = setup
    receiver.handle_control_packet(bytes([0x80, 0xD6, 0x00, 0x01, 0x80, 0x60, 0x00, 0x09]))
    assert buffer.enqueued == []


def test_process_events_when_stopped(setup):
    receiver, recorder, _ = setup
    receiver.set_metadata(b"meta")
    assert receiver.process_events() is False
    assert recorder.metadata == []


def test_invalid_sample_rate(setup):
    receiver, _, _ = setup
    with pytest.raises(ValueError):
        receiver.start_audio(0, 0, 0, 8, 0)
    assert receiver.is_running() is False


def test_alac_waits_for_sync(setup):
    receiver, recorder, buffer = setup
    cport, dport = receiver.start_audio(0, 0, 0, 2, 44100)
    assert cport > 0 and dport > 0
    receiver.handle_data_packet(data_packet(1, 1000, b"\x20" * 32))
    assert buffer.enqueued == []
    receiver.handle_data_packet(data_packet(2, 1352, b"\x20\x01"))
    assert len(buffer.enqueued) == 1
    assert recorder.frames == []
    receiver.handle_control_packet(sync_packet(1352, 5 * SECOND_IN_NSECS))
    receiver.handle_data_packet(data_packet(3, 1704, b"\x20\x02"))
    assert [f.seqnum for f in recorder.frames] == [2, 3]
    assert all(f.ct == 2 for f in recorder.frames)


def test_volume_clamped(setup):
    receiver, recorder, _ = setup
    receiver.start_audio(0, 0, 0, 8, 44100)
    receiver.set_volume(3.0)
    assert wait_for(lambda: len(recorder.volumes) == 1)
    receiver.set_volume(-300.0)
    assert wait_for(lambda: len(recorder.volumes) == 2)
    assert recorder.volumes == [0.0, -144.0]


def test_events_dispatched_by_thread(setup):
    receiver, recorder, _ = setup
    receiver.start_audio(0, 0, 0, 8, 44100)
    receiver.set_metadata(b"meta")
    receiver.set_coverart(b"img")
    receiver.remote_control_id("dacp", "remote")
    receiver.set_progress(1, 2, 3)
    receiver.flush(5)
    assert wait_for(lambda: recorder.progress and recorder.flushes and recorder.remote
                    and recorder.coverart and recorder.metadata)
    assert recorder.metadata == [b"meta"]
    assert recorder.coverart == [b"img"]
    assert recorder.remote == [("dacp", "remote")]
    assert recorder.progress == [(1, 2, 3)]
    assert recorder.flushes == [True]


def test_stop_flushes_buffer(setup):
    receiver, _, buffer = setup
    receiver.start_audio(0, 0, 0, 8, 44100)
    assert receiver.is_running() is True
    receiver.stop()
    assert receiver.is_running() is False
    receiver.stop()
    assert buffer.flushed == [-1]


def test_data_over_udp(setup):
    receiver, recorder, _ = setup
    _, dport = receiver.start_audio(0, 0, 0, 8, 44100)
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
        client.sendto(data_packet(4, 2000, b"\x8d\xaa"), ("127.0.0.1", dport))
        assert wait_for(lambda: len(recorder.frames) == 1)
    assert recorder.frames[0].data == b"\x8d\xaa"
    assert recorder.frames[0].seqnum == 4


def test_resend_request_sent_to_control_address():
    recorder = Recorder()
    buffer = FakeBuffer(resend=(7, 2))
    with AudioRtpReceiver(recorder.callbacks(), buffer, FakeNtp(), LOCALHOST) as receiver:
        cport, dport = receiver.start_audio(6001, 0, 0, 8, 44100)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.bind(("127.0.0.1", 0))
            client.settimeout(2.0)
            client.sendto(sync_packet(1000, 5 * SECOND_IN_NSECS), ("127.0.0.1", cport))
            assert wait_for(lambda: receiver.clock.started)
            client.sendto(data_packet(1, 1480), ("127.0.0.1", dport))
            reply = client.recv(64)
    assert reply == build_resend_request(0, 7, 2)