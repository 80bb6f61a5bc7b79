# raopstream

Building blocks for the receiving side of AirPlay-style streaming. The
package receives RTP audio over UDP and keeps the sender's RTP clock in step
with local time. It hands audio frames to your own callbacks. It also parses
and converts the packets of the H.264 screen-mirroring stream and holds the
rules for building playback pipelines.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

- `raopstream.rtp_clock`
  - `RtpClock(sample_rate)` extends 32-bit RTP timestamps to a 64-bit
    timeline with `extend`.
  - `sync` records a sync point and averages it with up to eight recent
    ones. It returns the change in offset.
  - `ntp_time_for` maps a 64-bit RTP time to wall-clock nanoseconds.
  - `reset` forgets the epoch and the stored sync points.
  - `SyncPoint` holds one stored pair.
- `raopstream.rtp_audio`
  - `AudioRtpReceiver(callbacks, buffer, ntp, remote)` opens the UDP control
    and data sockets with `start_audio`. That call returns the bound local
    ports. It then runs a receiving thread.
  - `handle_control_packet` handles resent audio and clock-sync packets.
  - `handle_data_packet` handles RTP audio packets and passes each in-order
    `AudioFrame` to `AudioCallbacks.audio_process`.
  - `set_volume` (clamped to -144..0 dB), `set_metadata`, `set_coverart`,
    `remote_control_id`, `set_progress` and `flush` queue events.
    `process_events` delivers them to the matching callbacks.
  - `stop`, `close` and `is_running` control the thread. The receiver is
    also a context manager.
  - `build_resend_request` builds the 8-byte packet that asks the sender to
    resend lost packets.
- `raopstream.h264`
  - `parse_header` reads the 128-byte mirroring packet header into a
    `MirrorHeader`. `MirrorHeader.description()` gives bytes 4-7 as hex.
  - `convert_nal_units` replaces 4-byte NAL length prefixes with Annex B
    start codes. It returns a `NalConversion` with the data, the NAL count,
    the NAL types and a validity flag.
  - `parse_codec_payload` takes the SPS and PPS out of a codec packet and
    returns a `CodecInfo`. Its `sps_pps` property gives both parameter sets
    ready to prepend to a frame.
- `raopstream.audio_pipeline`
  - `AudioFormat` lists the compression types (`from_ct`).
  - `pipeline_description` builds a pipeline launch string.
  - `is_valid_frame` checks a frame's first byte.
  - `volume_to_gain` maps dB attenuation to a gain in tenths.
  - `presentation_time` gives a time relative to a pipeline base time.
  - `AudioPipelineSelector` selects a format with `start`, and `stop`s it.
    `accepts` decides whether a frame is to be rendered.
- `raopstream.video_pipeline`
  - `VideoFlip` and `videoflip_element` describe the flip and rotation
    transforms.
  - `pipeline_description` builds the H.264 pipeline launch string.
  - `is_valid_video` and `presentation_time` check frames and give their
    timing.
  - `video_size` truncates reported dimensions into a `VideoSize`.
- `raopstream.hexutil`
  - `strsep`, `hwaddr_raop`, `hwaddr_airplay`, `parse_hex`, `data_to_string`
    (hex dumps) and `data_to_text`.
- `raopstream.timefmt`
  - `read_file`, `ntp_timestamp_to_time` and `ntp_timestamp_to_seconds`
    (nanosecond timestamps as local time).

## Example

```python
from raopstream.rtp_clock import RtpClock

clock = RtpClock(44100)
rtp = clock.extend(352_800)
clock.sync(1_700_000_000_000_000_000, rtp)
print(clock.ntp_time_for(clock.extend(353_152)))
```

```python
from raopstream.h264 import convert_nal_units

result = convert_nal_units(bytes([0, 0, 0, 2, 0x65, 0x88]))
print(result.valid, result.nal_count)  # True 1
```

## What the package does not do

- It has no receiver for the mirroring TCP connection. `raopstream.h264`
  parses and converts packets that you read and decrypt yourself.
- `AudioRtpReceiver` does not reorder packets, decrypt them or keep the
  NTP clock. You supply objects that do this. They must match the
  `AudioBuffer` and `NtpClock` protocols in `raopstream.rtp_audio`.
- Nothing is decoded or played. The pipeline modules only build
  descriptions and make decisions. Running them needs a media framework of
  your own.
- There is no command-line program and no service discovery or session
  handshake.