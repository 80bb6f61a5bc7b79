"""Building blocks for receiving AirPlay-style RTP audio and H.264 screen-mirroring streams."""

__version__ = "0.1.0"

__all__ = [
    "audio_pipeline",
    "h264",
    "hexutil",
    "rtp_audio",
    "rtp_clock",
    "timefmt",
    "video_pipeline",
]