"""LyreBird: supervised USB audio capture to RTSP relay streaming."""

__version__ = "1.3.0"
