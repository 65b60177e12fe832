"""Encoder default parameter configuration.

Single source of truth for the audio encoder defaults used when no
per-device override is present, and for the codec to ffmpeg encoder mapping.
"""
from typing import Final

# ============================================================================
# Stream Defaults
# ============================================================================

DEFAULT_SAMPLE_RATE: Final[int] = 48000
DEFAULT_CHANNELS: Final[int] = 2
DEFAULT_CODEC: Final[str] = "opus"
DEFAULT_BITRATE: Final[str] = "128k"
DEFAULT_THREAD_QUEUE: Final[int] = 8192
DEFAULT_CHANNEL_SPLIT_MODE: Final[str] = "none"

DEFAULT_ANALYZEDURATION: Final[int] = 5_000_000
"""Microseconds ffmpeg spends analysing the ALSA input."""

DEFAULT_PROBESIZE: Final[int] = 5_000_000

RESAMPLE_FILTER: Final[str] = "aresample=async=1:first_pts=0"
"""Always applied first: keeps timestamps monotonic when USB clocks drift."""

# ============================================================================
# Codec Parameters
# ============================================================================

CODEC_ENCODERS: Final[dict[str, list[str]]] = {
    'opus': ['-c:a', 'libopus', '-application', 'audio'],
    'aac': ['-c:a', 'aac'],
    'mp3': ['-c:a', 'libmp3lame'],
}
"""Encoder arguments by codec name (bitrate appended separately)."""

SUPPORTED_SAMPLE_RATES: Final[frozenset[int]] = frozenset(
    {8000, 11025, 16000, 22050, 24000, 32000, 44100, 48000, 88200, 96000, 192000}
)

CHANNEL_SPLIT_FILTERS: Final[dict[str, str | None]] = {
    'none': None,
    'left': 'pan=mono|c0=c0',
    'right': 'pan=mono|c0=c1',
    'mono': 'pan=mono|c0=0.5*c0+0.5*c1',
}
"""Filters that reduce a stereo capture to one published channel."""

# ============================================================================
# Helper Functions
# ============================================================================

def get_codec_params(codec: str, bitrate: str) -> list[str]:
    """Get encoder arguments for a codec.

    Unknown codecs fall back to opus.

    Args:
        codec: Codec name (opus/aac/mp3)
        bitrate: ffmpeg bitrate string (e.g. "128k")

    Returns:
        Encoder argument list
    """
    params = CODEC_ENCODERS.get(codec, CODEC_ENCODERS[DEFAULT_CODEC])
    return params[:2] + ['-b:a', bitrate] + params[2:]


def get_default_overrides_text() -> str:
    """Commented template written next to a new stream's override file."""
    return (
        "# Per-device stream settings. Rename to <name>.conf to activate.\n"
        f"# sample_rate={DEFAULT_SAMPLE_RATE}\n"
        f"# channels={DEFAULT_CHANNELS}\n"
        f"# codec={DEFAULT_CODEC}\n"
        f"# bitrate={DEFAULT_BITRATE}\n"
        f"# thread_queue={DEFAULT_THREAD_QUEUE}\n"
        "# channel_split_mode=none   # none, left, right, mono\n"
        "# filter_chain=highpass=f=80,volume=1.5\n"
    )
