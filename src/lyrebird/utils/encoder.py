"""Encoder command generation for capture → relay pipelines.

Logging Strategy:
    DEBUG - Command building

FFmpeg Pipeline:
    ALSA capture → aresample → [channel split] → [filter chain] → encoder → RTSP publish

Combined Pipeline:
    N × ALSA capture → amerge | amix → aresample → [filter chain] → encoder → RTSP publish
"""
from __future__ import annotations

import logging
import re
from typing import Final

from ..config.encoder_defaults import (
    CHANNEL_SPLIT_FILTERS,
    DEFAULT_ANALYZEDURATION,
    DEFAULT_PROBESIZE,
    RESAMPLE_FILTER,
    get_codec_params,
)
from ..models.stream import StreamConfig

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CAPTURE_TEST_DURATION: Final[str] = "0.1"
"""Seconds of audio read by the accessibility probe."""

COMBINED_KBPS_PER_CHANNEL: Final[int] = 64
"""Minimum bitrate per merged channel in an amerge stream."""

BITRATE_UNITS_PATTERN: Final[re.Pattern[str]] = re.compile(r"^(\d+(?:\.\d+)?)([kKmM]?)$")
"""Bitrate value and unit; a bare number is taken as kbit/s."""

# ============================================================================
# Command Building
# ============================================================================

def build_filter_graph(config: StreamConfig) -> str:
    """Build the -af filter string for a stream config.

    Resampling always comes first; the channel split and any operator
    filter chain follow in that order.
    """
    filters = [RESAMPLE_FILTER]
    split = CHANNEL_SPLIT_FILTERS.get(config.channel_split_mode)
    if split:
        filters.append(split)
    if config.filter_chain:
        filters.append(config.filter_chain)
    return ",".join(filters)


def build_encoder_command(
    source_device: str,
    config: StreamConfig,
    destination_url: str,
    binary: str = "ffmpeg",
) -> list[str]:
    """Build the ffmpeg command for one capture pipeline.

    Command structure:
    1. Global options (no stdin, info log level so markers are printed)
    2. ALSA input with rate, channels and queue size
    3. Audio filter graph
    4. Codec and bitrate
    5. RTSP publish over TCP

    Args:
        source_device: ALSA device (e.g. plughw:1,0)
        config: Resolved stream settings
        destination_url: rtsp://host:port/path
        binary: ffmpeg executable

    Returns:
        argv list for subprocess.Popen

    Example:
        >>> cmd = build_encoder_command("plughw:1,0", StreamConfig(), "rtsp://localhost:8554/mic")
        >>> cmd[-1]
        'rtsp://localhost:8554/mic'
    """
    cmd = [
        binary,
        "-nostdin",
        "-hide_banner",
        "-loglevel", "info",
        "-analyzeduration", str(DEFAULT_ANALYZEDURATION),
        "-probesize", str(DEFAULT_PROBESIZE),
        "-f", "alsa",
        "-ar", str(config.sample_rate),
        "-ac", str(config.channels),
        "-thread_queue_size", str(config.thread_queue),
        "-i", source_device,
        "-af", build_filter_graph(config),
    ]

    cmd.extend(get_codec_params(config.codec, config.bitrate))

    cmd.extend([
        "-f", "rtsp",
        "-rtsp_transport", "tcp",
        destination_url,
    ])

    logger.debug(
        f"Encoder command: source={source_device}, codec={config.codec}, "
        f"rate={config.sample_rate}, channels={config.channels}"
    )
    return cmd


def combined_bitrate(bitrate: str, total_channels: int) -> str:
    """Raise a bitrate to at least 64k per merged channel.

    Unparseable values are returned unchanged and left for the encoder to
    reject.

    Example:
        >>> combined_bitrate("128k", 4)
        '256k'
    """
    match = BITRATE_UNITS_PATTERN.match(bitrate)
    if match is None:
        return bitrate
    value = float(match.group(1))
    if match.group(2).lower() == "m":
        value *= 1000
    minimum = total_channels * COMBINED_KBPS_PER_CHANNEL
    if value >= minimum:
        return bitrate
    logger.debug(f"Raising combined bitrate {bitrate} → {minimum}k for {total_channels} channels")
    return f"{minimum}k"


def build_combined_filter(input_count: int, method: str, config: StreamConfig) -> str:
    """Build the -filter_complex graph joining every input.

    ``amerge`` keeps each device on its own channels; ``amix`` mixes them
    down without normalization so no input is attenuated.
    """
    labels = "".join(f"[{i}:a]" for i in range(input_count))
    if method == "amerge":
        graph = f"{labels}amerge=inputs={input_count}"
    elif method == "amix":
        graph = f"{labels}amix=inputs={input_count}:duration=longest:normalize=0"
    else:
        raise ValueError(f"Unknown combine method '{method}'")
    filters = [graph, RESAMPLE_FILTER]
    if config.filter_chain:
        filters.append(config.filter_chain)
    return ",".join(filters)


def build_combined_command(
    source_devices: list[str],
    config: StreamConfig,
    destination_url: str,
    method: str = "amerge",
    binary: str = "ffmpeg",
) -> list[str]:
    """Build one ffmpeg command publishing several devices on one path.

    Each device becomes an ALSA input with the shared rate, channels and
    queue size; the inputs are joined by build_combined_filter(). With
    ``amerge`` the bitrate is raised to cover every merged channel.

    Args:
        source_devices: ALSA devices in input order
        config: Settings shared by every input
        destination_url: rtsp://host:port/path
        method: "amerge" or "amix"
        binary: ffmpeg executable

    Returns:
        argv list for subprocess.Popen
    """
    if not source_devices:
        raise ValueError("A combined stream needs at least one device")

    cmd = [binary, "-nostdin", "-hide_banner", "-loglevel", "info"]
    for source in source_devices:
        cmd.extend([
            "-analyzeduration", str(DEFAULT_ANALYZEDURATION),
            "-probesize", str(DEFAULT_PROBESIZE),
            "-f", "alsa",
            "-ar", str(config.sample_rate),
            "-ac", str(config.channels),
            "-thread_queue_size", str(config.thread_queue),
            "-i", source,
        ])
    cmd.extend(["-filter_complex", build_combined_filter(len(source_devices), method, config)])

    bitrate = config.bitrate
    if method == "amerge":
        bitrate = combined_bitrate(bitrate, len(source_devices) * config.channels)
    cmd.extend(get_codec_params(config.codec, bitrate))

    cmd.extend([
        "-f", "rtsp",
        "-rtsp_transport", "tcp",
        destination_url,
    ])

    logger.debug(
        f"Combined encoder command: {len(source_devices)} inputs, method={method}, "
        f"codec={config.codec}, bitrate={bitrate}"
    )
    return cmd


def build_capture_test_command(
    card_id: str,
    timeout_seconds: float,
    binary: str = "ffmpeg",
) -> list[str]:
    """Build a bounded test capture that reads a fraction of a second.

    Wrapped in coreutils ``timeout`` so a wedged ALSA driver cannot hang
    discovery even if ffmpeg ignores signals.
    """
    return [
        "timeout", str(int(max(timeout_seconds, 1))),
        binary,
        "-nostdin",
        "-hide_banner",
        "-loglevel", "error",
        "-f", "alsa",
        "-i", f"plughw:CARD={card_id},DEV=0",
        "-t", CAPTURE_TEST_DURATION,
        "-f", "null", "-",
    ]
