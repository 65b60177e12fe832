"""String normalization utilities for stream and device names.

Provides utilities for:
- Stream name sanitization (relay path safe)
- Short stable hashes for identities
- Port path normalization

Note on Logging:
    These are pure utility functions with no side effects or I/O.
    Callers log the results if needed.
"""
from __future__ import annotations

import hashlib
import re
from typing import Final

# ============================================================================
# Constants
# ============================================================================

MAX_NAME_LENGTH: Final[int] = 32
"""Longest friendly name generated automatically."""

NON_ALNUM_RUN: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")

PORT_PATH_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\d+-\d+(\.\d+)*$")
"""sysfs USB port path, e.g. 1-1.2 (bus 1, port 1, hub port 2)."""

# ============================================================================
# Name Sanitization
# ============================================================================

def sanitize_name(raw: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Lowercase, collapse non-alphanumeric runs to '_' and truncate.

    Args:
        raw: Raw device identifier
        max_length: Maximum result length

    Returns:
        Sanitized name (may be empty)

    Examples:
        >>> sanitize_name("USB Audio Device")
        'usb_audio_device'

        >>> sanitize_name("--Yeti--  X!")
        'yeti_x'
    """
    if not raw or not isinstance(raw, str):
        return ""
    sanitized = NON_ALNUM_RUN.sub("_", raw.lower()).strip("_")
    return sanitized[:max_length].rstrip("_")


def is_valid_stream_name(name: str) -> bool:
    """True if name starts with a letter and is a sanitized, bounded name."""
    return bool(name) and name[0].isalpha() and name == sanitize_name(name)


def fallback_name(category: str, index: int) -> str:
    """Category-based name such as ``usb_audio_2``."""
    return f"{category}_{index}"


# ============================================================================
# Hashing
# ============================================================================

def short_hash(value: str, length: int = 8) -> str:
    """Truncated sha256 hex digest.

    Examples:
        >>> len(short_hash("1-1.2"))
        8
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def normalize_port_path(port: str | None) -> str | None:
    """Return a sysfs port path if well-formed, else None."""
    if not port:
        return None
    port = port.strip()
    return port if PORT_PATH_PATTERN.match(port) else None
