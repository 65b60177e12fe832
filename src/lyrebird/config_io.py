"""Thread-safe YAML configuration with atomic writes.

Persistent storage for the manager's global settings (lyrebird.yml).

Features:
    - Thread-safe with RLock (status API reads while the loop runs)
    - Atomic writes (temp file + rename)
    - Defaults written on first use so operators have a file to edit
    - Environment overrides for paths and binaries

Storage:
    Production: $CONFIG_DIR/lyrebird.yml (default /etc/lyrebird)

Environment Overrides (applied after the file):
    CONFIG_DIR, STATE_DIR, LOG_DIR, RUN_DIR
    MEDIAMTX_BINARY, MEDIAMTX_HOST, FFMPEG_BINARY

Logging Strategy:
    DEBUG - File operations, override application
    INFO  - Default config creation
    WARN  - Empty or non-mapping files
    ERROR - YAML parsing, validation failures
"""
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Final

import yaml
from pydantic import ValidationError

from .config.encoder_defaults import get_default_overrides_text
from .errors import ConfigError
from .models.settings import Settings
from .models.stream import StreamConfig
from .state_store import atomic_write, read_key_values, read_text

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CONFIG_FILENAME: Final[str] = "lyrebird.yml"

DEFAULT_CONFIG_DIR: Final[Path] = Path("/etc/lyrebird")

ENV_OVERRIDES: Final[dict[str, tuple[str, str]]] = {
    "STATE_DIR": ("paths", "state_dir"),
    "LOG_DIR": ("paths", "log_dir"),
    "RUN_DIR": ("paths", "run_dir"),
    "MEDIAMTX_BINARY": ("relay", "binary"),
    "MEDIAMTX_HOST": ("relay", "host"),
    "FFMPEG_BINARY": ("encoder", "binary"),
    "MEDIAMTX_STREAM_MODE": ("streams", "mode"),
    "MEDIAMTX_COMBINE_METHOD": ("streams", "combine_method"),
    "MEDIAMTX_COMBINED_PATH": ("streams", "combined_path"),
    "MEDIAMTX_ENABLE_FALLBACK": ("streams", "fallback"),
    "MEDIAMTX_MAX_COMBINED_DEVICES": ("streams", "max_combined_devices"),
    "USB_STABILIZATION_DELAY": ("discovery", "stabilization_timeout"),
}
"""Environment variable → (section, key)."""

_config_lock = threading.RLock()

# ============================================================================
# Paths
# ============================================================================

def get_config_dir() -> Path:
    """Config directory from CONFIG_DIR, else /etc/lyrebird."""
    return Path(os.getenv("CONFIG_DIR", str(DEFAULT_CONFIG_DIR)))


def get_config_path(config_dir: Path | None = None) -> Path:
    return (config_dir or get_config_dir()) / CONFIG_FILENAME


# ============================================================================
# Loading
# ============================================================================

def _apply_env_overrides(data: dict[str, Any], config_dir: Path) -> None:
    data.setdefault("paths", {})["config_dir"] = str(config_dir)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            logger.debug(f"Config override from {env_name}: {section}.{key}={value}")
            data.setdefault(section, {})[key] = value


def parse_settings(text: str, config_dir: Path) -> Settings:
    """Parse YAML text into validated settings.

    Args:
        text: YAML document (may be empty)
        config_dir: Directory the file was loaded from

    Returns:
        Validated Settings with environment overrides applied

    Raises:
        ConfigError: On YAML syntax or validation errors
    """
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {config_dir / CONFIG_FILENAME}: {e}")
        raise ConfigError(f"Invalid YAML in {config_dir / CONFIG_FILENAME}: {e}") from e

    if not isinstance(data, dict):
        logger.warning(f"Config root is {type(data).__name__}, expected mapping; using defaults")
        data = {}

    for section, value in list(data.items()):
        if value is None:
            data[section] = {}

    _apply_env_overrides(data, config_dir)

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise ConfigError(f"Invalid configuration in {config_dir / CONFIG_FILENAME}:\n{e}") from e


def load_settings(config_dir: Path | None = None, create: bool = False) -> Settings:
    """Load settings from lyrebird.yml.

    A missing file yields defaults. With ``create=True`` the defaults are
    also written so the operator has a file to edit.

    Args:
        config_dir: Directory holding lyrebird.yml (CONFIG_DIR if omitted)
        create: Write a default file when missing

    Returns:
        Validated Settings

    Raises:
        ConfigError: On unreadable, unparsable or invalid configuration
    """
    config_dir = config_dir or get_config_dir()
    path = get_config_path(config_dir)

    with _config_lock:
        try:
            text = read_text(path)
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e

        if text is None:
            logger.debug(f"No config at {path}, using defaults")
            settings = parse_settings("", config_dir)
            if create:
                try:
                    save_settings(settings, config_dir)
                except OSError as e:
                    logger.warning(f"Could not write default config {path}: {e}")
            return settings

        logger.debug(f"Loaded config {path}")
        return parse_settings(text, config_dir)


# ============================================================================
# Saving
# ============================================================================

def dump_settings(settings: Settings) -> str:
    """Render settings as YAML (paths converted to strings)."""
    data = settings.model_dump(mode="json")
    # config_dir is implied by the file location
    data["paths"].pop("config_dir", None)
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def save_settings(settings: Settings, config_dir: Path | None = None) -> Path:
    """Atomically write settings to lyrebird.yml.

    Returns:
        Path written
    """
    path = get_config_path(config_dir or settings.paths.config_dir)
    with _config_lock:
        atomic_write(path, "# LyreBird stream manager configuration\n" + dump_settings(settings))
    logger.info(f"Wrote configuration: {path}")
    return path


# ============================================================================
# Per-Device Stream Overrides
# ============================================================================

def normalize_override_key(key: str) -> str:
    """Map AUDIO_SAMPLE_RATE / sample_rate style keys to field names."""
    key = key.strip().lower()
    if key.startswith("audio_"):
        key = key[len("audio_"):]
    return key


def override_path(overrides_dir: Path, stream_name: str) -> Path:
    return Path(overrides_dir) / f"{stream_name}.conf"


def resolve_stream_config(
    overrides_dir: Path,
    stream_name: str,
    defaults: StreamConfig,
    write_example: bool = True,
) -> StreamConfig:
    """Build the immutable StreamConfig for one pipeline start.

    Overlays ``<overrides_dir>/<stream_name>.conf`` onto ``defaults``.
    Unknown keys are ignored. An invalid override file is reported and the
    defaults are used, so one bad edit cannot keep a stream offline.

    Args:
        overrides_dir: Directory of per-device override files
        stream_name: Stream (friendly) name
        defaults: Global default config
        write_example: Create ``<name>.conf.example`` when no override exists

    Returns:
        Resolved StreamConfig
    """
    path = override_path(overrides_dir, stream_name)
    raw = read_key_values(path)

    if not raw:
        example = path.with_name(path.name + ".example")
        if write_example and not path.exists() and not example.exists():
            try:
                atomic_write(example, get_default_overrides_text())
                logger.debug(f"Wrote override example {example}")
            except OSError as e:
                logger.debug(f"Could not write override example {example}: {e}")
        return defaults

    overrides = {normalize_override_key(k): v for k, v in raw.items()}
    unknown = sorted(set(overrides) - set(StreamConfig.model_fields))
    if unknown:
        logger.debug(f"[{stream_name}] Ignoring unknown override keys: {', '.join(unknown)}")

    try:
        config = StreamConfig.from_overrides(overrides, base=defaults)
    except ValidationError as e:
        logger.error(f"[{stream_name}] Invalid overrides in {path}, using defaults: {e}")
        return defaults

    logger.info(
        f"[{stream_name}] Overrides from {path.name}: rate={config.sample_rate}, "
        f"channels={config.channels}, codec={config.codec}, bitrate={config.bitrate}"
    )
    return config
