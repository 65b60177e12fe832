"""Capture device discovery and stable identity resolution.

Discovery reads the ALSA card registry (/proc/asound) and USB sysfs to build
AudioDevice records, filters them to usable capture devices, and probes each
one with a bounded test capture. The resolver turns a device into a
DeviceIdentity whose uuid survives reboots and re-enumeration, and whose
friendly name becomes the stream name.

Identity Derivation (first available wins):
    1. usb-<vendor>-<product>-<port path>   (same device, same port → same id)
    2. usb-<vendor>-<product>-sn<serial hash>
    3. anon-<hash of bus/index/name + boot salt>   (boot-scoped, not persisted)

Friendly Names:
    Identity map entry (operator-editable) → configured known device →
    built-in vendor/product table → raw-name pattern → sanitized raw id →
    <category>_<index>. Collisions get a deterministic uuid-derived suffix.

Logging Strategy:
    DEBUG - Registry parsing, skipped cards, probe commands
    INFO  - Discovered devices, new identities
    WARN  - Inaccessible/busy devices, invalid map entries
    ERROR - Registry unreadable
"""
from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, Final

import psutil
from pydantic import ValidationError

from ..config.device_names import KNOWN_NAME_PATTERNS, KNOWN_USB_IDS
from ..errors import DiscoveryUnavailable, NoDevicesFound
from ..models.device import AudioDevice, DeviceIdentity
from ..state_store import append_key_value, ensure_file, read_key_values, read_lines
from ..utils.encoder import build_capture_test_command
from ..utils.strings import (
    MAX_NAME_LENGTH,
    PORT_PATH_PATTERN,
    fallback_name,
    is_valid_stream_name,
    normalize_port_path,
    sanitize_name,
    short_hash,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CARD_LINE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\s*(\d+)\s*\[([^\]]+)\]\s*:\s*(.*)$")
"""Header line of a card entry in /proc/asound/cards."""

USB_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"([0-9a-fA-F]{4}):([0-9a-fA-F]{4})")

DEFAULT_BLACKLIST: Final[list[str]] = [
    "bcm2835_headpho",
    "vc4-hdmi",
    "HDMI",
    "vc4hdmi0",
    "vc4hdmi1",
]
"""On-board outputs of common single-board computers, never capture sources."""

BLACKLIST_HEADER: Final[str] = (
    "# Capture devices to ignore, one ALSA card id per line (exact match).\n"
    "# Find card ids in /proc/asound/cards (the name in [brackets])."
)

IDENTITY_MAP_HEADER: Final[str] = (
    "# Audio device map: DEVICE_UUID=friendly_name\n"
    "# Edit the right-hand side to rename a stream. Entries are never removed automatically."
)

BUSY_MARKERS: Final[tuple[str, ...]] = ("Device or resource busy", "EBUSY")

UNLOCK_SETTLE_SECONDS: Final[float] = 1.0

STABILIZATION_INTERVAL: Final[float] = 2.0

STABLE_READINGS: Final[int] = 3
"""Identical consecutive polls that count as settled."""

# ============================================================================
# Device Discovery
# ============================================================================

class DeviceDiscovery:
    """Enumerate usable capture devices.

    Args:
        blacklist_path: Blacklist file (created with defaults if missing)
        asound_root: /proc/asound
        usb_sysfs_root: /sys/bus/usb/devices
        dev_snd_root: /dev/snd
        include_non_usb: Also stream on-board capture cards
        probe_capture: Run a bounded test capture per device
        probe_timeout: Seconds allowed for the test capture
        unlock_busy: Try to free a busy device once before excluding it
        ffmpeg_binary: Encoder used for the test capture
        runner: subprocess.run compatible callable (injectable for tests)
    """

    def __init__(
        self,
        blacklist_path: Path,
        asound_root: Path = Path("/proc/asound"),
        usb_sysfs_root: Path = Path("/sys/bus/usb/devices"),
        dev_snd_root: Path = Path("/dev/snd"),
        include_non_usb: bool = False,
        probe_capture: bool = True,
        probe_timeout: float = 3.0,
        unlock_busy: bool = True,
        ffmpeg_binary: str = "ffmpeg",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.blacklist_path = Path(blacklist_path)
        self.asound_root = Path(asound_root)
        self.usb_sysfs_root = Path(usb_sysfs_root)
        self.dev_snd_root = Path(dev_snd_root)
        self.include_non_usb = include_non_usb
        self.probe_capture = probe_capture
        self.probe_timeout = probe_timeout
        self.unlock_busy = unlock_busy
        self.ffmpeg_binary = ffmpeg_binary
        self._run = runner

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    def load_blacklist(self) -> set[str]:
        """Read the blacklist, creating it with defaults on first use."""
        try:
            ensure_file(self.blacklist_path, BLACKLIST_HEADER, DEFAULT_BLACKLIST)
        except OSError as e:
            logger.warning(f"Cannot create blacklist {self.blacklist_path}: {e}; using defaults")
            return set(DEFAULT_BLACKLIST)
        return set(read_lines(self.blacklist_path))

    # ------------------------------------------------------------------
    # Registry parsing
    # ------------------------------------------------------------------

    def _read_cards(self) -> list[tuple[int, str, str]]:
        cards_file = self.asound_root / "cards"
        try:
            text = cards_file.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.error(f"Cannot read sound card registry {cards_file}: {e}")
            raise DiscoveryUnavailable(f"Cannot read {cards_file}: {e}") from e

        cards = []
        for line in text.splitlines():
            match = CARD_LINE_PATTERN.match(line)
            if match:
                cards.append((int(match.group(1)), match.group(2).strip(), match.group(3).strip()))
        logger.debug(f"Registry lists {len(cards)} card(s)")
        return cards

    def _has_capture(self, index: int) -> bool:
        card_dir = self.asound_root / f"card{index}"
        if any(card_dir.glob("pcm*c")):
            return True
        return (self.dev_snd_root / f"pcmC{index}D0c").exists()

    def _read_sysfs(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8", errors="replace").strip() or None
        except OSError:
            return None

    def _find_usb_port(self, bus: int, dev: int) -> tuple[str | None, str | None]:
        """Find the sysfs port path and serial for a bus/device number pair."""
        try:
            entries = sorted(self.usb_sysfs_root.iterdir())
        except OSError:
            return None, None

        for entry in entries:
            # Interfaces (1-1.2:1.0) and root hubs (usb1) don't match
            if not PORT_PATH_PATTERN.match(entry.name):
                continue
            busnum = self._read_sysfs(entry / "busnum")
            devnum = self._read_sysfs(entry / "devnum")
            if not (busnum and devnum and busnum.isdigit() and devnum.isdigit()):
                continue
            if int(busnum) == bus and int(devnum) == dev:
                serial = self._read_sysfs(entry / "serial")
                return entry.name, serial
        return None, None

    def _build_device(self, index: int, card_id: str, description: str) -> AudioDevice:
        card_dir = self.asound_root / f"card{index}"
        usbid = self._read_sysfs(card_dir / "usbid")
        vendor = product = None
        if usbid:
            match = USB_ID_PATTERN.search(usbid)
            if match:
                vendor, product = match.group(1), match.group(2)

        bus_text = self._read_sysfs(card_dir / "usbbus") or ""
        dev_text = self._read_sysfs(card_dir / "usbdev") or ""
        # usbbus may read "001" or "001/004" depending on kernel version
        bus_part = bus_text.split("/")[0]
        dev_part = dev_text or (bus_text.split("/")[1] if "/" in bus_text else "")

        port = serial = None
        if bus_part.isdigit() and dev_part.isdigit():
            port, serial = self._find_usb_port(int(bus_part), int(dev_part))
            if port is None:
                logger.debug(f"Card {index}: no sysfs port for bus {bus_part} dev {dev_part}")

        return AudioDevice(
            bus_id=bus_part,
            device_index=index,
            raw_name=card_id,
            description=description,
            usb_vendor_id=vendor,
            usb_product_id=product,
            physical_port_path=port,
            serial=serial,
            is_usb=usbid is not None,
        )

    # ------------------------------------------------------------------
    # Accessibility probe
    # ------------------------------------------------------------------

    def device_file(self, device: AudioDevice) -> Path:
        return self.dev_snd_root / f"pcmC{device.device_index}D0c"

    def _test_capture(self, device: AudioDevice) -> tuple[bool, bool]:
        """Run a bounded capture. Returns (ok, busy)."""
        cmd = build_capture_test_command(device.raw_name, self.probe_timeout, self.ffmpeg_binary)
        logger.debug(f"Capture probe: {' '.join(cmd)}")
        try:
            result = self._run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=self.probe_timeout + 2,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Capture probe timed out for {device.raw_name}")
            return False, False
        except FileNotFoundError as e:
            logger.warning(f"Capture probe unavailable ({e.filename} not found), skipping probe")
            return True, False

        if result.returncode == 0:
            return True, False
        stderr = (result.stderr or b"").decode("utf-8", errors="replace")
        busy = any(marker in stderr for marker in BUSY_MARKERS)
        return False, busy

    def _unlock(self, device: AudioDevice, holders: list[int]) -> None:
        """Ask processes holding the device to exit (one attempt)."""
        if holders:
            for pid in holders:
                logger.warning(f"Sending SIGTERM to pid {pid} holding {device.raw_name}")
                try:
                    os.kill(pid, signal.SIGTERM)
                except ProcessLookupError:
                    pass
                except PermissionError as e:
                    logger.warning(f"Cannot signal pid {pid}: {e}")
        else:
            # Holders invisible to us (other users); let fuser try
            try:
                self._run(
                    ["fuser", "-k", "-TERM", str(self.device_file(device))],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=self.probe_timeout,
                    check=False,
                )
            except (FileNotFoundError, subprocess.TimeoutExpired) as e:
                logger.warning(f"fuser unlock failed for {device.raw_name}: {e}")
        time.sleep(UNLOCK_SETTLE_SECONDS)

    def is_accessible(self, device: AudioDevice) -> bool:
        """Check that a device can be captured from.

        A device already held by one of our own pipelines counts as
        accessible without probing. A busy device held by anything else gets
        one unlock attempt and one re-probe.
        """
        device_file = self.device_file(device)
        if not device_file.exists():
            logger.warning(f"Excluding {device.raw_name}: device file {device_file} missing")
            return False

        holders = find_device_holders(device_file)
        own = own_descendants()
        if any(pid in own for pid in holders):
            logger.debug(f"{device.raw_name} in use by our own pipeline")
            return True

        if not self.probe_capture:
            return True

        ok, busy = self._test_capture(device)
        if ok:
            return True

        if busy and self.unlock_busy:
            logger.warning(f"{device.raw_name} is busy, attempting one unlock")
            self._unlock(device, [pid for pid in holders if pid not in own])
            ok, _ = self._test_capture(device)
            if ok:
                logger.info(f"{device.raw_name} accessible after unlock")
                return True

        logger.warning(f"Excluding {device.raw_name}: test capture failed")
        return False

    # ------------------------------------------------------------------
    # Discovery pass
    # ------------------------------------------------------------------

    def list_candidates(self) -> list[AudioDevice]:
        """Capture cards that pass the blacklist and USB filters.

        No test capture is run, so this is cheap enough to poll.

        Raises:
            DiscoveryUnavailable: Registry cannot be read
        """
        blacklist = self.load_blacklist()
        devices: list[AudioDevice] = []

        for index, card_id, description in self._read_cards():
            if card_id in blacklist:
                logger.debug(f"Card {index} [{card_id}] blacklisted")
                continue
            if not self._has_capture(index):
                logger.debug(f"Card {index} [{card_id}] has no capture PCM")
                continue

            device = self._build_device(index, card_id, description)
            if not device.is_usb and not self.include_non_usb:
                logger.debug(f"Card {index} [{card_id}] is not USB, skipping")
                continue
            devices.append(device)
        return devices

    def discover(self) -> list[AudioDevice]:
        """Enumerate usable capture devices.

        Returns:
            Devices in card-index order

        Raises:
            DiscoveryUnavailable: Registry cannot be read
            NoDevicesFound: No device survived filtering
        """
        devices: list[AudioDevice] = []
        for device in self.list_candidates():
            if not self.is_accessible(device):
                continue
            logger.info(
                f"Found capture device: card {device.device_index} [{device.raw_name}] "
                f"usb={device.usb_id or '-'} port={device.physical_port_path or '-'}"
            )
            devices.append(device)

        if not devices:
            raise NoDevicesFound("No usable capture devices found")
        return devices

    def wait_for_stable(
        self,
        timeout: float,
        interval: float = STABILIZATION_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> list[AudioDevice]:
        """Wait for USB enumeration to settle after boot or a hotplug burst.

        Polls the card registry until the same non-empty device set is seen
        on ``STABLE_READINGS`` consecutive polls, or ``timeout`` expires.
        Never raises: an unreadable registry counts as an empty reading and
        a timeout just ends the wait.

        Args:
            timeout: Upper bound on the wait in seconds
            interval: Seconds between polls

        Returns:
            Candidates from the last poll (possibly empty)
        """
        deadline = clock() + timeout
        previous: tuple | None = None
        readings = 0
        devices: list[AudioDevice] = []

        while True:
            try:
                devices = self.list_candidates()
            except DiscoveryUnavailable as e:
                logger.debug(f"Registry not readable yet: {e}")
                devices = []

            fingerprint = tuple(
                (d.device_index, d.raw_name, d.usb_id, d.physical_port_path) for d in devices
            )
            if devices and fingerprint == previous:
                readings += 1
            else:
                readings = 1 if devices else 0
            previous = fingerprint

            if readings >= STABLE_READINGS:
                logger.info(f"USB devices stable: {len(devices)} capture card(s)")
                return devices

            remaining = deadline - clock()
            if remaining <= 0:
                if devices:
                    logger.warning(
                        f"USB devices still changing after {timeout:.0f}s, proceeding with {len(devices)}"
                    )
                else:
                    logger.warning(f"No capture cards appeared within {timeout:.0f}s")
                return devices
            sleep(min(interval, remaining))


# ============================================================================
# Process Helpers
# ============================================================================

def own_descendants() -> set[int]:
    """Pids of every descendant of this process."""
    try:
        return {child.pid for child in psutil.Process().children(recursive=True)}
    except psutil.Error:
        return set()


def find_device_holders(device_file: Path, proc_root: Path = Path("/proc")) -> list[int]:
    """Pids with an open descriptor on device_file (visible ones only)."""
    target = str(device_file)
    holders = []
    for pid in psutil.pids():
        fd_dir = proc_root / str(pid) / "fd"
        try:
            fds = os.listdir(fd_dir)
        except OSError:
            continue
        for fd in fds:
            try:
                if os.readlink(fd_dir / fd) == target:
                    holders.append(pid)
                    break
            except OSError:
                continue
    return holders


# ============================================================================
# Identity Resolution
# ============================================================================

class IdentityResolver:
    """Map devices to persistent identities and unique stream names.

    The identity map is owned by this resolver: it is the only writer, it
    only appends, and it never rewrites an existing entry.

    Args:
        map_path: Identity map file (uuid=friendly_name)
        known_devices: Extra 'vvvv:pppp' or raw-id → name mappings
        salt: Boot-scoped salt for devices with no stable attributes
    """

    def __init__(
        self,
        map_path: Path,
        known_devices: dict[str, str] | None = None,
        salt: str | None = None,
    ) -> None:
        self.map_path = Path(map_path)
        self.known_devices = {k.lower(): v for k, v in (known_devices or {}).items()}
        self._salt = salt if salt is not None else str(time.time_ns())
        self._ephemeral: dict[tuple[str, int, str], str] = {}
        self._assigned: dict[str, str] = {}

    # ------------------------------------------------------------------
    # uuid
    # ------------------------------------------------------------------

    def compute_uuid(self, device: AudioDevice) -> tuple[str, bool]:
        """Derive a device uuid.

        Returns:
            (uuid, persistent) where persistent is False for boot-scoped ids
        """
        vendor = device.usb_vendor_id or "0000"
        product = device.usb_product_id or "0000"

        port = normalize_port_path(device.physical_port_path)
        if port:
            return f"usb-{vendor}-{product}-{port}", True

        if device.serial:
            return f"usb-{vendor}-{product}-sn{short_hash(device.serial, 12)}", True

        key = (device.bus_id, device.device_index, device.raw_name)
        if key not in self._ephemeral:
            digest = short_hash(f"{key[0]}:{key[1]}:{key[2]}:{self._salt}", 12)
            self._ephemeral[key] = f"anon-{digest}"
            logger.warning(
                f"No port path or serial for card {device.device_index} [{device.raw_name}]; "
                f"identity {self._ephemeral[key]} is valid for this boot only"
            )
        return self._ephemeral[key], False

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def known_name(self, device: AudioDevice) -> str | None:
        """Canonical name from configuration or the built-in tables."""
        if device.usb_id and device.usb_id in self.known_devices:
            return self.known_devices[device.usb_id]
        if device.raw_name.lower() in self.known_devices:
            return self.known_devices[device.raw_name.lower()]

        if device.usb_vendor_id and device.usb_product_id:
            name = KNOWN_USB_IDS.get((device.usb_vendor_id, device.usb_product_id))
            if name:
                return name

        for pattern, name in KNOWN_NAME_PATTERNS:
            if pattern.search(device.raw_name) or pattern.search(device.description):
                return name
        return None

    def generated_name(self, device: AudioDevice) -> str:
        """Sanitized raw id, or <category>_<index> when unusable."""
        name = sanitize_name(device.raw_name)
        for prefix in ("usb_audio_", "usb_"):
            if name.startswith(prefix) and len(name) > len(prefix):
                name = name[len(prefix):]
                break
        if not is_valid_stream_name(name):
            category = "usb_audio" if device.is_usb else "audio"
            return fallback_name(category, device.device_index)
        return name

    def _disambiguate(self, base: str, uuid: str, taken: set[str]) -> str:
        suffix = short_hash(uuid, 6)
        stem = base[: MAX_NAME_LENGTH - len(suffix) - 1].rstrip("_")
        candidate = f"{stem}_{suffix}"
        counter = 2
        while candidate in taken:
            candidate = f"{stem}_{suffix}{counter}"
            counter += 1
        return candidate

    def load_map(self) -> dict[str, str]:
        return read_key_values(self.map_path)

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def resolve(self, device: AudioDevice) -> DeviceIdentity:
        """Resolve a device to its identity, creating a map entry on first sighting.

        Idempotent: resolving the same device again returns the same name
        and does not modify the map.
        """
        uuid, persistent = self.compute_uuid(device)
        mapping = self.load_map()
        claimed = {name for other, name in self._assigned.items() if other != uuid}

        mapped = mapping.get(uuid)
        if mapped:
            if not _is_operator_name(mapped):
                logger.warning(f"Ignoring invalid name '{mapped}' for {uuid} in {self.map_path}")
            elif mapped in claimed:
                name = self._disambiguate(mapped, uuid, claimed | set(mapping.values()))
                logger.warning(f"Name '{mapped}' already in use; {uuid} streams as '{name}' this run")
                return self._remember(uuid, name, persistent)
            else:
                return self._remember(uuid, mapped, persistent)

        taken = claimed | {name for other, name in mapping.items() if other != uuid}
        candidate = self.known_name(device) or self.generated_name(device)
        if candidate in taken:
            base = self.generated_name(device)
            candidate = self._disambiguate(base, uuid, taken)

        if persistent and not mapped:
            append_key_value(self.map_path, uuid, candidate, header=IDENTITY_MAP_HEADER)
            logger.info(f"New device identity: {uuid}={candidate}")

        return self._remember(uuid, candidate, persistent)

    def _remember(self, uuid: str, name: str, persistent: bool) -> DeviceIdentity:
        self._assigned[uuid] = name
        return DeviceIdentity(uuid=uuid, friendly_name=name, persistent=persistent)


def _is_operator_name(name: str) -> bool:
    """Operator-chosen names may use upper case and dashes."""
    try:
        DeviceIdentity(uuid="check", friendly_name=name)
    except ValidationError:
        return False
    return True
