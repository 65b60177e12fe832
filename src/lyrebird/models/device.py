"""Capture device data models.

Defines Pydantic v2 models for audio capture hardware:
- AudioDevice: One discovered capture card (transient, never persisted)
- DeviceIdentity: Stable identity plus operator-editable stream name

Field Validation:
- USB vendor/product ids are normalized to lowercase 4-digit hex
- Friendly names must be valid relay path names
"""
from __future__ import annotations

import re
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ============================================================================
# Validation Helpers
# ============================================================================

USB_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[0-9a-f]{4}$")

FRIENDLY_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]{0,63}$")
"""Relay path names accepted by the generated relay config."""


def normalize_usb_id(value: str | None) -> str | None:
    """Normalize a USB id to lowercase hex, rejecting malformed values.

    Raises:
        ValueError: If value is not four hex digits
    """
    if value is None or value == "":
        return None
    value = value.strip().lower()
    if not USB_ID_PATTERN.match(value):
        raise ValueError(f"USB id must be 4 hex digits, got '{value}'")
    return value


# ============================================================================
# Audio Device
# ============================================================================

class AudioDevice(BaseModel):
    """One capture-capable sound card found by a discovery pass."""

    model_config = ConfigDict(frozen=True)

    bus_id: str = Field(
        default="",
        description="USB bus number (empty for non-USB cards)",
        examples=["001"]
    )

    device_index: int = Field(
        ge=0,
        description="ALSA card index",
        examples=[1]
    )

    raw_name: str = Field(
        min_length=1,
        description="ALSA card id as listed in /proc/asound/cards",
        examples=["Micro"]
    )

    description: str = Field(
        default="",
        description="Free-text card description from the registry"
    )

    usb_vendor_id: str | None = Field(default=None, examples=["2e88"])
    usb_product_id: str | None = Field(default=None, examples=["4610"])

    physical_port_path: str | None = Field(
        default=None,
        description="sysfs USB port path (e.g. 1-1.2)",
        examples=["1-1.2"]
    )

    serial: str | None = Field(default=None, description="USB serial number if exposed")

    is_usb: bool = False

    @field_validator("usb_vendor_id", "usb_product_id", mode="before")
    @classmethod
    def validate_usb_id(cls, value: str | None) -> str | None:
        return normalize_usb_id(value)

    @property
    def alsa_device(self) -> str:
        """ALSA plug device name used for capture."""
        return f"plughw:{self.device_index},0"

    @property
    def usb_id(self) -> str | None:
        if self.usb_vendor_id and self.usb_product_id:
            return f"{self.usb_vendor_id}:{self.usb_product_id}"
        return None


# ============================================================================
# Device Identity
# ============================================================================

class DeviceIdentity(BaseModel):
    """Persistent identity of a physical device on a physical port.

    ``uuid`` never changes once created. ``friendly_name`` doubles as the
    stream name and relay path, and may be edited by the operator in the
    identity map file.
    """

    model_config = ConfigDict(frozen=True)

    uuid: str = Field(
        min_length=1,
        description="Stable device identity",
        examples=["usb-2e88-4610-1-1.2"]
    )

    friendly_name: str = Field(
        description="Stream name published to the relay",
        examples=["rode_ai_micro"]
    )

    persistent: bool = Field(
        default=True,
        description="False for boot-scoped identities that are never written to the map"
    )

    @field_validator("uuid")
    @classmethod
    def validate_uuid(cls, value: str) -> str:
        if "=" in value or any(ch.isspace() for ch in value):
            raise ValueError("Identity must not contain '=' or whitespace")
        return value

    @field_validator("friendly_name")
    @classmethod
    def validate_friendly_name(cls, value: str) -> str:
        if not FRIENDLY_NAME_PATTERN.match(value):
            raise ValueError(f"Invalid stream name '{value}'")
        return value
