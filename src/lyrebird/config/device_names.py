"""Canonical stream names for well-known capture devices.

Lookups are tried in order: exact USB vendor/product id, then raw-name
pattern. Operators add their own entries under ``known_devices`` in
lyrebird.yml; those are consulted before these built-ins.
"""
from __future__ import annotations

import re
from typing import Final

KNOWN_USB_IDS: Final[dict[tuple[str, str], str]] = {
    ("2e88", "4610"): "rode_ai_micro",
    ("19f7", "0003"): "rode_nt_usb",
    ("b58e", "9e84"): "blue_yeti",
    ("0d8c", "0013"): "cmedia_usb_audio",
}
"""(vendor_id, product_id) → canonical name. Ids are lowercase hex."""

KNOWN_NAME_PATTERNS: Final[list[tuple[re.Pattern[str], str]]] = [
    (re.compile(r"yeti", re.IGNORECASE), "blue_yeti"),
    (re.compile(r"ai[-_ ]?micro", re.IGNORECASE), "rode_ai_micro"),
    (re.compile(r"nt[-_ ]?usb", re.IGNORECASE), "rode_nt_usb"),
    (re.compile(r"snowball", re.IGNORECASE), "blue_snowball"),
    (re.compile(r"scarlett", re.IGNORECASE), "focusrite_scarlett"),
]
"""Raw-name regex → canonical name, for devices without a usable USB id."""
