"""User-agent parsing and device fingerprints.

Two different hashes live here and are easy to confuse:

- ``device_fingerprint`` identifies a browser install for trusted-device
  bypass. It hashes the raw user agent and accept-language; the client IP is
  left out so the fingerprint survives network changes.
- ``device_signature`` is the coarse ``browser|os|device_type`` triple the
  security detector compares across sessions to spot new devices.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

# Order matters: Edge and Opera UAs also contain "Chrome", Chrome contains "Safari"
_BROWSER_PATTERNS = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/")),
    ("Opera", re.compile(r"(?:OPR|Opera)/")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/")),
    ("Safari", re.compile(r"Version/[\d.]+.*Safari/")),
    ("Internet Explorer", re.compile(r"(?:MSIE |Trident/)")),
)

_OS_PATTERNS = (
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod)")),
    ("Android", re.compile(r"Android")),
    ("Windows", re.compile(r"Windows")),
    ("macOS", re.compile(r"Mac OS X|Macintosh")),
    ("ChromeOS", re.compile(r"CrOS")),
    ("Linux", re.compile(r"Linux")),
)

_MOBILE_RE = re.compile(r"Mobile|iPhone|iPod|Android.*Mobile|Windows Phone", re.IGNORECASE)
_BOT_RE = re.compile(r"bot|crawler|spider|curl|wget|python-requests|httpx", re.IGNORECASE)

UNKNOWN = "Unknown"


@dataclass(frozen=True)
class DeviceInfo:
    browser: str = UNKNOWN
    os: str = UNKNOWN
    device_type: str = "desktop"

    @property
    def name(self) -> str:
        return f"{self.browser} on {self.os}"


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    if not user_agent:
        return DeviceInfo()
    browser = next(
        (label for label, pattern in _BROWSER_PATTERNS if pattern.search(user_agent)),
        UNKNOWN,
    )
    os_name = next(
        (label for label, pattern in _OS_PATTERNS if pattern.search(user_agent)),
        UNKNOWN,
    )
    if _BOT_RE.search(user_agent):
        device_type = "bot"
    elif (
        "iPad" in user_agent
        or "Tablet" in user_agent
        or ("Android" in user_agent and "Mobile" not in user_agent)
    ):
        device_type = "tablet"
    elif _MOBILE_RE.search(user_agent):
        device_type = "mobile"
    else:
        device_type = "desktop"
    return DeviceInfo(browser=browser, os=os_name, device_type=device_type)


def device_fingerprint(user_agent: Optional[str], accept_language: Optional[str]) -> str:
    raw = f"{user_agent or ''}|{accept_language or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def device_signature(browser: Optional[str], os: Optional[str], device_type: Optional[str]) -> str:
    raw = f"{browser or UNKNOWN}|{os or UNKNOWN}|{device_type or UNKNOWN}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
