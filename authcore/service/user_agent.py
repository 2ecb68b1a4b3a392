from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Pattern, Sequence, Tuple

OTHER = "Other"

_BOT_RE = re.compile(
    r"bot\b|crawl|spider|slurp|bingpreview|facebookexternalhit|headless|"
    r"curl/|wget/|python-requests|httpx|okhttp",
    re.IGNORECASE,
)

# (family, pattern with the major version in group 1); first match wins
_BROWSERS: Sequence[Tuple[str, Pattern[str]]] = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/(\d+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/(\d+)")),
    ("Samsung Internet", re.compile(r"SamsungBrowser/(\d+)")),
    ("Chrome Mobile iOS", re.compile(r"CriOS/(\d+)")),
    ("Firefox iOS", re.compile(r"FxiOS/(\d+)")),
    ("Chrome Mobile", re.compile(r"Chrome/(\d+)[\d.]* Mobile")),
    ("Chrome", re.compile(r"Chrome/(\d+)")),
    ("Firefox Mobile", re.compile(r"Mobile;.*Firefox/(\d+)")),
    ("Firefox", re.compile(r"Firefox/(\d+)")),
    ("Mobile Safari", re.compile(r"Version/(\d+)[\d.]* Mobile/\S+ Safari/")),
    ("Safari", re.compile(r"Version/(\d+)[\d.]* Safari/")),
    ("IE", re.compile(r"(?:MSIE |Trident/.*rv:)(\d+)")),
)

_WINDOWS_VERSIONS = {
    "10.0": "10",
    "6.3": "8.1",
    "6.2": "8",
    "6.1": "7",
    "6.0": "Vista",
    "5.1": "XP",
}

_WINDOWS_RE = re.compile(r"Windows NT (\d+\.\d+)")
_ANDROID_RE = re.compile(r"Android (\d+)")
_IOS_RE = re.compile(r"(?:iPhone|CPU) OS (\d+)")
_MAC_RE = re.compile(r"Mac OS X (\d+)")

_TABLET_RE = re.compile(r"iPad|Tablet|Kindle|Silk/|PlayBook", re.IGNORECASE)
_MOBILE_RE = re.compile(r"iPhone|iPod|Mobile|Windows Phone|BlackBerry|Opera Mini", re.IGNORECASE)


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str = "Desktop"
    browser: str = OTHER
    os: str = OTHER


def _render(family: str, major: Optional[str]) -> str:
    return f"{family} {major}" if major else family


def _parse_browser(ua: str) -> str:
    for family, pattern in _BROWSERS:
        match = pattern.search(ua)
        if match:
            return _render(family, match.group(1))
    return OTHER


def _parse_os(ua: str) -> str:
    match = _WINDOWS_RE.search(ua)
    if match:
        return _render("Windows", _WINDOWS_VERSIONS.get(match.group(1)))
    if "Windows Phone" in ua:
        return "Windows Phone"
    match = _ANDROID_RE.search(ua)
    if match:
        return _render("Android", match.group(1))
    if "Android" in ua:
        return "Android"
    match = _IOS_RE.search(ua)
    if match and ("iPhone" in ua or "iPad" in ua or "iPod" in ua):
        return _render("iOS", match.group(1))
    match = _MAC_RE.search(ua)
    if match:
        return _render("Mac OS X", match.group(1))
    if "CrOS" in ua:
        return "Chrome OS"
    if "Linux" in ua:
        return "Linux"
    return OTHER


def _device_type(ua: str) -> str:
    if _BOT_RE.search(ua):
        return "Bot"
    if _TABLET_RE.search(ua):
        return "Tablet"
    if _MOBILE_RE.search(ua):
        return "Mobile"
    # Android without the Mobile token is a tablet
    if "Android" in ua:
        return "Tablet"
    return "Desktop"


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Coarse device type plus ``"Family Major"`` browser and OS labels."""
    ua = (user_agent or "").strip()
    if not ua:
        return DeviceInfo()
    return DeviceInfo(
        device_type=_device_type(ua),
        browser=_parse_browser(ua),
        os=_parse_os(ua),
    )
