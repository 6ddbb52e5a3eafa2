"""
auth/devices.py -- Classify a User-Agent string into a DeviceInfo record.

Deliberately simple substring matching: the result is a label for the
session list, not a security decision. Order matters -- Edge and Chrome both
advertise "chrome", Chrome advertises "safari".
"""

from __future__ import annotations

from auth.models import DeviceInfo

UNKNOWN = "Unknown"

_DEVICE_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("ipad", "tablet"), "Tablet"),
    (("mobile", "android", "iphone"), "Mobile"),
    (("postman",), "Postman"),
)

_BROWSER_RULES: tuple[tuple[str, str], ...] = (
    ("edg", "Edge"),
    ("firefox", "Firefox"),
    ("chrome", "Chrome"),
    ("safari", "Safari"),
    ("postman", "Postman"),
)


def parse_device_info(user_agent: str | None) -> DeviceInfo:
    """Return a DeviceInfo for the given User-Agent. Empty input -> Unknown/Unknown."""
    raw = (user_agent or "").strip()
    if not raw:
        return DeviceInfo(device_class=UNKNOWN, browser=UNKNOWN, user_agent="")

    ua = raw.lower()
    device = "Desktop"
    for needles, label in _DEVICE_RULES:
        if any(n in ua for n in needles):
            device = label
            break

    browser = UNKNOWN
    for needle, label in _BROWSER_RULES:
        if needle in ua:
            browser = label
            break

    return DeviceInfo(device_class=device, browser=browser, user_agent=raw)


def format_device_name(info: DeviceInfo) -> str:
    """Human-readable label, e.g. "Firefox on Desktop"."""
    browser = info.browser or UNKNOWN
    device = info.device_class or UNKNOWN
    if browser == UNKNOWN:
        browser = "Unknown Browser"
    if device == UNKNOWN:
        device = "Unknown Device"
    return f"{browser} on {device}"
