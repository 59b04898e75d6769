"""Bot-protection vendor fingerprinting."""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class ProtectionVendor(str, Enum):
    """Protection systems the bypass engine has a targeted routine for."""

    NONE = "none"
    DATADOME = "datadome"
    INCAPSULA = "incapsula"
    CLOUDFLARE = "cloudflare"
    RATE_LIMIT = "rate_limit"
    COOKIE_CHECK = "cookie_check"
    CAPTCHA = "captcha"
    GENERIC = "generic"


@dataclass(frozen=True)
class ProtectionInfo:
    vendor: ProtectionVendor
    confidence: float
    details: str

    @property
    def has_protection(self) -> bool:
        return self.vendor != ProtectionVendor.NONE


NO_PROTECTION = ProtectionInfo(ProtectionVendor.NONE, 1.0, "No protection mechanisms detected")

_CF_CLASS = re.compile(r"""class=["'][^"']*\bcf-""", re.IGNORECASE)
_CAPTCHA_IFRAME = re.compile(r"""<iframe[^>]+src=["'][^"']*(?:re)?captcha""", re.IGNORECASE)


def _header(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return ""


def detect_protection(
    html: str,
    status: int | None = None,
    headers: Mapping[str, str] | None = None,
) -> ProtectionInfo:
    """Identify the protection vendor from response markup, status and headers.

    Checks run in priority order and the first match wins, so a DataDome page
    that also mentions a captcha is reported as DataDome.
    """
    headers = headers or {}
    lower = html.lower()

    if (
        _header(headers, "x-datadome")
        or _header(headers, "x-dd-b")
        or "captcha-delivery.com" in lower
        or "datadome" in lower
        or "please enable js and disable any ad blocker" in lower
    ):
        info = ProtectionInfo(ProtectionVendor.DATADOME, 0.95, "DataDome JavaScript challenge")
    elif (
        _header(headers, "x-iinfo")
        or _header(headers, "x-cdn").lower() == "incapsula"
        or "/_incapsula_" in lower
        or "window._icdt" in lower
        or "_incapsula_resource" in lower
    ):
        info = ProtectionInfo(ProtectionVendor.INCAPSULA, 0.9, "Imperva Incapsula protection")
    elif (
        "cloudflare" in _header(headers, "server").lower()
        or "checking your browser" in lower
        or "ddos protection" in lower
        or "cloudflare" in lower
        or _CF_CLASS.search(html)
    ):
        info = ProtectionInfo(ProtectionVendor.CLOUDFLARE, 0.85, "Cloudflare challenge or DDoS protection")
    elif status == 429 or _header(headers, "retry-after"):
        info = ProtectionInfo(ProtectionVendor.RATE_LIMIT, 1.0, f"Rate limit (status {status})")
    elif any(token in _header(headers, "set-cookie").lower() for token in ("challenge", "verify")):
        info = ProtectionInfo(ProtectionVendor.COOKIE_CHECK, 0.8, "Cookie challenge")
    elif (
        "captcha" in lower
        or "are you a human" in lower
        or "prove you are human" in lower
        or _CAPTCHA_IFRAME.search(html)
    ):
        info = ProtectionInfo(ProtectionVendor.CAPTCHA, 0.9, "CAPTCHA challenge")
    else:
        return NO_PROTECTION

    logger.info("protection_detected", vendor=info.vendor.value, confidence=info.confidence)
    return info
