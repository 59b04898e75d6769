"""Unit tests for protection vendor fingerprinting."""

import pytest

from acap.core.acquisition.protection_detection import (
    NO_PROTECTION,
    ProtectionVendor,
    detect_protection,
)


def test_clean_page_has_no_protection(listing_html):
    info = detect_protection(listing_html, 200, {"Content-Type": "text/html"})

    assert info is NO_PROTECTION
    assert info.has_protection is False


@pytest.mark.parametrize(
    "html,status,headers,vendor",
    [
        ('<script src="https://ct.captcha-delivery.com/c.js"></script>', 403, {}, ProtectionVendor.DATADOME),
        ("<html></html>", 403, {"X-DataDome": "protected"}, ProtectionVendor.DATADOME),
        ('<script src="/_Incapsula_Resource?x=1"></script>', 200, {}, ProtectionVendor.INCAPSULA),
        ("<html></html>", 200, {"X-CDN": "Incapsula"}, ProtectionVendor.INCAPSULA),
        ("<p>Checking your browser before accessing</p>", 503, {}, ProtectionVendor.CLOUDFLARE),
        ('<div class="main cf-wrapper"></div>', 403, {}, ProtectionVendor.CLOUDFLARE),
        ("<html></html>", 200, {"Server": "cloudflare"}, ProtectionVendor.CLOUDFLARE),
        ("<html></html>", 429, {}, ProtectionVendor.RATE_LIMIT),
        ("<html></html>", 200, {"Retry-After": "30"}, ProtectionVendor.RATE_LIMIT),
        ("<html></html>", 200, {"Set-Cookie": "bm_verify=abc"}, ProtectionVendor.COOKIE_CHECK),
        ('<iframe src="https://www.google.com/recaptcha/api2"></iframe>', 200, {}, ProtectionVendor.CAPTCHA),
        ("<p>Prove you are human</p>", 200, {}, ProtectionVendor.CAPTCHA),
    ],
)
def test_vendor_detection(html, status, headers, vendor):
    info = detect_protection(html, status, headers)

    assert info.vendor == vendor
    assert info.has_protection is True
    assert 0.0 < info.confidence <= 1.0


def test_datadome_wins_over_captcha():
    html = "<p>captcha</p><script>window.datadome = {};</script>"

    assert detect_protection(html).vendor == ProtectionVendor.DATADOME


def test_cloudflare_wins_over_rate_limit():
    assert detect_protection("<p>DDoS protection by Cloudflare</p>", 429).vendor == ProtectionVendor.CLOUDFLARE


def test_header_lookup_is_case_insensitive():
    assert detect_protection("", 200, {"x-iinfo": "1-2-3"}).vendor == ProtectionVendor.INCAPSULA
