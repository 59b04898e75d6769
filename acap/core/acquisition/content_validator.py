"""Content legitimacy validation.

Decides whether fetched markup is a real page or a protection/error
interstitial, scores the quality of the links found on it, and provides the
title/article checks used on extracted articles.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlparse

import structlog
from bs4 import BeautifulSoup

from acap.core.acquisition.corruption import is_corrupted_text
from acap.core.acquisition.links import CandidateLink

logger = structlog.get_logger(__name__)


class ProtectionType(str, Enum):
    """What kind of non-article page a verdict believes it is looking at."""

    NONE = "none"
    CLOUDFLARE = "cloudflare"
    BOT_PROTECTION = "bot_protection"
    ERROR_PAGE = "error_page"
    MINIMAL_CONTENT = "minimal_content"


class RecommendedAction(str, Enum):
    PROCEED = "proceed"
    RETRY_DIFFERENT_METHOD = "retry_different_method"
    RETRY_WITH_DELAY = "retry_with_delay"
    ABORT = "abort"


@dataclass(frozen=True)
class LegitimacyPolicy:
    """Penalties and thresholds for legitimacy, link quality and bypass checks."""

    title_penalty: float = 0.4
    content_penalty: float = 0.5
    min_content_length: int = 500
    minimal_content_penalty: float = 0.3
    html_indicator_penalty: float = 0.4
    link_quality_threshold: float = 0.3
    link_quality_penalty: float = 0.3
    error_url_penalty: float = 0.4
    few_links_max: int = 4
    few_links_penalty: float = 0.2
    min_scripts: int = 3
    low_script_content_length: int = 1000
    low_script_penalty: float = 0.2
    legitimate_confidence: float = 0.4
    max_issues: int = 3
    retry_method_confidence: float = 0.2
    # link quality scoring
    link_quality_baseline: float = 0.2
    # bypass success
    bypass_phrase_penalty: float = 0.5
    bypass_min_content_length: int = 1000
    bypass_min_content_penalty: float = 0.3
    bypass_link_quality_threshold: float = 0.4
    bypass_link_quality_penalty: float = 0.3
    bypass_error_url_penalty: float = 0.4
    bypass_min_links: int = 3
    bypass_min_links_penalty: float = 0.2
    bypass_success_confidence: float = 0.5
    bypass_max_reasons: int = 3


DEFAULT_LEGITIMACY_POLICY = LegitimacyPolicy()

_TITLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"cloudflare.*protect",
        r"access.*denied",
        r"permission.*denied",
        r"403.*forbidden",
        r"404.*not.*found",
        r"503.*service.*unavailable",
        r"security.*check",
        r"bot.*protection",
        r"human.*verification",
        r"captcha.*verification",
        r"rate.*limit.*exceeded",
        r"blocked.*request",
        r"verification.*required",
        r"under.*maintenance",
        r"temporarily.*unavailable",
    )
]

_CONTENT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"cloudflare.*protects.*this.*website",
        r"if.*problem.*isn.*resolved.*few.*minutes",
        r"verify.*you.*are.*human",
        r"complete.*security.*check",
        r"enable.*javascript.*continue",
        r"browser.*does.*not.*support.*javascript",
        r"blocked.*security.*reasons",
        r"too.*many.*requests",
        r"rate.*limit.*exceeded",
        r"access.*from.*your.*area.*temporarily.*limited",
        r"website.*temporarily.*unavailable",
        r"maintenance.*mode",
        r"service.*temporarily.*unavailable",
    )
]

HTML_PROTECTION_INDICATORS = (
    "cf-browser-verification",
    "cf-challenge-form",
    "datadome",
    "captcha-delivery",
    "recaptcha",
    "hcaptcha",
    "challenge-platform",
    "security-check",
    "bot-detection",
)

_ERROR_URL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"error.*landing", r"5xx.*error", r"404.*page", r"access.*denied", r"blocked.*page")
]

_ARTICLE_LINK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/article/",
        r"/news/",
        r"/blog/",
        r"/post/",
        r"/story/",
        r"/reports?/",
        r"\d{4}/\d{2}/\d{2}",
        r"\d{4}-\d{2}-\d{2}",
    )
]

_ERROR_LINK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"error.*landing", r"5xx.*error", r"404.*page", r"access.*denied", r"blocked", r"maintenance")
]

_PROTECTION_LINK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"cloudflare", r"captcha", r"security.*check", r"verification", r"challenge")
]

BYPASS_PROTECTION_PHRASES = (
    "cloudflare protects this website",
    "security check",
    "verify you are human",
    "captcha",
    "blocked for security reasons",
    "rate limit exceeded",
    "access denied",
    "forbidden",
)

_BYPASS_ERROR_URL = re.compile(r"error|5xx|404|denied|blocked")

CHALLENGE_PHRASES = (
    "unusual activity",
    "not a robot",
    "click the box below",
    "verify you are human",
    "checking your browser",
)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class ValidationVerdict:
    """Outcome of a single legitimacy check. Computed per fetch, never stored."""

    is_legitimate: bool
    confidence: float
    issues: list[str] = field(default_factory=list)
    protection_type: ProtectionType = ProtectionType.NONE
    recommended_action: RecommendedAction = RecommendedAction.PROCEED


@dataclass
class LinkQuality:
    total_links: int = 0
    article_links: int = 0
    error_links: int = 0
    protection_links: int = 0
    score: float = 0.0
    issues: list[str] = field(default_factory=list)


@dataclass
class BypassValidation:
    success: bool
    confidence: float
    reasons: list[str] = field(default_factory=list)


def recommend_action(
    is_legitimate: bool,
    protection_type: ProtectionType,
    confidence: float,
    policy: LegitimacyPolicy = DEFAULT_LEGITIMACY_POLICY,
) -> RecommendedAction:
    """Deterministic mapping from a verdict's facts to the next step."""
    if is_legitimate:
        return RecommendedAction.PROCEED
    if protection_type == ProtectionType.CLOUDFLARE and confidence > policy.retry_method_confidence:
        return RecommendedAction.RETRY_DIFFERENT_METHOD
    if protection_type in (ProtectionType.MINIMAL_CONTENT, ProtectionType.ERROR_PAGE):
        return RecommendedAction.RETRY_WITH_DELAY
    return RecommendedAction.ABORT


def validate_content_legitimacy(
    html: str,
    title: str,
    content: str,
    links: list[CandidateLink] | None = None,
    policy: LegitimacyPolicy = DEFAULT_LEGITIMACY_POLICY,
) -> ValidationVerdict:
    """Score a fetched page and classify it as genuine or a protection/error page.

    Each signal subtracts a weighted penalty from 1.0. A page is legitimate
    when the remaining confidence is above the policy threshold and fewer than
    ``max_issues`` signals fired, so one weak signal on its own is not fatal.
    """
    links = links or []
    issues: list[str] = []
    confidence = 1.0
    protection = ProtectionType.NONE

    for pattern in _TITLE_PATTERNS:
        if pattern.search(title):
            issues.append(f'Protection/error indicator in title: "{title}"')
            confidence -= policy.title_penalty
            protection = (
                ProtectionType.CLOUDFLARE
                if "cloudflare" in title.lower()
                else ProtectionType.BOT_PROTECTION
            )
            break

    for pattern in _CONTENT_PATTERNS:
        if pattern.search(content):
            issues.append("Protection/error indicator in content")
            confidence -= policy.content_penalty
            if "cloudflare" in pattern.pattern:
                protection = ProtectionType.CLOUDFLARE
            elif protection == ProtectionType.NONE:
                protection = ProtectionType.BOT_PROTECTION
            break

    if len(content) < policy.min_content_length:
        issues.append(f"Minimal content detected: {len(content)} characters")
        confidence -= policy.minimal_content_penalty
        if protection == ProtectionType.NONE:
            protection = ProtectionType.MINIMAL_CONTENT

    lower_html = html.lower()
    for indicator in HTML_PROTECTION_INDICATORS:
        if indicator in lower_html:
            issues.append(f"HTML protection indicator found: {indicator}")
            confidence -= policy.html_indicator_penalty
            if indicator.startswith("cf-"):
                protection = ProtectionType.CLOUDFLARE
            elif protection == ProtectionType.NONE:
                protection = ProtectionType.BOT_PROTECTION

    quality = assess_link_quality(links, policy)
    if quality.score < policy.link_quality_threshold:
        issues.append(f"Poor link quality: {quality.score:.2f} score")
        confidence -= policy.link_quality_penalty

    if any(p.search(link.href) for link in links for p in _ERROR_URL_PATTERNS):
        issues.append("Error page URLs detected in extracted links")
        confidence -= policy.error_url_penalty
        if protection == ProtectionType.NONE:
            protection = ProtectionType.ERROR_PAGE

    if 0 < len(links) <= policy.few_links_max:
        issues.append(f"Very few links extracted: {len(links)}")
        confidence -= policy.few_links_penalty

    scripts = len(BeautifulSoup(html, "html.parser").find_all("script")) if html else 0
    if scripts < policy.min_scripts and len(content) < policy.low_script_content_length:
        issues.append(f"Minimal scripts ({scripts}) and content suggest protection page")
        confidence -= policy.low_script_penalty

    confidence = clamp(confidence)
    is_legitimate = confidence > policy.legitimate_confidence and len(issues) < policy.max_issues
    action = recommend_action(is_legitimate, protection, confidence, policy)

    logger.debug(
        "legitimacy_verdict",
        legitimate=is_legitimate,
        confidence=round(confidence, 2),
        issues=len(issues),
        protection=protection.value,
        action=action.value,
    )
    return ValidationVerdict(
        is_legitimate=is_legitimate,
        confidence=confidence,
        issues=issues,
        protection_type=protection,
        recommended_action=action,
    )


def assess_link_quality(
    links: list[CandidateLink], policy: LegitimacyPolicy = DEFAULT_LEGITIMACY_POLICY
) -> LinkQuality:
    """Score a link set by its share of article-looking links.

    A page whose links are all navigation gets only the baseline score,
    which sits below the proceed threshold; error and protection links
    subtract their share.
    """
    result = LinkQuality(total_links=len(links))
    if not links:
        result.issues.append("No links extracted")
        return result

    for link in links:
        haystack = f"{link.href} {link.anchor_text} {link.surrounding_context}".lower()
        label = link.anchor_text or link.href
        if any(p.search(haystack) for p in _ARTICLE_LINK_PATTERNS):
            result.article_links += 1
        if any(p.search(haystack) for p in _ERROR_LINK_PATTERNS):
            result.error_links += 1
            result.issues.append(f"Error link detected: {label}")
        if any(p.search(haystack) for p in _PROTECTION_LINK_PATTERNS):
            result.protection_links += 1
            result.issues.append(f"Protection link detected: {label}")

    total = result.total_links
    baseline = policy.link_quality_baseline
    result.score = clamp(
        baseline
        + (1 - baseline) * (result.article_links / total)
        - result.error_links / total
        - result.protection_links / total
    )

    if result.error_links > result.article_links:
        result.issues.append("More error links than article links")
    if result.protection_links:
        result.issues.append("Protection service links detected")
    if result.article_links == 0:
        result.issues.append("No article-like links detected")
    return result


def validate_bypass_success(
    html: str,
    content_length: int,
    links: list[CandidateLink],
    url: str,
    policy: LegitimacyPolicy = DEFAULT_LEGITIMACY_POLICY,
) -> BypassValidation:
    """Post-bypass check: did we actually get past the challenge?"""
    reasons: list[str] = []
    confidence = 1.0

    lower_html = html.lower()
    for phrase in BYPASS_PROTECTION_PHRASES:
        if phrase in lower_html:
            reasons.append(f"Still on protection page: {phrase}")
            confidence -= policy.bypass_phrase_penalty

    if content_length < policy.bypass_min_content_length:
        reasons.append(f"Minimal content after bypass: {content_length} chars")
        confidence -= policy.bypass_min_content_penalty

    quality = assess_link_quality(links, policy)
    if quality.score < policy.bypass_link_quality_threshold:
        reasons.append(f"Poor link quality after bypass: {quality.score:.2f}")
        confidence -= policy.bypass_link_quality_penalty

    if any(_BYPASS_ERROR_URL.search(link.href) for link in links):
        reasons.append("Error page URLs in extracted links")
        confidence -= policy.bypass_error_url_penalty

    if len(links) < policy.bypass_min_links:
        reasons.append(f"Very few links extracted: {len(links)}")
        confidence -= policy.bypass_min_links_penalty

    confidence = clamp(confidence)
    success = confidence > policy.bypass_success_confidence and len(reasons) < policy.bypass_max_reasons
    logger.debug(
        "bypass_validation",
        url=url,
        success=success,
        confidence=round(confidence, 2),
        reasons=len(reasons),
    )
    return BypassValidation(success=success, confidence=confidence, reasons=reasons)


def looks_like_challenge_page(text: str) -> bool:
    """True for CAPTCHA/interstitial text that slipped through extraction."""
    lower = text.lower()
    return any(phrase in lower for phrase in CHALLENGE_PHRASES)


# Title checks

_INVALID_TITLES = {
    "untitled",
    "no title",
    "unknown",
    "error",
    "not found",
    "access denied",
    "forbidden",
    "page not found",
    "cannot be found",
    "can't be found",
}
_INVALID_TITLE_PREFIXES = ("oops ", "error:", "404:", "403:", "500:")
_ERROR_TITLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b404\s+(error|page|not\s+found)\b",
        r"\b(403|500)\s+(error|forbidden|internal\s+server\s+error)\b",
        r"\boops[!.]?\b.*\b(page|found|exist)",
        r"\bpage\s+(not\s+found|can'?t\s+be\s+found|cannot\s+be\s+found|doesn'?t\s+exist)\b",
        r"^(not\s+found|access\s+denied|forbidden)",
        r"\b(that|this)\s+page\s+(can'?t|cannot|couldn'?t)\s+be\s+found\b",
        r"\bwe\s+can'?t\s+find\s+(that|the|this)\s+page\b",
        r"\bpage\s+is\s+not\s+available\b",
        r"^nothing\s+(here|found)",
    )
]


def is_valid_title(title: str | None) -> bool:
    if not title or not title.strip():
        return False
    title = title.strip()
    if len(title) < 3 or len(title) > 500:
        return False
    if is_corrupted_text(title):
        return False

    lower = title.lower()
    if lower in _INVALID_TITLES or lower.startswith(_INVALID_TITLE_PREFIXES):
        return False
    if any(p.search(title) for p in _ERROR_TITLE_PATTERNS):
        return False
    return re.search(r"[a-zA-Z]{2,}", title) is not None


# Article body checks

_ERROR_INDICATORS = (
    "access denied",
    "permission denied",
    "forbidden",
    "403 error",
    "404 not found",
    "page not found",
    "service unavailable",
    "too many requests",
    "rate limited",
    "cloudflare ray id",
    "cloudflare protection",
    "checking if the site connection is secure",
    "security check",
    "bot detection",
    "captcha",
    "verify you are human",
    "enable javascript",
    "enable cookies",
    "your browser",
    "checking your browser",
    "please wait",
    "just a moment",
    "ddos protection",
    "oops",
    "can't be found",
    "cannot be found",
    "could not be found",
    "couldn't be found",
    "page you requested",
    "page does not exist",
    "page doesn't exist",
    "nothing here",
    "broken link",
    "page is not available",
    "page unavailable",
)
_CRITICAL_INDICATORS = {"404 not found", "page not found", "oops", "access denied", "forbidden"}
_ERROR_BODY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bpage\s+(not\s+found|can'?t\s+be\s+found|cannot\s+be\s+found|doesn'?t\s+exist|does\s+not\s+exist)\b",
        r"\b404\s+(error|page|not\s+found)\b",
        r"^oops[!.]?\s+.{0,30}\s+(page|found|exist)",
        r"\bthe\s+page\s+you\s+(requested|are\s+looking\s+for|were\s+looking\s+for)\b",
        r"\bnothing\s+here\b|\bbroken\s+link\b",
        r"\bwe\s+can'?t\s+find\s+(the\s+)?page\b",
        r"\bpage\s+is\s+not\s+available\b",
        r"^sorry.*page.*not\s+(found|available)",
    )
]


def is_valid_article_content(content: str | None, min_length: int = 200) -> bool:
    """Check an extracted article body for corruption, length and error-page wording.

    Error wording inside a long, well-formed article is tolerated; the same
    wording in a short body rejects it.
    """
    if not content:
        return False
    if is_corrupted_text(content):
        return False
    if len(content) < min_length or len(content.strip()) < min_length / 2:
        return False

    lower = content.lower()
    sentences = re.findall(r"[.!?]+", content)
    word_count = len(content.split())
    matches_error_pattern = any(p.search(content) for p in _ERROR_BODY_PATTERNS)
    suspicious = [i for i in _ERROR_INDICATORS if i in lower]
    early = [i for i in suspicious if i in lower[:100]]

    substantial = len(content) > 5000 and len(sentences) > 20
    moderate = len(content) > 1000 and len(sentences) > 10

    if suspicious or matches_error_pattern:
        if matches_error_pattern and word_count < 200:
            return False
        if any(i in _CRITICAL_INDICATORS for i in early) and word_count < 500:
            return False
        if len(suspicious) / len(_ERROR_INDICATORS) > 0.3 and not substantial:
            return False
        if len(suspicious) >= 3 and not moderate:
            return False
        if matches_error_pattern and not moderate:
            return False
        logger.debug("article_error_wording_tolerated", indicators=suspicious[:5])

    return len(sentences) >= 2


def extract_title_from_url(url: str) -> str | None:
    """Derive a readable title from the last path segment of an article URL."""
    path = re.sub(r"\.(html?|php|aspx?|jsp|cgi)$", "", urlparse(url).path, flags=re.IGNORECASE)
    segments = [s for s in path.split("/") if s]
    if not segments:
        return None

    slug = re.sub(r"^(article-|post-|news-|blog-)", "", segments[-1], flags=re.IGNORECASE)
    slug = re.sub(r"(-\d+|_\d+)$", "", slug)
    title = re.sub(r"[-_]", " ", slug)
    title = re.sub(r"([a-z])([A-Z])", r"\1 \2", title)
    title = re.sub(r"\s+", " ", title).strip()
    title = re.sub(r"\b\w", lambda m: m.group(0).upper(), title)

    if 5 < len(title) < 200 and re.search(r"[a-zA-Z]{3,}", title):
        return title
    return None
