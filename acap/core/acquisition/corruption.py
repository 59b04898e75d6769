"""Text corruption and encoding heuristics.

Everything in this module is a pure function of its input so it can be
exercised without any network or browser.
"""

import re
import unicodedata
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CorruptionPolicy:
    """Thresholds for :func:`is_corrupted_text`."""

    max_non_ascii_ratio: float = 0.7
    min_word_ratio: float = 0.3
    word_ratio_min_length: int = 100
    corruption_threshold: float = 0.7
    context_window: int = 200
    # (length above which, score added)
    pattern_length_steps: tuple[tuple[int, float], ...] = ((50, 0.25), (100, 0.35), (200, 0.4))
    repetition_steps: tuple[tuple[int, float], ...] = ((10, 0.2), (20, 0.3))
    # (density below which, score added)
    density_steps: tuple[tuple[float, float], ...] = ((0.3, 0.2), (0.1, 0.3))
    # (share of the text above which, score added)
    ratio_steps: tuple[tuple[float, float], ...] = ((0.3, 0.3), (0.5, 0.4))
    multi_pattern_bonus: float = 0.1


DEFAULT_CORRUPTION_POLICY = CorruptionPolicy()

INVISIBLE_CHARS = (
    "\u200b\u200c\u200d\u2060\ufeff"  # zero-width
    "\u00a0\u202f\u2009\u200a"  # narrow and fixed spaces
    "\u200e\u200f\u202a\u202b\u202c\u202d\u202e"  # directional marks
)
_INVISIBLE_RUN = re.compile(f"[{INVISIBLE_CHARS}]+")

_CORRUPTED_PATTERNS = (
    re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]"),
    re.compile("(?:\u00ef\u00bf\u00bd){3,}"),
    re.compile("\ufffd{3,}"),
    re.compile("[\u0080-\u009f]"),
    re.compile(r"^[^a-zA-Z0-9\s]{20,}$"),
)

# Letters in any script, so words with diacritics count as words
_WORD_RE = re.compile(r"\b[^\W\d_]{2,}\b")
_REPEATED_UNIT = re.compile(r"(\S{2,8})\1{6,}")

_LEGITIMATE_REPEATS = (
    re.compile(r"^[-=_*.]{6,}$"),
    re.compile(r"^\s{6,}$"),
    re.compile(r"^0{6,}$"),
    re.compile("^[\u200b-\u200f\u2060\ufeff]+$"),
    re.compile("^[\u00a0\u202f\u2009\u200a]+$"),
    re.compile("^[\u202a-\u202e]+$"),
)

_CONTROL_STRIP = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_META_CHARSET = re.compile(rb"""<meta[^>]+charset=["']?([A-Za-z0-9_\-]+)""", re.IGNORECASE)
_HEADER_CHARSET = re.compile(r"charset=([A-Za-z0-9_\-]+)", re.IGNORECASE)
_MOJIBAKE_MARKERS = ("Ã©", "Ã¨", "Ã¼", "â€™", "â€œ")


def is_visible_char(char: str) -> bool:
    """Letters, numbers, punctuation and symbols count as visible."""
    return unicodedata.category(char)[0] in "LNPS"


def visible_density(text: str) -> float:
    if not text:
        return 0.0
    return sum(1 for c in text if is_visible_char(c)) / len(text)


def normalize_for_repetition(text: str) -> str:
    """Collapse runs of invisible formatting characters into a single space."""
    return _INVISIBLE_RUN.sub(" ", text)


@dataclass
class RepetitionAnalysis:
    score: float = 0.0
    patterns: list[str] = field(default_factory=list)


def analyze_repetition(
    text: str, policy: CorruptionPolicy = DEFAULT_CORRUPTION_POLICY
) -> RepetitionAnalysis:
    """Score long repeated runs of a short visible unit.

    Runs made only of separators, whitespace, zeros or invisible formatting
    characters are ignored. The score grows with run length, repetition count,
    low visible density around the run, and the run's share of the text.
    """
    normalized = normalize_for_repetition(text)
    analysis = RepetitionAnalysis()

    for match in _REPEATED_UNIT.finditer(normalized):
        run, unit = match.group(0), match.group(1)
        if any(p.match(run) for p in _LEGITIMATE_REPEATS):
            continue
        if not all(is_visible_char(c) for c in unit):
            continue

        analysis.patterns.append(run)

        for threshold, weight in policy.pattern_length_steps:
            if len(run) > threshold:
                analysis.score += weight

        repetitions = len(run) / len(unit)
        for threshold, weight in policy.repetition_steps:
            if repetitions > threshold:
                analysis.score += weight

        index = text.find(run)
        if index != -1:
            start = max(0, index - policy.context_window)
            end = min(len(text), index + len(run) + policy.context_window)
            density = visible_density(text[start:end])
            for threshold, weight in policy.density_steps:
                if density < threshold:
                    analysis.score += weight

            share = len(run) / len(text)
            for threshold, weight in policy.ratio_steps:
                if share > threshold:
                    analysis.score += weight

    if len(analysis.patterns) > 1:
        analysis.score += policy.multi_pattern_bonus * len(analysis.patterns)

    return analysis


def is_corrupted_text(text: str, policy: CorruptionPolicy = DEFAULT_CORRUPTION_POLICY) -> bool:
    """Return True when ``text`` looks garbled rather than like prose.

    Tuned to let accented and symbol-heavy text through: non-ASCII alone has
    to dominate the text before it is treated as an encoding failure.
    """
    if not text:
        return True

    non_ascii = sum(1 for c in text if ord(c) > 0x7F)
    if non_ascii / len(text) > policy.max_non_ascii_ratio:
        logger.debug("corruption_non_ascii", ratio=round(non_ascii / len(text), 3))
        return True

    for pattern in _CORRUPTED_PATTERNS:
        if pattern.search(text):
            logger.debug("corruption_pattern", pattern=pattern.pattern)
            return True

    tokens = text.split()
    word_ratio = len(_WORD_RE.findall(text)) / max(1, len(tokens))
    if word_ratio < policy.min_word_ratio and len(text) > policy.word_ratio_min_length:
        logger.debug("corruption_low_word_ratio", ratio=round(word_ratio, 3))
        return True

    analysis = analyze_repetition(text, policy)
    if analysis.patterns and analysis.score >= policy.corruption_threshold:
        logger.debug(
            "corruption_repetition",
            score=round(analysis.score, 2),
            patterns=len(analysis.patterns),
            sample=analysis.patterns[0][:50],
        )
        return True

    return False


def sanitize_content(content: str) -> str:
    """Strip control characters and replacement glyphs and collapse whitespace."""
    if not content:
        return ""
    sanitized = _CONTROL_STRIP.sub("", content)
    sanitized = re.sub(r"\s+", " ", sanitized).strip()
    sanitized = re.sub("\ufffd+", "", sanitized)
    sanitized = re.sub("[\u0080-\u009f]+", "", sanitized)
    return sanitized


def fix_mojibake(text: str) -> str:
    """Undo UTF-8 text that was decoded as Latin-1/cp1252, when that is what happened."""
    if not any(marker in text for marker in _MOJIBAKE_MARKERS):
        return text
    for encoding in ("cp1252", "latin-1"):
        try:
            repaired = text.encode(encoding).decode("utf-8")
        except (UnicodeEncodeError, UnicodeDecodeError):
            continue
        return repaired
    return text


def decode_html(body: bytes, content_type: str | None = None) -> str:
    """Decode an HTTP body using header charset, then meta charset, then fallbacks."""
    candidates: list[str] = []
    if content_type:
        match = _HEADER_CHARSET.search(content_type)
        if match:
            candidates.append(match.group(1))
    meta = _META_CHARSET.search(body[:4096])
    if meta:
        candidates.append(meta.group(1).decode("ascii", "ignore"))
    candidates.extend(["utf-8", "cp1252"])

    for encoding in candidates:
        try:
            return fix_mojibake(body.decode(encoding))
        except (LookupError, UnicodeDecodeError):
            continue
    return body.decode("utf-8", errors="replace")
