"""Anti-bot bypass engine.

A bypass is a small state machine: one attempt tailored to the detected
protection vendor, then ``max_retries`` retries cycling through the generic
strategies, each in a fresh browser context. Every attempt that reports
success is re-checked with :func:`validate_bypass_success` before it is
believed, and the winning page must still pass the full legitimacy check.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

import structlog
from bs4 import BeautifulSoup

from acap.core.acquisition.content_validator import (
    DEFAULT_LEGITIMACY_POLICY,
    LegitimacyPolicy,
    ValidationVerdict,
    validate_bypass_success,
    validate_content_legitimacy,
)
from acap.core.acquisition.links import extract_candidates_from_html
from acap.core.acquisition.protection_detection import (
    ProtectionInfo,
    ProtectionVendor,
    detect_protection,
)
from acap.core.browser import (
    DESKTOP_PROFILE,
    MOBILE_PROFILE,
    BrowserManager,
    BrowserProfile,
    PageSession,
)

logger = structlog.get_logger(__name__)

QUALITY_LINK_SAMPLE = 50


class BypassState(str, Enum):
    TARGETED_ATTEMPT = "targeted_attempt"
    STRATEGY_RETRY = "strategy_retry"
    SUCCESS = "success"
    ABORTED = "aborted"


class StrategyKind(str, Enum):
    TARGETED = "targeted"
    STEALTH = "stealth"
    MOBILE = "mobile"
    SLOW_APPROACH = "slow_approach"


@dataclass(frozen=True)
class BypassPolicy:
    """Timings and retry limits for the bypass engine."""

    max_retries: int = 3
    behavioral_delay: tuple[float, float] = (3.0, 7.0)
    navigation_timeout_ms: int = 30000
    datadome_poll_seconds: float = 1.0
    datadome_max_wait_seconds: float = 20.0
    datadome_settle_seconds: float = 3.0
    cloudflare_poll_seconds: float = 2.0
    cloudflare_max_wait_seconds: float = 15.0
    cloudflare_settle_seconds: float = 2.0
    incapsula_pause_seconds: float = 5.0
    incapsula_settle_seconds: float = 3.0
    rate_limit_wait_seconds: float = 5.0
    generic_pause: tuple[float, float] = (2.0, 5.0)
    stealth_timeout_ms: int = 60000
    slow_pre_delay: tuple[float, float] = (5.0, 10.0)
    slow_timeout_ms: int = 120000
    slow_wait: tuple[float, float] = (8.0, 15.0)
    slow_scroll_steps: int = 10


DEFAULT_BYPASS_POLICY = BypassPolicy()

STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
window.chrome = window.chrome || { runtime: {} };
"""


@dataclass
class AttemptOutcome:
    """What a single strategy run produced in the browser."""

    success: bool
    html: str = ""
    final_url: str = ""
    error: str | None = None


@dataclass
class AttemptRecord:
    kind: StrategyKind
    browser_success: bool
    validated: bool
    confidence: float
    error: str | None = None


@dataclass
class BypassResult:
    """Outcome of a full bypass run."""

    success: bool
    state: BypassState
    url: str
    html: str = ""
    final_url: str = ""
    strategy: StrategyKind | None = None
    confidence: float = 0.0
    issues: list[str] = field(default_factory=list)
    attempts: list[AttemptRecord] = field(default_factory=list)
    verdict: ValidationVerdict | None = None


async def pause(bounds: tuple[float, float]) -> None:
    await asyncio.sleep(random.uniform(*bounds))


async def human_actions(page: PageSession, moves: int = 3) -> None:
    """A few mouse movements and a short scroll."""
    for _ in range(moves):
        await page.mouse_move(random.uniform(100, 800), random.uniform(100, 600), steps=10)
        await asyncio.sleep(random.uniform(0.1, 0.4))
    await page.scroll_to(random.uniform(200, 600))
    await asyncio.sleep(random.uniform(0.3, 0.8))


class BypassStrategy(ABC):
    """One way of getting past a protection page."""

    kind: StrategyKind
    profile: BrowserProfile = DESKTOP_PROFILE

    def __init__(self, policy: BypassPolicy = DEFAULT_BYPASS_POLICY) -> None:
        self.policy = policy

    @abstractmethod
    async def attempt(self, page: PageSession, url: str) -> AttemptOutcome:
        ...

    async def _outcome(self, page: PageSession) -> AttemptOutcome:
        return AttemptOutcome(success=True, html=await page.content(), final_url=page.url)


class TargetedStrategy(BypassStrategy):
    """Vendor-specific waiting and interaction routine."""

    kind = StrategyKind.TARGETED

    def __init__(self, vendor: ProtectionVendor, policy: BypassPolicy = DEFAULT_BYPASS_POLICY) -> None:
        super().__init__(policy)
        self.vendor = vendor
        self._handlers: dict[ProtectionVendor, Callable[[PageSession], Awaitable[bool]]] = {
            ProtectionVendor.DATADOME: self._handle_datadome,
            ProtectionVendor.CLOUDFLARE: self._handle_cloudflare,
            ProtectionVendor.INCAPSULA: self._handle_incapsula,
            ProtectionVendor.RATE_LIMIT: self._handle_rate_limit,
            ProtectionVendor.CAPTCHA: self._handle_captcha,
        }

    async def attempt(self, page: PageSession, url: str) -> AttemptOutcome:
        await page.navigate(url, wait_until="domcontentloaded", timeout_ms=self.policy.navigation_timeout_ms)
        handler = self._handlers.get(self.vendor, self._handle_generic)
        if not await handler(page):
            return AttemptOutcome(
                success=False,
                html=await page.content(),
                final_url=page.url,
                error=f"{self.vendor.value}_challenge_unresolved",
            )
        return await self._outcome(page)

    async def _wait_until_cleared(
        self, page: PageSession, vendor: ProtectionVendor, poll: float, max_wait: float
    ) -> bool:
        waited = 0.0
        while waited < max_wait:
            await asyncio.sleep(poll)
            waited += poll
            if detect_protection(await page.content()).vendor != vendor:
                return True
        return False

    async def _handle_datadome(self, page: PageSession) -> bool:
        policy = self.policy
        cleared = await self._wait_until_cleared(
            page, ProtectionVendor.DATADOME, policy.datadome_poll_seconds, policy.datadome_max_wait_seconds
        )
        await asyncio.sleep(policy.datadome_settle_seconds)
        return cleared

    async def _handle_cloudflare(self, page: PageSession) -> bool:
        policy = self.policy
        cleared = await self._wait_until_cleared(
            page,
            ProtectionVendor.CLOUDFLARE,
            policy.cloudflare_poll_seconds,
            policy.cloudflare_max_wait_seconds,
        )
        await asyncio.sleep(policy.cloudflare_settle_seconds)
        return cleared

    async def _handle_incapsula(self, page: PageSession) -> bool:
        await human_actions(page)
        await asyncio.sleep(self.policy.incapsula_pause_seconds)
        await page.reload(timeout_ms=self.policy.navigation_timeout_ms)
        await asyncio.sleep(self.policy.incapsula_settle_seconds)
        return True

    async def _handle_rate_limit(self, page: PageSession) -> bool:
        await asyncio.sleep(self.policy.rate_limit_wait_seconds)
        await page.reload(timeout_ms=self.policy.navigation_timeout_ms)
        return True

    async def _handle_captcha(self, page: PageSession) -> bool:
        logger.info("captcha_not_solvable", url=page.url)
        return False

    async def _handle_generic(self, page: PageSession) -> bool:
        await human_actions(page)
        await pause(self.policy.generic_pause)
        return True


class StealthStrategy(BypassStrategy):
    """Hide automation markers, wait for network idle, act like a reader."""

    kind = StrategyKind.STEALTH

    async def attempt(self, page: PageSession, url: str) -> AttemptOutcome:
        await page.add_init_script(STEALTH_INIT_SCRIPT)
        await page.navigate(url, wait_until="networkidle", timeout_ms=self.policy.stealth_timeout_ms)
        await human_actions(page, moves=5)
        return await self._outcome(page)


class MobileStrategy(BypassStrategy):
    """Present as a phone and interact by touch."""

    kind = StrategyKind.MOBILE
    profile = MOBILE_PROFILE

    async def attempt(self, page: PageSession, url: str) -> AttemptOutcome:
        await page.navigate(url, wait_until="networkidle", timeout_ms=self.policy.navigation_timeout_ms)
        for _ in range(2):
            await page.tap(random.uniform(50, 300), random.uniform(100, 500))
            await asyncio.sleep(random.uniform(0.5, 1.5))
        await page.scroll_to(random.uniform(300, 900))
        return await self._outcome(page)


class SlowApproachStrategy(BypassStrategy):
    """Long pauses and a gradual scroll through the whole page."""

    kind = StrategyKind.SLOW_APPROACH

    async def attempt(self, page: PageSession, url: str) -> AttemptOutcome:
        policy = self.policy
        await pause(policy.slow_pre_delay)
        await page.navigate(url, wait_until="networkidle", timeout_ms=policy.slow_timeout_ms)
        await pause(policy.slow_wait)

        height = await page.scroll_height()
        for step in range(1, policy.slow_scroll_steps + 1):
            await page.scroll_to(height * step / policy.slow_scroll_steps)
            await asyncio.sleep(random.uniform(0.5, 1.5))
        return await self._outcome(page)


def default_strategies(policy: BypassPolicy = DEFAULT_BYPASS_POLICY) -> list[BypassStrategy]:
    """Generic retry strategies in the order they are tried."""
    return [StealthStrategy(policy), MobileStrategy(policy), SlowApproachStrategy(policy)]


def page_text(html: str) -> tuple[str, str]:
    """Title and visible text of ``html``."""
    soup = BeautifulSoup(html, "lxml")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return title, soup.get_text(" ", strip=True)


class ProtectionBypassEngine:
    """
    Run the bypass state machine for one URL.

    Never raises for strategy failures; everything that went wrong is on
    ``BypassResult.issues``.

    Example:
        ```python
        engine = ProtectionBypassEngine(browser)
        result = await engine.bypass(url, detect_protection(html))
        if result.success:
            html = result.html
        ```
    """

    def __init__(
        self,
        browser: BrowserManager,
        strategies: Sequence[BypassStrategy] | None = None,
        policy: BypassPolicy = DEFAULT_BYPASS_POLICY,
        legitimacy_policy: LegitimacyPolicy = DEFAULT_LEGITIMACY_POLICY,
    ) -> None:
        self.browser = browser
        self.policy = policy
        self.strategies = list(strategies) if strategies is not None else default_strategies(policy)
        self.legitimacy_policy = legitimacy_policy

    async def bypass(self, url: str, protection: ProtectionInfo) -> BypassResult:
        result = BypassResult(success=False, state=BypassState.TARGETED_ATTEMPT, url=url)
        logger.info("bypass_started", url=url, vendor=protection.vendor.value)

        targeted = TargetedStrategy(protection.vendor, self.policy)
        if await self._try(targeted, url, result):
            return self._finish(result, BypassState.SUCCESS)

        for index in range(self.policy.max_retries if self.strategies else 0):
            strategy = self.strategies[index % len(self.strategies)]
            result.state = BypassState.STRATEGY_RETRY
            await pause(self.policy.behavioral_delay)
            logger.debug("bypass_retry", url=url, retry=index + 1, strategy=strategy.kind.value)
            if await self._try(strategy, url, result):
                return self._finish(result, BypassState.SUCCESS)

        return self._finish(result, BypassState.ABORTED)

    async def _try(self, strategy: BypassStrategy, url: str, result: BypassResult) -> bool:
        """Run one strategy in its own context and validate what it produced."""
        page: PageSession | None = None
        try:
            page = await self.browser.new_page(strategy.profile)
            outcome = await strategy.attempt(page, url)
        except Exception as e:
            outcome = AttemptOutcome(success=False, error=str(e))
        finally:
            if page is not None:
                await page.close()

        if not outcome.success:
            result.issues.append(f"{strategy.kind.value}_failed: {outcome.error or 'unknown error'}")
            result.attempts.append(
                AttemptRecord(strategy.kind, browser_success=False, validated=False, confidence=0.0, error=outcome.error)
            )
            logger.info("bypass_attempt_failed", url=url, strategy=strategy.kind.value, error=outcome.error)
            return False

        _, text = page_text(outcome.html)
        links = extract_candidates_from_html(outcome.html, limit=QUALITY_LINK_SAMPLE)
        validation = validate_bypass_success(
            outcome.html,
            len(text),
            links,
            outcome.final_url or url,
            self.legitimacy_policy,
        )
        result.attempts.append(
            AttemptRecord(
                strategy.kind,
                browser_success=True,
                validated=validation.success,
                confidence=validation.confidence,
            )
        )
        result.confidence = validation.confidence

        if not validation.success:
            result.issues.append(f"{strategy.kind.value}_failed_validation")
            result.issues.extend(validation.reasons)
            logger.info(
                "bypass_attempt_failed",
                url=url,
                strategy=strategy.kind.value,
                reason="validation",
                confidence=round(validation.confidence, 2),
            )
            return False

        result.html = outcome.html
        result.final_url = outcome.final_url or url
        result.strategy = strategy.kind
        return True

    def _finish(self, result: BypassResult, state: BypassState) -> BypassResult:
        if result.html:
            title, text = page_text(result.html)
            links = extract_candidates_from_html(result.html, limit=QUALITY_LINK_SAMPLE)
            result.verdict = validate_content_legitimacy(
                result.html, title, text, links, self.legitimacy_policy
            )
            # Only content the full legitimacy check accepts counts as a bypass
            if state == BypassState.SUCCESS and not result.verdict.is_legitimate:
                state = BypassState.ABORTED
                result.issues.append("final_validation_failed")
                result.issues.extend(result.verdict.issues)

        result.state = state
        result.success = state == BypassState.SUCCESS

        logger.info(
            "bypass_completed",
            url=result.url,
            state=state.value,
            strategy=result.strategy.value if result.strategy else None,
            attempts=len(result.attempts),
            confidence=round(result.confidence, 2),
        )
        return result
