"""Headless browser adapter over Playwright.

``BrowserManager`` owns the Chromium process; every ``PageSession`` lives in
its own browser context so user agent, viewport and touch emulation can
differ per page.
"""

import asyncio
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

import structlog
from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from acap.config import DEFAULT_USER_AGENT
from acap.utils.exceptions import BrowserUnavailableError, NavigationError

logger = structlog.get_logger(__name__)

MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)


@dataclass(frozen=True)
class BrowserProfile:
    """Identity a page presents to the site."""

    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = 1920
    viewport_height: int = 1080
    is_mobile: bool = False
    has_touch: bool = False
    locale: str = "en-US"
    extra_headers: dict[str, str] = field(default_factory=dict)


DESKTOP_PROFILE = BrowserProfile(
    extra_headers={"Accept-Language": "en-US,en;q=0.9"},
)
MOBILE_PROFILE = BrowserProfile(
    user_agent=MOBILE_USER_AGENT,
    viewport_width=375,
    viewport_height=667,
    is_mobile=True,
    has_touch=True,
)


@dataclass
class NavigationResult:
    """What a navigation settled on."""

    requested_url: str
    final_url: str
    html: str
    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def redirected(self) -> bool:
        return self.final_url.rstrip("/") != self.requested_url.rstrip("/")


class PageSession:
    """One browser tab with the operations the pipeline needs."""

    def __init__(self, page: Page, context: BrowserContext | None = None):
        self.page = page
        self.context = context

    @property
    def url(self) -> str:
        return self.page.url

    async def navigate(
        self,
        url: str,
        wait_until: str = "networkidle",
        timeout_ms: int = 30000,
    ) -> NavigationResult:
        """Navigate and return the settled URL and markup.

        Raises:
            NavigationError: On timeout or any Playwright navigation failure
        """
        try:
            response = await self.page.goto(url, wait_until=wait_until, timeout=timeout_ms)
            html = await self.page.content()
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Navigation to {url} timed out after {timeout_ms}ms") from e
        except PlaywrightError as e:
            raise NavigationError(f"Navigation to {url} failed: {e}") from e

        return NavigationResult(
            requested_url=url,
            final_url=self.page.url,
            html=html,
            status=response.status if response else None,
            headers=dict(response.headers) if response else {},
        )

    async def reload(self, timeout_ms: int = 30000) -> None:
        try:
            await self.page.reload(wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightError as e:
            raise NavigationError(f"Reload of {self.page.url} failed: {e}") from e

    async def content(self) -> str:
        return await self.page.content()

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self.page.evaluate(script)
        return await self.page.evaluate(script, arg)

    async def wait_for(self, selector: str, timeout_ms: int = 5000) -> bool:
        """Wait for ``selector``; False on timeout instead of raising."""
        try:
            await self.page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    async def wait_for_network_idle(self, timeout_ms: int = 10000) -> None:
        try:
            await self.page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug("network_idle_timeout", url=self.page.url)

    async def add_init_script(self, script: str) -> None:
        await self.page.add_init_script(script)

    async def mouse_move(self, x: float, y: float, steps: int = 1) -> None:
        await self.page.mouse.move(x, y, steps=steps)

    async def mouse_press(self) -> None:
        await self.page.mouse.down()
        await asyncio.sleep(0.05)
        await self.page.mouse.up()

    async def tap(self, x: float, y: float) -> None:
        await self.page.touchscreen.tap(x, y)

    async def scroll_to(self, y: float) -> None:
        await self.page.evaluate("(y) => window.scrollTo(0, y)", y)

    async def scroll_height(self) -> int:
        return int(await self.page.evaluate("document.body ? document.body.scrollHeight : 0"))

    async def close(self) -> None:
        try:
            if self.context is not None:
                await self.context.close()
            else:
                await self.page.close()
        except PlaywrightError as e:
            logger.debug("page_close_failed", error=str(e))


class BrowserManager:
    """Owns a Chromium instance for the duration of a scrape pass.

    Example:
        ```python
        async with BrowserManager(headless=True) as browser:
            page = await browser.new_page()
            result = await page.navigate("https://example.com")
        ```
    """

    def __init__(
        self,
        headless: bool = True,
        default_profile: BrowserProfile = DESKTOP_PROFILE,
        launch_args: list[str] | None = None,
    ):
        self.headless = headless
        self.default_profile = default_profile
        self.launch_args = launch_args or ["--disable-blink-features=AutomationControlled"]
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    async def start(self) -> None:
        """
        Raises:
            BrowserUnavailableError: If Playwright or Chromium cannot be started
        """
        if self._browser is not None:
            return
        try:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless, args=self.launch_args
            )
        except PlaywrightError as e:
            raise BrowserUnavailableError(f"Browser launch failed: {e}") from e
        logger.info("browser_started", headless=self.headless)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("browser_closed")

    async def __aenter__(self) -> "BrowserManager":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def new_page(self, profile: BrowserProfile | None = None) -> PageSession:
        """Open a tab in a fresh context configured for ``profile``.

        Raises:
            BrowserUnavailableError: If the browser or the context cannot be opened
        """
        if self._browser is None:
            await self.start()
        assert self._browser is not None

        profile = profile or self.default_profile
        try:
            context = await self._browser.new_context(
                user_agent=profile.user_agent,
                viewport={"width": profile.viewport_width, "height": profile.viewport_height},
                is_mobile=profile.is_mobile,
                has_touch=profile.has_touch,
                locale=profile.locale,
                extra_http_headers=profile.extra_headers or None,
            )
            page = await context.new_page()
        except PlaywrightError as e:
            raise BrowserUnavailableError(f"Could not open a browser page: {e}") from e
        return PageSession(page, context)
