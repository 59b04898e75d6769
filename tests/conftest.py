"""Pytest configuration and fixtures."""

import os
from collections.abc import AsyncGenerator, Generator
from typing import Any

# Settings are read when acap.config is imported, so the environment has to
# be in place before any acap import below.
os.environ.setdefault("OPENAI_API_KEY", "sk-test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio

from acap.config import Settings
from acap.core.browser import NavigationResult

ARTICLE_PARAGRAPH = (
    "The city council approved the new transit budget on Tuesday after a long debate. "
    "Supporters said the plan would shorten commutes for thousands of residents. "
    "Critics argued that the cost estimates were too optimistic and asked for an audit. "
    "The mayor promised quarterly reports on construction progress and spending. "
)


@pytest.fixture(autouse=True)
def _restore_logging_config() -> Generator[None, None, None]:
    """Undo logging configuration done by a test (e.g. CLI invocations).

    ``configure_logging`` binds structlog and the root logger to the stream
    that is ``sys.stdout`` at call time; under ``CliRunner`` that stream is
    closed once the invocation returns, which would break later tests.
    """
    import logging

    import structlog

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def test_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[Settings, None, None]:
    """
    Provide test configuration with overrides.

    Yields:
        Settings instance for testing
    """
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("SOURCE_CONCURRENCY", "2")

    yield Settings()


def make_article_html(title: str = "Council approves transit budget", paragraphs: int = 8) -> str:
    body = "".join(f"<p>{ARTICLE_PARAGRAPH}</p>" for _ in range(paragraphs))
    return f"""<html>
<head>
  <title>{title} | City News</title>
  <meta property="og:title" content="{title}">
  <meta name="author" content="Jane Reporter">
  <meta property="article:published_time" content="2024-05-14T09:30:00+00:00">
  <script>var a = 1;</script><script>var b = 2;</script><script>var c = 3;</script>
</head>
<body>
  <nav><a href="/">Home</a><a href="/news/">News</a></nav>
  <article>
    <h1 class="article-title">{title}</h1>
    <span class="author">Jane Reporter</span>
    <time datetime="2024-05-14T09:30:00+00:00">May 14, 2024</time>
    <div class="article-body">{body}</div>
  </article>
  <footer>Copyright City News</footer>
</body>
</html>"""


def make_listing_html(articles: int = 12, nav_links: int = 0) -> str:
    items = "".join(
        f'<li><a href="/news/2024/05/14/transit-story-{i}">Transit story number {i} explained</a>'
        f"<p>{ARTICLE_PARAGRAPH}</p></li>"
        for i in range(articles)
    )
    nav = "".join(f'<a href="/section-{i}">Section {i}</a>' for i in range(nav_links))
    return f"""<html>
<head>
  <title>City News - Latest</title>
  <script src="/app.js"></script><script>var x = 1;</script><script>var y = 2;</script>
</head>
<body><nav>{nav}</nav><ul>{items}</ul></body>
</html>"""


@pytest.fixture
def article_html() -> str:
    return make_article_html()


@pytest.fixture
def listing_html() -> str:
    return make_listing_html()


class FakePage:
    """In-memory stand-in for ``PageSession``.

    ``pages`` maps URLs to HTML; navigating to an unknown URL serves
    ``default_html``. ``evaluate_results`` is consumed in order.
    """

    def __init__(
        self,
        pages: dict[str, str] | None = None,
        default_html: str = "<html><body></body></html>",
        redirects: dict[str, str] | None = None,
        evaluate_results: list[Any] | None = None,
        navigate_error: Exception | None = None,
    ):
        self.pages = pages or {}
        self.default_html = default_html
        self.redirects = redirects or {}
        self.evaluate_results = list(evaluate_results or [])
        self.navigate_error = navigate_error
        self.url = "about:blank"
        self.html = default_html
        self.navigations: list[str] = []
        self.init_scripts: list[str] = []
        self.closed = False

    async def navigate(self, url: str, wait_until: str = "networkidle", timeout_ms: int = 30000) -> NavigationResult:
        self.navigations.append(url)
        if self.navigate_error is not None:
            raise self.navigate_error
        self.url = self.redirects.get(url, url)
        self.html = self.pages.get(self.url, self.default_html)
        return NavigationResult(requested_url=url, final_url=self.url, html=self.html, status=200)

    async def reload(self, timeout_ms: int = 30000) -> None:
        return None

    async def content(self) -> str:
        return self.html

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if self.evaluate_results:
            return self.evaluate_results.pop(0)
        return None

    async def wait_for(self, selector: str, timeout_ms: int = 5000) -> bool:
        return True

    async def wait_for_network_idle(self, timeout_ms: int = 10000) -> None:
        return None

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def mouse_move(self, x: float, y: float, steps: int = 1) -> None:
        return None

    async def mouse_press(self) -> None:
        return None

    async def tap(self, x: float, y: float) -> None:
        return None

    async def scroll_to(self, y: float) -> None:
        return None

    async def scroll_height(self) -> int:
        return 2000

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    """Stand-in for ``BrowserManager`` that hands out ``FakePage`` objects."""

    def __init__(self, page_factory=None, **page_kwargs: Any):
        self.page_factory = page_factory or (lambda: FakePage(**page_kwargs))
        self.opened: list[FakePage] = []
        self.profiles: list[Any] = []

    async def new_page(self, profile: Any = None) -> FakePage:
        page = self.page_factory()
        self.opened.append(page)
        self.profiles.append(profile)
        return page


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


@pytest_asyncio.fixture
async def sqlite_store(tmp_path) -> AsyncGenerator[Any, None]:
    """ArticleStore backed by a file-based SQLite database."""
    from acap.db.session import build_engine, build_session_factory, init_db
    from acap.db.store import ArticleStore

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'acap_test.db'}")
    await init_db(bind=engine)
    yield ArticleStore(build_session_factory(engine))
    await engine.dispose()
