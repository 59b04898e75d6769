"""ACAP CLI application using Typer."""

import asyncio
from typing import Annotated
from uuid import UUID

import sqlalchemy
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from acap import __version__
from acap.config import settings
from acap.core.acquisition.content_validator import validate_content_legitimacy
from acap.core.acquisition.link_discovery import DiscoveryConfig, LinkDiscovery
from acap.core.acquisition.links import ANCHOR_EXTRACTION_SCRIPT, CandidateLink
from acap.core.acquisition.protection_bypass import ProtectionBypassEngine, page_text
from acap.core.acquisition.protection_detection import detect_protection
from acap.core.acquisition.redirect_resolver import TwoStageRedirectDetector
from acap.core.acquisition.scrape_orchestrator import OrchestratorConfig, ScrapeOrchestrator
from acap.core.acquisition.structure_detector import StructureDetector
from acap.core.browser import BrowserManager
from acap.core.classification.article_analyzer import ArticleAnalyzer
from acap.core.classification.classification_queue import ClassificationQueue, QueueConfig
from acap.core.classification.classifier import OpenAIClassifier
from acap.db.session import AsyncSessionLocal, close_db, engine, init_db
from acap.db.store import ArticleStore
from acap.utils.exceptions import AcapError
from acap.utils.logging import configure_logging

app = typer.Typer(
    name="acap",
    help="ACAP - adaptive article acquisition from uncooperative websites",
    add_completion=False,
)
console = Console()


def version_callback(value: bool) -> None:
    """Display version and exit."""
    if value:
        console.print(f"[bold cyan]ACAP[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """ACAP - adaptive article acquisition from uncooperative websites."""
    configure_logging(log_level=settings.log_level, environment=settings.environment)


async def validate_database_connectivity() -> None:
    """
    Raises:
        typer.Exit: If the database cannot be reached
    """
    try:
        async with engine.begin() as conn:
            await conn.execute(sqlalchemy.text("SELECT 1"))
    except Exception as e:
        console.print("\n[bold red]✗ Database Connection Failed:[/bold red]")
        console.print(f"  {e}")
        console.print("\n[yellow]Hint:[/yellow] Verify DATABASE_URL and that the database is running")
        raise typer.Exit(code=1) from None


def run_command(coro, action: str) -> None:
    """Run ``coro`` and turn interrupts and failures into exit codes."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print(f"\n\n[yellow]{action} cancelled by user (Ctrl+C)[/yellow]")
        raise typer.Exit(code=130) from None
    except typer.Exit:
        raise
    except AcapError as e:
        console.print(f"\n[bold red]✗ {action} Failed:[/bold red]")
        console.print(f"  {type(e).__name__}: {e}")
        raise typer.Exit(code=1) from None
    except Exception as e:
        console.print(f"\n[bold red]✗ {action} Failed:[/bold red]")
        console.print(f"  {type(e).__name__}: {e}")
        console.print("\n[yellow]Hint:[/yellow] Check logs for more details or retry")
        raise typer.Exit(code=1) from None


def build_queue(store: ArticleStore, classifier: OpenAIClassifier) -> ClassificationQueue:
    analyzer = ArticleAnalyzer(store, classifier)
    return ClassificationQueue(analyzer.analyze, QueueConfig.from_settings(settings))


@app.command(name="init-db")
def init_db_command() -> None:
    """Create database tables (development and testing)."""

    async def run() -> None:
        await validate_database_connectivity()
        await init_db()
        await close_db()
        console.print("[green]✓ Tables created[/green]")

    run_command(run(), "Database initialisation")


@app.command(name="add-source")
def add_source(
    url: Annotated[str, typer.Argument(help="Listing page URL to scrape")],
    name: Annotated[str | None, typer.Option("--name", "-n", help="Display name (defaults to the domain)")] = None,
    priority: Annotated[int, typer.Option("--priority", "-p", help="Higher priorities are scraped first")] = 0,
) -> None:
    """Register a source listing page."""

    async def run() -> None:
        store = ArticleStore(AsyncSessionLocal)
        source, created = await store.add_source(url, name=name, priority=priority)
        await close_db()
        if created:
            console.print(f"[green]✓ Source added[/green] {source.id} ({source.name})")
        else:
            console.print(f"[yellow]Source already exists[/yellow] {source.id} ({source.name})")

    run_command(run(), "Add source")


@app.command()
def sources() -> None:
    """List sources with their health."""

    async def run() -> None:
        store = ArticleStore(AsyncSessionLocal)
        rows = await store.list_sources()
        await close_db()

        if not rows:
            console.print("\n[yellow]No sources registered[/yellow]")
            console.print("[dim]Run 'acap add-source <url>' to add one[/dim]\n")
            return

        table = Table(title=f"Sources ({len(rows)} total)")
        table.add_column("Source ID", style="dim", no_wrap=True)
        table.add_column("Name", style="cyan", max_width=30)
        table.add_column("URL", max_width=50)
        table.add_column("Priority", justify="right")
        table.add_column("Failures", justify="right")
        table.add_column("Last success", style="dim")
        table.add_column("Rule", justify="center")

        for source in sorted(rows, key=lambda s: -s.priority):
            failures_style = "red" if source.consecutive_failures >= 3 else "green"
            last = (
                source.last_successful_scrape.strftime("%Y-%m-%d %H:%M")
                if source.last_successful_scrape
                else "never"
            )
            table.add_row(
                str(source.id),
                source.name,
                source.url,
                str(source.priority),
                f"[{failures_style}]{source.consecutive_failures}[/{failures_style}]",
                last,
                "✓" if source.scraping_config else "-",
            )

        console.print("\n", table, "\n")

    run_command(run(), "List sources")


@app.command()
def scrape(
    source_id: Annotated[
        UUID | None, typer.Option("--source-id", "-s", help="Scrape only this source")
    ] = None,
    headless: Annotated[bool, typer.Option("--headless/--headed", help="Browser mode")] = settings.headless,
    wait: Annotated[
        bool, typer.Option("--wait/--no-wait", help="Wait for queued classifications to finish")
    ] = True,
) -> None:
    """Run one scrape pass over the active sources."""
    console.print(
        Panel.fit(
            f"[bold cyan]ACAP[/bold cyan] - Scrape pass\nVersion {__version__}",
            border_style="cyan",
        )
    )

    async def run() -> None:
        await validate_database_connectivity()
        store = ArticleStore(AsyncSessionLocal)
        classifier = OpenAIClassifier()
        queue = build_queue(store, classifier)

        async with BrowserManager(headless=headless) as browser:
            resolver = TwoStageRedirectDetector(browser=browser)
            discovery = LinkDiscovery(
                classifier,
                resolver,
                DiscoveryConfig(max_links=settings.max_links_per_source),
            )
            orchestrator = ScrapeOrchestrator(
                store=store,
                browser=browser,
                discovery=discovery,
                detector=StructureDetector(classifier),
                bypass_engine=ProtectionBypassEngine(browser),
                queue=queue,
                config=OrchestratorConfig.from_settings(settings),
            )

            await queue.start()
            try:
                result = await orchestrator.run_pass(source_id=source_id)
                if wait:
                    console.print("[dim]Waiting for classification queue...[/dim]")
                    await queue.join()
            finally:
                await queue.stop()
                await orchestrator.aclose()
                await resolver.aclose()

        status = queue.status()
        await close_db()

        table = Table(title="Scrape pass")
        table.add_column("Source", max_width=50)
        table.add_column("Status")
        table.add_column("Links", justify="right")
        table.add_column("Saved", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Failed", justify="right")
        for r in result.results:
            status_text = "[green]ok[/green]" if r.success else f"[red]failed[/red] {r.error or ''}"
            table.add_row(
                r.source_url,
                status_text[:80],
                str(r.links_found),
                str(r.articles_saved),
                str(r.articles_skipped),
                str(len(r.failures)),
            )
        console.print("\n", table, "\n")
        console.print(
            f"Sources: {result.sources_succeeded} ok, {result.sources_failed} failed | "
            f"Articles saved: {result.articles_saved} | "
            f"Classified: {status.completed}, dead-lettered: {status.dead_lettered}"
        )

    run_command(run(), "Scrape")


@app.command()
def classify(
    limit: Annotated[int, typer.Option("--limit", "-l", help="Maximum articles to classify")] = 100,
) -> None:
    """Classify stored articles that have not been analysed yet."""

    async def run() -> None:
        await validate_database_connectivity()
        store = ArticleStore(AsyncSessionLocal)
        queue = build_queue(store, OpenAIClassifier())

        article_ids = await store.list_unclassified_article_ids(limit)
        if not article_ids:
            console.print("[yellow]No unclassified articles[/yellow]")
            await close_db()
            return

        await queue.start()
        try:
            for article_id in article_ids:
                await queue.enqueue(article_id)
            await queue.join()
        finally:
            await queue.stop()
        await close_db()

        status = queue.status()
        console.print(
            f"[green]✓ Classified {status.completed}[/green] of {len(article_ids)} "
            f"({status.dead_lettered} dead-lettered)"
        )

    run_command(run(), "Classification")


@app.command()
def check(
    url: Annotated[str, typer.Argument(help="URL to diagnose")],
    headless: Annotated[bool, typer.Option("--headless/--headed", help="Browser mode")] = settings.headless,
) -> None:
    """Diagnose a URL: redirects, protection and page legitimacy."""

    async def run() -> None:
        async with BrowserManager(headless=headless) as browser:
            resolver = TwoStageRedirectDetector(browser=browser)
            try:
                resolution = await resolver.resolve(url)
            finally:
                await resolver.aclose()

            page = await browser.new_page()
            try:
                nav = await page.navigate(resolution.final_url, timeout_ms=settings.navigation_timeout_ms)
                payload = await page.evaluate(ANCHOR_EXTRACTION_SCRIPT, 50)
                sample = [CandidateLink.from_payload(item) for item in payload or []]
            finally:
                await page.close()

        protection = detect_protection(nav.html, nav.status, nav.headers)
        title, text = page_text(nav.html)
        verdict = validate_content_legitimacy(nav.html, title, text, sample)

        table = Table(title=f"Diagnostics for {url}", show_header=False)
        table.add_column("Check", style="cyan")
        table.add_column("Result")
        table.add_row("Final URL", resolution.final_url)
        table.add_row(
            "Redirect",
            f"{resolution.has_redirects} ({resolution.method.value}, confidence {resolution.confidence:.2f})",
        )
        table.add_row("Redirect signals", ", ".join(resolution.signals) or "-")
        table.add_row("HTTP status", str(nav.status))
        table.add_row("Protection", f"{protection.vendor.value} ({protection.details})")
        legit_style = "green" if verdict.is_legitimate else "red"
        table.add_row(
            "Legitimate",
            f"[{legit_style}]{verdict.is_legitimate}[/{legit_style}] (confidence {verdict.confidence:.2f})",
        )
        table.add_row("Recommended action", verdict.recommended_action.value)
        table.add_row("Links sampled", str(len(sample)))
        for issue in verdict.issues:
            table.add_row("Issue", issue)
        console.print("\n", table, "\n")

    run_command(run(), "Check")


if __name__ == "__main__":
    app()
