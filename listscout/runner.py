"""Command-line runner.

Usage:
    listscout login
    listscout run --url "https://www.linkedin.com/search/results/companies/?keywords=robotics" --pages 3
    listscout import companies.json
    listscout stats
    listscout clear
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

import structlog

from listscout.config import settings
from listscout.core.exceptions import InvalidTransitionError, ListScoutException
from listscout.core.log_config import configure_logging
from listscout.db.session import create_engine, create_session_factory, init_models
from listscout.scrapers.adapters.linkedin import (
    LinkedInCompanyExtractor,
    PlaywrightDetailOpener,
    PlaywrightListingNavigator,
)
from listscout.scrapers.coordinator import ScrapingCoordinator
from listscout.scrapers.events import (
    Completed,
    Event,
    ItemProcessed,
    ItemsFoundOnPage,
    Paused,
    Resumed,
    StatusUpdate,
    Stopped,
)
from listscout.scrapers.store import RecordStore
from listscout.scrapers.utils.browser_manager import BrowserManager
from listscout.scrapers.utils.normalizer import DuplicateMatcher
from listscout.services.import_service import ImportService

logger = structlog.get_logger(__name__)

LOGIN_URL = "https://www.linkedin.com/login"


async def _open_store() -> tuple:
    engine = create_engine()
    await init_models(engine)
    store = RecordStore(create_session_factory(engine), DuplicateMatcher(settings.site_profile()))
    return engine, store


def _print_event(event: Event) -> None:
    """Console observer for coordinator events."""
    if isinstance(event, StatusUpdate):
        print(f"  … {event.text}")
    elif isinstance(event, ItemsFoundOnPage):
        print(f"\n📄 Page {event.page_number}: {event.count} item(s) found")
    elif isinstance(event, ItemProcessed):
        marker = "↷ skipped" if event.skipped else "✅"
        print(f"  [{event.processed_count}] {marker} {event.record}")
    elif isinstance(event, (Completed, Stopped)):
        title = "Run complete" if isinstance(event, Completed) else "Run stopped"
        stats = event.stats
        print(f"\n{'=' * 70}")
        print(f"  {title}")
        print(f"{'=' * 70}")
        print(f"  Pages reached:   {stats.pages_reached} (last page {stats.last_page})")
        print(f"  Items found:     {stats.items_found}")
        print(f"  Items processed: {stats.items_processed}")
        print(f"  Errors:          {stats.error_count}\n")
    elif isinstance(event, (Paused, Resumed)):
        print(f"  {type(event).__name__}")


class StopRequest:
    """SIGINT handler that stops a running coordinator at most once.

    The stop runs as its own task; wait() collects its outcome so a run that
    finished on its own before the stop landed is not reported as an error.
    """

    def __init__(self, coordinator: ScrapingCoordinator):
        self.coordinator = coordinator
        self.task: Optional[asyncio.Task] = None

    def __call__(self) -> None:
        if self.task is not None or not self.coordinator.is_running:
            return
        print("\n⏹  Stopping...")
        self.task = asyncio.ensure_future(self.coordinator.stop())

    async def wait(self) -> None:
        if self.task is None:
            return
        try:
            await self.task
        except InvalidTransitionError as e:
            logger.info("stop_ignored_run_already_finished", error=e.message)


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


async def login(headless: bool = False) -> None:
    """Open a browser for manual sign-in and save the session afterwards."""
    browser = BrowserManager.from_settings(headless=headless, block_resources=False)
    try:
        page = await browser.new_page()
        await page.goto(LOGIN_URL, wait_until="domcontentloaded")
        print("\n🔐 Sign in in the browser window, then press Enter here to save the session.")
        await asyncio.to_thread(input)
        path = await browser.save_session()
        print(f"✅ Session saved to {path}\n")
    finally:
        await browser.stop()


async def run(url: str, max_pages: int, headless: Optional[bool] = None) -> int:
    """Scrape the listing at url for up to max_pages pages.

    Returns:
        Process exit code
    """
    engine, store = await _open_store()
    browser = BrowserManager.from_settings(headless=headless)
    profile = settings.site_profile()

    if not browser.has_saved_session:
        print("⚠️  No saved session found. Run `listscout login` first.")

    try:
        context = await browser.get_context()
        page = await context.new_page()
        await page.goto(url, wait_until="domcontentloaded", timeout=settings.NAVIGATION_TIMEOUT_MS)

        navigator = PlaywrightListingNavigator(page, profile)
        await navigator.wait_until_ready(settings.CONTENT_READY_TIMEOUT_MS / 1000)

        coordinator = ScrapingCoordinator.from_settings(
            store=store,
            navigator=navigator,
            opener=PlaywrightDetailOpener(context, settings.TAB_LOAD_TIMEOUT_MS / 1000),
            extractor=LinkedInCompanyExtractor(profile),
        )
        await coordinator.load_state()
        coordinator.subscribe(_print_event)

        try:
            await coordinator.start(max_pages)
        except ListScoutException as e:
            print(f"\n❌ {e.message}\n")
            return 1

        loop = asyncio.get_running_loop()
        stop_request = StopRequest(coordinator)
        try:
            loop.add_signal_handler(signal.SIGINT, stop_request)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl-C aborts instead
            pass

        await coordinator.wait()
        await stop_request.wait()
        return 0

    finally:
        await browser.stop()
        await engine.dispose()


async def import_records(path: str) -> int:
    engine, store = await _open_store()
    try:
        service = ImportService(store, settings.site_profile())
        try:
            result = await service.import_file(path)
        except (ListScoutException, OSError) as e:
            print(f"\n❌ Import failed: {e}\n")
            return 1

        print(f"\n📥 Imported {path}")
        print(f"   Entries:    {result.total}")
        print(f"   Valid:      {result.valid}")
        print(f"   Added:      {result.added}")
        print(f"   Duplicates: {result.skipped}\n")
        return 0
    finally:
        await engine.dispose()


async def show_stats() -> int:
    engine, store = await _open_store()
    try:
        stats = await store.get_stats()
        state = await store.get_state()

        print(f"\n📊 Records stored: {stats['total_records']}")
        if state is not None:
            run_stats = state.stats()
            print(f"   Last run:     pages {state.start_page}-{state.current_page}, "
                  f"{run_stats.items_processed} processed, {run_stats.error_count} error(s)")
            print(f"   Updated at:   {state.last_updated}")
            for error in state.errors[-5:]:
                print(f"   ⚠️  {error}")
        print()
        return 0
    finally:
        await engine.dispose()


async def clear() -> int:
    engine, store = await _open_store()
    try:
        await store.clear_all()
        print("\n🗑  Records and run state cleared.\n")
        return 0
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed Namespace object.
    """
    parser = argparse.ArgumentParser(
        prog="listscout",
        description="Collect company records from a LinkedIn company search listing.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        help=f"Logging level (default: {settings.LOG_LEVEL})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login_parser = sub.add_parser("login", help="Sign in manually and save the browser session")
    login_parser.add_argument("--headless", action="store_true", help=argparse.SUPPRESS)

    run_parser = sub.add_parser("run", help="Scrape a search results listing")
    run_parser.add_argument("--url", required=True, help="Search results URL to start from")
    run_parser.add_argument(
        "--pages",
        type=int,
        default=settings.DEFAULT_MAX_PAGES,
        help=f"Pages to traverse, 1-{settings.MAX_PAGES_LIMIT} (default: {settings.DEFAULT_MAX_PAGES})",
    )
    run_parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window (default follows HEADLESS)",
    )

    import_parser = sub.add_parser("import", help="Merge records from a JSON file")
    import_parser.add_argument("path", help="JSON file with a list of records or {\"records\": [...]}")

    sub.add_parser("stats", help="Show stored record count and the last run")
    sub.add_parser("clear", help="Delete all records and run state")

    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "login":
        coro = login(headless=args.headless)
    elif args.command == "run":
        coro = run(args.url, args.pages, headless=False if args.headed else None)
    elif args.command == "import":
        coro = import_records(args.path)
    elif args.command == "stats":
        coro = show_stats()
    else:
        coro = clear()

    try:
        exit_code = asyncio.run(coro)
    except KeyboardInterrupt:
        print("\n\n[Interrupted] Aborted by user.")
        sys.exit(130)
    sys.exit(exit_code or 0)


if __name__ == "__main__":
    main()
