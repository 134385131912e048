"""Scraping coordinator: the run state machine.

Sequences listing pagination, per-item detail visits, rate limiting and
duplicate filtering, persisting a checkpoint after every transition that
matters for resuming or reporting.

Phases::

    IDLE -> RUNNING <-> PAUSED
    RUNNING -> RECOVERING -> COMPLETING -> IDLE
    RUNNING -> COMPLETING -> IDLE
    RUNNING / PAUSED -> (stop) -> IDLE

Every run ends with exactly one Completed or Stopped event.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar, Union

import structlog

from listscout.config import SiteProfile
from listscout.core.exceptions import (
    ContextLostError,
    InvalidTransitionError,
    ListScoutException,
    RunInProgressError,
    SetupError,
)
from listscout.schemas.record import NOT_FOUND, Record
from listscout.schemas.state import CoordinatorState, QueuedItem, RunPhase, RunStats
from listscout.scrapers.base import DetailOpener, DetailTab, ItemExtractor, ListingNavigator
from listscout.scrapers.events import (
    ClearAllCommand,
    Command,
    CommandResult,
    Completed,
    Event,
    GetRecordsCommand,
    GetStateCommand,
    ItemProcessed,
    ItemsFoundOnPage,
    Observer,
    PauseCommand,
    Paused,
    ReplaceRecordsCommand,
    ResumeCommand,
    Resumed,
    StartCommand,
    Started,
    StatusUpdate,
    StopCommand,
    Stopped,
)
from listscout.scrapers.store import RecordStore
from listscout.scrapers.utils.normalizer import (
    DEFAULT_PROFILE,
    detail_subpath_url,
    is_listing_url,
    page_number_from_url,
)
from listscout.scrapers.utils.rate_limiter import RateLimiter
from listscout.scrapers.utils.retry import call_with_retry
from listscout.scrapers.utils.waiting import wait_for_condition

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ScrapingCoordinator:
    """Drives one scraping run at a time over injected collaborators.

    The run itself executes as an asyncio task started by start(); wait()
    awaits it. Pause is cooperative: it is honoured at the top of each queue
    iteration and before each new page, never in the middle of an item.
    """

    def __init__(
        self,
        store: RecordStore,
        navigator: ListingNavigator,
        opener: DetailOpener,
        extractor: ItemExtractor,
        rate_limiter: Optional[RateLimiter] = None,
        profile: SiteProfile = DEFAULT_PROFILE,
        max_pages_limit: int = 20,
        navigation_timeout: float = 20.0,
        content_ready_timeout: float = 10.0,
        tab_load_timeout: float = 30.0,
        settle_delay: float = 2.0,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
    ):
        """Initialize the coordinator.

        Args:
            store: Durable record / state store
            navigator: Listing page driver
            opener: Opens detail pages in a fresh tab
            extractor: Pulls fields out of a loaded detail tab
            rate_limiter: Delay source consumed before every detail visit
            profile: Target site URL scheme
            max_pages_limit: Largest accepted page budget
            navigation_timeout: Seconds to wait for the listing URL to change
            content_ready_timeout: Seconds to wait for listing results to render
            tab_load_timeout: Seconds to wait for a detail tab to load
            settle_delay: Seconds to let a loaded detail page settle
            retry_attempts: Attempts for transient page failures
            retry_backoff: Backoff base in seconds for transient retries
        """
        self.store = store
        self.navigator = navigator
        self.opener = opener
        self.extractor = extractor
        self.rate_limiter = rate_limiter or RateLimiter()
        self.profile = profile
        self.matcher = store.matcher
        self.max_pages_limit = max_pages_limit
        self.navigation_timeout = navigation_timeout
        self.content_ready_timeout = content_ready_timeout
        self.tab_load_timeout = tab_load_timeout
        self.settle_delay = settle_delay
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

        self.state = CoordinatorState()
        self._observers: List[Observer] = []
        self._task: Optional[asyncio.Task] = None
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._current_tab: Optional[DetailTab] = None
        self._stop_requested = False
        self._store_ops: Set[asyncio.Future] = set()
        self.logger = logger.bind(service="scraping_coordinator")

    @classmethod
    def from_settings(
        cls,
        store: RecordStore,
        navigator: ListingNavigator,
        opener: DetailOpener,
        extractor: ItemExtractor,
    ) -> "ScrapingCoordinator":
        """Build a coordinator using timeouts and limits from settings."""
        from listscout.config import settings

        return cls(
            store=store,
            navigator=navigator,
            opener=opener,
            extractor=extractor,
            rate_limiter=RateLimiter.from_settings(),
            profile=settings.site_profile(),
            max_pages_limit=settings.MAX_PAGES_LIMIT,
            navigation_timeout=settings.NAVIGATION_TIMEOUT_MS / 1000,
            content_ready_timeout=settings.CONTENT_READY_TIMEOUT_MS / 1000,
            tab_load_timeout=settings.TAB_LOAD_TIMEOUT_MS / 1000,
            settle_delay=settings.SETTLE_DELAY_MS / 1000,
            retry_attempts=settings.MESSAGE_RETRY_ATTEMPTS,
            retry_backoff=settings.MESSAGE_RETRY_BACKOFF_MS / 1000,
        )

    # ========================================================================
    # Observers
    # ========================================================================

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _emit(self, event: Event) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                self.logger.warning(
                    "observer_failed",
                    event_type=type(event).__name__,
                    error=str(e),
                    exc_info=True,
                )

    def _status(self, text: str) -> None:
        self.logger.info("status_update", text=text)
        self._emit(StatusUpdate(text=text))

    # ========================================================================
    # Commands
    # ========================================================================

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    async def start(self, max_pages: int = 5) -> CoordinatorState:
        """Begin a run from the listing page the navigator is showing.

        Args:
            max_pages: Number of listing pages to traverse (1 to max_pages_limit)

        Returns:
            Snapshot of the freshly started state

        Raises:
            RunInProgressError: If a run is already active
            SetupError: If the budget is invalid or the navigator is not on a listing page
        """
        if self.state.is_running or (self._task is not None and not self._task.done()):
            raise RunInProgressError()

        if isinstance(max_pages, bool) or not isinstance(max_pages, int):
            raise SetupError(f"max_pages must be an integer, got {max_pages!r}")
        if not 1 <= max_pages <= self.max_pages_limit:
            raise SetupError(f"max_pages must be between 1 and {self.max_pages_limit}, got {max_pages}")

        try:
            url = await self._call(self.navigator.current_url)
            if not is_listing_url(url, self.profile):
                raise SetupError(f"not on a {self.profile.domain} search results page: {url}")
            start_page = await self._resolve_page_number(url)
        except SetupError:
            raise
        except ListScoutException as e:
            raise SetupError(f"listing page is unreachable ({e.message})") from e

        self.state = CoordinatorState(
            is_running=True,
            phase=RunPhase.RUNNING,
            start_page=start_page,
            current_page=start_page,
            max_pages=max_pages,
        )
        self._stop_requested = False
        self._resume_event.set()
        await self._persist()

        self.logger.info("run_started", start_page=start_page, max_pages=max_pages, url=url)
        self._emit(Started(max_pages=max_pages, start_page=start_page))
        self._status(f"Starting from page {start_page}, {max_pages} page(s) requested")

        self._task = asyncio.create_task(self._run())
        return self.get_state()

    async def wait(self) -> None:
        """Wait until the current run (if any) has finished."""
        task = self._task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled():
            task.result()

    async def pause(self) -> None:
        """Halt queue iteration after the in-flight item completes."""
        if not self.state.is_running or self.state.is_paused:
            raise InvalidTransitionError("pause", self.state.phase.value)

        self.state.is_paused = True
        self.state.phase = RunPhase.PAUSED
        self._resume_event.clear()
        await self._persist()

        self.logger.info("run_paused", cursor=self.state.queue_cursor)
        self._emit(Paused())

    async def resume(self) -> None:
        """Continue from the current queue cursor."""
        if not self.state.is_running or not self.state.is_paused:
            raise InvalidTransitionError("resume", self.state.phase.value)

        self.state.is_paused = False
        self.state.phase = RunPhase.RUNNING
        await self._persist()
        self._resume_event.set()

        self.logger.info("run_resumed", cursor=self.state.queue_cursor)
        self._emit(Resumed())

    async def stop(self) -> RunStats:
        """Stop the run immediately, releasing any open detail tab.

        Returns:
            Statistics of the stopped run
        """
        if not self.state.is_running:
            raise InvalidTransitionError("stop", self.state.phase.value)

        self._stop_requested = True
        self.state.is_running = False
        self.state.is_paused = False
        self.state.phase = RunPhase.IDLE
        self._resume_event.set()

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            # Let in-flight store operations land so records and counters agree
            await self._drain_store_ops()
            if not task.done():
                task.cancel()
            await asyncio.wait({task})
        await self._drain_store_ops()

        await self._close_current_tab()
        await self._persist()

        stats = self.state.stats()
        self.logger.info("run_stopped", **stats.model_dump())
        self._emit(Stopped(stats=stats))
        return stats

    def get_state(self) -> CoordinatorState:
        """Deep snapshot of the coordinator state."""
        return self.state.model_copy(deep=True)

    async def get_records(self) -> List[Record]:
        return await self.store.get_records()

    async def clear_all(self) -> None:
        """Delete collected records and the persisted checkpoint."""
        if self.state.is_running:
            raise InvalidTransitionError("clear_all", self.state.phase.value)

        await self.store.clear_all()
        self.state = CoordinatorState()
        self.logger.info("coordinator_cleared")

    async def replace_records(self, records: Iterable[Union[Record, Dict[str, Any]]]) -> int:
        """Replace the record collection, keeping the first of any duplicates.

        Returns:
            Number of records stored
        """
        unique: List[Record] = []
        dropped = 0
        for item in records:
            record = item if isinstance(item, Record) else Record.model_validate(item)
            if self.matcher.is_duplicate(record, unique):
                dropped += 1
                continue
            unique.append(record)

        stored = await self.store.save_records(unique)
        self.logger.info("records_replaced", count=stored, duplicates_dropped=dropped)
        return stored

    async def load_state(self) -> CoordinatorState:
        """Restore the last persisted checkpoint after a restart.

        An in-flight run is never resumed automatically; a checkpoint that
        was still running is marked as stopped.
        """
        if self.state.is_running:
            raise RunInProgressError()

        persisted = await self.store.get_state()
        if persisted is None:
            return self.get_state()

        if persisted.is_running or persisted.is_paused:
            persisted.is_running = False
            persisted.is_paused = False
            persisted.phase = RunPhase.IDLE
            self.state = persisted
            await self._persist()
            self.logger.info("interrupted_run_restored", **persisted.stats().model_dump())
        else:
            self.state = persisted

        return self.get_state()

    async def dispatch(self, command: Command) -> CommandResult:
        """Execute a command and report the outcome instead of raising."""
        try:
            if isinstance(command, StartCommand):
                data = await self.start(command.max_pages)
            elif isinstance(command, StopCommand):
                data = await self.stop()
            elif isinstance(command, PauseCommand):
                data = await self.pause()
            elif isinstance(command, ResumeCommand):
                data = await self.resume()
            elif isinstance(command, GetStateCommand):
                data = self.get_state()
            elif isinstance(command, GetRecordsCommand):
                data = await self.get_records()
            elif isinstance(command, ClearAllCommand):
                data = await self.clear_all()
            elif isinstance(command, ReplaceRecordsCommand):
                data = await self.replace_records(command.records)
            else:
                return CommandResult(success=False, error=f"Unknown command: {type(command).__name__}")
        except ListScoutException as e:
            self.logger.warning("command_rejected", command=type(command).__name__, error=e.message)
            return CommandResult(success=False, error=e.message)

        return CommandResult(success=True, data=data)

    # ========================================================================
    # Run loop
    # ========================================================================

    async def _run(self) -> None:
        try:
            while True:
                if not await self._checkpoint():
                    return
                await self._process_page()

                if not await self._checkpoint():
                    return
                if self.state.pages_reached >= self.state.max_pages:
                    self._status(f"Page budget of {self.state.max_pages} reached")
                    break
                if not await self._advance_to_next_page():
                    break

            await self._complete()

        except ContextLostError as e:
            await self._recover(f"Listing context lost: {e.message}")
        except Exception as e:
            self.logger.error("run_failed", error=str(e), exc_info=True)
            await self._recover(f"Unexpected error: {e}")

    async def _checkpoint(self) -> bool:
        """Block while paused. False once the run has been stopped."""
        if self.state.is_paused:
            await self._resume_event.wait()
        return self.state.is_running and not self._stop_requested

    async def _process_page(self) -> None:
        page = self.state.current_page
        self._status(f"Processing page {page}...")

        try:
            links = await self._call(self.navigator.extract_item_links)
        except ContextLostError:
            raise
        except Exception as e:
            self.logger.warning("link_extraction_failed", page=page, error=str(e))
            self.state.errors.append(f"Page {page}: link extraction failed: {e}")
            links = []

        # Pre-filter against the store as it is now; later changes are
        # caught by the per-item check.
        existing = await self._store_call(self.store.get_records)
        queue: List[QueuedItem] = []
        skipped = 0
        for link in links:
            if self.matcher.is_duplicate(link, existing) or self.matcher.is_duplicate(link, queue):
                skipped += 1
                continue
            queue.append(QueuedItem(url=link.url, name=link.name))

        self.state.total_found_count += len(links)
        self.state.pending_queue = queue
        self.state.queue_cursor = 0
        await self._persist()

        self.logger.info("page_items_found", page=page, found=len(links), skipped=skipped, queued=len(queue))
        self._emit(ItemsFoundOnPage(count=len(links), page_number=page))
        if skipped:
            self._status(f"Page {page}: {len(links)} found, {skipped} already collected, {len(queue)} new")
        else:
            self._status(f"Page {page}: {len(links)} found")

        while self.state.queue_cursor < len(self.state.pending_queue):
            if not await self._checkpoint():
                return
            item = self.state.pending_queue[self.state.queue_cursor]
            await self._process_item(item)
            self.state.queue_cursor += 1
            await self._persist()

    async def _process_item(self, item: QueuedItem) -> None:
        existing = await self._store_call(self.store.get_records)
        if self.matcher.is_duplicate(item, existing):
            self.state.processed_count += 1
            self.logger.info("item_skipped_duplicate", url=item.url, name=item.name)
            self._emit(ItemProcessed(
                record=Record.from_link(item),
                processed_count=self.state.processed_count,
                skipped=True,
            ))
            return

        if self.rate_limiter.is_throttled:
            remaining = self.rate_limiter.throttle_remaining()
            self._status(f"Rate limited, waiting {remaining:.0f}s")
            # reset() or a shorter throttle ends the wait early
            await wait_for_condition(
                lambda: not self.rate_limiter.is_throttled,
                timeout=remaining,
                interval=min(1.0, max(remaining, 0.01)),
                description="throttle_cleared",
            )
        await self.rate_limiter.wait()

        target = detail_subpath_url(item.url, self.profile)
        self._status(f"Visiting item {self.state.processed_count + 1}: {item.name or item.url}")

        tab: Optional[DetailTab] = None
        try:
            tab = await self.opener.open(target)
            self._current_tab = tab

            if not await tab.wait_for_load(self.tab_load_timeout):
                self.logger.warning("tab_load_timeout", url=target)
            if self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)

            record = await self._call(lambda: self.extractor.extract_detail(tab))
            updates: Dict[str, Any] = {}
            if not record.url:
                updates["url"] = item.url
            if record.name == NOT_FOUND and item.name:
                updates["name"] = item.name
            if updates:
                record = record.model_copy(update=updates)

            # Extraction can reveal a different canonical identity than the
            # listing link, so the store re-checks before appending.
            await self._store_call(self._record_item, record)

        except Exception as e:
            self.logger.warning("item_failed", url=target, error=str(e))
            self.state.errors.append(f"Item {item.url}: {e}")
        finally:
            if tab is not None:
                await self._close_tab(tab)

    async def _advance_to_next_page(self) -> bool:
        """Move the listing to the next page.

        Returns:
            True when a new page is ready to process, False when the run
            should complete
        """
        next_page = self.state.current_page + 1
        previous_url = await self._call(self.navigator.current_url)
        self._ensure_listing(previous_url)

        try:
            if not await self._call(self.navigator.has_next_page):
                self.logger.info("next_button_not_detected", page=self.state.current_page)
        except ContextLostError:
            raise
        except Exception as e:
            self.logger.debug("has_next_page_failed", error=str(e))

        try:
            advanced = await self._call(self.navigator.advance_to_next_page)
        except ContextLostError:
            raise
        except Exception as e:
            self.state.errors.append(f"Pagination to page {next_page}: {e}")
            advanced = False

        if not advanced:
            if self.state.total_found_count == 0 and self.state.processed_count == 0:
                self.state.errors.append(
                    "No items found and no next page; the listing may not be a results page"
                )
                self._status("No items found on this listing")
            else:
                self._status(f"Page {self.state.current_page} is the last available page")
            return False

        self.state.current_page = next_page
        await self._persist()

        if not await self.navigator.wait_for_navigation(previous_url, self.navigation_timeout):
            self.logger.warning("navigation_timeout", page=next_page)
        if not await self.navigator.wait_until_ready(self.content_ready_timeout):
            self.logger.warning("content_ready_timeout", page=next_page)

        self._ensure_listing(await self._call(self.navigator.current_url))
        return True

    async def _recover(self, reason: str) -> None:
        if self._stop_requested:
            return
        self.state.phase = RunPhase.RECOVERING
        self.state.errors.append(reason)
        await self._persist()
        self._status(f"Run aborted: {reason}")
        await self._complete()

    async def _complete(self) -> None:
        if self._stop_requested:
            return

        self.state.phase = RunPhase.COMPLETING
        self.state.is_running = False
        self.state.is_paused = False
        await self._close_current_tab()
        await self._persist()

        stats = self.state.stats()
        self.logger.info("run_completed", **stats.model_dump())
        self._emit(Completed(stats=stats))

        self.state.phase = RunPhase.IDLE
        await self._persist()

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _call(self, func: Callable[[], Awaitable[T]]) -> T:
        return await call_with_retry(func, self.retry_attempts, self.retry_backoff)

    async def _resolve_page_number(self, url: str) -> int:
        page = page_number_from_url(url, default=None)
        if page is not None:
            return page
        try:
            detected = await self._call(self.navigator.get_current_page_number)
        except ContextLostError:
            raise
        except Exception as e:
            self.logger.debug("page_number_detection_failed", error=str(e))
            return 1
        return detected if isinstance(detected, int) and detected > 0 else 1

    def _ensure_listing(self, url: str) -> None:
        if not is_listing_url(url, self.profile):
            raise ContextLostError(f"navigated away from the results listing: {url}")

    async def _store_call(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run a store operation that finishes even if the run task is cancelled.

        Cancelling a task mid-transaction would leave the connection in an
        unknown state; stop() drains these before writing its own checkpoint.
        """
        op = asyncio.ensure_future(func(*args))
        self._store_ops.add(op)
        op.add_done_callback(self._store_ops.discard)
        return await asyncio.shield(op)

    async def _drain_store_ops(self) -> None:
        while self._store_ops:
            done, _ = await asyncio.wait(set(self._store_ops))
            for op in done:
                if not op.cancelled() and op.exception() is not None:
                    self.logger.warning("store_operation_failed", error=str(op.exception()))

    async def _record_item(self, record: Record) -> None:
        # Runs as one store operation so the stored record and the counter
        # never disagree after a stop.
        added = await self.store.append_record(record)
        self.state.processed_count += 1
        self._emit(ItemProcessed(
            record=record.model_copy(),
            processed_count=self.state.processed_count,
            skipped=not added,
        ))

    async def _persist(self) -> None:
        await self._store_call(self.store.save_state, self.state)

    async def _close_tab(self, tab: DetailTab) -> None:
        try:
            await tab.close()
        except Exception as e:
            self.logger.debug("tab_close_failed", error=str(e))
        if self._current_tab is tab:
            self._current_tab = None

    async def _close_current_tab(self) -> None:
        if self._current_tab is not None:
            await self._close_tab(self._current_tab)
