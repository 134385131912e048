"""Tests for the scraping coordinator state machine.

The navigator, opener and extractor are in-memory fakes; delays, timeouts
and retry backoff are all zero so runs complete instantly.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from structlog.testing import capture_logs
from conftest import LISTING_URL, company

from listscout.core.exceptions import (
    ContextLostError,
    ExtractionError,
    InvalidTransitionError,
    RunInProgressError,
    SetupError,
    TransientPageError,
)
from listscout.schemas.record import Record
from listscout.schemas.state import RunPhase
from listscout.scrapers.base import DetailOpener, DetailTab, ItemExtractor, ItemLink, ListingNavigator
from listscout.scrapers.coordinator import ScrapingCoordinator
from listscout.scrapers.events import (
    Completed,
    GetRecordsCommand,
    GetStateCommand,
    ItemProcessed,
    ItemsFoundOnPage,
    Paused,
    PauseCommand,
    ReplaceRecordsCommand,
    Resumed,
    StartCommand,
    Started,
    Stopped,
)
from listscout.scrapers.store import RecordStore
from listscout.scrapers.utils.normalizer import extract_slug
from listscout.scrapers.utils.rate_limiter import RateLimiter
from listscout.scrapers.utils.waiting import wait_for_condition


# ============================================================================
# FAKES
# ============================================================================

def link(slug: str, name: str = "") -> ItemLink:
    return ItemLink(url=f"https://www.linkedin.com/company/{slug}/", name=name or slug.title())


class FakeNavigator(ListingNavigator):
    """Listing with a fixed list of pages; advancing past the last one fails."""

    def __init__(self, pages: List[List[ItemLink]], url: str = LISTING_URL, content_page: int = 1):
        self.pages = pages
        self.index = 0
        self.url = url
        self.content_page = content_page
        self.advance_calls = 0
        self.extract_failures: List[Exception] = []
        self.advance_error: Optional[Exception] = None

    async def current_url(self) -> str:
        return self.url

    async def extract_item_links(self) -> List[ItemLink]:
        if self.extract_failures:
            raise self.extract_failures.pop(0)
        if self.index < len(self.pages):
            return list(self.pages[self.index])
        return []

    async def has_next_page(self) -> bool:
        # Never reports a next page; the coordinator advances regardless
        return False

    async def advance_to_next_page(self) -> bool:
        self.advance_calls += 1
        if self.advance_error is not None:
            raise self.advance_error
        if self.index + 1 >= len(self.pages):
            return False
        self.index += 1
        self.url = f"{LISTING_URL}&page={self.content_page + self.index}"
        return True

    async def get_current_page_number(self) -> int:
        return self.content_page

    async def wait_for_navigation(self, previous_url: str, timeout: float) -> bool:
        return self.url != previous_url

    async def wait_until_ready(self, timeout: float) -> bool:
        return True


class FakeTab(DetailTab):
    def __init__(self, url: str, block: bool = False):
        self.url = url
        self.closed = False
        self.block = block

    async def wait_for_load(self, timeout: float) -> bool:
        if self.block:
            await asyncio.Event().wait()
        return True

    async def close(self) -> None:
        self.closed = True


class FakeOpener(DetailOpener):
    def __init__(self, block_on: Optional[str] = None):
        self.tabs: List[FakeTab] = []
        self.block_on = block_on

    @property
    def opened(self) -> List[str]:
        return [tab.url for tab in self.tabs]

    async def open(self, url: str) -> FakeTab:
        tab = FakeTab(url, block=bool(self.block_on and self.block_on in url))
        self.tabs.append(tab)
        return tab


class FakeExtractor(ItemExtractor):
    """Builds a record from the tab URL; per-slug overrides and hooks."""

    def __init__(self):
        self.failures: Dict[str, Exception] = {}
        self.overrides: Dict[str, Record] = {}
        self.hooks: Dict[str, Callable[[], Awaitable[None]]] = {}

    async def extract_detail(self, tab: DetailTab) -> Record:
        slug = extract_slug(tab.url)
        if slug in self.hooks:
            await self.hooks.pop(slug)()
        if slug in self.failures:
            raise self.failures[slug]
        if slug in self.overrides:
            return self.overrides[slug]
        return company(slug)


def about(slug: str) -> str:
    return f"https://www.linkedin.com/company/{slug}/about/"


class GatedStore(RecordStore):
    """append_record stalls mid-write until released."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def append_record(self, record: Record) -> bool:
        self.entered.set()
        await self.release.wait()
        return await super().append_record(record)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def opener() -> FakeOpener:
    return FakeOpener()


@pytest.fixture
def events() -> list:
    return []


@pytest_asyncio.fixture
async def make_coordinator(store: RecordStore, opener: FakeOpener, extractor: FakeExtractor, events: list):
    """Factory building a coordinator around a navigator with no delays."""

    def build(navigator: FakeNavigator) -> ScrapingCoordinator:
        coordinator = ScrapingCoordinator(
            store=store,
            navigator=navigator,
            opener=opener,
            extractor=extractor,
            rate_limiter=RateLimiter(min_delay_ms=0, max_delay_ms=0, floor_ms=0),
            navigation_timeout=0,
            content_ready_timeout=0,
            tab_load_timeout=0,
            settle_delay=0,
            retry_attempts=3,
            retry_backoff=0,
        )
        coordinator.subscribe(events.append)
        return coordinator

    return build


def of_type(events: list, event_type) -> list:
    return [e for e in events if isinstance(e, event_type)]


# ============================================================================
# TESTS: START VALIDATION
# ============================================================================

class TestStart:
    """Tests for start() preconditions and page resolution."""

    @pytest.mark.parametrize("max_pages", [0, 21, -1, "3", 2.5, True])
    async def test_invalid_budget_rejected(self, make_coordinator, max_pages):
        coordinator = make_coordinator(FakeNavigator([[link("acme")]]))
        with pytest.raises(SetupError):
            await coordinator.start(max_pages)
        assert not coordinator.state.is_running

    async def test_not_on_listing_page(self, make_coordinator, events):
        navigator = FakeNavigator([[link("acme")]], url="https://www.linkedin.com/company/acme/")
        coordinator = make_coordinator(navigator)

        with pytest.raises(SetupError, match="search results page"):
            await coordinator.start(1)
        assert events == []

    async def test_start_while_running_rejected(self, make_coordinator, store, events):
        opener_blocking = FakeOpener(block_on="acme")
        coordinator = make_coordinator(FakeNavigator([[link("acme")]]))
        coordinator.opener = opener_blocking

        await coordinator.start(1)
        assert await wait_for_condition(lambda: opener_blocking.opened, timeout=1, interval=0.001)

        with pytest.raises(RunInProgressError):
            await coordinator.start(1)

        await coordinator.stop()
        assert len(of_type(events, Started)) == 1

    async def test_start_page_from_url(self, make_coordinator):
        navigator = FakeNavigator([[link("acme")]], url=f"{LISTING_URL}&page=3", content_page=7)
        coordinator = make_coordinator(navigator)

        state = await coordinator.start(1)
        await coordinator.wait()

        assert state.start_page == 3
        assert coordinator.state.current_page == 3

    async def test_start_page_from_content(self, make_coordinator):
        coordinator = make_coordinator(FakeNavigator([[link("acme")]], content_page=4))

        state = await coordinator.start(1)
        await coordinator.wait()

        assert state.start_page == 4
        assert state.is_running
        assert state.phase == RunPhase.RUNNING


# ============================================================================
# TESTS: RUN SCENARIOS
# ============================================================================

class TestRun:
    """End-to-end runs over fake collaborators."""

    async def test_prefilter_skips_known_items(self, make_coordinator, store, opener, events):
        """A and C are already stored; only B is visited."""
        await store.save_records([
            Record(name="Alpha Corp", url="https://www.linkedin.com/company/alpha/jobs/"),
            Record(name="Charlie Ltd", url="http://linkedin.com/company/charlie"),
        ])
        navigator = FakeNavigator([[link("alpha"), link("bravo"), link("charlie")]])
        coordinator = make_coordinator(navigator)

        await coordinator.start(1)
        await coordinator.wait()

        found = of_type(events, ItemsFoundOnPage)
        assert [(e.count, e.page_number) for e in found] == [(3, 1)]
        assert opener.opened == [about("bravo")]

        completed = of_type(events, Completed)
        assert len(completed) == 1
        assert completed[0].stats.items_found == 3
        assert completed[0].stats.items_processed == 1
        assert completed[0].stats.pages_reached == 1
        assert [r.name for r in await store.get_records()] == ["Alpha Corp", "Charlie Ltd", "Bravo"]

    async def test_page_budget_limits_pages(self, make_coordinator, opener, events):
        pages = [[link(f"company-{p}-{i}") for i in range(2)] for p in range(5)]
        navigator = FakeNavigator(pages)
        coordinator = make_coordinator(navigator)

        await coordinator.start(2)
        await coordinator.wait()

        assert navigator.advance_calls == 1
        assert len(opener.opened) == 4
        stats = of_type(events, Completed)[0].stats
        assert stats.pages_reached == 2
        assert stats.items_processed == 4

    async def test_advance_failure_completes_run(self, make_coordinator, events):
        """Advance fails on page 2 of a 5-page budget."""
        navigator = FakeNavigator([[link("alpha")], [link("bravo")]])
        coordinator = make_coordinator(navigator)

        await coordinator.start(5)
        await coordinator.wait()

        assert navigator.advance_calls == 2
        stats = of_type(events, Completed)[0].stats
        assert stats.pages_reached == 2
        assert stats.last_page == 2
        assert stats.items_processed == 2
        assert stats.error_count == 0
        assert coordinator.state.phase == RunPhase.IDLE
        assert not coordinator.state.is_running

    async def test_advance_attempted_despite_missing_next_button(self, make_coordinator):
        navigator = FakeNavigator([[link("alpha")], [link("bravo")]])
        coordinator = make_coordinator(navigator)

        await coordinator.start(2)
        await coordinator.wait()

        assert navigator.index == 1
        assert coordinator.state.pages_reached == 2

    async def test_zero_items_on_single_page_is_degraded_setup(self, make_coordinator, events):
        coordinator = make_coordinator(FakeNavigator([[]]))

        await coordinator.start(3)
        await coordinator.wait()

        stats = of_type(events, Completed)[0].stats
        assert stats.items_found == 0
        assert stats.error_count == 1
        assert "No items found" in coordinator.state.errors[0]

    async def test_item_failure_does_not_halt_queue(self, make_coordinator, extractor, opener, events):
        extractor.failures["bravo"] = ExtractionError(about("bravo"), "page unreadable")
        coordinator = make_coordinator(FakeNavigator([[link("alpha"), link("bravo"), link("charlie")]]))

        await coordinator.start(1)
        await coordinator.wait()

        assert all(tab.closed for tab in opener.tabs)
        assert len(opener.tabs) == 3
        stats = of_type(events, Completed)[0].stats
        assert stats.items_processed == 2
        assert stats.error_count == 1
        assert "bravo" in coordinator.state.errors[0]

    async def test_final_check_skips_item_added_mid_run(self, make_coordinator, store, extractor, opener, events):
        """An item stored after the pre-filter is counted but never opened."""

        async def import_bravo():
            await store.append_record(company("bravo", "Bravo Imported"))

        extractor.hooks["alpha"] = import_bravo
        coordinator = make_coordinator(FakeNavigator([[link("alpha"), link("bravo"), link("charlie")]]))

        await coordinator.start(1)
        await coordinator.wait()

        assert opener.opened == [about("alpha"), about("charlie")]
        processed = of_type(events, ItemProcessed)
        assert [(e.record.name, e.skipped) for e in processed] == [
            ("Alpha", False),
            ("Bravo", True),
            ("Charlie", False),
        ]
        assert processed[-1].processed_count == 3

    async def test_duplicate_revealed_by_extraction_not_stored(self, make_coordinator, store, extractor, events):
        await store.save_records([company("acme-global", "Acme Inc.")])
        extractor.overrides["acme-local"] = Record(name="Acme", url="https://www.linkedin.com/company/acme-local")
        coordinator = make_coordinator(FakeNavigator([[link("acme-local", "Acme Local")]]))

        await coordinator.start(1)
        await coordinator.wait()

        processed = of_type(events, ItemProcessed)
        assert len(processed) == 1
        assert processed[0].skipped is True
        assert processed[0].processed_count == 1
        assert len(await store.get_records()) == 1

    async def test_missing_url_filled_from_queue(self, make_coordinator, store, extractor):
        extractor.overrides["alpha"] = Record(name="N/A", url="")
        coordinator = make_coordinator(FakeNavigator([[link("alpha", "Alpha Listing Name")]]))

        await coordinator.start(1)
        await coordinator.wait()

        record = (await store.get_records())[0]
        assert record.name == "Alpha Listing Name"
        assert record.url == "https://www.linkedin.com/company/alpha/"

    async def test_duplicate_links_on_one_page_queued_once(self, make_coordinator, opener):
        navigator = FakeNavigator([[link("alpha"), link("alpha", "Alpha Again")]])
        coordinator = make_coordinator(navigator)

        await coordinator.start(1)
        await coordinator.wait()

        assert opener.opened == [about("alpha")]

    async def test_transient_link_extraction_retried(self, make_coordinator, opener):
        navigator = FakeNavigator([[link("alpha")]])
        navigator.extract_failures = [TransientPageError("no receiver"), TransientPageError("no receiver")]
        coordinator = make_coordinator(navigator)

        await coordinator.start(1)
        await coordinator.wait()

        assert opener.opened == [about("alpha")]
        assert coordinator.state.errors == []

    async def test_exhausted_retries_recorded_per_page(self, make_coordinator, events):
        navigator = FakeNavigator([[link("alpha")]])
        navigator.extract_failures = [TransientPageError("no receiver")] * 3
        coordinator = make_coordinator(navigator)

        await coordinator.start(1)
        await coordinator.wait()

        assert len(of_type(events, Completed)) == 1
        assert "link extraction failed" in coordinator.state.errors[0]

    async def test_context_lost_completes_with_partial_results(self, make_coordinator, store, events):
        navigator = FakeNavigator([[link("alpha")], [link("bravo")]])
        navigator.advance_error = ContextLostError("tab closed")
        coordinator = make_coordinator(navigator)

        await coordinator.start(3)
        await coordinator.wait()

        completed = of_type(events, Completed)
        assert len(completed) == 1
        assert completed[0].stats.items_processed == 1
        assert "Listing context lost" in coordinator.state.errors[-1]
        assert coordinator.state.phase == RunPhase.IDLE

        persisted = await store.get_state()
        assert persisted.is_running is False
        assert persisted.errors == coordinator.state.errors

    async def test_navigating_off_listing_is_fatal(self, make_coordinator, events):
        navigator = FakeNavigator([[link("alpha")], [link("bravo")]])
        coordinator = make_coordinator(navigator)

        async def wander_off() -> bool:
            navigator.url = "https://www.linkedin.com/feed/"
            return True

        navigator.advance_to_next_page = wander_off

        await coordinator.start(3)
        await coordinator.wait()

        assert len(of_type(events, Completed)) == 1
        assert "navigated away" in coordinator.state.errors[-1]

    async def test_throttled_limiter_is_waited_out(self, make_coordinator, opener):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))
        coordinator.rate_limiter.throttle(20)

        await coordinator.start(1)
        await coordinator.wait()

        assert opener.opened == [about("alpha")]
        assert not coordinator.rate_limiter.is_throttled

    async def test_observer_errors_are_swallowed(self, make_coordinator, events):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))

        def broken(event):
            raise RuntimeError("observer bug")

        coordinator.subscribe(broken)
        await coordinator.start(1)
        await coordinator.wait()

        assert len(of_type(events, Completed)) == 1

    async def test_failing_observer_logged_with_event_type(self, make_coordinator, events):
        def broken(event):
            raise RuntimeError("observer bug")

        with capture_logs() as logs:
            coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))
            coordinator.subscribe(broken)
            state = await coordinator.start(1)
            await coordinator.wait()

        assert state.is_running
        assert len(of_type(events, Completed)) == 1
        failures = [entry for entry in logs if entry["event"] == "observer_failed"]
        assert failures[0]["event_type"] == "Started"
        assert {entry["event_type"] for entry in failures} >= {"Started", "ItemProcessed", "Completed"}

        # The coordinator is reusable once the run is over
        await coordinator.start(1)
        await coordinator.wait()
        assert len(of_type(events, Completed)) == 2

    async def test_unsubscribe(self, make_coordinator):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))
        seen = []
        unsubscribe = coordinator.subscribe(seen.append)
        unsubscribe()

        await coordinator.start(1)
        await coordinator.wait()

        assert seen == []


# ============================================================================
# TESTS: PAUSE / RESUME / STOP
# ============================================================================

class TestPauseResumeStop:
    """Tests for user-driven transitions."""

    async def test_pause_holds_cursor_and_resume_continues(self, make_coordinator, extractor, opener, events):
        coordinator = make_coordinator(FakeNavigator([[link("alpha"), link("bravo"), link("charlie")]]))

        async def pause_now():
            await coordinator.pause()

        extractor.hooks["alpha"] = pause_now
        await coordinator.start(1)

        assert await wait_for_condition(
            lambda: coordinator.state.queue_cursor == 1, timeout=1, interval=0.001
        )
        await asyncio.sleep(0.02)

        state = coordinator.get_state()
        assert state.is_paused
        assert state.phase == RunPhase.PAUSED
        assert state.processed_count == 1
        assert opener.opened == [about("alpha")]

        await coordinator.resume()
        await coordinator.wait()

        assert opener.opened == [about("alpha"), about("bravo"), about("charlie")]
        assert coordinator.state.processed_count == 3
        kinds = [type(e) for e in events if isinstance(e, (Paused, Resumed, Completed))]
        assert kinds == [Paused, Resumed, Completed]

    async def test_pause_resume_invalid_transitions(self, make_coordinator):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))

        with pytest.raises(InvalidTransitionError):
            await coordinator.pause()
        with pytest.raises(InvalidTransitionError):
            await coordinator.resume()
        with pytest.raises(InvalidTransitionError):
            await coordinator.stop()

    async def test_stop_releases_open_tab(self, make_coordinator, store, events):
        blocking = FakeOpener(block_on="bravo")
        coordinator = make_coordinator(FakeNavigator([[link("alpha"), link("bravo"), link("charlie")]]))
        coordinator.opener = blocking

        await coordinator.start(1)
        assert await wait_for_condition(lambda: len(blocking.tabs) == 2, timeout=1, interval=0.001)

        stats = await coordinator.stop()

        assert blocking.tabs[1].closed
        assert stats.items_processed == 1
        assert len(of_type(events, Stopped)) == 1
        assert of_type(events, Completed) == []
        assert not coordinator.state.is_running

        persisted = await store.get_state()
        assert persisted.is_running is False

        await coordinator.wait()
        assert len(blocking.tabs) == 2

    async def test_stop_lets_inflight_write_finish(self, session_factory, opener, extractor, events):
        store = GatedStore(session_factory)
        coordinator = ScrapingCoordinator(
            store=store,
            navigator=FakeNavigator([[link("alpha"), link("bravo")]]),
            opener=opener,
            extractor=extractor,
            rate_limiter=RateLimiter(min_delay_ms=0, max_delay_ms=0, floor_ms=0),
            navigation_timeout=0,
            content_ready_timeout=0,
            tab_load_timeout=0,
            settle_delay=0,
            retry_backoff=0,
        )
        coordinator.subscribe(events.append)

        await coordinator.start(1)
        await asyncio.wait_for(store.entered.wait(), timeout=1)

        stopping = asyncio.create_task(coordinator.stop())
        await asyncio.sleep(0.02)
        assert not stopping.done()

        store.release.set()
        stats = await asyncio.wait_for(stopping, timeout=1)

        assert stats.items_processed == 1
        assert [r.name for r in await store.get_records()] == ["Alpha"]
        assert opener.opened == [about("alpha")]
        assert opener.tabs[0].closed
        assert len(of_type(events, ItemProcessed)) == 1
        assert len(of_type(events, Stopped)) == 1

        persisted = await store.get_state()
        assert persisted.is_running is False
        assert persisted.processed_count == 1

        # The connection is still usable after the stop
        assert await store.append_record(company("zeta")) is True

    async def test_stop_while_paused(self, make_coordinator, extractor, events):
        coordinator = make_coordinator(FakeNavigator([[link("alpha"), link("bravo")]]))

        async def pause_now():
            await coordinator.pause()

        extractor.hooks["alpha"] = pause_now
        await coordinator.start(1)
        assert await wait_for_condition(
            lambda: coordinator.state.queue_cursor == 1, timeout=1, interval=0.001
        )

        stats = await coordinator.stop()

        assert stats.items_processed == 1
        assert not coordinator.state.is_paused
        assert len(of_type(events, Stopped)) == 1


# ============================================================================
# TESTS: STATE AND COMMANDS
# ============================================================================

class TestCommands:
    """Tests for snapshots, record commands and dispatch."""

    async def test_state_snapshot_is_a_copy(self, make_coordinator):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))
        snapshot = coordinator.get_state()
        snapshot.errors.append("tampered")
        assert coordinator.state.errors == []

    async def test_clear_all_rejected_while_running(self, make_coordinator):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))
        coordinator.opener = FakeOpener(block_on="alpha")

        await coordinator.start(1)
        with pytest.raises(InvalidTransitionError):
            await coordinator.clear_all()
        await coordinator.stop()

    async def test_clear_all(self, make_coordinator, store):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))
        await coordinator.start(1)
        await coordinator.wait()

        await coordinator.clear_all()

        assert await coordinator.get_records() == []
        assert await store.get_state() is None
        assert coordinator.state.processed_count == 0

    async def test_replace_records_drops_duplicates(self, make_coordinator):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))

        stored = await coordinator.replace_records([
            company("acme", "Acme Inc."),
            {"name": "Acme", "url": ""},
            {"name": "Globex"},
        ])

        assert stored == 2
        assert [r.name for r in await coordinator.get_records()] == ["Acme Inc.", "Globex"]

    async def test_load_state_marks_interrupted_run_stopped(self, make_coordinator, store):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))
        coordinator.opener = FakeOpener(block_on="alpha")
        await coordinator.start(1)
        assert await wait_for_condition(lambda: coordinator.opener.tabs, timeout=1, interval=0.001)

        # A fresh coordinator sees the checkpoint of a run that never finished
        restarted = make_coordinator(FakeNavigator([[link("alpha")]]))
        state = await restarted.load_state()

        assert state.is_running is False
        assert state.phase == RunPhase.IDLE
        assert state.total_found_count == 1
        assert (await store.get_state()).is_running is False

        await coordinator.stop()

    async def test_dispatch(self, make_coordinator):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))

        rejected = await coordinator.dispatch(StartCommand(max_pages=0))
        assert not rejected.success
        assert "max_pages" in rejected.error

        invalid = await coordinator.dispatch(PauseCommand())
        assert not invalid.success

        started = await coordinator.dispatch(StartCommand(max_pages=1))
        assert started.success
        assert started.data.is_running
        await coordinator.wait()

        state = await coordinator.dispatch(GetStateCommand())
        assert state.success and state.data.processed_count == 1

        replaced = await coordinator.dispatch(ReplaceRecordsCommand(records=[company("zeta")]))
        assert replaced.data == 1

        records = await coordinator.dispatch(GetRecordsCommand())
        assert [r.name for r in records.data] == ["Zeta"]

    async def test_dispatch_unknown_command(self, make_coordinator):
        coordinator = make_coordinator(FakeNavigator([[link("alpha")]]))
        result = await coordinator.dispatch(object())
        assert not result.success
