"""LinkedIn company search adapter.

Drives the company search listing and the company "about" pages via
Playwright. Parsing is done with BeautifulSoup on page HTML so that every
heuristic below is testable against static fixtures.

Selectors follow LinkedIn's markup as of writing and are expected to drift;
each field uses several strategies and degrades to "N/A".
"""

import asyncio
import json
import re
import time
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator, Iterable, List, Optional
from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup, Tag
from playwright.async_api import (
    BrowserContext,
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeout,
)

from listscout.config import SiteProfile
from listscout.core.exceptions import ContextLostError, ExtractionError, TransientPageError
from listscout.schemas.record import NOT_FOUND, Record
from listscout.scrapers.base import DetailOpener, DetailTab, ItemExtractor, ItemLink, ListingNavigator
from listscout.scrapers.utils.normalizer import DEFAULT_PROFILE, extract_slug


logger = structlog.get_logger(__name__)

# ============================================================================
# SELECTORS
# ============================================================================

_RESULT_CARD = "li.reusable-search__result-container"
_RESULT_LINK = 'a.app-aware-link[href*="/company/"]'

_ALT_RESULT_CARDS = [
    "li.entity-result",
    "div.entity-result",
    "li.search-result",
    "div.search-result",
    "[data-chameleon-result-urn]",
]

_ALT_RESULT_LINKS = [
    'a.app-aware-link[href*="/company/"]',
    'a.entity-result__title-link[href*="/company/"]',
    'a.search-result__result-link[href*="/company/"]',
    'a[href*="/company/"]',
]

_CARD_NAME_SELECTORS = [
    "span.entity-result__title-text a",
    ".entity-result__title-text",
    "a.entity-result__title-link",
    ".search-result__result-link",
    'a[href*="/company/"] span[aria-hidden="true"]',
    'a[href*="/company/"]',
]

_NEXT_BUTTON_SELECTORS = [
    'button[aria-label="Next"]',
    'button[aria-label*="Next"]',
    ".artdeco-pagination__button--next",
    'button[data-test-pagination-page-btn="next"]',
]

_ACTIVE_PAGE_SELECTORS = [
    '.artdeco-pagination__pages button[aria-current="true"]',
    ".artdeco-pagination__indicator--active button",
    ".artdeco-pagination__indicator--active",
]

_SKELETON = ".app-boot-bg-skeleton, .skeleton-loader, .initial-load-animation"
_LISTING_CONTENT = ", ".join([_RESULT_CARD] + _ALT_RESULT_CARDS)
_DETAIL_CONTENT = ".org-top-card-summary, .org-about-us-organization-description, .org-page-details"

# Evaluated in the page: rendered content present and no loading skeleton left
_READY_SCRIPT = "([content, skeleton]) => !!document.querySelector(content) && !document.querySelector(skeleton)"

_NAME_SELECTORS = ["h1.org-top-card-summary__title", ".org-top-card-summary__title", "h1"]
_INDUSTRY_SELECTORS = [".org-top-card-summary__industry", ".org-page-details__definition-text"]
_HEADQUARTERS_SELECTORS = [".org-top-card-summary__headquarter", '[data-test-id="about-us-headquarters"]']
_ABOUT_SECTIONS = ".org-about-module, .org-about-us-organization-description, .org-page-details"

_SOCIAL_DOMAINS = ("linkedin.com", "facebook.com", "twitter.com", "instagram.com", "youtube.com")

_PHONE_PATTERN = re.compile(r"(\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")
_PHONE_CONTEXT_PATTERN = re.compile(
    r"phone:?\s*(\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}", re.IGNORECASE
)
_WHITESPACE = re.compile(r"\s+")

_MAX_NAME_LENGTH = 200


# ============================================================================
# LISTING PARSING
# ============================================================================

def _text(element: Optional[Tag]) -> str:
    if element is None:
        return ""
    return _WHITESPACE.sub(" ", element.get_text(" ", strip=True)).strip()


def _is_disabled(element: Tag) -> bool:
    classes = element.get("class") or []
    return (
        element.has_attr("disabled")
        or element.get("aria-disabled") == "true"
        or "artdeco-button--disabled" in classes
        or "artdeco-pagination__button--disabled" in classes
    )


def canonical_entity_url(href: str, profile: SiteProfile = DEFAULT_PROFILE) -> Optional[str]:
    """``https://www.<domain>/<entity>/<slug>`` for a detail-page href, else None."""
    slug = extract_slug(href, profile)
    if not slug:
        return None
    return f"https://www.{profile.domain}/{profile.entity_path}/{slug}"


def _card_name(card: Tag) -> str:
    for selector in _CARD_NAME_SELECTORS:
        text = _text(card.select_one(selector))
        if text and len(text) < _MAX_NAME_LENGTH:
            return text
    return ""


def parse_item_links(
    html: str,
    base_url: str = "",
    profile: SiteProfile = DEFAULT_PROFILE,
) -> List[ItemLink]:
    """Enumerate company links on a search results page.

    Strategies, first one that yields anything wins:
        1. Standard result cards
        2. Alternative card containers
        3. Every company link on the page

    Args:
        html: Listing page HTML
        base_url: URL of the page, used to resolve relative hrefs
        profile: Target site URL scheme

    Returns:
        Unique links in page order
    """
    soup = BeautifulSoup(html, "html.parser")
    links: List[ItemLink] = []
    seen: set = set()

    def add(href: Optional[str], name: str) -> None:
        url = canonical_entity_url(urljoin(base_url, href or ""), profile)
        if url and url not in seen:
            seen.add(url)
            links.append(ItemLink(url=url, name=name))

    # Strategy 1: standard result cards
    for card in soup.select(_RESULT_CARD):
        link = card.select_one(_RESULT_LINK)
        if link is not None:
            add(link.get("href"), _card_name(card))

    # Strategy 2: alternative containers
    if not links:
        for container in _ALT_RESULT_CARDS:
            cards = soup.select(container)
            for card in cards:
                for selector in _ALT_RESULT_LINKS:
                    link = card.select_one(selector)
                    if link is not None and canonical_entity_url(urljoin(base_url, link.get("href", "")), profile):
                        add(link.get("href"), _card_name(card))
                        break
            if links:
                break

    # Strategy 3: any link to a bare company page
    if not links:
        pattern = re.compile(rf"/{re.escape(profile.entity_path)}/[^/?#]+/?(?:[?#]|$)")
        for link in soup.select(f'a[href*="/{profile.entity_path}/"]'):
            href = link.get("href", "")
            if pattern.search(href):
                name = _text(link)
                add(href, name if len(name) < _MAX_NAME_LENGTH else "")

    return links


def parse_page_number(html: str) -> Optional[int]:
    """Active page number from the pagination widget, None if absent."""
    soup = BeautifulSoup(html, "html.parser")
    for selector in _ACTIVE_PAGE_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        match = re.search(r"\d+", _text(element) or element.get("aria-label", ""))
        if match and int(match.group()) > 0:
            return int(match.group())
    return None


def has_next_button(html: str) -> bool:
    """True when an enabled "Next" pagination button is present."""
    soup = BeautifulSoup(html, "html.parser")
    for selector in _NEXT_BUTTON_SELECTORS:
        button = soup.select_one(selector)
        if button is not None and not _is_disabled(button):
            return True
    return False


# ============================================================================
# DETAIL PARSING
# ============================================================================

def _json_ld_organization(soup: BeautifulSoup) -> dict:
    """First schema.org Organization object embedded as JSON-LD, or {}."""
    for script in soup.select('script[type="application/ld+json"]'):
        try:
            data = json.loads(script.string or "")
        except (TypeError, ValueError):
            continue

        if isinstance(data, list):
            candidates = data
        elif isinstance(data, dict):
            candidates = data.get("@graph", [data])
        else:
            continue

        for item in candidates:
            if isinstance(item, dict) and "Organization" in str(item.get("@type", "")):
                return item
    return {}


def _definitions(soup: BeautifulSoup, scope: Optional[str] = ".org-page-details") -> Iterable[tuple]:
    """Yield (label, dd) pairs from dt/dd lists, optionally within scope."""
    root = soup.select_one(scope) if scope else soup
    if root is None:
        return
    for dt in root.find_all("dt"):
        dd = dt.find_next_sibling("dd")
        if dd is not None:
            yield _text(dt).lower(), dd


def _labeled_value(soup: BeautifulSoup, label: str) -> Optional[Tag]:
    for scope in (".org-page-details", None):
        for dt_label, dd in _definitions(soup, scope):
            if label in dt_label:
                return dd
    return None


def _is_external(href: str) -> bool:
    if not href.startswith(("http://", "https://")):
        return False
    return not any(domain in href.lower() for domain in _SOCIAL_DOMAINS)


def _extract_name(soup: BeautifulSoup, org: dict) -> str:
    if isinstance(org.get("name"), str) and org["name"].strip():
        return org["name"].strip()
    for selector in _NAME_SELECTORS:
        text = _text(soup.select_one(selector))
        if text:
            return text
    meta = soup.select_one('meta[property="og:title"]')
    if meta is not None and meta.get("content"):
        return meta["content"].split("|")[0].strip() or NOT_FOUND
    return NOT_FOUND


def _extract_website(soup: BeautifulSoup, org: dict, base_url: str) -> str:
    # Structured metadata
    org_url = org.get("url")
    if isinstance(org_url, str) and _is_external(org_url):
        return org_url

    # Labeled section
    dd = _labeled_value(soup, "website")
    if dd is not None:
        link = dd.select_one("a[href]")
        if link is not None:
            href = urljoin(base_url, link["href"])
            if _is_external(href):
                return href
        text = _text(dd)
        if text.startswith(("http://", "https://")):
            return text

    # Top card
    top_card = soup.select_one(".org-top-card-summary")
    if top_card is not None:
        for link in top_card.select('a.link-without-visited-state[href*="http"], .org-top-card-summary__info-item a[href*="http"]'):
            if _is_external(link["href"]):
                return link["href"]

    # About sections: external links that look like a website
    for section in soup.select(_ABOUT_SECTIONS):
        for link in section.select("a[href]"):
            href = urljoin(base_url, link["href"])
            if not _is_external(href):
                continue
            link_text = _text(link).lower()
            parent_text = _text(link.parent).lower() if link.parent is not None else ""
            if "website" in parent_text or any(t in link_text for t in ("www.", ".com", ".org", ".net")):
                return href

    # Anywhere: prefer links labeled as website, else the first external link
    external = [link for link in soup.select("a[href]") if _is_external(urljoin(base_url, link["href"]))]
    for link in external:
        dd_parent = link.find_parent("dd")
        label = dd_parent.find_previous_sibling("dt") if dd_parent is not None else None
        if label is not None and "website" in _text(label).lower():
            return urljoin(base_url, link["href"])
    if external:
        return urljoin(base_url, external[0]["href"])

    return NOT_FOUND


def _extract_industry(soup: BeautifulSoup, org: dict) -> str:
    industry = org.get("industry")
    if isinstance(industry, str) and industry.strip():
        return industry.strip()

    dd = _labeled_value(soup, "industry")
    if dd is not None:
        text = _text(dd)
        if text and text.lower() != "industry":
            return text

    for selector in _INDUSTRY_SELECTORS:
        text = _text(soup.select_one(selector))
        if text:
            return text
    return NOT_FOUND


def _extract_phone(soup: BeautifulSoup, org: dict) -> str:
    telephone = org.get("telephone")
    if isinstance(telephone, str) and telephone.strip():
        return telephone.strip()

    tel = soup.select_one('a[href^="tel:"]')
    if tel is not None:
        number = tel["href"][len("tel:"):].strip()
        if number:
            return number

    dd = _labeled_value(soup, "phone")
    if dd is not None:
        match = _PHONE_PATTERN.search(_text(dd))
        if match:
            return match.group().strip()

    context_match = _PHONE_CONTEXT_PATTERN.search(_text(soup.body or soup))
    if context_match:
        match = _PHONE_PATTERN.search(context_match.group())
        if match:
            return match.group().strip()

    return NOT_FOUND


def _format_address(address) -> Optional[str]:
    if isinstance(address, list):
        address = address[0] if address else None
    if isinstance(address, str):
        return address.strip() or None
    if isinstance(address, dict):
        parts = [
            address.get(key)
            for key in ("addressLocality", "addressRegion", "addressCountry")
            if isinstance(address.get(key), str) and address.get(key).strip()
        ]
        return ", ".join(part.strip() for part in parts) or None
    return None


def _extract_headquarters(soup: BeautifulSoup, org: dict) -> str:
    address = _format_address(org.get("address"))
    if address:
        return address

    dd = _labeled_value(soup, "headquarter")
    if dd is not None:
        text = _text(dd)
        if text and "headquarters" not in text.lower():
            return text

    for selector in _HEADQUARTERS_SELECTORS:
        text = _text(soup.select_one(selector))
        if text and "headquarters" not in text.lower():
            return text
    return NOT_FOUND


def parse_company(html: str, url: str, profile: SiteProfile = DEFAULT_PROFILE) -> Record:
    """Extract a company record from detail page HTML.

    Each field is looked up in JSON-LD metadata, then in the labeled
    dt/dd details section, then with page-wide heuristics.

    Args:
        html: Detail page HTML
        url: URL the HTML was loaded from
        profile: Target site URL scheme

    Returns:
        Record with "N/A" for every field that could not be found
    """
    soup = BeautifulSoup(html, "html.parser")
    org = _json_ld_organization(soup)

    return Record(
        name=_extract_name(soup, org),
        website=_extract_website(soup, org, url),
        industry=_extract_industry(soup, org),
        phone=_extract_phone(soup, org),
        headquarters=_extract_headquarters(soup, org),
        url=canonical_entity_url(url, profile) or url.split("?")[0].split("#")[0],
    )


# ============================================================================
# PLAYWRIGHT COLLABORATORS
# ============================================================================

def _timeout_ms(seconds: float) -> float:
    # Playwright reads 0 as "wait forever"
    return max(1.0, seconds * 1000)


@asynccontextmanager
async def _page_errors(page: Page, action: str) -> AsyncIterator[None]:
    """Translate Playwright failures into transient / context-lost errors."""
    if page.is_closed():
        raise ContextLostError(f"page closed before {action}")
    try:
        yield
    except PlaywrightTimeout as e:
        raise TransientPageError(f"{action} timed out: {e}") from e
    except PlaywrightError as e:
        if page.is_closed() or "closed" in str(e).lower():
            raise ContextLostError(f"page closed during {action}") from e
        raise TransientPageError(f"{action} failed: {e}") from e


async def _wait_for_content(page: Page, content_selector: str, timeout: float) -> bool:
    """Wait in the page until content_selector renders and no skeleton is left.

    Returns:
        True when ready, False on timeout

    Raises:
        ContextLostError: If the page is closed while waiting
    """
    if page.is_closed():
        raise ContextLostError("page closed before content was ready")
    try:
        await page.wait_for_function(
            _READY_SCRIPT,
            arg=[content_selector, _SKELETON],
            timeout=_timeout_ms(timeout),
        )
    except PlaywrightTimeout:
        return False
    except PlaywrightError as e:
        if page.is_closed():
            raise ContextLostError("page closed while waiting for content") from e
        logger.debug("content_wait_failed", error=str(e))
        return False
    return True


class PlaywrightListingNavigator(ListingNavigator):
    """Search results listing driven through a Playwright page."""

    def __init__(self, page: Page, profile: SiteProfile = DEFAULT_PROFILE):
        self.page = page
        self.profile = profile
        self.logger = logger.bind(adapter="linkedin_listing")

    async def _html(self, action: str) -> str:
        async with _page_errors(self.page, action):
            return await self.page.content()

    async def current_url(self) -> str:
        if self.page.is_closed():
            raise ContextLostError("listing page was closed")
        return self.page.url

    async def extract_item_links(self) -> List[ItemLink]:
        html = await self._html("extract_item_links")
        links = parse_item_links(html, self.page.url, self.profile)
        self.logger.info("listing_links_found", count=len(links), url=self.page.url)
        return links

    async def has_next_page(self) -> bool:
        return has_next_button(await self._html("has_next_page"))

    async def advance_to_next_page(self) -> bool:
        async with _page_errors(self.page, "advance_to_next_page"):
            for selector in _NEXT_BUTTON_SELECTORS:
                button = self.page.locator(selector).first
                if not await button.count():
                    continue
                if not await button.is_enabled():
                    continue
                classes = await button.get_attribute("class") or ""
                if "disabled" in classes:
                    continue

                await button.scroll_into_view_if_needed()
                await button.click()
                self.logger.info("next_page_clicked", selector=selector)
                return True

        self.logger.warning("next_button_not_found", url=self.page.url)
        return False

    async def get_current_page_number(self) -> int:
        return parse_page_number(await self._html("get_current_page_number")) or 1

    async def wait_for_navigation(self, previous_url: str, timeout: float) -> bool:
        """Wait for the listing URL to change (pagination is client-side routing)."""
        if self.page.is_closed():
            raise ContextLostError("listing page was closed during navigation")
        if self.page.url != previous_url:
            return True

        try:
            await self.page.wait_for_url(
                lambda url: url != previous_url,
                wait_until="commit",
                timeout=_timeout_ms(timeout),
            )
        except PlaywrightTimeout:
            self.logger.debug("listing_navigation_timeout", previous_url=previous_url)
            return False
        except PlaywrightError as e:
            if self.page.is_closed():
                raise ContextLostError("listing page was closed during navigation") from e
            self.logger.debug("listing_navigation_failed", error=str(e))
            return False
        return True

    async def wait_until_ready(self, timeout: float) -> bool:
        return await _wait_for_content(self.page, _LISTING_CONTENT, timeout)


class PlaywrightDetailTab(DetailTab):
    """A detail page opened in its own Playwright page."""

    def __init__(self, page: Page, url: str):
        self.page = page
        self.url = url
        self._closed = False

    async def wait_for_load(self, timeout: float) -> bool:
        """Wait for the load event and rendered details within one deadline."""
        if self.page.is_closed():
            raise ContextLostError(f"detail tab closed: {self.url}")

        deadline = time.monotonic() + timeout
        try:
            await self.page.wait_for_load_state("load", timeout=_timeout_ms(timeout))
        except PlaywrightTimeout:
            return False
        except PlaywrightError as e:
            if self.page.is_closed():
                raise ContextLostError(f"detail tab closed: {self.url}") from e
            return False

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        return await _wait_for_content(self.page, _DETAIL_CONTENT, remaining)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self.page.is_closed():
            await self.page.close()


class PlaywrightDetailOpener(DetailOpener):
    """Opens each detail page in a fresh page of the session context."""

    def __init__(self, context: BrowserContext, navigation_timeout: float = 30.0):
        self.context = context
        self.navigation_timeout = navigation_timeout

    async def open(self, url: str) -> PlaywrightDetailTab:
        page = await self.context.new_page()
        tab = PlaywrightDetailTab(page, url)
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=_timeout_ms(self.navigation_timeout))
        except PlaywrightTimeout:
            logger.warning("detail_goto_timeout", url=url)
        except PlaywrightError as e:
            await tab.close()
            raise TransientPageError(f"could not open {url}: {e}") from e
        except asyncio.CancelledError:
            # The caller never receives the tab, so nobody else can close it
            with suppress(PlaywrightError):
                await tab.close()
            raise
        return tab


class LinkedInCompanyExtractor(ItemExtractor):
    """Reads company fields from a loaded about page."""

    def __init__(self, profile: SiteProfile = DEFAULT_PROFILE):
        self.profile = profile
        self.logger = logger.bind(adapter="linkedin_company")

    async def extract_detail(self, tab: PlaywrightDetailTab) -> Record:
        async with _page_errors(tab.page, "extract_detail"):
            html = await tab.page.content()
            page_url = tab.page.url

        if not html or not html.strip():
            raise ExtractionError(tab.url, "page has no content")

        record = parse_company(html, page_url or tab.url, self.profile)
        self.logger.info(
            "company_extracted",
            name=record.name,
            url=record.url,
            missing=[f for f in ("website", "industry", "phone", "headquarters") if getattr(record, f) == NOT_FOUND],
        )
        return record
