"""URL / name normalization and duplicate matching for collected records.

Everything in this module is pure: identical inputs always give identical
output and nothing here performs I/O.
"""

import re
from typing import Any, Iterable, Optional
from urllib.parse import parse_qs, urlparse

from listscout.config import SiteProfile
from listscout.schemas.record import NOT_FOUND


DEFAULT_PROFILE = SiteProfile()

# Legal-entity suffixes ignored by the fuzzy name comparison
_LEGAL_SUFFIX_PATTERN = re.compile(
    r"\s+(inc|llc|ltd|corp|corporation|company|co)\.?$", re.IGNORECASE
)

# Names shorter than this never fuzzy-match ("co", "abc", ...)
_MIN_FUZZY_NAME_LENGTH = 4

_PAGE_PATTERN = re.compile(r"[?&]page[=:](\d+)", re.IGNORECASE)


def _entity_pattern(profile: SiteProfile) -> re.Pattern:
    return re.compile(
        rf"{re.escape(profile.domain)}/{re.escape(profile.entity_path)}/([^/]+)"
    )


def normalize_url(url: Any, profile: SiteProfile = DEFAULT_PROFILE) -> Optional[str]:
    """Reduce a URL to the form used for identity comparison.

    Query string, fragment, protocol and a leading "www." are dropped and
    the result is lowercased. Detail-page URLs on the target domain collapse
    to ``domain/entity/<slug>`` so that every sub-page of an entity (about,
    jobs, ...) normalizes identically. Other URLs only lose trailing slashes.

    Args:
        url: URL to normalize
        profile: Target site URL scheme

    Returns:
        Canonical string, or None for empty / sentinel input
    """
    if not url or not isinstance(url, str) or url.strip() == NOT_FOUND:
        return None

    normalized = url.split("?")[0].split("#")[0].strip().lower()
    normalized = re.sub(r"^https?://", "", normalized)
    normalized = re.sub(r"^www\.", "", normalized)

    match = _entity_pattern(profile).search(normalized)
    if match:
        return f"{profile.domain}/{profile.entity_path}/{match.group(1)}"

    normalized = normalized.rstrip("/")
    return normalized or None


def extract_slug(url: Any, profile: SiteProfile = DEFAULT_PROFILE) -> Optional[str]:
    """Return the entity slug of a domain-scoped detail URL, else None."""
    normalized = normalize_url(url, profile)
    if not normalized:
        return None

    match = _entity_pattern(profile).search(normalized)
    return match.group(1) if match else None


def normalize_name(name: Any) -> Optional[str]:
    """Lowercase and trim a display name; sentinel and blank names give None."""
    if not name or not isinstance(name, str):
        return None
    normalized = name.strip().lower()
    if not normalized or normalized == NOT_FOUND.lower():
        return None
    return normalized


def strip_legal_suffix(name: str) -> str:
    """Drop a trailing legal-entity suffix ("inc", "llc", "corp." ...)."""
    return _LEGAL_SUFFIX_PATTERN.sub("", name).strip()


def is_on_domain(url: Optional[str], profile: SiteProfile = DEFAULT_PROFILE) -> bool:
    if not url:
        return False
    host = (urlparse(url).hostname or "").lower()
    return host == profile.domain or host.endswith("." + profile.domain)


def is_listing_url(url: Optional[str], profile: SiteProfile = DEFAULT_PROFILE) -> bool:
    """True when url is a search-results listing page of the target site."""
    if not is_on_domain(url, profile):
        return False
    path = urlparse(url).path
    return path.rstrip("/").startswith(profile.listing_path.rstrip("/"))


def detail_subpath_url(url: str, profile: SiteProfile = DEFAULT_PROFILE) -> str:
    """Build the URL of the detail sub-page that carries the structured fields.

    Args:
        url: Any URL of the entity (canonical, sub-page, with query string)
        profile: Target site URL scheme

    Returns:
        Absolute URL ending in ``/<detail_subpath>/``
    """
    slug = extract_slug(url, profile)
    if slug:
        return f"https://www.{profile.domain}/{profile.entity_path}/{slug}/{profile.detail_subpath}/"

    base = url.split("?")[0].split("#")[0]
    if f"/{profile.detail_subpath}/" in base:
        return base
    return base.rstrip("/") + f"/{profile.detail_subpath}/"


def page_number_from_url(url: Optional[str], default: Optional[int] = 1) -> Optional[int]:
    """Read the listing page number from a URL's ``page`` parameter.

    Returns:
        Positive page number, or default when the URL carries none
    """
    if not url or not isinstance(url, str):
        return default

    try:
        values = parse_qs(urlparse(url).query).get("page")
    except ValueError:
        values = None

    candidates = list(values or [])
    match = _PAGE_PATTERN.search(url)
    if match:
        candidates.append(match.group(1))

    for raw in candidates:
        try:
            page = int(raw)
        except (TypeError, ValueError):
            continue
        if page > 0:
            return page

    return default


def _get(obj: Any, field: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(field)
    return getattr(obj, field, None)


class DuplicateMatcher:
    """Decides whether a candidate record is already known.

    Matching precedence, first hit wins:
        1. exact normalized URL
        2. slug, when the existing record is domain-scoped
        3. exact normalized name
        4. name with legal suffix stripped, only for names longer than 3 chars

    Candidates and existing entries may be Records, ItemLinks or plain dicts
    with ``url`` / ``name`` keys.
    """

    def __init__(self, profile: SiteProfile = DEFAULT_PROFILE):
        self.profile = profile

    def find_match(self, candidate: Any, existing: Iterable[Any]) -> Optional[str]:
        """Return the rule that matched ("url", "slug", "name", "fuzzy_name") or None."""
        if candidate is None:
            return None

        existing = list(existing)
        if not existing:
            return None

        candidate_url = normalize_url(_get(candidate, "url"), self.profile)
        candidate_slug = extract_slug(_get(candidate, "url"), self.profile)
        candidate_name = normalize_name(_get(candidate, "name"))

        if candidate_url:
            for entry in existing:
                if normalize_url(_get(entry, "url"), self.profile) == candidate_url:
                    return "url"

        if candidate_slug:
            for entry in existing:
                if extract_slug(_get(entry, "url"), self.profile) == candidate_slug:
                    return "slug"

        if candidate_name:
            for entry in existing:
                if normalize_name(_get(entry, "name")) == candidate_name:
                    return "name"

            cleaned_candidate = strip_legal_suffix(candidate_name)
            if len(cleaned_candidate) >= _MIN_FUZZY_NAME_LENGTH:
                for entry in existing:
                    existing_name = normalize_name(_get(entry, "name"))
                    if existing_name and strip_legal_suffix(existing_name) == cleaned_candidate:
                        return "fuzzy_name"

        return None

    def is_duplicate(self, candidate: Any, existing: Iterable[Any]) -> bool:
        return self.find_match(candidate, existing) is not None


def is_duplicate(
    candidate: Any,
    existing: Iterable[Any],
    profile: SiteProfile = DEFAULT_PROFILE,
) -> bool:
    """Module-level shortcut for DuplicateMatcher(profile).is_duplicate()."""
    return DuplicateMatcher(profile).is_duplicate(candidate, existing)
