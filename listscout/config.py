"""Application configuration via Pydantic Settings."""

from dataclasses import dataclass

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class SiteProfile:
    """URL scheme of the target site.

    Detail pages live at ``<domain>/<entity_path>/<slug>`` and the paginated
    search listing lives under ``listing_path``.
    """

    domain: str = "linkedin.com"
    entity_path: str = "company"
    listing_path: str = "/search/results/companies"
    detail_subpath: str = "about"


class Settings(BaseSettings):
    """Global application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Storage
    DATABASE_URL: str = "sqlite+aiosqlite:///./listscout.db"

    @model_validator(mode="after")
    def fix_database_url(self) -> "Settings":
        """Plain sqlite:// URLs need the aiosqlite driver for the async engine."""
        url = self.DATABASE_URL
        if url.startswith("sqlite://"):
            self.DATABASE_URL = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self

    @model_validator(mode="after")
    def check_delay_range(self) -> "Settings":
        if self.MIN_DELAY_MS > self.MAX_DELAY_MS:
            raise ValueError("MIN_DELAY_MS must not exceed MAX_DELAY_MS")
        return self

    # App
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Rate limiting (milliseconds)
    MIN_DELAY_MS: int = 5000
    MAX_DELAY_MS: int = 10000
    MIN_DELAY_FLOOR_MS: int = 2000

    # Run budget
    DEFAULT_MAX_PAGES: int = 5
    MAX_PAGES_LIMIT: int = 20

    # Per-step timeouts (milliseconds); all of them degrade to "continue"
    NAVIGATION_TIMEOUT_MS: int = 20000
    CONTENT_READY_TIMEOUT_MS: int = 10000
    TAB_LOAD_TIMEOUT_MS: int = 30000
    SETTLE_DELAY_MS: int = 2000

    # Transient page messaging retries
    MESSAGE_RETRY_ATTEMPTS: int = 3
    MESSAGE_RETRY_BACKOFF_MS: int = 1000

    # Browser
    HEADLESS: bool = True
    STORAGE_STATE_PATH: str = "session/storage_state.json"

    # Target site
    TARGET_DOMAIN: str = "linkedin.com"
    ENTITY_PATH: str = "company"
    LISTING_PATH: str = "/search/results/companies"
    DETAIL_SUBPATH: str = "about"

    def site_profile(self) -> SiteProfile:
        """Build the SiteProfile described by the TARGET_* settings.

        Returns:
            SiteProfile used by the duplicate matcher and site adapters
        """
        return SiteProfile(
            domain=self.TARGET_DOMAIN.lower(),
            entity_path=self.ENTITY_PATH.strip("/"),
            listing_path=self.LISTING_PATH,
            detail_subpath=self.DETAIL_SUBPATH.strip("/"),
        )


settings = Settings()
