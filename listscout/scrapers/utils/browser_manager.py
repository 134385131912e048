"""Playwright browser lifecycle manager.

Owns one browser and one authenticated context. The context is created from
a saved storage state (cookies + local storage) so runs reuse the session
established by ``listscout login``.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright

from listscout.config import settings

logger = structlog.get_logger(__name__)


class BrowserManager:
    """Manages the Playwright browser and its single session context.

    - Loads the storage state file when it exists
    - Optionally blocks images and fonts for faster page loads
    - Saves the storage state back on request (used by the login flow)
    """

    def __init__(
        self,
        headless: bool = True,
        storage_state_path: Optional[str] = None,
        block_resources: bool = True,
    ):
        self._headless = headless
        self._storage_state_path = Path(storage_state_path) if storage_state_path else None
        self._block_resources = block_resources
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._lock = asyncio.Lock()

    @property
    def has_saved_session(self) -> bool:
        return bool(self._storage_state_path and self._storage_state_path.exists())

    async def start(self) -> None:
        """Launch the browser. Safe to call more than once."""
        async with self._lock:
            if self._browser:
                return
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                args=["--disable-dev-shm-usage"],
            )
            logger.info("browser_started", headless=self._headless)

    async def stop(self) -> None:
        """Close the context and the browser."""
        async with self._lock:
            if self._context:
                try:
                    await self._context.close()
                except Exception as e:
                    logger.debug("browser_context_close_failed", error=str(e))
                self._context = None

            if self._browser:
                await self._browser.close()
                self._browser = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
            logger.info("browser_stopped")

    async def get_context(self) -> BrowserContext:
        """Get or create the session context."""
        if self._context:
            return self._context

        if not self._browser:
            await self.start()

        storage_state = str(self._storage_state_path) if self.has_saved_session else None
        context = await self._browser.new_context(
            viewport={"width": 1440, "height": 900},
            storage_state=storage_state,
        )

        if self._block_resources:
            await context.route(
                "**/*.{png,jpg,jpeg,gif,svg,woff,woff2,ttf,eot}",
                lambda route: route.abort(),
            )

        self._context = context
        logger.info("browser_context_created", has_session=storage_state is not None)
        return context

    async def new_page(self) -> Page:
        """Convenience: get the context and open a new page."""
        ctx = await self.get_context()
        return await ctx.new_page()

    async def save_session(self) -> Path:
        """Write the context's cookies and local storage to the storage state file.

        Returns:
            Path of the written file
        """
        if not self._storage_state_path:
            raise ValueError("No storage state path configured")
        context = await self.get_context()
        self._storage_state_path.parent.mkdir(parents=True, exist_ok=True)
        await context.storage_state(path=str(self._storage_state_path))
        logger.info("session_saved", path=str(self._storage_state_path))
        return self._storage_state_path

    @classmethod
    def from_settings(
        cls, headless: Optional[bool] = None, block_resources: bool = True
    ) -> "BrowserManager":
        return cls(
            headless=settings.HEADLESS if headless is None else headless,
            storage_state_path=settings.STORAGE_STATE_PATH,
            block_resources=block_resources,
        )
