"""Attach to the operator's browser.

The portals need a logged-in human session, so the normal mode is to
connect over CDP to a Chrome the operator started with
--remote-debugging-port and already authenticated in. A persistent
profile launch is the alternative for a dedicated automation profile.
"""

import os
from typing import List, Optional, Union

from loguru import logger
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright


class BrowserSession:
    """Owns the Playwright connection and exposes every open tab"""

    def __init__(self):
        self._playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        # Only close what this session launched; never the operator's browser
        self._owns_browser = False

    @classmethod
    def attach(cls, target: Union[Browser, BrowserContext]) -> "BrowserSession":
        """Wrap an already-open Browser or BrowserContext"""
        session = cls()
        if isinstance(target, BrowserContext):
            session.context = target
        else:
            session.browser = target
        return session

    async def start(
        self,
        cdp_url: Optional[str] = None,
        user_data_dir: Optional[str] = None,
        headless: Optional[bool] = None,
    ):
        """
        Start Playwright and attach to a browser.

        Args:
            cdp_url: DevTools endpoint of a running Chrome (preferred)
            user_data_dir: Persistent profile to launch when no cdp_url is given
            headless: Override headless mode for a launched profile. If None,
                reads from HEADLESS env var (default: False)
        """
        if headless is None:
            headless = os.getenv("HEADLESS", "false").lower() in ("true", "1", "yes")

        self._playwright = await async_playwright().start()

        if cdp_url:
            logger.info(f"Connecting to browser over CDP at {cdp_url}")
            self.browser = await self._playwright.chromium.connect_over_cdp(cdp_url)
            logger.info(f"Attached to browser with {len(self.pages())} open tab(s)")

        elif user_data_dir:
            os.makedirs(user_data_dir, exist_ok=True)
            logger.info(f"Launching persistent browser with profile: {user_data_dir}")
            # A persistent context is both the browser and its only context
            self.context = await self._playwright.chromium.launch_persistent_context(
                user_data_dir=user_data_dir,
                headless=headless,
                viewport={"width": 1280, "height": 800},
                args=["--disable-blink-features=AutomationControlled"],
            )
            self._owns_browser = True
            mode = "headless" if headless else "headed"
            logger.info(f"Browser started in {mode} mode (profile: {os.path.basename(user_data_dir)})")

        else:
            await self._playwright.stop()
            self._playwright = None
            raise ValueError("Either a CDP URL or a user data directory is required")

    def pages(self) -> List[Page]:
        """Every open tab across every context, in browser order"""
        contexts = self.browser.contexts if self.browser else []
        if self.context and self.context not in contexts:
            contexts = [*contexts, self.context]
        return [page for context in contexts for page in context.pages if not page.is_closed()]

    async def close(self):
        """Detach, closing only what this session launched"""
        try:
            if self._owns_browser and self.context:
                await self.context.close()

            if self._playwright:
                await self._playwright.stop()

            logger.info("Browser session closed")
        except Exception as e:
            logger.debug(f"Error closing browser session: {e}")
        finally:
            self.context = None
            self.browser = None
            self._playwright = None

    async def __aenter__(self) -> "BrowserSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
