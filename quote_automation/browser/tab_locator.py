"""Find the open tab a provider's driver can work in.

Tabs are re-discovered for every operation: the operator may close,
reload or re-login a tab at any point, so no handle is kept between calls.
"""

from dataclasses import dataclass
from typing import List

from loguru import logger
from playwright.async_api import Page

from quote_automation.errors import TabNotFoundError
from quote_automation.providers.base import BaseProvider

from .messaging import DriverChannel
from .session import BrowserSession


@dataclass
class ProviderSession:
    """A located, ready tab for one provider"""
    provider: BaseProvider
    page: Page

    @property
    def url(self) -> str:
        return self.page.url


class TabLocator:
    """Probes candidate tabs and returns the first whose driver answers ready"""

    def __init__(self, browser: BrowserSession, probe_timeout: float = 2.0):
        self.browser = browser
        self.probe_timeout = probe_timeout

    def candidates(self, provider: BaseProvider) -> List[Page]:
        return [page for page in self.browser.pages() if provider.matches_url(page.url)]

    async def locate(self, provider: BaseProvider) -> ProviderSession:
        """
        Return the first matching tab that answers the readiness probe.

        Unresponsive, closing or not-yet-ready tabs are skipped without error.

        Raises:
            TabNotFoundError: no candidate answered ready
        """
        candidates = self.candidates(provider)
        logger.debug(f"{provider.name}: {len(candidates)} candidate tab(s)")

        channel = DriverChannel(provider)
        for page in candidates:
            if await channel.probe(page, self.probe_timeout):
                logger.debug(f"{provider.name}: using tab {page.url}")
                return ProviderSession(provider=provider, page=page)

        raise TabNotFoundError(provider.name, provider.new_quote_url)
