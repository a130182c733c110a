"""Base provider abstraction - one driver per portal UI paradigm

A provider answers controller messages for tabs showing its portal. It
drives the DOM through a linear sequence of named steps, reads the
provider's own API response when the interceptor captured one, and falls
back to the rendered page text otherwise. Providers never navigate: only
the controller changes which page a tab shows.
"""

import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from weakref import WeakKeyDictionary

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Dialog, Locator, Page
from pydantic import ValidationError

from quote_automation.browser.dom import WaitTimeout, click_element, page_text
from quote_automation.browser.interceptor import PAGE_SCRIPT_MODE, ResponseInterceptor
from quote_automation.browser.messaging import CHECK_PAGE_READY, RUN_QUOTE, TEST_LOAD_VEHICLE
from quote_automation.config import Timings
from quote_automation.errors import AutomationError, ExtractionAmbiguousError, QuoteAutomationError
from quote_automation.models import ExtractionResult, WorkItem


def _first_line(error: Exception) -> str:
    text = str(error).strip()
    return text.splitlines()[0] if text else error.__class__.__name__


class BaseProvider(ABC):
    """Abstract base class for quote portal drivers"""

    provider_id: str = ""
    url_pattern: str = ""
    new_quote_url: str = ""
    intercept_patterns: List[str] = []
    message_type: str = ""
    # Accept native alert/confirm popups instead of Playwright's default dismiss
    accept_dialogs: bool = False

    def __init__(self, name: str, timings: Optional[Timings] = None, capture_mode: str = PAGE_SCRIPT_MODE):
        """
        Initialize provider

        Args:
            name: Provider display name used in logs
            timings: Timeouts and stabilisation delays
            capture_mode: page_script or network response capture
        """
        self.name = name
        self.timings = timings or Timings()
        self.capture_mode = capture_mode
        self._interceptors: "WeakKeyDictionary[Page, ResponseInterceptor]" = WeakKeyDictionary()
        logger.info(f"Initialized {name} provider")

    # -------------------------------------------------------------------------
    # Provider-specific behaviour
    # -------------------------------------------------------------------------

    @abstractmethod
    async def is_page_ready(self, page: Page) -> bool:
        """True when the page can accept a new quote"""

    @abstractmethod
    async def run_quote(self, page: Page, item: WorkItem) -> ExtractionResult:
        """Drive the form for one work item and return the extracted quote"""

    @abstractmethod
    def parse_intercepted(self, payload: Any) -> ExtractionResult:
        """Build a result from the provider's own API response"""

    @abstractmethod
    def parse_page_text(self, text: str) -> ExtractionResult:
        """Best-effort result from rendered page text"""

    async def test_load_vehicle(self, page: Page, item: WorkItem) -> Dict[str, Any]:
        """Select only the vehicle identity and report what the page shows"""
        raise AutomationError(f"{self.name} does not support partial loads", step="test_load_vehicle")

    # -------------------------------------------------------------------------
    # Message handling
    # -------------------------------------------------------------------------

    @classmethod
    def matches_url(cls, url: str) -> bool:
        return bool(url) and bool(cls.url_pattern) and re.search(cls.url_pattern, url) is not None

    async def handle_message(self, page: Page, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Answer one controller message.

        Driver failures come back as {"error", "step"}; Playwright errors that
        mean the tab went away propagate so the channel can report them as
        delivery failures.
        """
        action = message.get("action")
        data = message.get("data") or {}

        try:
            if action == CHECK_PAGE_READY:
                await self.interceptor_for(page)
                return {"ready": await self.is_page_ready(page), "url": page.url, "provider": self.provider_id}

            if action == RUN_QUOTE:
                item = WorkItem.model_validate(data)
                logger.info(f"{self.name}: starting quote for {item.label}")
                result = await self.run_quote(page, item)
                logger.success(f"{self.name}: quote complete for {item.vehicle_id}: {result.to_payload()}")
                return {"success": True, **result.to_payload()}

            if action == TEST_LOAD_VEHICLE:
                item = WorkItem.model_validate(data)
                return {"success": True, **(await self.test_load_vehicle(page, item))}

        except AutomationError as e:
            logger.error(f"{self.name}: automation failed: {e}")
            return {"error": str(e), "step": e.step}
        except QuoteAutomationError as e:
            logger.error(f"{self.name}: {e}")
            return {"error": str(e), "step": None}
        except ValidationError as e:
            return {"error": f"Invalid work item: {_first_line(e)}", "step": None}

        return {"error": f"Unsupported action: {action}", "step": None}

    # -------------------------------------------------------------------------
    # Shared step machinery
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def step(self, name: str) -> AsyncIterator[None]:
        """Run one named step; any failure inside becomes AutomationError(step=name)"""
        logger.debug(f"{self.name}: step {name}")
        try:
            yield
        except AutomationError as e:
            if e.step is None:
                e.step = name
            raise
        except (WaitTimeout, PlaywrightError, ValueError, LookupError) as e:
            raise AutomationError(_first_line(e), step=name) from e

    async def interceptor_for(self, page: Page) -> ResponseInterceptor:
        """The page's interceptor, installed on first use"""
        interceptor = self._interceptors.get(page)
        if interceptor is None:
            interceptor = ResponseInterceptor(page, self.intercept_patterns, self.message_type, self.capture_mode)
            self._interceptors[page] = interceptor
            if self.accept_dialogs:
                page.on("dialog", self._accept_dialog)
        await interceptor.install()
        return interceptor

    async def _accept_dialog(self, dialog: Dialog) -> None:
        logger.info(f"{self.name}: accepting {dialog.type} dialog: {dialog.message}")
        try:
            await dialog.accept()
        except PlaywrightError as e:
            logger.debug(f"{self.name}: dialog already closed: {e}")

    async def submit(self, page: Page, button: Locator) -> int:
        """Clear the capture slot, then click a submitting control. Returns the slot token."""
        interceptor = await self.interceptor_for(page)
        token = interceptor.slot.arm()
        await click_element(button, self.timings.element_timeout)
        return token

    async def extract_result(self, page: Page, token: int) -> ExtractionResult:
        """
        Prefer the intercepted response for this submission; fall back to the
        page text when none arrived in time.

        Raises:
            ExtractionAmbiguousError: neither source yielded a quote id or rental
        """
        interceptor = await self.interceptor_for(page)
        response = await interceptor.slot.wait(
            token, self.timings.extraction_timeout, self.timings.extraction_poll_interval
        )
        if response is not None:
            try:
                result = self.parse_intercepted(response.payload)
                if result.has_quote():
                    return result
                logger.warning(f"{self.name}: intercepted response had no quote figures")
            except (LookupError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"{self.name}: could not parse intercepted response: {e}")

        logger.warning(f"{self.name}: no usable API response, falling back to page text")
        result = self.parse_page_text(await page_text(page))
        if not result.has_quote():
            raise ExtractionAmbiguousError(f"{self.name}: no quote id or monthly rental found on the page")
        return result
