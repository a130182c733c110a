"""Controller <-> driver message exchange.

Requests are {"action", "data"}; answers are a result dict or
{"error": str, "step": str|None}. Every exchange is bounded by a timeout and
payloads are copied through JSON, so the two sides never share objects.
A message that gets no answer is reported, never retried here: the caller
decides whether silence means "not ready" or "step failed".
"""

import asyncio
import json
from typing import Any, Dict, Optional, TYPE_CHECKING

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from quote_automation.errors import MessageDeliveryFailed, MessageTimeout

if TYPE_CHECKING:
    from quote_automation.providers.base import BaseProvider


CHECK_PAGE_READY = "check_page_ready"
RUN_QUOTE = "run_quote"
TEST_LOAD_VEHICLE = "test_load_vehicle"


def _copy(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class DriverChannel:
    """Sends messages to one provider's driver for a given tab"""

    def __init__(self, provider: "BaseProvider"):
        self.provider = provider

    async def send(
        self,
        page: Page,
        action: str,
        data: Optional[Dict[str, Any]] = None,
        timeout: float = 2.0,
    ) -> Dict[str, Any]:
        """
        Deliver one message and wait for the answer.

        Raises:
            MessageTimeout: no answer within timeout
            MessageDeliveryFailed: the tab is gone or navigated mid-exchange
        """
        if page.is_closed():
            raise MessageDeliveryFailed(f"Tab closed before '{action}' could be delivered")

        message = _copy({"action": action, "data": data or {}})
        try:
            answer = await asyncio.wait_for(self.provider.handle_message(page, message), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"{self.provider.name}: '{action}' timed out after {timeout:.1f}s")
            raise MessageTimeout(action, timeout)
        except PlaywrightError as e:
            raise MessageDeliveryFailed(f"'{action}' could not be delivered: {e}") from e
        return _copy(answer)

    async def probe(self, page: Page, timeout: float) -> bool:
        """True if the driver on this tab answers ready; any failure is False"""
        try:
            answer = await self.send(page, CHECK_PAGE_READY, timeout=timeout)
        except (MessageTimeout, MessageDeliveryFailed) as e:
            logger.debug(f"{self.provider.name}: probe of {page.url} failed: {e}")
            return False
        return bool(answer.get("ready")) and not answer.get("error")
