"""Capture the provider's own API responses for authoritative extraction.

Two capture modes:
- page_script (default): a script injected into the host page wraps
  window.fetch and XMLHttpRequest, and relays matching JSON bodies with
  window.postMessage({type, payload, matchedUrl}). A page-side listener
  filters on type and forwards to a function exposed by Playwright.
- network: Playwright's page.on("response") at the networking boundary,
  with no page patching.

Either way the payload lands in a CaptureSlot. The slot is armed (cleared)
immediately before each submission and only a wait with the current token
can read it, so a late response from an earlier submission is never
attributed to a later one.
"""

import asyncio
import json
import re
from typing import Any, Iterable, List, Optional

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response

from quote_automation.models import InterceptedResponse


PAGE_SCRIPT_MODE = "page_script"
NETWORK_MODE = "network"


# Idempotent per message type; never lets an error escape into the page
_INTERCEPTOR_TEMPLATE = r"""
(function (config) {
  const flag = '__quoteInterceptor_' + config.messageType;
  if (window[flag]) return;
  window[flag] = true;

  const patterns = config.patterns.map((p) => new RegExp(p));
  const matches = (url) => typeof url === 'string' && patterns.some((re) => re.test(url));
  const relay = (url, payload) => {
    window.postMessage({ type: config.messageType, payload: payload, matchedUrl: url }, '*');
  };

  window.addEventListener('message', (event) => {
    if (event.source !== window || !event.data || event.data.type !== config.messageType) return;
    const binding = window[config.binding];
    if (typeof binding === 'function') {
      Promise.resolve(binding(event.data)).catch(() => {});
    }
  });

  const originalFetch = window.fetch;
  if (typeof originalFetch === 'function') {
    window.fetch = function (...args) {
      return originalFetch.apply(this, args).then((response) => {
        try {
          const target = args[0];
          const url = (target && target.url) || String(target);
          if (matches(url)) {
            response.clone().json().then((data) => relay(url, data)).catch(() => {});
          }
        } catch (e) { /* never break the page */ }
        return response;
      });
    };
  }

  const originalOpen = XMLHttpRequest.prototype.open;
  const originalSend = XMLHttpRequest.prototype.send;
  XMLHttpRequest.prototype.open = function (method, url) {
    this.__quoteUrl = String(url);
    return originalOpen.apply(this, arguments);
  };
  XMLHttpRequest.prototype.send = function () {
    if (matches(this.__quoteUrl)) {
      this.addEventListener('load', function () {
        try {
          relay(this.__quoteUrl, JSON.parse(this.responseText));
        } catch (e) { /* not JSON */ }
      });
    }
    return originalSend.apply(this, arguments);
  };
})(__CONFIG__)
"""


def build_interceptor_script(patterns: Iterable[str], message_type: str, binding: str) -> str:
    """Render the page script for a set of URL regexes"""
    config = json.dumps({"patterns": list(patterns), "messageType": message_type, "binding": binding})
    return _INTERCEPTOR_TEMPLATE.replace("__CONFIG__", config)


class CaptureSlot:
    """Single-slot holder for the latest intercepted payload of one submission"""

    def __init__(self, name: str):
        self.name = name
        self._token = 0
        self._armed = False
        self._response: Optional[InterceptedResponse] = None
        self.stray_count = 0

    @property
    def is_empty(self) -> bool:
        return self._response is None

    @property
    def armed(self) -> bool:
        return self._armed

    def arm(self) -> int:
        """Clear the slot for a new submission and return its token"""
        self._token += 1
        self._armed = True
        self._response = None
        return self._token

    def disarm(self) -> None:
        self._armed = False
        self._response = None

    def offer(self, response: InterceptedResponse) -> bool:
        """Store a payload if a submission is waiting; otherwise drop it"""
        if not self._armed:
            self.stray_count += 1
            logger.debug(f"{self.name}: dropped stray response from {response.matched_url}")
            return False
        self._response = response
        logger.debug(f"{self.name}: captured response from {response.matched_url}")
        return True

    async def wait(self, token: int, timeout: float, poll_interval: float = 0.1) -> Optional[InterceptedResponse]:
        """
        Poll for the payload belonging to token.

        Returns None on timeout, or if the slot has been re-armed for a
        newer submission in the meantime. The slot is disarmed either way.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while token == self._token and self._armed:
            if self._response is not None:
                response = self._response
                self.disarm()
                return response
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))
        if token == self._token:
            self.disarm()
        return None


class ResponseInterceptor:
    """Installs response capture on one page for one provider"""

    def __init__(
        self,
        page: Page,
        patterns: List[str],
        message_type: str,
        mode: str = PAGE_SCRIPT_MODE,
    ):
        if mode not in (PAGE_SCRIPT_MODE, NETWORK_MODE):
            raise ValueError(f"Unknown capture mode: {mode}")
        self.page = page
        self.patterns = list(patterns)
        self.message_type = message_type
        self.mode = mode
        self.slot = CaptureSlot(message_type)
        self.installed = False
        self._regexes = [re.compile(p) for p in self.patterns]

    @property
    def binding_name(self) -> str:
        return f"__quoteCapture_{self.message_type}"

    def matches(self, url: str) -> bool:
        return any(regex.search(url or "") for regex in self._regexes)

    async def install(self) -> None:
        """Install once; later page loads keep the capture without reinstalling"""
        if self.installed:
            return

        if self.mode == NETWORK_MODE:
            self.page.on("response", self._on_response)
        else:
            script = build_interceptor_script(self.patterns, self.message_type, self.binding_name)
            await self.page.expose_function(self.binding_name, self._on_page_message)
            await self.page.add_init_script(script)
            try:
                await self.page.evaluate(script)
            except PlaywrightError as e:
                # Mid-navigation; the init script covers the next document
                logger.debug(f"{self.message_type}: deferred interceptor to next load ({e})")

        self.installed = True
        logger.info(f"{self.message_type}: response interceptor installed ({self.mode})")

    def _on_page_message(self, message: Any) -> None:
        if not isinstance(message, dict) or message.get("type") != self.message_type:
            return
        url = message.get("matchedUrl") or ""
        if not self.matches(url):
            return
        self.slot.offer(InterceptedResponse(
            payload=message.get("payload"),
            matched_url=url,
            message_type=self.message_type,
        ))

    async def _on_response(self, response: Response) -> None:
        if not self.matches(response.url):
            return
        if not self.slot.armed:
            self.slot.stray_count += 1
            return
        try:
            payload = await response.json()
        except (PlaywrightError, ValueError) as e:
            logger.debug(f"{self.message_type}: unreadable response body from {response.url}: {e}")
            return
        self.slot.offer(InterceptedResponse(
            payload=payload,
            matched_url=response.url,
            message_type=self.message_type,
        ))
