"""DOM helpers shared by the provider drivers.

This module provides CORE (provider-agnostic) capabilities:
- Bounded waits driven by a MutationObserver inside the page
- Applying values through the native input -> change -> blur event sequence
- Option lookup for server-rendered <select> cascades
- Named stabilisation delays

Provider-specific selectors live in the provider modules
(e.g., quote_automation/providers/lex_provider.py).
"""

import asyncio
from typing import List, Optional

from loguru import logger
from playwright.async_api import Locator, Page


class WaitTimeout(Exception):
    """A bounded DOM wait expired before its condition held"""


# =============================================================================
# IN-PAGE SCRIPTS
# =============================================================================

# Resolves true as soon as the named condition holds, false when the timeout
# expires. Conditions are fixed here so nothing is eval'd inside the page.
_WAIT_FOR_CONDITION_JS = """
([condition, selector, timeoutMs]) => new Promise((resolve, reject) => {
  const isVisible = (el) => !!el
    && !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length)
    && getComputedStyle(el).visibility !== 'hidden';
  const checks = {
    optionsLoaded: () => {
      const el = document.querySelector(selector);
      return !!el && !!el.options && el.options.length > 1 && !el.disabled
        && (el.options[0].text || '').trim().toLowerCase() !== 'loading...';
    },
    visible: () => isVisible(document.querySelector(selector)),
    hidden: () => !isVisible(document.querySelector(selector)),
    enabled: () => {
      const el = document.querySelector(selector);
      return isVisible(el) && !el.disabled && el.getAttribute('aria-disabled') !== 'true';
    },
    anyVisible: () => selector.split('||').some((s) => isVisible(document.querySelector(s))),
  };
  const check = checks[condition];
  if (!check) {
    reject(new Error('Unknown wait condition: ' + condition));
    return;
  }
  if (check()) {
    resolve(true);
    return;
  }
  let timer = null;
  const observer = new MutationObserver(() => {
    if (check()) {
      observer.disconnect();
      clearTimeout(timer);
      resolve(true);
    }
  });
  observer.observe(document.documentElement, {
    childList: true, subtree: true, attributes: true, characterData: true,
  });
  timer = setTimeout(() => {
    observer.disconnect();
    resolve(check());
  }, timeoutMs);
})
"""

# Same contract as above, scoped to one element found by Playwright
_WAIT_FOR_ENABLED_JS = """
(el, timeoutMs) => new Promise((resolve) => {
  const check = () => !el.disabled && el.getAttribute('aria-disabled') !== 'true';
  if (check()) {
    resolve(true);
    return;
  }
  let timer = null;
  const observer = new MutationObserver(() => {
    if (check()) {
      observer.disconnect();
      clearTimeout(timer);
      resolve(true);
    }
  });
  observer.observe(el, { attributes: true });
  timer = setTimeout(() => {
    observer.disconnect();
    resolve(check());
  }, timeoutMs);
})
"""

_APPLY_VALUE_JS = """
(el, value) => {
  if (el.tagName === 'SELECT') {
    if (!Array.from(el.options).some((o) => o.value === value)) return false;
  } else {
    el.value = '';
    el.dispatchEvent(new Event('input', { bubbles: true }));
  }
  el.focus();
  el.value = value;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  el.dispatchEvent(new Event('blur', { bubbles: true }));
  return true;
}
"""

# Exact text, then prefix, then substring (case-insensitive)
_FIND_OPTION_BY_TEXT_JS = """
(el, searchText) => {
  const options = Array.from(el.options);
  const needle = searchText.toLowerCase();
  const text = (o) => (o.text || '').trim().toLowerCase();
  const match = options.find((o) => text(o) === needle)
    || options.find((o) => text(o).startsWith(needle))
    || options.find((o) => text(o).includes(needle));
  return match ? match.value : null;
}
"""

_SELECTED_OPTION_TEXT_JS = """
(el) => {
  const option = el.options[el.selectedIndex];
  return option ? option.text : null;
}
"""


# =============================================================================
# WAITS
# =============================================================================

async def wait_for_condition(page: Page, condition: str, selector: str, timeout: float) -> None:
    """
    Wait for a named DOM condition using a MutationObserver in the page.

    Args:
        page: Playwright page object
        condition: optionsLoaded | visible | hidden | enabled | anyVisible
        selector: CSS selector (anyVisible takes several joined with '||')
        timeout: Seconds before giving up

    Raises:
        WaitTimeout: if the condition still does not hold at the deadline
    """
    held = await page.evaluate(_WAIT_FOR_CONDITION_JS, [condition, selector, int(timeout * 1000)])
    if not held:
        raise WaitTimeout(f"'{condition}' not met for {selector} after {timeout:.1f}s")


async def wait_for_element(page: Page, selector: str, timeout: float, state: str = "visible") -> Locator:
    """Wait for the first element matching selector to reach state and return it"""
    locator = page.locator(selector).first
    await locator.wait_for(state=state, timeout=timeout * 1000)
    return locator


async def wait_for_text(page: Page, text: str, tag: str, timeout: float) -> Locator:
    """
    Wait for an element of the given tag whose visible text contains text.

    The tag must be specific (button, mat-option, ...); a wildcard would
    match <body> first.
    """
    locator = page.locator(tag).filter(has_text=text).first
    await locator.wait_for(state="visible", timeout=timeout * 1000)
    return locator


async def wait_for_options_loaded(page: Page, selector: str, timeout: float) -> Locator:
    """Wait until a <select> holds real options and is no longer disabled/loading"""
    await wait_for_condition(page, "optionsLoaded", selector, timeout)
    return page.locator(selector).first


async def wait_for_any_visible(page: Page, selectors: List[str], timeout: float) -> str:
    """Wait until one of several selectors is visible and return the one that is"""
    await wait_for_condition(page, "anyVisible", "||".join(selectors), timeout)
    for selector in selectors:
        if await is_visible(page, selector):
            return selector
    raise WaitTimeout(f"None of {selectors} stayed visible")


async def wait_for_enabled(locator: Locator, timeout: float) -> Locator:
    """Wait until a visible control is no longer disabled (native or aria)"""
    await locator.wait_for(state="visible", timeout=timeout * 1000)
    if not await locator.evaluate(_WAIT_FOR_ENABLED_JS, int(timeout * 1000)):
        raise WaitTimeout(f"Control still disabled after {timeout:.1f}s")
    return locator


async def is_visible(page: Page, selector: str) -> bool:
    locator = page.locator(selector)
    if await locator.count() == 0:
        return False
    return await locator.first.is_visible()


async def settle(seconds: float, reason: str) -> None:
    """Fixed stabilisation delay where the page gives no readiness signal"""
    if seconds <= 0:
        return
    logger.debug(f"Settling {seconds:.2f}s: {reason}")
    await asyncio.sleep(seconds)


# =============================================================================
# INPUT
# =============================================================================

async def apply_value(locator: Locator, value: str) -> None:
    """
    Set an input or select value and fire input, change and blur in order.

    Raises:
        ValueError: if a <select> has no option with that value
    """
    applied = await locator.evaluate(_APPLY_VALUE_JS, str(value))
    if not applied:
        raise ValueError(f"Option '{value}' is not available")


async def resolve_option_value(locator: Locator, code: str) -> Optional[str]:
    """
    Map a code or a display name to an option value of a <select>.

    Codes are tried as option values first; anything else is matched on the
    option text.
    """
    values = await locator.evaluate("(el) => Array.from(el.options).map((o) => o.value)")
    if code in values:
        return code
    return await locator.evaluate(_FIND_OPTION_BY_TEXT_JS, code)


async def selected_option_text(locator: Locator) -> Optional[str]:
    return await locator.evaluate(_SELECTED_OPTION_TEXT_JS)


async def click_element(locator: Locator, timeout: float) -> None:
    await locator.scroll_into_view_if_needed(timeout=timeout * 1000)
    await locator.click(timeout=timeout * 1000)


async def ensure_checked(locator: Locator, timeout: float) -> bool:
    """Tick a checkbox if it is not already ticked. Returns True if clicked."""
    if await locator.is_checked():
        return False
    await click_element(locator, timeout)
    return True


async def page_text(page: Page) -> str:
    return await page.inner_text("body")
