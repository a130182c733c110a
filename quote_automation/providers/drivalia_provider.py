"""Drivalia provider implementation.

This module contains ALL Drivalia-specific code:
- Angular Material selectors and button labels for the quoting SPA
- Contract type -> product name patterns
- Parsing of the /application/ save response

The portal is a single-page app: nothing posts back, panels and dialogs
animate in and out, and bound inputs only register values that arrive
through input/change/blur events.
"""

import math
import re
from typing import Any, Dict, Optional

from loguru import logger
from playwright.async_api import Page

from quote_automation.browser.dom import (
    apply_value,
    click_element,
    settle,
    wait_for_element,
    wait_for_enabled,
    wait_for_text,
)
from quote_automation.browser.interceptor import PAGE_SCRIPT_MODE
from quote_automation.config import Settings
from quote_automation.errors import AutomationError
from quote_automation.models import ExtractionResult, WorkItem

from .base import BaseProvider


# =============================================================================
# DRIVALIA-SPECIFIC CONFIGURATION
# =============================================================================

DRIVALIA_NEW_QUOTE_URL = "https://www.caafgenus3.co.uk/WebApp/fmoportal/index.html#/quoting/new"
DRIVALIA_URL_PATTERN = r"^https://www\.caafgenus3\.co\.uk/WebApp/fmoportal/"
DRIVALIA_READY_FRAGMENT = "/quoting/new"
DRIVALIA_INTERCEPT_PATTERNS = [r"/application/"]
DRIVALIA_MESSAGE_TYPE = "DRIVALIA_QUOTE_RESPONSE"

DRIVALIA_SELECTORS = {
    "panel_header": "mat-expansion-panel-header, .mat-expansion-panel-header",
    "customer_type": (
        '[aria-label="Customer Type"], select[ng-model*="customerType"], '
        'mat-select[formcontrolname*="customer"], select[name*="customer"]'
    ),
    "customer_type_option": "mat-option",
    "company_name": (
        '[aria-label="Company Name"], input[placeholder*="Company"], '
        'input[formcontrolname*="company"], input[name*="company"]'
    ),
    "vehicle_search": '[aria-label="Search a Vehicle"], input[placeholder*="Search"]',
    "search_result": "mat-nav-list mat-list-item, .mat-list-item",
    "product_option": "mat-list-option, .mat-list-option",
    "term": '[aria-label*="Term"]',
    "mileage": '[aria-label*="Annual Mileage"]',
    "button": "button",
}

DRIVALIA_BUTTONS = {
    "choose_vehicle": "Choose a Vehicle",
    "use_vehicle": "Use this vehicle",
    "select_product": "Select a Product",
    "use_product": "Use this Product",
    "recalculate": "Recalculate",
    "save_quote": "Save Quote",
}

DRIVALIA_CUSTOMER_PANEL_TEXT = re.compile("customer", re.IGNORECASE)
DRIVALIA_CORPORATE_VALUE = "string:C"
DRIVALIA_CORPORATE_LABEL = "Corporate"

DRIVALIA_PRODUCT_PATTERNS = {
    "BCH": "BROKER BCH",
    "BCHNM": "BROKER BCH",
    "PCH": "BROKER PCH",
    "CH": "BCH",
}
DRIVALIA_DEFAULT_PRODUCT = "BROKER BCH"

DRIVALIA_MONTHLY_PATTERNS = [
    re.compile(r"Monthly[^£\d]*£?([\d,]+\.?\d*)", re.IGNORECASE),
    re.compile(r"Rental[^£\d]*£?([\d,]+\.?\d*)", re.IGNORECASE),
]


def get_drivalia_provider_config() -> Dict[str, Any]:
    """
    Get Drivalia provider configuration for the CLI and diagnostics.

    Returns:
        Dict with URLs, selectors, button labels and product patterns
    """
    return {
        "name": "Drivalia",
        "new_quote_url": DRIVALIA_NEW_QUOTE_URL,
        "url_pattern": DRIVALIA_URL_PATTERN,
        "intercept_patterns": DRIVALIA_INTERCEPT_PATTERNS,
        "selectors": DRIVALIA_SELECTORS,
        "buttons": DRIVALIA_BUTTONS,
        "product_patterns": DRIVALIA_PRODUCT_PATTERNS,
    }


def drivalia_product_name(contract_type: Optional[str]) -> str:
    """Product list label for a contract type; unknown types get Broker BCH"""
    return DRIVALIA_PRODUCT_PATTERNS.get((contract_type or "").strip().upper(), DRIVALIA_DEFAULT_PRODUCT)


def mileage_in_thousands(mileage: int) -> int:
    """The calculator takes annual mileage in thousands, rounded half up"""
    return int(math.floor(mileage / 1000 + 0.5))


# =============================================================================
# EXTRACTION
# =============================================================================

def parse_drivalia_application(payload: Dict[str, Any]) -> ExtractionResult:
    """
    Build a result from the saved application JSON.

    cashFlow line 0 is the initial payment; line 1 is the regular
    instalment, ex VAT in `instalment` and inc VAT in `totalPayment`.
    """
    assets = payload.get("assets") or [{}]
    asset = (assets[0] or {}).get("asset") or {}
    items = (asset.get("data") or {}).get("items") or [{}]
    lines = ((payload.get("finance") or {}).get("cashFlow") or {}).get("lines") or []
    initial = lines[0] if len(lines) > 0 else {}
    regular = lines[1] if len(lines) > 1 else {}

    cap_code = (asset.get("catalogXref") or {}).get("catalogXrefCode") or items[0].get("catalogXrefCode")

    return ExtractionResult(
        quote_id=payload.get("applicationId"),
        cap_code=cap_code or None,
        monthly_rental=regular.get("instalment") or None,
        monthly_rental_inc_vat=regular.get("totalPayment") or regular.get("instalment") or None,
        initial_rental=initial.get("totalPayment") or None,
        list_price=asset.get("catalogValue") or items[0].get("catalogValue") or None,
        source="intercepted",
    )


def parse_drivalia_page_text(text: str) -> ExtractionResult:
    """Monthly rental scraped from the rendered calculator; there is no quote number on the page"""
    for pattern in DRIVALIA_MONTHLY_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return ExtractionResult(monthly_rental=float(match.group(1).replace(",", "")), source="dom")
    return ExtractionResult(source="dom")


# =============================================================================
# DRIVALIA DRIVER
# =============================================================================

class DrivaliaProvider(BaseProvider):
    """Driver for the Drivalia (CAAF) Angular quoting portal"""

    provider_id = "drivalia"
    url_pattern = DRIVALIA_URL_PATTERN
    new_quote_url = DRIVALIA_NEW_QUOTE_URL
    intercept_patterns = DRIVALIA_INTERCEPT_PATTERNS
    message_type = DRIVALIA_MESSAGE_TYPE

    def __init__(self, settings: Optional[Settings] = None, capture_mode: str = PAGE_SCRIPT_MODE):
        settings = settings or Settings()
        super().__init__("Drivalia", settings.timings, capture_mode)
        self.company_name = settings.drivalia_company_name

    async def is_page_ready(self, page: Page) -> bool:
        return DRIVALIA_READY_FRAGMENT in page.url.partition("#")[2]

    def parse_intercepted(self, payload: Any) -> ExtractionResult:
        return parse_drivalia_application(payload)

    def parse_page_text(self, text: str) -> ExtractionResult:
        return parse_drivalia_page_text(text)

    async def _click_button(self, page: Page, label: str) -> None:
        button = await wait_for_text(page, label, DRIVALIA_SELECTORS["button"], self.timings.element_timeout)
        await click_element(button, self.timings.element_timeout)

    async def run_quote(self, page: Page, item: WorkItem) -> ExtractionResult:
        t = self.timings
        cap_code = item.selection_codes.cap_code

        async with self.step("verify_page"):
            if not await self.is_page_ready(page):
                raise AutomationError(f"Not on the new quote page ({page.url})")
            if not cap_code:
                raise ValueError("No CAP code for this item")

        async with self.step("expand_customer_panel"):
            header = page.locator(DRIVALIA_SELECTORS["panel_header"]).filter(has_text=DRIVALIA_CUSTOMER_PANEL_TEXT)
            if await header.count() == 0:
                logger.debug("Drivalia: no customer panel header, assuming the form is already open")
            elif await header.first.get_attribute("aria-expanded") != "true":
                await click_element(header.first, t.element_timeout)
                await settle(t.settle_after_panel, "customer panel expanding")

        async with self.step("set_customer_type"):
            control = await wait_for_element(page, DRIVALIA_SELECTORS["customer_type"], t.calculation_timeout)
            if await control.evaluate("(el) => el.tagName") == "SELECT":
                await apply_value(control, DRIVALIA_CORPORATE_VALUE)
            else:
                await click_element(control, t.element_timeout)
                option = await wait_for_text(
                    page, DRIVALIA_CORPORATE_LABEL, DRIVALIA_SELECTORS["customer_type_option"], t.element_timeout
                )
                await click_element(option, t.element_timeout)

        async with self.step("set_company_name"):
            company = await wait_for_element(page, DRIVALIA_SELECTORS["company_name"], t.element_timeout)
            await apply_value(company, self.company_name)

        async with self.step("open_vehicle_search"):
            await self._click_button(page, DRIVALIA_BUTTONS["choose_vehicle"])

        async with self.step("search_vehicle"):
            search = await wait_for_element(page, DRIVALIA_SELECTORS["vehicle_search"], t.element_timeout)
            await apply_value(search, cap_code)
            logger.info(f"Drivalia: searching for CAP code {cap_code}")
            result = await wait_for_element(page, DRIVALIA_SELECTORS["search_result"], t.calculation_timeout)

        async with self.step("select_vehicle"):
            await click_element(result, t.element_timeout)

        async with self.step("confirm_vehicle"):
            await self._click_button(page, DRIVALIA_BUTTONS["use_vehicle"])

        async with self.step("open_product_selection"):
            await self._click_button(page, DRIVALIA_BUTTONS["select_product"])

        async with self.step("select_product"):
            product = drivalia_product_name(item.contract_type_code)
            option = await wait_for_text(page, product, DRIVALIA_SELECTORS["product_option"], t.element_timeout)
            await click_element(option, t.element_timeout)
            logger.info(f"Drivalia: selected product {product}")

        async with self.step("confirm_product"):
            await self._click_button(page, DRIVALIA_BUTTONS["use_product"])

        async with self.step("set_term"):
            await apply_value(await wait_for_element(page, DRIVALIA_SELECTORS["term"], t.element_timeout), str(item.term))

        async with self.step("set_mileage"):
            mileage = await wait_for_element(page, DRIVALIA_SELECTORS["mileage"], t.element_timeout)
            await apply_value(mileage, str(mileage_in_thousands(item.mileage)))

        save = page.locator(DRIVALIA_SELECTORS["button"]).filter(has_text=DRIVALIA_BUTTONS["save_quote"]).first

        async with self.step("recalculate"):
            await self._click_button(page, DRIVALIA_BUTTONS["recalculate"])
            await wait_for_enabled(save, t.calculation_timeout)

        async with self.step("save_quote"):
            token = await self.submit(page, save)

        result = await self.extract_result(page, token)
        return result.model_copy(update={
            "cap_code": result.cap_code or cap_code,
            "term": result.term or item.term,
            "mileage": result.mileage or item.mileage,
            "contract_type": result.contract_type or item.contract_type_code,
        })
