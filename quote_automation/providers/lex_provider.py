"""Lex Autolease provider implementation.

This module contains ALL Lex-specific code:
- Field selectors for the QuickQuote form
- Contract-type and payment-plan code tables
- WLTP CO2 confirmation dialog recovery
- Parsing of the Quote.svc GetQuote/Complete responses

QuickQuote is a server-rendered ASP.NET page: every make/model/variant
selection posts back and repopulates the next <select>, so each step waits
for the dependent field before moving on.
"""

import re
from typing import Any, Dict, Optional

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from quote_automation.browser.dom import (
    apply_value,
    click_element,
    ensure_checked,
    is_visible,
    resolve_option_value,
    selected_option_text,
    settle,
    wait_for_any_visible,
    wait_for_condition,
    wait_for_element,
    wait_for_options_loaded,
)
from quote_automation.browser.interceptor import PAGE_SCRIPT_MODE
from quote_automation.config import Settings
from quote_automation.errors import AutomationError
from quote_automation.models import ExtractionResult, SelectionCodes, WorkItem

from .base import BaseProvider


# =============================================================================
# LEX-SPECIFIC CONFIGURATION
# =============================================================================

LEX_NEW_QUOTE_URL = "https://associate.lexautolease.co.uk/QuickQuote.aspx"
LEX_URL_PATTERN = r"^https://associate\.lexautolease\.co\.uk/"
LEX_INTERCEPT_PATTERNS = [
    r"/services/Quote\.svc/GetQuote",
    r"/services/Quote\.svc/Complete",
]
LEX_MESSAGE_TYPE = "LEX_QUOTE_RESPONSE"

LEX_SELECTORS = {
    "manufacturer": "#selManufacturers",
    "model": "#selModels",
    "variant": "#selVariants",
    "co2_input": "#txtWltpCo2",
    "co2_display": "#divWLTPCo2 span",
    "contract_type": "#selContracts",
    "payment_plan": "#selPaymentPlan",
    "term": "#txtTerm",
    "mileage": "#txtMPA",
    "broker_otrp": "#txtBrokerOTRP",
    "bonus_excluded": "#chkBonusExcluded",
    "wltp_dialog": "#wltpQuoteCalculateAlert",
    "wltp_ok": "#wltpCalcbtnOk",
    "commission_disclosure": "#dvCommDisc",
    "calculate": 'a[href*="Calculate"]',
    "complete": 'a[href*="Complete"]',
}

LEX_CONTRACT_TYPE_CODES = {
    "contract_hire_with_maintenance": "2",
    "contract_hire_without_maintenance": "5",
    "CH": "2",
    "CHNM": "5",
}
LEX_DEFAULT_CONTRACT_TYPE = "5"

LEX_PAYMENT_PLAN_CODES = {
    "annual_in_advance": "1",
    "monthly_in_advance": "7",
    "quarterly_in_advance": "8",
    "spread_3_down": "23",
    "spread_6_down": "26",
    "spread_9_down": "43",
    "spread_12_down": "27",
}
LEX_DEFAULT_PAYMENT_PLAN = "23"

LEX_QUOTE_ID_PATTERN = re.compile(r"\b(\d{9})\b")
LEX_MONTHLY_RENTAL_PATTERN = re.compile(r"Monthly\s*Rental[^£\d]*£?([\d,]+\.\d{2})", re.IGNORECASE)
LEX_CO2_PATTERN = re.compile(r"(\d+)")


def get_lex_provider_config() -> Dict[str, Any]:
    """
    Get Lex provider configuration for the CLI and diagnostics.

    Returns:
        Dict with URLs, selectors and code tables
    """
    return {
        "name": "Lex",
        "new_quote_url": LEX_NEW_QUOTE_URL,
        "url_pattern": LEX_URL_PATTERN,
        "intercept_patterns": LEX_INTERCEPT_PATTERNS,
        "selectors": LEX_SELECTORS,
        "contract_type_codes": LEX_CONTRACT_TYPE_CODES,
        "payment_plan_codes": LEX_PAYMENT_PLAN_CODES,
    }


# =============================================================================
# CODE LOOKUPS
# =============================================================================

def _lookup_code(value: Optional[str], table: Dict[str, str], default: str, label: str) -> str:
    if value is None or str(value).strip() == "":
        logger.debug(f"Lex: no {label} given, using default {default}")
        return default
    value = str(value).strip()
    if value in table:
        return table[value]
    if value.isdigit():
        return value
    raise ValueError(f"Unknown {label} '{value}'")


def lex_contract_type_code(value: Optional[str]) -> str:
    """Map a contract type name or code to the #selContracts option value"""
    return _lookup_code(value, LEX_CONTRACT_TYPE_CODES, LEX_DEFAULT_CONTRACT_TYPE, "contract type")


def lex_payment_plan_code(value: Optional[str]) -> str:
    """Map a payment plan name or code to the #selPaymentPlan option value"""
    return _lookup_code(value, LEX_PAYMENT_PLAN_CODES, LEX_DEFAULT_PAYMENT_PLAN, "payment plan")


def pence_to_pounds(pence: int) -> str:
    return f"{pence / 100:.2f}"


# =============================================================================
# EXTRACTION
# =============================================================================

def parse_lex_quote_response(payload: Dict[str, Any]) -> ExtractionResult:
    """
    Build a result from a Quote.svc GetQuote or Complete response.

    Raises:
        LookupError / TypeError: if the payload has no Variants entry
    """
    variant = payload["Variants"][0]
    broker_otrp = variant.get("BrokerOTRP")
    cap_code = (variant.get("CapCode") or "").strip()

    return ExtractionResult(
        quote_id=payload.get("QuoteNo"),
        monthly_rental=variant.get("MonthlyRental") or None,
        monthly_rental_inc_vat=variant.get("MonthlyRentalIncVAT") or None,
        initial_rental=variant.get("InitialPayment") or None,
        otrp=variant.get("OTRP") or None,
        broker_otrp=round(broker_otrp * 100) if broker_otrp else None,
        list_price=variant.get("TaxableListPrice") or None,
        cap_code=cap_code or None,
        manufacturer=variant.get("Manufacturer") or None,
        model=variant.get("Model") or None,
        description=variant.get("Description") or None,
        term=variant.get("Term") or None,
        mileage=variant.get("Mileage") or None,
        contract_type=variant.get("ContractType") or None,
        source="intercepted",
    )


def parse_lex_page_text(text: str) -> ExtractionResult:
    """Quote number and monthly rental scraped from the rendered quote page"""
    quote_match = LEX_QUOTE_ID_PATTERN.search(text or "")
    rental_match = LEX_MONTHLY_RENTAL_PATTERN.search(text or "")
    return ExtractionResult(
        quote_id=quote_match.group(1) if quote_match else None,
        monthly_rental=float(rental_match.group(1).replace(",", "")) if rental_match else None,
        source="dom",
    )


# =============================================================================
# LEX DRIVER
# =============================================================================

class LexProvider(BaseProvider):
    """Driver for the Lex Autolease QuickQuote form"""

    provider_id = "lex"
    url_pattern = LEX_URL_PATTERN
    new_quote_url = LEX_NEW_QUOTE_URL
    intercept_patterns = LEX_INTERCEPT_PATTERNS
    message_type = LEX_MESSAGE_TYPE
    # VED and price warnings arrive as alert/confirm popups
    accept_dialogs = True

    def __init__(self, settings: Optional[Settings] = None, capture_mode: str = PAGE_SCRIPT_MODE):
        settings = settings or Settings()
        super().__init__("Lex", settings.timings, capture_mode)

    async def is_page_ready(self, page: Page) -> bool:
        return await page.locator(LEX_SELECTORS["manufacturer"]).count() > 0

    def parse_intercepted(self, payload: Any) -> ExtractionResult:
        return parse_lex_quote_response(payload)

    def parse_page_text(self, text: str) -> ExtractionResult:
        return parse_lex_page_text(text)

    # -------------------------------------------------------------------------
    # Vehicle identity
    # -------------------------------------------------------------------------

    async def _select_option(self, page: Page, field: str, code: Optional[str]) -> None:
        if not code:
            raise ValueError(f"No {field} code for this item")
        select = await wait_for_options_loaded(page, LEX_SELECTORS[field], self.timings.options_timeout)
        await settle(self.timings.settle_after_options, f"{field} options rebinding")
        value = await resolve_option_value(select, code)
        if value is None:
            raise ValueError(f"No {field} option matches '{code}'")
        await apply_value(select, value)
        logger.info(f"Lex: selected {field} {value}")

    async def _select_vehicle(self, page: Page, codes: SelectionCodes) -> None:
        async with self.step("select_manufacturer"):
            await self._select_option(page, "manufacturer", codes.make_code)
        async with self.step("select_model"):
            await self._select_option(page, "model", codes.model_code)
        async with self.step("select_variant"):
            await self._select_option(page, "variant", codes.variant_code)
            # GetOptions finishing is only observable as the CO2 input appearing
            await wait_for_element(page, LEX_SELECTORS["co2_input"], self.timings.calculation_timeout)
            await settle(self.timings.settle_after_variant, "GetOptions rewriting the form")

    async def _read_page_co2(self, page: Page) -> Optional[int]:
        display = page.locator(LEX_SELECTORS["co2_display"])
        if await display.count() == 0:
            return None
        match = LEX_CO2_PATTERN.search(await display.first.text_content() or "")
        return int(match.group(1)) if match else None

    async def _enter_co2(self, page: Page, co2: int) -> None:
        co2_input = await wait_for_element(page, LEX_SELECTORS["co2_input"], self.timings.dialog_timeout)
        await apply_value(co2_input, str(co2))
        logger.info(f"Lex: entered CO2 {co2} g/km")

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def test_load_vehicle(self, page: Page, item: WorkItem) -> Dict[str, Any]:
        await self._select_vehicle(page, item.selection_codes)
        codes = item.selection_codes
        return {
            "make": await selected_option_text(page.locator(LEX_SELECTORS["manufacturer"])) or codes.make_code,
            "model": await selected_option_text(page.locator(LEX_SELECTORS["model"])) or codes.model_code,
            "variant": await selected_option_text(page.locator(LEX_SELECTORS["variant"])) or codes.variant_code,
            "co2InputVisible": await is_visible(page, LEX_SELECTORS["co2_input"]),
        }

    async def run_quote(self, page: Page, item: WorkItem) -> ExtractionResult:
        t = self.timings
        await self._select_vehicle(page, item.selection_codes)

        async with self.step("read_co2"):
            page_co2 = await self._read_page_co2(page)
            co2 = page_co2 if page_co2 is not None else item.co2
            if page_co2 is not None:
                logger.info(f"Lex: page shows WLTP CO2 {page_co2} g/km")

        async with self.step("set_contract_type"):
            select = await wait_for_element(page, LEX_SELECTORS["contract_type"], t.element_timeout)
            await apply_value(select, lex_contract_type_code(item.contract_type_code))

        async with self.step("set_payment_plan"):
            select = await wait_for_element(page, LEX_SELECTORS["payment_plan"], t.element_timeout)
            await apply_value(select, lex_payment_plan_code(item.payment_plan_code))

        async with self.step("set_term"):
            await apply_value(await wait_for_element(page, LEX_SELECTORS["term"], t.element_timeout), str(item.term))

        async with self.step("set_mileage"):
            await apply_value(
                await wait_for_element(page, LEX_SELECTORS["mileage"], t.element_timeout), str(item.mileage)
            )

        async with self.step("enter_co2"):
            if co2 is None:
                logger.warning("Lex: no CO2 figure available, leaving the field as the page set it")
            else:
                await self._enter_co2(page, co2)
                if await is_visible(page, LEX_SELECTORS["wltp_ok"]):
                    logger.info("Lex: acknowledging inline WLTP alert")
                    await click_element(page.locator(LEX_SELECTORS["wltp_ok"]).first, t.dialog_timeout)

        if item.price_override is not None:
            async with self.step("set_price_override"):
                otrp_input = await wait_for_element(page, LEX_SELECTORS["broker_otrp"], t.element_timeout)
                await apply_value(otrp_input, pence_to_pounds(item.price_override))
                bonus = page.locator(LEX_SELECTORS["bonus_excluded"])
                if await bonus.count() > 0 and await ensure_checked(bonus.first, t.element_timeout):
                    logger.info("Lex: ticked Bonus Excluded")

        async with self.step("calculate"):
            await self._calculate(page, co2)

        async with self.step("acknowledge_disclosure"):
            disclosure = page.locator(LEX_SELECTORS["commission_disclosure"]).first
            checkbox = disclosure.locator('input[type="checkbox"]')
            if await checkbox.count() > 0:
                await ensure_checked(checkbox.first, t.element_timeout)
            else:
                await click_element(disclosure, t.element_timeout)

        async with self.step("complete"):
            token = await self.submit(page, page.locator(LEX_SELECTORS["complete"]).first)
            try:
                await page.wait_for_load_state("networkidle", timeout=t.network_idle_timeout * 1000)
            except PlaywrightError as e:
                logger.debug(f"Lex: network still busy after Complete ({e})")

        result = await self.extract_result(page, token)
        return result.model_copy(update={
            "term": result.term or item.term,
            "mileage": result.mileage or item.mileage,
            "co2": result.co2 or co2,
        })

    async def _calculate(self, page: Page, co2: Optional[int]) -> None:
        """
        Submit the quote, recovering once from the WLTP CO2 confirmation.

        Calculate either opens the WLTP dialog or reveals the commission
        disclosure. After one acknowledge + re-enter + resubmit cycle, a
        second dialog is a hard failure.
        """
        t = self.timings
        calculate = page.locator(LEX_SELECTORS["calculate"]).first
        outcomes = [LEX_SELECTORS["wltp_dialog"], LEX_SELECTORS["commission_disclosure"]]

        await self.submit(page, calculate)
        shown = await wait_for_any_visible(page, outcomes, t.calculation_timeout)
        if shown != LEX_SELECTORS["wltp_dialog"]:
            return

        logger.warning("Lex: WLTP CO2 confirmation raised after Calculate, recovering")
        await click_element(page.locator(LEX_SELECTORS["wltp_ok"]).first, t.dialog_timeout)
        await wait_for_condition(page, "hidden", LEX_SELECTORS["wltp_dialog"], t.dialog_timeout)
        await settle(t.settle_after_dialog, "CO2 panel re-rendering after the dialog")
        if co2 is not None:
            await self._enter_co2(page, co2)

        await self.submit(page, calculate)
        shown = await wait_for_any_visible(page, outcomes, t.calculation_timeout)
        if shown == LEX_SELECTORS["wltp_dialog"]:
            raise AutomationError("WLTP CO2 confirmation raised again after resubmitting", step="calculate")
        logger.info("Lex: recovered from WLTP confirmation")
