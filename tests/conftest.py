"""Pytest configuration and shared fixtures for testing"""

import json
import re
import sys
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict

import pytest
from playwright.async_api import Browser, BrowserContext, Page, Route, async_playwright
from playwright.async_api import Error as PlaywrightError

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from quote_automation.config import Settings, Timings

FIXTURES = Path(__file__).parent / "fixtures"

LEX_ORIGIN = re.compile(r"^https://associate\.lexautolease\.co\.uk/")
DRIVALIA_ORIGIN = re.compile(r"^https://www\.caafgenus3\.co\.uk/")

LEX_QUOTE_PAYLOAD = {
    "QuoteNo": 123456789,
    "Variants": [{
        "MonthlyRental": 312.5,
        "MonthlyRentalIncVAT": 375.0,
        "InitialPayment": 937.5,
        "OTRP": 25000.0,
        "BrokerOTRP": 24500.0,
        "CapCode": "ABAB595T 5HPIM   ",
        "Manufacturer": "ABARTH",
        "Model": "595",
        "Description": "1.4 T-Jet 145 3dr",
        "Term": 36,
        "Mileage": 10000,
        "ContractType": "CHNM",
        "TaxableListPrice": 26000.0,
    }],
}

DRIVALIA_APPLICATION_PAYLOAD = {
    "applicationId": 778899,
    "assets": [{"asset": {"catalogXref": {"catalogXrefCode": "ABAB595T5HPIM"}, "catalogValue": 26000}}],
    "finance": {"cashFlow": {"lines": [
        {"totalPayment": 1739.94},
        {"instalment": 289.99, "totalPayment": 347.99},
    ]}},
}


@pytest.fixture
async def browser() -> AsyncGenerator[Browser, None]:
    """Launch a headless Chromium, skipping when it is not installed"""
    async with async_playwright() as p:
        try:
            browser = await p.chromium.launch(headless=True)
        except PlaywrightError as e:
            pytest.skip(f"Chromium not available: {str(e).splitlines()[0]}")
        yield browser
        await browser.close()


@pytest.fixture
async def browser_context(browser: Browser) -> AsyncGenerator[BrowserContext, None]:
    """Create a new browser context for each test"""
    context = await browser.new_context(
        viewport={"width": 1280, "height": 720},
        locale="en-GB",
    )
    yield context
    await context.close()


@pytest.fixture
async def page(browser_context: BrowserContext) -> AsyncGenerator[Page, None]:
    """Create a new page for each test"""
    page = await browser_context.new_page()
    yield page
    await page.close()


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with near-zero delays for fixture pages"""
    return Settings(timings=Timings.instant(), cdp_url=None)


def portal_handler(html_file: str, api: Dict[str, Callable[[], dict]]) -> Callable:
    """
    Route handler serving one HTML fixture for every page URL and JSON for API paths.

    Args:
        html_file: Fixture file name under tests/fixtures
        api: URL substring -> zero-arg callable returning the JSON body
    """
    html = (FIXTURES / html_file).read_text()

    async def handle(route: Route):
        url = route.request.url
        for fragment, body in api.items():
            if fragment in url:
                await route.fulfill(status=200, content_type="application/json", body=json.dumps(body()))
                return
        await route.fulfill(status=200, content_type="text/html", body=html)

    return handle


@pytest.fixture
async def lex_portal(browser_context: BrowserContext) -> Dict[str, int]:
    """Serve the Lex QuickQuote fixture; returns API hit counters

    Every completed quote gets the next quote number, starting at the
    sample payload's, so a stale capture shows up as a repeated number.
    """
    hits = {"GetQuote": 0, "Complete": 0}

    def numbered():
        return {**LEX_QUOTE_PAYLOAD, "QuoteNo": LEX_QUOTE_PAYLOAD["QuoteNo"] + hits["Complete"]}

    def quote():
        hits["GetQuote"] += 1
        return numbered()

    def complete():
        payload = numbered()
        hits["Complete"] += 1
        return payload

    await browser_context.route(LEX_ORIGIN, portal_handler("lex_quick_quote.html", {
        "/services/Quote.svc/GetQuote": quote,
        "/services/Quote.svc/Complete": complete,
    }))
    return hits


@pytest.fixture
async def drivalia_portal(browser_context: BrowserContext) -> Dict[str, int]:
    """Serve the Drivalia quoting fixture; returns API hit counters

    Each saved application gets the next application id.
    """
    hits = {"application": 0}

    def application():
        payload = {**DRIVALIA_APPLICATION_PAYLOAD, "applicationId": DRIVALIA_APPLICATION_PAYLOAD["applicationId"] + hits["application"]}
        hits["application"] += 1
        return payload

    await browser_context.route(DRIVALIA_ORIGIN, portal_handler("drivalia_quoting.html", {
        "/api/application/": application,
    }))
    return hits


# Pytest async configuration
def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "slow: mark test as slow (can be skipped with -m 'not slow')"
    )
