"""Unit tests for provider tab discovery"""

import asyncio
import pytest
from pathlib import Path
import sys
from unittest.mock import MagicMock

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from quote_automation.browser.messaging import CHECK_PAGE_READY
from quote_automation.browser.tab_locator import TabLocator
from quote_automation.errors import TabNotFoundError
from quote_automation.providers.lex_provider import LEX_NEW_QUOTE_URL, LexProvider


def make_page(url: str, closed: bool = False):
    page = MagicMock()
    page.url = url
    page.is_closed.return_value = closed
    return page


def make_browser(pages):
    browser = MagicMock()
    browser.pages.return_value = pages
    return browser


class ScriptedLex(LexProvider):
    """Lex provider whose readiness answer is looked up per tab URL"""

    def __init__(self, answers):
        super().__init__()
        self.answers = answers
        self.probed = []

    async def handle_message(self, page, message):
        assert message["action"] == CHECK_PAGE_READY
        self.probed.append(page.url)
        answer = self.answers[page.url]
        if answer == "hang":
            await asyncio.sleep(5)
        return {"ready": answer == "ready"}


class TestTabLocator:
    """Test tab selection across the open browser"""

    @pytest.mark.asyncio
    async def test_first_ready_tab_wins(self):
        login = make_page("https://associate.lexautolease.co.uk/Login.aspx")
        quote = make_page(LEX_NEW_QUOTE_URL)
        other = make_page(LEX_NEW_QUOTE_URL + "?second=1")
        provider = ScriptedLex({login.url: "not ready", quote.url: "ready", other.url: "ready"})

        session = await TabLocator(make_browser([login, quote, other]), probe_timeout=0.5).locate(provider)

        assert session.page is quote
        assert session.url == LEX_NEW_QUOTE_URL
        assert provider.probed == [login.url, quote.url]

    @pytest.mark.asyncio
    async def test_other_sites_are_not_probed(self):
        news = make_page("https://news.example.com/")
        quote = make_page(LEX_NEW_QUOTE_URL)
        provider = ScriptedLex({quote.url: "ready"})

        locator = TabLocator(make_browser([news, quote]), probe_timeout=0.5)

        assert locator.candidates(provider) == [quote]
        assert (await locator.locate(provider)).page is quote

    @pytest.mark.asyncio
    async def test_unresponsive_and_closed_tabs_are_skipped(self):
        """Test a hung tab costs one probe timeout and a closed tab is passed over"""
        hung = make_page(LEX_NEW_QUOTE_URL + "?hung=1")
        closed = make_page(LEX_NEW_QUOTE_URL + "?closed=1", closed=True)
        quote = make_page(LEX_NEW_QUOTE_URL)
        provider = ScriptedLex({hung.url: "hang", closed.url: "ready", quote.url: "ready"})

        session = await TabLocator(make_browser([hung, closed, quote]), probe_timeout=0.05).locate(provider)

        assert session.page is quote
        assert closed.url not in provider.probed

    @pytest.mark.asyncio
    async def test_no_ready_tab(self):
        login = make_page("https://associate.lexautolease.co.uk/Login.aspx")
        provider = ScriptedLex({login.url: "not ready"})

        with pytest.raises(TabNotFoundError) as exc_info:
            await TabLocator(make_browser([login]), probe_timeout=0.5).locate(provider)

        assert exc_info.value.provider == "Lex"
        assert LEX_NEW_QUOTE_URL in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_no_tabs_at_all(self):
        with pytest.raises(TabNotFoundError):
            await TabLocator(make_browser([]), probe_timeout=0.5).locate(ScriptedLex({}))
