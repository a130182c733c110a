"""Unit tests for the automation controller's queue loop and reset"""

import asyncio
import pytest
from pathlib import Path
import sys
from unittest.mock import AsyncMock, MagicMock

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from quote_automation.analytics.metrics import RunMetrics
from quote_automation.browser.messaging import CHECK_PAGE_READY, TEST_LOAD_VEHICLE
from quote_automation.browser.tab_locator import ProviderSession, TabLocator
from quote_automation.config import Timings
from quote_automation.controller import AutomationController
from quote_automation.errors import (
    AutomationError,
    DriverNotReadyError,
    EmptyQueueError,
    TabNotFoundError,
)
from quote_automation.models import ExtractionResult, QueueStatus, WorkItem
from quote_automation.providers.base import BaseProvider
from quote_automation.work_queue import WorkQueueClient


NEW_QUOTE_URL = "https://portal.test/app/index.html#/quoting/new"

TIMINGS = Timings.instant().model_copy(update={
    "ready_poll_interval": 0.0,
    "ready_poll_attempts": 5,
    "probe_timeout": 0.2,
    "message_timeout": 0.5,
})

QUOTE = {"success": True, "quoteId": "123456789", "monthlyRental": 312.5, "source": "intercepted"}


class ScriptedProvider(BaseProvider):
    """Answers controller messages from a script instead of a page"""

    provider_id = "lex"
    url_pattern = r"^https://portal\.test/"
    new_quote_url = NEW_QUOTE_URL

    def __init__(self, answers=None, ready=True):
        super().__init__("Scripted", TIMINGS)
        self.answers = list(answers or [])
        self.ready = ready
        self.actions = []
        self.quoted = []

    async def handle_message(self, page, message):
        action = message["action"]
        self.actions.append(action)
        if action == CHECK_PAGE_READY:
            ready = self.ready(page) if callable(self.ready) else self.ready
            return {"ready": ready}
        self.quoted.append(message["data"]["vehicleId"])
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        if answer == "hang":
            await asyncio.sleep(5)
        return answer

    async def is_page_ready(self, page):
        return True

    async def run_quote(self, page, item):
        raise NotImplementedError

    def parse_intercepted(self, payload):
        return ExtractionResult()

    def parse_page_text(self, text):
        return ExtractionResult(source="dom")


def make_item(vehicle_id: str, term: int = 36, **extra) -> WorkItem:
    return WorkItem.model_validate({"vehicleId": vehicle_id, "capCode": f"CAP{vehicle_id}", "term": term, "mileage": 10000, **extra})


def make_page():
    page = MagicMock()
    page.url = NEW_QUOTE_URL
    page.is_closed.return_value = False
    page.goto = AsyncMock()
    page.reload = AsyncMock()
    return page


def make_queue(items):
    queue = MagicMock(spec=WorkQueueClient)
    queue.fetch_pending = AsyncMock(return_value=items)
    queue.update_status = AsyncMock(return_value=True)
    return queue


def make_locator(page):
    locator = MagicMock(spec=TabLocator)
    locator.locate = AsyncMock(side_effect=lambda provider: ProviderSession(provider=provider, page=page))
    return locator


def status_calls(queue):
    """(vehicle_id, status) pairs in write order"""
    return [(c.args[1], QueueStatus(c.args[2])) for c in queue.update_status.call_args_list]


class TestRunQueue:
    """Test the batch loop"""

    @pytest.mark.asyncio
    async def test_processes_items_in_order_and_survives_failures(self):
        """Test one failing item is recorded and the batch moves on"""
        page = make_page()
        provider = ScriptedProvider([
            QUOTE,
            {"error": "[select_variant] No variant option matches 'NOPE'", "step": "select_variant"},
            QUOTE,
        ])
        queue = make_queue([make_item("a"), make_item("b"), make_item("c")])
        metrics = RunMetrics()
        controller = AutomationController(provider, make_locator(page), queue=queue, metrics=metrics)

        summary = await controller.run_queue()

        assert summary.to_dict() == {"processed": 2, "errors": 1, "skipped": 0}
        assert provider.quoted == ["a", "b", "c"]
        assert status_calls(queue) == [
            ("a", QueueStatus.RUNNING), ("a", QueueStatus.COMPLETE),
            ("b", QueueStatus.RUNNING), ("b", QueueStatus.ERROR),
            ("c", QueueStatus.RUNNING), ("c", QueueStatus.COMPLETE),
        ]
        error_write = queue.update_status.call_args_list[3]
        assert error_write.kwargs["error"] == "[select_variant] No variant option matches 'NOPE'"
        complete_write = queue.update_status.call_args_list[1]
        assert complete_write.kwargs["result"]["quoteId"] == "123456789"
        assert complete_write.kwargs["identity"] == {"capCode": "CAPa", "term": 36, "mileage": 10000}
        assert metrics.get_summary()["failed_steps"] == {"select_variant": 1}

    @pytest.mark.asyncio
    async def test_reset_follows_every_item(self):
        """Test the tab is reset after successes and failures alike"""
        page = make_page()
        provider = ScriptedProvider([QUOTE, {"error": "boom", "step": "calculate"}])
        controller = AutomationController(provider, make_locator(page), queue=make_queue([make_item("a"), make_item("b")]))

        await controller.run_queue()

        assert page.goto.await_count == 2
        page.goto.assert_awaited_with(NEW_QUOTE_URL, wait_until="load", timeout=TIMINGS.navigation_timeout * 1000)
        # Fragment-only navigation on the same document forces a reload
        assert page.reload.await_count == 2

    @pytest.mark.asyncio
    async def test_empty_queue_never_touches_tabs(self):
        locator = make_locator(make_page())
        controller = AutomationController(ScriptedProvider(), locator, queue=make_queue([]))

        with pytest.raises(EmptyQueueError):
            await controller.run_queue()

        locator.locate.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_tab_leaves_items_pending(self):
        queue = make_queue([make_item("a"), make_item("b")])
        locator = MagicMock(spec=TabLocator)
        locator.locate = AsyncMock(side_effect=TabNotFoundError("Scripted", NEW_QUOTE_URL))
        controller = AutomationController(ScriptedProvider(), locator, queue=queue)

        with pytest.raises(TabNotFoundError):
            await controller.run_queue()

        queue.update_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_items_finished_in_this_run_are_skipped(self):
        """Test a replayed item is not quoted twice"""
        provider = ScriptedProvider([QUOTE, QUOTE])
        queue = make_queue([make_item("a"), make_item("a"), make_item("a", term=48)])
        controller = AutomationController(provider, make_locator(make_page()), queue=queue)

        summary = await controller.run_queue()

        assert summary.to_dict() == {"processed": 2, "errors": 0, "skipped": 1}
        assert provider.quoted == ["a", "a"]

    @pytest.mark.asyncio
    async def test_driver_timeout_marks_error(self):
        provider = ScriptedProvider(["hang", QUOTE])
        queue = make_queue([make_item("a"), make_item("b")])
        controller = AutomationController(provider, make_locator(make_page()), queue=queue)

        summary = await controller.run_queue()

        assert summary.errors == 1
        assert summary.processed == 1
        assert "No response to 'run_quote'" in queue.update_status.call_args_list[1].kwargs["error"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_marks_error(self):
        provider = ScriptedProvider([RuntimeError("driver bug"), QUOTE])
        queue = make_queue([make_item("a"), make_item("b")])
        controller = AutomationController(provider, make_locator(make_page()), queue=queue)

        summary = await controller.run_queue()

        assert summary.to_dict() == {"processed": 1, "errors": 1, "skipped": 0}
        assert queue.update_status.call_args_list[1].kwargs["error"] == "driver bug"

    @pytest.mark.asyncio
    async def test_cancellation_marks_item_and_propagates(self):
        provider = ScriptedProvider([asyncio.CancelledError()])
        queue = make_queue([make_item("a"), make_item("b")])
        controller = AutomationController(provider, make_locator(make_page()), queue=queue)

        with pytest.raises(asyncio.CancelledError):
            await controller.run_queue()

        assert status_calls(queue) == [("a", QueueStatus.RUNNING), ("a", QueueStatus.ERROR)]
        assert queue.update_status.call_args_list[1].kwargs["error"] == "Interrupted"

    @pytest.mark.asyncio
    async def test_failed_status_write_does_not_stop_the_run(self):
        provider = ScriptedProvider([QUOTE])
        queue = make_queue([make_item("a")])
        queue.update_status = AsyncMock(return_value=False)
        metrics = RunMetrics()
        controller = AutomationController(provider, make_locator(make_page()), queue=queue, metrics=metrics)

        summary = await controller.run_queue()

        assert summary.processed == 1
        assert metrics.get_summary()["status_write_failures"] == 2

    @pytest.mark.asyncio
    async def test_reset_failure_does_not_fail_the_item(self):
        """Test a tab that never comes back ready after a completed quote"""
        page = make_page()
        probes = {"count": 0}

        def ready(page):
            probes["count"] += 1
            return False

        provider = ScriptedProvider([QUOTE, QUOTE], ready=ready)
        queue = make_queue([make_item("a"), make_item("b")])
        metrics = RunMetrics()
        controller = AutomationController(provider, make_locator(page), queue=queue, metrics=metrics)

        summary = await controller.run_queue()

        # Default policy keeps going
        assert summary.to_dict() == {"processed": 2, "errors": 0, "skipped": 0}
        assert ("a", QueueStatus.COMPLETE) in status_calls(queue)
        assert metrics.get_summary()["reset_failures"] == 2
        assert probes["count"] == 2 * TIMINGS.ready_poll_attempts

    @pytest.mark.asyncio
    async def test_consecutive_reset_failures_abort_when_configured(self):
        provider = ScriptedProvider([QUOTE, QUOTE], ready=False)
        queue = make_queue([make_item("a"), make_item("b"), make_item("c"), make_item("d")])
        controller = AutomationController(
            provider, make_locator(make_page()), queue=queue, max_consecutive_reset_failures=2
        )

        summary = await controller.run_queue()

        assert summary.to_dict() == {"processed": 2, "errors": 0, "skipped": 2}
        assert provider.quoted == ["a", "b"]
        assert {vehicle_id for vehicle_id, _ in status_calls(queue)} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_run_queue_needs_a_queue(self):
        controller = AutomationController(ScriptedProvider(), make_locator(make_page()))
        with pytest.raises(ValueError):
            await controller.run_queue()


class TestResetToFresh:
    """Test returning a tab to the new quote page"""

    @pytest.mark.asyncio
    async def test_polls_until_ready(self):
        page = make_page()
        answers = iter([False, False, True])
        provider = ScriptedProvider(ready=lambda page: next(answers))
        controller = AutomationController(provider, make_locator(page))

        session = await controller.reset_to_fresh(ProviderSession(provider=provider, page=page))

        assert session.page is page
        assert provider.actions.count(CHECK_PAGE_READY) == 3

    @pytest.mark.asyncio
    async def test_bounded_polling(self):
        provider = ScriptedProvider(ready=False)
        page = make_page()
        controller = AutomationController(provider, make_locator(page))

        with pytest.raises(DriverNotReadyError) as exc_info:
            await controller.reset_to_fresh(ProviderSession(provider=provider, page=page))

        assert exc_info.value.attempts == TIMINGS.ready_poll_attempts
        assert provider.actions.count(CHECK_PAGE_READY) == TIMINGS.ready_poll_attempts

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_unanswered_probes_share_one_deadline(self):
        """Test a driver that never answers gives up within the polling budget"""

        class SilentProvider(ScriptedProvider):
            async def handle_message(self, page, message):
                self.actions.append(message["action"])
                await asyncio.sleep(60)

        timings = Timings()
        provider = SilentProvider()
        controller = AutomationController(provider, make_locator(make_page()), timings=timings)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(DriverNotReadyError):
            await controller.reset_to_fresh(ProviderSession(provider=provider, page=make_page()))

        elapsed = loop.time() - started
        assert elapsed <= timings.ready_poll_interval * timings.ready_poll_attempts + 1
        assert provider.actions.count(CHECK_PAGE_READY) < timings.ready_poll_attempts

    @pytest.mark.asyncio
    async def test_different_document_is_not_reloaded(self):
        page = make_page()
        page.url = "https://portal.test/login"
        provider = ScriptedProvider()
        controller = AutomationController(provider, make_locator(page))

        await controller.reset_to_fresh(ProviderSession(provider=provider, page=page))

        page.goto.assert_awaited_once()
        page.reload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closed_tab_is_replaced(self):
        closed = make_page()
        closed.is_closed.return_value = True
        replacement = make_page()
        closed.context.new_page = AsyncMock(return_value=replacement)
        provider = ScriptedProvider()
        controller = AutomationController(provider, make_locator(closed))

        session = await controller.reset_to_fresh(ProviderSession(provider=provider, page=closed))

        assert session.page is replacement
        replacement.goto.assert_awaited_once()


class TestSingleOperations:
    """Test one-off quotes and partial loads"""

    @pytest.mark.asyncio
    async def test_run_single_returns_result_without_queue_writes(self):
        page = make_page()
        provider = ScriptedProvider([QUOTE])
        controller = AutomationController(provider, make_locator(page))

        result = await controller.run_single(make_item("a"))

        assert result.quote_id == "123456789"
        assert result.monthly_rental == 312.5
        page.goto.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_single_raises_driver_message(self):
        provider = ScriptedProvider([{"error": "[calculate] WLTP CO2 confirmation raised again", "step": "calculate"}])
        controller = AutomationController(provider, make_locator(make_page()))

        with pytest.raises(AutomationError) as exc_info:
            await controller.run_single(make_item("a"))

        assert exc_info.value.step == "calculate"
        assert str(exc_info.value) == "[calculate] WLTP CO2 confirmation raised again"

    @pytest.mark.asyncio
    async def test_partial_load(self):
        provider = ScriptedProvider([{"success": True, "make": "ABARTH", "co2InputVisible": True}])
        controller = AutomationController(provider, make_locator(make_page()))

        answer = await controller.run_partial_load(make_item("a"))

        assert answer == {"make": "ABARTH", "co2InputVisible": True}
        assert provider.actions == [TEST_LOAD_VEHICLE]
