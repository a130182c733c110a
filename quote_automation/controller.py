"""Automation controller - sequences work items through a provider tab.

The controller is the only component that navigates. For each queue item
it marks the item running, dispatches it to the provider's driver in a
freshly located tab, writes the outcome back to the queue, and then always
returns the tab to a fresh new-quote page, whatever happened to the item.
"""

import asyncio
import time
from typing import Any, Dict, Optional, Set, Tuple

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from quote_automation.analytics.metrics import RunMetrics
from quote_automation.browser.messaging import RUN_QUOTE, TEST_LOAD_VEHICLE, DriverChannel
from quote_automation.browser.tab_locator import ProviderSession, TabLocator
from quote_automation.config import Timings
from quote_automation.errors import (
    AutomationError,
    DriverNotReadyError,
    EmptyQueueError,
    QuoteAutomationError,
)
from quote_automation.models import ExtractionResult, QueueStatus, RunSummary, WorkItem, check_transition
from quote_automation.providers.base import BaseProvider
from quote_automation.work_queue import WorkQueueClient


def _item_key(item: WorkItem) -> Tuple[Any, ...]:
    return (item.vehicle_id, item.term, item.mileage, item.contract_type_code, item.payment_plan_code)


def _same_document(current_url: str, target_url: str) -> bool:
    return current_url.partition("#")[0] == target_url.partition("#")[0]


class AutomationController:
    """Runs quotes for one provider, one at a time"""

    def __init__(
        self,
        provider: BaseProvider,
        locator: TabLocator,
        queue: Optional[WorkQueueClient] = None,
        timings: Optional[Timings] = None,
        max_consecutive_reset_failures: int = 0,
        metrics: Optional[RunMetrics] = None,
    ):
        """
        Initialize controller

        Args:
            provider: Driver for the provider being quoted
            locator: Finds the provider's ready tab
            queue: Remote queue client (required for run_queue)
            timings: Message and reset timeouts
            max_consecutive_reset_failures: Abort a batch after this many
                failed resets in a row; 0 never aborts
            metrics: Outcome tracker
        """
        self.provider = provider
        self.locator = locator
        self.queue = queue
        self.timings = timings or provider.timings
        self.max_consecutive_reset_failures = max_consecutive_reset_failures
        self.metrics = metrics or RunMetrics()
        self.channel = DriverChannel(provider)

    # -------------------------------------------------------------------------
    # Single operations
    # -------------------------------------------------------------------------

    async def _dispatch(self, session: ProviderSession, action: str, item: WorkItem) -> Dict[str, Any]:
        answer = await self.channel.send(session.page, action, item.to_message(), timeout=self.timings.message_timeout)
        if answer.get("error"):
            raise AutomationError(answer["error"], step=answer.get("step"))
        return answer

    async def run_single(self, item: WorkItem) -> ExtractionResult:
        """
        Quote one item in the current ready tab. No queue writes, no reset.

        Raises:
            TabNotFoundError: no ready tab
            AutomationError: the driver's own failure message
        """
        session = await self.locator.locate(self.provider)
        answer = await self._dispatch(session, RUN_QUOTE, item)
        return ExtractionResult.model_validate(answer)

    async def run_partial_load(self, item: WorkItem) -> Dict[str, Any]:
        """Select the vehicle identity only and return what the page shows"""
        session = await self.locator.locate(self.provider)
        answer = await self._dispatch(session, TEST_LOAD_VEHICLE, item)
        answer.pop("success", None)
        return answer

    # -------------------------------------------------------------------------
    # Reset
    # -------------------------------------------------------------------------

    async def _navigate_fresh(self, page: Page) -> None:
        url = self.provider.new_quote_url
        timeout = self.timings.navigation_timeout * 1000
        # A fragment-only change keeps the old SPA state
        reload = "#" in url and _same_document(page.url, url)
        try:
            await page.goto(url, wait_until="load", timeout=timeout)
        except PlaywrightError as e:
            logger.warning(f"{self.provider.name}: navigation to new quote page did not settle ({e})")
        if not reload:
            return
        try:
            await page.reload(wait_until="load", timeout=timeout)
        except PlaywrightError as e:
            logger.warning(f"{self.provider.name}: reload of new quote page did not settle ({e})")

    async def reset_to_fresh(self, session: ProviderSession) -> ProviderSession:
        """
        Return the tab to a fresh new-quote page and wait for the driver.

        Raises:
            DriverNotReadyError: readiness polling exhausted
        """
        page = session.page
        if page.is_closed():
            logger.warning(f"{self.provider.name}: tab was closed, opening a new one")
            page = await page.context.new_page()

        logger.info(f"{self.provider.name}: resetting tab to {self.provider.new_quote_url}")
        await self._navigate_fresh(page)

        attempts = self.timings.ready_poll_attempts
        interval = self.timings.ready_poll_interval
        # Slow probes eat into the same budget as the waits between them
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(interval * attempts, self.timings.probe_timeout)

        attempt = 0
        while attempt < attempts:
            remaining = deadline - loop.time()
            if attempt and remaining <= 0:
                break
            attempt += 1
            if await self.channel.probe(page, min(self.timings.probe_timeout, remaining)):
                logger.debug(f"{self.provider.name}: ready after {attempt} check(s)")
                return ProviderSession(provider=self.provider, page=page)
            if attempt < attempts:
                await asyncio.sleep(max(0.0, min(interval, deadline - loop.time())))

        raise DriverNotReadyError(self.provider.name, attempt)

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    async def _mark(
        self,
        statuses: Dict[Tuple[Any, ...], QueueStatus],
        item: WorkItem,
        status: QueueStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        key = _item_key(item)
        check_transition(item.vehicle_id, statuses.get(key, QueueStatus.PENDING), status)
        statuses[key] = status
        written = await self.queue.update_status(
            self.provider.provider_id,
            item.vehicle_id,
            status,
            result=result,
            error=error,
            identity=item.identity(),
        )
        if not written:
            self.metrics.record_status_write_failure()

    async def run_queue(self) -> RunSummary:
        """
        Quote every pending item, strictly in queue order.

        Raises:
            EmptyQueueError: nothing pending (checked before any tab discovery)
            TabNotFoundError: no ready tab before the first item; every item stays pending
        """
        if self.queue is None:
            raise ValueError("run_queue needs a WorkQueueClient")

        provider_id = self.provider.provider_id
        items = await self.queue.fetch_pending(provider_id)
        if not items:
            raise EmptyQueueError(self.provider.name)

        session = await self.locator.locate(self.provider)
        logger.info(f"{self.provider.name}: processing {len(items)} item(s) in {session.url}")

        summary = RunSummary()
        statuses: Dict[Tuple[Any, ...], QueueStatus] = {}
        finished: Set[Tuple[Any, ...]] = set()
        consecutive_reset_failures = 0

        for index, item in enumerate(items, start=1):
            key = _item_key(item)
            if key in finished:
                logger.info(f"{item.vehicle_id}: already finished in this run, skipping")
                summary.skipped += 1
                self.metrics.record_skipped()
                continue

            logger.info(f"[{index}/{len(items)}] {item.label}")
            started = time.monotonic()
            await self._mark(statuses, item, QueueStatus.RUNNING)

            try:
                session = await self.locator.locate(self.provider)
                answer = await self._dispatch(session, RUN_QUOTE, item)
                result = ExtractionResult.model_validate(answer)
            except asyncio.CancelledError:
                await self._mark(statuses, item, QueueStatus.ERROR, error="Interrupted")
                raise
            except Exception as e:
                message = str(e) or e.__class__.__name__
                if not isinstance(e, QuoteAutomationError):
                    logger.exception(f"{item.vehicle_id}: unexpected failure")
                logger.error(f"{item.vehicle_id}: {message}")
                await self._mark(statuses, item, QueueStatus.ERROR, error=message)
                summary.errors += 1
                self.metrics.record_item(
                    item.vehicle_id, provider_id, "error", time.monotonic() - started,
                    step=getattr(e, "step", None), error=message,
                )
            else:
                await self._mark(statuses, item, QueueStatus.COMPLETE, result=result.to_payload())
                summary.processed += 1
                self.metrics.record_item(item.vehicle_id, provider_id, "complete", time.monotonic() - started)
                logger.success(f"{item.vehicle_id}: quote {result.quote_id} at {result.monthly_rental}/month")
            finished.add(key)

            try:
                session = await self.reset_to_fresh(session)
                consecutive_reset_failures = 0
            except (DriverNotReadyError, PlaywrightError) as e:
                consecutive_reset_failures += 1
                self.metrics.record_reset_failure()
                logger.error(f"{self.provider.name}: reset after {item.vehicle_id} failed: {e}")
                limit = self.max_consecutive_reset_failures
                if limit and consecutive_reset_failures >= limit:
                    remaining = len(items) - index
                    summary.skipped += remaining
                    self.metrics.record_skipped(remaining)
                    logger.error(
                        f"{self.provider.name}: {consecutive_reset_failures} resets failed in a row, "
                        f"stopping with {remaining} item(s) left pending"
                    )
                    break

        logger.success(
            f"{self.provider.name}: run finished - {summary.processed} complete, "
            f"{summary.errors} failed, {summary.skipped} skipped"
        )
        return summary
