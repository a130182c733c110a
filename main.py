#!/usr/bin/env python3
"""Main entry point for lease quote automation"""

import asyncio
import os
import sys
import argparse
import json
from pathlib import Path
from loguru import logger

import httpx

# Configure logger
LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
logger.remove()
logger.add(sys.stderr, level="INFO", format=LOG_FORMAT)
logger.add("logs/quote_automation_{time}.log", rotation="1 day", retention="7 days", level="DEBUG", serialize=True)

from quote_automation.analytics.metrics import RunMetrics
from quote_automation.browser.interceptor import NETWORK_MODE, PAGE_SCRIPT_MODE
from quote_automation.browser.messaging import DriverChannel
from quote_automation.browser.session import BrowserSession
from quote_automation.browser.tab_locator import TabLocator
from quote_automation.config import Settings
from quote_automation.controller import AutomationController
from quote_automation.errors import EmptyQueueError, QuoteAutomationError, TabNotFoundError
from quote_automation.models import WorkItem
from quote_automation.providers.registry import ProviderRegistry
from quote_automation.work_queue import WorkQueueClient, summarize

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_EMPTY_QUEUE = 2
EXIT_NO_TAB = 3
EXIT_INTERRUPTED = 130

BROWSER_MODES = ('queue', 'single', 'test-load', 'tabs')


def load_items(path: str) -> list:
    """Read one work item or a list of them from a JSON file"""
    data = json.loads(Path(path).read_text())
    records = data if isinstance(data, list) else [data]
    return [WorkItem.model_validate(record) for record in records]


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def list_tabs(browser: BrowserSession, registry: ProviderRegistry, probe_timeout: float) -> list:
    """Every open tab with the provider it belongs to and whether its driver answers ready"""
    tabs = []
    for page in browser.pages():
        name = registry.detect_provider(page.url)
        ready = None
        if name:
            ready = await DriverChannel(registry.get_provider(name)).probe(page, probe_timeout)
        tabs.append({'url': page.url, 'provider': name, 'ready': ready})
    return tabs


async def main():
    """Main entry point"""
    settings = Settings.from_env()

    parser = argparse.ArgumentParser(description='Lease Quote Automation')
    parser.add_argument('--provider', type=str, choices=['lex', 'drivalia'], default='lex', help='Provider portal to quote against')
    parser.add_argument('--mode', type=str, choices=['queue', 'single', 'test-load', 'status', 'tabs', 'enqueue', 'clear'], default='queue',
                        help='queue (default): process pending items; single/test-load: one item from --item; '
                             'status: queue counts; tabs: open tabs and readiness; enqueue/clear: manage the queue')
    parser.add_argument('--item', type=str, metavar='JSON_FILE', help='Work item(s) for single, test-load and enqueue modes')
    parser.add_argument('--cdp-url', type=str, default=settings.cdp_url, help='DevTools endpoint of the logged-in Chrome')
    parser.add_argument('--user-data-dir', type=str, default=settings.user_data_dir, help='Launch this persistent profile instead of connecting over CDP')
    parser.add_argument('--capture', type=str, choices=[PAGE_SCRIPT_MODE, NETWORK_MODE], default=PAGE_SCRIPT_MODE, help='How API responses are captured')
    parser.add_argument('--headless', action='store_true', help='Run a launched profile in headless mode (no UI)')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode (verbose logging)')
    args = parser.parse_args()

    if args.mode in ('single', 'test-load', 'enqueue') and not args.item:
        parser.error(f"{args.mode} mode requires --item")

    if args.headless:
        os.environ['HEADLESS'] = 'true'
        settings.headless = True
        logger.info("Running in HEADLESS mode (no browser UI)")

    if args.debug or settings.debug:
        os.environ['DEBUG'] = 'true'
        # Reconfigure logger for debug mode
        logger.remove()
        logger.add(sys.stderr, level="DEBUG", format=LOG_FORMAT)
        logger.add("logs/quote_automation_{time}.log", rotation="1 day", retention="7 days", level="DEBUG", serialize=True)
        logger.debug("DEBUG mode enabled (verbose logging active)")

    # A profile launch replaces the CDP attach
    cdp_url = None if args.user_data_dir else args.cdp_url

    registry = ProviderRegistry(settings, capture_mode=args.capture)
    provider = registry.get_provider(args.provider)
    queue = WorkQueueClient(settings.queue_api_url)
    browser = BrowserSession()

    try:
        if args.mode == 'status':
            items = await queue.fetch_queue(provider.provider_id)
            print_json(summarize(items))
            return EXIT_OK

        if args.mode == 'enqueue':
            print_json(await queue.enqueue(provider.provider_id, load_items(args.item)))
            return EXIT_OK

        if args.mode == 'clear':
            await queue.clear(provider.provider_id)
            return EXIT_OK

        await browser.start(cdp_url=cdp_url, user_data_dir=args.user_data_dir, headless=settings.headless)

        if args.mode == 'tabs':
            print_json(await list_tabs(browser, registry, settings.timings.probe_timeout))
            return EXIT_OK

        metrics = RunMetrics()
        controller = AutomationController(
            provider,
            TabLocator(browser, settings.timings.probe_timeout),
            queue=queue,
            timings=settings.timings,
            max_consecutive_reset_failures=settings.max_consecutive_reset_failures,
            metrics=metrics,
        )

        if args.mode == 'single':
            result = await controller.run_single(load_items(args.item)[0])
            print_json(result.to_payload())
            return EXIT_OK

        if args.mode == 'test-load':
            print_json(await controller.run_partial_load(load_items(args.item)[0]))
            return EXIT_OK

        logger.info(f"Starting {provider.name} queue run against {settings.queue_api_url}")
        summary = await controller.run_queue()
        print_json({**summary.to_dict(), 'metrics': metrics.get_summary()})
        return EXIT_OK if summary.errors == 0 else EXIT_FAILED

    except EmptyQueueError as e:
        logger.warning(str(e))
        return EXIT_EMPTY_QUEUE
    except TabNotFoundError as e:
        logger.error(str(e))
        return EXIT_NO_TAB
    except QuoteAutomationError as e:
        logger.error(f"Execution failed: {e}")
        return EXIT_FAILED
    except httpx.HTTPError as e:
        logger.error(f"Quote queue unavailable: {e}")
        return EXIT_FAILED
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return EXIT_FAILED
    finally:
        await queue.close()
        if args.mode in BROWSER_MODES:
            await browser.close()


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
