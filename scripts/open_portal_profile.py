import argparse
import asyncio
import os
import sys
from loguru import logger
from playwright.async_api import async_playwright

# Add project root to path
sys.path.append(os.getcwd())

from quote_automation.providers.drivalia_provider import DRIVALIA_NEW_QUOTE_URL
from quote_automation.providers.lex_provider import LEX_NEW_QUOTE_URL

PORTALS = {
    "lex": LEX_NEW_QUOTE_URL,
    "drivalia": DRIVALIA_NEW_QUOTE_URL,
}


async def main(profile_path: str, port: int, providers: list):
    logger.info("Opening quote portals in a persistent profile...")

    os.makedirs(profile_path, exist_ok=True)
    logger.info(f"Profile directory: {profile_path}")

    async with async_playwright() as p:
        # The debugging port lets main.py attach with --cdp-url while this window stays open
        context = await p.chromium.launch_persistent_context(
            user_data_dir=profile_path,
            headless=False,
            args=["--disable-blink-features=AutomationControlled", f"--remote-debugging-port={port}"],
            viewport={"width": 1280, "height": 800}
        )

        page = context.pages[0] if context.pages else await context.new_page()
        for index, name in enumerate(providers):
            tab = page if index == 0 else await context.new_page()
            await tab.goto(PORTALS[name])
            logger.info(f"Opened {name}: {PORTALS[name]}")

        print("\n" + "="*60)
        print("BROWSER READY FOR MANUAL LOGIN")
        print("="*60)
        print("1. Log in to each portal in its tab")
        print("2. Leave each tab on its new quote page")
        print(f"3. Run: python main.py --cdp-url http://127.0.0.1:{port} --provider <name>")
        print("4. Close the browser window when finished")
        print("="*60 + "\n")

        # Keep script running until the first tab is closed
        await page.wait_for_event("close", timeout=0)
        logger.info("Browser closed, session saved in profile")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Open the quote portals for manual login")
    parser.add_argument("--profile", default=os.path.join(os.getcwd(), "profiles", "quotes"), help="Persistent profile directory")
    parser.add_argument("--port", type=int, default=9222, help="Remote debugging port")
    parser.add_argument("--provider", action="append", choices=sorted(PORTALS), help="Portal to open (repeatable, default all)")
    args = parser.parse_args()

    try:
        asyncio.run(main(args.profile, args.port, args.provider or sorted(PORTALS)))
    except KeyboardInterrupt:
        print("\nExiting...")
