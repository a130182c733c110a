"""Runtime configuration.

Values come from the environment (a local .env file is loaded first). All
timeouts, poll intervals and fixed stabilisation delays live in `Timings`
so they can be recalibrated when a portal changes without touching driver
code. Any Timings field can be overridden with QUOTE_TIMING_<FIELD_NAME>.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field

load_dotenv()


DEFAULT_QUEUE_API_URL = "https://splitlease.netlify.app"
DEFAULT_CDP_URL = "http://127.0.0.1:9222"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}")
        return default


class Timings(BaseModel):
    """Every wait in the system, in seconds"""

    # Controller <-> driver messages
    probe_timeout: float = 2.0
    message_timeout: float = 180.0

    # Reset-to-fresh
    navigation_timeout: float = 30.0
    ready_poll_interval: float = 0.5
    ready_poll_attempts: int = 20

    # DOM waits (mutation-observed, bounded)
    element_timeout: float = 10.0
    options_timeout: float = 10.0
    calculation_timeout: float = 15.0
    dialog_timeout: float = 5.0
    network_idle_timeout: float = 5.0

    # Intercepted response polling after submission
    extraction_timeout: float = 5.0
    extraction_poll_interval: float = 0.1

    # Fixed stabilisation delays. Each one covers a point where the portal
    # gives no observable readiness signal.
    # Lex rebinds the dependent <select> handlers after its options arrive.
    settle_after_options: float = 0.3
    # Lex GetOptions keeps rewriting the form after the CO2 input appears.
    settle_after_variant: float = 0.8
    # Lex re-renders the CO2 panel after the WLTP dialog closes.
    settle_after_dialog: float = 0.5
    # Angular Material animates panels open; the inputs exist before they accept focus.
    settle_after_panel: float = 0.5

    @classmethod
    def from_env(cls) -> "Timings":
        overrides = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(f"QUOTE_TIMING_{name.upper()}")
            if raw is None:
                continue
            try:
                overrides[name] = field.annotation(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid QUOTE_TIMING_{name.upper()}={raw!r}")
        return cls(**overrides)

    @classmethod
    def instant(cls) -> "Timings":
        """Near-zero delays with short timeouts, for fixtures and dry runs"""
        return cls(
            probe_timeout=1.0,
            message_timeout=30.0,
            navigation_timeout=5.0,
            ready_poll_interval=0.05,
            ready_poll_attempts=20,
            element_timeout=3.0,
            options_timeout=3.0,
            calculation_timeout=3.0,
            dialog_timeout=2.0,
            network_idle_timeout=1.0,
            extraction_timeout=1.0,
            extraction_poll_interval=0.02,
            settle_after_options=0.0,
            settle_after_variant=0.0,
            settle_after_dialog=0.0,
            settle_after_panel=0.0,
        )


class Settings(BaseModel):
    """Process-wide settings resolved from the environment"""

    queue_api_url: str = DEFAULT_QUEUE_API_URL
    cdp_url: Optional[str] = DEFAULT_CDP_URL
    user_data_dir: Optional[str] = None
    headless: bool = False
    debug: bool = False
    drivalia_company_name: str = "Quote Test Ltd"
    # 0 keeps processing after every failed reset; N > 0 aborts the batch
    # after N consecutive failed resets and leaves the rest pending.
    max_consecutive_reset_failures: int = 0
    timings: Timings = Field(default_factory=Timings)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            queue_api_url=os.getenv("QUOTE_QUEUE_API_URL", DEFAULT_QUEUE_API_URL).rstrip("/"),
            cdp_url=os.getenv("QUOTE_CDP_URL", DEFAULT_CDP_URL) or None,
            user_data_dir=os.getenv("QUOTE_USER_DATA_DIR") or None,
            headless=_env_flag("HEADLESS"),
            debug=_env_flag("DEBUG"),
            drivalia_company_name=os.getenv("QUOTE_DRIVALIA_COMPANY_NAME", "Quote Test Ltd"),
            max_consecutive_reset_failures=_env_int("QUOTE_MAX_CONSECUTIVE_RESET_FAILURES", 0),
            timings=Timings.from_env(),
        )
