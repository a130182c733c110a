"""Error taxonomy for quote automation.

Every failure the controller can observe is a QuoteAutomationError. Driver
failures carry the name of the step that could not complete so the queue
record says where a vehicle got stuck.
"""

from typing import Optional


class QuoteAutomationError(Exception):
    """Base class for all quote automation failures"""


class TabNotFoundError(QuoteAutomationError):
    """No open tab for the provider answered the readiness probe"""

    def __init__(self, provider: str, new_quote_url: Optional[str] = None):
        self.provider = provider
        self.new_quote_url = new_quote_url
        hint = f" Open {new_quote_url} and log in, then retry." if new_quote_url else ""
        super().__init__(f"No ready {provider} tab found.{hint}")


class DriverNotReadyError(QuoteAutomationError):
    """Readiness polling was exhausted after a reset-to-fresh navigation"""

    def __init__(self, provider: str, attempts: int):
        self.provider = provider
        self.attempts = attempts
        super().__init__(f"{provider} page not ready after {attempts} readiness checks")


class AutomationError(QuoteAutomationError):
    """A DOM step failed"""

    def __init__(self, message: str, step: Optional[str] = None):
        self.step = step
        super().__init__(message)

    def __str__(self) -> str:
        message = super().__str__()
        if self.step and not message.startswith(f"[{self.step}]"):
            return f"[{self.step}] {message}"
        return message


class ExtractionAmbiguousError(QuoteAutomationError):
    """Neither the intercepted response nor the page text produced a quote"""


class EmptyQueueError(QuoteAutomationError):
    """The remote queue had nothing pending for the provider"""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"No pending {provider} quotes in the queue")


class RemoteUpdateFailed(QuoteAutomationError):
    """A status write to the remote queue failed (non-fatal)"""


class MessageTimeout(QuoteAutomationError):
    """A controller -> driver message got no answer in time"""

    def __init__(self, action: str, timeout: float):
        self.action = action
        self.timeout = timeout
        super().__init__(f"No response to '{action}' within {timeout:.1f}s")


class MessageDeliveryFailed(QuoteAutomationError):
    """The target tab closed or navigated while a message was in flight"""


class InvalidStatusTransition(QuoteAutomationError):
    """A work item status change would break monotonic progress"""

    def __init__(self, vehicle_id: str, current: str, requested: str):
        self.vehicle_id = vehicle_id
        self.current = current
        self.requested = requested
        super().__init__(f"{vehicle_id}: cannot move from {current} to {requested}")
