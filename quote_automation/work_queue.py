"""HTTP client for the remote quote queue.

The queue is the only persistent state: the automation reads pending items
from it and patches their status as it works. No claim or lock token exists,
so one automation session per provider queue is assumed.
"""

import time
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from quote_automation.config import DEFAULT_QUEUE_API_URL
from quote_automation.errors import RemoteUpdateFailed
from quote_automation.models import QueueStatus, WorkItem


QUEUE_PATHS = {
    "lex": "/api/lex-autolease/quote-queue",
    "drivalia": "/api/drivalia/quote-queue",
}

# POST body key the queue endpoint expects for new items
ENQUEUE_KEYS = {
    "lex": "vehicles",
    "drivalia": "items",
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


def queue_path(provider: str) -> str:
    try:
        return QUEUE_PATHS[provider.lower()]
    except KeyError:
        raise ValueError(f"No quote queue for provider '{provider}'") from None


def summarize(items: Iterable[WorkItem]) -> Dict[str, int]:
    """Count items per status"""
    counts = {status.value: 0 for status in QueueStatus}
    for item in items:
        counts[QueueStatus(item.status).value] += 1
    counts["total"] = sum(counts.values())
    return counts


def to_queue_record(item: Union[WorkItem, Dict[str, Any]]) -> Dict[str, Any]:
    """Flat record in the shape the queue endpoints store"""
    if isinstance(item, dict):
        item = WorkItem.model_validate(item)
    codes = item.selection_codes
    record = {
        "vehicleId": item.vehicle_id,
        "capCode": codes.cap_code,
        "lexMakeCode": codes.make_code,
        "lexModelCode": codes.model_code,
        "lexVariantCode": codes.variant_code,
        "manufacturer": item.manufacturer,
        "model": item.model,
        "variant": item.variant,
        "term": item.term,
        "mileage": item.mileage,
        "contractType": item.contract_type_code,
        "paymentPlan": item.payment_plan_code,
        "co2": item.co2,
        "customOtrp": item.price_override,
    }
    return {key: value for key, value in record.items() if value is not None}


class WorkQueueClient:
    """Reads and patches the remote quote queue"""

    def __init__(
        self,
        base_url: str = DEFAULT_QUEUE_API_URL,
        timeout: float = 30.0,
        status_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize queue client

        Args:
            base_url: Queue API origin
            timeout: Per-request timeout in seconds
            status_timeout: Timeout for a single status write, which is never retried
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.status_timeout = status_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self) -> "WorkQueueClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _send(self, method: str, path: str, **kwargs) -> Any:
        response = await self._client.request(method, path, **kwargs)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
        reraise=True
    )
    async def _request(self, method: str, path: str, **kwargs) -> Any:
        return await self._send(method, path, **kwargs)

    async def fetch_queue(self, provider: str) -> List[WorkItem]:
        """
        Every item in the provider's queue, freshly read.

        A millisecond timestamp query parameter and no-cache headers keep
        any CDN or browser cache from serving a stale queue.
        """
        data = await self._request(
            "GET",
            queue_path(provider),
            params={"_t": int(time.time() * 1000)},
            headers=NO_CACHE_HEADERS,
        )
        raw_items = data.get("queue", []) if isinstance(data, dict) else (data or [])

        items = []
        for raw in raw_items:
            try:
                items.append(WorkItem.model_validate(raw))
            except ValueError as e:
                vehicle_id = raw.get("vehicleId") if isinstance(raw, dict) else raw
                logger.warning(f"Skipping malformed {provider} queue item {vehicle_id!r}: {e}")
        return items

    async def fetch_pending(self, provider: str) -> List[WorkItem]:
        """Pending items in queue order"""
        pending = [item for item in await self.fetch_queue(provider) if item.status == QueueStatus.PENDING]
        logger.info(f"{provider}: {len(pending)} pending item(s) in queue")
        return pending

    async def update_status(
        self,
        provider: str,
        vehicle_id: str,
        status: QueueStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        identity: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Patch one item's status. Never raises.

        One attempt bounded by status_timeout: a lost write is logged and
        reported so the batch is never held up waiting on the queue.

        Args:
            provider: Queue to patch
            vehicle_id: Item to patch
            status: New status
            result: Extraction payload for complete
            error: Failure message for error
            identity: Extra fields that pick out the row (term, mileage, ...)

        Returns:
            True if the queue accepted the update
        """
        body: Dict[str, Any] = {**(identity or {}), "vehicleId": vehicle_id, "status": QueueStatus(status).value}
        if result is not None:
            body["result"] = result
        if error is not None:
            body["error"] = error

        try:
            await self._send("PATCH", queue_path(provider), json=body, timeout=self.status_timeout)
        except (httpx.HTTPError, ValueError) as e:
            failure = RemoteUpdateFailed(f"{provider}: could not mark {vehicle_id} {body['status']}: {e}")
            logger.error(str(failure))
            return False

        logger.debug(f"{provider}: {vehicle_id} -> {body['status']}")
        return True

    async def enqueue(self, provider: str, items: Iterable[Union[WorkItem, Dict[str, Any]]]) -> Dict[str, Any]:
        """
        Add items to the provider's queue.

        The queue endpoints replace any pending/running items with the new batch.
        """
        records = [to_queue_record(item) for item in items]
        if not records:
            raise ValueError("No items to enqueue")
        data = await self._request("POST", queue_path(provider), json={ENQUEUE_KEYS[provider.lower()]: records})
        logger.info(f"{provider}: queued {len(records)} item(s)")
        return data or {}

    async def clear(self, provider: str) -> None:
        """Remove pending and running items from the provider's queue"""
        await self._request("DELETE", queue_path(provider))
        logger.info(f"{provider}: cleared pending and running items")
