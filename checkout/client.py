from typing import Optional
from uuid import uuid4

import httpx
import structlog

from checkout.exceptions import CheckoutError, ValidationError
from checkout.models import OrderStatus
from checkout.notifier import (
    DEFAULT_DWELL,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_WATCH_TIMEOUT,
    CheckoutResult,
    PollingWatcher,
    wait_for_outcome,
)
from checkout.store import StatusSnapshot

logger = structlog.get_logger(component="client")


class CheckoutClient:
    """Shopper side of the handshake: submit, then poll until resolved or timed out."""

    def __init__(
        self,
        base_url: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        timeout: float = DEFAULT_WATCH_TIMEOUT,
        dwell: float = DEFAULT_DWELL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.poll_interval = poll_interval
        self.initial_delay = initial_delay
        self.timeout = timeout
        self.dwell = dwell
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=30.0)

    async def __aenter__(self) -> "CheckoutClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def submit_payment(self, payload: dict) -> str:
        response = await self._http.post("/api/process-payment", json=payload)
        body = response.json()
        if response.status_code == 400:
            raise ValidationError(body.get("field", ""), body.get("message", "Invalid payment details"))
        if response.is_error:
            raise CheckoutError(body.get("message", "Failed to process payment"))
        return body["orderId"]

    async def fetch_status(self, order_id: str) -> Optional[StatusSnapshot]:
        response = await self._http.post("/api/order-status", json={"orderId": order_id})
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        return StatusSnapshot(
            order_id=body["orderId"],
            status=OrderStatus(body["status"]),
            transaction_id=body.get("transactionId"),
            auth_code=body.get("authCode"),
            response_text=body.get("responseText"),
        )

    async def checkout(self, payload: dict) -> CheckoutResult:
        payload = dict(payload)
        if not payload.get("orderId"):
            payload["orderId"] = str(uuid4())
        order_id = await self.submit_payment(payload)
        logger.info("checkout_submitted", order_id=order_id)

        watcher = PollingWatcher(self.fetch_status, interval=self.poll_interval, initial_delay=self.initial_delay)
        return await wait_for_outcome(order_id, watcher, timeout=self.timeout, dwell=self.dwell)
