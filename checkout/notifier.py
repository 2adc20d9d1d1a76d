"""Client Notifier.

Watches one order until it reaches a terminal status, either by polling the
store or by a push subscription, and turns the result into what the shopper
sees. If nothing terminal shows up within the watch window the outcome is a
timeout. That is not a decline: the charge may still be in flight, or may
have succeeded without the postback reaching us.
"""

import asyncio
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog

from checkout.models import OrderStatus
from checkout.store import StatusSnapshot

logger = structlog.get_logger(component="notifier")

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_INITIAL_DELAY = 5.0
DEFAULT_WATCH_TIMEOUT = 120.0
DEFAULT_DWELL = 5.0


class CheckoutOutcome(enum.Enum):
    PAID = "paid"
    DECLINED = "declined"
    TIMEOUT = "timeout"


USER_MESSAGES = {
    CheckoutOutcome.PAID: "Payment approved. Thank you for your order!",
    CheckoutOutcome.DECLINED: "Payment declined - please check your card details and try again.",
    CheckoutOutcome.TIMEOUT: (
        "Payment processing timeout. Please check your email for confirmation "
        "or contact support if the charge appears on your card."
    ),
}
PROCESSING_MESSAGE = "Payment processing"


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    outcome: CheckoutOutcome
    message: str
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    dwell_seconds: float = DEFAULT_DWELL

    @property
    def status(self) -> OrderStatus:
        return OrderStatus(self.outcome.value)


def decline_message(response_text: Optional[str]) -> str:
    if response_text:
        return f"Payment declined: {response_text}. Please check your card details and try again."
    return USER_MESSAGES[CheckoutOutcome.DECLINED]


def status_message(snapshot: StatusSnapshot) -> str:
    if snapshot.status == OrderStatus.PAID:
        return USER_MESSAGES[CheckoutOutcome.PAID]
    if snapshot.status == OrderStatus.FAILED:
        return decline_message(snapshot.response_text)
    return PROCESSING_MESSAGE


def result_from_snapshot(snapshot: StatusSnapshot, dwell: float = DEFAULT_DWELL) -> CheckoutResult:
    outcome = CheckoutOutcome.PAID if snapshot.status == OrderStatus.PAID else CheckoutOutcome.DECLINED
    return CheckoutResult(
        order_id=snapshot.order_id,
        outcome=outcome,
        message=status_message(snapshot),
        transaction_id=snapshot.transaction_id,
        auth_code=snapshot.auth_code,
        dwell_seconds=dwell,
    )


def timeout_result(order_id: str, dwell: float = DEFAULT_DWELL) -> CheckoutResult:
    return CheckoutResult(
        order_id=order_id,
        outcome=CheckoutOutcome.TIMEOUT,
        message=USER_MESSAGES[CheckoutOutcome.TIMEOUT],
        dwell_seconds=dwell,
    )


FetchStatus = Callable[[str], Awaitable[Optional[StatusSnapshot]]]
OnStatus = Callable[[StatusSnapshot], None]


class StatusWatcher(ABC):
    """Delivers status snapshots for one order until stopped.

    ``stop`` may be called any number of times; once it returns no further
    ``on_status`` call happens.
    """

    @abstractmethod
    async def start(self, order_id: str, on_status: OnStatus) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...


class PollingWatcher(StatusWatcher):
    def __init__(
        self,
        fetch_status: FetchStatus,
        interval: float = DEFAULT_POLL_INTERVAL,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
    ):
        self._fetch_status = fetch_status
        self.interval = interval
        self.initial_delay = initial_delay
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    async def start(self, order_id: str, on_status: OnStatus) -> None:
        self._stopped = False
        self._task = asyncio.create_task(self._poll(order_id, on_status), name=f"poll-{order_id}")

    async def _poll(self, order_id: str, on_status: OnStatus) -> None:
        # grace period so the first read does not race the order insert
        await asyncio.sleep(self.initial_delay)
        while not self._stopped:
            try:
                snapshot = await self._fetch_status(order_id)
            except Exception as e:
                logger.warning("status_poll_failed", order_id=order_id, error=str(e))
                snapshot = None
            if snapshot is not None and not self._stopped:
                on_status(snapshot)
                if snapshot.status.is_terminal:
                    return
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class Subscription(ABC):
    @abstractmethod
    async def start(self, order_id: str, callback: Callable[[StatusSnapshot], Awaitable[None]]) -> None: ...

    @abstractmethod
    async def unsubscribe(self) -> None: ...


class PushWatcher(StatusWatcher):
    """Subscribes to status events; re-reads the store once after subscribing
    so a transition published before the subscription existed is not lost.

    If the subscription cannot be set up the watcher polls ``fetch_status``
    instead, or delivers nothing and lets the caller time out.
    """

    def __init__(
        self,
        subscription_factory: Callable[[], Subscription],
        fetch_status: Optional[FetchStatus] = None,
        fallback_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self._subscription_factory = subscription_factory
        self._fetch_status = fetch_status
        self.fallback_interval = fallback_interval
        self._subscription: Optional[Subscription] = None
        self._fallback: Optional[PollingWatcher] = None
        self._stopped = False

    async def start(self, order_id: str, on_status: OnStatus) -> None:
        self._stopped = False

        async def deliver(snapshot: StatusSnapshot) -> None:
            if not self._stopped:
                on_status(snapshot)

        self._subscription = self._subscription_factory()
        try:
            await self._subscription.start(order_id, deliver)
        except Exception as e:
            logger.warning("status_subscribe_failed", order_id=order_id, error=str(e))
            if self._fetch_status is not None:
                self._fallback = PollingWatcher(self._fetch_status, interval=self.fallback_interval, initial_delay=0)
                await self._fallback.start(order_id, on_status)
            return

        if self._fetch_status is not None:
            snapshot = await self._fetch_status(order_id)
            if snapshot is not None:
                await deliver(snapshot)

    async def stop(self) -> None:
        self._stopped = True
        subscription, self._subscription = self._subscription, None
        fallback, self._fallback = self._fallback, None
        if fallback is not None:
            await fallback.stop()
        if subscription is not None:
            await subscription.unsubscribe()


async def wait_for_outcome(
    order_id: str,
    watcher: StatusWatcher,
    timeout: float = DEFAULT_WATCH_TIMEOUT,
    dwell: float = DEFAULT_DWELL,
) -> CheckoutResult:
    """Resolve to paid, declined or timeout. The watcher is always stopped."""
    resolved: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_status(snapshot: StatusSnapshot) -> None:
        if snapshot.status.is_terminal and not resolved.done():
            resolved.set_result(snapshot)

    async def watch() -> StatusSnapshot:
        await watcher.start(order_id, on_status)
        return await resolved

    try:
        snapshot = await asyncio.wait_for(watch(), timeout)
    except asyncio.TimeoutError:
        logger.warning("order_watch_timeout", order_id=order_id, timeout=timeout)
        return timeout_result(order_id, dwell)
    finally:
        await watcher.stop()

    result = result_from_snapshot(snapshot, dwell)
    logger.info(
        "order_resolved",
        order_id=order_id,
        outcome=result.outcome.value,
        transaction_id=result.transaction_id,
    )
    return result


def snapshot_event(snapshot: StatusSnapshot) -> dict:
    return {
        "orderId": snapshot.order_id,
        "status": snapshot.status.value,
        "transactionId": snapshot.transaction_id,
        "authCode": snapshot.auth_code,
        "message": status_message(snapshot),
    }


async def order_status_events(
    order_id: str,
    watcher: StatusWatcher,
    timeout: float = DEFAULT_WATCH_TIMEOUT,
) -> AsyncIterator[dict]:
    """Yield each distinct status for an order, ending on a terminal status
    or with a ``timeout`` event."""
    queue: asyncio.Queue = asyncio.Queue()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_status = None
    try:
        await watcher.start(order_id, queue.put_nowait)
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                yield {
                    "orderId": order_id,
                    "status": OrderStatus.TIMEOUT.value,
                    "message": USER_MESSAGES[CheckoutOutcome.TIMEOUT],
                }
                return
            try:
                snapshot = await asyncio.wait_for(queue.get(), remaining)
            except asyncio.TimeoutError:
                continue
            if snapshot.status != last_status:
                last_status = snapshot.status
                yield snapshot_event(snapshot)
            if snapshot.status.is_terminal:
                return
    finally:
        await watcher.stop()
