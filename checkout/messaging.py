import json
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import aio_pika
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from checkout.models import OrderStatus
from checkout.notifier import Subscription
from checkout.store import StatusSnapshot

logger = structlog.get_logger(component="messaging")

ORDER_EXCHANGE = "order_exchange"


def status_routing_key(order_id: str) -> str:
    return f"order.status.{order_id}"


def status_event(snapshot: StatusSnapshot) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": "OrderStatusChanged",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "order_id": snapshot.order_id,
        "status": snapshot.status.value,
        "transaction_id": snapshot.transaction_id,
        "auth_code": snapshot.auth_code,
        "response_text": snapshot.response_text,
    }


def snapshot_from_event(event: dict) -> StatusSnapshot:
    return StatusSnapshot(
        order_id=event["order_id"],
        status=OrderStatus(event["status"]),
        transaction_id=event.get("transaction_id"),
        auth_code=event.get("auth_code"),
        response_text=event.get("response_text"),
    )


class StatusPublisher:
    """Publishes order status transitions on the ``order_exchange`` topic exchange."""

    def __init__(self, url: str):
        self._url = url
        self._connection = None
        self._channel = None
        self._exchange = None

    async def connect(self) -> None:
        self._connection = await aio_pika.connect_robust(self._url)
        self._channel = await self._connection.channel()
        self._exchange = await self._channel.declare_exchange(
            ORDER_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True
        )
        logger.info("rabbitmq_ready", exchange=ORDER_EXCHANGE)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    async def publish_status(self, snapshot: StatusSnapshot) -> None:
        if self._exchange is None:
            await self.connect()
        event = status_event(snapshot)
        message = aio_pika.Message(
            json.dumps(event).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(message, routing_key=status_routing_key(snapshot.order_id))
        logger.info("status_published", order_id=snapshot.order_id, status=snapshot.status.value)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = self._channel = self._exchange = None


StatusCallback = Callable[[StatusSnapshot], Awaitable[None]]


class OrderStatusSubscription(Subscription):
    """Consumes status events for a single order from an exclusive, auto-deleted queue."""

    def __init__(self, url: str):
        self._url = url
        self._connection = None
        self._queue = None
        self._consumer_tag: Optional[str] = None
        self._closed = False

    async def start(self, order_id: str, callback: StatusCallback) -> None:
        self._connection = await aio_pika.connect_robust(self._url)
        channel = await self._connection.channel()
        exchange = await channel.declare_exchange(ORDER_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        self._queue = await channel.declare_queue(exclusive=True, auto_delete=True)
        await self._queue.bind(exchange, status_routing_key(order_id))

        async def on_message(message: aio_pika.IncomingMessage):
            async with message.process():
                if self._closed:
                    return
                try:
                    snapshot = snapshot_from_event(json.loads(message.body.decode()))
                except (ValueError, KeyError) as e:
                    logger.warning("status_event_unreadable", order_id=order_id, error=str(e))
                    return
                await callback(snapshot)

        self._consumer_tag = await self._queue.consume(on_message)
        logger.info("order_subscribed", order_id=order_id)

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._queue is not None and self._consumer_tag is not None:
                await self._queue.cancel(self._consumer_tag)
        finally:
            if self._connection is not None:
                await self._connection.close()
