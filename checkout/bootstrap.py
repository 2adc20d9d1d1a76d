"""Composition root: the only place that builds concrete clients.

``main.create_app`` builds a ``Services`` from settings unless handed one;
tests build one around doubles.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from checkout.charge import ChargeInitiator
from checkout.config import Settings
from checkout.database import create_engine, create_session_factory, init_db
from checkout.messaging import OrderStatusSubscription, StatusPublisher
from checkout.notifier import PollingWatcher, PushWatcher, StatusWatcher
from checkout.postback import PostbackIngestor
from checkout.processor import ProcessorClient
from checkout.store import OrderStore

logger = structlog.get_logger(component="bootstrap")


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    store: OrderStore
    processor: ProcessorClient
    initiator: ChargeInitiator
    ingestor: PostbackIngestor
    publisher: Optional[StatusPublisher] = None

    def watcher(self) -> StatusWatcher:
        """Server-side watcher for the event stream; the order row already exists, so no grace delay."""
        if self.settings.notify_strategy == "push":
            url = self.settings.rabbitmq_url
            return PushWatcher(
                lambda: OrderStatusSubscription(url),
                fetch_status=self.store.get_snapshot,
                fallback_interval=self.settings.poll_interval,
            )
        return PollingWatcher(self.store.get_snapshot, interval=self.settings.poll_interval, initial_delay=0)

    async def startup(self) -> None:
        if self.settings.create_tables:
            await init_db(self.engine)
        if self.publisher is not None:
            try:
                await self.publisher.connect()
            except Exception as e:
                # publish_status reconnects on demand
                logger.warning("rabbitmq_setup_failed", error=str(e))

    async def shutdown(self) -> None:
        await self.initiator.drain()
        await self.processor.aclose()
        if self.publisher is not None:
            await self.publisher.close()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    processor_transport: Optional[httpx.AsyncBaseTransport] = None,
    with_messaging: bool = True,
) -> Services:
    engine = create_engine(settings.database_url)
    store = OrderStore(create_session_factory(engine))
    processor = ProcessorClient(settings.processor_url, timeout=settings.processor_timeout, transport=processor_transport)
    publisher = StatusPublisher(settings.rabbitmq_url) if with_messaging else None
    return Services(
        settings=settings,
        engine=engine,
        store=store,
        processor=processor,
        initiator=ChargeInitiator(settings, store, processor),
        ingestor=PostbackIngestor(
            store,
            secret=settings.postback_secret or settings.processor_restrict_key,
            relaxed=settings.postback_relaxed,
            publisher=publisher,
        ),
        publisher=publisher,
    )
