"""Charge Initiator.

Validates the submission, records the order as ``pending`` and hands the
authorization request to a detached task. The caller gets its order id back
without waiting on the processor; the outcome arrives later as a postback.
"""

import asyncio
from datetime import date
from typing import Callable, Optional

import structlog

from checkout.config import Settings
from checkout.exceptions import CheckoutError, PostbackFormatError
from checkout.postback import extract_postback, parse_payload
from checkout.processor import ProcessorClient, build_authorization_request
from checkout.schemas import ChargeResponse, PaymentRequest
from checkout.store import OrderStore
from checkout.validation import ValidatedPayment, validate_payment

logger = structlog.get_logger(component="charge")


class ChargeInitiator:
    def __init__(
        self,
        settings: Settings,
        store: OrderStore,
        processor: ProcessorClient,
        today: Optional[Callable[[], date]] = None,
    ):
        self._settings = settings
        self._store = store
        self._processor = processor
        self._today = today
        self._dispatches: set[asyncio.Task] = set()

    async def initiate(self, request: PaymentRequest) -> ChargeResponse:
        logger.info("payment_request_received", order_id=request.order_id, data=request.log_view())

        payment = validate_payment(request, today=self._today() if self._today else None)
        account, restrict_key = self._settings.processor_credentials()
        postback_secret = self._settings.callback_secret()

        # the row must exist before any postback can possibly arrive
        await self._store.create_order(payment)

        params = build_authorization_request(
            payment,
            account=account,
            restrict_key=restrict_key,
            postback_secret=postback_secret,
            postback_url=self._settings.postback_url,
        )
        self._detach(payment, params)

        return ChargeResponse(order_id=payment.order_id)

    def _detach(self, payment: ValidatedPayment, params: dict[str, str]) -> None:
        task = asyncio.create_task(self._dispatch(payment.order_id, params), name=f"dispatch-{payment.order_id}")
        self._dispatches.add(task)
        task.add_done_callback(self._dispatch_done)

    async def _dispatch(self, order_id: str, params: dict[str, str]) -> None:
        reply = await self._processor.submit(params)
        try:
            result = extract_postback(parse_payload(reply.text).fields)
        except PostbackFormatError as e:
            logger.warning("processor_reply_unparsed", order_id=order_id, error=str(e))
            return
        # informational only; the postback is what resolves the order
        logger.info(
            "processor_reply",
            order_id=order_id,
            transaction_id=result.transaction_id,
            outcome=result.outcome.value,
            message=result.message,
        )

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatches.discard(task)
        if task.cancelled():
            logger.warning("dispatch_cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is None:
            return
        if isinstance(error, CheckoutError):
            logger.error("dispatch_failed", task=task.get_name(), error=error.message, code=error.code)
        else:
            logger.error("dispatch_failed", task=task.get_name(), error=repr(error))

    @property
    def pending_dispatches(self) -> int:
        return len(self._dispatches)

    async def drain(self) -> None:
        """Wait for dispatches still in flight (shutdown, tests)."""
        if self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)
