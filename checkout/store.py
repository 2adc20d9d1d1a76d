"""Order Store: the single source of truth for order payment status.

Two writers only. ``create_order`` runs once per order at submit time and
``record_outcome`` resolves it when the processor's postback arrives. Nothing
here caches status; every read goes back to the database.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout.exceptions import DuplicateOrderError, OrderNotFoundError, StoreWriteError, TransactionConflictError
from checkout.models import Order, OrderItem, OrderStatus, PaymentLog, utcnow
from checkout.validation import ValidatedPayment

logger = structlog.get_logger(component="order_store")

PAYMENT_LOG_STATUS = {
    OrderStatus.PAID: "completed",
    OrderStatus.FAILED: "failed",
    OrderStatus.PENDING: "pending",
}


@dataclass(frozen=True)
class StatusSnapshot:
    order_id: str
    status: OrderStatus
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    response_text: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "StatusSnapshot":
        return cls(
            order_id=order.order_id,
            status=order.status,
            transaction_id=order.transaction_id,
            auth_code=order.auth_code,
            response_text=order.response_text,
        )


@dataclass(frozen=True)
class PaymentAttempt:
    transaction_id: str
    auth_code: Optional[str] = None
    response_text: Optional[str] = None
    avs_result: Optional[str] = None
    cvv_result: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordedOutcome:
    snapshot: StatusSnapshot
    applied: bool
    duplicate: bool


class OrderStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_order(self, payment: ValidatedPayment) -> StatusSnapshot:
        order = Order(
            order_id=payment.order_id,
            amount=payment.amount,
            shipping_address=payment.shipping_address.to_dict(),
            billing_address=payment.billing_address.to_dict(),
            status=OrderStatus.PENDING,
        )
        async with self._session_factory() as session:
            try:
                session.add(order)
                await session.flush()
                session.add_all(
                    [
                        OrderItem(
                            order_id=payment.order_id,
                            product_id=item.product_id,
                            name=item.name,
                            quantity=item.quantity,
                            unit_price=item.price,
                        )
                        for item in payment.items
                    ]
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if await session.get(Order, payment.order_id) is not None:
                    raise DuplicateOrderError(payment.order_id) from e
                raise StoreWriteError(f"Failed to insert order {payment.order_id}: {e}") from e
            except SQLAlchemyError as e:
                raise StoreWriteError(f"Failed to insert order {payment.order_id}: {e}") from e

        logger.info(
            "order_created",
            order_id=payment.order_id,
            amount=payment.amount_text,
            items=len(payment.items),
        )
        return StatusSnapshot(order_id=payment.order_id, status=OrderStatus.PENDING)

    async def get_snapshot(self, order_id: str) -> Optional[StatusSnapshot]:
        async with self._session_factory() as session:
            order = await session.get(Order, order_id)
            return StatusSnapshot.from_order(order) if order else None

    async def record_outcome(
        self,
        order_id: str,
        target_status: OrderStatus,
        attempt: PaymentAttempt,
        outcome: str,
        trusted: bool = True,
    ) -> RecordedOutcome:
        """Apply a postback outcome and append it to the payment log, in one transaction.

        Only ``pending`` rows are updated, so a terminal order is never
        changed again; re-delivered or late postbacks come back with
        ``duplicate=True``. A pending ``target_status`` only records the
        audit row.
        """
        async with self._session_factory() as session:
            try:
                owner = await session.scalar(
                    select(Order.order_id).where(
                        Order.transaction_id == attempt.transaction_id,
                        Order.order_id != order_id,
                    )
                )
                if owner is not None:
                    raise TransactionConflictError(attempt.transaction_id, order_id, owner)

                applied = False
                if target_status.is_terminal:
                    result = await session.execute(
                        update(Order)
                        .where(Order.order_id == order_id, Order.status == OrderStatus.PENDING)
                        .values(
                            status=target_status,
                            transaction_id=attempt.transaction_id,
                            auth_code=attempt.auth_code,
                            response_text=attempt.response_text,
                            avs_result=attempt.avs_result,
                            cvv_result=attempt.cvv_result,
                            processor_response=attempt.raw,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    applied = result.rowcount == 1

                order = await session.get(Order, order_id)
                if order is None:
                    raise OrderNotFoundError(order_id)

                session.add(
                    PaymentLog(
                        order_id=order_id,
                        transaction_id=attempt.transaction_id,
                        payment_status=PAYMENT_LOG_STATUS[target_status],
                        outcome=outcome,
                        trusted=trusted,
                        processor_response=attempt.raw,
                    )
                )
                snapshot = StatusSnapshot.from_order(order)
                await session.commit()
            except IntegrityError as e:
                raise StoreWriteError(f"Conflicting write for order {order_id}: {e}") from e
            except SQLAlchemyError as e:
                raise StoreWriteError(f"Failed to update order {order_id}: {e}") from e

        return RecordedOutcome(
            snapshot=snapshot,
            applied=applied,
            duplicate=not applied and snapshot.status.is_terminal,
        )
