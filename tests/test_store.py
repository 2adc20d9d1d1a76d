from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.exceptions import DuplicateOrderError, OrderNotFoundError, StoreWriteError, TransactionConflictError
from checkout.models import Order, OrderItem, OrderStatus, PaymentLog
from checkout.store import OrderStore, PaymentAttempt


def approved(transaction_id="TX-1001"):
    return PaymentAttempt(
        transaction_id=transaction_id,
        auth_code="A1B2C3",
        response_text="APPROVED",
        avs_result="Y",
        cvv_result="M",
        raw={"Success": "Y", "XactID": transaction_id},
    )


def declined(transaction_id="TX-1001"):
    return PaymentAttempt(
        transaction_id=transaction_id,
        response_text="Insufficient Funds",
        raw={"Success": "N", "XactID": transaction_id},
    )


async def count(session_factory, model, order_id):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model).where(model.order_id == order_id))


@pytest.mark.asyncio
async def test_create_order_starts_pending(store, session_factory, make_payment):
    """
    Test case 1: A new order is persisted as pending together with its items.
    """
    snapshot = await store.create_order(make_payment("order-1"))

    assert snapshot.status == OrderStatus.PENDING
    stored = await store.get_snapshot("order-1")
    assert stored.status == OrderStatus.PENDING
    assert stored.transaction_id is None
    assert await count(session_factory, OrderItem, "order-1") == 1

    async with session_factory() as session:
        order = await session.get(Order, "order-1")
    assert str(order.amount) == "19.99"
    assert order.billing_address["zipCode"] == "95014"


@pytest.mark.asyncio
async def test_create_order_rejects_reused_id(store, make_payment):
    """
    Test case 2: Order ids are never reused.
    """
    await store.create_order(make_payment("order-1"))

    with pytest.raises(DuplicateOrderError):
        await store.create_order(make_payment("order-1"))


@pytest.mark.asyncio
async def test_create_order_wraps_database_errors(make_payment):
    """
    Test case 3: Driver failures surface as StoreWriteError.
    """
    mock_session = AsyncMock(spec=AsyncSession)
    mock_session.flush.side_effect = OperationalError("INSERT INTO orders", {}, Exception("connection lost"))
    session_factory = MagicMock()
    session_factory.return_value.__aenter__.return_value = mock_session
    session_factory.return_value.__aexit__.return_value = False

    with pytest.raises(StoreWriteError) as exc_info:
        await OrderStore(session_factory).create_order(make_payment("order-1"))

    assert exc_info.value.http_status == 503
    mock_session.commit.assert_not_called()


@pytest.mark.asyncio
async def test_get_snapshot_unknown_order(store):
    assert await store.get_snapshot("nope") is None


@pytest.mark.asyncio
async def test_record_outcome_applies_once(store, session_factory, make_payment):
    """
    Test case 4: The first terminal outcome wins; later ones are duplicates.
    """
    await store.create_order(make_payment("order-1"))

    first = await store.record_outcome("order-1", OrderStatus.PAID, approved(), outcome="approved")
    assert first.applied is True
    assert first.duplicate is False
    assert first.snapshot.status == OrderStatus.PAID
    assert first.snapshot.auth_code == "A1B2C3"

    again = await store.record_outcome("order-1", OrderStatus.PAID, approved(), outcome="approved")
    assert again.applied is False
    assert again.duplicate is True

    late = await store.record_outcome("order-1", OrderStatus.FAILED, declined(), outcome="declined")
    assert late.applied is False
    assert late.duplicate is True
    assert late.snapshot.status == OrderStatus.PAID

    stored = await store.get_snapshot("order-1")
    assert stored.status == OrderStatus.PAID
    assert stored.response_text == "APPROVED"
    assert await count(session_factory, PaymentLog, "order-1") == 3


@pytest.mark.asyncio
async def test_record_outcome_writes_audit_row(store, session_factory, make_payment):
    """
    Test case 5: Each outcome is appended to payment_logs.
    """
    await store.create_order(make_payment("order-1"))

    await store.record_outcome("order-1", OrderStatus.FAILED, declined(), outcome="declined", trusted=False)

    async with session_factory() as session:
        log = (await session.scalars(select(PaymentLog).where(PaymentLog.order_id == "order-1"))).one()
    assert log.payment_status == "failed"
    assert log.outcome == "declined"
    assert log.trusted is False
    assert log.transaction_id == "TX-1001"
    assert log.processor_response == {"Success": "N", "XactID": "TX-1001"}


@pytest.mark.asyncio
async def test_pending_outcome_only_audits(store, session_factory, make_payment):
    """
    Test case 6: An indeterminate outcome leaves the order pending.
    """
    await store.create_order(make_payment("order-1"))

    recorded = await store.record_outcome("order-1", OrderStatus.PENDING, approved(), outcome="indeterminate")

    assert recorded.applied is False
    assert recorded.duplicate is False
    assert recorded.snapshot.status == OrderStatus.PENDING
    assert recorded.snapshot.transaction_id is None
    assert await count(session_factory, PaymentLog, "order-1") == 1


@pytest.mark.asyncio
async def test_record_outcome_unknown_order(store, session_factory):
    """
    Test case 7: Outcomes for unknown orders are rejected without writing anything.
    """
    with pytest.raises(OrderNotFoundError):
        await store.record_outcome("ghost", OrderStatus.PAID, approved(), outcome="approved")

    assert await count(session_factory, PaymentLog, "ghost") == 0


@pytest.mark.asyncio
async def test_transaction_id_stays_with_its_order(store, make_payment):
    """
    Test case 8: A transaction id bound to one order cannot resolve another.
    """
    await store.create_order(make_payment("order-1"))
    await store.create_order(make_payment("order-2"))
    await store.record_outcome("order-1", OrderStatus.PAID, approved("TX-1"), outcome="approved")

    with pytest.raises(TransactionConflictError) as exc_info:
        await store.record_outcome("order-2", OrderStatus.PAID, approved("TX-1"), outcome="approved")

    assert exc_info.value.existing_order_id == "order-1"
    assert (await store.get_snapshot("order-2")).status == OrderStatus.PENDING
