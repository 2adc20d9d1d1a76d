import dataclasses
import io
from unittest.mock import AsyncMock

import httpx
import pytest

from checkout.charge import ChargeInitiator
from checkout.exceptions import ConfigurationError, DuplicateOrderError, ValidationError
from checkout.log import configure_logging
from checkout.models import OrderStatus
from checkout.processor import ProcessorReply
from checkout.schemas import PaymentRequest


def request_from(payload):
    return PaymentRequest.model_validate(payload)


@pytest.mark.asyncio
async def test_initiate_returns_pending_and_dispatches(services, fake_processor, make_payload):
    """
    Test case 1: The order is stored as pending and the authorization goes out in the background.
    """
    response = await services.initiator.initiate(request_from(make_payload("order-1")))

    assert response.order_id == "order-1"
    assert response.status == "pending"
    assert response.message == "Payment processing initiated"

    await services.initiator.drain()
    assert services.initiator.pending_dispatches == 0
    assert len(fake_processor.requests) == 1
    sent = fake_processor.requests[0]
    assert sent["ePNAccount"] == "080880"
    assert sent["RestrictKey"] == "restrict-key-123"
    assert sent["TranType"] == "Sale"
    assert sent["Total"] == "19.99"
    assert sent["CardNo"] == "4242424242424242"
    assert sent["ExpMonth"] == "12"
    assert sent["ExpYear"] == "35"
    assert sent["CVV2"] == "123"
    assert sent["Zip"] == "95014"
    assert sent["Postback.OrderID"] == "order-1"
    assert sent["Postback.RestrictKey"] == services.settings.postback_secret
    assert sent["PostbackURL"] == "https://shop.test/api/payment-postback"

    # the synchronous reply is informational; only a postback resolves the order
    assert (await services.store.get_snapshot("order-1")).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_order_exists_before_dispatch(services, make_payload):
    """
    Test case 2: The pending row is committed before the processor is contacted.
    """
    seen = []

    async def submit(params):
        seen.append(await services.store.get_snapshot(params["OrderID"]))
        return ProcessorReply(status_code=200, text="")

    services.processor.submit = AsyncMock(side_effect=submit)

    await services.initiator.initiate(request_from(make_payload("order-1")))
    await services.initiator.drain()

    assert len(seen) == 1
    assert seen[0] is not None
    assert seen[0].status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_invalid_input_touches_nothing(services, fake_processor, make_payload):
    """
    Test case 3: Validation failures never reach the store or the processor.
    """
    with pytest.raises(ValidationError) as exc_info:
        await services.initiator.initiate(request_from(make_payload("order-1", cardNumber="1234")))

    assert exc_info.value.field == "cardNumber"
    await services.initiator.drain()
    assert fake_processor.requests == []
    assert await services.store.get_snapshot("order-1") is None


@pytest.mark.asyncio
async def test_missing_credentials(services, fake_processor, make_payload):
    """
    Test case 4: Missing processor credentials abort before any write.
    """
    settings = dataclasses.replace(services.settings, processor_account=None)
    initiator = ChargeInitiator(settings, services.store, services.processor)

    with pytest.raises(ConfigurationError) as exc_info:
        await initiator.initiate(request_from(make_payload("order-1")))

    assert exc_info.value.public_message.startswith("Payment service is temporarily unavailable")
    assert await services.store.get_snapshot("order-1") is None
    assert fake_processor.requests == []


@pytest.mark.asyncio
async def test_duplicate_order_id_is_not_charged_twice(services, fake_processor, make_payload):
    await services.initiator.initiate(request_from(make_payload("order-1")))

    with pytest.raises(DuplicateOrderError):
        await services.initiator.initiate(request_from(make_payload("order-1")))

    await services.initiator.drain()
    assert len(fake_processor.requests) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [httpx.ConnectError, httpx.ReadTimeout])
async def test_processor_failure_leaves_order_pending(services, fake_processor, make_payload, error):
    """
    Test case 5: Dispatch errors are logged only; the order waits for the timeout path.
    """
    fake_processor.error = error

    response = await services.initiator.initiate(request_from(make_payload("order-1")))
    await services.initiator.drain()

    assert response.status == "pending"
    assert (await services.store.get_snapshot("order-1")).status == OrderStatus.PENDING
    assert services.initiator.pending_dispatches == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("amount, total", [(9.5, "9.50"), (0.5, "0.50"), ("100", "100.00")])
async def test_total_is_sent_with_two_decimals(services, fake_processor, make_payload, amount, total):
    await services.initiator.initiate(request_from(make_payload("order-1", amount=amount)))
    await services.initiator.drain()

    assert fake_processor.requests[0]["Total"] == total
    assert fake_processor.requests[0]["Postback.Total"] == total


@pytest.mark.asyncio
async def test_card_data_is_masked_in_logs(services, make_payload):
    """
    Test case 6: Neither the request log nor the processor log carries the card in clear.
    """
    stream = io.StringIO()
    configure_logging("INFO", "json", stream=stream)

    await services.initiator.initiate(request_from(make_payload("order-1")))
    await services.initiator.drain()

    output = stream.getvalue()
    assert "payment_request_received" in output
    assert "processor_request" in output
    assert "4242424242424242" not in output
    assert '"cvv": "123"' not in output
    assert '"CVV2": "123"' not in output
    assert "restrict-key-123" not in output
    assert "************4242" in output
