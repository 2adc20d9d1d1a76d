"""eProcessingNetwork transact API client.

The request shape below is the processor's contract, not ours: form encoded
fields, ``Postback.*`` values echoed back to the postback URL.
"""

import ssl
from dataclasses import dataclass

import httpx
import structlog

from checkout.exceptions import ProcessorTimeout, ProcessorUnavailable
from checkout.sanitize import sanitize
from checkout.validation import ValidatedPayment

logger = structlog.get_logger(component="processor")


@dataclass(frozen=True)
class ProcessorReply:
    status_code: int
    text: str


def build_authorization_request(
    payment: ValidatedPayment,
    account: str,
    restrict_key: str,
    postback_secret: str,
    postback_url: str | None = None,
) -> dict[str, str]:
    total = payment.amount_text
    description = f"Order {payment.order_id}"
    params = {
        "ePNAccount": account,
        "RestrictKey": restrict_key,
        "RequestType": "transaction",
        "TranType": "Sale",
        "IndustryType": "E",
        "Total": total,
        "Address": payment.billing_address.address,
        "Zip": payment.billing_address.zip_code,
        "CardNo": payment.card.card_number,
        "ExpMonth": payment.card.wire_expiry_month,
        "ExpYear": payment.card.wire_expiry_year,
        "CVV2Type": "1",
        "CVV2": payment.card.cvv,
        "OrderID": payment.order_id,
        "Description": description,
        "PostbackID": payment.order_id,
        "Postback.OrderID": payment.order_id,
        "Postback.Description": description,
        "Postback.Total": total,
        "Postback.RestrictKey": postback_secret,
        "NOMAIL_CARDHOLDER": "1",
        "NOMAIL_MERCHANT": "1",
    }
    if postback_url:
        params["PostbackURL"] = postback_url
    return params


def tls12_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


class ProcessorClient:
    def __init__(self, url: str, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self._client = httpx.AsyncClient(
            verify=tls12_context(),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "*/*"},
        )

    async def submit(self, params: dict[str, str]) -> ProcessorReply:
        order_id = params.get("OrderID")
        logger.info("processor_request", order_id=order_id, endpoint=self.url, params=sanitize(params))
        try:
            response = await self._client.post(self.url, data=params)
        except httpx.TimeoutException as e:
            raise ProcessorTimeout(f"Processor request timed out for order {order_id}") from e
        except httpx.HTTPError as e:
            raise ProcessorUnavailable(f"Processor unreachable for order {order_id}: {e}") from e

        logger.info(
            "processor_response",
            order_id=order_id,
            status=response.status_code,
            reason=response.reason_phrase,
        )
        if response.is_error:
            raise ProcessorUnavailable(f"Processor answered {response.status_code} for order {order_id}")
        return ProcessorReply(status_code=response.status_code, text=response.text)

    async def aclose(self) -> None:
        await self._client.aclose()
