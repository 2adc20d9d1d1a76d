from decimal import Decimal
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from checkout.sanitize import mask_card_number, mask_cvv


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddressIn(CamelModel):
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""


class Item(CamelModel):
    product_id: str = Field(..., examples=["product-1"])
    name: str = ""
    quantity: int = Field(..., gt=0, examples=[2])
    price: Decimal = Field(Decimal("0"), ge=0)


class PaymentRequest(CamelModel):
    """Raw checkout form. Field checks are left to ``validation.validate_payment``
    so that every failure names the offending wire field."""

    card_number: Optional[str] = None
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None
    cvv: Optional[str] = None
    amount: Optional[Union[int, float, str]] = None
    order_id: Optional[str] = None
    shipping_address: Optional[AddressIn] = None
    billing_address: Optional[AddressIn] = None
    same_as_shipping: bool = True
    items: List[Item] = Field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"PaymentRequest(order_id={self.order_id!r}, "
            f"card_number={mask_card_number(self.card_number or '')!r}, "
            f"cvv={mask_cvv(self.cvv or '')!r}, amount={self.amount!r})"
        )

    __str__ = __repr__

    def log_view(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class ChargeResponse(CamelModel):
    order_id: str
    status: str = "pending"
    message: str = "Payment processing initiated"


class PostbackResponse(CamelModel):
    success: bool
    status: str
    message: str
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    order_id: Optional[str] = None
    trusted: bool = True
    duplicate: bool = False


class OrderStatusRequest(CamelModel):
    order_id: str = Field(..., min_length=1)


class OrderStatusResponse(CamelModel):
    order_id: str
    status: str
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    response_text: Optional[str] = None
    message: Optional[str] = None
