from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String
from datetime import datetime, timezone
import enum

from checkout.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    DECLINED = "declined"  # client-observed only
    FAILED = "failed"
    TIMEOUT = "timeout"  # client-observed only

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.PAID, OrderStatus.FAILED)


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String(64), primary_key=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    shipping_address = Column(JSON, nullable=False)
    billing_address = Column(JSON, nullable=False)
    status = Column(
        Enum(OrderStatus, name="order_status", values_callable=lambda e: [m.value for m in e]),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    transaction_id = Column(String(64), unique=True, nullable=True)
    auth_code = Column(String(32), nullable=True)
    response_text = Column(String(255), nullable=True)
    avs_result = Column(String(16), nullable=True)
    cvv_result = Column(String(16), nullable=True)
    processor_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.order_id"), index=True, nullable=False)
    product_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False, default="")
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)


class PaymentLog(Base):
    """Append-only audit of every accepted postback."""

    __tablename__ = "payment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.order_id"), index=True, nullable=False)
    transaction_id = Column(String(64), index=True, nullable=False)
    payment_status = Column(String(16), nullable=False)  # completed, failed, pending
    outcome = Column(String(16), nullable=False)
    trusted = Column(Boolean, nullable=False, default=True)
    processor_response = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
