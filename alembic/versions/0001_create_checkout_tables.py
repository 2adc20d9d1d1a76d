"""create orders, order_items and payment_logs

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

order_status = sa.Enum("pending", "paid", "declined", "failed", "timeout", name="order_status")


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(64), primary_key=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("shipping_address", sa.JSON(), nullable=False),
        sa.Column("billing_address", sa.JSON(), nullable=False),
        sa.Column("status", order_status, nullable=False),
        sa.Column("transaction_id", sa.String(64), nullable=True, unique=True),
        sa.Column("auth_code", sa.String(32), nullable=True),
        sa.Column("response_text", sa.String(255), nullable=True),
        sa.Column("avs_result", sa.String(16), nullable=True),
        sa.Column("cvv_result", sa.String(16), nullable=True),
        sa.Column("processor_response", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_orders_order_id", "orders", ["order_id"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.order_id"), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "payment_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.order_id"), nullable=False),
        sa.Column("transaction_id", sa.String(64), nullable=False),
        sa.Column("payment_status", sa.String(16), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("trusted", sa.Boolean(), nullable=False),
        sa.Column("processor_response", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_payment_logs_order_id", "payment_logs", ["order_id"])
    op.create_index("ix_payment_logs_transaction_id", "payment_logs", ["transaction_id"])


def downgrade() -> None:
    op.drop_index("ix_payment_logs_transaction_id", table_name="payment_logs")
    op.drop_index("ix_payment_logs_order_id", table_name="payment_logs")
    op.drop_table("payment_logs")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_order_id", table_name="orders")
    op.drop_table("orders")
    order_status.drop(op.get_bind(), checkfirst=True)
