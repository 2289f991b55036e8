"""Create users, pricing_plans and the billing ledger tables.

Revision ID: 7c41d2e9b0a3
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "7c41d2e9b0a3"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True, unique=True, index=True),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True, unique=True, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "pricing_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("card_title", sa.String(200), nullable=False, server_default=""),
        sa.Column("provider", sa.String(20), nullable=False, server_default="stripe"),
        sa.Column("stripe_price_id", sa.String(255), nullable=True, index=True),
        sa.Column("stripe_product_id", sa.String(255), nullable=True),
        sa.Column("creem_product_id", sa.String(255), nullable=True, index=True),
        sa.Column("payment_type", sa.String(20), nullable=True),
        sa.Column("recurring_interval", sa.String(20), nullable=True),
        sa.Column("price", sa.String(32), nullable=True),
        sa.Column("currency", sa.String(10), nullable=True),
        sa.Column("benefits_jsonb", sa.JSON, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pricing_plans_provider", "pricing_plans", ["provider"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("provider_order_id", sa.String(255), nullable=False),
        sa.Column("payment_reference", sa.String(255), nullable=True, index=True),
        sa.Column("order_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(40), nullable=False, server_default="succeeded"),
        sa.Column("amount_subtotal", sa.String(32), nullable=True),
        sa.Column("amount_discount", sa.String(32), nullable=True),
        sa.Column("amount_tax", sa.String(32), nullable=True),
        sa.Column("amount_total", sa.String(32), nullable=True),
        sa.Column("currency", sa.String(10), nullable=True),
        sa.Column("plan_id", sa.String(36), nullable=True),
        sa.Column("price_id", sa.String(255), nullable=True),
        sa.Column("product_id", sa.String(255), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True, index=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("provider", "provider_order_id", name="uq_orders_provider_order"),
    )
    op.create_index("ix_orders_provider_type", "orders", ["provider", "order_type"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("plan_id", sa.String(36), nullable=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("subscription_id", sa.String(255), nullable=False, unique=True, index=True),
        sa.Column("customer_id", sa.String(255), nullable=True, index=True),
        sa.Column("product_id", sa.String(255), nullable=True),
        sa.Column("price_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(40), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "usage",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True),
        sa.Column("subscription_credits_balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("one_time_credits_balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("balance_jsonb", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("subscription_credits_balance >= 0", name="ck_usage_subscription_non_negative"),
        sa.CheckConstraint("one_time_credits_balance >= 0", name="ck_usage_one_time_non_negative"),
    )

    op.create_table(
        "credit_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("bucket", sa.String(20), nullable=False),
        sa.Column("one_time_balance_after", sa.Integer, nullable=False),
        sa.Column("subscription_balance_after", sa.Integer, nullable=False),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("related_order_id", sa.String(36), nullable=True, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, index=True),
    )
    op.create_index("ix_credit_logs_user_type", "credit_logs", ["user_id", "type"])


def downgrade() -> None:
    op.drop_index("ix_credit_logs_user_type", table_name="credit_logs")
    op.drop_table("credit_logs")
    op.drop_table("usage")
    op.drop_table("subscriptions")
    op.drop_index("ix_orders_provider_type", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_pricing_plans_provider", table_name="pricing_plans")
    op.drop_table("pricing_plans")
    op.drop_table("users")
