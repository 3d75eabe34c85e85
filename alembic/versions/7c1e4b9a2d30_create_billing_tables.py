"""create billing tables

Revision ID: 7c1e4b9a2d30
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, UUID


# revision identifiers, used by Alembic.
revision: str = "7c1e4b9a2d30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

billing_interval = ENUM("monthly", "yearly", name="billinginterval", create_type=False)
subscription_status = ENUM(
    "incomplete",
    "active",
    "past_due",
    "cancelled",
    name="subscriptionstatus",
    create_type=False,
)
payment_status = ENUM(
    "pending", "succeeded", "failed", name="paymentstatus", create_type=False
)
history_action = ENUM(
    "created",
    "activated",
    "renewed",
    "renewal_failed",
    "grace_period_started",
    "cancel_scheduled",
    "cancelled",
    "expired",
    "provider_linked",
    name="subscriptionhistoryaction",
    create_type=False,
)

_ENUMS = (billing_interval, subscription_status, payment_status, history_action)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    existing = set(sa.inspect(bind).get_table_names())

    if "billing_plans" not in existing:
        op.create_table(
            "billing_plans",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("name", sa.String(120), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("price", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(3), nullable=False, server_default="NGN"),
            sa.Column(
                "interval", billing_interval, nullable=False, server_default="monthly"
            ),
            sa.Column("max_portals", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("max_storage_gb", sa.Integer(), nullable=False, server_default="1"),
            sa.Column(
                "max_uploads_month", sa.Integer(), nullable=False, server_default="100"
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
        )

    if "subscriptions" not in existing:
        op.create_table(
            "subscriptions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("user_id", UUID(as_uuid=True), nullable=False),
            sa.Column(
                "plan_id",
                UUID(as_uuid=True),
                sa.ForeignKey("billing_plans.id"),
                nullable=False,
            ),
            sa.Column(
                "status", subscription_status, nullable=False, server_default="incomplete"
            ),
            sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "cancel_at_period_end",
                sa.Boolean(),
                nullable=False,
                server_default=sa.false(),
            ),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("grace_period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_payment_attempt_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("provider_subscription_id", sa.String(120), nullable=True),
            sa.Column("provider_customer_id", sa.String(120), nullable=True),
            sa.Column("committed_price", sa.Integer(), nullable=False),
            sa.Column("committed_currency", sa.String(3), nullable=False),
            *_timestamps(),
        )
        op.create_index(
            "ix_subscriptions_user_status", "subscriptions", ["user_id", "status"]
        )
        op.create_index(
            "ix_subscriptions_provider_subscription_id",
            "subscriptions",
            ["provider_subscription_id"],
        )

    if "payments" not in existing:
        op.create_table(
            "payments",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("user_id", UUID(as_uuid=True), nullable=False),
            sa.Column(
                "subscription_id",
                UUID(as_uuid=True),
                sa.ForeignKey("subscriptions.id"),
                nullable=True,
            ),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(3), nullable=False, server_default="NGN"),
            sa.Column("status", payment_status, nullable=False, server_default="pending"),
            sa.Column("provider_payment_ref", sa.String(160), nullable=False),
            sa.Column("provider_payment_id", sa.String(120), nullable=True),
            sa.Column("authorization_code", sa.String(120), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint(
                "provider_payment_ref", name="uq_payments_provider_payment_ref"
            ),
        )
        op.create_index(
            "ix_payments_user_orphaned",
            "payments",
            ["user_id", "subscription_id", "status"],
        )

    if "subscription_history" not in existing:
        op.create_table(
            "subscription_history",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column(
                "subscription_id",
                UUID(as_uuid=True),
                sa.ForeignKey("subscriptions.id"),
                nullable=False,
            ),
            sa.Column("action", history_action, nullable=False),
            sa.Column("old_status", subscription_status, nullable=True),
            sa.Column("new_status", subscription_status, nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("source", sa.String(40), nullable=True),
            sa.Column("payment_ref", sa.String(160), nullable=True),
            sa.Column(
                "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
            ),
        )
        op.create_index(
            "ix_subscription_history_subscription_id",
            "subscription_history",
            ["subscription_id"],
        )


def downgrade() -> None:
    op.drop_index(
        "ix_subscription_history_subscription_id", table_name="subscription_history"
    )
    op.drop_table("subscription_history")
    op.drop_index("ix_payments_user_orphaned", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_subscriptions_provider_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_status", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("billing_plans")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
