"""payments_core_schema

Revision ID: 5c1e2a7d9b40
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "5c1e2a7d9b40"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "purchases",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("buyer_id", sa.String(64), nullable=True),
        sa.Column("buyer_email", sa.String(320), nullable=False),
        sa.Column("identity_key", sa.String(320), nullable=False),
        sa.Column("dedup_key", sa.String(64), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("product_type", sa.String(16), nullable=False),
        sa.Column("amount_paid_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'NGN'")),
        sa.Column("payment_reference", sa.String(128), nullable=False),
        sa.Column("provider_transaction_id", sa.String(64), nullable=True),
        sa.Column("payment_status", sa.String(16), nullable=False),
        sa.Column("source", sa.String(16), nullable=False, server_default=sa.text("'checkout'")),
        sa.Column("access_granted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("access_token", sa.String(128), nullable=False),
        sa.Column("access_granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("access_revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "product_type IN ('course','learning_path','subscription','live_class')",
            name="ck_purchases_product_type",
        ),
        sa.CheckConstraint(
            "payment_status IN ('pending','success','failed')",
            name="ck_purchases_payment_status",
        ),
        sa.CheckConstraint("source IN ('checkout','admin_manual')", name="ck_purchases_source"),
        sa.CheckConstraint("amount_paid_minor >= 0", name="ck_purchases_amount_non_negative"),
        sa.UniqueConstraint("dedup_key", name="uq_purchases_dedup_key"),
        sa.UniqueConstraint("payment_reference", name="uq_purchases_payment_reference"),
        sa.UniqueConstraint("access_token", name="uq_purchases_access_token"),
        sa.UniqueConstraint(
            "identity_key",
            "product_id",
            "product_type",
            "payment_reference",
            name="uq_purchases_identity_product_reference",
        ),
    )
    op.create_index("idx_purchases_buyer_product", "purchases", ["buyer_id", "product_id", "product_type"])
    op.create_index("idx_purchases_email_product", "purchases", ["buyer_email", "product_id", "product_type"])
    op.create_index(
        "idx_purchases_guest_email",
        "purchases",
        ["buyer_email"],
        postgresql_where=sa.text("buyer_id IS NULL"),
    )
    op.create_index("idx_purchases_created", "purchases", ["created_at"])

    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("plan_name", sa.String(128), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'NGN'")),
        sa.Column("cycle_days", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_subscription_id", sa.String(64), nullable=True),
        sa.Column("provider_customer_code", sa.String(64), nullable=True),
        sa.Column("last_payment_reference", sa.String(128), nullable=True),
        sa.Column("restored_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("restored_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('trialing','active','canceled','expired')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint("cycle_days > 0", name="ck_subscriptions_cycle_positive"),
        sa.CheckConstraint("amount_minor >= 0", name="ck_subscriptions_amount_non_negative"),
    )
    op.create_index("idx_subscriptions_user_created", "subscriptions", ["user_id", "created_at"])
    op.create_index("idx_subscriptions_status_end", "subscriptions", ["status", "end_date"])
    op.create_index(
        "idx_subscriptions_provider_subscription",
        "subscriptions",
        ["provider_subscription_id"],
    )
    op.create_index("idx_subscriptions_provider_customer", "subscriptions", ["provider_customer_code"])
    op.create_index(
        "uq_subscriptions_active_per_user",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "subscription_payments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("payment_reference", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "kind IN ('created','renewed','converted')",
            name="ck_subscription_payments_kind",
        ),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.UniqueConstraint("payment_reference", name="uq_subscription_payments_reference"),
    )
    op.create_index(
        "idx_subscription_payments_subscription",
        "subscription_payments",
        ["subscription_id"],
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("reference", sa.String(128), nullable=False),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('RECEIVED','PROCESSED','REVIEW')",
            name="ck_payment_events_status",
        ),
        sa.UniqueConstraint("reference", name="uq_payment_events_reference"),
    )
    op.create_index(
        "idx_payment_events_received_age",
        "payment_events",
        ["received_at"],
        postgresql_where=sa.text("status = 'RECEIVED'"),
    )

    op.create_table(
        "reconciliation_mismatches",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("purchase_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("payment_reference", sa.String(128), nullable=False),
        sa.Column("step", sa.String(32), nullable=False),
        sa.Column("error_type", sa.String(64), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(64), nullable=True),
        sa.CheckConstraint("status IN ('OPEN','RESOLVED')", name="ck_reconciliation_mismatches_status"),
        sa.ForeignKeyConstraint(["purchase_id"], ["purchases.id"]),
    )
    op.create_index("idx_reconciliation_mismatches_purchase", "reconciliation_mismatches", ["purchase_id"])
    op.create_index(
        "idx_reconciliation_mismatches_open",
        "reconciliation_mismatches",
        ["created_at"],
        postgresql_where=sa.text("status = 'OPEN'"),
    )

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("diff_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.create_index("idx_reconciliation_runs_started", "reconciliation_runs", ["started_at"])


def downgrade() -> None:
    op.drop_index("idx_reconciliation_runs_started", table_name="reconciliation_runs")
    op.drop_table("reconciliation_runs")
    op.drop_index("idx_reconciliation_mismatches_open", table_name="reconciliation_mismatches")
    op.drop_index("idx_reconciliation_mismatches_purchase", table_name="reconciliation_mismatches")
    op.drop_table("reconciliation_mismatches")
    op.drop_index("idx_payment_events_received_age", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index("idx_subscription_payments_subscription", table_name="subscription_payments")
    op.drop_table("subscription_payments")
    op.drop_index("uq_subscriptions_active_per_user", table_name="subscriptions")
    op.drop_index("idx_subscriptions_provider_customer", table_name="subscriptions")
    op.drop_index("idx_subscriptions_provider_subscription", table_name="subscriptions")
    op.drop_index("idx_subscriptions_status_end", table_name="subscriptions")
    op.drop_index("idx_subscriptions_user_created", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("idx_purchases_created", table_name="purchases")
    op.drop_index("idx_purchases_guest_email", table_name="purchases")
    op.drop_index("idx_purchases_email_product", table_name="purchases")
    op.drop_index("idx_purchases_buyer_product", table_name="purchases")
    op.drop_table("purchases")
