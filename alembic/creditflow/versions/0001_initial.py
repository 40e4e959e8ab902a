"""initial creditflow schema

Revision ID: 0001_creditflow
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_creditflow"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("credits_balance", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("credits_balance >= 0", name="ck_accounts_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("related_purchase_id", sa.String(), nullable=True),
        sa.Column("related_generation_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "(kind = 'consumption' AND amount < 0) OR (kind IN ('purchase', 'refund') AND amount > 0)",
            name="ck_credit_transactions_sign",
        ),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("related_purchase_id", name="uq_credit_transactions_purchase"),
    )
    op.create_index("ix_credit_transactions_account_id", "credit_transactions", ["account_id"])
    op.create_index("ix_credit_transactions_kind", "credit_transactions", ["kind"])
    op.create_index("ix_credit_transactions_status", "credit_transactions", ["status"])
    op.create_index(
        "ix_credit_transactions_related_generation_id", "credit_transactions", ["related_generation_id"]
    )

    op.create_table(
        "purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("amount_credits", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider_payment_id", sa.String(), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_purchases_account_id", "purchases", ["account_id"])
    op.create_index("ix_purchases_status", "purchases", ["status"])
    op.create_index("ix_purchases_provider_payment_id", "purchases", ["provider_payment_id"])
    # Unapplied-purchase sweep.
    op.create_index(
        "ix_purchases_approved_unapplied",
        "purchases",
        ["created_at"],
        postgresql_where=sa.text("status = 'approved' AND applied_at IS NULL"),
    )

    op.create_table(
        "generations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider_task_id", sa.String(), nullable=True),
        sa.Column("credits_reserved", sa.Integer(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("provider_creation_id", sa.String(), nullable=True),
        sa.Column("video_url", sa.String(), nullable=True),
        sa.Column("cover_url", sa.String(), nullable=True),
        sa.Column("video_duration", sa.Float(), nullable=True),
        sa.Column("video_fps", sa.Float(), nullable=True),
        sa.Column("bgm", sa.Boolean(), nullable=False),
        sa.Column("provider_response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_task_id"),
    )
    op.create_index("ix_generations_account_id", "generations", ["account_id"])
    op.create_index("ix_generations_status", "generations", ["status"])
    op.create_index("ix_generations_processing_started_at", "generations", ["processing_started_at"])

    op.create_table(
        "inbound_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_event_id", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("signature_timestamp", sa.Integer(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "provider_event_id", name="uq_inbound_events_provider_event"),
    )
    op.create_index("ix_inbound_events_provider", "inbound_events", ["provider"])
    op.create_index("ix_inbound_events_received_at", "inbound_events", ["received_at"])
    op.create_index("ix_inbound_events_processed", "inbound_events", ["processed"])

    op.create_table(
        "ownership_corrections",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("generation_id", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("account_before", sa.String(), nullable=False),
        sa.Column("account_after", sa.String(), nullable=False),
        sa.Column("corrected_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ownership_corrections_run_id", "ownership_corrections", ["run_id"])
    op.create_index("ix_ownership_corrections_generation_id", "ownership_corrections", ["generation_id"])
    op.create_index("ix_ownership_corrections_transaction_id", "ownership_corrections", ["transaction_id"])

    op.create_table(
        "reconciliation_reviews",
        sa.Column("review_id", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("generation_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolution_note", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_run_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("review_id"),
        sa.UniqueConstraint("transaction_id", "reason", name="uq_reconciliation_reviews_case"),
    )
    op.create_index("ix_reconciliation_reviews_transaction_id", "reconciliation_reviews", ["transaction_id"])
    op.create_index("ix_reconciliation_reviews_generation_id", "reconciliation_reviews", ["generation_id"])
    op.create_index("ix_reconciliation_reviews_status", "reconciliation_reviews", ["status"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])
    op.create_index(
        "ix_outbox_events_pending_created_at",
        "outbox_events",
        ["created_at"],
        postgresql_where=sa.text("status IN ('PENDING', 'PROCESSING')"),
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_pending_created_at", table_name="outbox_events")
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_reconciliation_reviews_status", table_name="reconciliation_reviews")
    op.drop_index("ix_reconciliation_reviews_generation_id", table_name="reconciliation_reviews")
    op.drop_index("ix_reconciliation_reviews_transaction_id", table_name="reconciliation_reviews")
    op.drop_table("reconciliation_reviews")
    op.drop_index("ix_ownership_corrections_transaction_id", table_name="ownership_corrections")
    op.drop_index("ix_ownership_corrections_generation_id", table_name="ownership_corrections")
    op.drop_index("ix_ownership_corrections_run_id", table_name="ownership_corrections")
    op.drop_table("ownership_corrections")
    op.drop_index("ix_inbound_events_processed", table_name="inbound_events")
    op.drop_index("ix_inbound_events_received_at", table_name="inbound_events")
    op.drop_index("ix_inbound_events_provider", table_name="inbound_events")
    op.drop_table("inbound_events")
    op.drop_index("ix_generations_processing_started_at", table_name="generations")
    op.drop_index("ix_generations_status", table_name="generations")
    op.drop_index("ix_generations_account_id", table_name="generations")
    op.drop_table("generations")
    op.drop_index("ix_purchases_approved_unapplied", table_name="purchases")
    op.drop_index("ix_purchases_provider_payment_id", table_name="purchases")
    op.drop_index("ix_purchases_status", table_name="purchases")
    op.drop_index("ix_purchases_account_id", table_name="purchases")
    op.drop_table("purchases")
    op.drop_index("ix_credit_transactions_related_generation_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_status", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_kind", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_account_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("accounts")
