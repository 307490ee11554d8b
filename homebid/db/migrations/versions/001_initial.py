"""Initial schema - bid, contract, escrow, completion and dispute tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _fk(name: str, target: str, nullable: bool = False, **kw) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), sa.ForeignKey(target), nullable=nullable, **kw)


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(14, 2), nullable=nullable)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="homeowner"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("average_rating", sa.Numeric(3, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_reviews", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("payment_customer_ref", sa.String(255), nullable=True),
        sa.Column("payout_account_ref", sa.String(255), nullable=True),
        *_timestamps(),
    )

    # Jobs
    op.create_table(
        "jobs",
        _id(),
        _fk("poster_id", "users.id", index=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        _money("budget", nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        *_timestamps(),
    )

    # Bids
    op.create_table(
        "bids",
        _id(),
        _fk("job_id", "jobs.id", index=True),
        _fk("contractor_id", "users.id", index=True),
        _money("amount"),
        sa.Column("timeline", sa.String(255), nullable=False),
        sa.Column("proposal", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="submitted"),
        sa.Column("contractor_rating_snapshot", sa.Numeric(3, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("contractor_reviews_snapshot", sa.Integer, nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.UniqueConstraint("job_id", "contractor_id", name="uq_bids_job_contractor"),
    )

    # Contracts
    op.create_table(
        "contracts",
        _id(),
        _fk("job_id", "jobs.id", unique=True),
        _fk("bid_id", "bids.id", unique=True),
        _fk("homeowner_id", "users.id", index=True),
        _fk("contractor_id", "users.id", index=True),
        _money("amount"),
        _money("deposit_amount"),
        _money("final_amount"),
        _money("platform_fee"),
        _money("contractor_net"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # Change orders
    op.create_table(
        "change_orders",
        _id(),
        _fk("contract_id", "contracts.id", index=True),
        _fk("requested_by_id", "users.id"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        _money("amount"),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("charge_ref", sa.String(255), nullable=True),
        sa.Column("charge_attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("declined_charges", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # Escrow accounts; status is derived from the transaction log
    op.create_table(
        "escrow_accounts",
        _id(),
        _fk("contract_id", "contracts.id", unique=True),
        _money("total_amount"),
        _money("deposit_amount"),
        _money("final_amount"),
        _money("platform_fee"),
        sa.Column("rework_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arbitration_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_released_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # Escrow transactions (insert-only)
    op.create_table(
        "escrow_transactions",
        _id(),
        _fk("escrow_id", "escrow_accounts.id", index=True),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("party", sa.String(20), nullable=True),
        sa.Column("gateway_ref", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("escrow_id", "sequence", name="uq_escrow_transactions_sequence"),
    )

    # Completions and reviews
    op.create_table(
        "job_completions",
        _id(),
        _fk("contract_id", "contracts.id", index=True),
        _fk("submitted_by_id", "users.id"),
        sa.Column("photos", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("videos", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("geolocation", postgresql.JSONB, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="submitted"),
        sa.Column("dispute_window_expiry", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rating", sa.Integer, nullable=True),
        sa.Column("feedback", sa.Text, nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "reviews",
        _id(),
        _fk("contract_id", "contracts.id", unique=True),
        _fk("reviewer_id", "users.id"),
        _fk("contractor_id", "users.id", index=True),
        sa.Column("rating", sa.Integer, nullable=False),
        sa.Column("feedback", sa.Text, nullable=True),
        *_timestamps(),
    )

    # Disputes
    op.create_table(
        "disputes",
        _id(),
        _fk("completion_id", "job_completions.id", unique=True),
        _fk("contract_id", "contracts.id", index=True),
        _fk("homeowner_id", "users.id"),
        _fk("contractor_id", "users.id"),
        sa.Column("reason", sa.String(1000), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("evidence_urls", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("mediation_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("messages", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("resolution_path", sa.String(30), nullable=True),
        sa.Column("resolution_reasoning", sa.Text, nullable=True),
        sa.Column("partial_refund_percentage", sa.Integer, nullable=True),
        sa.Column("mediator_id", sa.String(64), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # Audit log
    op.create_table(
        "audit_log",
        _id(),
        sa.Column("entity_type", sa.String(100), nullable=False, index=True),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("actor", sa.String(64), nullable=True),
        sa.Column("contract_id", postgresql.UUID(as_uuid=True), nullable=True, index=True),
        sa.Column("diff", postgresql.JSONB, nullable=True),
        *_timestamps(),
    )

    # Notifications
    op.create_table(
        "notifications",
        _id(),
        _fk("user_id", "users.id", index=True),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("is_read", sa.Boolean, server_default=sa.text("false")),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    for table in (
        "notifications",
        "audit_log",
        "disputes",
        "reviews",
        "job_completions",
        "escrow_transactions",
        "escrow_accounts",
        "change_orders",
        "contracts",
        "bids",
        "jobs",
        "users",
    ):
        op.drop_table(table)
