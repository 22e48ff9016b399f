"""Initial governance schema

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), server_default=""),
        sa.Column("role", sa.Text(), nullable=False, server_default="member"),
        sa.Column("pool_id", sa.Text(), nullable=True),
        sa.Column("reputation_score", sa.Float(), server_default="0"),
        sa.Column("contribution_score", sa.Float(), server_default="0"),
        sa.Column("voting_participation", sa.Float(), server_default="0"),
        sa.Column("proposal_accuracy", sa.Float(), server_default="0"),
        sa.Column("created_at", sa.Float(), nullable=False),
    )

    op.create_table(
        "pools",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("subscription_tier", sa.Text(), nullable=False, server_default="free"),
        sa.Column("is_private", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("treasury_balance", sa.Float(), server_default="0"),
        sa.Column("admin_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )

    op.create_table(
        "proposals",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("pool_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("creator_id", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("votes_for", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("votes_against", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("weighted_votes_for", sa.Float(), nullable=False, server_default="0"),
        sa.Column("weighted_votes_against", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("expires_at", sa.Float(), nullable=False),
        sa.Column("closed_at", sa.Float(), nullable=True),
    )

    # One ballot per (proposal, user), enforced by the store
    op.create_table(
        "votes",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("proposal_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("choice", sa.Text(), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.Column("timestamp", sa.Float(), nullable=False),
        sa.UniqueConstraint("proposal_id", "user_id", name="uq_votes_proposal_user"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("seq", sa.Integer(), nullable=False, unique=True),
        sa.Column("pool_id", sa.Text(), nullable=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("details", sa.Text(), server_default=""),
        sa.Column("timestamp", sa.Float(), nullable=False),
        sa.Column("prev_hash", sa.Text(), server_default=""),
        sa.Column("entry_hash", sa.Text(), server_default=""),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("pool_id", sa.Text(), nullable=False, unique=True),
        sa.Column("tier", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("current_period_end", sa.Float(), nullable=True),
        sa.Column("stripe_customer_id", sa.Text(), server_default=""),
        sa.Column("stripe_subscription_id", sa.Text(), server_default=""),
    )

    op.create_table(
        "cases",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("pool_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("stage", sa.Text(), nullable=False, server_default="filing"),
        sa.Column("estimated_cost", sa.Float(), server_default="0"),
        sa.Column("actual_cost", sa.Float(), server_default="0"),
        sa.Column("status", sa.Text(), nullable=False, server_default="ongoing"),
        sa.Column("created_at", sa.Float(), nullable=False),
    )

    # The sweep scans (status, expires_at); keep it an index range
    op.create_index("idx_proposals_expiry", "proposals", ["status", "expires_at"])
    op.create_index("idx_proposals_pool", "proposals", ["pool_id", "created_at"])
    op.create_index("idx_votes_proposal", "votes", ["proposal_id"])
    op.create_index("idx_audit_pool_ts", "audit_logs", ["pool_id", "timestamp"])
    op.create_index("idx_cases_pool", "cases", ["pool_id"])


def downgrade() -> None:
    op.drop_index("idx_cases_pool")
    op.drop_index("idx_audit_pool_ts")
    op.drop_index("idx_votes_proposal")
    op.drop_index("idx_proposals_pool")
    op.drop_index("idx_proposals_expiry")
    op.drop_table("cases")
    op.drop_table("subscriptions")
    op.drop_table("audit_logs")
    op.drop_table("votes")
    op.drop_table("proposals")
    op.drop_table("pools")
    op.drop_table("users")
