"""initial ledger, budget, goal, score and bank link schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "direction", sa.Enum("income", "expense", name="direction"), nullable=False
        ),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("subcategory", sa.String(length=100)),
        sa.Column("merchant", sa.String(length=200), nullable=False),
        sa.Column("account", sa.String(length=100), nullable=False),
        sa.Column("occurred_on", sa.String(length=10), nullable=False),
        sa.Column(
            "origin",
            sa.Enum("manual", "imported", "bank-sync", name="origin"),
            nullable=False,
        ),
        sa.Column(
            "possible_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("external_transaction_id", sa.String(length=100)),
        sa.Column("external_account_id", sa.String(length=100)),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "external_transaction_id", name="uq_txn_user_external_id"
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "occurred_on"]
    )
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category", "occurred_on"],
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("budget_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "amount_spent_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("period", sa.String(length=7), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_budget_category_user_name"),
        sa.CheckConstraint(
            "budget_amount_cents >= 0", name="ck_budget_category_amount_positive"
        ),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("target_date", sa.String(length=10)),
        *_timestamps(),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
        sa.CheckConstraint(
            "current_amount_cents >= 0", name="ck_goal_current_positive"
        ),
    )
    op.create_index("ix_goals_user", "goals", ["user_id"])

    op.create_table(
        "goal_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "goal_id",
            sa.Integer(),
            sa.ForeignKey("goals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("goal_id", "month", name="uq_goal_contribution_month"),
    )

    op.create_table(
        "scores",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("budget_adherence", sa.Float(), nullable=False),
        sa.Column("savings_progress", sa.Float(), nullable=False),
        sa.Column("engagement", sa.Float(), nullable=False),
        sa.Column("goals_completed", sa.Float(), nullable=False),
        sa.Column("cash_flow", sa.Float(), nullable=False),
        sa.Column("computed_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_score_bounds"),
    )

    op.create_table(
        "external_account_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(length=100), nullable=False, unique=True),
        sa.Column("access_credential_encrypted", sa.Text(), nullable=False),
        sa.Column("credential_fingerprint", sa.String(length=16), nullable=False),
        sa.Column("institution_id", sa.String(length=64)),
        sa.Column("institution_name", sa.String(length=200)),
        sa.Column(
            "status",
            sa.Enum(
                "active",
                "error",
                "disconnected",
                "pending_expiration",
                name="linkstatus",
            ),
            nullable=False,
        ),
        sa.Column("last_synced_at", sa.DateTime()),
        sa.Column("last_error", sa.Text()),
        *_timestamps(),
    )
    op.create_index(
        "ix_external_links_user_institution",
        "external_account_links",
        ["user_id", "institution_id"],
    )

    op.create_table(
        "external_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "link_id",
            sa.Integer(),
            sa.ForeignKey("external_account_links.id"),
            nullable=False,
        ),
        sa.Column("account_id", sa.String(length=100), nullable=False, unique=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("official_name", sa.String(length=200)),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("subtype", sa.String(length=40)),
        sa.Column("mask", sa.String(length=8)),
        sa.Column("available_balance_cents", sa.Integer()),
        sa.Column("current_balance_cents", sa.Integer()),
        sa.Column("iso_currency_code", sa.String(length=3)),
        *_timestamps(),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("webhook_type", sa.String(length=40), nullable=False),
        sa.Column("webhook_code", sa.String(length=60), nullable=False),
        sa.Column("item_id", sa.String(length=100), nullable=False),
        sa.Column("account_id", sa.String(length=100)),
        sa.Column("error", sa.Text()),
        sa.Column("new_transactions_count", sa.Integer()),
        sa.Column("removed_transactions_count", sa.Integer()),
        sa.Column("request_id", sa.String(length=64)),
        sa.Column("raw_payload", sa.Text(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_webhook_events_processed", "webhook_events", ["processed", "id"]
    )
    op.create_index("ix_webhook_events_item", "webhook_events", ["item_id"])


def downgrade():
    op.drop_index("ix_webhook_events_item", table_name="webhook_events")
    op.drop_index("ix_webhook_events_processed", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("external_accounts")
    op.drop_index(
        "ix_external_links_user_institution", table_name="external_account_links"
    )
    op.drop_table("external_account_links")
    op.drop_table("scores")
    op.drop_table("goal_contributions")
    op.drop_index("ix_goals_user", table_name="goals")
    op.drop_table("goals")
    op.drop_table("budget_categories")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
