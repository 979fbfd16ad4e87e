"""create licence ledger schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("credit_balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credit_balance >= 0", name="ck_users_credit_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_username"), "users", ["username"], unique=True)
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("delta_credits", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credit_ledger_user_id"), "credit_ledger", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_ledger_reference_id"), "credit_ledger", ["reference_id"], unique=False)
    op.create_index(op.f("ix_credit_ledger_created_at"), "credit_ledger", ["created_at"], unique=False)

    op.create_table(
        "license_orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("account_number", sa.String(), nullable=False),
        sa.Column("plan_days", sa.Integer(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("points_used", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("expires_at", sa.String(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_license_orders_user_id"), "license_orders", ["user_id"], unique=False)
    op.create_index(op.f("ix_license_orders_code"), "license_orders", ["code"], unique=True)
    op.create_index(op.f("ix_license_orders_status"), "license_orders", ["status"], unique=False)

    op.create_table(
        "license_accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("account_number", sa.String(), nullable=False),
        sa.Column("plan_days", sa.Integer(), nullable=False),
        sa.Column("cumulative_plan_days", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("expires_at", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("extended_by", sa.String(), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("last_extended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_license_accounts_user_id"), "license_accounts", ["user_id"], unique=False)
    op.create_index(op.f("ix_license_accounts_username"), "license_accounts", ["username"], unique=False)
    op.create_index(op.f("ix_license_accounts_code"), "license_accounts", ["code"], unique=True)
    op.create_index(op.f("ix_license_accounts_status"), "license_accounts", ["status"], unique=False)

    op.create_table(
        "extension_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("license_code", sa.String(), nullable=False),
        sa.Column("license_source", sa.String(), nullable=False),
        sa.Column("license_account_id", sa.String(), nullable=True),
        sa.Column("license_order_id", sa.String(), nullable=True),
        sa.Column("current_expiry", sa.String(), nullable=False),
        sa.Column("requested_plan", sa.String(), nullable=False),
        sa.Column("requested_days", sa.Integer(), nullable=False),
        sa.Column("cumulative_plan_days", sa.Integer(), nullable=True),
        sa.Column("total_extended_days", sa.Integer(), nullable=True),
        sa.Column("funding_mode", sa.String(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_by", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_extension_requests_user_id"), "extension_requests", ["user_id"], unique=False)
    op.create_index(op.f("ix_extension_requests_license_code"), "extension_requests", ["license_code"], unique=False)
    op.create_index(op.f("ix_extension_requests_status"), "extension_requests", ["status"], unique=False)
    op.create_index(op.f("ix_extension_requests_requested_at"), "extension_requests", ["requested_at"], unique=False)
    op.create_index(
        "uq_extension_requests_pending_license",
        "extension_requests",
        ["license_code"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "topup_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=False),
        sa.Column("payment_proof", sa.String(), nullable=True),
        sa.Column("transaction_ref", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_by", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_topup_requests_user_id"), "topup_requests", ["user_id"], unique=False)
    op.create_index(op.f("ix_topup_requests_status"), "topup_requests", ["status"], unique=False)
    op.create_index(op.f("ix_topup_requests_created_at"), "topup_requests", ["created_at"], unique=False)
    op.create_index(
        "uq_topup_requests_pending_user",
        "topup_requests",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "plan_settings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("days", sa.Integer(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_lifetime", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_plan_settings_days"), "plan_settings", ["days"], unique=False)

    op.create_table(
        "system_settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("system_settings")
    op.drop_index(op.f("ix_plan_settings_days"), table_name="plan_settings")
    op.drop_table("plan_settings")
    op.drop_index("uq_topup_requests_pending_user", table_name="topup_requests")
    op.drop_index(op.f("ix_topup_requests_created_at"), table_name="topup_requests")
    op.drop_index(op.f("ix_topup_requests_status"), table_name="topup_requests")
    op.drop_index(op.f("ix_topup_requests_user_id"), table_name="topup_requests")
    op.drop_table("topup_requests")
    op.drop_index("uq_extension_requests_pending_license", table_name="extension_requests")
    op.drop_index(op.f("ix_extension_requests_requested_at"), table_name="extension_requests")
    op.drop_index(op.f("ix_extension_requests_status"), table_name="extension_requests")
    op.drop_index(op.f("ix_extension_requests_license_code"), table_name="extension_requests")
    op.drop_index(op.f("ix_extension_requests_user_id"), table_name="extension_requests")
    op.drop_table("extension_requests")
    op.drop_index(op.f("ix_license_accounts_status"), table_name="license_accounts")
    op.drop_index(op.f("ix_license_accounts_code"), table_name="license_accounts")
    op.drop_index(op.f("ix_license_accounts_username"), table_name="license_accounts")
    op.drop_index(op.f("ix_license_accounts_user_id"), table_name="license_accounts")
    op.drop_table("license_accounts")
    op.drop_index(op.f("ix_license_orders_status"), table_name="license_orders")
    op.drop_index(op.f("ix_license_orders_code"), table_name="license_orders")
    op.drop_index(op.f("ix_license_orders_user_id"), table_name="license_orders")
    op.drop_table("license_orders")
    op.drop_index(op.f("ix_credit_ledger_created_at"), table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_reference_id"), table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_user_id"), table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_index(op.f("ix_users_username"), table_name="users")
    op.drop_table("users")
