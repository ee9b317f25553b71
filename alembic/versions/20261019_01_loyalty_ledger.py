"""Loyalty accounts, ledger, rewards and vouchers.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE TYPE account_status AS ENUM ('active', 'inactive')")
    op.execute("CREATE TYPE identity_scheme AS ENUM ('legacy', 'authprovider')")
    op.execute("CREATE TYPE ledger_entry_kind AS ENUM ('earn', 'redeem', 'reversal', 'adjustment')")
    op.execute("CREATE TYPE discount_type AS ENUM ('fixed', 'percentage', 'delivery_fee')")
    op.execute("CREATE TYPE voucher_status AS ENUM ('active', 'used', 'expired')")

    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "status",
            sa.Enum(name="account_status", create_type=False),
            nullable=False,
            server_default="active",
        ),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "account_external_ids",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("scheme", sa.Enum(name="identity_scheme", create_type=False), nullable=False),
        sa.Column("external_id", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.UniqueConstraint("scheme", "external_id", name="uq_account_external_ids_scheme_external_id"),
    )
    op.create_index("ix_account_external_ids_account_id", "account_external_ids", ["account_id"])

    op.create_table(
        "account_balances",
        sa.Column("account_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("entry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rebuilt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.Enum(name="ledger_entry_kind", create_type=False), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("source_reference", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("reverses_entry_id", postgresql.UUID(as_uuid=True), nullable=True, unique=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["reverses_entry_id"], ["ledger_entries.id"]),
        sa.CheckConstraint("amount <> 0", name="ck_ledger_entries_amount_nonzero"),
    )
    op.create_index("ix_ledger_entries_account_created", "ledger_entries", ["account_id", "created_at"])

    # Entries are append-only even for clients that bypass the ORM.
    op.execute(
        """
        CREATE FUNCTION ledger_entries_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_entries is append-only (% rejected)', TG_OP;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER ledger_entries_append_only
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW EXECUTE FUNCTION ledger_entries_append_only()
        """
    )

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_required", sa.Integer(), nullable=False),
        sa.Column("discount_type", sa.Enum(name="discount_type", create_type=False), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("min_order_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("validity_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("points_required > 0", name="ck_loyalty_rewards_points_positive"),
    )
    op.create_index("ix_loyalty_rewards_slug", "loyalty_rewards", ["slug"])

    op.create_table(
        "vouchers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("reward_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reward_name", sa.String(255), nullable=True),
        sa.Column("discount_type", sa.Enum(name="discount_type", create_type=False), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("min_order_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(name="voucher_status", create_type=False),
            nullable=False,
            server_default="active",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("redemption_entry_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applied_order_id", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["reward_id"], ["loyalty_rewards.id"]),
        sa.ForeignKeyConstraint(["redemption_entry_id"], ["ledger_entries.id"]),
    )
    op.create_index("ix_vouchers_account_id", "vouchers", ["account_id"])
    op.create_index("ix_vouchers_status_expires_at", "vouchers", ["status", "expires_at"])


def downgrade() -> None:
    op.drop_index("ix_vouchers_status_expires_at", table_name="vouchers")
    op.drop_index("ix_vouchers_account_id", table_name="vouchers")
    op.drop_table("vouchers")
    op.drop_index("ix_loyalty_rewards_slug", table_name="loyalty_rewards")
    op.drop_table("loyalty_rewards")
    op.execute("DROP TRIGGER IF EXISTS ledger_entries_append_only ON ledger_entries")
    op.execute("DROP FUNCTION IF EXISTS ledger_entries_append_only()")
    op.drop_index("ix_ledger_entries_account_created", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("account_balances")
    op.drop_index("ix_account_external_ids_account_id", table_name="account_external_ids")
    op.drop_table("account_external_ids")
    op.drop_table("accounts")

    op.execute("DROP TYPE IF EXISTS voucher_status")
    op.execute("DROP TYPE IF EXISTS discount_type")
    op.execute("DROP TYPE IF EXISTS ledger_entry_kind")
    op.execute("DROP TYPE IF EXISTS identity_scheme")
    op.execute("DROP TYPE IF EXISTS account_status")
