"""recurring transactions, notifications, bill anchor day

Revision ID: 202610300900
Revises: 202610160900
Create Date: 2026-10-30 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "202610300900"
down_revision = "202610160900"
branch_labels = None
depends_on = None

TRANSACTION_TYPES = ("income", "expense", "transfer", "liability")
FREQUENCIES = ("daily", "weekly", "monthly", "yearly")


def _existing_enum(*values: str, name: str) -> sa.Enum:
    # the type was created by the initial revision
    return sa.Enum(*values, name=name).with_variant(
        postgresql.ENUM(*values, name=name, create_type=False), "postgresql"
    )


def upgrade() -> None:
    op.create_table(
        "recurring_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            _existing_enum(*TRANSACTION_TYPES, name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=200)),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column(
            "frequency",
            _existing_enum(*FREQUENCIES, name="recurrencefrequency"),
            nullable=False,
        ),
        sa.Column("interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("anchor_day", sa.Integer(), nullable=False),
        sa.Column("next_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("auto_post", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_posted_on", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_recurring_amount_positive"),
        sa.CheckConstraint("interval_count > 0", name="ck_recurring_interval_positive"),
    )
    op.create_index(
        "ix_recurring_user_next",
        "recurring_transactions",
        ["user_id", "is_active", "next_date"],
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "bill_due",
                "recurring_approval",
                "recurring_posted",
                name="notificationtype",
            ),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=120), nullable=False),
        sa.Column("message", sa.String(length=500), nullable=False),
        sa.Column(
            "priority",
            sa.Enum("high", "medium", "low", name="notificationpriority"),
            nullable=False,
        ),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime()),
        sa.Column("related_type", sa.String(length=40)),
        sa.Column("related_id", sa.Integer()),
        sa.Column("dedup_key", sa.String(length=120)),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("user_id", "dedup_key", name="uq_notification_dedup"),
    )
    op.create_index(
        "ix_notifications_user_read",
        "notifications",
        ["user_id", "is_read", "created_at"],
    )

    with op.batch_alter_table("transactions") as batch_op:
        batch_op.add_column(
            sa.Column(
                "recurring_transaction_id",
                sa.Integer(),
                sa.ForeignKey(
                    "recurring_transactions.id",
                    name="fk_transactions_recurring",
                    ondelete="SET NULL",
                ),
            )
        )
        batch_op.add_column(sa.Column("occurrence_date", sa.Date()))
        batch_op.create_unique_constraint(
            "uq_txn_recurring_occurrence",
            ["user_id", "recurring_transaction_id", "occurrence_date"],
        )
        batch_op.drop_constraint("ck_transactions_amount_positive", type_="check")
        batch_op.create_check_constraint(
            "ck_transactions_amount_positive", "amount_cents > 0"
        )

    with op.batch_alter_table("bills") as batch_op:
        batch_op.add_column(sa.Column("anchor_day", sa.Integer()))
        batch_op.drop_constraint("ck_bill_amount_positive", type_="check")
        batch_op.create_check_constraint("ck_bill_amount_positive", "amount_cents > 0")

    op.execute(
        "UPDATE bills SET anchor_day = CAST(strftime('%d', due_date) AS INTEGER)"
        if op.get_bind().dialect.name == "sqlite"
        else "UPDATE bills SET anchor_day = EXTRACT(DAY FROM due_date)"
    )


def downgrade() -> None:
    with op.batch_alter_table("bills") as batch_op:
        batch_op.drop_constraint("ck_bill_amount_positive", type_="check")
        batch_op.create_check_constraint("ck_bill_amount_positive", "amount_cents >= 0")
        batch_op.drop_column("anchor_day")

    with op.batch_alter_table("transactions") as batch_op:
        batch_op.drop_constraint("ck_transactions_amount_positive", type_="check")
        batch_op.create_check_constraint(
            "ck_transactions_amount_positive", "amount_cents >= 0"
        )
        batch_op.drop_constraint("uq_txn_recurring_occurrence", type_="unique")
        batch_op.drop_column("occurrence_date")
        batch_op.drop_column("recurring_transaction_id")

    op.drop_index("ix_notifications_user_read", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_recurring_user_next", table_name="recurring_transactions")
    op.drop_table("recurring_transactions")
    bind = op.get_bind()
    sa.Enum(name="notificationpriority").drop(bind, checkfirst=True)
    sa.Enum(name="notificationtype").drop(bind, checkfirst=True)
