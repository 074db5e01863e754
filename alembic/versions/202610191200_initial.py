"""initial ledger schema

Revision ID: 202610191200
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610191200"
down_revision = None
branch_labels = None
depends_on = None

recurring_kind = sa.Enum("fixed_cost", "investment", "salary", name="recurringkind")
record_kind = sa.Enum("expense", "one_time_investment", name="recordkind")
activity_action = sa.Enum("create", "update", "delete", name="activityaction")
expense_category = sa.Enum(
    "food",
    "transport",
    "shopping",
    "entertainment",
    "utilities",
    "health",
    "travel",
    "subscriptions",
    "groceries",
    "fuel",
    "electronics",
    "other",
    name="expensecategory",
)


def upgrade():
    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("kind", recurring_kind, nullable=False),
        sa.Column("name", sa.String(length=120)),
        sa.Column("default_amount_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "default_amount_cents > 0", name="ck_template_default_amount_positive"
        ),
    )
    op.create_index(
        "ix_templates_user_kind", "recurring_templates", ["user_id", "kind"]
    )

    op.create_table(
        "recurring_instances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("recurring_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("kind", recurring_kind, nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_instance_amount_positive"),
    )
    op.create_index(
        "ix_instances_user_kind_month",
        "recurring_instances",
        ["user_id", "kind", "month"],
    )
    op.create_index(
        "ix_instances_template_user_month",
        "recurring_instances",
        ["template_id", "user_id", "month"],
    )

    op.create_table(
        "variable_expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("category", expense_category, nullable=False, server_default="other"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
    )
    op.create_index("ix_expenses_user_date", "variable_expenses", ["user_id", "date"])

    op.create_table(
        "one_time_investments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_one_time_investment_amount_positive"
        ),
    )
    op.create_index(
        "ix_one_time_investments_user_date",
        "one_time_investments",
        ["user_id", "date"],
    )

    op.create_table(
        "activity_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("kind", record_kind, nullable=False),
        sa.Column("action", activity_action, nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("snapshot_json", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_activity_user_created", "activity_log", ["user_id", "created_at"]
    )


def downgrade():
    op.drop_index("ix_activity_user_created", table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_index(
        "ix_one_time_investments_user_date", table_name="one_time_investments"
    )
    op.drop_table("one_time_investments")
    op.drop_index("ix_expenses_user_date", table_name="variable_expenses")
    op.drop_table("variable_expenses")
    op.drop_index(
        "ix_instances_template_user_month", table_name="recurring_instances"
    )
    op.drop_index("ix_instances_user_kind_month", table_name="recurring_instances")
    op.drop_table("recurring_instances")
    op.drop_index("ix_templates_user_kind", table_name="recurring_templates")
    op.drop_table("recurring_templates")
