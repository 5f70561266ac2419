"""Dues billing, payment intent and installment tables."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_dues_billing_schema"
down_revision = None
branch_labels = None
depends_on = None


MEMBER_STATUS = sa.Enum("Active", "Inactive", name="member_status")
MEMBER_COHORT = sa.Enum(
    "freshman", "sophomore", "junior", "senior", "graduate", "alumni", "pledge", name="member_cohort"
)
PERIOD_TYPE = sa.Enum("Quarter", "Semester", "Year", name="dues_period_type")
LATE_FEE_TYPE = sa.Enum("flat", "percentage", name="late_fee_type")
DUES_STATUS = sa.Enum("pending", "partial", "paid", "overdue", "waived", name="member_dues_status")
# Shared by two tables, so it is created once up front.
METHOD_TYPE = postgresql.ENUM("card", "bank_transfer", name="payment_method_type", create_type=False)
INTENT_STATUS = sa.Enum("pending", "processing", "succeeded", "failed", "canceled", name="payment_intent_status")
PLAN_STATUS = sa.Enum("active", "completed", "cancelled", name="installment_plan_status")
INSTALLMENT_STATUS = sa.Enum(
    "scheduled", "processing", "paid", "failed", "cancelled", name="installment_payment_status"
)


def _money(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.Numeric(precision=12, scale=2), **kwargs)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("NOW()")),
    ]


def upgrade() -> None:
    METHOD_TYPE.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "chapters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=150), nullable=False, unique=True),
        sa.Column("processor_account_id", sa.String(length=120), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("NOW()")),
    )

    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_roles_name", "roles", ["name"], unique=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("chapter_id", sa.Integer(), sa.ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_chapter_id", "users", ["chapter_id"])

    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("chapter_id", sa.Integer(), sa.ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("cohort", MEMBER_COHORT, nullable=True),
        sa.Column("status", MEMBER_STATUS, nullable=False, server_default="Active"),
        *_timestamps(),
    )
    op.create_index("ix_members_chapter_id", "members", ["chapter_id"])
    op.create_index("ix_members_email", "members", ["email"])

    op.create_table(
        "dues_configurations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("chapter_id", sa.Integer(), sa.ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False),
        sa.Column("period_name", sa.String(length=100), nullable=False),
        sa.Column("period_type", PERIOD_TYPE, nullable=False, server_default="Semester"),
        sa.Column("fiscal_year", sa.Integer(), nullable=False),
        sa.Column("period_start_date", sa.Date(), nullable=True),
        sa.Column("period_end_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        _money("default_rate", nullable=False, server_default="0"),
        sa.Column("rates", sa.JSON(), nullable=True),
        sa.Column("late_fee_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("late_fee_type", LATE_FEE_TYPE, nullable=False, server_default="flat"),
        _money("late_fee_amount", nullable=False, server_default="0"),
        sa.Column("late_fee_grace_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_dues_configurations_chapter_id", "dues_configurations", ["chapter_id"])

    op.create_table(
        "member_dues",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("chapter_id", sa.Integer(), sa.ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("members.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "config_id", sa.Integer(), sa.ForeignKey("dues_configurations.id", ondelete="RESTRICT"), nullable=False
        ),
        _money("base_amount", nullable=False, server_default="0"),
        _money("late_fee", nullable=False, server_default="0"),
        _money("adjustments", nullable=False, server_default="0"),
        _money("total_amount", nullable=False, server_default="0"),
        _money("amount_paid", nullable=False, server_default="0"),
        _money("balance", nullable=False, server_default="0"),
        sa.Column("status", DUES_STATUS, nullable=False, server_default="pending"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("flexible_plan_deadline", sa.Date(), nullable=True),
        sa.Column("paid_date", sa.Date(), nullable=True),
        sa.Column("late_fee_applied_date", sa.Date(), nullable=True),
        sa.Column("waived_at", sa.DateTime(), nullable=True),
        sa.Column("waived_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("assigned_date", sa.Date(), nullable=False, server_default=sa.text("CURRENT_DATE")),
        *_timestamps(),
        sa.UniqueConstraint("member_id", "config_id", name="uq_member_dues_member_config"),
    )
    op.create_index("ix_member_dues_chapter_id", "member_dues", ["chapter_id"])
    op.create_index("ix_member_dues_member_id", "member_dues", ["member_id"])
    op.create_index("ix_member_dues_config_id", "member_dues", ["config_id"])

    op.create_table(
        "dues_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "member_dues_id", sa.Integer(), sa.ForeignKey("member_dues.id", ondelete="RESTRICT"), nullable=False
        ),
        _money("amount", nullable=False),
        sa.Column("method", sa.String(length=50), nullable=True),
        sa.Column("payment_date", sa.Date(), nullable=False, server_default=sa.text("CURRENT_DATE")),
        sa.Column("reference_number", sa.String(length=120), nullable=True, unique=True),
        sa.Column("notes", sa.String(length=255), nullable=True),
        sa.Column("recorded_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("ix_dues_payments_member_dues_id", "dues_payments", ["member_dues_id"])

    op.create_table(
        "installment_eligibility",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("chapter_id", sa.Integer(), sa.ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "member_dues_id",
            sa.Integer(),
            sa.ForeignKey("member_dues.id", ondelete="CASCADE"),
            nullable=True,
            unique=True,
        ),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=True, unique=True),
        sa.Column("is_eligible", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allowed_plans", sa.JSON(), nullable=False),
        sa.Column("enabled_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("enabled_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_installment_eligibility_chapter_id", "installment_eligibility", ["chapter_id"])

    op.create_table(
        "installment_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("chapter_id", sa.Integer(), sa.ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "member_dues_id", sa.Integer(), sa.ForeignKey("member_dues.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("members.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("num_installments", sa.Integer(), nullable=False),
        _money("total_amount", nullable=False),
        sa.Column("method_type", METHOD_TYPE, nullable=False),
        sa.Column("processor_payment_method_id", sa.String(length=120), nullable=True),
        sa.Column("next_payment_date", sa.Date(), nullable=True),
        sa.Column("status", PLAN_STATUS, nullable=False, server_default="active"),
        sa.Column("cancel_reason", sa.String(length=255), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_installment_plans_chapter_id", "installment_plans", ["chapter_id"])
    op.create_index("ix_installment_plans_member_dues_id", "installment_plans", ["member_dues_id"])
    op.create_index("ix_installment_plans_member_id", "installment_plans", ["member_id"])
    op.create_index(
        "uq_installment_plans_active_per_dues",
        "installment_plans",
        ["member_dues_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "installment_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "plan_id", sa.Integer(), sa.ForeignKey("installment_plans.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("installment_number", sa.Integer(), nullable=False),
        _money("amount", nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("status", INSTALLMENT_STATUS, nullable=False, server_default="scheduled"),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.Date(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("plan_id", "installment_number", name="uq_installment_payments_plan_number"),
    )
    op.create_index("ix_installment_payments_plan_id", "installment_payments", ["plan_id"])

    op.create_table(
        "payment_intents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("chapter_id", sa.Integer(), sa.ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "member_dues_id", sa.Integer(), sa.ForeignKey("member_dues.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("members.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "installment_payment_id",
            sa.Integer(),
            sa.ForeignKey("installment_payments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("processor_intent_id", sa.String(length=120), nullable=False, unique=True),
        sa.Column("client_secret", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=120), nullable=False, unique=True),
        _money("amount", nullable=False),
        _money("charge_amount", nullable=False),
        _money("processor_fee", nullable=False),
        _money("platform_fee", nullable=False),
        _money("transfer_amount", nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("method_type", METHOD_TYPE, nullable=False),
        sa.Column("status", INTENT_STATUS, nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("succeeded_at", sa.DateTime(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payment_intents_chapter_id", "payment_intents", ["chapter_id"])
    op.create_index("ix_payment_intents_member_dues_id", "payment_intents", ["member_dues_id"])
    op.create_index("ix_payment_intents_member_id", "payment_intents", ["member_id"])
    op.create_index("ix_payment_intents_installment_payment_id", "payment_intents", ["installment_payment_id"])
    op.create_index(
        "uq_payment_intents_open_per_dues",
        "payment_intents",
        ["member_dues_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )


def downgrade() -> None:
    op.drop_index("uq_payment_intents_open_per_dues", table_name="payment_intents")
    op.drop_table("payment_intents")
    op.drop_table("installment_payments")
    op.drop_index("uq_installment_plans_active_per_dues", table_name="installment_plans")
    op.drop_table("installment_plans")
    op.drop_table("installment_eligibility")
    op.drop_table("dues_payments")
    op.drop_table("member_dues")
    op.drop_table("dues_configurations")
    op.drop_table("members")
    op.drop_table("user_roles")
    op.drop_table("users")
    op.drop_table("roles")
    op.drop_table("chapters")

    bind = op.get_bind()
    for enum in (
        INSTALLMENT_STATUS,
        PLAN_STATUS,
        INTENT_STATUS,
        METHOD_TYPE,
        DUES_STATUS,
        LATE_FEE_TYPE,
        PERIOD_TYPE,
        MEMBER_COHORT,
        MEMBER_STATUS,
    ):
        enum.drop(bind, checkfirst=True)
