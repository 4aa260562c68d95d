"""create crm schema

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


deal_stage = sa.Enum(
    "lead",
    "qualified",
    "proposal",
    "negotiation",
    "closed_won",
    "closed_lost",
    name="deal_stage",
)
activity_type = sa.Enum("call", "email", "meeting", "note", name="activity_type")
task_priority = sa.Enum("low", "medium", "high", name="task_priority")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_company",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("industry", sa.String(length=100), nullable=True),
        sa.Column("website", sa.String(length=255), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("employee_count", sa.Integer(), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_company_name", "crm_company", ["name"], unique=False)

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("position", sa.String(length=100), nullable=True),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_name", "crm_contact", ["name"], unique=False)
    op.create_index("ix_crm_contact_email", "crm_contact", ["email"], unique=False)
    op.create_index("ix_crm_contact_company_id", "crm_contact", ["company_id"], unique=False)

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("stage", deal_stage, server_default="lead", nullable=False),
        sa.Column("expected_close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_title", "crm_deal", ["title"], unique=False)
    op.create_index("ix_crm_deal_stage", "crm_deal", ["stage"], unique=False)
    op.create_index("ix_crm_deal_contact_id", "crm_deal", ["contact_id"], unique=False)
    op.create_index("ix_crm_deal_company_id", "crm_deal", ["company_id"], unique=False)
    op.create_index("ix_crm_deal_expected_close_date", "crm_deal", ["expected_close_date"], unique=False)

    op.create_table(
        "crm_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("type", activity_type, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "contact_id IS NOT NULL OR company_id IS NOT NULL OR deal_id IS NOT NULL",
            name="chk_activity_has_parent",
        ),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_activity_type", "crm_activity", ["type"], unique=False)
    op.create_index("ix_crm_activity_scheduled_at", "crm_activity", ["scheduled_at"], unique=False)
    op.create_index("ix_crm_activity_contact_id", "crm_activity", ["contact_id"], unique=False)
    op.create_index("ix_crm_activity_company_id", "crm_activity", ["company_id"], unique=False)
    op.create_index("ix_crm_activity_deal_id", "crm_activity", ["deal_id"], unique=False)
    op.create_index("ix_crm_activity_created_at", "crm_activity", ["created_at"], unique=False)

    op.create_table(
        "crm_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", task_priority, server_default="medium", nullable=False),
        sa.Column("is_completed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_task_priority", "crm_task", ["priority"], unique=False)
    op.create_index("ix_crm_task_due_date", "crm_task", ["due_date"], unique=False)
    op.create_index("ix_crm_task_is_completed", "crm_task", ["is_completed"], unique=False)
    op.create_index("ix_crm_task_deal_id", "crm_task", ["deal_id"], unique=False)

    op.create_table(
        "crm_tag",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "crm_email_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("crm_email_template")
    op.drop_table("crm_tag")

    op.drop_index("ix_crm_task_deal_id", table_name="crm_task")
    op.drop_index("ix_crm_task_is_completed", table_name="crm_task")
    op.drop_index("ix_crm_task_due_date", table_name="crm_task")
    op.drop_index("ix_crm_task_priority", table_name="crm_task")
    op.drop_table("crm_task")

    op.drop_index("ix_crm_activity_created_at", table_name="crm_activity")
    op.drop_index("ix_crm_activity_deal_id", table_name="crm_activity")
    op.drop_index("ix_crm_activity_company_id", table_name="crm_activity")
    op.drop_index("ix_crm_activity_contact_id", table_name="crm_activity")
    op.drop_index("ix_crm_activity_scheduled_at", table_name="crm_activity")
    op.drop_index("ix_crm_activity_type", table_name="crm_activity")
    op.drop_table("crm_activity")

    op.drop_index("ix_crm_deal_expected_close_date", table_name="crm_deal")
    op.drop_index("ix_crm_deal_company_id", table_name="crm_deal")
    op.drop_index("ix_crm_deal_contact_id", table_name="crm_deal")
    op.drop_index("ix_crm_deal_stage", table_name="crm_deal")
    op.drop_index("ix_crm_deal_title", table_name="crm_deal")
    op.drop_table("crm_deal")

    op.drop_index("ix_crm_contact_company_id", table_name="crm_contact")
    op.drop_index("ix_crm_contact_email", table_name="crm_contact")
    op.drop_index("ix_crm_contact_name", table_name="crm_contact")
    op.drop_table("crm_contact")

    op.drop_index("ix_crm_company_name", table_name="crm_company")
    op.drop_table("crm_company")

    bind = op.get_bind()
    task_priority.drop(bind, checkfirst=True)
    activity_type.drop(bind, checkfirst=True)
    deal_stage.drop(bind, checkfirst=True)
