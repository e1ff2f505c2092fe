"""Create automation rule, log, throttle and budget override tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    if "automation_rules" not in existing:
        op.create_table(
            "automation_rules",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("rule_type", sa.String(50), nullable=False),
            sa.Column("ad_type", sa.String(4), nullable=False, server_default="SP"),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("scope", sa.JSON(), nullable=True),
            sa.Column("config", sa.JSON(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_automation_rules_is_active", "automation_rules", ["is_active"], unique=False)
        op.create_index("ix_automation_rules_rule_type", "automation_rules", ["rule_type"], unique=False)

    if "automation_logs" not in existing:
        op.create_table(
            "automation_logs",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("summary", sa.Text(), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("run_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_automation_logs_rule_id", "automation_logs", ["rule_id"], unique=False)
        op.create_index("ix_automation_logs_run_at", "automation_logs", ["run_at"], unique=False)

    if "automation_action_throttle" not in existing:
        op.create_table(
            "automation_action_throttle",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("entity_key", sa.String(512), nullable=False),
            sa.Column("acted_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("throttle_until", sa.DateTime(), nullable=False),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("rule_id", "entity_key", name="uq_throttle_rule_entity"),
        )
        op.create_index("ix_throttle_throttle_until", "automation_action_throttle", ["throttle_until"], unique=False)

    if "daily_budget_overrides" not in existing:
        op.create_table(
            "daily_budget_overrides",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=True),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("original_budget", sa.Float(), nullable=False),
            sa.Column("override_date", sa.Date(), nullable=False),
            sa.Column("reverted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("campaign_id", "override_date", name="uq_budget_override_campaign_day"),
        )
        op.create_index("ix_budget_overrides_override_date", "daily_budget_overrides", ["override_date"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_budget_overrides_override_date", table_name="daily_budget_overrides")
    op.drop_table("daily_budget_overrides")
    op.drop_index("ix_throttle_throttle_until", table_name="automation_action_throttle")
    op.drop_table("automation_action_throttle")
    op.drop_index("ix_automation_logs_run_at", table_name="automation_logs")
    op.drop_index("ix_automation_logs_rule_id", table_name="automation_logs")
    op.drop_table("automation_logs")
    op.drop_index("ix_automation_rules_rule_type", table_name="automation_rules")
    op.drop_index("ix_automation_rules_is_active", table_name="automation_rules")
    op.drop_table("automation_rules")
