"""Create the daily Sponsored Products report tables read by the rules engine.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _metric_columns(with_1d: bool, with_7d: bool) -> list:
    cols = [
        sa.Column("impressions", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("clicks", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("cost", sa.Float(), nullable=True, server_default="0"),
    ]
    if with_1d:
        cols += [
            sa.Column("sales_1d", sa.Float(), nullable=True, server_default="0"),
            sa.Column("purchases_1d", sa.Integer(), nullable=True, server_default="0"),
        ]
    if with_7d:
        cols += [
            sa.Column("sales_7d", sa.Float(), nullable=True, server_default="0"),
            sa.Column("purchases_7d", sa.Integer(), nullable=True, server_default="0"),
        ]
    return cols


def upgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    if "sp_search_term_report" not in existing:
        op.create_table(
            "sp_search_term_report",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("report_date", sa.Date(), nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("campaign_name", sa.String(512), nullable=True),
            sa.Column("ad_group_id", sa.String(255), nullable=True),
            sa.Column("ad_group_name", sa.String(512), nullable=True),
            sa.Column("keyword_id", sa.String(255), nullable=True),
            sa.Column("keyword_text", sa.Text(), nullable=True),
            sa.Column("keyword_type", sa.String(100), nullable=True),
            sa.Column("targeting", sa.Text(), nullable=True),
            sa.Column("customer_search_term", sa.Text(), nullable=True),
            sa.Column("asin", sa.String(20), nullable=True),
            *_metric_columns(with_1d=True, with_7d=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sp_st_report_date", "sp_search_term_report", ["report_date"], unique=False)
        op.create_index(
            "ix_sp_st_report_campaign_date", "sp_search_term_report", ["campaign_id", "report_date"], unique=False,
        )

    if "sp_targeting_report" not in existing:
        op.create_table(
            "sp_targeting_report",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("report_date", sa.Date(), nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("campaign_name", sa.String(512), nullable=True),
            sa.Column("ad_group_id", sa.String(255), nullable=True),
            sa.Column("ad_group_name", sa.String(512), nullable=True),
            sa.Column("ad_type", sa.String(4), nullable=False, server_default="SP"),
            sa.Column("keyword_id", sa.String(255), nullable=False),
            sa.Column("keyword_text", sa.Text(), nullable=True),
            sa.Column("keyword_type", sa.String(100), nullable=True),
            sa.Column("targeting", sa.Text(), nullable=True),
            *_metric_columns(with_1d=False, with_7d=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sp_targeting_report_date", "sp_targeting_report", ["report_date"], unique=False)
        op.create_index(
            "ix_sp_targeting_report_campaign_date", "sp_targeting_report", ["campaign_id", "report_date"], unique=False,
        )

    if "sp_campaign_report" not in existing:
        op.create_table(
            "sp_campaign_report",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("report_date", sa.Date(), nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("campaign_name", sa.String(512), nullable=True),
            *_metric_columns(with_1d=True, with_7d=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_sp_campaign_report_campaign_date", "sp_campaign_report", ["campaign_id", "report_date"], unique=False,
        )


def downgrade() -> None:
    op.drop_index("ix_sp_campaign_report_campaign_date", table_name="sp_campaign_report")
    op.drop_table("sp_campaign_report")
    op.drop_index("ix_sp_targeting_report_campaign_date", table_name="sp_targeting_report")
    op.drop_index("ix_sp_targeting_report_date", table_name="sp_targeting_report")
    op.drop_table("sp_targeting_report")
    op.drop_index("ix_sp_st_report_campaign_date", table_name="sp_search_term_report")
    op.drop_index("ix_sp_st_report_date", table_name="sp_search_term_report")
    op.drop_table("sp_search_term_report")
