"""deficiency sync tables: tenancy, active + archived deficient items, trello integration

Revision ID: 0001_deficiency_sync
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

revision = "0001_deficiency_sync"
down_revision = None
branch_labels = None
depends_on = None

HISTORY_LOGS = ("state_history", "due_dates", "deferred_dates", "progress_notes", "completed_photos")


def _has_table(name: str) -> bool:
    return name in inspect(op.get_bind()).get_table_names()


def _deficient_item_columns() -> list[sa.Column]:
    cols = [
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id"), nullable=False, index=True),
        sa.Column("property_id", sa.String(64), sa.ForeignKey("properties.id"), nullable=False, index=True),
        sa.Column("inspection_id", sa.String(64), nullable=True),
        sa.Column("item_id", sa.String(64), nullable=True),
        sa.Column("state", sa.String(40), nullable=False, server_default="requires-action"),
        sa.Column("item_title", sa.String(255), nullable=True),
        sa.Column("item_score", sa.Float(), nullable=True),
        sa.Column("item_inspector_notes", sa.Text(), nullable=True),
        sa.Column("section_title", sa.String(255), nullable=True),
        sa.Column("section_subtitle", sa.String(255), nullable=True),
        sa.Column("current_due_date_day", sa.String(10), nullable=True),
        sa.Column("current_deferred_date_day", sa.String(10), nullable=True),
        sa.Column("current_responsibility_group", sa.String(80), nullable=True),
        sa.Column("current_plan_to_fix", sa.Text(), nullable=True),
        sa.Column("current_reason_incomplete", sa.Text(), nullable=True),
        sa.Column("trello_card_id", sa.String(64), nullable=True),
        sa.Column("trello_card_url", sa.String(255), nullable=True),
        sa.Column("write_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.Float(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False, server_default="0"),
    ]
    cols.extend(sa.Column(f"{name}_json", sa.Text(), nullable=True) for name in HISTORY_LOGS)
    return cols


def upgrade() -> None:
    if not _has_table("organizations"):
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("slug", sa.String(80), nullable=False, unique=True, index=True),
            sa.Column("name", sa.String(160), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if not _has_table("app_users"):
        op.create_table(
            "app_users",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("email", sa.String(200), nullable=True, index=True),
            sa.Column("first_name", sa.String(80), nullable=True),
            sa.Column("last_name", sa.String(80), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if not _has_table("properties"):
        op.create_table(
            "properties",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id"), nullable=False, index=True),
            sa.Column("name", sa.String(160), nullable=False, server_default=""),
            sa.Column("zip", sa.String(10), nullable=True),
            sa.Column("timezone", sa.String(64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if not _has_table("deficient_items"):
        op.create_table("deficient_items", *_deficient_item_columns())

    if not _has_table("archived_deficient_items"):
        op.create_table(
            "archived_deficient_items",
            *_deficient_item_columns(),
            sa.Column("archived_at", sa.DateTime(), nullable=False),
        )

    if not _has_table("trello_credentials"):
        op.create_table(
            "trello_credentials",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id"), nullable=False, unique=True, index=True),
            sa.Column("auth_token", sa.String(255), nullable=False),
            sa.Column("api_key", sa.String(255), nullable=False),
            sa.Column("member_id", sa.String(64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if not _has_table("property_trello_integrations"):
        op.create_table(
            "property_trello_integrations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id"), nullable=False, index=True),
            sa.Column("property_id", sa.String(64), sa.ForeignKey("properties.id"), nullable=False, unique=True),
            sa.Column("board_id", sa.String(64), nullable=True),
            sa.Column("open_list_id", sa.String(64), nullable=True),
            sa.Column("closed_list_id", sa.String(64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if not _has_table("trello_card_refs"):
        op.create_table(
            "trello_card_refs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id"), nullable=False, index=True),
            sa.Column("property_id", sa.String(64), sa.ForeignKey("properties.id"), nullable=False, index=True),
            sa.Column("card_id", sa.String(64), nullable=False),
            sa.Column("deficiency_id", sa.String(64), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("property_id", "card_id", name="uq_trello_card_refs_property_card"),
            sa.UniqueConstraint("deficiency_id", name="uq_trello_card_refs_deficiency"),
        )

    if not _has_table("trello_comment_receipts"):
        op.create_table(
            "trello_comment_receipts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("dedupe_key", sa.String(200), nullable=False),
            sa.Column("card_id", sa.String(64), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("dedupe_key", name="uq_trello_comment_receipts_key"),
        )


def downgrade() -> None:
    for table in (
        "trello_comment_receipts",
        "trello_card_refs",
        "property_trello_integrations",
        "trello_credentials",
        "archived_deficient_items",
        "deficient_items",
        "properties",
        "app_users",
        "organizations",
    ):
        if _has_table(table):
            op.drop_table(table)
