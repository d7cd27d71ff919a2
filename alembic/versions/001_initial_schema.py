"""Initial schema: credentials, campaign tree, daily metrics, safety limits,
automation rules, audit trail, sync state and agent keys.

Revision ID: 001
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
    ]


def _metric_table(name: str, owner_column: str, owner_table: str, constraint: str) -> None:
    op.create_table(
        name,
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(owner_column, sa.String(64), nullable=False),
        sa.Column("date", sa.String(8), nullable=False),
        sa.Column("impressions", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("clicks", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("cost", sa.Float(), nullable=True, server_default="0"),
        sa.Column("orders", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("sales", sa.Float(), nullable=True, server_default="0"),
        sa.ForeignKeyConstraint([owner_column], [f"{owner_table}.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(owner_column, "date", name=constraint),
    )
    op.create_index(f"ix_{name}_date", name, ["date"], unique=False)


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    if "campaigns" in insp.get_table_names():
        return  # created by init_db() before migrations were introduced

    op.create_table(
        "credentials",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("profile_id", sa.String(64), nullable=True),
        sa.Column("country_code", sa.String(8), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("token_expires_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(20), nullable=True, server_default="active"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credentials_updated_at", "credentials", ["updated_at"], unique=False)

    op.create_table(
        "campaigns",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("profile_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(2), nullable=False),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("budget", sa.Float(), nullable=True),
        sa.Column("budget_type", sa.String(20), nullable=True),
        sa.Column("start_date", sa.String(10), nullable=True),
        sa.Column("end_date", sa.String(10), nullable=True),
        sa.Column("targeting_type", sa.String(20), nullable=True),
        sa.Column("brand_entity_id", sa.String(64), nullable=True),
        sa.Column("tactic", sa.String(20), nullable=True),
        sa.Column("cost_type", sa.String(20), nullable=True),
        sa.Column("last_pushed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_campaigns_profile_id", "campaigns", ["profile_id"], unique=False)
    op.create_index("ix_campaigns_type", "campaigns", ["type"], unique=False)
    op.create_index("ix_campaigns_state", "campaigns", ["state"], unique=False)

    op.create_table(
        "ad_groups",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("campaign_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("default_bid", sa.Float(), nullable=True),
        sa.Column("last_pushed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ad_groups_campaign_id", "ad_groups", ["campaign_id"], unique=False)

    op.create_table(
        "keywords",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("ad_group_id", sa.String(64), nullable=False),
        sa.Column("keyword_text", sa.String(512), nullable=False),
        sa.Column("match_type", sa.String(20), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("bid", sa.Float(), nullable=True),
        sa.Column("campaign_type", sa.String(2), nullable=False, server_default="SP"),
        sa.Column("last_pushed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["ad_group_id"], ["ad_groups.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_keywords_ad_group_id", "keywords", ["ad_group_id"], unique=False)
    op.create_index("ix_keywords_state", "keywords", ["state"], unique=False)

    op.create_table(
        "negative_keywords",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("campaign_id", sa.String(64), nullable=False),
        sa.Column("ad_group_id", sa.String(64), nullable=True),
        sa.Column("keyword_text", sa.String(512), nullable=False),
        sa.Column("match_type", sa.String(20), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("campaign_type", sa.String(2), nullable=False, server_default="SP"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["ad_group_id"], ["ad_groups.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_negative_keywords_campaign_id", "negative_keywords", ["campaign_id"], unique=False)
    op.create_index("ix_negative_keywords_ad_group_id", "negative_keywords", ["ad_group_id"], unique=False)

    op.create_table(
        "product_targets",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("ad_group_id", sa.String(64), nullable=False),
        sa.Column("campaign_type", sa.String(2), nullable=False),
        sa.Column("target_type", sa.String(50), nullable=False),
        sa.Column("expression_type", sa.String(20), nullable=True),
        sa.Column("expression", sa.Text(), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("bid", sa.Float(), nullable=True),
        sa.Column("last_pushed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["ad_group_id"], ["ad_groups.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_product_targets_ad_group_id", "product_targets", ["ad_group_id"], unique=False)
    op.create_index("ix_product_targets_state", "product_targets", ["state"], unique=False)

    _metric_table("campaign_metrics", "campaign_id", "campaigns", "uq_campaign_metric_day")
    _metric_table("keyword_metrics", "keyword_id", "keywords", "uq_keyword_metric_day")
    _metric_table("product_target_metrics", "product_target_id", "product_targets", "uq_product_target_metric_day")

    op.create_table(
        "safety_limits",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("max_bid_change_pct", sa.Float(), nullable=True, server_default="50"),
        sa.Column("max_budget_change_pct", sa.Float(), nullable=True, server_default="100"),
        sa.Column("min_bid_floor", sa.Float(), nullable=True, server_default="0.02"),
        sa.Column("max_bid_ceiling", sa.Float(), nullable=True, server_default="100"),
        sa.Column("max_daily_spend", sa.Float(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "automation_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("condition_type", sa.String(50), nullable=False),
        sa.Column("condition_value", sa.Float(), nullable=False),
        sa.Column("condition_entity", sa.String(50), nullable=True, server_default="keyword"),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("action_value", sa.Float(), nullable=True),
        sa.Column("cooldown_hours", sa.Integer(), nullable=True, server_default="24"),
        sa.Column("enabled", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("execution_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("last_executed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_rules_enabled", "automation_rules", ["enabled"], unique=False)

    op.create_table(
        "rule_executions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("entity_name", sa.String(512), nullable=True),
        sa.Column("result", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("executed_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rule_executions_cooldown", "rule_executions", ["rule_id", "entity_id", "executed_at"], unique=False)

    op.create_table(
        "audit_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("actor_type", sa.String(20), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(1024), nullable=False, server_default=""),
        sa.Column("entity_name", sa.Text(), nullable=True),
        sa.Column("before_state", postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column("after_state", postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("error_msg", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_entries_timestamp", "audit_entries", ["timestamp"], unique=False)
    op.create_index("ix_audit_entries_action_type", "audit_entries", ["action_type"], unique=False)
    op.create_index("ix_audit_entries_actor_type", "audit_entries", ["actor_type"], unique=False)
    op.create_index("ix_audit_entries_entity", "audit_entries", ["entity_type", "entity_id"], unique=False)

    op.create_table(
        "sync_states",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("profile_id", sa.String(64), nullable=False),
        sa.Column("sync_status", sa.String(20), nullable=True, server_default="idle"),
        sa.Column("sync_started_at", sa.DateTime(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(), nullable=True),
        sa.Column("stats", postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("profile_id"),
    )

    op.create_table(
        "agent_api_keys",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("key_preview", sa.String(32), nullable=False),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key_hash"),
    )


def downgrade() -> None:
    for table in (
        "agent_api_keys", "sync_states", "audit_entries", "rule_executions", "automation_rules",
        "safety_limits", "product_target_metrics", "keyword_metrics", "campaign_metrics",
        "product_targets", "negative_keywords", "keywords", "ad_groups", "campaigns", "credentials",
    ):
        op.drop_table(table)
