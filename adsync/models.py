"""
Campaign Sync Engine - Database Models
Local mirror of the remote advertising account plus the engine's own
bookkeeping (safety limits, automation rules, audit trail, sync state).
"""

import uuid
import enum
import json
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from adsync.database import Base


def _utcnow() -> datetime:
    """Naive UTC now - matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class CampaignType(str, enum.Enum):
    SP = "SP"  # Sponsored Products - keyword-targeted search ads
    SB = "SB"  # Sponsored Brands
    SD = "SD"  # Sponsored Display - audience/product targeting


class EntityState(str, enum.Enum):
    ENABLED = "enabled"
    PAUSED = "paused"
    ARCHIVED = "archived"


class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"


class SyncStatus(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class ActorType(str, enum.Enum):
    USER = "user"
    AGENT = "agent"
    RULE = "rule"
    SYSTEM = "system"


class RuleResult(str, enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════════════
#  CREDENTIALS - single active OAuth token pair + selected profile
# ══════════════════════════════════════════════════════════════════════

class Credential(Base):
    """Login with Amazon tokens for the advertising profile this installation manages."""
    __tablename__ = "credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(64), nullable=True)
    country_code: Mapped[str] = mapped_column(String(8), nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    # Stored with the refresh buffer already subtracted
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=CredentialStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_credentials_updated_at", "updated_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGN TREE - mirrored from the remote API
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    """Campaign mirrored from the remote account. `type` never changes after creation."""
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # remote-assigned
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(2), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    budget: Mapped[float] = mapped_column(Float, nullable=True)
    budget_type: Mapped[str] = mapped_column(String(20), nullable=True)
    start_date: Mapped[str] = mapped_column(String(10), nullable=True)
    end_date: Mapped[str] = mapped_column(String(10), nullable=True)
    targeting_type: Mapped[str] = mapped_column(String(20), nullable=True)  # SP
    brand_entity_id: Mapped[str] = mapped_column(String(64), nullable=True)  # SB
    tactic: Mapped[str] = mapped_column(String(20), nullable=True)  # SD
    cost_type: Mapped[str] = mapped_column(String(20), nullable=True)  # SD
    last_pushed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    ad_groups: Mapped[list["AdGroup"]] = relationship("AdGroup", back_populates="campaign", cascade="all, delete-orphan")
    negative_keywords: Mapped[list["NegativeKeyword"]] = relationship("NegativeKeyword", back_populates="campaign", cascade="all, delete-orphan")
    metrics: Mapped[list["CampaignMetric"]] = relationship("CampaignMetric", back_populates="campaign", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_campaigns_profile_id", "profile_id"),
        Index("ix_campaigns_type", "type"),
        Index("ix_campaigns_state", "state"),
    )


class AdGroup(Base):
    __tablename__ = "ad_groups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    default_bid: Mapped[float] = mapped_column(Float, nullable=True)
    last_pushed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="ad_groups")
    keywords: Mapped[list["Keyword"]] = relationship("Keyword", back_populates="ad_group", cascade="all, delete-orphan")
    product_targets: Mapped[list["ProductTarget"]] = relationship("ProductTarget", back_populates="ad_group", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_ad_groups_campaign_id", "campaign_id"),
    )


class Keyword(Base):
    """Keyword under an SP or SB ad group. campaign_type is denormalized for routing."""
    __tablename__ = "keywords"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ad_group_id: Mapped[str] = mapped_column(String(64), ForeignKey("ad_groups.id", ondelete="CASCADE"), nullable=False)
    keyword_text: Mapped[str] = mapped_column(String(512), nullable=False)
    match_type: Mapped[str] = mapped_column(String(20), nullable=False)  # exact, phrase, broad
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    bid: Mapped[float] = mapped_column(Float, nullable=True)
    campaign_type: Mapped[str] = mapped_column(String(2), nullable=False, default=CampaignType.SP.value)
    last_pushed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    ad_group: Mapped["AdGroup"] = relationship("AdGroup", back_populates="keywords")
    metrics: Mapped[list["KeywordMetric"]] = relationship("KeywordMetric", back_populates="keyword", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_keywords_ad_group_id", "ad_group_id"),
        Index("ix_keywords_state", "state"),
    )


class NegativeKeyword(Base):
    """Exclusion term. A null ad_group_id means the negative applies campaign-wide."""
    __tablename__ = "negative_keywords"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    ad_group_id: Mapped[str] = mapped_column(String(64), ForeignKey("ad_groups.id", ondelete="CASCADE"), nullable=True)
    keyword_text: Mapped[str] = mapped_column(String(512), nullable=False)
    match_type: Mapped[str] = mapped_column(String(20), nullable=False)  # negativeExact, negativePhrase
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    campaign_type: Mapped[str] = mapped_column(String(2), nullable=False, default=CampaignType.SP.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="negative_keywords")
    ad_group: Mapped["AdGroup"] = relationship("AdGroup")

    __table_args__ = (
        Index("ix_negative_keywords_campaign_id", "campaign_id"),
        Index("ix_negative_keywords_ad_group_id", "ad_group_id"),
    )

    @property
    def level(self) -> str:
        return "ad_group" if self.ad_group_id else "campaign"


class ProductTarget(Base):
    """Structured targeting clause (ASIN, category, brand, audience...)."""
    __tablename__ = "product_targets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ad_group_id: Mapped[str] = mapped_column(String(64), ForeignKey("ad_groups.id", ondelete="CASCADE"), nullable=False)
    campaign_type: Mapped[str] = mapped_column(String(2), nullable=False)
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)
    expression_type: Mapped[str] = mapped_column(String(20), nullable=True)
    expression: Mapped[str] = mapped_column(Text, nullable=False)  # JSON-serialized clause
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    bid: Mapped[float] = mapped_column(Float, nullable=True)
    last_pushed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    ad_group: Mapped["AdGroup"] = relationship("AdGroup", back_populates="product_targets")
    metrics: Mapped[list["ProductTargetMetric"]] = relationship("ProductTargetMetric", back_populates="product_target", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_product_targets_ad_group_id", "ad_group_id"),
        Index("ix_product_targets_state", "state"),
    )

    @property
    def parsed_expression(self):
        try:
            return json.loads(self.expression)
        except (TypeError, ValueError):
            return self.expression


# ══════════════════════════════════════════════════════════════════════
#  DAILY METRICS - one row per owner per day (YYYYMMDD)
# ══════════════════════════════════════════════════════════════════════

class CampaignMetric(Base):
    __tablename__ = "campaign_metrics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[str] = mapped_column(String(8), nullable=False)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    orders: Mapped[int] = mapped_column(Integer, default=0)
    sales: Mapped[float] = mapped_column(Float, default=0.0)

    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="metrics")

    __table_args__ = (
        UniqueConstraint("campaign_id", "date", name="uq_campaign_metric_day"),
        Index("ix_campaign_metrics_date", "date"),
    )


class KeywordMetric(Base):
    __tablename__ = "keyword_metrics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    keyword_id: Mapped[str] = mapped_column(String(64), ForeignKey("keywords.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[str] = mapped_column(String(8), nullable=False)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    orders: Mapped[int] = mapped_column(Integer, default=0)
    sales: Mapped[float] = mapped_column(Float, default=0.0)

    keyword: Mapped["Keyword"] = relationship("Keyword", back_populates="metrics")

    __table_args__ = (
        UniqueConstraint("keyword_id", "date", name="uq_keyword_metric_day"),
        Index("ix_keyword_metrics_date", "date"),
    )


class ProductTargetMetric(Base):
    __tablename__ = "product_target_metrics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_target_id: Mapped[str] = mapped_column(String(64), ForeignKey("product_targets.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[str] = mapped_column(String(8), nullable=False)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    orders: Mapped[int] = mapped_column(Integer, default=0)
    sales: Mapped[float] = mapped_column(Float, default=0.0)

    product_target: Mapped["ProductTarget"] = relationship("ProductTarget", back_populates="metrics")

    __table_args__ = (
        UniqueConstraint("product_target_id", "date", name="uq_product_target_metric_day"),
        Index("ix_product_target_metrics_date", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SAFETY LIMITS - single active row
# ══════════════════════════════════════════════════════════════════════

class SafetyLimit(Base):
    __tablename__ = "safety_limits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    max_bid_change_pct: Mapped[float] = mapped_column(Float, default=50.0)
    max_budget_change_pct: Mapped[float] = mapped_column(Float, default=100.0)
    min_bid_floor: Mapped[float] = mapped_column(Float, default=0.02)
    max_bid_ceiling: Mapped[float] = mapped_column(Float, default=100.0)
    max_daily_spend: Mapped[float] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


# ══════════════════════════════════════════════════════════════════════
#  AUTOMATION - rules and their per-entity execution log
# ══════════════════════════════════════════════════════════════════════

class AutomationRule(Base):
    __tablename__ = "automation_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    condition_type: Mapped[str] = mapped_column(String(50), nullable=False)
    condition_value: Mapped[float] = mapped_column(Float, nullable=False)
    condition_entity: Mapped[str] = mapped_column(String(50), default="keyword")
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    action_value: Mapped[float] = mapped_column(Float, nullable=True)  # percent, bid actions only
    cooldown_hours: Mapped[int] = mapped_column(Integer, default=24)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0)
    last_executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    executions: Mapped[list["RuleExecution"]] = relationship("RuleExecution", back_populates="rule", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_automation_rules_enabled", "enabled"),
    )


class RuleExecution(Base):
    """Append-only outcome of one rule against one entity. Drives the cooldown window."""
    __tablename__ = "rule_executions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(512), nullable=True)
    result: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    rule: Mapped["AutomationRule"] = relationship("AutomationRule", back_populates="executions")

    __table_args__ = (
        Index("ix_rule_executions_cooldown", "rule_id", "entity_id", "executed_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AUDIT TRAIL - append-only, never updated or deleted
# ══════════════════════════════════════════════════════════════════════

class AuditEntry(Base):
    __tablename__ = "audit_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    entity_name: Mapped[str] = mapped_column(Text, nullable=True)
    before_state: Mapped[dict] = mapped_column(JSON, nullable=True)
    after_state: Mapped[dict] = mapped_column(JSON, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_msg: Mapped[str] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_entries_timestamp", "timestamp"),
        Index("ix_audit_entries_action_type", "action_type"),
        Index("ix_audit_entries_actor_type", "actor_type"),
        Index("ix_audit_entries_entity", "entity_type", "entity_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SYNC STATE - one row per profile, doubles as the sync mutex
# ══════════════════════════════════════════════════════════════════════

class SyncState(Base):
    __tablename__ = "sync_states"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    sync_status: Mapped[str] = mapped_column(String(20), default=SyncStatus.IDLE.value)
    sync_started_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    stats: Mapped[dict] = mapped_column(JSON, nullable=True)
    error: Mapped[str] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


# ══════════════════════════════════════════════════════════════════════
#  AGENT API KEYS - credentials for the external-agent HTTP surface
# ══════════════════════════════════════════════════════════════════════

class AgentApiKey(Base):
    __tablename__ = "agent_api_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # sha256 hex
    key_preview: Mapped[str] = mapped_column(String(32), nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    revoked_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class AgentHeartbeat(Base):
    """Liveness ping from an external agent, surfaced in agent status."""
    __tablename__ = "agent_heartbeats"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agent_api_keys.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(50), default="active")
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_agent_heartbeats_timestamp", "timestamp"),
    )
