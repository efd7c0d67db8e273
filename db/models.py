# db/models.py
import enum
import os
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, ForeignKey, Boolean,
    Numeric, Enum, Index, create_engine, text
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

SYSTEM_ACTOR = "SYSTEM"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class SubscriptionAction(str, enum.Enum):
    CREATED = "CREATED"
    RENEWED = "RENEWED"
    UPGRADED = "UPGRADED"
    DOWNGRADED = "DOWNGRADED"
    CANCELLED = "CANCELLED"
    TIER_CHANGED = "TIER_CHANGED"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), unique=True, nullable=False)
    cohort = Column(String(100))
    current_tier_level = Column(Integer, nullable=False, default=1)
    membership_start_date = Column(DateTime)
    last_tier_evaluation_date = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)


class MembershipTier(Base):
    __tablename__ = "membership_tiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(String(500))
    tier_level = Column(Integer, unique=True, nullable=False, index=True)
    benefits_description = Column(String(1000))
    discount_percentage = Column(Numeric(5, 2))
    active = Column(Boolean, nullable=False, default=True)


class MembershipPlan(Base):
    __tablename__ = "membership_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(String(500))
    duration_months = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    discount_percentage = Column(Numeric(5, 2))
    max_tier_level = Column(Integer)
    active = Column(Boolean, nullable=False, default=True)

    @property
    def discounted_price(self):
        if not self.discount_percentage:
            return self.price
        factor = Decimal("1") - Decimal(self.discount_percentage) / Decimal("100")
        return (Decimal(self.price) * factor).quantize(Decimal("0.01"))

    def is_applicable_for_tier(self, tier_level):
        return self.max_tier_level is None or tier_level <= self.max_tier_level


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_number = Column(String(50), unique=True, nullable=False)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    final_amount = Column(Numeric(10, 2))
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    @property
    def effective_amount(self):
        return self.final_amount if self.final_amount is not None else self.total_amount


class TierUpgradeRule(Base):
    __tablename__ = "tier_upgrade_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_name = Column(String(200), nullable=False)
    rule_description = Column(String(1000))
    source_tier_id = Column(Integer, ForeignKey("membership_tiers.id"), nullable=False, index=True)
    target_tier_id = Column(Integer, ForeignKey("membership_tiers.id"), nullable=False)
    # [{"criteria_type": "ORDER_COUNT", "value": 5, "logical_condition": "AND"}, ...]
    criteria = Column(JSON, nullable=False, default=list)
    auto_upgrade = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    source_tier = relationship("MembershipTier", foreign_keys=[source_tier_id])
    target_tier = relationship("MembershipTier", foreign_keys=[target_tier_id])


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # at most one ACTIVE subscription per user; partial indexes exist on SQLite and PostgreSQL only
        Index(
            "uq_subscriptions_user_active", "user_id", unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ).ddl_if(dialect=("sqlite", "postgresql")),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("membership_plans.id"), nullable=False)
    tier_id = Column(Integer, ForeignKey("membership_tiers.id"), nullable=False)
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    start_date = Column(DateTime, nullable=False)
    expiry_date = Column(DateTime, nullable=False, index=True)
    actual_price = Column(Numeric(10, 2), nullable=False)
    discounted_price = Column(Numeric(10, 2))
    auto_renewal = Column(Boolean, nullable=False, default=True)
    cancellation_reason = Column(String(500))
    cancelled_at = Column(DateTime)
    cancelled_by = Column(String(100))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")
    plan = relationship("MembershipPlan")
    tier = relationship("MembershipTier")

    @property
    def effective_price(self):
        return self.discounted_price if self.discounted_price is not None else self.actual_price


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    action = Column(Enum(SubscriptionAction), nullable=False)
    action_description = Column(String(500))
    old_value = Column(String(500))
    new_value = Column(String(500))
    old_price = Column(Numeric(10, 2))
    new_price = Column(Numeric(10, 2))
    performed_by = Column(String(100))
    performed_at = Column(DateTime, nullable=False, default=datetime.utcnow)


def create_tables(database_url):
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        # in-memory SQLite has to share one connection across sessions
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


DEFAULT_DATABASE_URL = "sqlite:///./membership.db"

_session_factory = None


def get_session_factory():
    global _session_factory
    if _session_factory is None:
        _session_factory = create_tables(os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL))
    return _session_factory
