from datetime import datetime
from decimal import Decimal
from itertools import count

import pytest

from db.models import (
    create_tables, User, MembershipTier, MembershipPlan, Order, OrderStatus, TierUpgradeRule
)

NOW = datetime(2026, 10, 15, 12, 0, 0)

_order_numbers = count(1)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def session_factory():
    # fresh in-memory database per test
    return create_tables("sqlite://")


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def tiers(db):
    silver = MembershipTier(name="Silver", tier_level=1, discount_percentage=Decimal("5"), active=True)
    gold = MembershipTier(name="Gold", tier_level=2, discount_percentage=Decimal("10"), active=True)
    platinum = MembershipTier(name="Platinum", tier_level=3, discount_percentage=Decimal("15"), active=True)
    db.add_all([silver, gold, platinum])
    db.commit()
    return {"silver": silver, "gold": gold, "platinum": platinum}


@pytest.fixture
def monthly_plan(db):
    plan = MembershipPlan(
        name="Monthly",
        duration_months=1,
        price=Decimal("20.00"),
        discount_percentage=Decimal("10"),
        active=True,
    )
    db.add(plan)
    db.commit()
    return plan


@pytest.fixture
def make_user(db):
    def _make(username="alice", cohort=None, level=1, membership_start_date=None,
              last_tier_evaluation_date=None):
        user = User(
            username=username,
            cohort=cohort,
            current_tier_level=level,
            membership_start_date=membership_start_date,
            last_tier_evaluation_date=last_tier_evaluation_date,
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def add_order(db):
    def _add(user, amount, status=OrderStatus.COMPLETED, created_at=NOW, final_amount=None):
        order = Order(
            user_id=user.id,
            order_number=f"T-{next(_order_numbers)}",
            status=status,
            total_amount=Decimal(str(amount)),
            final_amount=Decimal(str(final_amount)) if final_amount is not None else None,
            created_at=created_at,
        )
        db.add(order)
        db.commit()
        return order
    return _add


@pytest.fixture
def make_rule(db):
    def _make(source, target, criteria, auto_upgrade=True, active=True, name=None):
        rule = TierUpgradeRule(
            rule_name=name or f"{source.name} to {target.name}",
            source_tier_id=source.id,
            target_tier_id=target.id,
            criteria=criteria,
            auto_upgrade=auto_upgrade,
            active=active,
        )
        db.add(rule)
        db.commit()
        return rule
    return _make


@pytest.fixture
def silver_to_gold_criteria():
    return [
        {"criteria_type": "ORDER_COUNT", "value": 5, "logical_condition": "AND"},
        {"criteria_type": "MONTHLY_ORDER_VALUE", "value": 200, "logical_condition": "AND"},
    ]
