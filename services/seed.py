"""
Reference data: three tiers, monthly/quarterly/yearly plans per tier and the
default upgrade rules. Each section is skipped if its table already has rows.

    python -m services.seed
"""

import logging
import os
from decimal import Decimal

from dotenv import load_dotenv

from db.models import MembershipTier, MembershipPlan, TierUpgradeRule, get_session_factory
from services.criteria import CriteriaType

logger = logging.getLogger(__name__)

TIERS = [
    {"name": "Silver", "tier_level": 1, "discount_percentage": Decimal("5"),
     "description": "Basic membership tier with essential benefits",
     "benefits_description": "Free shipping on orders over $50, 5% discount on selected items"},
    {"name": "Gold", "tier_level": 2, "discount_percentage": Decimal("10"),
     "description": "Premium membership tier with enhanced benefits",
     "benefits_description": "Free shipping on all orders, 10% discount, early access to sales"},
    {"name": "Platinum", "tier_level": 3, "discount_percentage": Decimal("15"),
     "description": "Elite membership tier with exclusive benefits",
     "benefits_description": "15% discount, 24/7 VIP support, exclusive product access"},
]

# (label, months, per-tier price, per-tier plan discount %)
PLAN_TERMS = [
    ("Monthly", 1, ["19.99", "39.99", "79.99"], ["0", "5", "10"]),
    ("Quarterly", 3, ["59.97", "119.97", "239.97"], ["10", "15", "20"]),
    ("Yearly", 12, ["239.88", "479.88", "959.88"], ["20", "25", "30"]),
]


def _criteria(orders=None, monthly_value=None, cohort=None):
    criteria = []
    if orders is not None:
        criteria.append({"criteria_type": CriteriaType.ORDER_COUNT.value, "value": orders, "logical_condition": "AND"})
    if monthly_value is not None:
        criteria.append({"criteria_type": CriteriaType.MONTHLY_ORDER_VALUE.value, "value": monthly_value, "logical_condition": "AND"})
    if cohort is not None:
        criteria.append({"criteria_type": CriteriaType.USER_COHORT.value, "value": cohort, "logical_condition": "AND"})
    return criteria


def seed_tiers(db):
    if db.query(MembershipTier).count() > 0:
        logger.info("[Seed] Membership tiers already exist, skipping")
        return
    db.add_all(MembershipTier(active=True, **t) for t in TIERS)
    db.flush()
    logger.info(f"[Seed] Seeded {len(TIERS)} membership tiers")


def seed_plans(db):
    if db.query(MembershipPlan).count() > 0:
        logger.info("[Seed] Membership plans already exist, skipping")
        return
    count = 0
    for label, months, prices, discounts in PLAN_TERMS:
        for tier, price, discount in zip(TIERS, prices, discounts):
            db.add(MembershipPlan(
                name=f"{label} {tier['name']}",
                description=f"{label} subscription to {tier['name']} tier membership",
                duration_months=months,
                price=Decimal(price),
                discount_percentage=Decimal(discount),
                max_tier_level=tier["tier_level"],
                active=True,
            ))
            count += 1
    db.flush()
    logger.info(f"[Seed] Seeded {count} membership plans")


def seed_rules(db):
    if db.query(TierUpgradeRule).count() > 0:
        logger.info("[Seed] Tier upgrade rules already exist, skipping")
        return

    tiers = {t.name: t for t in db.query(MembershipTier).all()}
    if not {"Silver", "Gold", "Platinum"} <= tiers.keys():
        logger.warning("[Seed] Required tiers not found for upgrade rules, skipping")
        return

    db.add_all([
        TierUpgradeRule(
            rule_name="Silver to Gold Auto-Upgrade",
            rule_description="Automatic upgrade from Silver to Gold based on order activity",
            source_tier_id=tiers["Silver"].id, target_tier_id=tiers["Gold"].id,
            criteria=_criteria(orders=5, monthly_value=200),
            auto_upgrade=True, active=True,
        ),
        TierUpgradeRule(
            rule_name="Gold to Platinum Auto-Upgrade",
            rule_description="Automatic upgrade from Gold to Platinum based on order activity",
            source_tier_id=tiers["Gold"].id, target_tier_id=tiers["Platinum"].id,
            criteria=_criteria(orders=10, monthly_value=500),
            auto_upgrade=True, active=True,
        ),
        TierUpgradeRule(
            rule_name="Silver to Platinum Direct Upgrade",
            rule_description="Direct upgrade for high-value VIP customers, needs approval",
            source_tier_id=tiers["Silver"].id, target_tier_id=tiers["Platinum"].id,
            criteria=_criteria(orders=15, monthly_value=1000, cohort="VIP"),
            auto_upgrade=False, active=True,
        ),
    ])
    db.flush()
    logger.info("[Seed] Seeded 3 tier upgrade rules")


def seed_reference_data(db):
    seed_tiers(db)
    seed_plans(db)
    seed_rules(db)
    db.commit()


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    session = get_session_factory()()
    try:
        seed_reference_data(session)
    finally:
        session.close()
