# services/membership_svc.py

import calendar
import enum
import logging
from datetime import datetime

from db.models import (
    User, MembershipTier, MembershipPlan, Subscription, SubscriptionHistory,
    SubscriptionStatus, SubscriptionAction, SYSTEM_ACTOR
)
from services.errors import NotFoundError, DomainConflictError, InvalidRequestError

logger = logging.getLogger(__name__)


class TierChangeDirection(str, enum.Enum):
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"


def add_months(dt, months):
    """Calendar months, clamping the day to the end of the target month (Jan 31 + 1 -> Feb 28/29)."""
    month = dt.month + months
    year = dt.year + (month - 1) // 12
    month = (month - 1) % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def renewal_expiry(current_expiry, duration_months, now):
    """
    Extend from the current expiry so a short lapse keeps the term continuous.
    If that still lands in the past, start the new term from now instead.
    The result is never earlier than max(now, current_expiry).
    """
    extended = add_months(current_expiry, duration_months)
    if extended <= now:
        return add_months(now, duration_months)
    return extended


class MembershipService:
    """
    Subscription lifecycle: subscribe, cancel, renew, change_tier, expire.

    Every mutation appends a SubscriptionHistory row. Nothing here commits;
    the caller owns the transaction so a whole step either lands or rolls back.
    """

    def __init__(self, db):
        self.db = db

    # lookups

    def _get_user(self, user_id, for_update=False):
        query = self.db.query(User).filter(User.id == user_id)
        if for_update:
            query = query.with_for_update()
        user = query.first()
        if user is None:
            raise NotFoundError(f"User not found with ID: {user_id}", {"user_id": user_id})
        return user

    def _get_tier(self, tier_id):
        tier = self.db.get(MembershipTier, tier_id)
        if tier is None:
            raise NotFoundError(f"Membership tier not found with ID: {tier_id}", {"tier_id": tier_id})
        return tier

    def _get_plan(self, plan_id):
        plan = self.db.get(MembershipPlan, plan_id)
        if plan is None:
            raise NotFoundError(f"Membership plan not found with ID: {plan_id}", {"plan_id": plan_id})
        return plan

    def _get_subscription(self, subscription_id):
        subscription = self.db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription not found with ID: {subscription_id}",
                {"subscription_id": subscription_id},
            )
        return subscription

    def get_current_subscription(self, user_id):
        return self.db.query(Subscription)\
            .filter(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)\
            .order_by(Subscription.expiry_date.desc())\
            .first()

    def get_subscription_history(self, user_id):
        self._get_user(user_id)
        return self.db.query(SubscriptionHistory)\
            .join(Subscription, Subscription.id == SubscriptionHistory.subscription_id)\
            .filter(Subscription.user_id == user_id)\
            .order_by(SubscriptionHistory.performed_at, SubscriptionHistory.id)\
            .all()

    def _record(self, subscription, action, description, old_value, new_value,
                old_price, new_price, actor, now):
        self.db.add(SubscriptionHistory(
            subscription_id=subscription.id,
            action=action,
            action_description=description,
            old_value=old_value,
            new_value=new_value,
            old_price=old_price,
            new_price=new_price,
            performed_by=actor,
            performed_at=now,
        ))

    # transitions

    def subscribe(self, user_id, plan_id, tier_id, actor, auto_renewal=True, now=None):
        now = now or datetime.utcnow()
        logger.info(f"[Membership] User {user_id} subscribing to plan {plan_id} with tier {tier_id}")

        user = self._get_user(user_id, for_update=True)
        plan = self._get_plan(plan_id)
        tier = self._get_tier(tier_id)

        if not plan.active:
            raise DomainConflictError(f"Plan {plan.name} is not active", {"plan_id": plan_id})
        if not tier.active:
            raise DomainConflictError(f"Tier {tier.name} is not active", {"tier_id": tier_id})
        if not plan.is_applicable_for_tier(tier.tier_level):
            raise DomainConflictError(
                f"Plan {plan.name} is not applicable for tier {tier.name}",
                {"plan_id": plan_id, "tier_id": tier_id},
            )

        existing = self.get_current_subscription(user_id)
        if existing is not None:
            raise DomainConflictError(
                "User already has an active subscription",
                {"user_id": user_id, "subscription_id": existing.id},
            )

        subscription = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            tier_id=tier.id,
            status=SubscriptionStatus.ACTIVE,
            start_date=now,
            expiry_date=add_months(now, plan.duration_months),
            actual_price=plan.price,
            discounted_price=plan.discounted_price,
            auto_renewal=auto_renewal,
        )
        self.db.add(subscription)
        self.db.flush()

        user.current_tier_level = tier.tier_level
        if user.membership_start_date is None:
            user.membership_start_date = now

        self._record(subscription, SubscriptionAction.CREATED, "Subscription created",
                     None, plan.name, None, plan.price, actor, now)
        self.db.flush()

        logger.info(f"[Membership] User {user_id} subscribed to {plan.name} ({tier.name}) until {subscription.expiry_date}")
        return subscription

    def cancel(self, user_id, reason, actor, now=None):
        now = now or datetime.utcnow()
        logger.info(f"[Membership] Cancelling subscription for user {user_id}: {reason}")

        self._get_user(user_id)
        subscription = self.get_current_subscription(user_id)
        if subscription is None:
            raise NotFoundError(f"No active subscription found for user: {user_id}", {"user_id": user_id})

        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancellation_reason = reason
        subscription.cancelled_by = actor
        subscription.cancelled_at = now

        plan = subscription.plan
        self._record(subscription, SubscriptionAction.CANCELLED, f"Subscription cancelled: {reason}",
                     plan.name, None, plan.price, None, actor, now)
        self.db.flush()
        return subscription

    def renew(self, subscription_id, actor, now=None):
        now = now or datetime.utcnow()
        subscription = self._get_subscription(subscription_id)
        # same lock as subscribe, so the "one ACTIVE per user" check can't race it
        self._get_user(subscription.user_id, for_update=True)

        other = self.db.query(Subscription)\
            .filter(Subscription.user_id == subscription.user_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.id != subscription.id)\
            .first()
        if other is not None:
            raise DomainConflictError(
                "User already has another active subscription",
                {"subscription_id": subscription_id, "active_subscription_id": other.id},
            )

        plan = subscription.plan
        old_expiry = subscription.expiry_date
        subscription.expiry_date = renewal_expiry(old_expiry, plan.duration_months, now)
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.cancellation_reason = None
        subscription.cancelled_by = None
        subscription.cancelled_at = None

        # an old Cancelled/Expired row coming back must agree with the user's level
        subscription.user.current_tier_level = subscription.tier.tier_level

        self._record(subscription, SubscriptionAction.RENEWED, "Subscription renewed",
                     plan.name, plan.name, plan.price, plan.price, actor, now)
        self.db.flush()

        logger.info(f"[Membership] Subscription {subscription.id} renewed: {old_expiry} -> {subscription.expiry_date}")
        return subscription

    def change_tier(self, user_id, target_tier_id, direction, actor, now=None):
        now = now or datetime.utcnow()
        try:
            direction = TierChangeDirection(direction)
        except ValueError:
            raise InvalidRequestError(
                f"Unknown tier change direction: {direction}",
                {"direction": direction, "allowed": [d.value for d in TierChangeDirection]},
            ) from None

        user = self._get_user(user_id, for_update=True)
        new_tier = self._get_tier(target_tier_id)

        if not new_tier.active:
            raise DomainConflictError(f"Tier {new_tier.name} is not active", {"tier_id": target_tier_id})
        if direction is TierChangeDirection.UPGRADE and new_tier.tier_level <= user.current_tier_level:
            raise DomainConflictError(
                "New tier level must be higher than current tier level",
                {"current_level": user.current_tier_level, "target_level": new_tier.tier_level},
            )
        if direction is TierChangeDirection.DOWNGRADE and new_tier.tier_level >= user.current_tier_level:
            raise DomainConflictError(
                "New tier level must be lower than current tier level",
                {"current_level": user.current_tier_level, "target_level": new_tier.tier_level},
            )

        old_level = user.current_tier_level
        user.current_tier_level = new_tier.tier_level

        subscription = self.get_current_subscription(user_id)
        if subscription is not None:
            old_tier = subscription.tier
            subscription.tier_id = new_tier.id
            subscription.tier = new_tier

            if direction is TierChangeDirection.UPGRADE:
                action, verb = SubscriptionAction.UPGRADED, "upgraded"
            else:
                action, verb = SubscriptionAction.DOWNGRADED, "downgraded"
            self._record(subscription, action, f"Tier {verb} from {old_tier.name} to {new_tier.name}",
                         old_tier.name, new_tier.name,
                         old_tier.discount_percentage, new_tier.discount_percentage, actor, now)

        self.db.flush()
        logger.info(f"[Membership] User {user_id} tier {direction.value.lower()}d from {old_level} to {new_tier.tier_level} by {actor}")
        return subscription

    def expire(self, subscription_id, now=None):
        now = now or datetime.utcnow()
        subscription = self._get_subscription(subscription_id)

        if subscription.status != SubscriptionStatus.ACTIVE:
            raise DomainConflictError(
                f"Only active subscriptions can expire (status is {subscription.status.value})",
                {"subscription_id": subscription_id},
            )
        if subscription.expiry_date > now:
            raise DomainConflictError(
                "Subscription has not reached its expiry date",
                {"subscription_id": subscription_id, "expiry_date": subscription.expiry_date.isoformat()},
            )

        subscription.status = SubscriptionStatus.EXPIRED
        plan = subscription.plan
        self._record(subscription, SubscriptionAction.CANCELLED, "Subscription expired",
                     plan.name, None, plan.price, None, SYSTEM_ACTOR, now)
        self.db.flush()

        logger.info(f"[Membership] Subscription {subscription.id} marked as expired")
        return subscription


def to_projection(subscription):
    if subscription is None:
        return None

    def money(v):
        return str(v) if v is not None else None

    def ts(v):
        return v.isoformat() if v is not None else None

    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "plan_id": subscription.plan_id,
        "plan_name": subscription.plan.name,
        "tier_id": subscription.tier_id,
        "tier_name": subscription.tier.name,
        "tier_level": subscription.tier.tier_level,
        "status": subscription.status.value,
        "start_date": ts(subscription.start_date),
        "expiry_date": ts(subscription.expiry_date),
        "actual_price": money(subscription.actual_price),
        "discounted_price": money(subscription.discounted_price),
        "effective_price": money(subscription.effective_price),
        "auto_renewal": subscription.auto_renewal,
        "cancellation_reason": subscription.cancellation_reason,
        "cancelled_at": ts(subscription.cancelled_at),
        "cancelled_by": subscription.cancelled_by,
    }


def history_to_dict(entry):
    return {
        "id": entry.id,
        "subscription_id": entry.subscription_id,
        "action": entry.action.value,
        "action_description": entry.action_description,
        "old_value": entry.old_value,
        "new_value": entry.new_value,
        "old_price": str(entry.old_price) if entry.old_price is not None else None,
        "new_price": str(entry.new_price) if entry.new_price is not None else None,
        "performed_by": entry.performed_by,
        "performed_at": entry.performed_at.isoformat(),
    }
